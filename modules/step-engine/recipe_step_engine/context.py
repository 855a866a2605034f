"""Runtime records shared by the runner, executor and tools."""

import datetime
import logging
from collections.abc import Awaitable
from collections.abc import Callable
from dataclasses import dataclass
from dataclasses import field
from dataclasses import replace
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING
from typing import Any

from .expression_evaluator import evaluate_condition
from .variables import substitute_recursive

if TYPE_CHECKING:
    from .models import RecipeSettings
    from .models import Step

step_logger = logging.getLogger("recipe_step_engine.steps")


class StepStatus(Enum):
    """Lifecycle status of a single step."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        """Return True once no further transition is allowed."""
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({StepStatus.COMPLETED, StepStatus.FAILED, StepStatus.SKIPPED, StepStatus.CANCELLED})


class SkipReason:
    """Values used for ``StepResult.skip_reason``."""

    CONDITION = "condition"
    DEPENDENCY_FAILED = "dependency_failed"
    DEPENDENCY_CANCELLED = "dependency_cancelled"
    EXECUTION_ABORTED = "execution_aborted"
    EXECUTION_CANCELLED = "execution_cancelled"


@dataclass
class StepError:
    """Structured error attached to a failed step."""

    message: str
    code: str | None = None
    cause: BaseException | None = None

    @classmethod
    def from_exception(cls, error: BaseException, code: str | None = None) -> "StepError":
        """Build from an exception, using its ``code`` attribute when present."""
        return cls(
            message=str(error) or type(error).__name__,
            code=code or getattr(error, "code", None) or type(error).__name__,
            cause=error,
        )


class TerminalStateError(RuntimeError):
    """Raised when mutating a StepResult that already reached a terminal status."""


@dataclass
class StepResult:
    """Outcome of one step.

    Created when the step is dispatched and mutated only by the runner that
    owns it. Once ``status`` is terminal the record is frozen: further status
    transitions raise ``TerminalStateError``.
    """

    step_name: str
    tool_type: str
    status: StepStatus = StepStatus.PENDING
    start_time: datetime.datetime = field(default_factory=datetime.datetime.now)
    end_time: datetime.datetime | None = None
    duration: float | None = None  # Seconds
    retry_count: int = 0
    dependencies_satisfied: bool = True
    condition_result: bool | None = None
    tool_result: Any = None
    files_created: list[str] = field(default_factory=list)
    files_modified: list[str] = field(default_factory=list)
    files_deleted: list[str] = field(default_factory=list)
    error: StepError | None = None
    output: dict[str, Any] = field(default_factory=dict)
    metadata: dict[str, Any] = field(default_factory=dict)
    skip_reason: str | None = None

    def __setattr__(self, name: str, value: Any) -> None:
        current = self.__dict__.get("status")
        if isinstance(current, StepStatus) and current.is_terminal and name in self.__dataclass_fields__:
            raise TerminalStateError(
                f"Step '{self.step_name}' is already {current.value}; cannot change '{name}'"
            )
        super().__setattr__(name, value)

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def succeeded(self) -> bool:
        return self.status == StepStatus.COMPLETED

    def finish(
        self,
        status: StepStatus,
        error: StepError | None = None,
        skip_reason: str | None = None,
    ) -> "StepResult":
        """Stamp timing and move to a terminal status. Status is assigned last."""
        if not status.is_terminal:
            raise ValueError(f"finish() requires a terminal status, got {status.value}")
        end_time = datetime.datetime.now()
        self.end_time = end_time
        self.duration = (end_time - self.start_time).total_seconds()
        if error is not None:
            self.error = error
        if skip_reason is not None:
            self.skip_reason = skip_reason
        self.status = status
        return self

    @classmethod
    def not_run(
        cls,
        step: "Step",
        status: StepStatus,
        skip_reason: str,
        message: str | None = None,
    ) -> "StepResult":
        """Build the terminal record of a step that was never dispatched."""
        result = cls(step_name=step.name, tool_type=step.tool, dependencies_satisfied=False)
        error = StepError(message=message, code=skip_reason.upper()) if message else None
        return result.finish(status, error=error, skip_reason=skip_reason)

    def to_dict(self) -> dict[str, Any]:
        """Summary suitable for condition lookups and reports."""
        return {
            "name": self.step_name,
            "tool": self.tool_type,
            "status": self.status.value,
            "duration": self.duration,
            "retry_count": self.retry_count,
            "skip_reason": self.skip_reason,
            "files_created": list(self.files_created),
            "files_modified": list(self.files_modified),
            "files_deleted": list(self.files_deleted),
            "output": self.output,
            "error": self.error.message if self.error else None,
        }


@dataclass
class RecipeInfo:
    """Identity and timing of the recipe run a step belongs to."""

    id: str
    name: str
    version: str | None = None
    start_time: datetime.datetime = field(default_factory=datetime.datetime.now)


ConditionEvaluator = Callable[[str, dict[str, Any]], bool]


@dataclass
class StepContext:
    """Execution-time environment handed to tools.

    ``variables`` holds the merged recipe and step-level values; ``step_results``
    is shared by every step of the run and filled in as steps finish.
    """

    recipe: RecipeInfo
    variables: dict[str, Any] = field(default_factory=dict)
    project_root: Path = field(default_factory=Path.cwd)
    recipe_variables: dict[str, Any] = field(default_factory=dict)
    step_results: dict[str, StepResult] = field(default_factory=dict)
    step_data: dict[str, Any] = field(default_factory=dict)
    environment: dict[str, str] = field(default_factory=dict)
    evaluate_condition: ConditionEvaluator = evaluate_condition
    dry_run: bool = False
    force: bool = False
    logger: logging.Logger = step_logger
    step: "Step | None" = None

    def for_step(self, step: "Step") -> "StepContext":
        """Derive the context a single step runs in.

        Step-scoped variables and environment entries override the recipe-level
        ones; the step results mapping stays shared.
        """
        variables = {**self.variables, **(step.variables or {})}
        environment = {**self.environment, **(step.environment or {})}
        return replace(self, variables=variables, environment=environment, step=step)

    def condition_scope(self) -> dict[str, Any]:
        """Variables visible to ``when`` expressions.

        Prior step outcomes are exposed under ``steps.<name>`` unless a variable
        with that name already exists.
        """
        scope = dict(self.variables)
        scope.setdefault("steps", {name: result.to_dict() for name, result in self.step_results.items()})
        scope.setdefault("dryRun", self.dry_run)
        return scope

    def interpolate(self, value: Any) -> Any:
        """Substitute ``{{var}}`` references in a string or nested structure from ``variables``."""
        return substitute_recursive(value, self.variables)


@dataclass
class StepExecutionOptions:
    """Per-call overrides for running steps.

    ``retries`` and ``timeout`` beat the step's own values; ``settings`` holds
    the recipe-wide fallbacks consulted after the step and before the
    executor config.
    """

    retries: int | None = None
    timeout: float | None = None
    continue_on_error: bool | None = None
    execution_id: str | None = None
    settings: "RecipeSettings | None" = None
    # When False the runner returns failed results instead of raising StepExecutionError
    raise_on_failure: bool = True
    before_step: Callable[["Step", StepContext], Awaitable[None]] | None = None
    after_step: Callable[[StepResult], Awaitable[None]] | None = None
