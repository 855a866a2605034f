"""Tool abstraction: the pluggable executor behind each step kind."""

import inspect
import logging
import time
from collections.abc import Awaitable
from collections.abc import Callable
from dataclasses import dataclass
from dataclasses import field
from typing import Any

from .context import StepContext
from .errors import ToolExecutionError
from .models import Step

logger = logging.getLogger(__name__)


@dataclass
class ToolValidationResult:
    """Outcome of ``Tool.validate``."""

    is_valid: bool = True
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @classmethod
    def invalid(cls, *errors: str) -> "ToolValidationResult":
        return cls(is_valid=False, errors=list(errors))


@dataclass
class ToolExecutionResult:
    """Result returned by ``Tool.execute``.

    Tools may also return a plain mapping with the same keys; the runner reads
    file changes and errors from either form.
    """

    success: bool = True
    output: dict[str, Any] = field(default_factory=dict)
    files_created: list[str] = field(default_factory=list)
    files_modified: list[str] = field(default_factory=list)
    files_deleted: list[str] = field(default_factory=list)
    error: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def failure(cls, error: str, **kwargs: Any) -> "ToolExecutionResult":
        return cls(success=False, error=error, **kwargs)


@dataclass
class ToolResource:
    """Something a tool holds that must be released on cleanup."""

    id: str
    type: str  # file, process, network, memory, cache
    cleanup: Callable[[], Awaitable[None] | None]
    metadata: dict[str, Any] = field(default_factory=dict)


class Tool:
    """Base class for step tools.

    Subclasses override the ``on_*`` hooks. ``initialize`` and ``cleanup`` are
    idempotent: the registry may call them once per cached instance regardless
    of how many steps used it.
    """

    def __init__(self, tool_type: str, name: str, options: dict[str, Any] | None = None):
        self.tool_type = tool_type
        self.name = name
        self.options = options or {}
        self.resources: dict[str, ToolResource] = {}
        self.execution_count = 0
        self._is_initialized = False
        self._is_cleaned_up = False

    def __repr__(self) -> str:
        return f"{type(self).__name__}(tool_type={self.tool_type!r}, name={self.name!r})"

    @property
    def is_initialized(self) -> bool:
        return self._is_initialized

    @property
    def is_cleaned_up(self) -> bool:
        return self._is_cleaned_up

    async def initialize(self) -> None:
        """Prepare the tool for use. Runs ``on_initialize`` once."""
        if self._is_initialized:
            return
        logger.debug(f"Initializing tool {self.name} ({self.tool_type})")
        await self.on_initialize()
        self._is_initialized = True

    async def validate(self, step: Step, context: StepContext) -> ToolValidationResult:
        """Check a step's configuration before execution."""
        started = time.perf_counter()
        result = await self.on_validate(step, context)
        logger.debug(
            f"Validated step '{step.name}' with {self.name}: "
            f"{'valid' if result.is_valid else 'invalid'} in {time.perf_counter() - started:.3f}s"
        )
        return result

    async def execute(self, step: Step, context: StepContext) -> ToolExecutionResult | dict[str, Any]:
        """Run the step. Raises on faults or returns a result carrying ``error``."""
        if not self._is_initialized:
            await self.initialize()
        self.execution_count += 1
        return await self.on_execute(step, context)

    async def cleanup(self) -> None:
        """Release every registered resource, then run ``on_cleanup``. Runs once."""
        if self._is_cleaned_up:
            return
        self._is_cleaned_up = True

        for resource_id, resource in list(self.resources.items()):
            try:
                outcome = resource.cleanup()
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception as e:
                logger.warning(f"Failed to clean up resource {resource_id} of tool {self.name}: {e}", exc_info=True)
        self.resources.clear()

        await self.on_cleanup()

    def register_resource(self, resource: ToolResource) -> None:
        self.resources[resource.id] = resource

    # Hooks for subclasses

    async def on_initialize(self) -> None:
        pass

    async def on_validate(self, step: Step, context: StepContext) -> ToolValidationResult:
        return ToolValidationResult()

    async def on_execute(self, step: Step, context: StepContext) -> ToolExecutionResult | dict[str, Any]:
        raise NotImplementedError(f"{type(self).__name__} must implement on_execute")

    async def on_cleanup(self) -> None:
        pass


StepHandler = Callable[[Step, StepContext], Awaitable[ToolExecutionResult | dict[str, Any] | None]]
StepValidator = Callable[[Step, StepContext], Awaitable[ToolValidationResult] | ToolValidationResult]


class FunctionTool(Tool):
    """Adapts a plain coroutine function into a Tool.

    Example:
        async def write_readme(step, context):
            ...
            return ToolExecutionResult(files_created=["README.md"])

        registry.register("action", "write-readme", FunctionTool.factory("action", write_readme))
    """

    def __init__(
        self,
        tool_type: str,
        name: str,
        handler: StepHandler,
        validator: StepValidator | None = None,
        options: dict[str, Any] | None = None,
    ):
        super().__init__(tool_type, name, options)
        self.handler = handler
        self.validator = validator

    @classmethod
    def factory(
        cls,
        tool_type: str,
        handler: StepHandler,
        validator: StepValidator | None = None,
    ) -> Callable[[str], "FunctionTool"]:
        """Build a registry factory producing a fresh FunctionTool per instance."""

        def create(name: str) -> "FunctionTool":
            return cls(tool_type, name, handler, validator)

        return create

    async def on_validate(self, step: Step, context: StepContext) -> ToolValidationResult:
        if self.validator is None:
            return ToolValidationResult()
        result = self.validator(step, context)
        if inspect.isawaitable(result):
            result = await result
        return result

    async def on_execute(self, step: Step, context: StepContext) -> ToolExecutionResult | dict[str, Any]:
        result = await self.handler(step, context)
        if result is None:
            return ToolExecutionResult()
        if not isinstance(result, (ToolExecutionResult, dict)):
            raise ToolExecutionError(
                f"Handler for {self.name} returned {type(result).__name__}, expected ToolExecutionResult or dict"
            )
        return result
