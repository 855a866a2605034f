"""Single-step execution: condition, routing, retries and timeouts."""

import asyncio
import logging
import random
from collections.abc import Mapping
from typing import Any

from .cancellation import CancellationManager
from .config import ExecutorConfig
from .context import SkipReason
from .context import StepContext
from .context import StepError
from .context import StepExecutionOptions
from .context import StepResult
from .context import StepStatus
from .errors import StepExecutionError
from .errors import StepValidationError
from .errors import ToolNotFoundError
from .events import STEP_CANCELLED
from .events import STEP_COMPLETED
from .events import STEP_FAILED
from .events import STEP_RETRY
from .events import STEP_SKIPPED
from .events import STEP_STARTED
from .events import EventEmitter
from .expression_evaluator import ExpressionError
from .models import Step
from .registry import ToolRegistry

logger = logging.getLogger(__name__)

_FILE_FIELDS = {
    "files_created": ("files_created", "filesCreated", "files_generated", "filesGenerated"),
    "files_modified": ("files_modified", "filesModified", "files_processed", "filesProcessed"),
    "files_deleted": ("files_deleted", "filesDeleted"),
}


def _read_field(tool_result: Any, name: str) -> Any:
    if isinstance(tool_result, Mapping):
        return tool_result.get(name)
    return getattr(tool_result, name, None)


def extract_file_changes(tool_result: Any) -> dict[str, list[str]]:
    """Pull created/modified/deleted file lists out of a tool result (object or mapping)."""
    changes: dict[str, list[str]] = {}
    for target, aliases in _FILE_FIELDS.items():
        files: list[str] = []
        for alias in aliases:
            for path in _read_field(tool_result, alias) or []:
                if str(path) not in files:
                    files.append(str(path))
        changes[target] = files
    return changes


def tool_result_error(tool_result: Any) -> str | None:
    """Return the error a tool reported without raising, if any."""
    if tool_result is None:
        return None
    error = _read_field(tool_result, "error")
    if error:
        return str(error)
    if _read_field(tool_result, "success") is False:
        return "Tool reported failure"
    return None


class StepRunner:
    """Runs one step through its lifecycle.

    ``pending -> running -> skipped | completed | failed | cancelled``. The
    runner owns the StepResult it creates and is the only writer until the
    result reaches a terminal status.
    """

    def __init__(
        self,
        registry: ToolRegistry,
        config: ExecutorConfig | None = None,
        events: EventEmitter | None = None,
        cancellation: CancellationManager | None = None,
        rng: random.Random | None = None,
    ):
        self.registry = registry
        self.config = config or ExecutorConfig()
        self.events = events or EventEmitter()
        self.cancellation = cancellation
        self._rng = rng or random.Random()

    def calculate_retry_delay(self, attempt: int) -> float:
        """Backoff before retry number ``attempt`` (1 for the first retry), in seconds."""
        policy = self.config.retry
        delay = min(policy.base_delay * 2**attempt, policy.max_delay)
        delay += delay * policy.jitter * (2 * self._rng.random() - 1)
        return max(delay, policy.min_delay)

    def resolve_retries(self, step: Step, options: StepExecutionOptions) -> int:
        settings = options.settings
        for candidate in (options.retries, step.retries, settings.retries if settings else None):
            if candidate is not None:
                return candidate
        return self.config.default_retries

    def resolve_timeout(self, step: Step, options: StepExecutionOptions) -> float | None:
        settings = options.settings
        for candidate in (options.timeout, step.timeout, settings.timeout if settings else None):
            if candidate is not None:
                return candidate
        return self.config.default_timeout

    async def execute_step(
        self,
        step: Step,
        context: StepContext,
        options: StepExecutionOptions | None = None,
    ) -> StepResult:
        """
        Execute one step.

        Args:
            step: Step to run
            context: Run context (a per-step context is derived from it)
            options: Per-call overrides

        Returns:
            Terminal StepResult (completed, skipped or cancelled; failed when
            ``options.raise_on_failure`` is False)

        Raises:
            StepExecutionError: When the step ends failed, with the result attached
        """
        options = options or StepExecutionOptions()
        step_context = context if context.step is step else context.for_step(step)
        result = StepResult(step_name=step.name, tool_type=step.tool)
        result.status = StepStatus.RUNNING

        await self._emit(STEP_STARTED, step, options)
        step_context.logger.debug(f"Executing step {step.name} ({step.tool}:{step.tool_name})")

        if self._is_cancelled(options):
            return await self._cancel(result, step, options)

        if step.when:
            try:
                result.condition_result = bool(
                    step_context.evaluate_condition(step.when, step_context.condition_scope())
                )
            except ExpressionError as e:
                return await self._fail(result, step, StepError.from_exception(e, "CONDITION_ERROR"), options)

            if not result.condition_result:
                result.finish(StepStatus.SKIPPED, skip_reason=SkipReason.CONDITION)
                step_context.logger.debug(f"Step condition not met, skipping: {step.name}")
                await self._emit(STEP_SKIPPED, step, options, condition=step.when)
                return result

        max_retries = self.resolve_retries(step, options)
        timeout = self.resolve_timeout(step, options)
        last_error: StepError | None = None
        last_tool_result: Any = None

        for attempt in range(max_retries + 1):
            if attempt > 0:
                if self._is_cancelled(options):
                    return await self._cancel(result, step, options)
                result.retry_count = attempt
                delay = self.calculate_retry_delay(attempt)
                logger.info(
                    f"Retrying step {step.name} (attempt {attempt + 1}/{max_retries + 1}) in {delay:.2f}s: "
                    f"{last_error.message if last_error else ''}"
                )
                await self._emit(
                    STEP_RETRY,
                    step,
                    options,
                    attempt=attempt,
                    max_attempts=max_retries + 1,
                    delay=delay,
                    error=last_error.message if last_error else None,
                )
                if await self._wait(options, delay):
                    return await self._cancel(result, step, options)

            try:
                tool_result = await self._route_and_execute(step, step_context, timeout, options)
            except (StepValidationError, ToolNotFoundError) as e:
                # Configuration problems never consume a retry
                return await self._fail(result, step, StepError.from_exception(e), options)
            except asyncio.TimeoutError as e:
                last_error = StepError(f"Step '{step.name}' timed out after {timeout}s", "TIMEOUT", e)
            except Exception as e:
                last_error = StepError.from_exception(e)
            else:
                fault = tool_result_error(tool_result)
                if fault is None:
                    return await self._complete(result, step, tool_result, attempt, options)
                last_tool_result = tool_result
                last_error = StepError(fault, "TOOL_EXECUTION_FAILED")

            logger.debug(f"Step {step.name} attempt {attempt + 1} failed: {last_error.message}")

        if last_tool_result is not None:
            result.tool_result = last_tool_result
        return await self._fail(result, step, last_error, options)

    async def _route_and_execute(
        self,
        step: Step,
        context: StepContext,
        timeout: float | None,
        options: StepExecutionOptions,
    ) -> Any:
        tool_name = step.tool_name
        tool = await self.registry.resolve(step.tool, tool_name)
        logger.debug(f"Routing step {step.name} -> {step.tool}:{tool_name}")
        if self.cancellation is not None:
            self.cancellation.track_step(options.execution_id, step.name, tool)

        try:
            try:
                validation = await tool.validate(step, context)
            except Exception as e:
                raise StepValidationError(step.name, [str(e) or type(e).__name__]) from e
            if not validation.is_valid:
                raise StepValidationError(step.name, validation.errors or ["invalid configuration"])
            for warning in validation.warnings:
                context.logger.warning(f"Step {step.name}: {warning}")

            if timeout is None:
                return await tool.execute(step, context)
            return await asyncio.wait_for(tool.execute(step, context), timeout)
        finally:
            if self.cancellation is not None:
                self.cancellation.untrack_step(options.execution_id, step.name)
            await self.registry.release(step.tool, tool_name, tool)

    async def _complete(
        self,
        result: StepResult,
        step: Step,
        tool_result: Any,
        attempt: int,
        options: StepExecutionOptions,
    ) -> StepResult:
        changes = extract_file_changes(tool_result)
        result.tool_result = tool_result
        result.files_created = changes["files_created"]
        result.files_modified = changes["files_modified"]
        result.files_deleted = changes["files_deleted"]
        output = _read_field(tool_result, "output")
        if isinstance(output, dict):
            result.output = output
        metadata = _read_field(tool_result, "metadata")
        if isinstance(metadata, dict):
            result.metadata = {**metadata}
        result.metadata["attempts"] = attempt + 1
        result.finish(StepStatus.COMPLETED)

        logger.debug(f"Step completed: {step.name} in {result.duration:.3f}s")
        await self._emit(STEP_COMPLETED, step, options, duration=result.duration, retries=attempt)
        return result

    async def _fail(
        self,
        result: StepResult,
        step: Step,
        error: StepError | None,
        options: StepExecutionOptions,
    ) -> StepResult:
        error = error or StepError("Step execution failed", "STEP_FAILED")
        result.metadata["attempts"] = result.retry_count + 1
        result.finish(StepStatus.FAILED, error=error)

        logger.warning(f"Step {step.name} failed after {result.retry_count} retries: {error.message}")
        await self._emit(STEP_FAILED, step, options, error=error.message, code=error.code, retries=result.retry_count)

        if options.raise_on_failure:
            raise StepExecutionError(
                f"Step '{step.name}' failed after {result.retry_count} retries: {error.message}",
                step.name,
                step.tool,
                result=result,
                cause=error.cause,
            )
        return result

    async def _cancel(self, result: StepResult, step: Step, options: StepExecutionOptions) -> StepResult:
        result.finish(StepStatus.CANCELLED, error=StepError(f"Step '{step.name}' was cancelled", "CANCELLED"))
        await self._emit(STEP_CANCELLED, step, options)
        return result

    def _is_cancelled(self, options: StepExecutionOptions) -> bool:
        return self.cancellation is not None and self.cancellation.is_cancelled(options.execution_id)

    async def _wait(self, options: StepExecutionOptions, delay: float) -> bool:
        """Sleep between attempts. Returns True if cancelled meanwhile."""
        if self.cancellation is None:
            await asyncio.sleep(delay)
            return False
        return await self.cancellation.wait_for_cancellation(options.execution_id, delay)

    async def _emit(self, event: str, step: Step, options: StepExecutionOptions, **payload: Any) -> None:
        await self.events.emit(
            event,
            {"step": step.name, "tool": step.tool, "execution_id": options.execution_id, **payload},
        )
