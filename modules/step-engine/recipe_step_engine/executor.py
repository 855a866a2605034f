"""Step execution orchestrator."""

import asyncio
import itertools
import logging
import time
from collections.abc import Sequence
from dataclasses import replace

from .cancellation import CancellationManager
from .config import ExecutorConfig
from .context import SkipReason
from .context import StepContext
from .context import StepError
from .context import StepExecutionOptions
from .context import StepResult
from .context import StepStatus
from .errors import DuplicateStepError
from .errors import RecipeEngineError
from .errors import RecipeValidationError
from .errors import StepExecutionError
from .events import EXECUTION_COMPLETED
from .events import EXECUTION_FAILED
from .events import EXECUTION_PLAN_CREATED
from .events import EXECUTION_STARTED
from .events import PHASE_COMPLETED
from .events import PHASE_STARTED
from .events import STEP_CANCELLED
from .events import STEP_SKIPPED
from .events import EventEmitter
from .metrics import ExecutionMetrics
from .metrics import ExecutionProgress
from .metrics import MetricsTracker
from .models import STEP_TYPES
from .models import Step
from .registry import ToolRegistry
from .resolver import DependencyResolver
from .resolver import ExecutionPlan
from .resolver import Phase
from .runner import StepRunner

logger = logging.getLogger(__name__)


class StepExecutor:
    """Runs a step list phase by phase.

    Phases run strictly in order and a phase is fully awaited before the next
    one starts. Steps within a parallel phase run concurrently, bounded by
    ``max_concurrency``. Results come back in declaration order and every
    step gets a terminal result, including steps that were never dispatched.

    Metrics and progress describe the most recent ``execute_steps`` call.
    """

    def __init__(
        self,
        registry: ToolRegistry,
        config: ExecutorConfig | None = None,
        events: EventEmitter | None = None,
        cancellation: CancellationManager | None = None,
    ):
        """
        Initialize executor.

        Args:
            registry: Tool registry steps are routed through
            config: Executor settings (defaults apply when omitted)
            events: Observer list shared with the runner and cancellation manager
            cancellation: Cancellation manager (one is created when omitted)
        """
        self.registry = registry
        self.config = config or ExecutorConfig()
        self.events = events or EventEmitter()
        self.cancellation = cancellation or CancellationManager(self.events)
        self.metrics = MetricsTracker(
            collect_metrics=self.config.collect_metrics,
            track_progress=self.config.enable_progress_tracking,
            memory_warning_threshold_mb=self.config.memory_warning_threshold_mb,
            trace_memory=self.config.trace_memory,
        )
        self.resolver = DependencyResolver(self.config.enable_parallel_execution, self.metrics)
        self.runner = StepRunner(registry, self.config, self.events, self.cancellation)
        self._execution_counter = itertools.count()

    def generate_execution_id(self) -> str:
        return f"exec-{int(time.time() * 1000)}-{next(self._execution_counter)}"

    # Validation

    def validate_steps(self, steps: Sequence[Step]) -> None:
        """Structural checks that must pass before anything runs."""
        if not steps:
            raise RecipeValidationError("No steps to execute")

        errors = []
        seen: set[str] = set()
        for index, step in enumerate(steps):
            if not isinstance(step, Step) or step.tool not in STEP_TYPES:
                errors.append(f"Step #{index + 1}: unknown step kind {type(step).__name__}")
                continue
            if step.name in seen:
                raise DuplicateStepError(step.name)
            seen.add(step.name)
            errors.extend(step.validate())

        if errors:
            raise RecipeValidationError(f"Invalid steps: {'; '.join(errors)}", errors=errors)

    def validate_context(self, context: StepContext) -> None:
        errors = []
        if context.recipe is None or not context.recipe.id or not context.recipe.name:
            errors.append("Step context requires recipe id and name")
        if not callable(context.evaluate_condition):
            errors.append("Step context requires a condition evaluator")
        if not isinstance(context.step_results, dict):
            errors.append("Step context requires a step_results mapping")
        if errors:
            raise RecipeValidationError(f"Invalid step context: {'; '.join(errors)}", errors=errors)

    # Execution

    def create_execution_plan(self, steps: Sequence[Step], context: StepContext | None = None) -> ExecutionPlan:
        """Validate and plan without running anything."""
        self.validate_steps(steps)
        return self.resolver.create_execution_plan(steps, context)

    async def execute_steps(
        self,
        steps: Sequence[Step],
        context: StepContext,
        options: StepExecutionOptions | None = None,
    ) -> list[StepResult]:
        """
        Execute steps in dependency order.

        Args:
            steps: Steps in declaration order
            context: Run context; ``step_results`` is filled in as steps finish
            options: Per-call overrides

        Returns:
            One terminal StepResult per step, in declaration order

        Raises:
            RecipeValidationError: (and its subclasses) for structural problems,
                before any step runs
        """
        options = options or StepExecutionOptions()
        execution_id = options.execution_id or self.generate_execution_id()
        options = replace(options, execution_id=execution_id)
        started = time.perf_counter()

        self.metrics.initialize(len(steps))
        try:
            self.validate_steps(steps)
            self.validate_context(context)
            plan = self.resolver.create_execution_plan(steps, context)
        except RecipeEngineError as e:
            self.metrics.finalize(time.perf_counter() - started)
            logger.error(f"Step execution [{execution_id}] rejected: {e}")
            await self.events.emit(EXECUTION_FAILED, {"execution_id": execution_id, "error": str(e)})
            raise

        logger.info(f"Starting step execution [{execution_id}] with {len(steps)} steps in {len(plan.phases)} phases")
        await self.events.emit(EXECUTION_STARTED, {"execution_id": execution_id, "steps": len(steps)})
        await self.events.emit(EXECUTION_PLAN_CREATED, {"execution_id": execution_id, "plan": plan})

        self.cancellation.register_execution(execution_id)
        try:
            results = await self._execute_plan(plan, steps, context, options)
        finally:
            self.cancellation.complete_execution(execution_id)
            self.metrics.finalize(time.perf_counter() - started)

        ordered = [results[step.name] for step in steps]
        failed = [r.step_name for r in ordered if r.status in (StepStatus.FAILED, StepStatus.CANCELLED)]
        logger.info(
            f"Step execution [{execution_id}] finished in {time.perf_counter() - started:.3f}s"
            + (f" with {len(failed)} failed/cancelled step(s)" if failed else "")
        )
        await self.events.emit(
            EXECUTION_COMPLETED,
            {
                "execution_id": execution_id,
                "results": ordered,
                "duration": time.perf_counter() - started,
                "metrics": self.metrics.get_metrics(),
            },
        )
        return ordered

    async def _execute_plan(
        self,
        plan: ExecutionPlan,
        steps: Sequence[Step],
        context: StepContext,
        options: StepExecutionOptions,
    ) -> dict[str, StepResult]:
        step_map = {step.name: step for step in steps}
        results: dict[str, StepResult] = {}
        continue_on_error = self._continue_on_error(options)
        semaphore = asyncio.Semaphore(self._max_concurrency(options))
        execution_id = options.execution_id
        aborted = False

        for phase in plan.phases:
            if self.cancellation.is_cancelled(execution_id):
                await self._mark_not_run(
                    phase, step_map, results, context, StepStatus.CANCELLED, SkipReason.EXECUTION_CANCELLED
                )
                continue
            if aborted:
                await self._mark_not_run(
                    phase, step_map, results, context, StepStatus.SKIPPED, SkipReason.EXECUTION_ABORTED
                )
                continue

            runnable: list[Step] = []
            for name in phase.steps:
                reason = self._blocked_reason(name, plan, step_map, results)
                if reason is None:
                    runnable.append(step_map[name])
                else:
                    await self._record_not_run(step_map[name], results, context, StepStatus.SKIPPED, reason)

            logger.debug(f"Executing phase {phase.index} with {len(runnable)}/{len(phase.steps)} steps")
            await self.events.emit(
                PHASE_STARTED,
                {
                    "execution_id": execution_id,
                    "phase": phase.index,
                    "steps": [s.name for s in runnable],
                    "parallel": phase.parallel,
                },
            )
            self.metrics.phase_started(phase.index, len(runnable), phase.parallel)

            if phase.parallel:
                phase_results = await asyncio.gather(
                    *(self._run_step(step, context, options, semaphore) for step in runnable)
                )
            else:
                phase_results = [await self._run_step(step, context, options, semaphore) for step in runnable]

            for result in phase_results:
                results[result.step_name] = result
                context.step_results[result.step_name] = result
                if result.status == StepStatus.FAILED and not step_map[result.step_name].continue_on_error:
                    if not continue_on_error:
                        aborted = True

            self.metrics.phase_completed(phase.index)
            await self.events.emit(
                PHASE_COMPLETED,
                {
                    "execution_id": execution_id,
                    "phase": phase.index,
                    "results": {r.step_name: r.status.value for r in phase_results},
                },
            )

        return results

    def _blocked_reason(
        self,
        name: str,
        plan: ExecutionPlan,
        step_map: dict[str, Step],
        results: dict[str, StepResult],
    ) -> str | None:
        """Why a step may not be dispatched, or None when every dependency is satisfied.

        Completed dependencies, condition skips and failures of steps that
        tolerate their own errors all count as satisfied.
        """
        for dependency in plan.dependency_graph[name].dependencies:
            result = results[dependency]
            if result.status == StepStatus.FAILED and not step_map[dependency].continue_on_error:
                return SkipReason.DEPENDENCY_FAILED
            if result.status == StepStatus.CANCELLED:
                return SkipReason.DEPENDENCY_CANCELLED
            if result.status == StepStatus.SKIPPED and result.skip_reason != SkipReason.CONDITION:
                if result.skip_reason == SkipReason.DEPENDENCY_CANCELLED:
                    return SkipReason.DEPENDENCY_CANCELLED
                return SkipReason.DEPENDENCY_FAILED
        return None

    async def _run_step(
        self,
        step: Step,
        context: StepContext,
        options: StepExecutionOptions,
        semaphore: asyncio.Semaphore,
    ) -> StepResult:
        async with semaphore:
            self.metrics.step_started(step.name)
            if options.before_step is not None:
                try:
                    await options.before_step(step, context.for_step(step))
                except Exception as e:
                    logger.warning(f"before_step callback failed for {step.name}: {e}", exc_info=True)

            try:
                result = await self.runner.execute_step(step, context, replace(options, raise_on_failure=True))
            except StepExecutionError as e:
                result = e.result
                if result is None:
                    result = StepResult(step_name=step.name, tool_type=step.tool)
                    result.finish(StepStatus.FAILED, error=StepError.from_exception(e))
            except Exception as e:
                # Never let one step take down the phase
                logger.error(f"Unexpected error executing step {step.name}: {e}", exc_info=True)
                result = StepResult(step_name=step.name, tool_type=step.tool)
                result.finish(StepStatus.FAILED, error=StepError.from_exception(e, "INTERNAL_ERROR"))

            self.metrics.step_finished(result)
            if options.after_step is not None:
                try:
                    await options.after_step(result)
                except Exception as e:
                    logger.warning(f"after_step callback failed for {step.name}: {e}", exc_info=True)
            return result

    async def _mark_not_run(
        self,
        phase: Phase,
        step_map: dict[str, Step],
        results: dict[str, StepResult],
        context: StepContext,
        status: StepStatus,
        reason: str,
    ) -> None:
        for name in phase.steps:
            await self._record_not_run(step_map[name], results, context, status, reason)

    async def _record_not_run(
        self,
        step: Step,
        results: dict[str, StepResult],
        context: StepContext,
        status: StepStatus,
        reason: str,
    ) -> None:
        messages = {
            SkipReason.DEPENDENCY_FAILED: "Skipped because a dependency failed",
            SkipReason.DEPENDENCY_CANCELLED: "Skipped because a dependency was cancelled",
            SkipReason.EXECUTION_ABORTED: "Not run because execution was aborted after a failure",
            SkipReason.EXECUTION_CANCELLED: "Not run because execution was cancelled",
        }
        result = StepResult.not_run(step, status, reason)
        results[step.name] = result
        context.step_results[step.name] = result
        self.metrics.step_finished(result)
        logger.debug(f"{messages.get(reason, 'Not run')}: {step.name}")
        await self.events.emit(
            STEP_CANCELLED if status == StepStatus.CANCELLED else STEP_SKIPPED,
            {"step": step.name, "tool": step.tool, "reason": reason},
        )

    def _continue_on_error(self, options: StepExecutionOptions) -> bool:
        settings = options.settings
        for candidate in (options.continue_on_error, settings.continue_on_error if settings else None):
            if candidate is not None:
                return candidate
        return self.config.continue_on_error

    def _max_concurrency(self, options: StepExecutionOptions) -> int:
        limit = self.config.max_concurrency
        settings = options.settings
        if settings is not None and settings.max_parallel_steps:
            limit = min(limit, settings.max_parallel_steps)
        return max(1, limit)

    # Observability and control

    def get_metrics(self) -> ExecutionMetrics | None:
        return self.metrics.get_metrics()

    def get_progress(self) -> ExecutionProgress | None:
        return self.metrics.get_progress()

    async def cancel_execution(self, execution_id: str) -> bool:
        return await self.cancellation.cancel_execution(execution_id)

    async def cancel_all_executions(self) -> int:
        return await self.cancellation.cancel_all_executions()
