"""Tests for single-step execution: conditions, retries, timeouts and routing."""

import asyncio
import random
from unittest.mock import AsyncMock

import pytest

from recipe_step_engine.cancellation import CancellationManager
from recipe_step_engine.config import ExecutorConfig
from recipe_step_engine.config import RetryPolicy
from recipe_step_engine.context import SkipReason
from recipe_step_engine.context import StepExecutionOptions
from recipe_step_engine.context import StepResult
from recipe_step_engine.context import StepStatus
from recipe_step_engine.errors import StepExecutionError
from recipe_step_engine.events import STEP_FAILED
from recipe_step_engine.events import STEP_RETRY
from recipe_step_engine.events import STEP_STARTED
from recipe_step_engine.events import EventEmitter
from recipe_step_engine.models import RecipeSettings
from recipe_step_engine.runner import StepRunner
from recipe_step_engine.runner import extract_file_changes
from recipe_step_engine.tools import ToolExecutionResult
from recipe_step_engine.tools import ToolValidationResult

NO_RAISE = StepExecutionOptions(raise_on_failure=False)


@pytest.fixture
def events() -> EventEmitter:
    return EventEmitter()


@pytest.fixture
def runner(registry, fast_config, events) -> StepRunner:
    return StepRunner(registry, fast_config, events)


class TestSuccessfulExecution:
    """Routing a step to its tool."""

    @pytest.mark.asyncio
    async def test_completes_with_file_changes(self, runner, register_action, make_step, context):
        register_action("ok")

        result = await runner.execute_step(make_step("write"), context, NO_RAISE)

        assert result.status == StepStatus.COMPLETED
        assert result.files_created == ["write.txt"]
        assert result.retry_count == 0
        assert result.metadata["attempts"] == 1
        assert result.duration is not None and result.duration >= 0

    @pytest.mark.asyncio
    async def test_tool_receives_step_scoped_context(self, runner, register_action, make_step, context):
        seen = {}

        async def handler(step, step_context):
            seen.update(step_context.variables)
            seen["step"] = step_context.step.name
            return {"files_modified": ["package.json"], "output": {"installed": 3}}

        register_action("ok", handler)
        context.variables["projectName"] = "app"

        result = await runner.execute_step(make_step("install", variables={"dev": True}), context, NO_RAISE)

        assert seen == {"projectName": "app", "dev": True, "step": "install"}
        assert result.files_modified == ["package.json"]
        assert result.output == {"installed": 3}
        # The run context is not modified by step variables
        assert "dev" not in context.variables

    @pytest.mark.asyncio
    async def test_releases_tool_after_execution(self, runner, registry, register_action, make_step, context):
        register_action("ok")
        await runner.execute_step(make_step("write"), context, NO_RAISE)
        assert registry.get_cached_instance("action", "ok").ref_count == 0

    @pytest.mark.asyncio
    async def test_result_is_frozen_once_terminal(self, runner, register_action, make_step, context):
        register_action("ok")
        result = await runner.execute_step(make_step("write"), context, NO_RAISE)
        with pytest.raises(RuntimeError):
            result.status = StepStatus.FAILED


class TestConditions:
    """``when`` expressions."""

    @pytest.mark.asyncio
    async def test_false_condition_skips_without_retries(self, runner, register_action, make_step, context):
        handler = AsyncMock(return_value=None)
        register_action("ok", handler)

        result = await runner.execute_step(make_step("lint", when="useLint", retries=3), context, NO_RAISE)

        assert result.status == StepStatus.SKIPPED
        assert result.skip_reason == SkipReason.CONDITION
        assert result.condition_result is False
        assert result.retry_count == 0
        handler.assert_not_called()

    @pytest.mark.asyncio
    async def test_true_condition_runs(self, runner, register_action, make_step, context):
        register_action("ok")
        context.variables["framework"] = "react"

        result = await runner.execute_step(make_step("s", when="framework == 'react'"), context, NO_RAISE)

        assert result.status == StepStatus.COMPLETED
        assert result.condition_result is True

    @pytest.mark.asyncio
    async def test_condition_sees_prior_step_results(self, runner, register_action, make_step, context):
        register_action("ok")
        first = await runner.execute_step(make_step("first"), context, NO_RAISE)
        context.step_results["first"] = first

        result = await runner.execute_step(
            make_step("second", when="steps.first.status == 'completed'"), context, NO_RAISE
        )

        assert result.status == StepStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_malformed_condition_fails(self, runner, register_action, make_step, context):
        register_action("ok")
        result = await runner.execute_step(make_step("s", when="a ==", retries=2), context, NO_RAISE)

        assert result.status == StepStatus.FAILED
        assert result.error.code == "CONDITION_ERROR"
        assert result.retry_count == 0


class TestRetries:
    """Retry loop and backoff."""

    @pytest.mark.asyncio
    async def test_always_failing_step_makes_retries_plus_one_attempts(
        self, runner, register_action, make_step, context
    ):
        handler = AsyncMock(side_effect=RuntimeError("npm exploded"))
        register_action("ok", handler)

        result = await runner.execute_step(make_step("install", retries=2), context, NO_RAISE)

        assert handler.await_count == 3
        assert result.status == StepStatus.FAILED
        assert result.retry_count == 2
        assert result.metadata["attempts"] == 3
        assert "npm exploded" in result.error.message

    @pytest.mark.asyncio
    async def test_recovers_after_transient_failure(self, runner, register_action, make_step, context):
        handler = AsyncMock(side_effect=[RuntimeError("flaky"), ToolExecutionResult(files_created=["a"])])
        register_action("ok", handler)

        result = await runner.execute_step(make_step("s", retries=2), context, NO_RAISE)

        assert result.status == StepStatus.COMPLETED
        assert result.retry_count == 1
        assert result.files_created == ["a"]

    @pytest.mark.asyncio
    async def test_reported_error_is_retried(self, runner, register_action, make_step, context):
        handler = AsyncMock(return_value=ToolExecutionResult.failure("disk full", files_created=["partial"]))
        register_action("ok", handler)

        result = await runner.execute_step(make_step("s", retries=1), context, NO_RAISE)

        assert handler.await_count == 2
        assert result.error.code == "TOOL_EXECUTION_FAILED"
        assert result.error.message == "disk full"
        assert result.tool_result.files_created == ["partial"]

    @pytest.mark.asyncio
    async def test_validation_failure_is_not_retried(self, runner, register_action, make_step, context):
        handler = AsyncMock()
        register_action("ok", handler, validator=lambda s, c: ToolValidationResult.invalid("missing parameter"))

        result = await runner.execute_step(make_step("s", retries=3), context, NO_RAISE)

        handler.assert_not_called()
        assert result.status == StepStatus.FAILED
        assert result.error.code == "VALIDATION_ERROR"
        assert "missing parameter" in result.error.message
        assert result.retry_count == 0

    @pytest.mark.asyncio
    async def test_raising_validator_is_a_validation_failure(self, runner, register_action, make_step, context):
        def validator(step, step_context):
            raise KeyError("parameters")

        register_action("ok", AsyncMock(), validator=validator)

        result = await runner.execute_step(make_step("s", retries=3), context, NO_RAISE)

        assert result.error.code == "VALIDATION_ERROR"
        assert result.retry_count == 0

    @pytest.mark.asyncio
    async def test_unknown_tool_is_not_retried(self, runner, make_step, context):
        result = await runner.execute_step(make_step("s", tool="missing", retries=3), context, NO_RAISE)

        assert result.status == StepStatus.FAILED
        assert result.error.code == "TOOL_NOT_FOUND"
        assert result.retry_count == 0

    @pytest.mark.asyncio
    async def test_timeout(self, runner, register_action, make_step, context):
        async def slow(step, step_context):
            await asyncio.sleep(5)

        register_action("ok", slow)

        result = await runner.execute_step(make_step("s", timeout=0.05), context, NO_RAISE)

        assert result.status == StepStatus.FAILED
        assert result.error.code == "TIMEOUT"

    @pytest.mark.asyncio
    async def test_failure_raises_with_result_attached(self, runner, register_action, make_step, context):
        register_action("ok", AsyncMock(side_effect=RuntimeError("boom")))

        with pytest.raises(StepExecutionError) as exc_info:
            await runner.execute_step(make_step("s"), context)

        assert isinstance(exc_info.value.result, StepResult)
        assert exc_info.value.result.status == StepStatus.FAILED
        assert exc_info.value.step_name == "s"

    @pytest.mark.asyncio
    async def test_retry_events(self, runner, events, register_action, make_step, context):
        received = []
        events.on("*", lambda name, payload: received.append(name))
        register_action("ok", AsyncMock(side_effect=RuntimeError("boom")))

        await runner.execute_step(make_step("s", retries=2), context, NO_RAISE)

        assert received == [STEP_STARTED, STEP_RETRY, STEP_RETRY, STEP_FAILED]


class TestResolution:
    """Retry count, timeout and backoff computation."""

    def test_retry_precedence(self, runner, make_step):
        settings = RecipeSettings(retries=4)
        assert runner.resolve_retries(make_step("s", retries=2), StepExecutionOptions(retries=1)) == 1
        assert runner.resolve_retries(make_step("s", retries=2), StepExecutionOptions(settings=settings)) == 2
        assert runner.resolve_retries(make_step("s"), StepExecutionOptions(settings=settings)) == 4
        assert runner.resolve_retries(make_step("s"), StepExecutionOptions()) == 0  # fast_config default

    def test_timeout_precedence(self, runner, make_step):
        settings = RecipeSettings(timeout=9.0)
        assert runner.resolve_timeout(make_step("s", timeout=3.0), StepExecutionOptions(timeout=1.0)) == 1.0
        assert runner.resolve_timeout(make_step("s", timeout=3.0), StepExecutionOptions(settings=settings)) == 3.0
        assert runner.resolve_timeout(make_step("s"), StepExecutionOptions(settings=settings)) == 9.0
        assert runner.resolve_timeout(make_step("s"), StepExecutionOptions()) == 5.0

    def test_backoff_bounds(self, registry):
        config = ExecutorConfig(retry=RetryPolicy(base_delay=1.0, max_delay=30.0, jitter=0.25, min_delay=0.1))
        runner = StepRunner(registry, config, rng=random.Random(7))

        for attempt in range(1, 8):
            nominal = min(2**attempt, 30.0)
            for _ in range(20):
                delay = runner.calculate_retry_delay(attempt)
                assert nominal * 0.75 <= delay <= nominal * 1.25

    def test_backoff_without_jitter(self, registry):
        config = ExecutorConfig(retry=RetryPolicy(base_delay=1.0, max_delay=30.0, jitter=0, min_delay=0.1))
        runner = StepRunner(registry, config)

        assert runner.calculate_retry_delay(1) == 2.0
        assert runner.calculate_retry_delay(3) == 8.0
        assert runner.calculate_retry_delay(10) == 30.0

    def test_backoff_floor(self, registry):
        config = ExecutorConfig(retry=RetryPolicy(base_delay=0.001, max_delay=1.0, jitter=0, min_delay=0.1))
        assert StepRunner(registry, config).calculate_retry_delay(1) == 0.1


class TestCancellation:
    """Cancellation stops the runner between attempts."""

    @pytest.mark.asyncio
    async def test_cancelled_before_start(self, registry, fast_config, register_action, make_step, context):
        cancellation = CancellationManager()
        cancellation.register_execution("exec-1")
        await cancellation.cancel_execution("exec-1")
        handler = AsyncMock()
        register_action("ok", handler)
        runner = StepRunner(registry, fast_config, cancellation=cancellation)

        result = await runner.execute_step(
            make_step("s"), context, StepExecutionOptions(execution_id="exec-1", raise_on_failure=False)
        )

        assert result.status == StepStatus.CANCELLED
        assert result.error.code == "CANCELLED"
        handler.assert_not_called()

    @pytest.mark.asyncio
    async def test_cancel_during_backoff(self, registry, register_action, make_step, context):
        config = ExecutorConfig(retry=RetryPolicy(base_delay=5.0, max_delay=5.0, jitter=0, min_delay=0))
        cancellation = CancellationManager()
        cancellation.register_execution("exec-1")
        attempted = asyncio.Event()

        async def failing(step, step_context):
            attempted.set()
            raise RuntimeError("try again")

        register_action("ok", failing)
        runner = StepRunner(registry, config, cancellation=cancellation)
        task = asyncio.create_task(
            runner.execute_step(
                make_step("s", retries=3),
                context,
                StepExecutionOptions(execution_id="exec-1", raise_on_failure=False),
            )
        )

        await attempted.wait()
        await cancellation.cancel_execution("exec-1")
        result = await asyncio.wait_for(task, 1.0)

        assert result.status == StepStatus.CANCELLED
        assert result.retry_count == 1


class TestFileChanges:
    """Extracting file lists from tool results."""

    def test_object_and_mapping_forms(self):
        assert extract_file_changes(ToolExecutionResult(files_deleted=["old"]))["files_deleted"] == ["old"]
        changes = extract_file_changes({"filesGenerated": ["a"], "files_created": ["a", "b"], "filesProcessed": ["c"]})
        assert changes == {"files_created": ["a", "b"], "files_modified": ["c"], "files_deleted": []}

    def test_none(self):
        assert extract_file_changes(None) == {"files_created": [], "files_modified": [], "files_deleted": []}
