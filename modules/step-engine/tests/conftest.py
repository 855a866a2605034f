"""Shared fixtures for step engine tests."""

from pathlib import Path

import pytest

from recipe_step_engine.config import ExecutorConfig
from recipe_step_engine.config import RetryPolicy
from recipe_step_engine.context import RecipeInfo
from recipe_step_engine.context import StepContext
from recipe_step_engine.models import ActionStep
from recipe_step_engine.registry import ToolRegistry
from recipe_step_engine.tools import FunctionTool
from recipe_step_engine.tools import ToolExecutionResult


class FakeClock:
    """Manually advanced replacement for time.monotonic."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def temp_dir(tmp_path: Path) -> Path:
    """Temporary project directory."""
    return tmp_path


@pytest.fixture
def fast_config() -> ExecutorConfig:
    """Executor config with no retries by default and zero backoff."""
    return ExecutorConfig(
        default_retries=0,
        default_timeout=5.0,
        retry=RetryPolicy(base_delay=0, max_delay=0, jitter=0, min_delay=0),
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def registry() -> ToolRegistry:
    return ToolRegistry()


@pytest.fixture
def context(temp_dir: Path) -> StepContext:
    return StepContext(recipe=RecipeInfo(id="recipe-1", name="test-recipe"), project_root=temp_dir)


@pytest.fixture
def register_action(registry: ToolRegistry):
    """Register a coroutine handler as an ``action`` tool."""

    def register(name: str, handler=None, validator=None):
        async def succeed(step, context):
            return ToolExecutionResult(files_created=[f"{step.name}.txt"])

        registry.register("action", name, FunctionTool.factory("action", handler or succeed, validator))

    return register


def action(name: str, tool: str = "ok", **kwargs) -> ActionStep:
    """Shorthand for an action step routed to ``tool``."""
    return ActionStep(name=name, action=tool, **kwargs)


@pytest.fixture
def make_step():
    return action
