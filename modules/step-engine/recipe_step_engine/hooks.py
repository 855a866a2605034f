"""Recipe lifecycle hooks.

Each hook entry names a registered ``action`` tool. Hooks observe a run; a
failing hook becomes a warning on the recipe result and never changes a
step's outcome.
"""

import logging
from typing import Any

from .context import StepContext
from .context import StepResult
from .models import ActionStep
from .models import RecipeHooks
from .models import Step
from .registry import ToolRegistry
from .runner import tool_result_error

logger = logging.getLogger(__name__)


class HookRunner:
    """Runs the hooks of one recipe execution and collects their warnings."""

    def __init__(self, registry: ToolRegistry, hooks: RecipeHooks, context: StepContext):
        self.registry = registry
        self.hooks = hooks
        self.context = context
        self.warnings: list[str] = []

    async def run(self, hook_name: str, payload: dict[str, Any] | None = None) -> None:
        """Invoke every action listed under ``hook_name``, in order."""
        for action in getattr(self.hooks, hook_name):
            await self._invoke(hook_name, action, payload or {})

    async def _invoke(self, hook_name: str, action: str, payload: dict[str, Any]) -> None:
        step = ActionStep(
            name=f"{hook_name}.{action}",
            action=action,
            parameters={"hook": hook_name, **payload},
        )
        try:
            tool = await self.registry.resolve(ActionStep.tool, action)
        except Exception as e:
            self._warn(hook_name, action, str(e))
            return

        try:
            result = await tool.execute(step, self.context.for_step(step))
            error = tool_result_error(result)
            if error:
                self._warn(hook_name, action, error)
        except Exception as e:
            logger.debug(f"Hook {hook_name} action {action} raised", exc_info=True)
            self._warn(hook_name, action, str(e) or type(e).__name__)
        finally:
            await self.registry.release(ActionStep.tool, action, tool)

    def _warn(self, hook_name: str, action: str, message: str) -> None:
        warning = f"Hook {hook_name} action '{action}' failed: {message}"
        logger.warning(warning)
        self.warnings.append(warning)

    # Executor callbacks

    async def before_step(self, step: Step, context: StepContext) -> None:
        await self.run("before_step", {"step": step.name, "tool": step.tool})

    async def after_step(self, result: StepResult) -> None:
        await self.run(
            "after_step",
            {"step": result.step_name, "tool": result.tool_type, "status": result.status.value},
        )
