"""Recipe engine: validation, variables, hooks and step execution for one recipe."""

import logging
import time
import uuid
from collections.abc import Awaitable
from collections.abc import Callable
from collections.abc import Mapping
from dataclasses import dataclass
from dataclasses import field
from pathlib import Path
from typing import Any

from .aggregator import RecipeExecutionResult
from .aggregator import aggregate_results
from .cancellation import CancellationManager
from .config import EngineConfig
from .context import RecipeInfo
from .context import StepContext
from .context import StepExecutionOptions
from .errors import RecipeDependencyError
from .errors import RecipeValidationError
from .events import EventEmitter
from .executor import StepExecutor
from .hooks import HookRunner
from .metrics import ExecutionMetrics
from .metrics import ExecutionProgress
from .models import RecipeConfig
from .models import RecipeDependency
from .registry import ToolRegistry
from .variables import resolve_variables

logger = logging.getLogger(__name__)

RecipeLoader = Callable[[RecipeDependency], Awaitable[RecipeConfig | None]]


@dataclass
class RecipeExecutionOptions:
    """Per-run options for ``RecipeEngine.execute_recipe``."""

    dry_run: bool = False
    force: bool = False
    continue_on_error: bool | None = None  # Overrides recipe settings and executor config
    retries: int | None = None
    timeout: float | None = None  # Seconds per step attempt
    execution_id: str | None = None
    project_root: Path | None = None
    environment: dict[str, str] = field(default_factory=dict)


class RecipeEngine:
    """Runs recipes against a tool registry.

    The engine owns a StepExecutor and shares one EventEmitter between the
    executor, its runner and the cancellation manager, so observers
    registered on ``engine.events`` see the whole run.
    """

    def __init__(
        self,
        config: EngineConfig | None = None,
        registry: ToolRegistry | None = None,
        recipe_loader: RecipeLoader | None = None,
    ):
        """
        Initialize engine.

        Args:
            config: Engine configuration (defaults apply when omitted)
            registry: Tool registry; one is created from ``config.registry`` when omitted
            recipe_loader: Async callable loading a recipe dependency
        """
        self.config = config or EngineConfig()
        errors = self.config.validate()
        if errors:
            raise RecipeValidationError(f"Invalid engine configuration: {'; '.join(errors)}", errors=errors)

        self.registry = registry or ToolRegistry(self.config.registry)
        self.recipe_loader = recipe_loader
        self.events = EventEmitter()
        self.cancellation = CancellationManager(self.events)
        self.executor = StepExecutor(self.registry, self.config.executor, self.events, self.cancellation)

    async def __aenter__(self) -> "RecipeEngine":
        self.registry.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    async def close(self) -> None:
        """Cancel running executions and release every cached tool."""
        await self.cancellation.cancel_all_executions()
        await self.registry.close()

    # Loading and validation

    def load_recipe(self, recipe: RecipeConfig | Mapping[str, Any] | Path | str) -> RecipeConfig:
        """Accept a parsed recipe, a recipe mapping or a path to a YAML file."""
        if isinstance(recipe, RecipeConfig):
            return recipe
        try:
            if isinstance(recipe, (str, Path)):
                return RecipeConfig.from_yaml(Path(recipe))
            return RecipeConfig.from_dict(dict(recipe))
        except (ValueError, TypeError) as e:
            raise RecipeValidationError(f"Invalid recipe document: {e}") from e

    def validate_recipe(self, recipe: RecipeConfig) -> None:
        """
        Reject a recipe that cannot run.

        Graph problems are reported first with their specific exception type,
        then every remaining problem is reported together.

        Raises:
            DuplicateStepError, UnknownDependencyError, CyclicDependencyError: Graph problems
            RecipeValidationError: Any other structural problem
        """
        resolver = self.executor.resolver
        if recipe.steps:
            resolver.detect_cycles(resolver.build_dependency_graph(recipe.steps))

        errors = recipe.validate()
        if errors:
            raise RecipeValidationError(
                f"Recipe validation failed for '{recipe.name or '<unnamed>'}': {'; '.join(errors)}",
                errors=errors,
                recipe=recipe.name,
            )

    async def load_dependencies(self, recipe: RecipeConfig) -> tuple[list[RecipeConfig], list[str]]:
        """
        Load declared recipe dependencies through the injected loader.

        Returns:
            (loaded recipes, warnings for optional dependencies that failed)

        Raises:
            RecipeDependencyError: If a required dependency cannot be loaded
        """
        loaded: list[RecipeConfig] = []
        warnings: list[str] = []
        if not recipe.dependencies:
            return loaded, warnings

        for dependency in recipe.dependencies:
            try:
                if self.recipe_loader is None:
                    raise RecipeDependencyError("No recipe loader configured", dependency=dependency.name)
                dependency_recipe = await self.recipe_loader(dependency)
                if dependency_recipe is None:
                    raise RecipeDependencyError("Loader returned nothing", dependency=dependency.name)
            except Exception as e:
                message = f"Failed to load dependency '{dependency.name}': {e}"
                if dependency.optional:
                    logger.warning(message)
                    warnings.append(message)
                    continue
                raise RecipeDependencyError(message, dependency=dependency.name) from e
            logger.debug(f"Loaded dependency {dependency.name} for recipe {recipe.name}")
            loaded.append(dependency_recipe)
        return loaded, warnings

    # Execution

    async def execute_recipe(
        self,
        recipe: RecipeConfig | Mapping[str, Any] | Path | str,
        variables: Mapping[str, Any] | None = None,
        options: RecipeExecutionOptions | None = None,
    ) -> RecipeExecutionResult:
        """
        Execute a recipe.

        Args:
            recipe: Recipe, recipe mapping or path to a recipe YAML file
            variables: Provided variable values
            options: Run options

        Returns:
            RecipeExecutionResult. Step failures are reported in the result, not raised.

        Raises:
            RecipeValidationError: (and subclasses) for structural problems, before any step runs
            RecipeDependencyError: If a required recipe dependency cannot be loaded
        """
        options = options or RecipeExecutionOptions()
        started = time.perf_counter()

        recipe = self.load_recipe(recipe)
        self.validate_recipe(recipe)
        loaded, warnings = await self.load_dependencies(recipe)
        resolved = resolve_variables(recipe, variables)

        execution_id = options.execution_id or self.executor.generate_execution_id()
        context = StepContext(
            recipe=RecipeInfo(id=str(uuid.uuid4()), name=recipe.name, version=recipe.version),
            variables=dict(resolved),
            project_root=Path(options.project_root or self.config.working_dir),
            recipe_variables=dict(resolved),
            environment=dict(options.environment),
            dry_run=options.dry_run,
            force=options.force,
        )

        logger.info(
            f"Executing recipe {recipe.name} [{execution_id}]" + (" (dry run)" if options.dry_run else "")
        )
        hooks = HookRunner(self.registry, recipe.hooks, context)
        await hooks.run("before_recipe", {"recipe": recipe.name, "execution_id": execution_id})

        step_options = StepExecutionOptions(
            retries=options.retries,
            timeout=options.timeout,
            continue_on_error=options.continue_on_error,
            execution_id=execution_id,
            settings=recipe.settings,
            before_step=hooks.before_step if recipe.hooks.before_step else None,
            after_step=hooks.after_step if recipe.hooks.after_step else None,
        )
        step_results = await self.executor.execute_steps(recipe.steps, context, step_options)

        await hooks.run("after_recipe", {"recipe": recipe.name, "execution_id": execution_id})

        result = aggregate_results(
            execution_id=execution_id,
            recipe=recipe,
            step_results=step_results,
            variables=resolved,
            start_time=started,
            context=context,
            metrics=self.executor.get_metrics(),
            warnings=[*warnings, *hooks.warnings],
        )
        if not result.success:
            await hooks.run("on_error", {"recipe": recipe.name, "execution_id": execution_id, "errors": result.errors})
            # on_error warnings arrive after aggregation
            result.warnings.extend(w for w in hooks.warnings if w not in result.warnings)

        result.metadata["recipe_id"] = context.recipe.id
        result.metadata["dependencies"] = [dependency.name for dependency in loaded]

        logger.info(
            f"Recipe {recipe.name} [{execution_id}] "
            f"{'succeeded' if result.success else 'failed'} in {result.duration:.3f}s"
        )
        return result

    # Observability and control

    def get_metrics(self) -> ExecutionMetrics | None:
        """Metrics of the most recent run."""
        return self.executor.get_metrics()

    def get_progress(self) -> ExecutionProgress | None:
        """Progress of the current or most recent run."""
        return self.executor.get_progress()

    async def cancel_execution(self, execution_id: str) -> bool:
        return await self.executor.cancel_execution(execution_id)

    async def cancel_all_executions(self) -> int:
        return await self.executor.cancel_all_executions()
