"""Recipe step engine - dependency-ordered, concurrent execution of recipe steps."""

import logging
from typing import Any

from .aggregator import RecipeExecutionResult
from .aggregator import aggregate_results
from .cancellation import CancellationManager
from .cancellation import CancellationStatus
from .config import EngineConfig
from .config import ExecutorConfig
from .config import RegistryConfig
from .config import RetryPolicy
from .context import RecipeInfo
from .context import SkipReason
from .context import StepContext
from .context import StepError
from .context import StepExecutionOptions
from .context import StepResult
from .context import StepStatus
from .engine import RecipeEngine
from .engine import RecipeExecutionOptions
from .errors import CyclicDependencyError
from .errors import DuplicateStepError
from .errors import DuplicateToolError
from .errors import RecipeDependencyError
from .errors import RecipeEngineError
from .errors import RecipeValidationError
from .errors import StepExecutionError
from .errors import StepValidationError
from .errors import ToolDisabledError
from .errors import ToolExecutionError
from .errors import ToolNotFoundError
from .errors import UnknownDependencyError
from .errors import VariableResolutionError
from .events import EventEmitter
from .executor import StepExecutor
from .expression_evaluator import ExpressionError
from .expression_evaluator import evaluate_condition
from .metrics import ExecutionMetrics
from .metrics import ExecutionProgress
from .models import ActionStep
from .models import CodeModStep
from .models import RecipeConfig
from .models import RecipeDependency
from .models import RecipeHooks
from .models import RecipeSettings
from .models import RecipeStep
from .models import Step
from .models import TemplateStep
from .models import VariableDefinition
from .models import parse_step
from .registry import ToolMetadata
from .registry import ToolRegistry
from .registry import ToolSearchCriteria
from .resolver import DependencyResolver
from .resolver import ExecutionPlan
from .tools import FunctionTool
from .tools import Tool
from .tools import ToolExecutionResult
from .tools import ToolValidationResult
from .variables import resolve_variables

logger = logging.getLogger(__name__)

__all__ = [
    "ActionStep",
    "CancellationManager",
    "CancellationStatus",
    "CodeModStep",
    "CyclicDependencyError",
    "DependencyResolver",
    "DuplicateStepError",
    "DuplicateToolError",
    "EngineConfig",
    "EventEmitter",
    "ExecutionMetrics",
    "ExecutionPlan",
    "ExecutionProgress",
    "ExecutorConfig",
    "ExpressionError",
    "FunctionTool",
    "RecipeConfig",
    "RecipeDependency",
    "RecipeDependencyError",
    "RecipeEngine",
    "RecipeEngineError",
    "RecipeExecutionOptions",
    "RecipeExecutionResult",
    "RecipeHooks",
    "RecipeInfo",
    "RecipeSettings",
    "RecipeStep",
    "RecipeValidationError",
    "RegistryConfig",
    "RetryPolicy",
    "SkipReason",
    "Step",
    "StepContext",
    "StepError",
    "StepExecutionError",
    "StepExecutionOptions",
    "StepExecutor",
    "StepResult",
    "StepStatus",
    "StepValidationError",
    "TemplateStep",
    "Tool",
    "ToolDisabledError",
    "ToolExecutionError",
    "ToolExecutionResult",
    "ToolMetadata",
    "ToolNotFoundError",
    "ToolRegistry",
    "ToolSearchCriteria",
    "ToolValidationResult",
    "UnknownDependencyError",
    "VariableDefinition",
    "VariableResolutionError",
    "aggregate_results",
    "create_engine",
    "evaluate_condition",
    "parse_step",
    "resolve_variables",
]


def create_engine(config: dict[str, Any] | None = None, **kwargs: Any) -> RecipeEngine:
    """
    Build a RecipeEngine from a plain configuration mapping.

    Args:
        config: Mapping with optional ``executor``, ``registry`` and ``working_dir`` keys
        **kwargs: Passed to RecipeEngine (``registry``, ``recipe_loader``)

    Returns:
        Configured engine
    """
    engine = RecipeEngine(EngineConfig.from_dict(config), **kwargs)
    logger.debug("Created recipe engine")
    return engine
