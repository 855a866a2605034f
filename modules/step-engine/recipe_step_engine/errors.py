"""Exception taxonomy for the recipe step engine."""

from typing import Any


class RecipeEngineError(Exception):
    """Base class for every error raised by the engine."""

    code = "ENGINE_ERROR"

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context = context


# Structural errors: detected while validating or planning, abort the whole run


class RecipeValidationError(RecipeEngineError):
    """Raised when a recipe or step list is structurally invalid."""

    code = "VALIDATION_ERROR"

    def __init__(self, message: str, errors: list[str] | None = None, **context: Any):
        super().__init__(message, **context)
        self.errors = errors or [message]


class DuplicateStepError(RecipeValidationError):
    """Raised when two steps share a name."""

    code = "DUPLICATE_STEP"

    def __init__(self, step_name: str):
        super().__init__(f"Duplicate step name: {step_name}", step_name=step_name)
        self.step_name = step_name


class UnknownDependencyError(RecipeValidationError):
    """Raised when depends_on references a step that does not exist."""

    code = "UNKNOWN_DEPENDENCY"

    def __init__(self, step_name: str, dependency: str):
        super().__init__(
            f"Step '{step_name}' depends on unknown step '{dependency}'",
            step_name=step_name,
            dependency=dependency,
        )
        self.step_name = step_name
        self.dependency = dependency


class CyclicDependencyError(RecipeValidationError):
    """Raised when a step transitively depends on itself.

    ``cycle`` lists the members in traversal order and repeats the first
    member at the end, e.g. ``["a", "b", "c", "a"]``.
    """

    code = "CYCLIC_DEPENDENCY"

    def __init__(self, cycle: list[str]):
        super().__init__(f"Circular dependency detected: {' -> '.join(cycle)}", cycle=cycle)
        self.cycle = cycle

    @property
    def members(self) -> set[str]:
        """Distinct step names taking part in the cycle."""
        return set(self.cycle)


class VariableResolutionError(RecipeValidationError):
    """Raised when provided variables do not satisfy the recipe declarations."""

    code = "VARIABLE_ERROR"


class RecipeDependencyError(RecipeEngineError):
    """Raised when a required recipe dependency cannot be loaded."""

    code = "DEPENDENCY_LOAD_FAILED"


# Tool registry errors


class DuplicateToolError(RecipeEngineError):
    """Raised when a (type, name) pair is registered twice."""

    code = "DUPLICATE_TOOL"

    def __init__(self, tool_type: str, tool_name: str):
        super().__init__(
            f"Tool already registered: {tool_name} ({tool_type}). Unregister it first.",
            tool_type=tool_type,
            tool_name=tool_name,
        )
        self.tool_type = tool_type
        self.tool_name = tool_name


class ToolNotFoundError(RecipeEngineError):
    """Raised when resolving a tool that was never registered."""

    code = "TOOL_NOT_FOUND"

    def __init__(self, tool_type: str, tool_name: str):
        super().__init__(f"Tool not found: {tool_name} ({tool_type})", tool_type=tool_type, tool_name=tool_name)
        self.tool_type = tool_type
        self.tool_name = tool_name


class ToolDisabledError(ToolNotFoundError):
    """Raised when resolving a registered but disabled tool."""

    code = "TOOL_DISABLED"

    def __init__(self, tool_type: str, tool_name: str):
        RecipeEngineError.__init__(
            self, f"Tool is disabled: {tool_name} ({tool_type})", tool_type=tool_type, tool_name=tool_name
        )
        self.tool_type = tool_type
        self.tool_name = tool_name


# Step execution errors


class StepValidationError(RecipeEngineError):
    """Raised when a tool rejects a step's configuration. Never retried."""

    code = "VALIDATION_ERROR"

    def __init__(self, step_name: str, errors: list[str]):
        super().__init__(f"Step validation failed: {', '.join(errors)}", step_name=step_name)
        self.step_name = step_name
        self.errors = errors


class ToolExecutionError(RecipeEngineError):
    """Raised when a tool reports a failed execution without raising itself."""

    code = "TOOL_EXECUTION_FAILED"


class StepExecutionError(RecipeEngineError):
    """Raised by the step runner once a step has reached the failed state.

    The terminal ``StepResult`` is always attached so callers can report it.
    """

    code = "STEP_FAILED"

    def __init__(
        self,
        message: str,
        step_name: str,
        tool_type: str,
        result: Any = None,
        cause: BaseException | None = None,
    ):
        super().__init__(message, step_name=step_name, tool_type=tool_type)
        self.step_name = step_name
        self.tool_type = tool_type
        self.result = result
        self.__cause__ = cause
