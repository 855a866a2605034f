"""Variable resolution against recipe declarations, and ``{{var}}`` substitution."""

import json
import re
from collections.abc import Mapping
from typing import Any

from .errors import VariableResolutionError
from .models import RecipeConfig
from .models import VariableDefinition

_TRUE_STRINGS = {"true", "yes", "y", "1", "on"}
_FALSE_STRINGS = {"false", "no", "n", "0", "off"}


def _coerce(value: Any, definition: VariableDefinition) -> Any:
    """Convert string input (e.g. from a command line) to the declared type when unambiguous."""
    if not isinstance(value, str):
        return value
    if definition.type == "number":
        try:
            return int(value)
        except ValueError:
            try:
                return float(value)
            except ValueError:
                return value
    if definition.type == "boolean":
        lowered = value.strip().lower()
        if lowered in _TRUE_STRINGS:
            return True
        if lowered in _FALSE_STRINGS:
            return False
    return value


def validate_variable_value(name: str, value: Any, definition: VariableDefinition) -> str | None:
    """Return an error message if ``value`` violates the declaration, else None."""
    kind = definition.type

    if kind in ("string", "file", "directory"):
        if not isinstance(value, str):
            return f"Variable '{name}' must be a string, got {type(value).__name__}"
        if definition.pattern and not re.fullmatch(definition.pattern, value):
            return f"Variable '{name}' does not match pattern {definition.pattern!r}"
        length = len(value)
        if definition.min is not None and length < definition.min:
            return f"Variable '{name}' must be at least {definition.min:g} characters"
        if definition.max is not None and length > definition.max:
            return f"Variable '{name}' must be at most {definition.max:g} characters"

    elif kind == "number":
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            return f"Variable '{name}' must be a number, got {type(value).__name__}"
        if definition.min is not None and value < definition.min:
            return f"Variable '{name}' must be >= {definition.min:g}"
        if definition.max is not None and value > definition.max:
            return f"Variable '{name}' must be <= {definition.max:g}"

    elif kind == "boolean":
        if not isinstance(value, bool):
            return f"Variable '{name}' must be a boolean, got {type(value).__name__}"

    elif kind == "enum":
        if value not in (definition.values or []):
            allowed = ", ".join(str(v) for v in definition.values or [])
            return f"Variable '{name}' must be one of: {allowed}"

    elif kind == "array":
        if not isinstance(value, list):
            return f"Variable '{name}' must be an array, got {type(value).__name__}"
        if definition.min is not None and len(value) < definition.min:
            return f"Variable '{name}' must have at least {definition.min:g} items"
        if definition.max is not None and len(value) > definition.max:
            return f"Variable '{name}' must have at most {definition.max:g} items"

    elif kind == "object":
        if not isinstance(value, dict):
            return f"Variable '{name}' must be an object, got {type(value).__name__}"

    return None


def resolve_variables(recipe: RecipeConfig, provided: Mapping[str, Any] | None = None) -> dict[str, Any]:
    """
    Resolve the variables a run will use.

    Provided values win over defaults; undeclared provided values pass
    through untouched. Every problem is collected before raising.

    Args:
        recipe: Recipe whose declarations apply
        provided: Caller-supplied values

    Returns:
        Resolved variables

    Raises:
        VariableResolutionError: Listing every missing or invalid variable
    """
    provided = dict(provided or {})
    resolved: dict[str, Any] = {}
    errors: list[str] = []

    for name, definition in recipe.variables.items():
        if name in provided and provided[name] is not None:
            value = _coerce(provided.pop(name), definition)
        else:
            provided.pop(name, None)
            if definition.default is not None:
                value = definition.default
            elif definition.required:
                errors.append(f"Missing required variable: {name}")
                continue
            else:
                continue

        error = validate_variable_value(name, value, definition)
        if error:
            errors.append(error)
            continue
        resolved[name] = value

    if errors:
        raise VariableResolutionError(
            f"Variable resolution failed for recipe '{recipe.name}': {'; '.join(errors)}",
            errors=errors,
        )

    resolved.update(provided)
    return resolved


_VARIABLE_PATTERN = re.compile(r"\{\{\s*(\w+(?:\.\w+)*)\s*\}\}")


def substitute_variables(template: str, context: Mapping[str, Any]) -> str:
    """
    Replace {{variable}} references with context values.

    Args:
        template: String with {{variable}} placeholders
        context: Mapping with variable values; dotted references walk nested mappings

    Returns:
        String with variables substituted

    Raises:
        VariableResolutionError if a reference is undefined
    """

    def replace(match: re.Match) -> str:
        var_ref = match.group(1)
        value: Any = context
        path_so_far = []
        for part in var_ref.split("."):
            path_so_far.append(part)
            if isinstance(value, Mapping) and part in value:
                value = value[part]
            elif isinstance(value, Mapping):
                available = ", ".join(sorted(str(k) for k in value.keys()))
                raise VariableResolutionError(
                    f"Undefined variable: {{{{{var_ref}}}}}. Key '{part}' not found. "
                    f"Available keys at '{'.'.join(path_so_far[:-1]) or 'root'}': {available}"
                )
            else:
                parent_path = ".".join(path_so_far[:-1])
                raise VariableResolutionError(
                    f"Cannot access '{part}' on {{{{{parent_path}}}}} - it's a {type(value).__name__}, not a mapping"
                )
        # Use json.dumps for dict/list to produce valid JSON, not Python repr
        if isinstance(value, (dict, list)):
            return json.dumps(value)
        return str(value)

    return _VARIABLE_PATTERN.sub(replace, template)


def substitute_recursive(value: Any, context: Mapping[str, Any]) -> Any:
    """Apply ``substitute_variables`` to every string inside nested dicts and lists."""
    if isinstance(value, str):
        return substitute_variables(value, context)
    if isinstance(value, dict):
        return {k: substitute_recursive(v, context) for k, v in value.items()}
    if isinstance(value, list):
        return [substitute_recursive(item, context) for item in value]
    return value
