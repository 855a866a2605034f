"""Recipe data models and YAML parsing."""

import re
from dataclasses import dataclass
from dataclasses import field
from dataclasses import fields
from pathlib import Path
from typing import Any
from typing import ClassVar

import yaml

VARIABLE_TYPES = ("string", "number", "boolean", "enum", "array", "object", "file", "directory")

_CAMEL_RE = re.compile(r"(?<=[a-z0-9])([A-Z])")
_VERSION_RE = re.compile(r"^\d+\.\d+\.\d+(?:[-+][0-9A-Za-z.-]+)?$")


def _snake_case(key: str) -> str:
    """Map a camelCase document key (``dependsOn``) to its field name (``depends_on``)."""
    return _CAMEL_RE.sub(r"_\1", key).lower()


def _normalize_keys(data: dict[str, Any]) -> dict[str, Any]:
    return {_snake_case(key): value for key, value in data.items()}


def _is_identifier(name: str) -> bool:
    return bool(name) and name.replace("-", "").replace("_", "").replace(".", "").isalnum()


@dataclass
class VariableDefinition:
    """Typed declaration of a recipe variable."""

    type: str = "string"
    required: bool = False
    default: Any = None
    description: str | None = None
    pattern: str | None = None  # Regex for string values
    values: list[Any] | None = None  # Allowed values for enum
    min: float | None = None  # Number bound, or length bound for strings/arrays
    max: float | None = None

    def validate(self, name: str) -> list[str]:
        """Validate the declaration itself (not a provided value)."""
        errors = []
        if self.type not in VARIABLE_TYPES:
            errors.append(f"Variable '{name}': type must be one of {', '.join(VARIABLE_TYPES)}, got '{self.type}'")
        if self.type == "enum" and not self.values:
            errors.append(f"Variable '{name}': enum variables require 'values'")
        if self.pattern is not None:
            try:
                re.compile(self.pattern)
            except re.error as e:
                errors.append(f"Variable '{name}': invalid pattern: {e}")
        if self.min is not None and self.max is not None and self.min > self.max:
            errors.append(f"Variable '{name}': min must be <= max, got {self.min} > {self.max}")
        return errors


@dataclass
class RecipeDependency:
    """Another recipe that must be loaded before this one runs."""

    name: str
    version: str | None = None
    optional: bool = False
    type: str | None = None
    url: str | None = None
    description: str | None = None


@dataclass
class RecipeHooks:
    """Lifecycle hooks. Each entry names an action tool to invoke."""

    before_recipe: list[str] = field(default_factory=list)
    after_recipe: list[str] = field(default_factory=list)
    before_step: list[str] = field(default_factory=list)
    after_step: list[str] = field(default_factory=list)
    on_error: list[str] = field(default_factory=list)

    def validate(self) -> list[str]:
        """Validate hook entries."""
        errors = []
        for hook_name in ("before_recipe", "after_recipe", "before_step", "after_step", "on_error"):
            entries = getattr(self, hook_name)
            if not isinstance(entries, list):
                errors.append(f"hooks.{hook_name} must be a list")
                continue
            for entry in entries:
                if not isinstance(entry, str) or not entry.strip():
                    errors.append(f"hooks.{hook_name} entries must be non-empty action names, got {entry!r}")
        return errors


@dataclass
class RecipeSettings:
    """Recipe-wide execution settings. Unset values fall back to the executor config."""

    timeout: float | None = None  # Seconds per step attempt
    retries: int | None = None
    continue_on_error: bool | None = None
    max_parallel_steps: int | None = None

    def validate(self) -> list[str]:
        """Validate settings."""
        errors = []
        if self.timeout is not None and self.timeout <= 0:
            errors.append(f"settings.timeout must be positive, got {self.timeout}")
        if self.retries is not None and (not isinstance(self.retries, int) or self.retries < 0):
            errors.append(f"settings.retries must be a non-negative integer, got {self.retries}")
        if self.max_parallel_steps is not None and self.max_parallel_steps < 1:
            errors.append(f"settings.max_parallel_steps must be >= 1, got {self.max_parallel_steps}")
        return errors


@dataclass(kw_only=True)
class Step:
    """Common attributes of every recipe step.

    Concrete steps are one of the variants registered in ``STEP_TYPES``; the
    ``tool`` class attribute is the document discriminant and ``tool_field``
    names the attribute holding the tool identifier.
    """

    tool: ClassVar[str] = ""
    tool_field: ClassVar[str] = ""

    name: str
    description: str | None = None
    when: str | None = None
    depends_on: list[str] = field(default_factory=list)
    parallel: bool = True  # Hint only, never changes phase placement
    continue_on_error: bool = False
    timeout: float | None = None  # Seconds per attempt
    retries: int | None = None
    tags: list[str] = field(default_factory=list)
    variables: dict[str, Any] = field(default_factory=dict)
    environment: dict[str, str] = field(default_factory=dict)

    @property
    def tool_name(self) -> str:
        """Identifier of the concrete tool this step is routed to."""
        return getattr(self, self.tool_field, "") if self.tool_field else ""

    def validate(self) -> list[str]:
        """Validate step structure and constraints."""
        errors = []

        if not self.name:
            errors.append("Step missing required field: name")
        elif not _is_identifier(self.name):
            errors.append(f"Step name must be alphanumeric with hyphens/underscores/dots, got '{self.name}'")

        if self.tool_field and not self.tool_name:
            errors.append(f"Step '{self.name}': {self.tool} steps require '{self.tool_field}' field")

        if self.when is not None and (not isinstance(self.when, str) or not self.when.strip()):
            errors.append(f"Step '{self.name}': when must be a non-empty expression")

        if not isinstance(self.depends_on, list) or not all(isinstance(d, str) for d in self.depends_on):
            errors.append(f"Step '{self.name}': depends_on must be a list of step names")

        if self.timeout is not None and self.timeout <= 0:
            errors.append(f"Step '{self.name}': timeout must be positive")

        if self.retries is not None and (not isinstance(self.retries, int) or self.retries < 0):
            errors.append(f"Step '{self.name}': retries must be a non-negative integer")

        return errors


@dataclass(kw_only=True)
class TemplateStep(Step):
    """Render a template into the project."""

    tool: ClassVar[str] = "template"
    tool_field: ClassVar[str] = "template"

    template: str = ""
    engine: str = "auto"
    output_dir: str | None = None
    overwrite: bool = False
    exclude: list[str] = field(default_factory=list)

    def validate(self) -> list[str]:
        errors = super().validate()
        if self.engine not in ("ejs", "liquid", "jinja", "auto"):
            errors.append(f"Step '{self.name}': engine must be 'ejs', 'liquid', 'jinja' or 'auto', got '{self.engine}'")
        return errors


@dataclass(kw_only=True)
class ActionStep(Step):
    """Invoke a named action with parameters."""

    tool: ClassVar[str] = "action"
    tool_field: ClassVar[str] = "action"

    action: str = ""
    parameters: dict[str, Any] = field(default_factory=dict)
    dry_run: bool = False
    force: bool = False


@dataclass(kw_only=True)
class CodeModStep(Step):
    """Apply a code transformation to matching files."""

    tool: ClassVar[str] = "codemod"
    tool_field: ClassVar[str] = "codemod"

    codemod: str = ""
    files: list[str] = field(default_factory=list)
    backup: bool = True
    parser: str = "auto"
    parameters: dict[str, Any] = field(default_factory=dict)
    force: bool = False

    def validate(self) -> list[str]:
        errors = super().validate()
        if not self.files:
            errors.append(f"Step '{self.name}': codemod steps require at least one file pattern in 'files'")
        if self.parser not in ("typescript", "javascript", "json", "auto"):
            errors.append(f"Step '{self.name}': parser must be 'typescript', 'javascript', 'json' or 'auto'")
        return errors


@dataclass(kw_only=True)
class RecipeStep(Step):
    """Run another recipe as a sub-recipe."""

    tool: ClassVar[str] = "recipe"
    tool_field: ClassVar[str] = "recipe"

    recipe: str = ""
    version: str | None = None
    inherit_variables: bool = True
    variable_overrides: dict[str, Any] = field(default_factory=dict)


STEP_TYPES: dict[str, type[Step]] = {
    TemplateStep.tool: TemplateStep,
    ActionStep.tool: ActionStep,
    CodeModStep.tool: CodeModStep,
    RecipeStep.tool: RecipeStep,
}


def parse_step(step_data: dict[str, Any]) -> Step:
    """Parse a single step mapping, dispatching on its ``tool`` field."""
    if not isinstance(step_data, dict):
        raise ValueError("Each step must be a dictionary")

    data = _normalize_keys(step_data)
    tool = data.pop("tool", None)
    name = data.get("name", "<unnamed>")
    if tool not in STEP_TYPES:
        raise ValueError(f"Step '{name}': tool must be one of {', '.join(STEP_TYPES)}, got {tool!r}")

    step_cls = STEP_TYPES[tool]
    known = {f.name for f in fields(step_cls)}
    unknown = sorted(set(data) - known)
    if unknown:
        raise ValueError(f"Step '{name}': unknown field(s): {', '.join(unknown)}")

    if isinstance(data.get("depends_on"), str):
        data["depends_on"] = [data["depends_on"]]
    if "name" not in data:
        data["name"] = ""

    return step_cls(**data)


@dataclass
class RecipeConfig:
    """Represents a complete recipe document."""

    name: str
    version: str | None = None
    description: str | None = None
    author: str | None = None
    category: str | None = None
    tags: list[str] = field(default_factory=list)
    variables: dict[str, VariableDefinition] = field(default_factory=dict)
    steps: list[Step] = field(default_factory=list)
    dependencies: list[RecipeDependency] = field(default_factory=list)
    hooks: RecipeHooks = field(default_factory=RecipeHooks)
    settings: RecipeSettings = field(default_factory=RecipeSettings)

    @classmethod
    def _parse_variables(cls, variables_data: Any) -> dict[str, VariableDefinition]:
        if variables_data is None:
            return {}
        if not isinstance(variables_data, dict):
            raise ValueError("'variables' must be a dictionary")
        variables = {}
        for var_name, definition in variables_data.items():
            if definition is None:
                definition = {}
            if not isinstance(definition, dict):
                raise ValueError(f"Variable '{var_name}' must be a dictionary")
            variables[var_name] = VariableDefinition(**_normalize_keys(definition))
        return variables

    @classmethod
    def _parse_dependencies(cls, dependencies_data: Any) -> list[RecipeDependency]:
        if dependencies_data is None:
            return []
        if not isinstance(dependencies_data, list):
            raise ValueError("'dependencies' must be a list")
        dependencies = []
        for entry in dependencies_data:
            # Bare strings are shorthand for a required dependency
            if isinstance(entry, str):
                dependencies.append(RecipeDependency(name=entry))
            elif isinstance(entry, dict):
                dependencies.append(RecipeDependency(**_normalize_keys(entry)))
            else:
                raise ValueError("Each dependency must be a name or a dictionary")
        return dependencies

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RecipeConfig":
        """Build a recipe from an already-parsed document."""
        if not isinstance(data, dict):
            raise ValueError("Recipe must be a dictionary")

        steps_data = data.get("steps") or []
        if not isinstance(steps_data, list):
            raise ValueError("'steps' must be a list")

        hooks_data = data.get("hooks") or {}
        if not isinstance(hooks_data, dict):
            raise ValueError("'hooks' must be a dictionary")
        settings_data = data.get("settings") or {}
        if not isinstance(settings_data, dict):
            raise ValueError("'settings' must be a dictionary")

        version = data.get("version")
        return cls(
            name=data.get("name", ""),
            version=str(version) if version is not None else None,
            description=data.get("description"),
            author=data.get("author"),
            category=data.get("category"),
            tags=data.get("tags") or [],
            variables=cls._parse_variables(data.get("variables")),
            steps=[parse_step(sd) for sd in steps_data],
            dependencies=cls._parse_dependencies(data.get("dependencies")),
            hooks=RecipeHooks(**_normalize_keys(hooks_data)),
            settings=RecipeSettings(**_normalize_keys(settings_data)),
        )

    @classmethod
    def from_yaml(cls, path: Path) -> "RecipeConfig":
        """Load recipe from YAML file."""
        if not path.exists():
            raise FileNotFoundError(f"Recipe file not found: {path}")

        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f)

        if not isinstance(data, dict):
            raise ValueError("Recipe YAML must be a dictionary")

        return cls.from_dict(data)

    def validate(self) -> list[str]:
        """Validate recipe structure and constraints."""
        errors = []

        if not self.name:
            errors.append("Recipe missing required field: name")
        elif not _is_identifier(self.name):
            errors.append("Recipe name must be alphanumeric with hyphens/underscores/dots")

        if self.version and not _VERSION_RE.match(self.version):
            errors.append(f"Recipe version must follow semver format (MAJOR.MINOR.PATCH), got '{self.version}'")

        if not self.steps:
            errors.append("Recipe must have at least one step")

        for var_name, definition in self.variables.items():
            errors.extend(definition.validate(var_name))

        for step in self.steps:
            errors.extend(step.validate())

        # Check step name uniqueness
        step_names = [step.name for step in self.steps]
        duplicates = sorted({name for name in step_names if step_names.count(name) > 1})
        if duplicates:
            errors.append(f"Duplicate step names: {', '.join(duplicates)}")

        # Validate depends_on references
        name_set = set(step_names)
        for step in self.steps:
            if not isinstance(step.depends_on, list):
                continue
            for dependency in step.depends_on:
                if dependency not in name_set:
                    errors.append(f"Step '{step.name}': depends_on references unknown step '{dependency}'")
            if step.name in step.depends_on:
                errors.append(f"Step '{step.name}': cannot depend on itself")

        for dependency in self.dependencies:
            if not dependency.name:
                errors.append("Recipe dependency missing required field: name")

        errors.extend(self.hooks.validate())
        errors.extend(self.settings.validate())

        return errors

    def get_step(self, name: str) -> Step | None:
        """Get step by name."""
        for step in self.steps:
            if step.name == name:
                return step
        return None
