"""Engine configuration blocks."""

from dataclasses import dataclass
from dataclasses import field
from pathlib import Path
from typing import Any


@dataclass
class RetryPolicy:
    """Exponential backoff used between step attempts.

    delay = min(base_delay * 2**attempt, max_delay) +/- jitter, never below min_delay.
    All values in seconds.
    """

    base_delay: float = 1.0
    max_delay: float = 30.0
    jitter: float = 0.25  # Symmetric fraction of the delay
    min_delay: float = 0.1

    def validate(self) -> list[str]:
        """Validate retry policy."""
        errors = []
        if self.base_delay < 0:
            errors.append(f"retry.base_delay must be >= 0, got {self.base_delay}")
        if self.max_delay < self.base_delay:
            errors.append(f"retry.max_delay must be >= base_delay, got {self.max_delay} < {self.base_delay}")
        if not 0 <= self.jitter < 1:
            errors.append(f"retry.jitter must be in [0, 1), got {self.jitter}")
        if self.min_delay < 0:
            errors.append(f"retry.min_delay must be >= 0, got {self.min_delay}")
        return errors


@dataclass
class ExecutorConfig:
    """Step executor settings. Recipe settings and call options override these."""

    max_concurrency: int = 10
    default_timeout: float | None = 30.0  # Seconds per attempt, None disables
    default_retries: int = 3
    continue_on_error: bool = False
    enable_parallel_execution: bool = True
    collect_metrics: bool = True
    enable_progress_tracking: bool = True
    memory_warning_threshold_mb: int = 1024
    trace_memory: bool = False  # Process-wide tracemalloc while a run collects metrics
    retry: RetryPolicy = field(default_factory=RetryPolicy)

    def validate(self) -> list[str]:
        """Validate executor configuration."""
        errors = []
        if self.max_concurrency < 1:
            errors.append(f"executor.max_concurrency must be >= 1, got {self.max_concurrency}")
        if self.default_timeout is not None and self.default_timeout <= 0:
            errors.append(f"executor.default_timeout must be positive or null, got {self.default_timeout}")
        if self.default_retries < 0:
            errors.append(f"executor.default_retries must be >= 0, got {self.default_retries}")
        if self.memory_warning_threshold_mb < 1:
            errors.append(
                f"executor.memory_warning_threshold_mb must be >= 1, got {self.memory_warning_threshold_mb}"
            )
        errors.extend(self.retry.validate())
        return errors


@dataclass
class RegistryConfig:
    """Tool registry cache settings (seconds)."""

    max_cache_size: int = 100
    cache_ttl: float = 30 * 60
    sweep_interval: float = 10 * 60
    enable_instance_reuse: bool = True

    def validate(self) -> list[str]:
        """Validate registry configuration."""
        errors = []
        if self.max_cache_size < 1:
            errors.append(f"registry.max_cache_size must be >= 1, got {self.max_cache_size}")
        if self.cache_ttl <= 0:
            errors.append(f"registry.cache_ttl must be positive, got {self.cache_ttl}")
        if self.sweep_interval <= 0:
            errors.append(f"registry.sweep_interval must be positive, got {self.sweep_interval}")
        return errors


@dataclass
class EngineConfig:
    """Top-level configuration for a RecipeEngine."""

    executor: ExecutorConfig = field(default_factory=ExecutorConfig)
    registry: RegistryConfig = field(default_factory=RegistryConfig)
    working_dir: Path = field(default_factory=Path.cwd)

    def validate(self) -> list[str]:
        """Validate the whole configuration tree."""
        errors = []
        errors.extend(self.executor.validate())
        errors.extend(self.registry.validate())
        return errors

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "EngineConfig":
        """Build configuration from a plain mapping (e.g. parsed settings file)."""
        data = dict(data or {})

        executor_data = dict(data.get("executor") or {})
        if "retry" in executor_data and isinstance(executor_data["retry"], dict):
            executor_data["retry"] = RetryPolicy(**executor_data["retry"])
        executor = ExecutorConfig(**executor_data)

        registry = RegistryConfig(**(data.get("registry") or {}))

        working_dir = data.get("working_dir")
        config = cls(
            executor=executor,
            registry=registry,
            working_dir=Path(working_dir).expanduser() if working_dir else Path.cwd(),
        )
        return config
