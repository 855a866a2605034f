"""Execution metrics and progress tracking."""

import copy
import logging
import tracemalloc
from dataclasses import dataclass
from dataclasses import field

from .context import StepResult
from .context import StepStatus

logger = logging.getLogger(__name__)

# Trackers currently holding the tracing this module started
_tracing_holders = 0


def _acquire_tracing() -> bool:
    """Start tracemalloc unless the host already traces. Returns True if a hold was taken."""
    global _tracing_holders
    if _tracing_holders == 0:
        if tracemalloc.is_tracing():
            return False
        tracemalloc.start()
    _tracing_holders += 1
    return True


def _release_tracing() -> None:
    global _tracing_holders
    _tracing_holders -= 1
    if _tracing_holders == 0:
        tracemalloc.stop()


@dataclass
class MemoryUsage:
    """Traced Python heap usage in bytes."""

    start: int = 0
    end: int = 0
    peak: int = 0
    average: float = 0.0
    delta: int = 0
    samples: int = 0


@dataclass
class ParallelizationMetrics:
    max_concurrent_steps: int = 0
    average_concurrent_steps: float = 0.0
    parallel_phases: int = 0


@dataclass
class ErrorMetrics:
    total_failures: int = 0  # Failed attempts, including ones later retried
    total_retries: int = 0
    permanent_failures: list[str] = field(default_factory=list)
    recovered_after_retries: list[str] = field(default_factory=list)


@dataclass
class DependencyMetrics:
    resolution_time: float = 0.0  # Seconds
    cycles_detected: int = 0
    max_depth: int = 0


@dataclass
class ExecutionMetrics:
    """Statistics for one run of the step executor. Times in seconds."""

    total_execution_time: float = 0.0
    step_execution_times: dict[str, float] = field(default_factory=dict)
    memory_usage: MemoryUsage = field(default_factory=MemoryUsage)
    parallelization: ParallelizationMetrics = field(default_factory=ParallelizationMetrics)
    errors: ErrorMetrics = field(default_factory=ErrorMetrics)
    dependencies: DependencyMetrics = field(default_factory=DependencyMetrics)


@dataclass
class ExecutionProgress:
    """Live view of where a run is."""

    current_phase: int = 0
    total_phases: int = 0
    total_steps: int = 0
    running_steps: list[str] = field(default_factory=list)
    completed_steps: list[str] = field(default_factory=list)
    failed_steps: list[str] = field(default_factory=list)
    skipped_steps: list[str] = field(default_factory=list)
    cancelled_steps: list[str] = field(default_factory=list)
    progress_percentage: int = 0
    phase_description: str = "Initializing..."

    @property
    def finished_count(self) -> int:
        return len(self.completed_steps) + len(self.failed_steps) + len(self.skipped_steps) + len(self.cancelled_steps)


class MetricsTracker:
    """Accumulates metrics and progress for the current or most recent run."""

    def __init__(
        self,
        collect_metrics: bool = True,
        track_progress: bool = True,
        memory_warning_threshold_mb: int = 1024,
        trace_memory: bool = False,
    ):
        self.collect_metrics = collect_metrics
        self.track_progress = track_progress
        self.memory_warning_threshold_mb = memory_warning_threshold_mb
        self.trace_memory = trace_memory
        self.metrics: ExecutionMetrics | None = None
        self.progress: ExecutionProgress | None = None
        self._concurrency_samples: list[int] = []
        self._running: set[str] = set()
        self._memory_total = 0
        self._holds_tracing = False
        self._memory_warned = False

    # Lifecycle

    def initialize(self, total_steps: int) -> None:
        """Reset counters for a new run. Memory tracing starts here when enabled."""
        self._concurrency_samples = []
        self._running = set()
        self._memory_total = 0
        self._memory_warned = False
        self.metrics = ExecutionMetrics() if self.collect_metrics else None
        self.progress = ExecutionProgress(total_steps=total_steps) if self.track_progress else None

        if self.metrics is not None and self.trace_memory:
            if not self._holds_tracing:
                self._holds_tracing = _acquire_tracing()
            if tracemalloc.is_tracing():
                current, _ = tracemalloc.get_traced_memory()
                self.metrics.memory_usage.start = current
            self.sample_memory()

    def finalize(self, total_execution_time: float) -> None:
        """Stamp final timing and memory figures."""
        if self.progress is not None:
            self.progress.running_steps.clear()
            self.progress.phase_description = "Completed"
            self._update_percentage()

        if self.metrics is None:
            return
        self.metrics.total_execution_time = total_execution_time
        self.sample_memory()
        memory = self.metrics.memory_usage
        if self.trace_memory and tracemalloc.is_tracing():
            memory.end = tracemalloc.get_traced_memory()[0]
        memory.delta = memory.end - memory.start
        if self._concurrency_samples:
            self.metrics.parallelization.average_concurrent_steps = sum(self._concurrency_samples) / len(
                self._concurrency_samples
            )
        if self._holds_tracing:
            _release_tracing()
            self._holds_tracing = False

    def sample_memory(self) -> None:
        """Record one memory sample and warn once when over the threshold."""
        if self.metrics is None or not self.trace_memory or not tracemalloc.is_tracing():
            return
        current, peak = tracemalloc.get_traced_memory()
        memory = self.metrics.memory_usage
        memory.samples += 1
        self._memory_total += current
        memory.average = self._memory_total / memory.samples
        memory.peak = max(memory.peak, peak, current)

        used_mb = current / (1024 * 1024)
        if used_mb > self.memory_warning_threshold_mb and not self._memory_warned:
            self._memory_warned = True
            logger.warning(
                f"Memory usage {used_mb:.1f}MB exceeds warning threshold {self.memory_warning_threshold_mb}MB"
            )

    # Planning

    def record_plan(self, total_phases: int, max_depth: int, resolution_time: float) -> None:
        if self.metrics is not None:
            self.metrics.dependencies.resolution_time = resolution_time
            self.metrics.dependencies.max_depth = max_depth
        if self.progress is not None:
            self.progress.total_phases = total_phases

    def record_cycle_detected(self) -> None:
        if self.metrics is not None:
            self.metrics.dependencies.cycles_detected += 1

    # Phases and steps

    def phase_started(self, index: int, step_count: int, parallel: bool) -> None:
        if self.metrics is not None and parallel and step_count > 1:
            self.metrics.parallelization.parallel_phases += 1
        if self.progress is not None:
            self.progress.current_phase = index + 1
            mode = "parallel" if parallel and step_count > 1 else "sequential"
            self.progress.phase_description = (
                f"Phase {index + 1}/{self.progress.total_phases}: {step_count} step(s), {mode}"
            )

    def phase_completed(self, index: int) -> None:
        self.sample_memory()

    def step_started(self, step_name: str) -> None:
        self._running.add(step_name)
        if self.progress is not None:
            self.progress.running_steps.append(step_name)
        if self.metrics is not None:
            running = len(self._running)
            self._concurrency_samples.append(running)
            parallelization = self.metrics.parallelization
            parallelization.max_concurrent_steps = max(parallelization.max_concurrent_steps, running)

    def step_finished(self, result: StepResult) -> None:
        """Fold a terminal step result into the counters."""
        self._running.discard(result.step_name)
        if self.progress is not None:
            if result.step_name in self.progress.running_steps:
                self.progress.running_steps.remove(result.step_name)
            target = {
                StepStatus.COMPLETED: self.progress.completed_steps,
                StepStatus.FAILED: self.progress.failed_steps,
                StepStatus.SKIPPED: self.progress.skipped_steps,
                StepStatus.CANCELLED: self.progress.cancelled_steps,
            }.get(result.status)
            if target is not None:
                target.append(result.step_name)
            self._update_percentage()

        if self.metrics is None:
            return
        if result.duration is not None:
            self.metrics.step_execution_times[result.step_name] = result.duration
        errors = self.metrics.errors
        errors.total_retries += result.retry_count
        if result.status == StepStatus.FAILED:
            errors.total_failures += result.retry_count + 1
            errors.permanent_failures.append(result.step_name)
        elif result.status == StepStatus.COMPLETED and result.retry_count > 0:
            errors.total_failures += result.retry_count
            errors.recovered_after_retries.append(result.step_name)

    def _update_percentage(self) -> None:
        progress = self.progress
        if progress is None:
            return
        if progress.total_steps == 0:
            progress.progress_percentage = 100
            return
        progress.progress_percentage = round(progress.finished_count / progress.total_steps * 100)

    # Snapshots

    def get_metrics(self) -> ExecutionMetrics | None:
        """Copy of the current metrics; later updates do not affect it."""
        return copy.deepcopy(self.metrics)

    def get_progress(self) -> ExecutionProgress | None:
        """Copy of the current progress."""
        return copy.deepcopy(self.progress)
