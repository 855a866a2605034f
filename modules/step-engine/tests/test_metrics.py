"""Tests for metrics and progress tracking."""

import logging
import tracemalloc

import pytest

from recipe_step_engine.context import StepError
from recipe_step_engine.context import StepResult
from recipe_step_engine.context import StepStatus
from recipe_step_engine.metrics import MetricsTracker


def finished(name: str, status: StepStatus, retries: int = 0) -> StepResult:
    result = StepResult(step_name=name, tool_type="action", retry_count=retries)
    error = StepError("boom") if status == StepStatus.FAILED else None
    return result.finish(status, error=error)


class TestProgress:
    """Progress counters and percentage."""

    def test_percentage_follows_finished_steps(self):
        tracker = MetricsTracker(collect_metrics=False)
        tracker.initialize(4)
        tracker.record_plan(total_phases=2, max_depth=1, resolution_time=0.001)
        tracker.phase_started(0, 2, parallel=True)

        tracker.step_started("a")
        tracker.step_started("b")
        assert tracker.get_progress().running_steps == ["a", "b"]

        tracker.step_finished(finished("a", StepStatus.COMPLETED))
        tracker.step_finished(finished("b", StepStatus.FAILED))
        progress = tracker.get_progress()

        assert progress.progress_percentage == 50
        assert progress.running_steps == []
        assert progress.failed_steps == ["b"]
        assert progress.current_phase == 1
        assert progress.phase_description == "Phase 1/2: 2 step(s), parallel"

    def test_finalize(self):
        tracker = MetricsTracker(collect_metrics=False)
        tracker.initialize(0)
        tracker.finalize(0.5)

        progress = tracker.get_progress()
        assert progress.progress_percentage == 100
        assert progress.phase_description == "Completed"

    def test_disabled_tracking(self):
        tracker = MetricsTracker(collect_metrics=False, track_progress=False)
        tracker.initialize(1)
        tracker.step_started("a")
        tracker.step_finished(finished("a", StepStatus.COMPLETED))

        assert tracker.get_progress() is None
        assert tracker.get_metrics() is None


class TestMetrics:
    """Timing, error, concurrency and memory figures."""

    def test_error_counts(self):
        tracker = MetricsTracker(track_progress=False)
        tracker.initialize(3)

        tracker.step_finished(finished("ok", StepStatus.COMPLETED))
        tracker.step_finished(finished("flaky", StepStatus.COMPLETED, retries=2))
        tracker.step_finished(finished("broken", StepStatus.FAILED, retries=1))
        tracker.finalize(1.0)

        errors = tracker.get_metrics().errors
        assert errors.total_retries == 3
        assert errors.total_failures == 4
        assert errors.recovered_after_retries == ["flaky"]
        assert errors.permanent_failures == ["broken"]

    def test_concurrency(self):
        tracker = MetricsTracker()
        tracker.initialize(3)
        tracker.phase_started(0, 3, parallel=True)
        for name in ("a", "b", "c"):
            tracker.step_started(name)
        for name in ("a", "b", "c"):
            tracker.step_finished(finished(name, StepStatus.COMPLETED))
        tracker.finalize(0.1)

        parallelization = tracker.get_metrics().parallelization
        assert parallelization.max_concurrent_steps == 3
        assert parallelization.average_concurrent_steps == 2.0
        assert parallelization.parallel_phases == 1

    def test_memory_and_timing(self):
        tracker = MetricsTracker(trace_memory=True)
        tracker.initialize(1)
        tracker.step_started("a")
        tracker.step_finished(finished("a", StepStatus.COMPLETED))
        tracker.finalize(0.25)

        metrics = tracker.get_metrics()
        assert metrics.total_execution_time == 0.25
        assert "a" in metrics.step_execution_times
        assert metrics.memory_usage.samples >= 2
        assert metrics.memory_usage.peak >= metrics.memory_usage.start
        assert metrics.memory_usage.delta == metrics.memory_usage.end - metrics.memory_usage.start

    def test_memory_warning_logged_once(self, caplog):
        tracker = MetricsTracker(memory_warning_threshold_mb=1, trace_memory=True)
        tracker.initialize(1)
        # Keep enough traced allocations alive to cross 1MB
        ballast = [bytearray(1024) for _ in range(2048)]
        with caplog.at_level(logging.WARNING, logger="recipe_step_engine.metrics"):
            tracker.sample_memory()
            tracker.sample_memory()
        tracker.finalize(0.0)
        del ballast

        warnings = [r for r in caplog.records if "exceeds warning threshold" in r.getMessage()]
        assert len(warnings) == 1

    def test_reinitialize_resets(self):
        tracker = MetricsTracker()
        tracker.initialize(1)
        tracker.step_finished(finished("a", StepStatus.FAILED))
        tracker.finalize(0.1)

        tracker.initialize(1)
        assert tracker.get_metrics().errors.permanent_failures == []
        tracker.finalize(0.0)


@pytest.mark.skipif(tracemalloc.is_tracing(), reason="interpreter already traces allocations")
class TestMemoryTracing:
    """tracemalloc is only touched when asked for, and shared between trackers."""

    def test_tracing_off_by_default(self):
        tracker = MetricsTracker()
        tracker.initialize(1)

        assert not tracemalloc.is_tracing()
        tracker.finalize(0.0)
        assert tracker.get_metrics().memory_usage.samples == 0

    def test_tracing_stops_after_run(self):
        tracker = MetricsTracker(trace_memory=True)
        tracker.initialize(1)
        assert tracemalloc.is_tracing()

        tracker.finalize(0.0)
        assert not tracemalloc.is_tracing()

    def test_first_finished_run_keeps_tracing_for_the_other(self):
        first = MetricsTracker(trace_memory=True)
        second = MetricsTracker(trace_memory=True)
        first.initialize(1)
        second.initialize(1)

        first.finalize(0.0)
        assert tracemalloc.is_tracing()
        second.sample_memory()
        assert second.get_metrics().memory_usage.samples == 2

        second.finalize(0.0)
        assert not tracemalloc.is_tracing()

    def test_host_tracing_left_running(self):
        tracemalloc.start()
        try:
            tracker = MetricsTracker(trace_memory=True)
            tracker.initialize(1)
            tracker.finalize(0.0)

            assert tracemalloc.is_tracing()
            assert tracker.get_metrics().memory_usage.samples >= 2
        finally:
            tracemalloc.stop()
