"""Folding per-step results into a recipe-level outcome."""

import datetime
import time
from collections.abc import Sequence
from dataclasses import dataclass
from dataclasses import field
from pathlib import Path
from typing import Any

from .context import SkipReason
from .context import StepContext
from .context import StepResult
from .context import StepStatus
from .metrics import ExecutionMetrics
from .models import RecipeConfig


@dataclass
class RecipeExecutionResult:
    """Outcome of one recipe run."""

    execution_id: str
    recipe: RecipeConfig
    success: bool
    step_results: list[StepResult]
    duration: float  # Seconds
    files_created: list[str] = field(default_factory=list)
    files_modified: list[str] = field(default_factory=list)
    files_deleted: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    variables: dict[str, Any] = field(default_factory=dict)
    metrics: ExecutionMetrics | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    dry_run: bool = False

    def get_step_result(self, step_name: str) -> StepResult | None:
        for result in self.step_results:
            if result.step_name == step_name:
                return result
        return None

    def steps_with_status(self, status: StepStatus) -> list[str]:
        return [r.step_name for r in self.step_results if r.status == status]


def _append_unique(target: list[str], seen: set[str], files: Sequence[str]) -> None:
    for path in files:
        if path not in seen:
            seen.add(path)
            target.append(path)


def aggregate_results(
    execution_id: str,
    recipe: RecipeConfig,
    step_results: Sequence[StepResult],
    variables: dict[str, Any],
    start_time: float,
    context: StepContext,
    metrics: ExecutionMetrics | None = None,
    warnings: Sequence[str] = (),
    errors: Sequence[str] = (),
) -> RecipeExecutionResult:
    """
    Build the recipe-level result.

    Args:
        execution_id: Id of the run
        recipe: Recipe that ran
        step_results: Terminal results in declaration order
        variables: Resolved variables the run used
        start_time: ``time.perf_counter()`` value taken when the run began
        context: Run context (project root, dry-run flag)
        metrics: Metrics snapshot of the run
        warnings: Extra warnings, e.g. from hooks
        errors: Extra errors not tied to a step

    Returns:
        RecipeExecutionResult. ``success`` is False when any step failed or was
        cancelled, or when steps were left unrun because the run aborted.
    """
    duration = time.perf_counter() - start_time
    files_created: list[str] = []
    files_modified: list[str] = []
    files_deleted: list[str] = []
    seen_created: set[str] = set()
    seen_modified: set[str] = set()
    seen_deleted: set[str] = set()
    all_errors: list[str] = []
    counts = {status: 0 for status in StepStatus}
    aborted = False

    for result in step_results:
        counts[result.status] += 1
        _append_unique(files_created, seen_created, result.files_created)
        _append_unique(files_modified, seen_modified, result.files_modified)
        _append_unique(files_deleted, seen_deleted, result.files_deleted)
        if result.error is not None:
            all_errors.append(f"{result.step_name}: {result.error.message}")
        elif result.status == StepStatus.SKIPPED and result.skip_reason != SkipReason.CONDITION:
            all_errors.append(f"{result.step_name}: not run ({result.skip_reason})")
        if result.skip_reason == SkipReason.EXECUTION_ABORTED:
            aborted = True
    all_errors.extend(errors)

    success = counts[StepStatus.FAILED] == 0 and counts[StepStatus.CANCELLED] == 0 and not aborted and not errors

    now = datetime.datetime.now()
    return RecipeExecutionResult(
        execution_id=execution_id,
        recipe=recipe,
        success=success,
        step_results=list(step_results),
        duration=duration,
        files_created=files_created,
        files_modified=files_modified,
        files_deleted=files_deleted,
        errors=all_errors,
        warnings=list(warnings),
        variables=dict(variables),
        metrics=metrics,
        metadata={
            "start_time": now - datetime.timedelta(seconds=duration),
            "end_time": now,
            "working_dir": str(Path(context.project_root)),
            "total_steps": len(step_results),
            "completed_steps": counts[StepStatus.COMPLETED],
            "failed_steps": counts[StepStatus.FAILED],
            "skipped_steps": counts[StepStatus.SKIPPED],
            "cancelled_steps": counts[StepStatus.CANCELLED],
        },
        dry_run=context.dry_run,
    )
