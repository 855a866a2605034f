"""Dependency graph construction and phase planning."""

import logging
import time
from collections.abc import Sequence
from dataclasses import dataclass
from dataclasses import field

from .context import StepContext
from .errors import CyclicDependencyError
from .errors import DuplicateStepError
from .errors import UnknownDependencyError
from .metrics import MetricsTracker
from .models import Step

logger = logging.getLogger(__name__)

# Rough per-kind duration estimates in seconds
_ESTIMATED_STEP_SECONDS = {"template": 5.0, "action": 3.0, "codemod": 10.0, "recipe": 15.0}


@dataclass
class DependencyNode:
    """One step in the dependency graph."""

    step_name: str
    dependencies: list[str] = field(default_factory=list)
    dependents: list[str] = field(default_factory=list)
    depth: int = 0
    parallelizable: bool = True


@dataclass
class Phase:
    """Steps with no edges among them, scheduled together."""

    index: int
    steps: list[str]
    parallel: bool


@dataclass
class ExecutionPlan:
    """Ordered phases for a step list. Every step is in exactly one phase."""

    phases: list[Phase]
    dependency_graph: dict[str, DependencyNode]
    max_depth: int = 0
    estimated_duration: float = 0.0  # Seconds

    def phase_of(self, step_name: str) -> int:
        """Index of the phase containing a step."""
        return self.dependency_graph[step_name].depth

    def transitive_dependents(self, step_name: str) -> list[str]:
        """Every step that depends on ``step_name`` directly or indirectly."""
        seen: list[str] = []
        stack = list(self.dependency_graph[step_name].dependents)
        while stack:
            name = stack.pop()
            if name in seen:
                continue
            seen.append(name)
            stack.extend(self.dependency_graph[name].dependents)
        return seen


class DependencyResolver:
    """Builds an ExecutionPlan by layering steps on their dependency depth."""

    def __init__(self, enable_parallel_execution: bool = True, metrics: MetricsTracker | None = None):
        self.enable_parallel_execution = enable_parallel_execution
        self.metrics = metrics

    def create_execution_plan(self, steps: Sequence[Step], context: StepContext | None = None) -> ExecutionPlan:
        """
        Plan phases for a step list.

        Args:
            steps: Steps in declaration order
            context: Run context, used for logging only

        Returns:
            ExecutionPlan whose phases group steps of equal depth in declaration order

        Raises:
            DuplicateStepError: If two steps share a name
            UnknownDependencyError: If depends_on names a missing step
            CyclicDependencyError: If a step transitively depends on itself
        """
        started = time.perf_counter()

        graph = self.build_dependency_graph(steps)
        try:
            self.detect_cycles(graph)
        except CyclicDependencyError:
            if self.metrics is not None:
                self.metrics.record_cycle_detected()
            raise
        self._compute_depths(graph)
        phases = self._create_phases(steps, graph)

        max_depth = max((node.depth for node in graph.values()), default=0)
        plan = ExecutionPlan(
            phases=phases,
            dependency_graph=graph,
            max_depth=max_depth,
            estimated_duration=sum(_ESTIMATED_STEP_SECONDS.get(step.tool, 5.0) for step in steps),
        )

        if self.metrics is not None:
            self.metrics.record_plan(len(phases), max_depth, time.perf_counter() - started)

        recipe_name = context.recipe.name if context is not None else "<steps>"
        logger.debug(f"Planned {len(steps)} step(s) of {recipe_name} into {len(phases)} phase(s)")
        return plan

    def build_dependency_graph(self, steps: Sequence[Step]) -> dict[str, DependencyNode]:
        """Build nodes and reverse edges. Dependents are listed in declaration order."""
        graph: dict[str, DependencyNode] = {}
        for step in steps:
            if step.name in graph:
                raise DuplicateStepError(step.name)
            graph[step.name] = DependencyNode(
                step_name=step.name,
                # Repeated entries collapse, order kept
                dependencies=list(dict.fromkeys(step.depends_on or [])),
                parallelizable=step.parallel is not False,
            )

        for name, node in graph.items():
            for dependency in node.dependencies:
                if dependency not in graph:
                    raise UnknownDependencyError(name, dependency)
                graph[dependency].dependents.append(name)

        return graph

    def detect_cycles(self, graph: dict[str, DependencyNode]) -> None:
        """Depth-first search with an in-progress marker.

        The reported cycle starts at the first member reached and closes on it,
        e.g. ``["A", "B", "C", "A"]``.
        """
        visited: set[str] = set()
        in_progress: set[str] = set()
        path: list[str] = []

        def visit(name: str) -> None:
            if name in in_progress:
                cycle = [*path[path.index(name) :], name]
                raise CyclicDependencyError(cycle)
            if name in visited:
                return
            in_progress.add(name)
            path.append(name)
            for dependency in graph[name].dependencies:
                visit(dependency)
            path.pop()
            in_progress.discard(name)
            visited.add(name)

        for name in graph:
            visit(name)

    def _compute_depths(self, graph: dict[str, DependencyNode]) -> None:
        """depth = 1 + max(dependency depth); 0 without dependencies. Graph must be acyclic."""
        resolved: dict[str, int] = {}

        def depth_of(name: str) -> int:
            if name in resolved:
                return resolved[name]
            node = graph[name]
            depth = 1 + max((depth_of(d) for d in node.dependencies), default=-1)
            node.depth = resolved[name] = depth
            return depth

        for name in graph:
            depth_of(name)

    def _create_phases(self, steps: Sequence[Step], graph: dict[str, DependencyNode]) -> list[Phase]:
        by_depth: dict[int, list[str]] = {}
        for step in steps:
            by_depth.setdefault(graph[step.name].depth, []).append(step.name)

        phases = []
        for depth in sorted(by_depth):
            names = by_depth[depth]
            # The parallel hint only serializes the phase, it never moves a step
            parallel = (
                self.enable_parallel_execution
                and len(names) > 1
                and all(graph[name].parallelizable for name in names)
            )
            phases.append(Phase(index=depth, steps=names, parallel=parallel))
        return phases
