"""Stage dependency graph.

This module turns a pipeline definition into a directed acyclic graph:
- A stage depends on its base stage (if the base names a stage)
- A stage depends on every stage it copies artifacts from

It provides a deterministic topological order, consumer lookups used to
discard finished stage environments, and the structural checks on the
final runtime image lineage.
"""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from stagecraft.pipelines.schema import CopyOp
from stagecraft.types import TOOLCHAIN_ROLES

if TYPE_CHECKING:
    from stagecraft.pipelines.schema import PipelineSchema, StageSchema


class PipelineGraphError(Exception):
    """Raised when the stage graph is invalid."""

    def __init__(self, message: str, code: str = "invalid_graph") -> None:
        super().__init__(message)
        self.code = code


@dataclass
class StageGraph:
    """Dependency graph over the stages of one pipeline.

    Attributes:
        stages: Stage definitions keyed by name, in definition order.
        needs: Stage name -> names of stages it depends on.
        dependents: Stage name -> names of stages that depend on it.
    """

    stages: dict[str, StageSchema]
    needs: dict[str, set[str]] = field(default_factory=dict)
    dependents: dict[str, set[str]] = field(default_factory=dict)

    def base_stage(self, name: str) -> str | None:
        """Return the base stage name of a stage, or None for external bases."""
        base = self.stages[name].base
        return base if base in self.stages else None

    def lineage(self, name: str) -> list[str]:
        """Return the base chain of a stage, starting with the stage itself."""
        chain = [name]
        current = self.base_stage(name)
        while current is not None:
            if current in chain:
                raise PipelineGraphError(
                    f"base cycle through stage '{current}'", code="cycle"
                )
            chain.append(current)
            current = self.base_stage(current)
        return chain

    def external_base(self, name: str) -> str:
        """Return the external image reference at the root of a stage lineage."""
        root = self.lineage(name)[-1]
        return self.stages[root].base

    def consumers(self, name: str) -> set[str]:
        """Return the stages that read from this stage."""
        return set(self.dependents.get(name, set()))

    def topo_order(self) -> list[str]:
        """Compute a deterministic topological order (Kahn's algorithm).

        Ties are broken by definition order so the plan is stable.

        Raises:
            PipelineGraphError: If the graph contains a cycle.
        """
        position = {name: i for i, name in enumerate(self.stages)}
        indeg = {name: len(self.needs[name]) for name in self.stages}
        ready = deque(sorted((n for n, d in indeg.items() if d == 0), key=position.get))
        order: list[str] = []

        while ready:
            node = ready.popleft()
            order.append(node)
            unlocked = []
            for child in self.dependents[node]:
                indeg[child] -= 1
                if indeg[child] == 0:
                    unlocked.append(child)
            ready.extend(unlocked)
            ready = deque(sorted(ready, key=position.get))

        if len(order) != len(self.stages):
            stuck = sorted(n for n, d in indeg.items() if d > 0)
            raise PipelineGraphError(
                f"stage graph has a cycle. Stuck stages: {stuck}", code="cycle"
            )
        return order


def build_stage_graph(pipeline: PipelineSchema) -> StageGraph:
    """Build the dependency graph of a pipeline.

    Args:
        pipeline: Validated pipeline definition.

    Returns:
        StageGraph for the pipeline.
    """
    stages = {s.name: s for s in pipeline.stages}
    needs: dict[str, set[str]] = {name: set() for name in stages}
    dependents: dict[str, set[str]] = {name: set() for name in stages}

    for stage in pipeline.stages:
        if stage.base in stages:
            needs[stage.name].add(stage.base)
        for op in stage.operations:
            if isinstance(op, CopyOp) and op.from_stage is not None:
                needs[stage.name].add(op.from_stage)

    for name, deps in needs.items():
        for dep in deps:
            dependents[dep].add(name)

    return StageGraph(stages=stages, needs=needs, dependents=dependents)


def effective_entrypoint(graph: StageGraph, name: str) -> list[str] | None:
    """Return the entry point in effect for a stage (inherited from bases)."""
    for stage_name in graph.lineage(name):
        entrypoint = graph.stages[stage_name].entrypoint()
        if entrypoint is not None:
            return entrypoint
    return None


def validate_pipeline_graph(pipeline: PipelineSchema) -> StageGraph:
    """Validate the structural rules of a pipeline.

    Checks:
    - The stage graph is acyclic
    - The final stage has an entry point
    - The final image lineage contains no toolchain-carrying stage

    Args:
        pipeline: Pipeline definition.

    Returns:
        The validated StageGraph.

    Raises:
        PipelineGraphError: If a rule is violated.
    """
    graph = build_stage_graph(pipeline)
    graph.topo_order()

    final = pipeline.final_stage.name
    if effective_entrypoint(graph, final) is None:
        raise PipelineGraphError(
            f"final stage '{final}' does not bind an entrypoint",
            code="missing_entrypoint",
        )

    for stage_name in graph.lineage(final):
        if graph.stages[stage_name].role in TOOLCHAIN_ROLES:
            raise PipelineGraphError(
                f"final stage '{final}' inherits from '{stage_name}' "
                f"(role={graph.stages[stage_name].role.value}); the runtime image "
                "must not carry the build toolchain",
                code="toolchain_in_runtime",
            )

    return graph


__all__ = [
    "PipelineGraphError",
    "StageGraph",
    "build_stage_graph",
    "effective_entrypoint",
    "validate_pipeline_graph",
]
