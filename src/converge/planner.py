"""Execution planning.

Turns the per-resource deltas into an ordered list of stages:

- Delete stages come first and follow stored dependency edges in reverse
  (dependents are deleted before what they depend on)
- Apply stages (Create / Update / Replace) follow desired dependency edges
  (dependencies are applied before their dependents)
- A delete that a surviving resource still depends on in its stored record
  moves to trailing delete stages, after that resource has been applied
- Every stage is one Kahn layer; names inside a stage have no edge between
  them and may run concurrently
- Ties are broken by logical name so identical input yields an identical plan

NoOp resources never appear in a plan; edges pointing at them are already
satisfied. Resources blocked by an earlier fatal failure are held back
together with everything depending on them.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .differ import Delta
from .graph import ResourceGraph
from .models import AppliedState, DeltaAction

logger = logging.getLogger(__name__)

APPLY_ACTIONS = frozenset({DeltaAction.CREATE, DeltaAction.UPDATE, DeltaAction.REPLACE})


class PlanError(Exception):
    """Raised when a plan cannot be produced."""

    pass


class UnresolvablePlan(PlanError):
    """Internal invariant violation: an edge cannot be ordered.

    The graph builder validates references, so this indicates a bug or
    corrupted state. The cycle is aborted before any provider call.
    """

    pass


class StagePhase(str, Enum):
    """Which half of the plan a stage belongs to."""

    DELETE = "delete"
    APPLY = "apply"


@dataclass(frozen=True)
class PlannedOperation:
    """A single provider operation in a stage."""

    name: str
    action: DeltaAction


@dataclass
class Stage:
    """Operations that may run concurrently."""

    index: int
    phase: StagePhase
    operations: list[PlannedOperation] = field(default_factory=list)

    def names(self) -> list[str]:
        return [op.name for op in self.operations]


@dataclass
class Plan:
    """Ordered stages for one cycle.

    Attributes:
        stages: Stages in execution order.
        blocked: Names held back by a fatal failure, with the blocking root.
        dependencies: Edges used for ordering (name -> names it waits for).
    """

    stages: list[Stage] = field(default_factory=list)
    blocked: dict[str, str] = field(default_factory=dict)
    dependencies: dict[str, set[str]] = field(default_factory=dict)

    @property
    def is_empty(self) -> bool:
        return not self.stages

    @property
    def operation_count(self) -> int:
        return sum(len(stage.operations) for stage in self.stages)

    def operations(self) -> list[PlannedOperation]:
        return [op for stage in self.stages for op in stage.operations]

    def stage_of(self, name: str) -> int | None:
        for stage in self.stages:
            if name in stage.names():
                return stage.index
        return None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging and CLI output."""
        return {
            "stages": [
                {
                    "index": stage.index,
                    "phase": stage.phase.value,
                    "operations": [
                        {"name": op.name, "action": op.action.value} for op in stage.operations
                    ],
                }
                for stage in self.stages
            ],
            "blocked": dict(sorted(self.blocked.items())),
        }


def _layers(names: set[str], edges: dict[str, set[str]]) -> list[list[str]]:
    """Group names into Kahn layers; edges map a name to what must precede it.

    Raises:
        UnresolvablePlan: If the edges contain a cycle.
    """
    in_degree = {name: len(edges.get(name, set())) for name in names}
    followers: dict[str, list[str]] = {name: [] for name in names}
    for name in names:
        for before in edges.get(name, set()):
            followers[before].append(name)

    layers: list[list[str]] = []
    ready = sorted(name for name, degree in in_degree.items() if degree == 0)
    placed = 0

    while ready:
        layers.append(ready)
        placed += len(ready)
        next_ready: list[str] = []
        for name in ready:
            for follower in followers[name]:
                in_degree[follower] -= 1
                if in_degree[follower] == 0:
                    next_ready.append(follower)
        ready = sorted(next_ready)

    if placed != len(names):
        stuck = sorted(name for name, degree in in_degree.items() if degree > 0)
        raise UnresolvablePlan(f"Cannot order operations, cyclic edges among: {stuck}")

    return layers


def _stored_closure(
    seeds: set[str], candidates: set[str], states: Mapping[str, AppliedState]
) -> set[str]:
    """Seeds plus every candidate they reach through stored dependency edges."""
    reached = set(seeds)
    pending = sorted(seeds)
    while pending:
        state = states.get(pending.pop())
        for dep in state.depends_on if state else []:
            if dep in candidates and dep not in reached:
                reached.add(dep)
                pending.append(dep)
    return reached


def build_plan(
    graph: ResourceGraph,
    deltas: Mapping[str, Delta],
    states: Mapping[str, AppliedState],
) -> Plan:
    """Produce a deterministic staged plan.

    Args:
        graph: Validated resource graph.
        deltas: Delta per logical name from the differ.
        states: Applied state, used for the dependency edges of deletions.

    Returns:
        The plan (empty if every delta is NoOp).

    Raises:
        UnresolvablePlan: If a dependency has no delta or edges are cyclic.
    """
    plan = Plan()

    # Blocked roots and every dependent that would need an operation
    for name in sorted(deltas):
        delta = deltas[name]
        if not delta.blocked or not delta.needs_operation:
            continue
        plan.blocked.setdefault(name, name)
        if name in graph:
            for dependent in sorted(graph.transitive_dependents(name)):
                if deltas[dependent].needs_operation:
                    plan.blocked.setdefault(dependent, name)

    # -- apply phase: X depends on Y  =>  Y is applied before X
    apply_names = {
        name
        for name, delta in deltas.items()
        if delta.action in APPLY_ACTIONS and name not in plan.blocked
    }
    apply_edges: dict[str, set[str]] = {name: set() for name in apply_names}
    for name in apply_names:
        if name not in graph:
            raise UnresolvablePlan(f"Operation planned for '{name}' which is not in the graph")
        for dep in graph.dependencies(name):
            if dep not in deltas:
                raise UnresolvablePlan(f"'{name}' depends on '{dep}' which has no delta")
            if dep in apply_names:
                apply_edges[name].add(dep)

    # -- delete phase: X depends on Y  =>  X is deleted before Y
    delete_names = {
        name
        for name, delta in deltas.items()
        if delta.action == DeltaAction.DELETE and name not in plan.blocked
    }

    # A surviving resource whose record still points at a deleted one must be
    # applied (detached) first; if it is blocked the delete is held back too
    detaching: dict[str, set[str]] = {name: set() for name in delete_names}
    for name in sorted(states):
        if name in delete_names or name not in deltas:
            continue
        for dep in states[name].depends_on:
            if dep not in delete_names:
                continue
            if name in plan.blocked:
                plan.blocked.setdefault(dep, plan.blocked[name])
            elif name in apply_names:
                detaching[dep].add(name)

    for seed in sorted(set(plan.blocked) & delete_names):
        for name in sorted(_stored_closure({seed}, delete_names, states)):
            plan.blocked.setdefault(name, plan.blocked[seed])
    delete_names -= set(plan.blocked)

    deferred = _stored_closure(
        {name for name in delete_names if detaching[name]}, delete_names, states
    )
    delete_edges: dict[str, set[str]] = {name: set() for name in delete_names}
    for name in delete_names:
        state = states.get(name)
        for dep in state.depends_on if state else []:
            if dep in delete_names:
                # dep waits for name
                delete_edges[dep].add(name)

    phases = (
        (StagePhase.DELETE, delete_names - deferred),
        (StagePhase.APPLY, apply_names),
        (StagePhase.DELETE, deferred),
    )
    edges = {**delete_edges, **apply_edges}

    index = 0
    for phase, names in phases:
        in_phase = {name: edges[name] & names for name in names}
        for layer in _layers(names, in_phase):
            plan.stages.append(
                Stage(
                    index=index,
                    phase=phase,
                    operations=[PlannedOperation(n, deltas[n].action) for n in layer],
                )
            )
            index += 1

    for name in delete_names:
        plan.dependencies[name] = delete_edges[name] | detaching[name]
    plan.dependencies.update(apply_edges)

    logger.info(
        "Built plan",
        extra={
            "stages": len(plan.stages),
            "operations": plan.operation_count,
            "blocked": len(plan.blocked),
        },
    )
    return plan
