"""Desired-vs-applied classification.

For every resource the differ decides what the executor has to do, in
priority order:

1. Create  - no applied record, a Deleted tombstone, or no provider id yet
2. Replace - kind changed, or a field the provider cannot update in place changed
3. Update  - only mutable fields changed, the last attempt failed, an earlier
             call was never confirmed, or live state drifted
4. NoOp    - everything equal after normalization

Applied records with no desired counterpart become Delete.

Replace is contagious: anything depending on a replaced resource, directly
or transitively, is raised from NoOp to Update because the values it was
built from (ids, outputs) are about to change.

A resource whose last attempt failed fatally is marked blocked until its
declaration changes or an operator forces a retry.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field

from .graph import ResourceGraph
from .kinds import KindRegistry
from .models import AppliedState, DeltaAction, ResourceStatus
from .normalizer import FieldNormalizer

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Delta:
    """The change needed for one logical name in this cycle."""

    name: str
    action: DeltaAction
    changed_fields: frozenset[str] = field(default_factory=frozenset)
    forced: bool = False  # Raised to Update by replace propagation
    blocked: bool = False  # Fatal failure with unchanged declaration
    reason: str = ""

    @property
    def needs_operation(self) -> bool:
        return self.action != DeltaAction.NOOP


def _classify(
    name: str,
    graph: ResourceGraph,
    state: AppliedState | None,
    registry: KindRegistry,
    normalizer: FieldNormalizer,
    drifted: bool,
    force: bool,
) -> Delta:
    spec = graph.nodes[name]

    blocked = (
        not force
        and state is not None
        and state.status == ResourceStatus.FAILED
        and state.failed_fingerprint is not None
        and state.failed_fingerprint == spec.fields_fingerprint()
    )

    if state is None or state.status == ResourceStatus.DELETED or not state.provider_id:
        reason = "not yet created" if state is None or not state.provider_id else "was deleted"
        if state is not None and state.is_unknown:
            reason = f"unconfirmed {state.in_flight.value if state.in_flight else ''} left no id"
        return Delta(name, DeltaAction.CREATE, blocked=blocked, reason=reason)

    changed = normalizer.changed_fields(spec.kind, spec.fields, state.fields)
    capability = registry.get(spec.kind)

    if state.kind != spec.kind:
        return Delta(
            name,
            DeltaAction.REPLACE,
            frozenset(changed),
            blocked=blocked,
            reason=f"kind changed from {state.kind.value} to {spec.kind.value}",
        )

    if capability.requires_replace(changed):
        immutable = sorted(capability.replace_on & changed)
        return Delta(
            name,
            DeltaAction.REPLACE,
            frozenset(changed),
            blocked=blocked,
            reason=f"immutable fields changed: {immutable}",
        )

    if changed:
        return Delta(
            name, DeltaAction.UPDATE, frozenset(changed), blocked=blocked, reason="fields changed"
        )
    if state.status == ResourceStatus.FAILED:
        return Delta(name, DeltaAction.UPDATE, blocked=blocked, reason="previous attempt failed")
    if state.is_unknown or state.status == ResourceStatus.PENDING:
        return Delta(name, DeltaAction.UPDATE, reason="previous operation unconfirmed")
    if drifted:
        return Delta(name, DeltaAction.UPDATE, reason="live state drifted")

    return Delta(name, DeltaAction.NOOP)


def compute_deltas(
    graph: ResourceGraph,
    states: Mapping[str, AppliedState],
    registry: KindRegistry | None = None,
    normalizer: FieldNormalizer | None = None,
    drifted: set[str] | frozenset[str] = frozenset(),
    force: bool = False,
) -> dict[str, Delta]:
    """Classify every desired and every persisted resource.

    Args:
        graph: Validated resource graph for this cycle.
        states: Applied state keyed by logical name.
        registry: Kind capabilities (replace-required fields).
        normalizer: Field normalizer used for equality.
        drifted: Names whose live provider state differs from the record.
        force: Ignore fatal-failure blocks.

    Returns:
        Delta per logical name (desired names plus stored-only names).
    """
    registry = registry or KindRegistry()
    normalizer = normalizer or FieldNormalizer()

    deltas: dict[str, Delta] = {}

    for name in graph.names():
        deltas[name] = _classify(
            name,
            graph,
            states.get(name),
            registry,
            normalizer,
            drifted=name in drifted,
            force=force,
        )

    for name, state in sorted(states.items()):
        if name in graph or state.status == ResourceStatus.DELETED:
            continue
        deltas[name] = Delta(name, DeltaAction.DELETE, reason="no longer declared")

    # Replace propagation (transitive)
    for name in sorted(deltas):
        if deltas[name].action != DeltaAction.REPLACE:
            continue
        for dependent in sorted(graph.transitive_dependents(name)):
            current = deltas[dependent]
            if current.action == DeltaAction.NOOP:
                deltas[dependent] = Delta(
                    dependent,
                    DeltaAction.UPDATE,
                    forced=True,
                    blocked=current.blocked,
                    reason=f"dependency '{name}' is being replaced",
                )

    counts: dict[str, int] = {}
    for delta in deltas.values():
        counts[delta.action.value] = counts.get(delta.action.value, 0) + 1
    logger.info("Computed deltas", extra={"counts": counts})

    return deltas
