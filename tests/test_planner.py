"""Tests for staged execution planning."""

from dataclasses import replace

import pytest

from converge.differ import Delta, compute_deltas
from converge.graph import build_graph
from converge.models import (
    AppliedState,
    DeltaAction,
    DesiredStateDocument,
    ResourceKind,
    ResourceStatus,
)
from converge.planner import StagePhase, UnresolvablePlan, build_plan


def plan_for(resources: dict, states: dict | None = None, **overrides: Delta):
    graph = build_graph(DesiredStateDocument.from_mapping(resources))
    states = states or {}
    deltas = compute_deltas(graph, states)
    deltas.update(overrides)
    return build_plan(graph, deltas, states)


def stage_names(plan) -> list[list[str]]:
    return [stage.names() for stage in plan.stages]


def applied(name: str, depends_on: list[str] | None = None) -> AppliedState:
    return AppliedState(
        name=name,
        kind=ResourceKind.GENERIC,
        provider_id=f"/memory/Generic/{name}/1",
        depends_on=depends_on or [],
        status=ResourceStatus.APPLIED,
    )


class TestApplyStages:
    """Tests for ordering creates and updates."""

    def test_cluster_before_pool(self) -> None:
        """A node pool is applied in the stage after its cluster."""
        plan = plan_for(
            {
                "cluster": {"kind": "Cluster", "fields": {"name": "c1"}},
                "pool": {"kind": "NodePool", "fields": {"size": 3}, "depends_on": ["cluster"]},
            }
        )

        assert stage_names(plan) == [["cluster"], ["pool"]]
        assert all(stage.phase == StagePhase.APPLY for stage in plan.stages)
        assert [op.action for op in plan.operations()] == [DeltaAction.CREATE, DeltaAction.CREATE]

    def test_independent_resources_share_a_stage(self) -> None:
        """Resources without edges between them run in one stage, sorted."""
        plan = plan_for(
            {
                "rg": {"kind": "Generic"},
                "vnet": {"kind": "Generic", "depends_on": ["rg"]},
                "logs": {"kind": "LogWorkspace", "depends_on": ["rg"]},
                "cluster": {"kind": "Cluster", "depends_on": ["vnet", "logs"]},
            }
        )

        assert stage_names(plan) == [["rg"], ["logs", "vnet"], ["cluster"]]

    def test_every_edge_crosses_stages(self) -> None:
        """A dependency always lands in an earlier stage."""
        resources = {
            "a": {"kind": "Generic"},
            "b": {"kind": "Generic", "depends_on": ["a"]},
            "c": {"kind": "Generic", "depends_on": ["a", "b"]},
            "d": {"kind": "Generic", "depends_on": ["c"]},
            "e": {"kind": "Generic"},
        }
        plan = plan_for(resources)

        for name, spec in resources.items():
            for dep in spec.get("depends_on", []):
                assert plan.stage_of(dep) < plan.stage_of(name)

    def test_noop_dependency_is_satisfied(self) -> None:
        """An edge to a NoOp resource does not hold anything back."""
        states = {"cluster": applied("cluster")}
        states["cluster"].kind = ResourceKind.CLUSTER
        states["cluster"].fields = {"name": "c1"}
        plan = plan_for(
            {
                "cluster": {"kind": "Cluster", "fields": {"name": "c1"}},
                "pool": {"kind": "NodePool", "depends_on": ["cluster"]},
            },
            states,
        )

        assert stage_names(plan) == [["pool"]]

    def test_empty_plan(self) -> None:
        """No deltas yield no stages."""
        plan = plan_for({})
        assert plan.is_empty
        assert plan.operation_count == 0

    def test_plan_is_deterministic(self) -> None:
        """The same input always gives the same plan."""
        resources = {f"r{i}": {"kind": "Generic"} for i in range(10)}
        assert plan_for(resources).to_dict() == plan_for(dict(reversed(resources.items()))).to_dict()


class TestDeleteStages:
    """Tests for ordering deletions."""

    def test_dependents_deleted_first(self) -> None:
        """A node pool is deleted before its cluster."""
        states = {"cluster": applied("cluster"), "pool": applied("pool", ["cluster"])}
        plan = plan_for({}, states)

        assert stage_names(plan) == [["pool"], ["cluster"]]
        assert all(stage.phase == StagePhase.DELETE for stage in plan.stages)

    def test_deletes_precede_applies(self) -> None:
        """Delete stages come before apply stages."""
        states = {"old": applied("old")}
        plan = plan_for({"new": {"kind": "Generic"}}, states)

        assert [stage.phase for stage in plan.stages] == [StagePhase.DELETE, StagePhase.APPLY]
        assert [stage.index for stage in plan.stages] == [0, 1]

    def test_delete_waits_for_detaching_update(self) -> None:
        """A resource still used by a survivor is deleted after the survivor moves away."""
        states = {
            "old_subnet": applied("old_subnet"),
            "pool": applied("pool", ["old_subnet"]),
        }
        plan = plan_for(
            {
                "new_subnet": {"kind": "Generic"},
                "pool": {"kind": "Generic", "fields": {"subnet_id": "${new_subnet.id}"}},
            },
            states,
        )

        assert stage_names(plan) == [["new_subnet"], ["pool"], ["old_subnet"]]
        assert plan.stage_of("old_subnet") > plan.stage_of("pool")
        assert plan.stages[-1].phase == StagePhase.DELETE
        assert plan.dependencies["old_subnet"] == {"pool"}

    def test_trailing_delete_carries_its_dependencies(self) -> None:
        """What a trailing delete depends on is deleted after it."""
        states = {
            "old_vnet": applied("old_vnet"),
            "old_subnet": applied("old_subnet", ["old_vnet"]),
            "pool": applied("pool", ["old_subnet"]),
        }
        plan = plan_for(
            {
                "new_subnet": {"kind": "Generic"},
                "pool": {"kind": "Generic", "fields": {"subnet_id": "${new_subnet.id}"}},
            },
            states,
        )

        assert stage_names(plan) == [["new_subnet"], ["pool"], ["old_subnet"], ["old_vnet"]]

    def test_blocked_survivor_holds_back_delete(self) -> None:
        """A delete still used by a blocked survivor is not attempted."""
        states = {
            "old_subnet": applied("old_subnet"),
            "pool": applied("pool", ["old_subnet"]),
        }
        plan = plan_for(
            {
                "new_subnet": {"kind": "Generic"},
                "pool": {"kind": "Generic", "fields": {"subnet_id": "${new_subnet.id}"}},
            },
            states,
            pool=Delta("pool", DeltaAction.UPDATE, blocked=True),
        )

        assert plan.blocked == {"old_subnet": "pool", "pool": "pool"}
        assert stage_names(plan) == [["new_subnet"]]


class TestBlocked:
    """Tests for holding back blocked resources."""

    def test_blocked_root_holds_back_dependents(self) -> None:
        """A blocked resource and its dependents are not planned."""
        resources = {
            "cluster": {"kind": "Cluster"},
            "pool": {"kind": "NodePool", "depends_on": ["cluster"]},
            "logs": {"kind": "LogWorkspace"},
        }
        blocked = Delta("cluster", DeltaAction.CREATE, blocked=True)
        plan = plan_for(resources, cluster=blocked)

        assert plan.blocked == {"cluster": "cluster", "pool": "cluster"}
        assert stage_names(plan) == [["logs"]]

    def test_blocked_noop_is_ignored(self) -> None:
        """A blocked flag on a NoOp delta holds nothing back."""
        resources = {"cluster": {"kind": "Cluster"}}
        plan = plan_for(resources, cluster=Delta("cluster", DeltaAction.NOOP, blocked=True))

        assert plan.blocked == {}


class TestInvariants:
    """Tests for internal consistency checks."""

    def test_dependency_without_delta(self) -> None:
        """A dependency missing from the deltas aborts planning."""
        graph = build_graph(
            DesiredStateDocument.from_mapping(
                {"cluster": {"kind": "Cluster"}, "pool": {"kind": "NodePool", "depends_on": ["cluster"]}}
            )
        )
        deltas = compute_deltas(graph, {})
        del deltas["cluster"]

        with pytest.raises(UnresolvablePlan):
            build_plan(graph, deltas, {})

    def test_plan_to_dict(self) -> None:
        """The serialized plan lists stages and operations."""
        plan = plan_for({"cluster": {"kind": "Cluster"}})
        data = plan.to_dict()

        assert data["stages"][0]["operations"] == [{"name": "cluster", "action": "Create"}]
        assert data["blocked"] == {}

    def test_replace_is_one_operation(self) -> None:
        """Replace is planned as a single operation."""
        resources = {"cluster": {"kind": "Cluster", "fields": {"name": "c1"}}}
        replace_delta = Delta("cluster", DeltaAction.REPLACE)
        plan = plan_for(resources, cluster=replace(replace_delta, reason="kind changed"))

        assert [(op.name, op.action) for op in plan.operations()] == [
            ("cluster", DeltaAction.REPLACE)
        ]
