"""Tests for the reconciliation cycle and loop controls."""

import asyncio
import threading
from pathlib import Path
from typing import Any

import pytest

from converge.config import Config, DriftPolicy, ProviderName
from converge.executor import Executor
from converge.models import DesiredStateDocument, ResourceKind, ResourceStatus
from converge.provider import FatalProviderError, MemoryProvider, TransientProviderError
from converge.reconciler import CycleStatus, ReconcilePhase, Reconciler
from converge.state_store import FileStateStore, MemoryStateStore


async def no_sleep(_seconds: float) -> None:
    return None


class DocumentHolder:
    """Stand-in document loader whose document can be swapped between cycles."""

    def __init__(self, resources: dict) -> None:
        self.resources = resources

    def __call__(self, _path: Path) -> DesiredStateDocument:
        return DesiredStateDocument.from_mapping(self.resources)


class GatedProvider(MemoryProvider):
    """Memory provider whose create waits for the test to release it."""

    def __init__(self) -> None:
        super().__init__()
        self.started = threading.Event()
        self.release = threading.Event()

    def create(self, kind: ResourceKind, fields: dict[str, Any]) -> tuple[str, dict[str, Any]]:
        self.started.set()
        self.release.wait(timeout=5)
        return super().create(kind, fields)


class TakeoverProvider(MemoryProvider):
    """Memory provider whose create lets another process take the store."""

    def __init__(self, state_dir: Path) -> None:
        super().__init__()
        self._state_dir = state_dir

    def create(self, kind: ResourceKind, fields: dict[str, Any]) -> tuple[str, dict[str, Any]]:
        intruder = FileStateStore(self._state_dir)
        intruder.break_lease()
        asyncio.run(intruder.acquire_lease("intruder"))
        return super().create(kind, fields)


def make_reconciler(
    resources: dict,
    provider: MemoryProvider | None = None,
    store: MemoryStateStore | None = None,
    **config_overrides,
) -> tuple[Reconciler, MemoryProvider, MemoryStateStore, DocumentHolder]:
    provider = provider or MemoryProvider()
    store = store or MemoryStateStore()
    config = Config(
        desired_state_path=Path("/nonexistent/desired.yaml"),
        provider=ProviderName.MEMORY,
        enable_audit_logging=False,
        **config_overrides,
    )
    executor = Executor(
        provider,
        store,
        max_parallelism=config.max_parallelism,
        retry=config.retry,
        dry_run=config.dry_run,
        sleep=no_sleep,
    )
    holder = DocumentHolder(resources)
    reconciler = Reconciler(
        config, provider, store, executor=executor, document_loader=holder, owner="test"
    )
    return reconciler, provider, store, holder


SIMPLE_DOC = {
    "cluster": {"kind": "Cluster", "fields": {"name": "c1"}},
    "pool": {"kind": "NodePool", "fields": {"size": 3}, "depends_on": ["cluster"]},
}


class TestReconcileOnce:
    """Tests for single cycles."""

    @pytest.mark.asyncio
    async def test_empty_state_converges(self) -> None:
        """A fresh document is created in dependency order and converges."""
        reconciler, provider, store, _ = make_reconciler(SIMPLE_DOC)

        report = await reconciler.reconcile_once()

        assert report.status == CycleStatus.CONVERGED
        assert report.stages == [["cluster"], ["pool"]]
        assert [call for call, _ in provider.calls] == ["create", "create"]
        assert {state.name for state in store.list()} == {"cluster", "pool"}
        assert all(state.status == ResourceStatus.APPLIED for state in store.list())
        assert reconciler.phase == ReconcilePhase.IDLE
        assert store.lease_owner is None

    @pytest.mark.asyncio
    async def test_second_cycle_makes_no_calls(self) -> None:
        """Re-running an unchanged document converges without provider calls."""
        reconciler, provider, _, _ = make_reconciler(SIMPLE_DOC)
        await reconciler.reconcile_once()
        provider.calls.clear()

        report = await reconciler.reconcile_once()

        assert report.status == CycleStatus.CONVERGED
        assert provider.calls == []
        assert report.stages == []
        assert report.counts() == {"noop": 2}

    @pytest.mark.asyncio
    async def test_removed_resource_is_deleted(self) -> None:
        """Dropping a declaration deletes the resource."""
        reconciler, provider, store, holder = make_reconciler(SIMPLE_DOC)
        await reconciler.reconcile_once()

        holder.resources = {"cluster": SIMPLE_DOC["cluster"]}
        report = await reconciler.reconcile_once()

        assert report.status == CycleStatus.CONVERGED
        assert report.resources["pool"].action == "Delete"
        assert store.get("pool").status == ResourceStatus.DELETED
        assert len(provider.resources) == 1

    @pytest.mark.asyncio
    async def test_partial_failure_is_contained(self) -> None:
        """A fatal failure in one subtree does not stop an independent subtree."""
        resources = {
            "cluster": {"kind": "Cluster", "fields": {"name": "c1"}},
            "pool": {"kind": "NodePool", "fields": {"name": "p1"}, "depends_on": ["cluster"]},
            "logs": {"kind": "LogWorkspace", "fields": {"name": "logs"}},
            "diag": {
                "kind": "DiagnosticSetting",
                "fields": {"name": "diag", "target_id": "${logs.id}"},
            },
        }
        provider = MemoryProvider()
        provider.fail("c1", FatalProviderError("invalid VM size", code="InvalidParameter"))
        reconciler, provider, store, _ = make_reconciler(resources, provider=provider)

        report = await reconciler.reconcile_once()

        assert report.status == CycleStatus.FAILED
        assert report.resources["cluster"].outcome == "fatal"
        assert report.resources["pool"].outcome == "skipped"
        assert report.resources["logs"].outcome == "succeeded"
        assert report.resources["diag"].outcome == "succeeded"
        assert store.get("diag").status == ResourceStatus.APPLIED

    @pytest.mark.asyncio
    async def test_recoverable_failure_is_partial(self) -> None:
        """Exhausted transient retries leave the cycle Partial."""
        provider = MemoryProvider()
        provider.fail("c1", *(TransientProviderError("throttled") for _ in range(3)))
        reconciler, _, _, _ = make_reconciler(SIMPLE_DOC, provider=provider)

        report = await reconciler.reconcile_once()

        assert report.status == CycleStatus.PARTIAL
        assert report.resources["cluster"].outcome == "recoverable"
        assert report.resources["pool"].outcome == "skipped"
        assert reconciler.halted is False

        # The next cycle picks up where this one stopped
        retry = await reconciler.reconcile_once()
        assert retry.status == CycleStatus.CONVERGED

    @pytest.mark.asyncio
    async def test_dry_run(self) -> None:
        """A dry run plans without calling the provider or writing state."""
        reconciler, provider, store, _ = make_reconciler(SIMPLE_DOC, dry_run=True)

        report = await reconciler.reconcile_once()

        assert report.status == CycleStatus.PARTIAL
        assert report.dry_run is True
        assert provider.calls == []
        assert store.list() == []
        assert report.counts() == {"planned": 2}

    @pytest.mark.asyncio
    async def test_invalid_graph_fails_before_execution(self) -> None:
        """A cycle in the document fails the cycle with no provider calls."""
        resources = {
            "a": {"kind": "Generic", "depends_on": ["b"]},
            "b": {"kind": "Generic", "depends_on": ["a"]},
        }
        reconciler, provider, _, _ = make_reconciler(resources)

        report = await reconciler.reconcile_once()

        assert report.status == CycleStatus.FAILED
        assert report.error_type == "CycleDetected"
        assert provider.calls == []
        assert report.unexpected is False
        assert {r.outcome for r in report.resources.values()} == {"skipped"}

    @pytest.mark.asyncio
    async def test_unexpected_error_is_flagged(self) -> None:
        """An unexpected exception fails the cycle without halting."""
        reconciler, _, store, _ = make_reconciler(SIMPLE_DOC)

        def broken_loader(_path: Path) -> DesiredStateDocument:
            raise RuntimeError("disk on fire")

        reconciler._load_document = broken_loader

        report = await reconciler.reconcile_once()

        assert report.status == CycleStatus.FAILED
        assert report.unexpected is True
        assert reconciler.halted is False
        assert store.lease_owner is None

    @pytest.mark.asyncio
    async def test_unexpected_error_lists_declared_resources(self) -> None:
        """A crash after the document loaded still reports every declaration."""
        reconciler, provider, _, _ = make_reconciler(SIMPLE_DOC)

        async def broken_execute(*_args, **_kwargs):
            raise RuntimeError("executor crashed")

        reconciler._executor.execute = broken_execute

        report = await reconciler.reconcile_once()

        assert report.status == CycleStatus.FAILED
        assert report.unexpected is True
        assert sorted(report.resources) == ["cluster", "pool"]
        assert {r.outcome for r in report.resources.values()} == {"skipped"}
        assert report.resources["pool"].error == "executor crashed"
        assert provider.calls == []

    @pytest.mark.asyncio
    async def test_lost_lease_is_partial(self, tmp_path: Path) -> None:
        """Losing the lease mid-cycle stops the cycle and defers the next one."""
        store = FileStateStore(tmp_path)
        provider = TakeoverProvider(tmp_path)
        reconciler, _, _, _ = make_reconciler(SIMPLE_DOC, provider=provider, store=store)

        report = await reconciler.reconcile_once()

        assert report.status == CycleStatus.PARTIAL
        assert report.error_type == "LeaseNotHeld"
        assert "intruder" in report.error
        assert provider.calls == [("create", "c1")]
        assert {r.outcome for r in report.resources.values()} == {"skipped"}
        assert reconciler.halted is False
        # The new holder keeps its lease and the unconfirmed create is on record
        assert store.current_lease().owner == "intruder"
        assert [state.name for state in FileStateStore(tmp_path).unknown()] == ["cluster"]

        following = await reconciler.reconcile_once()
        assert following.status == CycleStatus.DEFERRED
        assert provider.calls == [("create", "c1")]

    @pytest.mark.asyncio
    async def test_locked_store_defers(self) -> None:
        """A lease held by another owner defers the cycle."""
        store = MemoryStateStore()
        await store.acquire_lease("someone-else")
        store._lease_owner = None  # The other holder lives in another process
        reconciler, provider, _, _ = make_reconciler(SIMPLE_DOC, store=store)

        report = await reconciler.reconcile_once()

        assert report.status == CycleStatus.DEFERRED
        assert "someone-else" in report.error
        assert provider.calls == []


class TestHalt:
    """Tests for halting after a Failed cycle."""

    @pytest.mark.asyncio
    async def test_failed_cycle_halts(self) -> None:
        """After a fatal failure the same document is not retried."""
        provider = MemoryProvider()
        provider.fail("c1", FatalProviderError("rejected"))
        reconciler, provider, _, _ = make_reconciler(SIMPLE_DOC, provider=provider)

        first = await reconciler.reconcile_once()
        provider.calls.clear()
        second = await reconciler.reconcile_once()

        assert first.status == CycleStatus.FAILED
        assert reconciler.halted is True
        assert second.status == CycleStatus.FAILED
        assert second.error_type == "Halted"
        assert provider.calls == []

    @pytest.mark.asyncio
    async def test_document_change_lifts_halt(self) -> None:
        """Editing the document resumes reconciliation."""
        provider = MemoryProvider()
        provider.fail("c1", FatalProviderError("rejected"))
        reconciler, provider, _, holder = make_reconciler(SIMPLE_DOC, provider=provider)
        await reconciler.reconcile_once()

        holder.resources = {
            **SIMPLE_DOC,
            "cluster": {"kind": "Cluster", "fields": {"name": "c1", "sku": "Standard"}},
        }
        report = await reconciler.reconcile_once()

        assert report.status == CycleStatus.CONVERGED
        assert reconciler.halted is False

    @pytest.mark.asyncio
    async def test_force_retry_lifts_halt(self) -> None:
        """A forced retry runs the same document again."""
        provider = MemoryProvider()
        provider.fail("c1", FatalProviderError("rejected"))
        reconciler, _, store, _ = make_reconciler(SIMPLE_DOC, provider=provider)
        await reconciler.reconcile_once()

        reconciler.force_retry()
        report = await reconciler.reconcile_once()

        assert report.status == CycleStatus.CONVERGED
        assert store.get("cluster").status == ResourceStatus.APPLIED
        assert reconciler.halted is False


class TestDriftRefresh:
    """Tests for the refresh drift policy."""

    @pytest.mark.asyncio
    async def test_drift_is_corrected(self) -> None:
        """Live changes made outside the engine are reverted."""
        reconciler, provider, store, _ = make_reconciler(
            SIMPLE_DOC, drift_policy=DriftPolicy.REFRESH
        )
        await reconciler.reconcile_once()
        cluster_id = store.get("cluster").provider_id
        provider.resources[cluster_id]["name"] = "renamed-by-hand"
        provider.calls.clear()

        report = await reconciler.reconcile_once()

        assert report.resources["cluster"].action == "Update"
        assert provider.calls == [("update", "c1")]
        assert provider.resources[cluster_id]["name"] == "c1"

    @pytest.mark.asyncio
    async def test_missing_resource_is_recreated(self) -> None:
        """A resource deleted outside the engine is created again."""
        reconciler, provider, store, _ = make_reconciler(
            SIMPLE_DOC, drift_policy=DriftPolicy.REFRESH
        )
        await reconciler.reconcile_once()
        cluster_id = store.get("cluster").provider_id
        del provider.resources[cluster_id]

        report = await reconciler.reconcile_once()

        assert report.resources["cluster"].action == "Create"
        assert store.get("cluster").provider_id != cluster_id

    @pytest.mark.asyncio
    async def test_trust_policy_ignores_drift(self) -> None:
        """With the trust policy live state is never read."""
        reconciler, provider, store, _ = make_reconciler(SIMPLE_DOC)
        await reconciler.reconcile_once()
        cluster_id = store.get("cluster").provider_id
        provider.resources[cluster_id]["name"] = "renamed-by-hand"
        provider.calls.clear()

        report = await reconciler.reconcile_once()

        assert report.status == CycleStatus.CONVERGED
        assert provider.calls == []


class TestControls:
    """Tests for trigger, cancel and the run loop."""

    def test_trigger_coalesces(self) -> None:
        """A second trigger before the cycle starts is merged."""
        reconciler, _, _, _ = make_reconciler(SIMPLE_DOC)

        assert reconciler.trigger() is True
        assert reconciler.trigger() is False

    def test_cancel_when_idle_is_noop(self) -> None:
        """Cancelling with no cycle running changes nothing."""
        reconciler, _, _, _ = make_reconciler(SIMPLE_DOC)
        reconciler.cancel()

        assert reconciler._executor.cancel_requested is False

    @pytest.mark.asyncio
    async def test_run_until_shutdown(self) -> None:
        """The loop runs a cycle and exits on shutdown."""
        reconciler, provider, _, _ = make_reconciler(SIMPLE_DOC)

        task = asyncio.create_task(reconciler.run())
        for _ in range(100):
            if reconciler.last_report is not None:
                break
            await asyncio.sleep(0.01)
        reconciler.shutdown()
        await asyncio.wait_for(task, timeout=5)

        assert reconciler.last_report is not None
        assert reconciler.last_report.status == CycleStatus.CONVERGED
        assert len(provider.calls) == 2

    @pytest.mark.asyncio
    async def test_cancel_mid_cycle(self) -> None:
        """Cancelling keeps finished work and reports the rest as cancelled."""
        provider = GatedProvider()
        reconciler, provider, store, _ = make_reconciler(SIMPLE_DOC, provider=provider)

        task = asyncio.create_task(reconciler.reconcile_once())
        try:
            for _ in range(500):
                if provider.started.is_set():
                    break
                await asyncio.sleep(0.01)
            assert provider.started.is_set()
            assert reconciler.phase == ReconcilePhase.EXECUTING
            reconciler.cancel()
        finally:
            provider.release.set()
        report = await asyncio.wait_for(task, timeout=5)

        assert report.status == CycleStatus.PARTIAL
        assert report.resources["cluster"].outcome == "succeeded"
        assert report.resources["pool"].outcome == "cancelled"
        assert store.get("cluster").status == ResourceStatus.APPLIED
        assert store.get("pool") is None
        assert reconciler.halted is False


class TestNormalization:
    """Tests for the default normalization rules switch."""

    @pytest.mark.asyncio
    async def test_region_case_is_ignored_by_default(self) -> None:
        """Re-casing a region is not a change with the default rules."""
        resources = {"cluster": {"kind": "Cluster", "fields": {"name": "c1", "location": "westeurope"}}}
        reconciler, provider, _, holder = make_reconciler(resources)
        await reconciler.reconcile_once()
        provider.calls.clear()

        holder.resources = {
            "cluster": {"kind": "Cluster", "fields": {"name": "c1", "location": "WestEurope"}}
        }
        report = await reconciler.reconcile_once()

        assert report.status == CycleStatus.CONVERGED
        assert provider.calls == []

    @pytest.mark.asyncio
    async def test_default_rules_can_be_disabled(self) -> None:
        """Without the default rules a re-cased region is an immutable change."""
        resources = {"cluster": {"kind": "Cluster", "fields": {"name": "c1", "location": "westeurope"}}}
        reconciler, provider, _, holder = make_reconciler(
            resources, enable_default_normalization_rules=False
        )
        await reconciler.reconcile_once()
        provider.calls.clear()

        holder.resources = {
            "cluster": {"kind": "Cluster", "fields": {"name": "c1", "location": "WestEurope"}}
        }
        report = await reconciler.reconcile_once()

        assert report.resources["cluster"].action == "Replace"
        assert provider.calls == [("delete", "c1"), ("create", "c1")]
