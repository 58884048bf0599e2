"""Tests for the persisted state store and its lease."""

import json
from pathlib import Path

import pytest

from converge.models import AppliedState, DeltaAction, ResourceKind, ResourceStatus
from converge.state_store import (
    FileStateStore,
    LeaseNotHeld,
    MemoryStateStore,
    StateCorrupted,
    StoreLocked,
)


def applied(name: str, **overrides) -> AppliedState:
    values = {
        "name": name,
        "kind": ResourceKind.CLUSTER,
        "provider_id": f"/memory/Cluster/{name}/1",
        "fields": {"name": name},
        "status": ResourceStatus.APPLIED,
    }
    values.update(overrides)
    return AppliedState(**values)


class TestFileStateStore:
    """Tests for FileStateStore."""

    @pytest.mark.asyncio
    async def test_put_and_reload(self, tmp_path: Path) -> None:
        """Records survive a new store instance over the same directory."""
        store = FileStateStore(tmp_path)
        await store.acquire_lease("cycle-1")
        store.put(applied("cluster"))
        store.release_lease("cycle-1")

        reopened = FileStateStore(tmp_path)
        record = reopened.get("cluster")

        assert record is not None
        assert record.provider_id == "/memory/Cluster/cluster/1"
        assert record.status == ResourceStatus.APPLIED

    @pytest.mark.asyncio
    async def test_write_leaves_no_temp_files(self, tmp_path: Path) -> None:
        """Atomic writes rename their temp file into place."""
        store = FileStateStore(tmp_path)
        await store.acquire_lease("cycle-1")
        store.put(applied("cluster"))
        store.put(applied("cluster", provider_id="/memory/Cluster/cluster/2"))

        files = sorted(p.name for p in (tmp_path / "resources").iterdir())
        assert files == ["cluster.json"]
        data = json.loads((tmp_path / "resources" / "cluster.json").read_text())
        assert data["provider_id"] == "/memory/Cluster/cluster/2"

    @pytest.mark.asyncio
    async def test_remove(self, tmp_path: Path) -> None:
        """Removing a record deletes its file."""
        store = FileStateStore(tmp_path)
        await store.acquire_lease("cycle-1")
        store.put(applied("cluster"))
        store.remove("cluster")

        assert store.get("cluster") is None
        assert not (tmp_path / "resources" / "cluster.json").exists()

    def test_put_requires_lease(self, tmp_path: Path) -> None:
        """Mutating without the lease raises LeaseNotHeld."""
        store = FileStateStore(tmp_path)
        with pytest.raises(LeaseNotHeld):
            store.put(applied("cluster"))
        with pytest.raises(LeaseNotHeld):
            store.remove("cluster")

    @pytest.mark.asyncio
    async def test_lease_is_exclusive(self, tmp_path: Path) -> None:
        """A second process cannot take a held lease."""
        first = FileStateStore(tmp_path)
        second = FileStateStore(tmp_path)
        await first.acquire_lease("cycle-1")

        with pytest.raises(StoreLocked) as exc_info:
            await second.acquire_lease("cycle-2")

        assert exc_info.value.holder == "cycle-1"

    @pytest.mark.asyncio
    async def test_lease_released(self, tmp_path: Path) -> None:
        """After release another owner can acquire."""
        first = FileStateStore(tmp_path)
        second = FileStateStore(tmp_path)
        await first.acquire_lease("cycle-1")
        first.release_lease("cycle-1")

        lease = await second.acquire_lease("cycle-2")

        assert lease.owner == "cycle-2"
        assert second.lease_owner == "cycle-2"

    @pytest.mark.asyncio
    async def test_stale_lease_is_broken(self, tmp_path: Path) -> None:
        """An expired lease does not block a new owner."""
        crashed = FileStateStore(tmp_path, lease_ttl_seconds=0)
        await crashed.acquire_lease("crashed")

        survivor = FileStateStore(tmp_path)
        lease = await survivor.acquire_lease("cycle-2")

        assert lease.owner == "cycle-2"
        assert survivor.current_lease().owner == "cycle-2"

    @pytest.mark.asyncio
    async def test_writes_stop_after_takeover(self, tmp_path: Path) -> None:
        """A holder whose expired lease was taken over can no longer write."""
        slow = FileStateStore(tmp_path, lease_ttl_seconds=0)
        await slow.acquire_lease("cycle-a")

        fast = FileStateStore(tmp_path)
        await fast.acquire_lease("cycle-b")
        fast.put(applied("x", fields={"name": "from-b"}))

        with pytest.raises(LeaseNotHeld) as exc_info:
            slow.put(applied("x", fields={"name": "from-a"}))

        assert "cycle-b" in str(exc_info.value)
        assert slow.lease_owner is None
        assert FileStateStore(tmp_path).get("x").fields == {"name": "from-b"}

        # Releasing after the loss leaves the new holder alone
        slow.release_lease("cycle-a")
        assert fast.current_lease().owner == "cycle-b"

    @pytest.mark.asyncio
    async def test_expired_lease_blocks_writes(self, tmp_path: Path) -> None:
        """A lease past its expiry cannot be written under, even uncontested."""
        store = FileStateStore(tmp_path, lease_ttl_seconds=0)
        await store.acquire_lease("cycle-1")

        with pytest.raises(LeaseNotHeld) as exc_info:
            store.put(applied("cluster"))

        assert "expired" in str(exc_info.value)
        assert not (tmp_path / "resources" / "cluster.json").exists()

    @pytest.mark.asyncio
    async def test_broken_lease_blocks_writes(self, tmp_path: Path) -> None:
        """An operator breaking the lease stops the holder's writes."""
        store = FileStateStore(tmp_path)
        await store.acquire_lease("cycle-1")
        FileStateStore(tmp_path).break_lease()

        with pytest.raises(LeaseNotHeld):
            store.remove("cluster")

    @pytest.mark.asyncio
    async def test_renew_extends_expiry(self, tmp_path: Path) -> None:
        """Renewal pushes the stored expiry forward and keeps the owner."""
        store = FileStateStore(tmp_path)
        lease = await store.acquire_lease("cycle-1")

        renewed = store.renew_lease()

        assert renewed.owner == "cycle-1"
        assert renewed.acquired_at == lease.acquired_at
        assert renewed.expires_at >= lease.expires_at
        assert store.current_lease().expires_at == renewed.expires_at

    @pytest.mark.asyncio
    async def test_break_lease(self, tmp_path: Path) -> None:
        """Operators can break a lease left by a crashed process."""
        crashed = FileStateStore(tmp_path)
        await crashed.acquire_lease("crashed")

        operator = FileStateStore(tmp_path)
        broken = operator.break_lease()

        assert broken is not None
        assert broken.owner == "crashed"
        assert operator.current_lease() is None
        assert not (tmp_path / "lease.json").exists()

    @pytest.mark.asyncio
    async def test_unknown_records(self, tmp_path: Path) -> None:
        """Records with an in-flight action are reported after reopening."""
        store = FileStateStore(tmp_path)
        await store.acquire_lease("cycle-1")
        store.put(applied("cluster"))
        store.put(applied("pool", status=ResourceStatus.PENDING, in_flight=DeltaAction.CREATE))

        reopened = FileStateStore(tmp_path)
        unknown = reopened.unknown()

        assert [state.name for state in unknown] == ["pool"]
        assert unknown[0].in_flight == DeltaAction.CREATE

    def test_corrupted_record(self, tmp_path: Path) -> None:
        """An undecodable record fails loudly."""
        (tmp_path / "resources").mkdir()
        (tmp_path / "resources" / "cluster.json").write_text("{not json")

        with pytest.raises(StateCorrupted):
            FileStateStore(tmp_path).list()


class TestMemoryStateStore:
    """Tests for MemoryStateStore."""

    @pytest.mark.asyncio
    async def test_list_is_sorted(self) -> None:
        """Records are listed by logical name."""
        store = MemoryStateStore()
        await store.acquire_lease("cycle-1")
        store.put(applied("pool"))
        store.put(applied("cluster"))

        assert [state.name for state in store.list()] == ["cluster", "pool"]

    @pytest.mark.asyncio
    async def test_reacquire_by_same_owner(self) -> None:
        """The holder may acquire its own lease again."""
        store = MemoryStateStore()
        await store.acquire_lease("cycle-1")
        lease = await store.acquire_lease("cycle-1")

        assert lease.owner == "cycle-1"

    @pytest.mark.asyncio
    async def test_close_releases_lease(self) -> None:
        """Closing the store drops a held lease."""
        store = MemoryStateStore()
        await store.acquire_lease("cycle-1")
        store.close()

        assert store.current_lease() is None
        assert store.lease_owner is None
