"""Persisted applied state with an exclusive lease.

The State Store is the only durable part of the engine. It is modelled as
explicit state with documented lifecycle rules:

- open():  load every record from the durable medium into memory
- get()/list(): read from the loaded records
- put()/remove(): write through to the medium before returning
- close(): release the lease if held

Mutations require the caller to hold the exclusive lease. Only one
reconciliation cycle may hold it at a time; a second acquirer gets
StoreLocked. A lease older than its TTL is considered stale and may be
broken, so a crashed process cannot block the engine forever.

Every mutation re-reads the lease from the medium and extends it. Once the
stored lease has expired or names another owner the mutation fails with
LeaseNotHeld and nothing is written.

CRASH DETECTION:
The executor writes an intent record (status Pending, in_flight set) before
every provider call and clears in_flight when the response is recorded. A
record still carrying in_flight when the store is opened means the outcome
of that call is unknown; it is reported by unknown() and never treated as
absent.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import tempfile
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

from .config import DEFAULT_LEASE_TTL_SECONDS
from .models import AppliedState

logger = logging.getLogger(__name__)

# Poll interval while waiting for a lease held by someone else
LEASE_POLL_INTERVAL_SECONDS = 1.0


class StoreError(Exception):
    """Raised when the state store cannot serve a request."""

    pass


class StoreLocked(StoreError):
    """Raised when another cycle holds the exclusive lease."""

    def __init__(self, holder: str, expires_at: datetime | None = None) -> None:
        self.holder = holder
        self.expires_at = expires_at
        detail = f" until {expires_at.isoformat()}" if expires_at else ""
        super().__init__(f"State store is locked by '{holder}'{detail}")


class LeaseNotHeld(StoreError):
    """Raised when state is mutated without holding the lease."""

    pass


class StateCorrupted(StoreError):
    """Raised when a persisted record cannot be decoded."""

    pass


@dataclass
class Lease:
    """An exclusive lease on the store."""

    owner: str
    acquired_at: datetime
    expires_at: datetime

    def is_expired(self, now: datetime | None = None) -> bool:
        return (now or datetime.now(UTC)) >= self.expires_at

    def to_dict(self) -> dict[str, Any]:
        return {
            "owner": self.owner,
            "acquired_at": self.acquired_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Lease:
        return cls(
            owner=data["owner"],
            acquired_at=datetime.fromisoformat(data["acquired_at"]),
            expires_at=datetime.fromisoformat(data["expires_at"]),
        )


class StateStore(ABC):
    """Base class for state stores.

    Subclasses implement the durable medium; this class implements the
    in-memory view, lease bookkeeping and the mutation guard.
    """

    def __init__(self, lease_ttl_seconds: int = DEFAULT_LEASE_TTL_SECONDS) -> None:
        self._lease_ttl = timedelta(seconds=lease_ttl_seconds)
        self._records: dict[str, AppliedState] = {}
        self._lease_owner: str | None = None
        self._opened = False

    # -- durable medium ------------------------------------------------------

    @abstractmethod
    def _load_records(self) -> list[AppliedState]:
        """Read every record from the medium."""

    @abstractmethod
    def _write_record(self, state: AppliedState) -> None:
        """Durably upsert one record."""

    @abstractmethod
    def _delete_record(self, name: str) -> None:
        """Durably remove one record."""

    @abstractmethod
    def _try_acquire(self, lease: Lease) -> Lease | None:
        """Take the lease; return the current holder's lease if taken."""

    @abstractmethod
    def _release(self, owner: str) -> None:
        """Drop the lease if owned by owner."""

    @abstractmethod
    def _current_lease(self) -> Lease | None:
        """Read the lease as stored on the medium."""

    @abstractmethod
    def _break_lease(self) -> None:
        """Remove the lease whoever holds it."""

    @abstractmethod
    def _write_lease(self, lease: Lease) -> None:
        """Overwrite the stored lease (renewal by its holder)."""

    # -- lifecycle -----------------------------------------------------------

    def open(self) -> None:
        """Load persisted state. Safe to call more than once."""
        self._records = {state.name: state for state in self._load_records()}
        self._opened = True

        for state in self.unknown():
            logger.warning(
                "Resource has an unconfirmed provider operation",
                extra={
                    "resource": state.name,
                    "in_flight": state.in_flight.value if state.in_flight else None,
                    "provider_id": state.provider_id,
                },
            )

        logger.info("State store opened", extra={"records": len(self._records)})

    def close(self) -> None:
        """Flush and release the lease if this process holds it."""
        if self._lease_owner is not None:
            self.release_lease(self._lease_owner)
        self._opened = False

    # -- reads ---------------------------------------------------------------

    def _ensure_open(self) -> None:
        if not self._opened:
            self.open()

    def get(self, name: str) -> AppliedState | None:
        self._ensure_open()
        return self._records.get(name)

    def list(self) -> list[AppliedState]:
        self._ensure_open()
        return [self._records[name] for name in sorted(self._records)]

    def unknown(self) -> list[AppliedState]:
        """Records whose last provider call was never confirmed."""
        return [state for state in self.list() if state.is_unknown]

    # -- writes --------------------------------------------------------------

    def _require_lease(self) -> None:
        self.renew_lease()

    def put(self, state: AppliedState) -> None:
        """Atomically upsert the record for state.name."""
        self._ensure_open()
        self._require_lease()
        self._write_record(state)
        self._records[state.name] = state
        logger.debug(
            "State record written",
            extra={"resource": state.name, "status": state.status.value},
        )

    def remove(self, name: str) -> None:
        """Remove a record entirely."""
        self._ensure_open()
        self._require_lease()
        self._delete_record(name)
        self._records.pop(name, None)

    # -- lease ---------------------------------------------------------------

    @property
    def lease_owner(self) -> str | None:
        return self._lease_owner

    async def acquire_lease(self, owner: str, wait_seconds: float = 0.0) -> Lease:
        """Acquire the exclusive lease.

        Args:
            owner: Identifier of the acquiring cycle.
            wait_seconds: How long to keep retrying while the lease is held.

        Returns:
            The acquired lease.

        Raises:
            StoreLocked: If another owner still holds the lease.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + wait_seconds

        while True:
            now = datetime.now(UTC)
            lease = Lease(owner=owner, acquired_at=now, expires_at=now + self._lease_ttl)
            holder = self._try_acquire(lease)
            if holder is None:
                self._lease_owner = owner
                # Pick up writes made by the previous holder
                self.open()
                logger.info("Lease acquired", extra={"owner": owner})
                return lease

            if loop.time() >= deadline:
                raise StoreLocked(holder.owner, holder.expires_at)

            await asyncio.sleep(min(LEASE_POLL_INTERVAL_SECONDS, max(0.0, deadline - loop.time())))

    def renew_lease(self) -> Lease:
        """Confirm the lease on the medium is still ours and extend it.

        Returns:
            The renewed lease.

        Raises:
            LeaseNotHeld: If no lease was acquired, or the stored lease has
                expired or now belongs to another owner.
        """
        owner = self._lease_owner
        if owner is None:
            raise LeaseNotHeld("State store mutation requires the exclusive lease")

        now = datetime.now(UTC)
        current = self._current_lease()
        if current is None or current.owner != owner or current.is_expired(now):
            self._lease_owner = None
            holder = current.owner if current is not None else None
            logger.error(
                "Lease lost",
                extra={"owner": owner, "holder": holder},
            )
            if current is None:
                raise LeaseNotHeld(f"Lease held by '{owner}' was broken")
            if current.owner == owner:
                raise LeaseNotHeld(f"Lease held by '{owner}' expired")
            raise LeaseNotHeld(f"Lease held by '{owner}' was taken over by '{holder}'")

        lease = Lease(owner=owner, acquired_at=current.acquired_at, expires_at=now + self._lease_ttl)
        self._write_lease(lease)
        return lease

    def release_lease(self, owner: str) -> None:
        """Release the lease if owner holds it."""
        if self._lease_owner != owner:
            return
        self._release(owner)
        self._lease_owner = None
        logger.info("Lease released", extra={"owner": owner})

    def current_lease(self) -> Lease | None:
        """Return the lease held by any owner, or None."""
        return self._current_lease()

    def break_lease(self) -> Lease | None:
        """Forcibly remove the lease (operator recovery after a crash).

        Returns:
            The lease that was broken, if any.
        """
        current = self._current_lease()
        self._break_lease()
        if current is not None:
            logger.warning(
                "Lease broken by operator",
                extra={"previous_owner": current.owner, "expires_at": current.expires_at.isoformat()},
            )
        self._lease_owner = None
        return current


class MemoryStateStore(StateStore):
    """In-memory store with the same semantics as the file store."""

    def __init__(self, lease_ttl_seconds: int = DEFAULT_LEASE_TTL_SECONDS) -> None:
        super().__init__(lease_ttl_seconds)
        self._durable: dict[str, dict[str, Any]] = {}
        self._lease: Lease | None = None

    def _load_records(self) -> list[AppliedState]:
        return [AppliedState.from_dict(data) for data in self._durable.values()]

    def _write_record(self, state: AppliedState) -> None:
        self._durable[state.name] = state.to_dict()

    def _delete_record(self, name: str) -> None:
        self._durable.pop(name, None)

    def _try_acquire(self, lease: Lease) -> Lease | None:
        current = self._lease
        if current is not None and current.owner != lease.owner and not current.is_expired():
            return current
        self._lease = lease
        return None

    def _release(self, owner: str) -> None:
        if self._lease is not None and self._lease.owner == owner:
            self._lease = None

    def _current_lease(self) -> Lease | None:
        return self._lease

    def _break_lease(self) -> None:
        self._lease = None

    def _write_lease(self, lease: Lease) -> None:
        self._lease = lease


class FileStateStore(StateStore):
    """One JSON file per logical name under <directory>/resources.

    Every write goes to a temporary file in the same directory, is fsynced
    and then renamed over the target, so a record is either the old or the
    new version, never a torn write.
    """

    def __init__(
        self,
        directory: Path,
        lease_ttl_seconds: int = DEFAULT_LEASE_TTL_SECONDS,
    ) -> None:
        super().__init__(lease_ttl_seconds)
        self._directory = Path(directory)
        self._resources_dir = self._directory / "resources"
        self._lease_path = self._directory / "lease.json"

    @property
    def directory(self) -> Path:
        return self._directory

    def _record_path(self, name: str) -> Path:
        return self._resources_dir / f"{name}.json"

    def _atomic_write(self, path: Path, data: dict[str, Any]) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(data, handle, indent=2, sort_keys=True)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
        self._fsync_dir(path.parent)

    @staticmethod
    def _fsync_dir(directory: Path) -> None:
        try:
            dir_fd = os.open(directory, os.O_RDONLY)
        except OSError:
            return
        try:
            os.fsync(dir_fd)
        except OSError:
            pass
        finally:
            os.close(dir_fd)

    def _load_records(self) -> list[AppliedState]:
        if not self._resources_dir.exists():
            return []

        records: list[AppliedState] = []
        for path in sorted(self._resources_dir.glob("*.json")):
            try:
                data = json.loads(path.read_text(encoding="utf-8"))
                records.append(AppliedState.from_dict(data))
            except (OSError, ValueError, KeyError) as e:
                raise StateCorrupted(f"Failed to load state record {path}: {e}") from e
        return records

    def _write_record(self, state: AppliedState) -> None:
        self._atomic_write(self._record_path(state.name), state.to_dict())

    def _delete_record(self, name: str) -> None:
        self._record_path(name).unlink(missing_ok=True)
        self._fsync_dir(self._resources_dir)

    def _read_lease(self) -> Lease | None:
        try:
            return Lease.from_dict(json.loads(self._lease_path.read_text(encoding="utf-8")))
        except FileNotFoundError:
            return None
        except (OSError, ValueError, KeyError) as e:
            logger.warning(
                "Unreadable lease file, treating as stale",
                extra={"path": str(self._lease_path), "error": str(e)},
            )
            return None

    def _try_acquire(self, lease: Lease) -> Lease | None:
        self._directory.mkdir(parents=True, exist_ok=True)

        for _ in range(2):
            try:
                fd = os.open(self._lease_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o600)
            except FileExistsError:
                current = self._read_lease()
                if current is not None and current.owner == lease.owner:
                    # Re-entrant acquire extends our own lease
                    self._write_lease(lease)
                    return None
                if current is not None and not current.is_expired():
                    return current
                logger.warning(
                    "Breaking stale lease",
                    extra={"previous_owner": current.owner if current else None},
                )
                self._lease_path.unlink(missing_ok=True)
                continue

            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(lease.to_dict(), handle)
                handle.flush()
                os.fsync(handle.fileno())
            return None

        # Lost the race against another process breaking the same stale lease
        current = self._read_lease()
        return current or lease

    def _release(self, owner: str) -> None:
        current = self._read_lease()
        if current is None or current.owner == owner:
            self._lease_path.unlink(missing_ok=True)

    def _current_lease(self) -> Lease | None:
        return self._read_lease()

    def _break_lease(self) -> None:
        self._lease_path.unlink(missing_ok=True)

    def _write_lease(self, lease: Lease) -> None:
        self._atomic_write(self._lease_path, lease.to_dict())
