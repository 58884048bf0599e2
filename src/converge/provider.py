"""Provider interface.

The engine never talks to a cloud API directly. It calls an object
implementing Provider, whose methods are plain blocking calls; the executor
runs them on its worker pool. Errors must be tagged as either transient
(retry may succeed) or fatal (the declaration itself is wrong).
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

from .models import ResourceKind


class ProviderError(Exception):
    """Base class for errors raised by a provider."""

    def __init__(self, message: str, code: str | None = None) -> None:
        self.code = code
        super().__init__(message)


class TransientProviderError(ProviderError):
    """Throttling, quota, timeouts, conflicts: worth retrying."""

    pass


class FatalProviderError(ProviderError):
    """The provider rejected the declaration (e.g. invalid VM size)."""

    pass


class Provider(ABC):
    """Capability the executor uses to change real infrastructure."""

    @abstractmethod
    def create(self, kind: ResourceKind, fields: dict[str, Any]) -> tuple[str, dict[str, Any]]:
        """Create a resource.

        Returns:
            Tuple of (provider id, observed fields).
        """

    @abstractmethod
    def update(self, provider_id: str, kind: ResourceKind, fields: dict[str, Any]) -> dict[str, Any]:
        """Update a resource in place and return its observed fields."""

    @abstractmethod
    def delete(self, provider_id: str, kind: ResourceKind) -> None:
        """Delete a resource. Deleting something already gone succeeds."""

    def read(self, provider_id: str, kind: ResourceKind) -> dict[str, Any] | None:
        """Return live observed fields, or None if the resource is gone.

        Only used with the refresh drift policy.
        """
        raise NotImplementedError(f"{type(self).__name__} does not support reading live state")


class MemoryProvider(Provider):
    """In-process provider for local runs and tests.

    Keeps resources in a dict and records every call. Errors can be injected
    per logical resource name (the ``name`` field) to exercise failure paths.
    """

    def __init__(self) -> None:
        self.resources: dict[str, dict[str, Any]] = {}
        self.kinds: dict[str, ResourceKind] = {}
        self.calls: list[tuple[str, str]] = []
        self._failures: dict[str, list[ProviderError]] = {}
        self._counter = 0

    def fail(self, resource_name: str, *errors: ProviderError) -> None:
        """Raise the given errors, in order, on the next calls touching resource_name."""
        self._failures.setdefault(resource_name, []).extend(errors)

    def _maybe_fail(self, resource_name: str) -> None:
        queued = self._failures.get(resource_name)
        if queued:
            raise queued.pop(0)

    @staticmethod
    def _name_of(fields: dict[str, Any]) -> str:
        return str(fields.get("name", ""))

    def create(self, kind: ResourceKind, fields: dict[str, Any]) -> tuple[str, dict[str, Any]]:
        name = self._name_of(fields)
        self.calls.append(("create", name))
        self._maybe_fail(name)
        self._counter += 1
        provider_id = f"/memory/{kind.value}/{name}/{self._counter}"
        self.resources[provider_id] = dict(fields)
        self.kinds[provider_id] = kind
        return provider_id, dict(fields)

    def update(self, provider_id: str, kind: ResourceKind, fields: dict[str, Any]) -> dict[str, Any]:
        name = self._name_of(fields)
        self.calls.append(("update", name))
        self._maybe_fail(name)
        if provider_id not in self.resources:
            raise FatalProviderError(f"Resource not found: {provider_id}", code="NotFound")
        self.resources[provider_id] = dict(fields)
        return dict(fields)

    def delete(self, provider_id: str, kind: ResourceKind) -> None:
        name = self._name_of(self.resources.get(provider_id, {}))
        self.calls.append(("delete", name))
        self._maybe_fail(name)
        self.resources.pop(provider_id, None)
        self.kinds.pop(provider_id, None)

    def read(self, provider_id: str, kind: ResourceKind) -> dict[str, Any] | None:
        current = self.resources.get(provider_id)
        return dict(current) if current is not None else None
