"""Data model for desired and applied state.

The desired-state document is validated with Pydantic at the boundary
(fail fast, fail loudly). Everything derived from it inside a cycle is a
plain dataclass.
"""

from __future__ import annotations

import hashlib
import json
import re
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator

from .config import MAX_RESOURCES_PER_DOCUMENT, VALID_LOGICAL_NAME_PATTERN

# =============================================================================
# Enumerations
# =============================================================================


class ResourceKind(str, Enum):
    """Resource kinds the engine knows how to reconcile."""

    CLUSTER = "Cluster"
    NODE_POOL = "NodePool"
    LOG_WORKSPACE = "LogWorkspace"
    DIAGNOSTIC_SETTING = "DiagnosticSetting"
    ROLE_ASSIGNMENT = "RoleAssignment"
    SUBNET = "Subnet"
    IDENTITY = "Identity"
    GENERIC = "Generic"


class ResourceStatus(str, Enum):
    """Lifecycle status of a persisted resource record."""

    PENDING = "Pending"  # Intent written, provider response not yet recorded
    APPLIED = "Applied"
    FAILED = "Failed"
    DELETED = "Deleted"


class DeltaAction(str, Enum):
    """Classification of the change needed for one resource."""

    NOOP = "NoOp"
    CREATE = "Create"
    UPDATE = "Update"
    REPLACE = "Replace"
    DELETE = "Delete"


def fingerprint(data: Any) -> str:
    """Return a stable SHA-256 over the canonical JSON form of data."""
    canonical = json.dumps(data, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


# =============================================================================
# Desired-state document
# =============================================================================


class ResourceDeclaration(BaseModel):
    """One entry of the desired-state document."""

    model_config = {"extra": "forbid", "populate_by_name": True}

    kind: ResourceKind
    fields: dict[str, Any] = Field(default_factory=dict)
    depends_on: list[str] = Field(default_factory=list, alias="dependsOn")

    @field_validator("depends_on")
    @classmethod
    def validate_depends_on(cls, v: list[str]) -> list[str]:
        if len(set(v)) != len(v):
            raise ValueError("depends_on contains duplicate names")
        return v


class DesiredStateDocument(BaseModel):
    """Already-resolved desired state: logical name -> declaration."""

    model_config = {"extra": "forbid"}

    resources: dict[str, ResourceDeclaration] = Field(default_factory=dict)

    @field_validator("resources")
    @classmethod
    def validate_resources(
        cls, v: dict[str, ResourceDeclaration]
    ) -> dict[str, ResourceDeclaration]:
        if len(v) > MAX_RESOURCES_PER_DOCUMENT:
            raise ValueError(
                f"document declares {len(v)} resources, maximum is {MAX_RESOURCES_PER_DOCUMENT}"
            )
        invalid = [name for name in v if not re.match(VALID_LOGICAL_NAME_PATTERN, name)]
        if invalid:
            raise ValueError(
                f"logical names must match {VALID_LOGICAL_NAME_PATTERN}: {sorted(invalid)}"
            )
        return v

    @classmethod
    def from_mapping(cls, data: dict[str, Any]) -> DesiredStateDocument:
        """Validate a bare ``name -> {kind, fields, depends_on}`` mapping."""
        return cls.model_validate({"resources": data})

    def fingerprint(self) -> str:
        """SHA-256 of the document, used to notice desired-state changes."""
        return fingerprint(self.model_dump(mode="json", by_alias=False))


# =============================================================================
# Cycle-scoped and persisted records
# =============================================================================


@dataclass(frozen=True)
class ResourceSpec:
    """Immutable desired state of a single resource for one cycle."""

    name: str
    kind: ResourceKind
    fields: dict[str, Any] = field(default_factory=dict)
    depends_on: frozenset[str] = field(default_factory=frozenset)

    def fields_fingerprint(self) -> str:
        return fingerprint({"kind": self.kind.value, "fields": self.fields})


@dataclass
class AppliedState:
    """Last-known applied state of a resource, keyed by logical name.

    Attributes:
        name: Logical name of the resource.
        kind: Resource kind at the time it was applied.
        provider_id: Provider-assigned identifier (empty until first create).
        fields: Field values as declared when last applied (references unresolved).
        observed: Field values reported back by the provider.
        depends_on: Dependency names at apply time, used to order deletions.
        status: Lifecycle status.
        last_transition: When the status last changed.
        in_flight: Action dispatched but not yet confirmed, if any.
        error: Last error text for Failed records.
        failed_fingerprint: Fingerprint of the declaration that failed fatally.
    """

    name: str
    kind: ResourceKind
    provider_id: str = ""
    fields: dict[str, Any] = field(default_factory=dict)
    observed: dict[str, Any] = field(default_factory=dict)
    depends_on: list[str] = field(default_factory=list)
    status: ResourceStatus = ResourceStatus.PENDING
    last_transition: datetime = field(default_factory=lambda: datetime.now(UTC))
    in_flight: DeltaAction | None = None
    error: str | None = None
    failed_fingerprint: str | None = None

    @property
    def is_unknown(self) -> bool:
        """True if a provider call was dispatched but never confirmed."""
        return self.in_flight is not None

    @property
    def is_live(self) -> bool:
        """True if the provider may hold a resource for this record."""
        return self.status != ResourceStatus.DELETED and bool(self.provider_id)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "name": self.name,
            "kind": self.kind.value,
            "provider_id": self.provider_id,
            "fields": self.fields,
            "observed": self.observed,
            "depends_on": sorted(self.depends_on),
            "status": self.status.value,
            "last_transition": self.last_transition.isoformat(),
            "in_flight": self.in_flight.value if self.in_flight else None,
            "error": self.error,
            "failed_fingerprint": self.failed_fingerprint,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AppliedState:
        """Create from dictionary."""
        return cls(
            name=data["name"],
            kind=ResourceKind(data["kind"]),
            provider_id=data.get("provider_id", ""),
            fields=data.get("fields", {}),
            observed=data.get("observed", {}),
            depends_on=list(data.get("depends_on", [])),
            status=ResourceStatus(data.get("status", ResourceStatus.PENDING.value)),
            last_transition=datetime.fromisoformat(data["last_transition"]),
            in_flight=DeltaAction(data["in_flight"]) if data.get("in_flight") else None,
            error=data.get("error"),
            failed_fingerprint=data.get("failed_fingerprint"),
        )
