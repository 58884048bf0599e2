"""Per-kind capabilities.

Each resource kind is a flat record; behaviour that differs between kinds
(which fields force a replacement, which fields must be present) is looked
up here by kind rather than expressed through subclasses.

EXAMPLE:
```yaml
pool:
  kind: NodePool
  fields:
    name: system
    cluster_id: ${cluster.id}
    vm_size: Standard_D4s_v5   # changing this replaces the pool
    node_count: 3              # changing this updates in place
```
"""

from __future__ import annotations

from dataclasses import dataclass, field

from .models import ResourceKind, ResourceSpec


@dataclass(frozen=True)
class KindCapability:
    """What the engine needs to know about one resource kind.

    Attributes:
        kind: The resource kind.
        replace_on: Top-level fields the provider cannot change in place.
        required_fields: Fields every declaration of this kind must carry.
    """

    kind: ResourceKind
    replace_on: frozenset[str] = field(default_factory=frozenset)
    required_fields: frozenset[str] = field(default_factory=frozenset)

    def requires_replace(self, changed_fields: set[str]) -> bool:
        """Check whether any changed field forces a replacement."""
        return bool(self.replace_on & changed_fields)


# Fields that cannot be updated in place, per managed-cluster conventions
DEFAULT_CAPABILITIES: dict[ResourceKind, KindCapability] = {
    ResourceKind.CLUSTER: KindCapability(
        kind=ResourceKind.CLUSTER,
        replace_on=frozenset(
            {"name", "location", "resource_group", "dns_prefix", "node_resource_group"}
        ),
    ),
    ResourceKind.NODE_POOL: KindCapability(
        kind=ResourceKind.NODE_POOL,
        replace_on=frozenset(
            {"name", "cluster_id", "vm_size", "os_type", "os_disk_size_gb", "zones"}
        ),
    ),
    ResourceKind.LOG_WORKSPACE: KindCapability(
        kind=ResourceKind.LOG_WORKSPACE,
        replace_on=frozenset({"name", "location", "resource_group"}),
    ),
    ResourceKind.DIAGNOSTIC_SETTING: KindCapability(
        kind=ResourceKind.DIAGNOSTIC_SETTING,
        replace_on=frozenset({"name", "target_id"}),
        required_fields=frozenset({"name", "target_id"}),
    ),
    ResourceKind.ROLE_ASSIGNMENT: KindCapability(
        kind=ResourceKind.ROLE_ASSIGNMENT,
        # Role assignments are immutable as a whole
        replace_on=frozenset({"name", "scope", "principal_id", "role_definition_id"}),
        required_fields=frozenset({"scope", "principal_id", "role_definition_id"}),
    ),
    ResourceKind.SUBNET: KindCapability(
        kind=ResourceKind.SUBNET,
        replace_on=frozenset({"name", "virtual_network_id"}),
    ),
    ResourceKind.IDENTITY: KindCapability(
        kind=ResourceKind.IDENTITY,
        replace_on=frozenset({"name", "location", "resource_group"}),
    ),
    ResourceKind.GENERIC: KindCapability(
        kind=ResourceKind.GENERIC,
        replace_on=frozenset({"name", "type"}),
    ),
}


class KindRegistry:
    """Capability lookup keyed by resource kind."""

    def __init__(self, capabilities: dict[ResourceKind, KindCapability] | None = None) -> None:
        self._capabilities = dict(DEFAULT_CAPABILITIES)
        if capabilities:
            self._capabilities.update(capabilities)

    def get(self, kind: ResourceKind) -> KindCapability:
        """Get the capability for a kind.

        Raises:
            ValueError: If the kind has no registered capability.
        """
        capability = self._capabilities.get(kind)
        if capability is None:
            valid = sorted(k.value for k in self._capabilities)
            raise ValueError(f"No capability registered for kind '{kind.value}'. Known: {valid}")
        return capability

    def validate_spec(self, spec: ResourceSpec) -> list[str]:
        """Return problems with a spec's fields (empty list if none)."""
        capability = self.get(spec.kind)
        missing = sorted(capability.required_fields - set(spec.fields))
        if missing:
            return [f"{spec.kind.value} '{spec.name}' is missing required fields: {missing}"]
        return []
