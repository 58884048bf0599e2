"""Provider implementation over Azure Resource Manager.

Every kind is addressed through the generic resources API
(`begin_create_or_update_by_id`, `begin_delete_by_id`, `get_by_id`), so the
engine never models a resource schema: the declaration's fields are split
into addressing fields (used to build the resource id), envelope fields
(location, tags, sku, identity, zones) and everything else, which becomes the
`properties` payload unchanged.

API VERSIONS: every kind has a pinned version. Generic resources may declare
`api_version`; without one, and for delete and read, the version last written
or the resource provider's newest stable version is used.

SECRETLESS: credentials are always a managed identity. Client secrets in the
environment abort startup.

ERROR MAPPING:
- 408, 409, 429, 5xx and connection errors -> TransientProviderError
- any other HTTP error                       -> FatalProviderError
- 404 on delete                             -> success (already gone)
- 404 on read                               -> None
"""

from __future__ import annotations

import logging
import os
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from azure.core.exceptions import (
    AzureError,
    HttpResponseError,
    ResourceNotFoundError,
    ServiceRequestError,
    ServiceResponseError,
)
from azure.identity import ManagedIdentityCredential
from azure.mgmt.resource import ResourceManagementClient
from azure.mgmt.resource.resources.models import GenericResource

from .config import DEFAULT_OPERATION_TIMEOUT_SECONDS
from .models import ResourceKind
from .provider import FatalProviderError, Provider, TransientProviderError

logger = logging.getLogger(__name__)

TRANSIENT_STATUS_CODES = frozenset({408, 409, 429, 500, 502, 503, 504})

# Environment variables that indicate credential leakage
FORBIDDEN_CREDENTIAL_ENV_VARS: tuple[str, ...] = (
    "AZURE_CLIENT_SECRET",
    "AZURE_CLIENT_CERTIFICATE_PATH",
    "AZURE_CLIENT_CERTIFICATE_PASSWORD",
    "AZURE_USERNAME",
    "AZURE_PASSWORD",
)

ENVELOPE_FIELDS = frozenset({"location", "tags", "sku", "identity", "zones", "kind"})


class SecretlessViolationError(Exception):
    """Raised when credential secrets are found in the environment."""

    pass


def get_managed_identity_credential(client_id: str | None = None) -> ManagedIdentityCredential:
    """Return a managed identity credential after checking for leaked secrets.

    Raises:
        SecretlessViolationError: If credential environment variables are set.
    """
    for env_var in FORBIDDEN_CREDENTIAL_ENV_VARS:
        if os.environ.get(env_var):
            logger.critical(
                "Secretless architecture violation",
                extra={"security_event": "credential_detected", "env_var": env_var},
            )
            raise SecretlessViolationError(
                f"{env_var} is set; only managed identity authentication is allowed"
            )

    if client_id:
        logger.info(
            "Using user-assigned managed identity",
            extra={"client_id": client_id[:8] + "..." if len(client_id) > 8 else client_id},
        )
        return ManagedIdentityCredential(client_id=client_id)

    logger.info("Using system-assigned managed identity")
    return ManagedIdentityCredential()


# =============================================================================
# Kind to ARM mapping
# =============================================================================


def _require(fields: dict[str, Any], *names: str) -> list[str]:
    missing = [name for name in names if not fields.get(name)]
    if missing:
        raise FatalProviderError(f"Missing fields required for addressing: {missing}")
    return [str(fields[name]).rstrip("/") for name in names]


def _group_scoped(provider_type: str) -> Callable[[str, dict[str, Any]], str]:
    def build(subscription_id: str, fields: dict[str, Any]) -> str:
        resource_group, name = _require(fields, "resource_group", "name")
        subscription = fields.get("subscription_id") or subscription_id
        return (
            f"/subscriptions/{subscription}/resourceGroups/{resource_group}"
            f"/providers/{provider_type}/{name}"
        )

    return build


def _child_of(parent_field: str, segment: str) -> Callable[[str, dict[str, Any]], str]:
    def build(_subscription_id: str, fields: dict[str, Any]) -> str:
        parent, name = _require(fields, parent_field, "name")
        return f"{parent}/{segment}/{name}"

    return build


def _role_assignment_id(_subscription_id: str, fields: dict[str, Any]) -> str:
    scope, principal, role = _require(fields, "scope", "principal_id", "role_definition_id")
    # Role assignment names are GUIDs; derive a stable one when not given
    name = fields.get("name") or str(uuid.uuid5(uuid.NAMESPACE_URL, f"{scope}|{principal}|{role}"))
    return f"{scope}/providers/Microsoft.Authorization/roleAssignments/{name}"


def _explicit_id(_subscription_id: str, fields: dict[str, Any]) -> str:
    (resource_id,) = _require(fields, "resource_id")
    return resource_id


@dataclass(frozen=True)
class ArmMapping:
    """How a resource kind is addressed in Azure Resource Manager."""

    api_version: str
    build_id: Callable[[str, dict[str, Any]], str]
    addressing_fields: frozenset[str]


ARM_MAPPINGS: dict[ResourceKind, ArmMapping] = {
    ResourceKind.CLUSTER: ArmMapping(
        "2024-05-01",
        _group_scoped("Microsoft.ContainerService/managedClusters"),
        frozenset({"name", "resource_group", "subscription_id"}),
    ),
    ResourceKind.NODE_POOL: ArmMapping(
        "2024-05-01",
        _child_of("cluster_id", "agentPools"),
        frozenset({"name", "cluster_id"}),
    ),
    ResourceKind.LOG_WORKSPACE: ArmMapping(
        "2022-10-01",
        _group_scoped("Microsoft.OperationalInsights/workspaces"),
        frozenset({"name", "resource_group", "subscription_id"}),
    ),
    ResourceKind.DIAGNOSTIC_SETTING: ArmMapping(
        "2021-05-01-preview",
        _child_of("target_id", "providers/Microsoft.Insights/diagnosticSettings"),
        frozenset({"name", "target_id"}),
    ),
    ResourceKind.ROLE_ASSIGNMENT: ArmMapping(
        "2022-04-01",
        _role_assignment_id,
        frozenset({"name", "scope"}),
    ),
    ResourceKind.SUBNET: ArmMapping(
        "2023-11-01",
        _child_of("virtual_network_id", "subnets"),
        frozenset({"name", "virtual_network_id"}),
    ),
    ResourceKind.IDENTITY: ArmMapping(
        "2023-01-31",
        _group_scoped("Microsoft.ManagedIdentity/userAssignedIdentities"),
        frozenset({"name", "resource_group", "subscription_id"}),
    ),
    ResourceKind.GENERIC: ArmMapping(
        "2021-04-01",
        _explicit_id,
        frozenset({"name", "resource_id", "api_version", "type"}),
    ),
}


def build_request(
    subscription_id: str, kind: ResourceKind, fields: dict[str, Any]
) -> tuple[str, str, GenericResource]:
    """Translate a declaration into (resource id, api version, body)."""
    mapping = ARM_MAPPINGS[kind]
    resource_id = mapping.build_id(subscription_id, fields)
    api_version = str(fields.get("api_version") or mapping.api_version)

    properties: dict[str, Any] = dict(fields.get("properties") or {})
    for key, value in fields.items():
        if key in mapping.addressing_fields or key in ENVELOPE_FIELDS or key == "properties":
            continue
        properties.setdefault(key, value)

    body = GenericResource(
        location=fields.get("location"),
        tags=fields.get("tags"),
        sku=fields.get("sku"),
        identity=fields.get("identity"),
        kind=fields.get("kind"),
        properties=properties,
    )
    return resource_id, api_version, body


def resource_type_of(resource_id: str) -> tuple[str, str] | None:
    """Split an ARM id into (namespace, resource type), e.g.
    ("Microsoft.Web", "sites/slots"). None for ids without a provider segment.
    """
    segments = [segment for segment in resource_id.split("/") if segment]
    lowered = [segment.lower() for segment in segments]
    if "providers" not in lowered:
        return None
    index = len(lowered) - 1 - lowered[::-1].index("providers")
    rest = segments[index + 1 :]
    if len(rest) < 3:
        return None
    return rest[0], "/".join(rest[1::2])


def preferred_api_version(api_versions: list[str]) -> str | None:
    """Newest stable version, or the newest preview if there is no stable one."""
    stable = [version for version in api_versions if "preview" not in version.lower()]
    candidates = sorted(stable or api_versions, reverse=True)
    return candidates[0] if candidates else None


def classify_error(error: Exception, operation: str) -> TransientProviderError | FatalProviderError:
    """Map an Azure SDK exception onto the engine's error taxonomy."""
    if isinstance(error, ServiceRequestError | ServiceResponseError):
        return TransientProviderError(f"{operation} failed to reach Azure: {error}")

    if isinstance(error, HttpResponseError):
        status = error.status_code or 0
        odata = getattr(error, "error", None)
        code = odata.code if odata is not None else None
        message = f"{operation} failed with HTTP {status}: {error.message}"
        if status in TRANSIENT_STATUS_CODES:
            return TransientProviderError(message, code=code)
        return FatalProviderError(message, code=code)

    return TransientProviderError(f"{operation} failed: {error}")


def _observed(resource: Any) -> dict[str, Any]:
    if resource is None:
        return {}
    if hasattr(resource, "as_dict"):
        return resource.as_dict()
    return dict(resource)


class AzureResourceProvider(Provider):
    """Provider backed by ResourceManagementClient generic resource calls."""

    def __init__(
        self,
        subscription_id: str,
        client: ResourceManagementClient | None = None,
        client_id: str | None = None,
        operation_timeout_seconds: int = DEFAULT_OPERATION_TIMEOUT_SECONDS,
    ) -> None:
        self._subscription_id = subscription_id
        self._timeout = operation_timeout_seconds
        if client is None:
            client = ResourceManagementClient(
                credential=get_managed_identity_credential(client_id),
                subscription_id=subscription_id,
            )
        self._client = client
        # Api version last written per resource id (lowercased)
        self._written_versions: dict[str, str] = {}
        # Resolved api version per "namespace/type" (lowercased)
        self._type_versions: dict[str, str | None] = {}

    def _lookup_type_version(self, resource_id: str) -> str | None:
        parsed = resource_type_of(resource_id)
        if parsed is None:
            return None
        namespace, resource_type = parsed
        key = f"{namespace}/{resource_type}".lower()
        if key in self._type_versions:
            return self._type_versions[key]

        try:
            registration = self._client.providers.get(namespace)
        except ResourceNotFoundError:
            registration = None
        except AzureError as e:
            raise classify_error(e, f"GET provider {namespace}") from e

        for entry in getattr(registration, "resource_types", None) or []:
            type_key = f"{namespace}/{entry.resource_type}".lower()
            self._type_versions[type_key] = preferred_api_version(list(entry.api_versions or []))
        self._type_versions.setdefault(key, None)

        logger.debug(
            "Resolved api version",
            extra={"resource_type": key, "api_version": self._type_versions[key]},
        )
        return self._type_versions[key]

    def _api_version_for(self, kind: ResourceKind, resource_id: str) -> str:
        """Api version for calls against an existing resource.

        Generic resources are served by arbitrary providers, so the version
        written last (or the provider's preferred version) is used instead
        of the kind default.
        """
        default = ARM_MAPPINGS[kind].api_version
        if kind != ResourceKind.GENERIC:
            return default
        written = self._written_versions.get(resource_id.lower())
        if written:
            return written
        return self._lookup_type_version(resource_id) or default

    def _wait(self, poller: Any, operation: str) -> Any:
        result = poller.result(timeout=self._timeout)
        if not poller.done():
            raise TransientProviderError(
                f"{operation} did not complete within {self._timeout}s", code="Timeout"
            )
        return result

    def _put(self, kind: ResourceKind, fields: dict[str, Any]) -> tuple[str, dict[str, Any]]:
        resource_id, api_version, body = build_request(self._subscription_id, kind, fields)
        if kind == ResourceKind.GENERIC and not fields.get("api_version"):
            api_version = self._api_version_for(kind, resource_id)
        try:
            poller = self._client.resources.begin_create_or_update_by_id(
                resource_id, api_version, body
            )
            result = self._wait(poller, f"PUT {kind.value}")
        except AzureError as e:
            raise classify_error(e, f"PUT {resource_id}") from e

        logger.info(
            "Resource written",
            extra={"resource_id": resource_id, "kind": kind.value, "api_version": api_version},
        )
        self._written_versions[resource_id.lower()] = api_version
        observed = _observed(result)
        return str(observed.get("id") or resource_id), observed

    def create(self, kind: ResourceKind, fields: dict[str, Any]) -> tuple[str, dict[str, Any]]:
        return self._put(kind, fields)

    def update(self, provider_id: str, kind: ResourceKind, fields: dict[str, Any]) -> dict[str, Any]:
        new_id, observed = self._put(kind, fields)
        if new_id.lower() != provider_id.lower():
            logger.warning(
                "Update addressed a different resource id",
                extra={"previous_id": provider_id, "resource_id": new_id},
            )
        return observed

    def delete(self, provider_id: str, kind: ResourceKind) -> None:
        api_version = self._api_version_for(kind, provider_id)
        try:
            poller = self._client.resources.begin_delete_by_id(provider_id, api_version)
            self._wait(poller, f"DELETE {kind.value}")
        except ResourceNotFoundError:
            logger.info("Resource already deleted", extra={"resource_id": provider_id})
            return
        except AzureError as e:
            raise classify_error(e, f"DELETE {provider_id}") from e

        logger.info("Resource deleted", extra={"resource_id": provider_id, "kind": kind.value})

    def read(self, provider_id: str, kind: ResourceKind) -> dict[str, Any] | None:
        api_version = self._api_version_for(kind, provider_id)
        try:
            resource = self._client.resources.get_by_id(provider_id, api_version)
        except ResourceNotFoundError:
            return None
        except AzureError as e:
            raise classify_error(e, f"GET {provider_id}") from e
        return _observed(resource)
