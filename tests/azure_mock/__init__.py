"""Azure API Mock for provider testing.

This module provides a mock implementation of the Azure Resource Manager
generic resources API so the Azure provider can be tested without Azure
connectivity.

Key Features:
- In-memory state for resources addressed by id
- Immediate long-running-operation pollers (optionally never completing)
- Error injection by resource id and HTTP status code
- Resource provider registrations that reject unsupported api versions

Usage:
    from azure_mock import MockResourceClient, http_error

    client = MockResourceClient()
    client.state.inject_failure(resource_id, http_error(429))
    provider = AzureResourceProvider(subscription_id, client=client)
"""

from .resources import (
    MockProvider,
    MockProviderResourceType,
    MockResource,
    MockResourceClient,
    MockResourceState,
    http_error,
)

__all__ = [
    "MockProvider",
    "MockProviderResourceType",
    "MockResource",
    "MockResourceClient",
    "MockResourceState",
    "http_error",
]
