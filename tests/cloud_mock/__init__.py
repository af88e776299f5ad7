"""Cloud API mocks for integration testing.

This module provides an in-memory implementation of the provider interface
and a fake Google API discovery client, so the reconciler, cleanup engine
and CLI can be exercised without Google Cloud connectivity.

Key Features:
- In-memory state shared by one mock provider per resource kind
- Call log for asserting ordering and zero-mutation re-runs
- Error injection (transient N times, permanent) per descriptor and operation
- Hooks that run inside the worker thread, for cancellation tests
- Fake discovery client raising real HttpError instances

Usage:
    from cloud_mock import MockCloudState, build_mock_registry

    state = MockCloudState()
    reconciler = Reconciler(plan, build_mock_registry(state), config)
    result = await reconciler.apply()

    assert state.count("create") == len(plan.descriptors)
"""

from .context import MockCloudContext, mock_cloud_context
from .discovery import FakeDiscovery, http_error
from .resources import (
    MockCall,
    MockCloudState,
    MockProvider,
    MockResource,
    MockSecretVersionProvider,
    build_mock_registry,
)

__all__ = [
    "FakeDiscovery",
    "MockCall",
    "MockCloudContext",
    "MockCloudState",
    "MockProvider",
    "MockResource",
    "MockSecretVersionProvider",
    "build_mock_registry",
    "http_error",
    "mock_cloud_context",
]
