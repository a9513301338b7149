"""Scaleway API Mock for Integration Testing.

This module provides an in-memory implementation of the CloudClient
protocol that enables controller testing without Scaleway connectivity.

Key Features:
- In-memory state for private networks, gateways, load balancers, IPAM,
  DNS, Kubernetes clusters and pools, and instances
- Tag-based ownership identical to the real client (CREATED_BY_TAG added
  on create, all-tags-must-match searches)
- Call recording for asserting on the exact API traffic of a pass
- Error injection for testing failure scenarios

Usage:
    from scaleway_mock import MockScalewayContext

    with MockScalewayContext() as ctx:
        controllers = build_controllers(store, ctx.client_factory)
        await controllers["ScalewayCluster"].reconcile("default", "my-cluster")

        assert ctx.state.call_count("create_private_network") == 1
"""

from .client import MockCloudClient
from .context import MockScalewayContext, mock_scaleway_context
from .state import MockCall, MockCloudState

__all__ = [
    "MockCall",
    "MockCloudClient",
    "MockCloudState",
    "MockScalewayContext",
    "mock_scaleway_context",
]
