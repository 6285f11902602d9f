"""Cloud mock for integration testing.

This module provides an in-memory implementation of the provisioner's
CloudClient protocol that enables end-to-end runs without Azure connectivity.

Key Features:
- In-memory state for resources, certificates, role assignments and deployments
- Identity principal propagation delay simulation
- Pending certificate issuance simulation
- Shared-key policy simulation (staging script refused)
- Error injection per method and resource kind
- Call recording for assertions

Usage:
    from azure_mock import MockAzureContext, make_config

    with MockAzureContext() as ctx:
        report = await run_deployment(make_config(templates_dir), install_signal_handlers=False)

        assert ctx.cloud.count("mint_container_token") == 0
"""

from .builders import (
    FAST_RETRY,
    LOCATION,
    PREFIX,
    SUBSCRIPTION_ID,
    TENANT_ID,
    Engines,
    make_config,
    make_context,
    make_engines,
    write_cluster_template,
)
from .cloud import MockCloudClient, RecordedCall
from .context import MockAzureContext, mock_azure_context
from .resources import MockCertificate, MockCloudState, MockResource

__all__ = [
    "FAST_RETRY",
    "LOCATION",
    "PREFIX",
    "SUBSCRIPTION_ID",
    "TENANT_ID",
    "Engines",
    "MockAzureContext",
    "MockCertificate",
    "MockCloudClient",
    "MockCloudState",
    "MockResource",
    "RecordedCall",
    "make_config",
    "make_context",
    "make_engines",
    "mock_azure_context",
    "write_cluster_template",
]
