"""Azure API Mock for testing.

In-memory stand-ins for the services sitectl talks to, so tests run
without Azure connectivity.

Key Features:
- MockArmServer: fake requests.Session serving ARM and Kudu-lite endpoints
  from in-memory sites, storage accounts and deployments
- Failure injection per path (status codes or raised exceptions)
- MockTokenCredential: fake tokens with call tracking
- MockResourceGraphClient: instrumentation key lookups

Usage:
    from azure_mock import MockArmServer, MockSite, create_mock_credential

    server = MockArmServer()
    server.add_site(MockSite(name="app", subscription_id=SUB))
    client = ArmClient(create_mock_credential(), config, session=server)
"""

from .arm import (
    MANAGEMENT_URL,
    SUBSCRIPTION_A,
    SUBSCRIPTION_B,
    MockArmServer,
    MockDeployment,
    MockSite,
    MockStorageAccount,
    RawBody,
    make_response,
)
from .context import MockAzureContext
from .credential import MockTokenCredential, create_mock_credential
from .graph import MockInsightsComponent, MockResourceGraphClient, create_mock_graph_client

__all__ = [
    "MANAGEMENT_URL",
    "SUBSCRIPTION_A",
    "SUBSCRIPTION_B",
    "MockArmServer",
    "MockAzureContext",
    "MockDeployment",
    "MockInsightsComponent",
    "MockResourceGraphClient",
    "MockSite",
    "MockStorageAccount",
    "MockTokenCredential",
    "RawBody",
    "create_mock_credential",
    "create_mock_graph_client",
    "make_response",
]
