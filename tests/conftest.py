"""Pytest configuration and fixtures."""

import sys
from pathlib import Path

import pytest

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

# Add tests to path for azure_mock imports
tests_path = Path(__file__).parent
sys.path.insert(0, str(tests_path))

from azure_mock import (  # noqa: E402
    MANAGEMENT_URL,
    SUBSCRIPTION_A,
    SUBSCRIPTION_B,
    MockArmServer,
    MockSite,
    MockTokenCredential,
    create_mock_credential,
)

from sitectl.arm_client import ArmClient  # noqa: E402
from sitectl.config import Config  # noqa: E402


@pytest.fixture
def config() -> Config:
    """Configuration with no waiting between retries or polls."""
    return Config(
        management_url=MANAGEMENT_URL,
        retry_count=3,
        retry_backoff_base_seconds=0,
        status_refresh_seconds=0,
        deployment_timeout_seconds=60,
    )


@pytest.fixture
def server() -> MockArmServer:
    return MockArmServer()


@pytest.fixture
def credential() -> MockTokenCredential:
    return create_mock_credential()


@pytest.fixture
def arm_client(credential: MockTokenCredential, config: Config, server: MockArmServer) -> ArmClient:
    return ArmClient(credential, config, session=server)


@pytest.fixture
def func_site(server: MockArmServer) -> MockSite:
    """A Linux consumption Function App in the second subscription."""
    server.add_subscription(SUBSCRIPTION_A)
    return server.add_site(
        MockSite(
            name="func-orders",
            subscription_id=SUBSCRIPTION_B,
            app_settings={"FUNCTIONS_WORKER_RUNTIME": "python", "AzureWebJobsStorage": "conn"},
            connection_strings={"Db": {"value": "Server=db;", "type": "SQLAzure"}},
            web_config={"linuxFxVersion": "Python|3.11", "scmType": "None", "alwaysOn": False},
            functions=[
                {
                    "name": "HttpIngest",
                    "invoke_url_template": "https://func-orders.azurewebsites.net/api/ingest",
                    "config": {
                        "bindings": [
                            {"type": "httpTrigger", "authLevel": "function", "name": "req"},
                            {"type": "http", "direction": "out", "name": "$return"},
                        ]
                    },
                },
                {
                    "name": "PublicPing",
                    "invoke_url_template": "https://func-orders.azurewebsites.net/api/ping",
                    "config": {"bindings": [{"type": "httpTrigger", "authLevel": "anonymous"}]},
                },
                {
                    "name": "Nightly",
                    "invoke_url_template": None,
                    "config": {"bindings": [{"type": "timerTrigger", "schedule": "0 0 * * *"}]},
                },
            ],
            function_keys={"HttpIngest": "ingest-key", "PublicPing": "ping-key"},
        )
    )
