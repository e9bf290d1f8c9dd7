"""Credential acquisition for ARM calls.

Two sources are supported:
- DefaultAzureCredential (Azure CLI login, managed identity, environment)
- A raw bearer token handed to us on the command line or via
  AZURE_ACCESS_TOKEN, wrapped so it quacks like any other TokenCredential

Tokens are never logged. Only a short prefix of identifiers is ever emitted.
"""

from __future__ import annotations

import logging
import time
from typing import Any

from azure.core.credentials import AccessToken, TokenCredential
from azure.identity import DefaultAzureCredential

logger = logging.getLogger(__name__)

# Lifetime reported for a static token we know nothing about
STATIC_TOKEN_LIFETIME_SECONDS = 3600


class StaticTokenCredential:
    """TokenCredential over a pre-acquired bearer token.

    The token is returned as-is for every scope; refreshing it is the
    caller's problem.
    """

    def __init__(self, token: str) -> None:
        if not token:
            raise ValueError("Token cannot be empty")
        self._token = token
        self._expires_on = int(time.time()) + STATIC_TOKEN_LIFETIME_SECONDS

    def get_token(
        self,
        *scopes: str,
        claims: str | None = None,
        tenant_id: str | None = None,
        **kwargs: Any,
    ) -> AccessToken:
        return AccessToken(self._token, self._expires_on)

    def close(self) -> None:
        pass

    def __enter__(self) -> StaticTokenCredential:
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()


def get_credential(access_token: str | None = None) -> TokenCredential:
    """Get the credential used for every ARM call.

    Args:
        access_token: Optional pre-acquired ARM bearer token. When given,
            no identity flow is attempted.

    Returns:
        A TokenCredential.
    """
    if access_token:
        logger.info("Using static access token", extra={"credential_type": "StaticToken"})
        return StaticTokenCredential(access_token)

    logger.info("Using default Azure credential chain", extra={"credential_type": "Default"})
    return DefaultAzureCredential(exclude_interactive_browser_credential=True)


def scope_for(management_url: str) -> str:
    """Build the token scope for a management endpoint."""
    return f"{management_url.rstrip('/')}/.default"


def get_access_token(credential: TokenCredential, management_url: str) -> AccessToken:
    """Acquire a bearer token for the management endpoint.

    The whole AccessToken is returned so callers can cache it until
    `expires_on`.

    Raises:
        azure.core.exceptions.ClientAuthenticationError: If no credential in
            the chain could authenticate.
    """
    return credential.get_token(scope_for(management_url))
