"""Thin async wrapper over the ARM REST API.

Every ARM call in this package goes through ArmClient:
1. Attach a bearer token from the configured credential
2. Send the request with `requests` on the default executor
3. Retry transient failures (connection errors, 408/429/5xx) with backoff
4. Deserialize JSON into pydantic models

Resource-specific knowledge (URLs, payload shapes) lives in sites.py.
"""

from __future__ import annotations

import asyncio
import functools
import logging
import threading
import time
from typing import Any
from urllib.parse import quote

import requests
from azure.core.credentials import AccessToken, TokenCredential
from pydantic import TypeAdapter, ValidationError

from .config import ARM_API_VERSION, WEBSITES_API_VERSION, Config
from .credentials import get_access_token
from .retry import retry_async

logger = logging.getLogger(__name__)

USER_AGENT = "sitectl/0.1.0"

# Refresh a cached bearer token this long before it expires
TOKEN_REFRESH_MARGIN_SECONDS = 300

# Status codes worth another attempt
TRANSIENT_STATUS_CODES: frozenset[int] = frozenset({408, 429, 500, 502, 503, 504})


class ArmError(Exception):
    """Raised when an ARM request fails."""

    pass


class ArmRequestError(ArmError):
    """ARM answered with a non-success status code."""

    def __init__(self, message: str, status_code: int, url: str) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.url = url


class ArmResourceNotFoundError(ArmError):
    """A named resource could not be found in any visible subscription."""

    pass


class CliError(Exception):
    """User-facing failure; the CLI prints the message and exits non-zero."""

    pass


class TransientHttpError(Exception):
    """Internal marker carrying a retryable response between attempts."""

    def __init__(self, response: requests.Response) -> None:
        super().__init__(f"HTTP {response.status_code} from {response.url}")
        self.response = response


def extract_error_message(response: requests.Response) -> str | None:
    """Pull the human-readable message out of an ARM error body.

    ARM uses `{"error": {"message": ...}}`; the App Service front end
    sometimes answers `{"Message": ...}` instead.
    """
    try:
        body = response.json()
    except ValueError:
        return None
    if not isinstance(body, dict):
        return None
    error = body.get("error")
    if isinstance(error, dict) and error.get("message"):
        return str(error["message"])
    if body.get("Message"):
        return str(body["Message"])
    if body.get("message"):
        return str(body["message"])
    return None


class ArmClient:
    """Shared HTTP client for ARM calls.

    Args:
        credential: Source of ARM bearer tokens.
        config: Client configuration (management URL, retry policy, timeouts).
        session: Optional requests.Session; tests inject a fake one.
    """

    def __init__(
        self,
        credential: TokenCredential,
        config: Config,
        session: requests.Session | None = None,
    ) -> None:
        self._credential = credential
        self._config = config
        self._session = session or requests.Session()
        self._token: AccessToken | None = None
        self._token_lock = threading.Lock()

    @property
    def config(self) -> Config:
        return self._config

    @property
    def credential(self) -> TokenCredential:
        return self._credential

    @property
    def management_url(self) -> str:
        return self._config.management_url

    def access_token(self) -> str:
        """Current ARM bearer token (blocking).

        The token is cached and only requested again shortly before it
        expires. Requests run on executor threads, so the refresh is locked.
        """
        with self._token_lock:
            if (
                self._token is None
                or self._token.expires_on - TOKEN_REFRESH_MARGIN_SECONDS <= time.time()
            ):
                self._token = get_access_token(self._credential, self._config.management_url)
            return self._token.token

    # -------------------------------------------------------------------------
    # URL builders
    # -------------------------------------------------------------------------

    def subscriptions_url(self) -> str:
        return f"{self.management_url}/subscriptions?api-version={ARM_API_VERSION}"

    def subscription_resource_by_name_and_type_url(
        self, subscription_id: str, resource_type: str, resource_name: str
    ) -> str:
        """Generic resource listing filtered down to one name and type."""
        resource_filter = (
            f"(SubscriptionId eq '{subscription_id}') and name eq '{resource_name}' "
            f"and resourceType eq '{resource_type}'"
        )
        return (
            f"{self.management_url}/subscriptions/{subscription_id}/resources"
            f"?$filter={quote(resource_filter)}&api-version={ARM_API_VERSION}"
        )

    def resource_url(
        self, resource_id: str, suffix: str = "", api_version: str = WEBSITES_API_VERSION
    ) -> str:
        """URL of a resource (or sub-path of it) addressed by its full ARM id."""
        return f"{self.management_url}{resource_id}{suffix}?api-version={api_version}"

    # -------------------------------------------------------------------------
    # HTTP
    # -------------------------------------------------------------------------

    def _send_sync(self, method: str, url: str, payload: Any | None) -> requests.Response:
        headers = {
            "Authorization": f"Bearer {self.access_token()}",
            "User-Agent": USER_AGENT,
            "Accept": "application/json",
        }
        return self._session.request(
            method,
            url,
            headers=headers,
            json=payload,
            timeout=self._config.http_timeout_seconds,
        )

    async def http_invoke(
        self,
        method: str,
        url: str,
        payload: Any | None = None,
        retry_count: int = 1,
    ) -> requests.Response:
        """Send a request and return the raw response.

        Transient failures are retried `retry_count` times in total. The
        HTTP status of the final response is not checked.

        Raises:
            requests.RequestException: If the request could not be sent at all.
        """
        loop = asyncio.get_running_loop()

        async def send() -> requests.Response:
            response = await loop.run_in_executor(
                None, functools.partial(self._send_sync, method, url, payload)
            )
            if response.status_code in TRANSIENT_STATUS_CODES:
                raise TransientHttpError(response)
            return response

        try:
            response = await retry_async(
                send,
                attempts=retry_count,
                backoff_base_seconds=self._config.retry_backoff_base_seconds,
                retry_on=(requests.ConnectionError, requests.Timeout, TransientHttpError),
                description=f"ARM {method}",
            )
        except TransientHttpError as e:
            response = e.response

        logger.debug(
            "ARM request complete",
            extra={"method": method, "url": url.split("?")[0], "status": response.status_code},
        )
        return response

    async def arm_http(
        self,
        method: str,
        url: str,
        payload: Any | None = None,
        response_type: Any | None = None,
    ) -> Any:
        """Send a request, require success and deserialize the JSON body.

        Args:
            method: HTTP verb.
            url: Absolute URL.
            payload: Optional JSON body.
            response_type: Optional type to validate the body into
                (a pydantic model or any type TypeAdapter accepts).

        Raises:
            ArmRequestError: If ARM answered with a non-success status.
            ArmError: If the body is empty or does not match `response_type`.
        """
        response = await self.http_invoke(
            method, url, payload=payload, retry_count=self._config.retry_count
        )
        if not response.ok:
            message = extract_error_message(response) or response.reason or "request failed"
            raise ArmRequestError(
                f"{method} {url.split('?')[0]} failed with {response.status_code}: {message}",
                status_code=response.status_code,
                url=url,
            )

        if not response.content:
            if response_type is not None:
                raise ArmError(f"Empty response body from {url.split('?')[0]}")
            return None

        try:
            data = response.json()
        except ValueError as e:
            raise ArmError(f"Invalid JSON from {url.split('?')[0]}: {e}") from e

        if response_type is None:
            return data

        try:
            return TypeAdapter(response_type).validate_python(data)
        except ValidationError as e:
            raise ArmError(f"Unexpected response shape from {url.split('?')[0]}: {e}") from e

    def close(self) -> None:
        """Close the HTTP session and the credential."""
        self._session.close()
        close_credential = getattr(self._credential, "close", None)
        if close_credential is not None:
            close_credential()

    def __enter__(self) -> ArmClient:
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()
