"""Server-side build polling against the Kudu-lite deployment API.

After a package is pushed, the SCM site builds and deploys it
asynchronously. wait_for_server_side_build() follows that pipeline:

1. Wait until the newest deployment has left the Pending state and
   remember its id
2. Poll that deployment until it reports Success or Failed, printing new
   log lines as they appear

Kudu-lite authenticates requests with a site-restricted token obtained
from ARM. The token is short-lived and cached by RestrictedTokenCache.
"""

from __future__ import annotations

import asyncio
import logging
import re
import time
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any

import click
import requests

from .arm_client import ArmClient, CliError
from .config import Config
from .models import DeployStatus, Site
from .retry import retry_async
from .sites import LOOKUP_ERRORS, get_site_restricted_token

logger = logging.getLogger(__name__)

RESTRICTED_TOKEN_HEADER = "x-ms-site-restricted-token"

# Oldest possible log time; every real entry is newer
LOG_EPOCH = datetime.min.replace(tzinfo=UTC)

# Kudu emits up to 7 fractional digits; datetime accepts at most 6
_FRACTION_PATTERN = re.compile(r"(\.\d{6})\d+")


class DeploymentTimeoutError(CliError):
    """The server-side build did not finish within the configured time."""

    pass


def parse_log_time(value: str) -> datetime:
    """Parse a Kudu timestamp into an aware UTC datetime.

    Raises:
        ValueError: If the value isn't an ISO 8601 timestamp.
    """
    text = _FRACTION_PATTERN.sub(r"\1", value.strip()).replace("Z", "+00:00")
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


class RestrictedTokenCache:
    """Single cached site-restricted token with a fixed expiry window.

    A failed refresh is not fatal: while the host restarts the token
    endpoint can be briefly unavailable, and the previous token is still
    accepted for a short while.
    """

    def __init__(
        self,
        expiry_minutes: int,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._expiry = timedelta(minutes=expiry_minutes)
        self._clock = clock or (lambda: datetime.now(UTC))
        self._token = ""
        self._last_update: datetime | None = None

    @property
    def token(self) -> str:
        return self._token

    def is_expired(self) -> bool:
        if not self._token or self._last_update is None:
            return True
        return self._clock() > self._last_update + self._expiry

    async def get(self, client: ArmClient, site: Site) -> str:
        """Return the cached token, refreshing it first if it has expired."""
        if self.is_expired():
            try:
                self._token = await get_site_restricted_token(client, site)
                self._last_update = self._clock()
                logger.debug("Refreshed site restricted token", extra={"site": site.site_name})
            except LOOKUP_ERRORS as e:
                logger.warning(
                    "Could not refresh site restricted token, reusing previous one",
                    extra={"site": site.site_name, "error": str(e)},
                )
        return self._token


class KuduLiteClient:
    """HTTP client for a site's Kudu-lite endpoint.

    Args:
        site: Loaded site; its SCM host and publishing credentials are used.
        config: Retry and timeout settings.
        session: Optional requests.Session; tests inject a fake one.
    """

    def __init__(
        self,
        site: Site,
        config: Config,
        session: requests.Session | None = None,
    ) -> None:
        if not site.scm_uri:
            raise CliError(
                f"Site {site.site_name or site.site_id} has no SCM host name, "
                "cannot reach its deployment endpoint"
            )
        self._base_url = site.scm_base_url
        self._config = config
        self._session = session or requests.Session()
        self._auth: tuple[str, str] | None = None
        if site.publishing_user_name and site.publishing_password:
            self._auth = (site.publishing_user_name, site.publishing_password)

    @property
    def base_url(self) -> str:
        return self._base_url

    def _send_sync(self, method: str, path: str, restricted_token: str) -> requests.Response:
        headers = {"Accept": "application/json"}
        if restricted_token:
            headers[RESTRICTED_TOKEN_HEADER] = restricted_token
        response = self._session.request(
            method,
            f"{self._base_url}{path}",
            headers=headers,
            auth=self._auth,
            timeout=self._config.http_timeout_seconds,
        )
        response.raise_for_status()
        return response

    async def invoke_request(self, method: str, path: str, restricted_token: str) -> Any:
        """Send a request, retrying any failure, and return the decoded JSON.

        Raises:
            requests.RequestException: If every attempt failed.
        """
        loop = asyncio.get_running_loop()

        async def send() -> requests.Response:
            return await loop.run_in_executor(
                None, self._send_sync, method, path, restricted_token
            )

        response = await retry_async(
            send,
            attempts=self._config.retry_count,
            backoff_base_seconds=self._config.retry_backoff_base_seconds,
            retry_on=(requests.RequestException,),
            description=f"Kudu {method} {path}",
        )
        if not response.content:
            return None
        return response.json()

    def close(self) -> None:
        self._session.close()


def _parse_status(value: Any) -> DeployStatus:
    try:
        return DeployStatus.parse(value)
    except ValueError as e:
        raise CliError(f"Unrecognized deployment status '{value}'") from e


async def get_latest_deployment_id(kudu: KuduLiteClient, restricted_token: str) -> str | None:
    """Id of the newest deployment once it has left Pending, else None."""
    deployments = await kudu.invoke_request("GET", "/deployments", restricted_token)

    # Kudu orders deployments by received time, newest first
    if not deployments:
        return None

    latest = deployments[0]
    status = latest.get("status")
    if status is None or not latest.get("id"):
        return None
    if _parse_status(status) == DeployStatus.PENDING:
        return None
    return str(latest["id"])


async def get_deployment_status_by_id(
    kudu: KuduLiteClient, restricted_token: str, deployment_id: str
) -> DeployStatus:
    """Current status of a deployment. A record without a status counts as Failed."""
    deployment = await kudu.invoke_request(
        "GET", f"/deployments/{deployment_id}", restricted_token
    )
    status = (deployment or {}).get("status")
    if status is None:
        return DeployStatus.FAILED
    return _parse_status(status)


async def display_deployment_log(
    kudu: KuduLiteClient,
    restricted_token: str,
    deployment_id: str,
    last_update: datetime,
) -> datetime:
    """Print log entries newer than `last_update`.

    Returns:
        Timestamp of the newest printed entry, or `last_update` if nothing new.
    """
    entries = await kudu.invoke_request(
        "GET", f"/deployments/{deployment_id}/log", restricted_token
    )

    newest = last_update
    for entry in entries or []:
        try:
            log_time = parse_log_time(entry["log_time"])
        except (KeyError, TypeError, ValueError):
            logger.debug("Skipping log entry without a usable log_time", extra={"entry": entry})
            continue
        if log_time > last_update:
            click.echo(entry.get("message", ""))
            newest = max(newest, log_time)
    return newest


async def wait_for_server_side_build(
    client: ArmClient,
    kudu: KuduLiteClient,
    site: Site,
    token_cache: RestrictedTokenCache | None = None,
) -> DeployStatus:
    """Follow the server-side build of the newest deployment to completion.

    Returns:
        DeployStatus.SUCCESS or DeployStatus.FAILED.

    Raises:
        DeploymentTimeoutError: If the build runs past deployment_timeout_seconds.
    """
    config = client.config
    cache = token_cache or RestrictedTokenCache(config.token_expiry_minutes)
    deadline = time.monotonic() + config.deployment_timeout_seconds

    def check_deadline() -> None:
        if time.monotonic() > deadline:
            raise DeploymentTimeoutError(
                f"Server side build for {site.site_name} did not finish within "
                f"{config.deployment_timeout_seconds} seconds"
            )

    click.echo("Server side build in progress, please wait")
    logger.info("Waiting for server side build", extra={"site": site.site_name})

    deployment_id: str | None = None
    while not deployment_id:
        check_deadline()
        restricted_token = await cache.get(client, site)
        deployment_id = await get_latest_deployment_id(kudu, restricted_token)
        await asyncio.sleep(config.status_refresh_seconds)

    logger.info(
        "Tracking deployment",
        extra={"site": site.site_name, "deployment_id": deployment_id},
    )

    status = DeployStatus.PENDING
    log_last_update = LOG_EPOCH
    while not status.is_terminal:
        check_deadline()
        restricted_token = await cache.get(client, site)
        status = await get_deployment_status_by_id(kudu, restricted_token, deployment_id)
        log_last_update = await display_deployment_log(
            kudu, restricted_token, deployment_id, log_last_update
        )
        await asyncio.sleep(config.status_refresh_seconds)

    logger.info(
        "Server side build finished",
        extra={"site": site.site_name, "deployment_id": deployment_id, "status": status.value},
    )
    return status
