"""Function App operations over ARM.

Locating an app, loading its configuration into a Site aggregate, listing
functions and keys, and writing settings back. All functions take the shared
ArmClient and are coroutines.

Lookup helpers (try_get_function_app, get_function_key) swallow failures and
return None; the caller decides whether a miss is fatal.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

import click
import requests
from azure.core.exceptions import AzureError
from azure.mgmt.resourcegraph import ResourceGraphClient
from azure.mgmt.resourcegraph.models import (
    QueryRequest,
    QueryRequestOptions,
    ResultFormat,
)

from .arm_client import (
    ArmClient,
    ArmError,
    ArmResourceNotFoundError,
    CliError,
    extract_error_message,
)
from .config import STORAGE_API_VERSION
from .credentials import scope_for
from .models import (
    AppServiceConnectionString,
    ArmArrayWrapper,
    ArmGenericResource,
    ArmResourceId,
    ArmStorageKeysArray,
    ArmSubscription,
    ArmWebsite,
    ArmWebsiteConfig,
    ArmWebsitePublishingCredentials,
    ArmWrapper,
    FunctionInfo,
    HttpResult,
    Site,
    StorageAccount,
)

logger = logging.getLogger(__name__)

SITE_RESOURCE_TYPE = "Microsoft.Web/sites"
STORAGE_RESOURCE_TYPE = "Microsoft.Storage/storageAccounts"

APP_INSIGHTS_NOT_FOUND = (
    "Could not find the Application Insights using the configured Instrumentation Key."
)

# Number of '/'-separated elements in a provider resource id (leading '' included)
RESOURCE_ID_ELEMENT_COUNT = 9

# Errors a best-effort lookup is allowed to swallow
LOOKUP_ERRORS: tuple[type[Exception], ...] = (ArmError, requests.RequestException, AzureError)


# =============================================================================
# Subscriptions and lookup
# =============================================================================


async def get_subscriptions(client: ArmClient) -> list[ArmSubscription]:
    """List every subscription visible to the caller, following nextLink."""
    page = await client.arm_http(
        "GET", client.subscriptions_url(), response_type=ArmArrayWrapper[ArmSubscription]
    )
    subscriptions = list(page.value)
    while page.next_link:
        page = await client.arm_http(
            "GET", page.next_link, response_type=ArmArrayWrapper[ArmSubscription]
        )
        subscriptions.extend(page.value)

    logger.debug("Listed subscriptions", extra={"subscription_count": len(subscriptions)})
    return subscriptions


async def get_function_app(
    client: ArmClient,
    name: str,
    default_subscription: str | None = None,
    all_subscriptions: list[ArmSubscription] | None = None,
) -> Site:
    """Find a Function App by name and load its full configuration.

    The default subscription is searched first; after that every visible
    subscription is tried in order.

    Raises:
        ArmResourceNotFoundError: If no subscription contains the app.
    """
    if default_subscription:
        site = await try_get_function_app(client, name, default_subscription)
        if site is not None:
            return site

    subscriptions = (
        all_subscriptions if all_subscriptions is not None else await get_subscriptions(client)
    )
    for subscription in subscriptions:
        site = await try_get_function_app(client, name, subscription.subscription_id)
        if site is not None:
            return site

    raise ArmResourceNotFoundError(f'Can\'t find app with name "{name}"')


async def try_get_function_app(client: ArmClient, name: str, subscription_id: str) -> Site | None:
    """Look for a Function App in a single subscription.

    Returns:
        The loaded Site, or None if it isn't there or anything went wrong.
    """
    try:
        url = client.subscription_resource_by_name_and_type_url(
            subscription_id, SITE_RESOURCE_TYPE, name
        )
        page = await client.arm_http(
            "GET", url, response_type=ArmArrayWrapper[ArmGenericResource]
        )

        # Keep paging while the app hasn't turned up yet
        while not page.value and page.next_link:
            try:
                page = await client.arm_http(
                    "GET", page.next_link, response_type=ArmArrayWrapper[ArmGenericResource]
                )
            except LOOKUP_ERRORS as e:
                logger.debug(
                    "Could not follow nextLink, giving up on subscription",
                    extra={"subscription_id": subscription_id, "error": str(e)},
                )
                break

        if page.value:
            site = Site(site_id=page.value[0].id)
            await load_function_app(client, site)
            logger.info(
                "Found function app",
                extra={"app_name": name, "subscription_id": subscription_id},
            )
            return site
    except LOOKUP_ERRORS as e:
        logger.debug(
            "Function app lookup failed",
            extra={"app_name": name, "subscription_id": subscription_id, "error": str(e)},
        )

    return None


# =============================================================================
# Site loading
# =============================================================================


async def load_function_app(client: ArmClient, site: Site) -> Site:
    """Fill in a Site from its five configuration sub-resources concurrently."""
    await asyncio.gather(
        load_site_object(client, site),
        load_site_publishing_credentials(client, site),
        load_site_config(client, site),
        load_app_settings(client, site),
        load_connection_strings(client, site),
    )
    return site


async def load_site_object(client: ArmClient, site: Site) -> Site:
    url = client.resource_url(site.site_id)
    arm_site: ArmWebsite = await client.arm_http("GET", url, response_type=ArmWebsite)

    host_names = arm_site.properties.enabled_host_names if arm_site.properties else []
    site.host_name = next((h for h in host_names if ".scm." not in h.lower()), None)
    site.scm_uri = next((h for h in host_names if ".scm." in h.lower()), None)
    site.location = arm_site.location
    site.kind = arm_site.kind
    site.sku = arm_site.properties.sku if arm_site.properties else None
    site.site_name = arm_site.name
    return site


async def load_site_publishing_credentials(client: ArmClient, site: Site) -> Site:
    url = client.resource_url(site.site_id, "/config/PublishingCredentials/list")
    wrapper = await client.arm_http(
        "POST", url, response_type=ArmWrapper[ArmWebsitePublishingCredentials]
    )
    return site.merge_with(wrapper.properties)


async def load_site_config(client: ArmClient, site: Site) -> Site:
    url = client.resource_url(site.site_id, "/config/web")
    wrapper = await client.arm_http("GET", url, response_type=ArmWrapper[ArmWebsiteConfig])
    return site.merge_with(wrapper.properties)


async def load_app_settings(client: ArmClient, site: Site) -> Site:
    url = client.resource_url(site.site_id, "/config/AppSettings/list")
    wrapper = await client.arm_http("POST", url, response_type=ArmWrapper[dict[str, str]])
    site.azure_app_settings = dict(wrapper.properties or {})
    return site


async def load_connection_strings(client: ArmClient, site: Site) -> Site:
    url = client.resource_url(site.site_id, "/config/ConnectionStrings/list")
    wrapper = await client.arm_http(
        "POST", url, response_type=ArmWrapper[dict[str, AppServiceConnectionString]]
    )
    site.connection_strings = dict(wrapper.properties or {})
    return site


# =============================================================================
# Resource ids
# =============================================================================


def parse_resource_id(resource_id: str) -> ArmResourceId:
    """Split a provider resource id into its parts.

    Example:
        /subscriptions/0000.../resourceGroups/my-rg/providers/microsoft.insights/components/my-ai

    Raises:
        ValueError: If the id is empty or doesn't have exactly 9 elements.
    """
    if not resource_id:
        raise ValueError("resource_id is required")

    elements = resource_id.split("/")
    if len(elements) != RESOURCE_ID_ELEMENT_COUNT:
        raise ValueError(
            f"resource_id ({resource_id}) is an invalid resource Id. "
            f"Expected {RESOURCE_ID_ELEMENT_COUNT} resource elements. Found {len(elements)}"
        )

    return ArmResourceId(
        subscription=elements[2],
        resource_group=elements[4],
        provider=elements[6],
        name=elements[8],
    )


# =============================================================================
# Host runtime admin API
# =============================================================================


async def get_functions(client: ArmClient, site: Site) -> list[FunctionInfo]:
    url = client.resource_url(site.site_id, "/hostruntime/admin/functions")
    return await client.arm_http("GET", url, response_type=list[FunctionInfo])


async def get_site_restricted_token(client: ArmClient, site: Site) -> str:
    """Fetch a short-lived token scoped to the site's SCM endpoint."""
    url = client.resource_url(site.site_id, "/hostruntime/admin/host/token")
    return await client.arm_http("GET", url, response_type=str)


async def get_function_key(client: ArmClient, function_name: str, site_id: str) -> str | None:
    """First key of a function, or None if it can't be read for any reason."""
    if not function_name or not site_id:
        return None

    url = client.resource_url(site_id, f"/hostruntime/admin/functions/{function_name}/keys")
    try:
        keys_json = await client.arm_http("GET", url)
        return str(keys_json["keys"][0]["value"])
    except (*LOOKUP_ERRORS, KeyError, IndexError, TypeError) as e:
        logger.debug(
            "Could not read function key",
            extra={"function_name": function_name, "error": str(e)},
        )
        return None


async def sync_triggers(client: ArmClient, site: Site) -> requests.Response:
    url = client.resource_url(site.site_id, "/hostruntime/admin/host/synctriggers")
    return await client.http_invoke("POST", url, retry_count=client.config.retry_count)


# =============================================================================
# Settings updates
# =============================================================================


def _error_result(response: requests.Response) -> HttpResult[Any]:
    return HttpResult(error=extract_error_message(response) or response.text)


async def update_web_settings(
    client: ArmClient, site: Site, web_settings: dict[str, Any]
) -> HttpResult[str]:
    """PUT web config properties. The success body is returned as raw text."""
    url = client.resource_url(site.site_id, "/config/web")
    response = await client.http_invoke("PUT", url, payload={"properties": web_settings})
    if response.ok:
        return HttpResult(result=response.text)
    return _error_result(response)


async def update_function_app_app_settings(
    client: ArmClient, site: Site
) -> HttpResult[dict[str, str]]:
    """Replace the app's settings with `site.azure_app_settings`."""
    url = client.resource_url(site.site_id, "/config/AppSettings")
    response = await client.http_invoke(
        "PUT", url, payload={"properties": site.azure_app_settings}
    )
    if response.ok:
        wrapper = ArmWrapper[dict[str, str]].model_validate(response.json())
        return HttpResult(result=dict(wrapper.properties or {}))
    return _error_result(response)


# =============================================================================
# Storage
# =============================================================================


async def get_storage_account(client: ArmClient, storage_account_name: str) -> StorageAccount:
    """Find a storage account by name and read its first access key.

    Raises:
        ArmResourceNotFoundError: If no subscription contains the account.
        CliError: If the keys can't be listed.
    """
    for subscription in await get_subscriptions(client):
        url = client.subscription_resource_by_name_and_type_url(
            subscription.subscription_id, STORAGE_RESOURCE_TYPE, storage_account_name
        )
        page = await client.arm_http(
            "GET", url, response_type=ArmArrayWrapper[ArmGenericResource]
        )
        if page.value:
            return await _get_storage_account_keys(client, page.value[0])

    raise ArmResourceNotFoundError(
        f"Cannot find storage account with name {storage_account_name}"
    )


async def _get_storage_account_keys(
    client: ArmClient, resource: ArmGenericResource
) -> StorageAccount:
    try:
        url = client.resource_url(resource.id, "/listKeys", api_version=STORAGE_API_VERSION)
        keys = await client.arm_http("POST", url, response_type=ArmStorageKeysArray)
        return StorageAccount(
            storage_account_name=resource.name,
            storage_account_key=keys.keys[0].value,
        )
    except (*LOOKUP_ERRORS, IndexError) as e:
        logger.debug("Listing storage keys failed", exc_info=True, extra={"error": str(e)})
        raise CliError(
            f"Cannot get keys for storage account {resource.name}. "
            "Make sure you have access to the storage account."
        ) from e


# =============================================================================
# Application Insights
# =============================================================================


async def get_application_insights_id_from_ikey(
    client: ArmClient,
    instrumentation_key: str,
    all_subscriptions: list[ArmSubscription] | None = None,
) -> str:
    """Resolve an instrumentation key to its Application Insights resource id.

    Uses a Resource Graph query across every visible subscription.

    Raises:
        CliError: If the query fails or matches nothing.
    """
    subscriptions = (
        all_subscriptions if all_subscriptions is not None else await get_subscriptions(client)
    )
    request = QueryRequest(
        subscriptions=[s.subscription_id for s in subscriptions],
        query=(
            "where type =~ 'Microsoft.Insights/components' and "
            f"properties.InstrumentationKey == '{instrumentation_key}' | project id"
        ),
        options=QueryRequestOptions(result_format=ResultFormat.OBJECT_ARRAY, top=1),
    )

    try:
        with ResourceGraphClient(
            credential=client.credential,
            base_url=client.management_url,
            credential_scopes=[scope_for(client.management_url)],
        ) as graph_client:
            # Resource Graph client is synchronous, wrap in executor
            loop = asyncio.get_running_loop()
            response = await loop.run_in_executor(
                None, lambda: graph_client.resources(request)
            )
    except AzureError as e:
        logger.debug("Resource Graph query failed", extra={"error": str(e)})
        raise CliError(APP_INSIGHTS_NOT_FOUND) from e

    rows = response.data if isinstance(response.data, list) else []
    if not rows or not rows[0].get("id"):
        raise CliError(APP_INSIGHTS_NOT_FOUND)
    return str(rows[0]["id"])


# =============================================================================
# Output
# =============================================================================


async def print_functions_info(client: ArmClient, site: Site, show_keys: bool) -> None:
    """Print each function with its trigger type and invoke URL."""
    functions = await get_functions(client, site)
    click.secho(f"Functions in {site.site_name}:", fg="bright_white", bold=True)

    for function in functions:
        trigger = function.trigger_type or "No Trigger Found"
        click.echo(f"    {function.name} - [{click.style(trigger, fg='cyan')}]")

        if function.invoke_url_template:
            key = None
            if show_keys and not function.is_anonymous:
                key = await get_function_key(client, function.name, site.site_id)
            invoke_url = (
                f"{function.invoke_url_template}?code={key}"
                if key
                else function.invoke_url_template
            )
            click.echo(f"        Invoke url: {click.style(invoke_url, fg='cyan')}")
        click.echo()
