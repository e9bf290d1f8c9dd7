"""Function App CLI (sitectl).

Usage:
    sitectl app show my-func-app              # Locate and summarize an app
    sitectl app functions my-func-app --show-keys
    sitectl app settings set my-func-app KEY=VALUE
    sitectl app settings import my-func-app settings.yaml
    sitectl deploy wait my-func-app           # Follow a server side build
    sitectl storage keys mystorageaccount
    sitectl insights find <instrumentation-key>
"""

from __future__ import annotations

import asyncio
import sys
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any, TypeVar

import click
import requests
from azure.core.exceptions import ClientAuthenticationError

from .arm_client import ArmClient, ArmError, CliError
from .config import Config, ConfigurationError, LogFormat
from .credentials import get_credential
from .kudu_lite import KuduLiteClient, wait_for_server_side_build
from .logging_setup import setup_logging
from .models import DeployStatus, Site, StorageAccount
from .settings_file import SettingsFileError, load_settings_file
from .sites import (
    get_application_insights_id_from_ikey,
    get_function_app,
    get_storage_account,
    parse_resource_id,
    print_functions_info,
    sync_triggers,
    update_function_app_app_settings,
    update_web_settings,
)

T = TypeVar("T")

# Failures that are reported as a one-line error instead of a traceback
USER_FACING_ERRORS: tuple[type[Exception], ...] = (
    CliError,
    ArmError,
    ConfigurationError,
    SettingsFileError,
)


@dataclass
class CliContext:
    """State shared by every command of one invocation."""

    config: Config
    access_token: str | None = None

    def arm_client(self) -> ArmClient:
        return ArmClient(get_credential(self.access_token), self.config)


pass_context = click.make_pass_decorator(CliContext)


def run_async(operation: Callable[[], Awaitable[T]]) -> T:
    """Run a coroutine to completion, turning known failures into ClickException."""
    try:
        return asyncio.run(operation())
    except USER_FACING_ERRORS as e:
        raise click.ClickException(str(e)) from e
    except ClientAuthenticationError as e:
        raise click.ClickException(
            f"Authentication failed. Run 'az login' or pass --access-token. ({e.message})"
        ) from e
    except requests.RequestException as e:
        raise click.ClickException(f"HTTP request failed: {e}") from e


def parse_pairs(values: tuple[str, ...]) -> dict[str, str]:
    """Parse KEY=VALUE arguments. The value may itself contain '='."""
    pairs: dict[str, str] = {}
    for item in values:
        key, sep, value = item.partition("=")
        if not sep or not key:
            raise click.BadParameter(f"expected KEY=VALUE, got '{item}'")
        pairs[key] = value
    return pairs


def echo_site(site: Site) -> None:
    click.secho(site.site_name or site.site_id, bold=True)
    click.echo(f"  Id:        {site.site_id}")
    click.echo(f"  Location:  {site.location}")
    click.echo(f"  Kind:      {site.kind}")
    click.echo(f"  Sku:       {site.sku}")
    click.echo(f"  Host:      {site.host_name}")
    click.echo(f"  SCM host:  {site.scm_uri}")
    if site.linux_fx_version:
        click.echo(f"  Runtime:   {site.linux_fx_version}")
    click.echo(f"  Settings:  {len(site.azure_app_settings)}")
    click.echo(f"  Conn strs: {len(site.connection_strings)}")


async def _load_app(client: ArmClient, name: str) -> Site:
    return await get_function_app(client, name, client.config.default_subscription_id)


async def _apply_app_settings(client: ArmClient, site: Site) -> dict[str, str]:
    result = await update_function_app_app_settings(client, site)
    if not result.is_successful:
        raise CliError(f"Failed to update app settings: {result.error}")
    return result.result or {}


# =============================================================================
# Main CLI Group
# =============================================================================


@click.group()
@click.version_option(version="0.1.0", prog_name="sitectl")
@click.option(
    "--log-format",
    type=click.Choice([f.value for f in LogFormat]),
    default=None,
    help="Diagnostic log format (default: LOG_FORMAT or text).",
)
@click.option("-v", "--verbose", is_flag=True, help="Show debug logging.")
@click.option(
    "--access-token",
    envvar="AZURE_ACCESS_TOKEN",
    default=None,
    help="Pre-acquired ARM bearer token instead of the default credential chain.",
)
@click.pass_context
def cli(
    ctx: click.Context,
    log_format: str | None,
    verbose: bool,
    access_token: str | None,
) -> None:
    """Manage Azure Function Apps through ARM and Kudu-lite.

    \b
    Quick Start:
        az login
        sitectl app show my-func-app
    """
    try:
        config = Config.from_env()
    except ConfigurationError as e:
        raise click.ClickException(str(e)) from e

    setup_logging(LogFormat(log_format) if log_format else config.log_format, verbose)
    ctx.obj = CliContext(config=config, access_token=access_token)


# =============================================================================
# App Commands
# =============================================================================


@cli.group()
def app() -> None:
    """Inspect and configure a Function App."""
    pass


@app.command("show")
@click.argument("name")
@pass_context
def app_show(obj: CliContext, name: str) -> None:
    """Locate an app in any subscription and print a summary."""

    async def operation() -> Site:
        with obj.arm_client() as client:
            return await _load_app(client, name)

    echo_site(run_async(operation))


@app.command("functions")
@click.argument("name")
@click.option("--show-keys", is_flag=True, help="Append function keys to invoke URLs.")
@pass_context
def app_functions(obj: CliContext, name: str, show_keys: bool) -> None:
    """List functions with their trigger and invoke URL."""

    async def operation() -> None:
        with obj.arm_client() as client:
            site = await _load_app(client, name)
            await print_functions_info(client, site, show_keys)

    run_async(operation)


@app.command("sync-triggers")
@click.argument("name")
@pass_context
def app_sync_triggers(obj: CliContext, name: str) -> None:
    """Ask the platform to re-read the app's triggers."""

    async def operation() -> None:
        with obj.arm_client() as client:
            site = await _load_app(client, name)
            response = await sync_triggers(client, site)
            if not response.ok:
                raise CliError(f"Syncing triggers failed with status {response.status_code}")

    run_async(operation)
    click.secho("Triggers synced.", fg="green")


@app.group("settings")
def app_settings() -> None:
    """Read and write app settings."""
    pass


@app_settings.command("list")
@click.argument("name")
@click.option("--show-values", is_flag=True, help="Print values instead of masking them.")
@pass_context
def settings_list(obj: CliContext, name: str, show_values: bool) -> None:
    """List app settings (values are masked unless requested)."""

    async def operation() -> Site:
        with obj.arm_client() as client:
            return await _load_app(client, name)

    site = run_async(operation)
    for key in sorted(site.azure_app_settings):
        value = site.azure_app_settings[key] if show_values else "*****"
        click.echo(f"{key}={value}")


@app_settings.command("set")
@click.argument("name")
@click.argument("pairs", nargs=-1, required=True)
@pass_context
def settings_set(obj: CliContext, name: str, pairs: tuple[str, ...]) -> None:
    """Add or overwrite settings given as KEY=VALUE."""
    updates = parse_pairs(pairs)

    async def operation() -> dict[str, str]:
        with obj.arm_client() as client:
            site = await _load_app(client, name)
            site.azure_app_settings.update(updates)
            return await _apply_app_settings(client, site)

    run_async(operation)
    click.secho(f"Updated {len(updates)} setting(s) on {name}.", fg="green")


@app_settings.command("delete")
@click.argument("name")
@click.argument("keys", nargs=-1, required=True)
@pass_context
def settings_delete(obj: CliContext, name: str, keys: tuple[str, ...]) -> None:
    """Remove settings by name."""

    async def operation() -> list[str]:
        with obj.arm_client() as client:
            site = await _load_app(client, name)
            removed = [k for k in keys if site.azure_app_settings.pop(k, None) is not None]
            if removed:
                await _apply_app_settings(client, site)
            return removed

    removed = run_async(operation)
    missing = sorted(set(keys) - set(removed))
    if missing:
        click.secho(f"Not present: {', '.join(missing)}", fg="yellow")
    click.secho(f"Removed {len(removed)} setting(s) from {name}.", fg="green")


@app_settings.command("import")
@click.argument("name")
@click.argument("file", type=click.Path(dir_okay=False, path_type=Path))
@pass_context
def settings_import(obj: CliContext, name: str, file: Path) -> None:
    """Merge settings from a YAML or JSON file."""
    try:
        updates = load_settings_file(file)
    except SettingsFileError as e:
        raise click.ClickException(str(e)) from e

    async def operation() -> dict[str, str]:
        with obj.arm_client() as client:
            site = await _load_app(client, name)
            site.azure_app_settings.update(updates)
            return await _apply_app_settings(client, site)

    run_async(operation)
    click.secho(f"Imported {len(updates)} setting(s) into {name}.", fg="green")


@app.group("web-config")
def app_web_config() -> None:
    """Update site web configuration."""
    pass


@app_web_config.command("set")
@click.argument("name")
@click.argument("pairs", nargs=-1, required=True)
@pass_context
def web_config_set(obj: CliContext, name: str, pairs: tuple[str, ...]) -> None:
    """Set web config properties given as KEY=VALUE (e.g. linuxFxVersion=Python|3.11)."""
    updates: dict[str, Any] = dict(parse_pairs(pairs))

    async def operation() -> None:
        with obj.arm_client() as client:
            site = await _load_app(client, name)
            result = await update_web_settings(client, site, updates)
            if not result.is_successful:
                raise CliError(f"Failed to update web config: {result.error}")

    run_async(operation)
    click.secho(f"Updated web config on {name}.", fg="green")


# =============================================================================
# Deploy Commands
# =============================================================================


@cli.group()
def deploy() -> None:
    """Follow deployments."""
    pass


@deploy.command("wait")
@click.argument("name")
@pass_context
def deploy_wait(obj: CliContext, name: str) -> None:
    """Stream the server side build log until it succeeds or fails."""

    async def operation() -> DeployStatus:
        with obj.arm_client() as client:
            site = await _load_app(client, name)
            kudu = KuduLiteClient(site, client.config)
            try:
                return await wait_for_server_side_build(client, kudu, site)
            finally:
                kudu.close()

    status = run_async(operation)
    if status == DeployStatus.SUCCESS:
        click.secho("Remote build succeeded!", fg="green")
        return
    click.secho("Remote build failed!", fg="red", err=True)
    sys.exit(1)


# =============================================================================
# Storage / Insights / Resource Commands
# =============================================================================


@cli.group()
def storage() -> None:
    """Storage account helpers."""
    pass


@storage.command("keys")
@click.argument("name")
@click.option("--connection-string", is_flag=True, help="Print a full connection string.")
@pass_context
def storage_keys(obj: CliContext, name: str, connection_string: bool) -> None:
    """Print the first access key of a storage account."""

    async def operation() -> StorageAccount:
        with obj.arm_client() as client:
            return await get_storage_account(client, name)

    account = run_async(operation)
    click.echo(account.connection_string if connection_string else account.storage_account_key)


@cli.group()
def insights() -> None:
    """Application Insights helpers."""
    pass


@insights.command("find")
@click.argument("instrumentation_key")
@pass_context
def insights_find(obj: CliContext, instrumentation_key: str) -> None:
    """Resolve an instrumentation key to its resource id."""

    async def operation() -> str:
        with obj.arm_client() as client:
            return await get_application_insights_id_from_ikey(client, instrumentation_key)

    click.echo(run_async(operation))


@cli.group()
def resource() -> None:
    """Resource id helpers."""
    pass


@resource.command("parse")
@click.argument("resource_id")
def resource_parse(resource_id: str) -> None:
    """Split a resource id into subscription, group, provider and name."""
    try:
        parsed = parse_resource_id(resource_id)
    except ValueError as e:
        raise click.BadParameter(str(e), param_hint="RESOURCE_ID") from e
    click.echo(f"subscription:   {parsed.subscription}")
    click.echo(f"resource group: {parsed.resource_group}")
    click.echo(f"provider:       {parsed.provider}")
    click.echo(f"name:           {parsed.name}")


def main() -> None:
    """Entry point for the sitectl console script."""
    cli(prog_name="sitectl")


if __name__ == "__main__":
    main()
