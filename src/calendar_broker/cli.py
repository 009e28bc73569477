"""CLI for the calendar broker: serve the MCP tools and inspect account calendars."""

from __future__ import annotations

import asyncio
import logging
import sys
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import TypeVar

import click
import httpx

from calendar_broker import __version__
from calendar_broker.accounts import (
    load_account_clients,
    normalize_account_id,
    select_accounts,
    validate_account_id,
)
from calendar_broker.client import CalendarClient, CalendarClientError
from calendar_broker.config import CONFIG_FILENAME, BrokerConfig, ConfigError, load_config
from calendar_broker.errors import CalendarBrokerError
from calendar_broker.registry import CalendarRegistry
from calendar_broker.server import run as run_server

logger = logging.getLogger(__name__)

T = TypeVar("T")

_CONFIG_TEMPLATE = """\
[broker]
name = "{name}"

[accounts.{account}]
credentials_env = "{env_var}"

[registry]
cache_ttl_seconds = 300
primary_alias = "first_account"

[logging]
level = "INFO"
format = "text"

[server]
transport = "stdio"
"""

_config_option = click.option(
    "--config",
    "config_path",
    required=True,
    type=click.Path(exists=True, path_type=Path),
    help=f"Path to {CONFIG_FILENAME} or the directory containing it",
)


@click.group()
@click.version_option(version=__version__)
def cli() -> None:
    """Calendar broker: multi-account Google Calendar reads over MCP."""
    logging.basicConfig(level=logging.WARNING, format="%(levelname)s: %(name)s: %(message)s")


def _load(config_path: Path) -> BrokerConfig:
    try:
        return load_config(config_path)
    except ConfigError as exc:
        raise click.ClickException(str(exc)) from exc


async def _with_registry(
    config: BrokerConfig,
    account: tuple[str, ...],
    action: Callable[[CalendarRegistry, dict[str, CalendarClient]], Awaitable[T]],
) -> T:
    async with httpx.AsyncClient(timeout=config.request_timeout_seconds) as http_client:
        clients = load_account_clients(config, http_client=http_client)
        selected = select_accounts(list(account), clients)
        registry = CalendarRegistry(
            ttl_seconds=config.registry.cache_ttl_seconds,
            primary_alias_policy=config.registry.primary_alias,
        )
        return await action(registry, selected)


@cli.command()
@_config_option
def serve(config_path: Path) -> None:
    """Run the MCP server using the configured transport."""
    config = _load(config_path)
    click.echo(
        f"Starting {config.name} ({config.server.transport}) with "
        f"{len(config.accounts)} account(s)",
        err=True,
    )
    run_server(config)


@cli.command()
@_config_option
@click.option("--account", multiple=True, help="Limit to these account ids (repeatable)")
def calendars(config_path: Path, account: tuple[str, ...]) -> None:
    """List calendars deduplicated across accounts."""
    config = _load(config_path)

    async def _list(registry: CalendarRegistry, selected: dict[str, CalendarClient]):
        return await registry.get_unified_calendars(selected)

    try:
        unified = asyncio.run(_with_registry(config, account, _list))
    except (CalendarBrokerError, CalendarClientError) as exc:
        raise click.ClickException(str(exc)) from exc

    if not unified:
        click.echo("No calendars found")
        return

    click.echo(f"{'Calendar':<30} {'Preferred':<16} {'Role':<16} {'Accounts'}")
    click.echo("-" * 80)
    for calendar in unified:
        preferred = calendar.preferred_access
        accounts = ", ".join(f"{a.account_id}:{a.access_role.value}" for a in calendar.accounts)
        click.echo(
            f"{calendar.display_name:<30} {calendar.preferred_account:<16} "
            f"{preferred.access_role.value:<16} {accounts}"
        )
        click.echo(f"  {calendar.calendar_id}")


@cli.command()
@click.argument("name")
@_config_option
@click.option("--account", multiple=True, help="Limit to these account ids (repeatable)")
@click.option("--write", "for_write", is_flag=True, help="Resolve for a write operation")
def resolve(name: str, config_path: Path, account: tuple[str, ...], for_write: bool) -> None:
    """Show which account serves a calendar name or id."""
    config = _load(config_path)
    operation = "write" if for_write else "read"

    async def _resolve(registry: CalendarRegistry, selected: dict[str, CalendarClient]):
        return await registry.resolve_calendar_name_to_id(name, selected, operation)

    try:
        resolution = asyncio.run(_with_registry(config, account, _resolve))
    except (CalendarBrokerError, CalendarClientError) as exc:
        raise click.ClickException(str(exc)) from exc

    if resolution is None:
        suffix = " with write access" if for_write else ""
        click.echo(f'Calendar "{name}" not found on any account{suffix}')
        sys.exit(1)

    click.echo(
        f"{name} -> {resolution.calendar_id} "
        f"(account: {resolution.account_id}, role: {resolution.access_role.value})"
    )


@cli.command()
@click.option(
    "--dir",
    "target_dir",
    type=click.Path(file_okay=False, path_type=Path),
    default=Path("."),
    help="Directory to write broker.toml into",
)
@click.option("--name", default="calendar-broker", help="Broker name")
@click.option("--account", "account_id", default="default", help="First account id")
def init(target_dir: Path, name: str, account_id: str) -> None:
    """Write a starter broker.toml."""
    target = target_dir / CONFIG_FILENAME
    if target.exists():
        click.echo(f"Config already exists: {target}")
        sys.exit(1)

    try:
        account_id = validate_account_id(normalize_account_id(account_id))
    except CalendarBrokerError as exc:
        raise click.ClickException(str(exc)) from exc

    env_var = f"{account_id.upper().replace('-', '_')}_GOOGLE_CALENDAR_CREDENTIALS"
    target_dir.mkdir(parents=True, exist_ok=True)
    target.write_text(_CONFIG_TEMPLATE.format(name=name, account=account_id, env_var=env_var))
    click.echo(f"Created {target}")


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
