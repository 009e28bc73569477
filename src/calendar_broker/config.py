"""Broker configuration loading and validation.

Reads ``broker.toml``, resolves ``${VAR}`` references from the environment and
returns a validated :class:`BrokerConfig` dataclass.

Example::

    [broker]
    name = "calendar-broker"
    request_timeout_seconds = 30

    [accounts.work]
    credentials_env = "WORK_GOOGLE_CALENDAR_CREDENTIALS"

    [accounts.personal]
    credentials_file = "~/.config/calendar-broker/personal.json"

    [registry]
    cache_ttl_seconds = 300
    primary_alias = "first_account"

    [logging]
    level = "INFO"
    format = "text"

    [server]
    transport = "stdio"
"""

from __future__ import annotations

import os
import re
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from calendar_broker.accounts import normalize_account_id, validate_account_id
from calendar_broker.client import DEFAULT_REQUEST_TIMEOUT_SECONDS
from calendar_broker.errors import AccountSelectionError
from calendar_broker.registry import DEFAULT_CACHE_TTL_SECONDS, PrimaryAliasPolicy

CONFIG_FILENAME = "broker.toml"
DEFAULT_BROKER_NAME = "calendar-broker"
SERVER_TRANSPORTS = ("stdio", "sse", "http")

# Pattern matching ${VAR_NAME}.
_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")


class ConfigError(Exception):
    """Raised when broker configuration is missing, malformed, or invalid."""


@dataclass
class AccountConfig:
    """One ``[accounts.<id>]`` entry. Exactly one credentials source is set."""

    credentials_env: str | None = None
    credentials_file: str | None = None


@dataclass
class RegistryConfig:
    cache_ttl_seconds: float = DEFAULT_CACHE_TTL_SECONDS
    primary_alias: PrimaryAliasPolicy = PrimaryAliasPolicy.FIRST_ACCOUNT


@dataclass
class LoggingConfig:
    """Logging configuration from the [logging] section."""

    level: str = "INFO"
    format: str = "text"  # "text" or "json"
    log_root: str | None = None


@dataclass
class ServerConfig:
    transport: str = "stdio"
    host: str = "127.0.0.1"
    port: int = 8000


@dataclass
class BrokerConfig:
    """Parsed broker.toml."""

    name: str = DEFAULT_BROKER_NAME
    accounts: dict[str, AccountConfig] = field(default_factory=dict)
    request_timeout_seconds: float = DEFAULT_REQUEST_TIMEOUT_SECONDS
    registry: RegistryConfig = field(default_factory=RegistryConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    server: ServerConfig = field(default_factory=ServerConfig)


def resolve_env_vars(value: Any) -> Any:
    """Recursively resolve ``${VAR_NAME}`` references in config values.

    Walks dicts, lists, and strings. Non-string leaf values are returned
    unchanged.

    Raises
    ------
    ConfigError
        If a referenced environment variable is not set.
    """
    if isinstance(value, dict):
        return {k: resolve_env_vars(v) for k, v in value.items()}

    if isinstance(value, list):
        return [resolve_env_vars(item) for item in value]

    if isinstance(value, str):
        return _resolve_string(value)

    return value


def _resolve_string(s: str) -> str:
    """Replace all ``${VAR_NAME}`` occurrences in *s* with env var values.

    Collects all missing variable names and reports them in a single error.
    """
    missing: list[str] = []

    def _replace(match: re.Match) -> str:
        var_name = match.group(1)
        env_value = os.environ.get(var_name)
        if env_value is None:
            missing.append(var_name)
            return match.group(0)
        return env_value

    result = _ENV_VAR_PATTERN.sub(_replace, s)

    if missing:
        vars_str = ", ".join(missing)
        raise ConfigError(
            f"Unresolved environment variable(s) in config value: {vars_str} (original: {s!r})"
        )

    return result


def _section(data: dict[str, Any], key: str) -> dict[str, Any]:
    value = data.get(key, {})
    if not isinstance(value, dict):
        raise ConfigError(f"[{key}] must be a table")
    return value


def _optional_str(section: dict[str, Any], key: str, where: str) -> str | None:
    value = section.get(key)
    if value is None:
        return None
    if not isinstance(value, str) or not value.strip():
        raise ConfigError(f"{where}.{key} must be a non-empty string when set")
    return value.strip()


def _positive_number(section: dict[str, Any], key: str, default: float, where: str) -> float:
    raw = section.get(key, default)
    if isinstance(raw, bool) or not isinstance(raw, int | float):
        raise ConfigError(f"Invalid {where}.{key}: {raw!r}. Must be a number.")
    if raw <= 0:
        raise ConfigError(f"Invalid {where}.{key}: {raw!r}. Must be positive.")
    return float(raw)


def _parse_accounts(accounts_section: dict[str, Any]) -> dict[str, AccountConfig]:
    accounts: dict[str, AccountConfig] = {}
    for raw_id, raw_account in accounts_section.items():
        account_id = normalize_account_id(str(raw_id))
        try:
            validate_account_id(account_id)
        except AccountSelectionError as exc:
            raise ConfigError(f"Invalid account id {raw_id!r}: {exc}") from exc
        if account_id in accounts:
            raise ConfigError(f"Duplicate account id after normalization: {account_id!r}")
        if not isinstance(raw_account, dict):
            raise ConfigError(f"[accounts.{raw_id}] must be a table")

        where = f"accounts.{raw_id}"
        credentials_env = _optional_str(raw_account, "credentials_env", where)
        credentials_file = _optional_str(raw_account, "credentials_file", where)
        if (credentials_env is None) == (credentials_file is None):
            raise ConfigError(
                f"[{where}] must set exactly one of credentials_env or credentials_file"
            )
        accounts[account_id] = AccountConfig(
            credentials_env=credentials_env,
            credentials_file=credentials_file,
        )
    return accounts


def _parse_registry(section: dict[str, Any]) -> RegistryConfig:
    raw_ttl = section.get("cache_ttl_seconds", DEFAULT_CACHE_TTL_SECONDS)
    if isinstance(raw_ttl, bool) or not isinstance(raw_ttl, int | float) or raw_ttl < 0:
        raise ConfigError(
            f"Invalid registry.cache_ttl_seconds: {raw_ttl!r}. Must be a non-negative number."
        )
    raw_policy = str(section.get("primary_alias", PrimaryAliasPolicy.FIRST_ACCOUNT.value))
    try:
        policy = PrimaryAliasPolicy(raw_policy.strip().lower())
    except ValueError as exc:
        allowed = ", ".join(repr(p.value) for p in PrimaryAliasPolicy)
        raise ConfigError(
            f"Invalid registry.primary_alias: {raw_policy!r}. Expected one of {allowed}."
        ) from exc
    return RegistryConfig(cache_ttl_seconds=float(raw_ttl), primary_alias=policy)


def _parse_logging(section: dict[str, Any]) -> LoggingConfig:
    log_level = str(section.get("level", "INFO")).upper()
    log_format = str(section.get("format", "text")).lower()
    if log_format not in ("text", "json"):
        raise ConfigError(f"Invalid logging.format: {log_format!r}. Expected 'text' or 'json'.")
    return LoggingConfig(
        level=log_level,
        format=log_format,
        log_root=_optional_str(section, "log_root", "logging"),
    )


def _parse_server(section: dict[str, Any]) -> ServerConfig:
    transport = str(section.get("transport", "stdio")).lower()
    if transport not in SERVER_TRANSPORTS:
        allowed = ", ".join(SERVER_TRANSPORTS)
        raise ConfigError(f"Invalid server.transport: {transport!r}. Expected one of {allowed}.")
    host = str(section.get("host", "127.0.0.1"))
    raw_port = section.get("port", 8000)
    try:
        port = int(raw_port)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid server.port: {raw_port!r}") from exc
    if not 0 < port < 65536:
        raise ConfigError(f"Invalid server.port: {port!r}. Must be between 1 and 65535.")
    return ServerConfig(transport=transport, host=host, port=port)


def parse_config(data: dict[str, Any]) -> BrokerConfig:
    """Validate an already-decoded TOML document."""
    data = resolve_env_vars(data)

    broker_section = _section(data, "broker")
    name = str(broker_section.get("name", DEFAULT_BROKER_NAME)).strip()
    if not name:
        raise ConfigError("broker.name must be a non-empty string")
    request_timeout_seconds = _positive_number(
        broker_section, "request_timeout_seconds", DEFAULT_REQUEST_TIMEOUT_SECONDS, "broker"
    )

    accounts = _parse_accounts(_section(data, "accounts"))
    if not accounts:
        raise ConfigError("At least one [accounts.<id>] section is required")

    return BrokerConfig(
        name=name,
        accounts=accounts,
        request_timeout_seconds=request_timeout_seconds,
        registry=_parse_registry(_section(data, "registry")),
        logging=_parse_logging(_section(data, "logging")),
        server=_parse_server(_section(data, "server")),
    )


def load_config(path: Path) -> BrokerConfig:
    """Load and validate broker configuration.

    Parameters
    ----------
    path:
        Either a ``broker.toml`` file or a directory containing one.

    Raises
    ------
    ConfigError
        If the file is missing, contains invalid TOML, or fails validation.
    """
    toml_path = path / CONFIG_FILENAME if path.is_dir() else path

    if not toml_path.exists():
        raise ConfigError(f"Config file not found: {toml_path}")

    raw_bytes = toml_path.read_bytes()
    try:
        data = tomllib.loads(raw_bytes.decode())
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Invalid TOML in {toml_path}: {exc}") from exc

    return parse_config(data)
