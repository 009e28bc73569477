"""Account id validation, account selection and client construction."""

from __future__ import annotations

import logging
import os
import re
from collections.abc import Mapping, Sequence
from pathlib import Path
from typing import TYPE_CHECKING

import httpx

from calendar_broker.client import (
    CalendarClient,
    CalendarCredentialError,
    GoogleCalendarClient,
    GoogleOAuthCredentials,
)
from calendar_broker.errors import AccountSelectionError

if TYPE_CHECKING:
    from calendar_broker.config import AccountConfig, BrokerConfig

logger = logging.getLogger(__name__)

_ACCOUNT_ID_PATTERN = re.compile(r"^[a-z0-9_-]{1,64}$")
# Account ids double as file names in credential stores; keep them portable.
RESERVED_ACCOUNT_IDS = frozenset(
    {
        ".",
        "..",
        "con",
        "prn",
        "aux",
        "nul",
        "com1",
        "com2",
        "com3",
        "com4",
        "lpt1",
        "lpt2",
        "lpt3",
    }
)
_INVALID_ACCOUNT_ID_MESSAGE = (
    "Invalid account ID. Must be 1-64 characters: lowercase letters, numbers, "
    "dashes, underscores only."
)


def normalize_account_id(account_id: str) -> str:
    return account_id.strip().lower()


def validate_account_id(account_id: str) -> str:
    """Return ``account_id`` unchanged or raise :class:`AccountSelectionError`."""
    if not account_id:
        raise AccountSelectionError(_INVALID_ACCOUNT_ID_MESSAGE)
    if account_id in RESERVED_ACCOUNT_IDS:
        raise AccountSelectionError(f'Account ID "{account_id}" is reserved and cannot be used.')
    if not _ACCOUNT_ID_PATTERN.match(account_id):
        raise AccountSelectionError(_INVALID_ACCOUNT_ID_MESSAGE)
    return account_id


def select_accounts(
    requested: str | Sequence[str] | None,
    accounts: Mapping[str, CalendarClient],
) -> dict[str, CalendarClient]:
    """Narrow ``accounts`` to the requested ids.

    ``None`` or an empty list selects every account in configured order; a
    string or list selects those accounts in the order given.
    """
    if not accounts:
        raise AccountSelectionError(
            "No authenticated accounts available. Configure at least one account."
        )

    if requested is None:
        ids: list[str] = []
    elif isinstance(requested, str):
        ids = [requested]
    else:
        ids = list(requested)

    if not ids:
        return dict(accounts)

    selected: dict[str, CalendarClient] = {}
    for raw_id in ids:
        account_id = validate_account_id(normalize_account_id(raw_id))
        client = accounts.get(account_id)
        if client is None:
            available = ", ".join(accounts)
            raise AccountSelectionError(
                f'Account "{account_id}" not found. Available accounts: {available}'
            )
        selected[account_id] = client
    return selected


def load_account_credentials(account_id: str, account: AccountConfig) -> GoogleOAuthCredentials:
    """Read one account's Google OAuth JSON from its env var or file."""
    if account.credentials_env:
        raw_value = os.environ.get(account.credentials_env)
        if not raw_value:
            raise CalendarCredentialError(
                f"environment variable {account.credentials_env} is not set or empty",
                account_id=account_id,
            )
    elif account.credentials_file:
        path = Path(account.credentials_file).expanduser()
        try:
            raw_value = path.read_text(encoding="utf-8")
        except OSError as exc:
            raise CalendarCredentialError(
                f"cannot read credentials file {path}: {exc.strerror}", account_id=account_id
            ) from exc
    else:
        raise CalendarCredentialError("no credentials source configured", account_id=account_id)

    try:
        return GoogleOAuthCredentials.from_json(raw_value)
    except CalendarCredentialError as exc:
        raise CalendarCredentialError(str(exc), account_id=account_id) from exc


def load_account_clients(
    config: BrokerConfig,
    http_client: httpx.AsyncClient | None = None,
) -> dict[str, CalendarClient]:
    """Build one Google client per configured account, in configuration order.

    A shared ``http_client`` is not closed by the clients; the caller owns it.
    """
    clients: dict[str, CalendarClient] = {}
    for account_id, account in config.accounts.items():
        credentials = load_account_credentials(account_id, account)
        clients[account_id] = GoogleCalendarClient(
            credentials,
            http_client=http_client,
            account_id=account_id,
            timeout_seconds=config.request_timeout_seconds,
        )
        logger.info("Loaded calendar account %s", account_id)
    return clients
