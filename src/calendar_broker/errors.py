"""Errors raised while selecting accounts and routing calendar queries."""

from __future__ import annotations


class CalendarBrokerError(RuntimeError):
    """Base error for account selection, name resolution and query routing."""


class AccountSelectionError(CalendarBrokerError):
    """Raised when a requested account id is invalid or not configured."""


class CalendarNotFoundError(CalendarBrokerError):
    """Raised when a single-target request names a calendar no account can see."""

    def __init__(self, name_or_id: str, message: str | None = None) -> None:
        self.name_or_id = name_or_id
        super().__init__(message or f'Calendar "{name_or_id}" not found on any account')


class CalendarQueryError(CalendarBrokerError):
    """Raised when none of the calendars in a search/list request could be resolved."""


class AmbiguousPrimaryError(CalendarBrokerError):
    """Raised under the strict policy when ``primary`` matches several accounts."""

    def __init__(self, account_ids: list[str]) -> None:
        self.account_ids = account_ids
        joined = ", ".join(account_ids)
        super().__init__(
            f'Calendar alias "primary" is ambiguous across accounts ({joined}); '
            "pass an account or a concrete calendar id"
        )


class CalendarAccessError(CalendarBrokerError):
    """Raised when no selected account may read or write the target calendar."""

    def __init__(self, name_or_id: str, operation: str, account_ids: list[str]) -> None:
        self.name_or_id = name_or_id
        self.operation = operation
        super().__init__(
            f'No account has {operation} access to calendar "{name_or_id}". '
            f"Available accounts: {', '.join(account_ids) or 'none'}. Make sure the calendar "
            "exists and is shared with one of them, or pass the account explicitly."
        )


class EventResponseError(CalendarBrokerError):
    """Raised when the account cannot answer an invitation (not invited, or organizer)."""
