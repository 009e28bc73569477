"""Multi-account query routing and result merging.

Free/busy lookups, event searches and event listings can name calendars that
live on different accounts. The router resolves every calendar reference
through the :class:`~calendar_broker.registry.CalendarRegistry`, sends one
sub-request per owning account concurrently and merges the answers.

Failure policy:
- one account, one calendar: the request goes straight to that account and
  any failure (including an unknown calendar) propagates to the caller
- otherwise a failing account or calendar is logged and reported in
  ``warnings``; the other accounts' data is still returned

Single-calendar operations (event reads and writes) use
:meth:`MultiAccountRouter.route_single`, which picks exactly one account.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import StrEnum
from typing import Any, Generic, TypeVar

from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode
from pydantic import BaseModel, Field

from calendar_broker.client import (
    DEFAULT_EVENT_LIMIT,
    CalendarClient,
    FreeBusyCalendar,
    sanitize_error_message,
)
from calendar_broker.core.logging import account_scope
from calendar_broker.errors import (
    AccountSelectionError,
    AmbiguousPrimaryError,
    CalendarAccessError,
    CalendarNotFoundError,
    CalendarQueryError,
)
from calendar_broker.registry import PRIMARY_CALENDAR_ALIAS, CalendarOperation, CalendarRegistry

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

# Google rejects free/busy windows of three months or more.
MAX_FREE_BUSY_WINDOW = timedelta(days=90)

T = TypeVar("T")


class QueryKind(StrEnum):
    FREEBUSY = "freebusy"
    SEARCH = "search"
    LIST = "list"


class EmptyRoutePolicy(StrEnum):
    """What to do when no requested calendar resolves on any account."""

    # Answer with a notFound entry per requested calendar.
    REPORT_NOT_FOUND = "report_not_found"
    # Raise CalendarQueryError listing the calendars that do exist.
    RAISE = "raise"


EMPTY_ROUTE_POLICIES: dict[QueryKind, EmptyRoutePolicy] = {
    QueryKind.FREEBUSY: EmptyRoutePolicy.REPORT_NOT_FOUND,
    QueryKind.SEARCH: EmptyRoutePolicy.RAISE,
    QueryKind.LIST: EmptyRoutePolicy.RAISE,
}


class RoutedEvent(BaseModel):
    """A raw event resource tagged with the account and calendar it came from."""

    account_id: str
    calendar_id: str
    event: dict[str, Any]

    @property
    def sort_key(self) -> str:
        start = self.event.get("start")
        if not isinstance(start, dict):
            return ""
        value = start.get("dateTime") or start.get("date") or ""
        return value if isinstance(value, str) else ""


class PartialFailure(BaseModel):
    account_id: str
    calendar_ids: list[str]
    reason: str


class FreeBusyResult(BaseModel):
    time_min: datetime
    time_max: datetime
    calendars: dict[str, FreeBusyCalendar]
    accounts: list[str] | None = None
    warnings: list[str] | None = None


class EventQueryResult(BaseModel):
    events: list[RoutedEvent] = Field(default_factory=list)
    calendars: list[str] = Field(default_factory=list)
    accounts: list[str] | None = None
    warnings: list[str] | None = None
    partial_failures: list[PartialFailure] | None = None

    @property
    def total_count(self) -> int:
        return len(self.events)


@dataclass
class _Route:
    resolved: dict[str, list[str]] = field(default_factory=dict)
    # Requested name/id -> resolved calendar id.
    resolutions: dict[str, str] = field(default_factory=dict)
    warnings: list[str] = field(default_factory=list)
    direct: bool = False


@dataclass(frozen=True)
class CalendarTarget:
    """The account, calendar id and client chosen for a single-calendar operation."""

    account_id: str
    calendar_id: str
    client: CalendarClient


@dataclass
class _AccountOutcome(Generic[T]):
    account_id: str
    calendar_ids: list[str]
    result: T | None = None
    error: str | None = None


def _is_unlisted_calendar_id(name_or_id: str) -> bool:
    """Whether an unresolved reference is still worth sending to the service.

    ``primary`` and email-style ids (another user's public calendar) need
    not appear on the calendar list; plain names must.
    """
    return name_or_id == PRIMARY_CALENDAR_ALIAS or "@" in name_or_id


def validate_free_busy_window(time_min: datetime, time_max: datetime) -> None:
    if time_max <= time_min:
        raise ValueError("time_max must be after time_min")
    if time_max - time_min >= MAX_FREE_BUSY_WINDOW:
        raise ValueError("The time gap between time_min and time_max must be less than 3 months")


def merge_free_busy(
    requested: Sequence[str],
    resolutions: Mapping[str, str],
    outcomes: Sequence[_AccountOutcome[dict[str, FreeBusyCalendar]]],
) -> dict[str, FreeBusyCalendar]:
    """One entry per requested calendar, preferring an error-free answer.

    The first error-free answer wins; an answer with errors is kept only when no
    account answered cleanly. Calendars no account answered for are reported
    as ``notFound``.
    """
    merged: dict[str, FreeBusyCalendar] = {}
    for name_or_id in requested:
        calendar_id = resolutions.get(name_or_id, name_or_id)
        best: FreeBusyCalendar | None = None
        for outcome in outcomes:
            if outcome.result is None:
                continue
            data = outcome.result.get(calendar_id)
            if data is None:
                continue
            if best is None:
                best = data
            elif best.errors and not data.errors:
                best = data
        merged[name_or_id] = best if best is not None else FreeBusyCalendar.not_found()
    return merged


def merge_events(batches: Sequence[Sequence[RoutedEvent]]) -> list[RoutedEvent]:
    """Concatenate per-calendar batches and order them by start.

    Timed starts and all-day dates are both ISO-8601 strings, so plain string
    comparison orders them; ``sorted`` is stable, so ties keep fetch order.
    """
    combined = [event for batch in batches for event in batch]
    return sorted(combined, key=lambda event: event.sort_key)


class MultiAccountRouter:
    """Fan a calendar query out to the accounts that own the calendars and merge the answers."""

    def __init__(self, registry: CalendarRegistry) -> None:
        self._registry = registry

    @property
    def registry(self) -> CalendarRegistry:
        return self._registry

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def query_free_busy(
        self,
        accounts: Mapping[str, CalendarClient],
        calendars: Sequence[str],
        *,
        time_min: datetime,
        time_max: datetime,
        time_zone: str | None = None,
    ) -> FreeBusyResult:
        validate_free_busy_window(time_min, time_max)
        route = await self._route(QueryKind.FREEBUSY, calendars, accounts)

        async def _query(
            account_id: str, client: CalendarClient, calendar_ids: list[str]
        ) -> dict[str, FreeBusyCalendar]:
            return await client.query_free_busy(
                calendar_ids=calendar_ids,
                time_min=time_min,
                time_max=time_max,
                time_zone=time_zone,
            )

        outcomes = await self._fan_out(QueryKind.FREEBUSY, route, accounts, _query)
        warnings = list(route.warnings)
        for outcome in outcomes:
            if outcome.error is not None:
                warnings.append(
                    f'Free/busy query failed for account "{outcome.account_id}" '
                    f"(calendars: {', '.join(outcome.calendar_ids)}): {outcome.error}"
                )

        return FreeBusyResult(
            time_min=time_min,
            time_max=time_max,
            calendars=merge_free_busy(calendars, route.resolutions, outcomes),
            accounts=list(accounts) if len(accounts) > 1 else None,
            warnings=warnings or None,
        )

    async def search_events(
        self,
        accounts: Mapping[str, CalendarClient],
        calendars: Sequence[str],
        *,
        query: str,
        time_min: datetime | None = None,
        time_max: datetime | None = None,
        time_zone: str | None = None,
        limit: int = DEFAULT_EVENT_LIMIT,
    ) -> EventQueryResult:
        normalized_query = query.strip()
        if not normalized_query:
            raise ValueError("query must be a non-empty string")
        return await self._query_events(
            QueryKind.SEARCH,
            accounts,
            calendars,
            time_min=time_min,
            time_max=time_max,
            query=normalized_query,
            time_zone=time_zone,
            limit=limit,
        )

    async def list_events(
        self,
        accounts: Mapping[str, CalendarClient],
        calendars: Sequence[str],
        *,
        time_min: datetime | None = None,
        time_max: datetime | None = None,
        time_zone: str | None = None,
        limit: int = DEFAULT_EVENT_LIMIT,
    ) -> EventQueryResult:
        return await self._query_events(
            QueryKind.LIST,
            accounts,
            calendars,
            time_min=time_min,
            time_max=time_max,
            query=None,
            time_zone=time_zone,
            limit=limit,
        )

    async def _query_events(
        self,
        kind: QueryKind,
        accounts: Mapping[str, CalendarClient],
        calendars: Sequence[str],
        *,
        time_min: datetime | None,
        time_max: datetime | None,
        query: str | None,
        time_zone: str | None,
        limit: int,
    ) -> EventQueryResult:
        route = await self._route(kind, calendars, accounts)
        verb = "search" if kind is QueryKind.SEARCH else "list events for"
        calendar_warnings: list[str] = []
        failures: list[PartialFailure] = []

        async def _fetch(
            account_id: str, client: CalendarClient, calendar_ids: list[str]
        ) -> list[list[RoutedEvent]]:
            batches: list[list[RoutedEvent]] = []
            failed: list[str] = []
            reason = ""
            for calendar_id in calendar_ids:
                try:
                    raw_events = await client.list_events(
                        calendar_id=calendar_id,
                        time_min=time_min,
                        time_max=time_max,
                        query=query,
                        time_zone=time_zone,
                        limit=limit,
                    )
                except Exception as exc:
                    if route.direct:
                        raise
                    logger.warning(
                        "Failed to %s calendar %s on account %s: %s",
                        verb,
                        calendar_id,
                        account_id,
                        exc,
                        exc_info=True,
                    )
                    reason = sanitize_error_message(exc)
                    calendar_warnings.append(
                        f'Failed to {verb} calendar "{calendar_id}" '
                        f'on account "{account_id}": {reason}'
                    )
                    failed.append(calendar_id)
                    continue
                batches.append(
                    [
                        RoutedEvent(account_id=account_id, calendar_id=calendar_id, event=event)
                        for event in raw_events
                    ]
                )
            if failed:
                failures.append(
                    PartialFailure(account_id=account_id, calendar_ids=failed, reason=reason)
                )
            return batches

        outcomes = await self._fan_out(kind, route, accounts, _fetch)

        warnings = list(route.warnings) + calendar_warnings
        batches: list[list[RoutedEvent]] = []
        queried: list[str] = []
        for outcome in outcomes:
            if outcome.error is not None:
                warnings.append(f'Account "{outcome.account_id}" failed: {outcome.error}')
                failures.append(
                    PartialFailure(
                        account_id=outcome.account_id,
                        calendar_ids=outcome.calendar_ids,
                        reason=outcome.error,
                    )
                )
                continue
            for batch in outcome.result or []:
                batches.append(batch)
            failed_here = {
                calendar_id
                for failure in failures
                if failure.account_id == outcome.account_id
                for calendar_id in failure.calendar_ids
            }
            for calendar_id in outcome.calendar_ids:
                if calendar_id not in failed_here and calendar_id not in queried:
                    queried.append(calendar_id)

        return EventQueryResult(
            events=merge_events(batches),
            calendars=queried,
            accounts=list(accounts) if len(accounts) > 1 else None,
            warnings=warnings or None,
            partial_failures=failures or None,
        )

    # ------------------------------------------------------------------
    # Routing
    # ------------------------------------------------------------------

    async def _route(
        self,
        kind: QueryKind,
        calendars: Sequence[str],
        accounts: Mapping[str, CalendarClient],
    ) -> _Route:
        if not accounts:
            raise AccountSelectionError(
                "No authenticated accounts available. Configure at least one account."
            )
        requested = [name for name in calendars if name and name.strip()]
        if not requested:
            raise ValueError("At least one valid calendar identifier is required")

        if len(accounts) == 1 and len(requested) == 1:
            return await self._route_direct(requested[0], accounts)

        if len(accounts) == 1:
            route = await self._route_single_account(requested, accounts)
        else:
            plan = await self._registry.resolve_calendars_to_accounts(requested, accounts)
            route = _Route(resolved=plan.resolved, warnings=plan.warnings)
            if plan.resolved:
                route.resolutions = await self._resolution_map(requested, accounts)
        if route.resolved:
            return route

        if EMPTY_ROUTE_POLICIES[kind] is EmptyRoutePolicy.RAISE:
            await self._raise_nothing_resolved(requested, accounts)
        logger.info(
            "No requested calendar resolved on any account (%s): %s",
            kind.value,
            ", ".join(requested),
        )
        return _Route(warnings=route.warnings)

    async def _route_single_account(
        self, requested: Sequence[str], accounts: Mapping[str, CalendarClient]
    ) -> _Route:
        # Unlisted ids go to the only account, as on the direct path.
        account_id = next(iter(accounts))
        route = _Route()
        for name_or_id in requested:
            resolution = await self._registry.resolve_calendar_name_to_id(
                name_or_id, accounts, "read"
            )
            if resolution is not None:
                calendar_id = resolution.calendar_id
            elif _is_unlisted_calendar_id(name_or_id):
                calendar_id = name_or_id
            else:
                route.warnings.append(f'Calendar "{name_or_id}" not found on any account')
                continue
            route.resolutions[name_or_id] = calendar_id
            bucket = route.resolved.setdefault(account_id, [])
            if calendar_id not in bucket:
                bucket.append(calendar_id)
        return route

    async def route_single(
        self,
        accounts: Mapping[str, CalendarClient],
        name_or_id: str,
        operation: CalendarOperation = "read",
    ) -> CalendarTarget:
        """Pick the one account that should serve a single-calendar operation.

        Writes go only to the calendar's preferred account, and only when that
        account may write. With a single account in scope, ``primary`` and
        ids containing ``@`` that the calendar list does not show are passed
        through for the service to accept or reject.

        Raises
        ------
        CalendarAccessError
            No account in scope may perform ``operation`` on the calendar.
        """
        if not accounts:
            raise AccountSelectionError(
                "No authenticated accounts available. Configure at least one account."
            )
        name_or_id = name_or_id.strip()
        if not name_or_id:
            raise ValueError("calendar_id must be a non-empty string")

        resolution = await self._registry.resolve_calendar_name_to_id(
            name_or_id, accounts, operation
        )
        if resolution is not None:
            account_id, calendar_id = resolution.account_id, resolution.calendar_id
        elif len(accounts) == 1 and _is_unlisted_calendar_id(name_or_id):
            if await self._registry.find_calendar(name_or_id, accounts) is not None:
                # Listed, but this account's role does not allow the operation.
                raise CalendarAccessError(name_or_id, operation, list(accounts))
            account_id, calendar_id = next(iter(accounts)), name_or_id
        else:
            raise CalendarAccessError(name_or_id, operation, list(accounts))

        logger.debug(
            "Routed %s of calendar %s to account %s", operation, calendar_id, account_id
        )
        return CalendarTarget(
            account_id=account_id, calendar_id=calendar_id, client=accounts[account_id]
        )

    async def _route_direct(
        self, name_or_id: str, accounts: Mapping[str, CalendarClient]
    ) -> _Route:
        account_id = next(iter(accounts))
        resolution = await self._registry.resolve_calendar_name_to_id(name_or_id, accounts, "read")
        if resolution is not None:
            calendar_id = resolution.calendar_id
        elif _is_unlisted_calendar_id(name_or_id):
            # Ids the calendar list does not show (e.g. another user's public
            # calendar) are left for the service to accept or reject.
            calendar_id = name_or_id
        else:
            available = await self._describe_available(accounts)
            raise CalendarNotFoundError(
                name_or_id,
                f'Calendar "{name_or_id}" not found on account "{account_id}". '
                f"Available calendars: {available}.",
            )
        return _Route(
            resolved={account_id: [calendar_id]},
            resolutions={name_or_id: calendar_id},
            direct=True,
        )

    async def _resolution_map(
        self, requested: Sequence[str], accounts: Mapping[str, CalendarClient]
    ) -> dict[str, str]:
        # Served from the registry cache populated by the routing pass.
        resolutions: dict[str, str] = {}
        for name_or_id in requested:
            try:
                resolution = await self._registry.resolve_calendar_name_to_id(
                    name_or_id, accounts, "read"
                )
            except AmbiguousPrimaryError:
                continue
            if resolution is not None:
                resolutions[name_or_id] = resolution.calendar_id
        return resolutions

    async def _describe_available(self, accounts: Mapping[str, CalendarClient]) -> str:
        unified = await self._registry.get_unified_calendars(accounts)
        return ", ".join(f'"{c.display_name}" ({c.calendar_id})' for c in unified) or "none"

    async def _raise_nothing_resolved(
        self, requested: Sequence[str], accounts: Mapping[str, CalendarClient]
    ) -> None:
        available = await self._describe_available(accounts)
        names = ", ".join(f'"{name}"' for name in requested)
        raise CalendarQueryError(
            f"None of the requested calendars could be found: {names}. "
            f"Available calendars: {available}. "
            "Use calendar_list_calendars to see all available calendars."
        )

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    async def _fan_out(
        self,
        kind: QueryKind,
        route: _Route,
        accounts: Mapping[str, CalendarClient],
        sub_request: Callable[[str, CalendarClient, list[str]], Awaitable[T]],
    ) -> list[_AccountOutcome[T]]:
        if not route.resolved:
            return []

        with tracer.start_as_current_span(
            "calendar_broker.fan_out",
            attributes={
                "calendar_broker.operation": kind.value,
                "calendar_broker.account_count": len(route.resolved),
            },
        ):
            return list(
                await asyncio.gather(
                    *(
                        self._run_sub_request(
                            kind,
                            account_id,
                            accounts[account_id],
                            calendar_ids,
                            sub_request,
                            isolate=not route.direct,
                        )
                        for account_id, calendar_ids in route.resolved.items()
                    )
                )
            )

    async def _run_sub_request(
        self,
        kind: QueryKind,
        account_id: str,
        client: CalendarClient,
        calendar_ids: list[str],
        sub_request: Callable[[str, CalendarClient, list[str]], Awaitable[T]],
        *,
        isolate: bool,
    ) -> _AccountOutcome[T]:
        outcome: _AccountOutcome[T] = _AccountOutcome(
            account_id=account_id, calendar_ids=list(calendar_ids)
        )
        with account_scope(account_id), tracer.start_as_current_span(
            "calendar_broker.sub_request",
            attributes={
                "calendar_broker.operation": kind.value,
                "calendar_broker.calendar_count": len(calendar_ids),
            },
        ) as span:
            try:
                outcome.result = await sub_request(account_id, client, list(calendar_ids))
            except Exception as exc:
                span.record_exception(exc)
                span.set_status(Status(StatusCode.ERROR, type(exc).__name__))
                if not isolate:
                    raise
                logger.warning(
                    "%s sub-request failed for account %s (calendars=%s): %s",
                    kind.value,
                    account_id,
                    ", ".join(calendar_ids),
                    exc,
                    exc_info=True,
                )
                outcome.error = sanitize_error_message(exc)
        return outcome
