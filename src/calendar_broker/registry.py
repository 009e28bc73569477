"""Account-aware calendar registry.

Several authenticated accounts can see the same calendar (a shared team
calendar, a spouse's calendar, a resource). The registry enumerates every
account's calendar list, folds the results into one ``UnifiedCalendar`` per
calendar id, ranks the accounts that can see it by access role and resolves
calendar names or ids to the account that should serve a request.

Results are cached per account set for a fixed TTL. Concurrent callers asking
for the same account set share one in-flight fetch. Nothing is invalidated
automatically: callers that add or remove credentials for an account must call
:meth:`CalendarRegistry.clear_cache`.
"""

from __future__ import annotations

import asyncio
import functools
import logging
import time
from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Literal

from pydantic import BaseModel, ConfigDict, model_validator

from calendar_broker.client import CalendarClient, CalendarListEntry
from calendar_broker.errors import AmbiguousPrimaryError

logger = logging.getLogger(__name__)

DEFAULT_CACHE_TTL_SECONDS = 5 * 60
PRIMARY_CALENDAR_ALIAS = "primary"

CalendarOperation = Literal["read", "write"]


class AccessRole(StrEnum):
    """Calendar access roles as reported by the calendar list, highest first."""

    OWNER = "owner"
    WRITER = "writer"
    READER = "reader"
    FREE_BUSY_READER = "freeBusyReader"

    @property
    def rank(self) -> int:
        return PERMISSION_RANK[self]

    @property
    def can_write(self) -> bool:
        return self in (AccessRole.OWNER, AccessRole.WRITER)


PERMISSION_RANK: dict[AccessRole, int] = {
    AccessRole.OWNER: 4,
    AccessRole.WRITER: 3,
    AccessRole.READER: 2,
    AccessRole.FREE_BUSY_READER: 1,
}


class PrimaryAliasPolicy(StrEnum):
    """How ``"primary"`` resolves when several accounts are in scope and none
    lists a calendar with that literal id."""

    FIRST_ACCOUNT = "first_account"
    STRICT = "strict"


class CalendarAccess(BaseModel):
    """One account's view of one calendar."""

    model_config = ConfigDict(frozen=True)

    account_id: str
    access_role: AccessRole
    primary: bool = False
    summary: str
    summary_override: str | None = None
    time_zone: str | None = None


class UnifiedCalendar(BaseModel):
    """A calendar deduplicated across every account that can see it."""

    model_config = ConfigDict(frozen=True)

    calendar_id: str
    accounts: list[CalendarAccess]
    preferred_account: str
    display_name: str

    @model_validator(mode="after")
    def _validate_preferred_account(self) -> UnifiedCalendar:
        if not self.accounts:
            raise ValueError("accounts must contain at least one CalendarAccess")
        if all(access.account_id != self.preferred_account for access in self.accounts):
            raise ValueError("preferred_account must be one of accounts")
        return self

    @property
    def preferred_access(self) -> CalendarAccess:
        return next(a for a in self.accounts if a.account_id == self.preferred_account)


class AccountAccess(BaseModel):
    account_id: str
    access_role: AccessRole


class CalendarResolution(BaseModel):
    calendar_id: str
    account_id: str
    access_role: AccessRole


@dataclass
class RoutingPlan:
    """Calendars grouped by the account that should serve them."""

    resolved: dict[str, list[str]] = field(default_factory=dict)
    warnings: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class _CacheEntry:
    calendars: tuple[UnifiedCalendar, ...]
    created_at: float


def cache_key_for(account_ids: Iterable[str]) -> str:
    """Key identifying an account set regardless of enumeration order."""
    return ",".join(sorted(account_ids))


def _coerce_access_role(value: str | None, *, calendar_id: str, account_id: str) -> AccessRole:
    if value is None:
        return AccessRole.READER
    try:
        return AccessRole(value)
    except ValueError:
        logger.warning(
            "Unknown access role %r for calendar %s on account %s; ranking it lowest",
            value,
            calendar_id,
            account_id,
        )
        return AccessRole.FREE_BUSY_READER


def _build_unified_calendar(calendar_id: str, accesses: list[CalendarAccess]) -> UnifiedCalendar:
    # Strict comparison keeps the first-seen account on equal rank.
    preferred = accesses[0]
    for access in accesses[1:]:
        if access.access_role.rank > preferred.access_role.rank:
            preferred = access

    primary_access = next((a for a in accesses if a.primary), None)
    display_name = (
        (primary_access.summary_override if primary_access is not None else None)
        or preferred.summary_override
        or preferred.summary
    )
    return UnifiedCalendar(
        calendar_id=calendar_id,
        accounts=accesses,
        preferred_account=preferred.account_id,
        display_name=display_name,
    )


def build_unified_calendars(
    calendars_by_account: Sequence[tuple[str, Sequence[CalendarListEntry]]],
) -> list[UnifiedCalendar]:
    """Fold per-account calendar lists into unified calendars, in first-seen order."""
    calendar_map: dict[str, list[CalendarAccess]] = {}
    for account_id, entries in calendars_by_account:
        for entry in entries:
            if not entry.id:
                continue
            access = CalendarAccess(
                account_id=account_id,
                access_role=_coerce_access_role(
                    entry.access_role, calendar_id=entry.id, account_id=account_id
                ),
                primary=entry.primary,
                summary=entry.summary or entry.id,
                summary_override=entry.summary_override,
                time_zone=entry.time_zone,
            )
            calendar_map.setdefault(entry.id, []).append(access)

    return [
        _build_unified_calendar(calendar_id, accesses)
        for calendar_id, accesses in calendar_map.items()
    ]


def _gate_access(calendar: UnifiedCalendar, operation: CalendarOperation) -> AccountAccess | None:
    preferred = calendar.preferred_access
    if operation == "write" and not preferred.access_role.can_write:
        return None
    return AccountAccess(account_id=preferred.account_id, access_role=preferred.access_role)


# Name match tiers, strongest first. Each takes (calendar, name, lowered name).
_NAME_MATCH_TIERS: tuple[Callable[[UnifiedCalendar, str, str], bool], ...] = (
    lambda cal, name, _lower: any(a.summary_override == name for a in cal.accounts),
    lambda cal, _name, lower: any(
        a.summary_override is not None and a.summary_override.lower() == lower
        for a in cal.accounts
    ),
    lambda cal, name, _lower: cal.display_name == name,
    lambda cal, _name, lower: cal.display_name.lower() == lower,
    lambda cal, name, _lower: any(a.summary == name for a in cal.accounts),
    lambda cal, _name, lower: any(a.summary.lower() == lower for a in cal.accounts),
)


def match_calendar_by_name(
    calendars: Sequence[UnifiedCalendar], name: str
) -> UnifiedCalendar | None:
    """Return the first calendar matching ``name`` at the strongest matching tier."""
    lowered = name.lower()
    for matches in _NAME_MATCH_TIERS:
        for calendar in calendars:
            if matches(calendar, name, lowered):
                return calendar
    return None


class CalendarRegistry:
    """Deduplicated, permission-ranked view of the calendars a set of accounts can see.

    Parameters
    ----------
    ttl_seconds:
        How long a fetched snapshot stays valid for the same account set.
    clock:
        Monotonic time source in seconds; injectable for tests.
    primary_alias_policy:
        Behaviour for ``"primary"`` when several accounts are in scope.
    """

    def __init__(
        self,
        *,
        ttl_seconds: float = DEFAULT_CACHE_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
        primary_alias_policy: PrimaryAliasPolicy = PrimaryAliasPolicy.FIRST_ACCOUNT,
    ) -> None:
        if ttl_seconds < 0:
            raise ValueError("ttl_seconds must be non-negative")
        self._ttl_seconds = ttl_seconds
        self._clock = clock
        self._primary_alias_policy = PrimaryAliasPolicy(primary_alias_policy)
        self._cache: dict[str, _CacheEntry] = {}
        self._in_flight: dict[str, asyncio.Task[tuple[UnifiedCalendar, ...]]] = {}
        # Bumped by clear_cache(); fetches started under an older generation
        # still answer their callers but never write the cache.
        self._generation = 0

    @property
    def primary_alias_policy(self) -> PrimaryAliasPolicy:
        return self._primary_alias_policy

    async def get_unified_calendars(
        self, accounts: Mapping[str, CalendarClient]
    ) -> list[UnifiedCalendar]:
        """Return the unified calendars for ``accounts``, fetching at most once per TTL.

        Each call gets its own list; the cached snapshot is never handed out.
        """
        cache_key = cache_key_for(accounts)

        in_flight = self._in_flight.get(cache_key)
        if in_flight is not None:
            return list(await asyncio.shield(in_flight))

        cached = self._cache.get(cache_key)
        if cached is not None and self._clock() - cached.created_at < self._ttl_seconds:
            return list(cached.calendars)

        task = asyncio.create_task(
            self._fetch_and_build(dict(accounts), cache_key, self._generation)
        )
        self._in_flight[cache_key] = task
        task.add_done_callback(functools.partial(self._discard_in_flight, cache_key))
        # Shielded so an abandoned caller does not cancel a fetch others may share.
        return list(await asyncio.shield(task))

    def _discard_in_flight(
        self, cache_key: str, task: asyncio.Task[tuple[UnifiedCalendar, ...]]
    ) -> None:
        if self._in_flight.get(cache_key) is task:
            del self._in_flight[cache_key]
        if not task.cancelled() and task.exception() is not None:
            logger.warning(
                "Calendar registry fetch failed (accounts=%s): %s", cache_key, task.exception()
            )

    async def _fetch_and_build(
        self, accounts: dict[str, CalendarClient], cache_key: str, generation: int
    ) -> tuple[UnifiedCalendar, ...]:
        calendars_by_account = await asyncio.gather(
            *(
                self._list_account_calendars(account_id, client)
                for account_id, client in accounts.items()
            )
        )
        unified = tuple(build_unified_calendars(calendars_by_account))
        if generation != self._generation:
            logger.debug("Calendar registry cleared during fetch (accounts=%s)", cache_key)
            return unified
        self._cache[cache_key] = _CacheEntry(calendars=unified, created_at=self._clock())
        logger.debug(
            "Calendar registry built %d calendar(s) across %d account(s)",
            len(unified),
            len(accounts),
        )
        return unified

    @staticmethod
    async def _list_account_calendars(
        account_id: str, client: CalendarClient
    ) -> tuple[str, list[CalendarListEntry]]:
        try:
            return account_id, await client.list_calendars()
        except Exception as exc:
            logger.warning(
                "Calendar list fetch failed for account %s; continuing without it: %s",
                account_id,
                exc,
                exc_info=True,
            )
            return account_id, []

    async def find_calendar(
        self, calendar_id: str, accounts: Mapping[str, CalendarClient]
    ) -> UnifiedCalendar | None:
        unified = await self.get_unified_calendars(accounts)
        return next((c for c in unified if c.calendar_id == calendar_id), None)

    async def get_account_for_calendar(
        self,
        calendar_id: str,
        accounts: Mapping[str, CalendarClient],
        operation: CalendarOperation = "read",
    ) -> AccountAccess | None:
        """Return the preferred account for ``calendar_id``.

        Writes are only routed to the preferred account, and only when its role
        allows writing; a lower-ranked writer is never used instead.
        """
        calendar = await self.find_calendar(calendar_id, accounts)
        if calendar is None:
            return None
        return _gate_access(calendar, operation)

    async def get_accounts_for_calendar(
        self, calendar_id: str, accounts: Mapping[str, CalendarClient]
    ) -> list[CalendarAccess]:
        calendar = await self.find_calendar(calendar_id, accounts)
        return list(calendar.accounts) if calendar is not None else []

    async def resolve_calendar_name_to_id(
        self,
        name_or_id: str,
        accounts: Mapping[str, CalendarClient],
        operation: CalendarOperation = "read",
    ) -> CalendarResolution | None:
        """Resolve a calendar name, id or the ``"primary"`` alias to an account.

        Raises
        ------
        AmbiguousPrimaryError
            ``"primary"`` with several accounts under the strict alias policy.
        """
        if name_or_id == PRIMARY_CALENDAR_ALIAS:
            return await self._resolve_primary_alias(accounts, operation)

        if "@" in name_or_id:
            access = await self.get_account_for_calendar(name_or_id, accounts, operation)
            if access is None:
                return None
            return CalendarResolution(
                calendar_id=name_or_id,
                account_id=access.account_id,
                access_role=access.access_role,
            )

        unified = await self.get_unified_calendars(accounts)
        match = match_calendar_by_name(unified, name_or_id)
        if match is None:
            return None
        access = _gate_access(match, operation)
        if access is None:
            return None
        return CalendarResolution(
            calendar_id=match.calendar_id,
            account_id=access.account_id,
            access_role=access.access_role,
        )

    async def _resolve_primary_alias(
        self,
        accounts: Mapping[str, CalendarClient],
        operation: CalendarOperation,
    ) -> CalendarResolution | None:
        account_ids = list(accounts)
        if not account_ids:
            return None
        if len(account_ids) == 1:
            # An account always owns its own primary calendar.
            return CalendarResolution(
                calendar_id=PRIMARY_CALENDAR_ALIAS,
                account_id=account_ids[0],
                access_role=AccessRole.OWNER,
            )

        access = await self.get_account_for_calendar(PRIMARY_CALENDAR_ALIAS, accounts, operation)
        if access is not None:
            return CalendarResolution(
                calendar_id=PRIMARY_CALENDAR_ALIAS,
                account_id=access.account_id,
                access_role=access.access_role,
            )

        if self._primary_alias_policy is PrimaryAliasPolicy.STRICT:
            raise AmbiguousPrimaryError(account_ids)

        logger.debug(
            "Resolving 'primary' to first account %s of %d", account_ids[0], len(account_ids)
        )
        return CalendarResolution(
            calendar_id=PRIMARY_CALENDAR_ALIAS,
            account_id=account_ids[0],
            access_role=AccessRole.OWNER,
        )

    async def resolve_calendars_to_accounts(
        self,
        names_or_ids: Sequence[str],
        accounts: Mapping[str, CalendarClient],
        *,
        restrict_to_accounts: Sequence[str] | None = None,
    ) -> RoutingPlan:
        """Group calendar names/ids by the account that should read them.

        Unresolvable entries become warnings instead of errors.
        """
        available: Mapping[str, CalendarClient] = accounts
        if restrict_to_accounts is not None:
            allowed = set(restrict_to_accounts)
            available = {aid: client for aid, client in accounts.items() if aid in allowed}

        plan = RoutingPlan()
        for name_or_id in names_or_ids:
            try:
                resolution = await self.resolve_calendar_name_to_id(name_or_id, available, "read")
            except AmbiguousPrimaryError as exc:
                plan.warnings.append(str(exc))
                continue

            if resolution is None:
                plan.warnings.append(f'Calendar "{name_or_id}" not found on any account')
                continue

            bucket = plan.resolved.setdefault(resolution.account_id, [])
            if resolution.calendar_id not in bucket:
                bucket.append(resolution.calendar_id)
        return plan

    def clear_cache(self) -> None:
        """Drop cached snapshots and forget in-flight fetches."""
        self._generation += 1
        self._cache.clear()
        self._in_flight.clear()

    def reset(self) -> None:
        """Return the registry to its freshly constructed state."""
        self.clear_cache()
