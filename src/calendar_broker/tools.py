"""MCP tool surface for the calendar broker.

Every tool accepts an optional ``account`` (one id or a list of ids).
Omitting it puts every configured account in scope. Multi-calendar reads fan
out across accounts; single-event reads and all writes are routed to exactly
one account, and writes only to an account whose role allows writing.

Tools fail open: client and routing errors come back as a structured
``{"status": "error", ...}`` payload instead of an exception so the agent can
read the reason. Invalid arguments still raise ``ValueError``.
"""

from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import Callable, Mapping
from datetime import UTC, date, datetime
from typing import Any, Literal
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from calendar_broker.accounts import select_accounts
from calendar_broker.client import (
    CalendarClient,
    CalendarClientError,
    CalendarListEntry,
    sanitize_error_message,
)
from calendar_broker.core.logging import tool_call
from calendar_broker.errors import CalendarBrokerError, EventResponseError
from calendar_broker.registry import PRIMARY_CALENDAR_ALIAS, CalendarRegistry, UnifiedCalendar
from calendar_broker.router import (
    CalendarTarget,
    EventQueryResult,
    MultiAccountRouter,
    RoutedEvent,
)

logger = logging.getLogger(__name__)

AccountArg = str | list[str] | None
SendUpdates = Literal["all", "externalOnly", "none"]
ResponseStatus = Literal["accepted", "declined", "tentative", "needsAction"]

_DATE_ONLY = re.compile(r"\d{4}-\d{2}-\d{2}")


def _build_structured_error(exc: Exception, **context: Any) -> dict[str, Any]:
    return {
        "status": "error",
        "error": sanitize_error_message(exc),
        "error_type": type(exc).__name__,
        **context,
    }


def _normalize_calendar_ids(calendar_id: str | list[str]) -> list[str]:
    raw = [calendar_id] if isinstance(calendar_id, str) else list(calendar_id)
    ids = [value.strip() for value in raw if isinstance(value, str) and value.strip()]
    if not ids:
        raise ValueError("calendar_id must name at least one calendar")
    return ids


def _require_text(value: str, field_name: str) -> str:
    text = value.strip()
    if not text:
        raise ValueError(f"{field_name} must be a non-empty string")
    return text


def _event_time(value: str, field_name: str, time_zone: str | None) -> dict[str, str]:
    """Turn an ISO date or date-time into an event ``start``/``end`` object.

    ``YYYY-MM-DD`` makes an all-day boundary. A date-time without a UTC offset
    is read in ``time_zone``.
    """
    text = _require_text(value, field_name)
    if _DATE_ONLY.fullmatch(text):
        try:
            date.fromisoformat(text)
        except ValueError as exc:
            raise ValueError(f"{field_name} is not a valid date: {text}") from exc
        return {"date": text}
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError as exc:
        raise ValueError(
            f"{field_name} must be an ISO 8601 date (YYYY-MM-DD) or date-time"
        ) from exc
    payload = {"dateTime": parsed.isoformat()}
    if time_zone:
        payload["timeZone"] = time_zone
    elif parsed.tzinfo is None:
        raise ValueError(f"{field_name} has no UTC offset and no time zone is known")
    return payload


def _is_naive(value: str | None) -> bool:
    if value is None or _DATE_ONLY.fullmatch(value.strip()):
        return False
    try:
        return datetime.fromisoformat(value.strip()).tzinfo is None
    except ValueError:
        return False


def _validate_time_zone(time_zone: str) -> ZoneInfo:
    try:
        return ZoneInfo(time_zone)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ValueError(
            f"Invalid timezone: {time_zone}. Use IANA format (e.g. 'America/Los_Angeles')."
        ) from exc


def _utc_offset(moment: datetime) -> str:
    offset = moment.utcoffset()
    if not offset:
        return "Z"
    text = moment.strftime("%z")
    return f"{text[:3]}:{text[3:]}"


class CalendarTools:
    """Registers the broker's calendar tools on an MCP server.

    The account mapping is owned by the caller; the registry and router only
    borrow it per call. ``now`` is injectable for tests.
    """

    def __init__(
        self,
        accounts: Mapping[str, CalendarClient],
        registry: CalendarRegistry,
        router: MultiAccountRouter | None = None,
        *,
        now: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        self._accounts = dict(accounts)
        self._registry = registry
        self._router = router or MultiAccountRouter(registry)
        self._now = now

    @property
    def accounts(self) -> dict[str, CalendarClient]:
        return self._accounts

    @property
    def registry(self) -> CalendarRegistry:
        return self._registry

    def register_tools(self, mcp: Any) -> None:
        tools = self

        # ------------------------------------------------------------------
        # Multi-calendar reads
        # ------------------------------------------------------------------

        @mcp.tool()
        async def calendar_list_calendars(account: AccountArg = None) -> dict[str, Any]:
            """List calendars visible to the selected accounts.

            Calendars shared between accounts appear once, with every account's
            access level under ``account_access``.
            """
            with tool_call("calendar_list_calendars"):
                try:
                    selected = select_accounts(account, tools._accounts)
                    unified = await tools._registry.get_unified_calendars(selected)
                except (CalendarBrokerError, CalendarClientError) as exc:
                    logger.warning("calendar_list_calendars failed: %s", exc, exc_info=True)
                    error_dict = _build_structured_error(exc)
                    error_dict["calendars"] = []
                    return error_dict

                payload: dict[str, Any] = {
                    "calendars": [tools._calendar_to_payload(c) for c in unified],
                    "total_count": len(unified),
                }
                if len(selected) > 1:
                    payload["accounts"] = list(selected)
                    payload["note"] = (
                        f"Showing deduplicated calendars across {len(selected)} account(s). "
                        "Calendars accessible from multiple accounts show all access levels "
                        "in 'account_access'."
                    )
                return payload

        @mcp.tool()
        async def calendar_list_events(
            calendar_id: str | list[str],
            time_min: datetime | None = None,
            time_max: datetime | None = None,
            time_zone: str | None = None,
            account: AccountArg = None,
        ) -> dict[str, Any]:
            """List events from one or more calendars across the selected accounts.

            ``calendar_id`` accepts calendar ids, calendar names or ``"primary"``.
            Events from every calendar are merged and sorted by start time.
            """
            calendar_ids = _normalize_calendar_ids(calendar_id)
            with tool_call("calendar_list_events"):
                try:
                    selected = select_accounts(account, tools._accounts)
                    result = await tools._router.list_events(
                        selected,
                        calendar_ids,
                        time_min=time_min,
                        time_max=time_max,
                        time_zone=time_zone,
                    )
                except (CalendarBrokerError, CalendarClientError) as exc:
                    logger.warning(
                        "calendar_list_events failed (calendars=%s): %s",
                        ", ".join(calendar_ids),
                        exc,
                        exc_info=True,
                    )
                    error_dict = _build_structured_error(exc, calendar_ids=calendar_ids)
                    error_dict["events"] = []
                    return error_dict

                payload = tools._event_result_to_payload(result)
                note = _list_events_note(len(selected), result)
                if note is not None:
                    payload["note"] = note
                return payload

        @mcp.tool()
        async def calendar_search_events(
            calendar_id: str | list[str],
            query: str,
            time_min: datetime | None = None,
            time_max: datetime | None = None,
            time_zone: str | None = None,
            account: AccountArg = None,
        ) -> dict[str, Any]:
            """Free-text search for events in one or more calendars."""
            calendar_ids = _normalize_calendar_ids(calendar_id)
            if not query.strip():
                raise ValueError("query must be a non-empty string")
            with tool_call("calendar_search_events"):
                try:
                    selected = select_accounts(account, tools._accounts)
                    result = await tools._router.search_events(
                        selected,
                        calendar_ids,
                        query=query,
                        time_min=time_min,
                        time_max=time_max,
                        time_zone=time_zone,
                    )
                except (CalendarBrokerError, CalendarClientError) as exc:
                    logger.warning(
                        "calendar_search_events failed (calendars=%s): %s",
                        ", ".join(calendar_ids),
                        exc,
                        exc_info=True,
                    )
                    error_dict = _build_structured_error(exc, calendar_ids=calendar_ids)
                    error_dict["events"] = []
                    return error_dict
                return tools._event_result_to_payload(result)

        @mcp.tool()
        async def calendar_get_freebusy(
            calendars: list[str],
            time_min: datetime,
            time_max: datetime,
            time_zone: str | None = None,
            account: AccountArg = None,
        ) -> dict[str, Any]:
            """Busy periods for each requested calendar.

            Calendars that cannot be found on any account are reported with a
            ``notFound`` error rather than failing the request. The window must
            be shorter than three months.
            """
            calendar_ids = _normalize_calendar_ids(calendars)
            with tool_call("calendar_get_freebusy"):
                try:
                    selected = select_accounts(account, tools._accounts)
                    result = await tools._router.query_free_busy(
                        selected,
                        calendar_ids,
                        time_min=time_min,
                        time_max=time_max,
                        time_zone=time_zone,
                    )
                except (CalendarBrokerError, CalendarClientError) as exc:
                    logger.warning(
                        "calendar_get_freebusy failed (calendars=%s): %s",
                        ", ".join(calendar_ids),
                        exc,
                        exc_info=True,
                    )
                    error_dict = _build_structured_error(exc, calendar_ids=calendar_ids)
                    error_dict["calendars"] = {}
                    return error_dict
                return result.model_dump(mode="json", exclude_none=True)

        # ------------------------------------------------------------------
        # Single events
        # ------------------------------------------------------------------

        @mcp.tool()
        async def calendar_get_event(
            calendar_id: str,
            event_id: str,
            account: AccountArg = None,
        ) -> dict[str, Any]:
            """Fetch one event by id from the account that can read its calendar."""
            event_id = _require_text(event_id, "event_id")
            with tool_call("calendar_get_event"):
                try:
                    target = await tools._target(account, calendar_id, "read")
                    raw = await target.client.get_event(
                        calendar_id=target.calendar_id, event_id=event_id
                    )
                except (CalendarBrokerError, CalendarClientError) as exc:
                    logger.warning("calendar_get_event failed (event=%s): %s", event_id, exc)
                    return _build_structured_error(
                        exc, calendar_id=calendar_id, event_id=event_id
                    )
                return {"event": _target_event_payload(target, raw)}

        @mcp.tool()
        async def calendar_create_event(
            calendar_id: str,
            summary: str,
            start: str,
            end: str,
            description: str | None = None,
            location: str | None = None,
            attendees: list[str] | None = None,
            time_zone: str | None = None,
            color_id: str | None = None,
            recurrence: list[str] | None = None,
            send_updates: SendUpdates = "all",
            account: AccountArg = None,
        ) -> dict[str, Any]:
            """Create an event on a calendar the selected accounts can write to.

            ``start`` and ``end`` are ISO 8601: ``YYYY-MM-DD`` for all-day
            events, otherwise a date-time. Date-times without an offset are
            read in ``time_zone``, else in the calendar's own time zone.
            ``recurrence`` takes RRULE/EXDATE lines.
            """
            summary = _require_text(summary, "summary")
            if time_zone:
                _validate_time_zone(time_zone)
            with tool_call("calendar_create_event"):
                try:
                    target = await tools._target(account, calendar_id, "write")
                    zone = time_zone
                    if zone is None and (_is_naive(start) or _is_naive(end)):
                        zone = await tools._calendar_time_zone(target)
                    body: dict[str, Any] = {
                        "summary": summary,
                        "start": _event_time(start, "start", zone),
                        "end": _event_time(end, "end", zone),
                    }
                    body.update(
                        _optional_event_fields(
                            description=description,
                            location=location,
                            attendees=attendees,
                            color_id=color_id,
                            recurrence=recurrence,
                        )
                    )
                    created = await target.client.insert_event(
                        calendar_id=target.calendar_id, body=body, send_updates=send_updates
                    )
                except (CalendarBrokerError, CalendarClientError) as exc:
                    logger.warning("calendar_create_event failed: %s", exc)
                    return _build_structured_error(exc, calendar_id=calendar_id)
                logger.info(
                    "Created event %s on calendar %s", created.get("id"), target.calendar_id
                )
                return {"status": "created", "event": _target_event_payload(target, created)}

        @mcp.tool()
        async def calendar_update_event(
            calendar_id: str,
            event_id: str,
            summary: str | None = None,
            start: str | None = None,
            end: str | None = None,
            description: str | None = None,
            location: str | None = None,
            attendees: list[str] | None = None,
            time_zone: str | None = None,
            color_id: str | None = None,
            recurrence: list[str] | None = None,
            send_updates: SendUpdates = "all",
            account: AccountArg = None,
        ) -> dict[str, Any]:
            """Change only the given fields of an existing event.

            ``attendees`` replaces the whole attendee list.
            """
            event_id = _require_text(event_id, "event_id")
            if time_zone:
                _validate_time_zone(time_zone)
            changes = _optional_event_fields(
                description=description,
                location=location,
                attendees=attendees,
                color_id=color_id,
                recurrence=recurrence,
            )
            if summary is not None:
                changes["summary"] = _require_text(summary, "summary")
            if not changes and start is None and end is None:
                raise ValueError("At least one field to update is required")

            with tool_call("calendar_update_event"):
                try:
                    target = await tools._target(account, calendar_id, "write")
                    zone = time_zone
                    if zone is None and (_is_naive(start) or _is_naive(end)):
                        zone = await tools._calendar_time_zone(target)
                    if start is not None:
                        changes["start"] = _event_time(start, "start", zone)
                    if end is not None:
                        changes["end"] = _event_time(end, "end", zone)
                    updated = await target.client.patch_event(
                        calendar_id=target.calendar_id,
                        event_id=event_id,
                        body=changes,
                        send_updates=send_updates,
                    )
                except (CalendarBrokerError, CalendarClientError) as exc:
                    logger.warning("calendar_update_event failed (event=%s): %s", event_id, exc)
                    return _build_structured_error(
                        exc, calendar_id=calendar_id, event_id=event_id
                    )
                return {
                    "status": "updated",
                    "updated_fields": sorted(changes),
                    "event": _target_event_payload(target, updated),
                }

        @mcp.tool()
        async def calendar_delete_event(
            calendar_id: str,
            event_id: str,
            send_updates: SendUpdates = "all",
            account: AccountArg = None,
        ) -> dict[str, Any]:
            """Delete an event from a calendar the selected accounts can write to."""
            event_id = _require_text(event_id, "event_id")
            with tool_call("calendar_delete_event"):
                try:
                    target = await tools._target(account, calendar_id, "write")
                    await target.client.delete_event(
                        calendar_id=target.calendar_id,
                        event_id=event_id,
                        send_updates=send_updates,
                    )
                except (CalendarBrokerError, CalendarClientError) as exc:
                    logger.warning("calendar_delete_event failed (event=%s): %s", event_id, exc)
                    return _build_structured_error(
                        exc, calendar_id=calendar_id, event_id=event_id
                    )
                logger.info("Deleted event %s from calendar %s", event_id, target.calendar_id)
                return {
                    "success": True,
                    "event_id": event_id,
                    "calendar_id": target.calendar_id,
                    "account_id": target.account_id,
                    "message": "Event deleted successfully",
                }

        @mcp.tool()
        async def calendar_respond_to_event(
            calendar_id: str,
            event_id: str,
            response: ResponseStatus,
            comment: str | None = None,
            send_updates: SendUpdates = "none",
            account: AccountArg = None,
        ) -> dict[str, Any]:
            """Accept, decline or tentatively accept an invitation.

            The answering account must be an attendee and not the organizer.
            """
            event_id = _require_text(event_id, "event_id")
            with tool_call("calendar_respond_to_event"):
                try:
                    target = await tools._target(account, calendar_id, "write")
                    current = await target.client.get_event(
                        calendar_id=target.calendar_id, event_id=event_id
                    )
                    attendees = _answer_invitation(current, response, comment)
                    updated = await target.client.patch_event(
                        calendar_id=target.calendar_id,
                        event_id=event_id,
                        body={"attendees": attendees},
                        send_updates=send_updates,
                    )
                except (CalendarBrokerError, CalendarClientError) as exc:
                    logger.warning(
                        "calendar_respond_to_event failed (event=%s): %s", event_id, exc
                    )
                    return _build_structured_error(
                        exc, calendar_id=calendar_id, event_id=event_id
                    )

                message = f'Your response has been set to "{response}"'
                if comment:
                    message += f' with note: "{comment}"'
                return {
                    "status": "ok",
                    "response": response,
                    "message": message,
                    "event": _target_event_payload(target, updated),
                }

        # ------------------------------------------------------------------
        # Account and service information
        # ------------------------------------------------------------------

        @mcp.tool()
        async def calendar_list_colors(account: AccountArg = None) -> dict[str, Any]:
            """Color ids usable as an event's or calendar's ``color_id``."""
            with tool_call("calendar_list_colors"):
                try:
                    selected = select_accounts(account, tools._accounts)
                    account_id, client = next(iter(selected.items()))
                    colors = await client.get_colors()
                except (CalendarBrokerError, CalendarClientError) as exc:
                    logger.warning("calendar_list_colors failed: %s", exc)
                    return _build_structured_error(exc)
                return {
                    "account_id": account_id,
                    "event": colors.get("event", {}),
                    "calendar": colors.get("calendar", {}),
                }

        @mcp.tool()
        async def calendar_get_current_time(
            time_zone: str | None = None,
            account: AccountArg = None,
        ) -> dict[str, Any]:
            """Current date and time, in ``time_zone`` or the primary calendar's zone.

            Falls back to UTC when no primary calendar reports a time zone.
            """
            zone = _validate_time_zone(time_zone) if time_zone else None
            with tool_call("calendar_get_current_time"):
                if zone is None:
                    try:
                        selected = select_accounts(account, tools._accounts)
                        unified = await tools._registry.get_unified_calendars(selected)
                    except (CalendarBrokerError, CalendarClientError) as exc:
                        logger.warning("calendar_get_current_time failed: %s", exc)
                        return _build_structured_error(exc)
                    zone = _validate_time_zone(_primary_time_zone(selected, unified) or "UTC")

                moment = tools._now().astimezone(zone)
                return {
                    "current_time": moment.isoformat(),
                    "time_zone": zone.key,
                    "offset": _utc_offset(moment),
                    "is_dst": bool(moment.dst()),
                }

        @mcp.tool()
        async def calendar_list_accounts(account: AccountArg = None) -> dict[str, Any]:
            """Whether each selected account is reachable, with its primary calendar."""
            with tool_call("calendar_list_accounts"):
                try:
                    selected = select_accounts(account, tools._accounts)
                except CalendarBrokerError as exc:
                    return _build_structured_error(exc, accounts=[])

                statuses = await asyncio.gather(
                    *(
                        _account_status(account_id, client)
                        for account_id, client in selected.items()
                    )
                )
                failed = sum(1 for status in statuses if status["status"] == "error")
                message = f"Found {len(statuses)} authenticated account(s)"
                if failed:
                    message = f"Found {len(statuses)} account(s) with {failed} error(s)"
                return {
                    "accounts": list(statuses),
                    "total_accounts": len(statuses),
                    "message": message,
                }

        @mcp.tool()
        async def calendar_refresh_calendars() -> dict[str, Any]:
            """Forget cached calendar lists so the next call re-reads every account."""
            with tool_call("calendar_refresh_calendars"):
                tools._registry.clear_cache()
                logger.info("Calendar registry cache cleared")
                return {"status": "ok", "accounts": list(tools._accounts)}

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _target(
        self, account: AccountArg, calendar_id: str, operation: Literal["read", "write"]
    ) -> CalendarTarget:
        selected = select_accounts(account, self._accounts)
        return await self._router.route_single(
            selected, _require_text(calendar_id, "calendar_id"), operation
        )

    async def _calendar_time_zone(self, target: CalendarTarget) -> str | None:
        unified = await self._registry.get_unified_calendars(
            {target.account_id: target.client}
        )
        for calendar in unified:
            access = calendar.accounts[0]
            if calendar.calendar_id == target.calendar_id or (
                target.calendar_id == PRIMARY_CALENDAR_ALIAS and access.primary
            ):
                return access.time_zone
        return None

    @staticmethod
    def _calendar_to_payload(calendar: UnifiedCalendar) -> dict[str, Any]:
        preferred = calendar.preferred_access
        return {
            "calendar_id": calendar.calendar_id,
            "display_name": calendar.display_name,
            "summary": preferred.summary,
            "summary_override": preferred.summary_override,
            "access_role": preferred.access_role.value,
            "primary": any(a.primary for a in calendar.accounts),
            "preferred_account": calendar.preferred_account,
            "account_access": [
                {
                    "account_id": access.account_id,
                    "access_role": access.access_role.value,
                    "primary": access.primary,
                }
                for access in calendar.accounts
            ],
        }

    @staticmethod
    def _event_to_payload(event: RoutedEvent) -> dict[str, Any]:
        return {
            **event.event,
            "account_id": event.account_id,
            "calendar_id": event.calendar_id,
        }

    @staticmethod
    def _event_result_to_payload(result: EventQueryResult) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "events": [CalendarTools._event_to_payload(e) for e in result.events],
            "total_count": result.total_count,
            "calendars": result.calendars,
        }
        if result.accounts is not None:
            payload["accounts"] = result.accounts
        if result.warnings:
            payload["warnings"] = result.warnings
        if result.partial_failures:
            payload["partial_failures"] = [
                failure.model_dump(mode="json") for failure in result.partial_failures
            ]
        return payload


def _target_event_payload(target: CalendarTarget, raw: dict[str, Any]) -> dict[str, Any]:
    return CalendarTools._event_to_payload(
        RoutedEvent(account_id=target.account_id, calendar_id=target.calendar_id, event=raw)
    )


def _optional_event_fields(
    *,
    description: str | None,
    location: str | None,
    attendees: list[str] | None,
    color_id: str | None,
    recurrence: list[str] | None,
) -> dict[str, Any]:
    fields: dict[str, Any] = {}
    if description is not None:
        fields["description"] = description
    if location is not None:
        fields["location"] = location
    if attendees is not None:
        fields["attendees"] = [{"email": email.strip()} for email in attendees if email.strip()]
    if color_id is not None:
        fields["colorId"] = color_id
    if recurrence is not None:
        fields["recurrence"] = list(recurrence)
    return fields


def _answer_invitation(
    event: dict[str, Any], response: str, comment: str | None
) -> list[dict[str, Any]]:
    """Return the event's attendee list with this account's answer applied."""
    attendees = [dict(a) for a in event.get("attendees") or [] if isinstance(a, dict)]
    me = next((a for a in attendees if a.get("self") is True), None)
    if me is None:
        raise EventResponseError(
            "You are not an attendee of this event. "
            "Only attendees can respond to event invitations."
        )
    if me.get("organizer") is True:
        raise EventResponseError(
            "You are the organizer of this event. "
            "Organizers do not respond to their own event invitations."
        )
    me["responseStatus"] = response
    if comment is not None:
        me["comment"] = comment
    return attendees


def _primary_time_zone(
    accounts: Mapping[str, CalendarClient], unified: list[UnifiedCalendar]
) -> str | None:
    for account_id in accounts:
        for calendar in unified:
            for access in calendar.accounts:
                if access.account_id == account_id and access.primary and access.time_zone:
                    return access.time_zone
    return None


def _primary_entry(entries: list[CalendarListEntry]) -> CalendarListEntry | None:
    return next((entry for entry in entries if entry.primary), None)


async def _account_status(account_id: str, client: CalendarClient) -> dict[str, Any]:
    try:
        entries = await client.list_calendars()
    except CalendarClientError as exc:
        logger.warning("Account %s is not reachable: %s", account_id, exc)
        return {"account_id": account_id, "status": "error", "error": sanitize_error_message(exc)}

    primary = _primary_entry(entries)
    status: dict[str, Any] = {
        "account_id": account_id,
        "status": "active",
        "email": primary.id if primary is not None else None,
        "calendar_count": len(entries),
    }
    if primary is not None:
        status["primary_calendar"] = {
            "id": primary.id,
            "name": primary.summary_override or primary.summary,
            "time_zone": primary.time_zone,
        }
    return status


def _list_events_note(account_count: int, result: EventQueryResult) -> str | None:
    if account_count <= 1:
        return None
    failed_accounts = {failure.account_id for failure in result.partial_failures or []}
    if failed_accounts:
        return (
            f"Partial results: {len(failed_accounts)} of {account_count} account(s) "
            "reported failures; see warnings for details."
        )
    return f"Showing merged events from {account_count} account(s), sorted chronologically"
