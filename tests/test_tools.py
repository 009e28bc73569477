"""Unit tests for the MCP tool surface.

Tools are registered on a stub MCP that captures them by function name and
called directly with fake account clients.
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from calendar_broker.client import BusyPeriod, CalendarRequestError, FreeBusyCalendar
from calendar_broker.registry import CalendarRegistry
from calendar_broker.tools import CalendarTools
from tests._doubles import FakeCalendarClient, calendar_entry, event

pytestmark = pytest.mark.unit

START = datetime(2024, 5, 1, 8, 0, tzinfo=UTC)
END = START + timedelta(days=1)


class _StubMCP:
    """Minimal MCP stub that captures registered tools by function name."""

    def __init__(self) -> None:
        self.tools: dict[str, object] = {}

    def tool(self):
        def decorator(func):
            self.tools[func.__name__] = func
            return func

        return decorator


def _register(
    accounts: dict[str, FakeCalendarClient], *, now: datetime = START
) -> tuple[_StubMCP, CalendarTools]:
    mcp = _StubMCP()
    tools = CalendarTools(accounts, CalendarRegistry(), now=lambda: now)
    tools.register_tools(mcp)
    return mcp, tools


def _two_accounts() -> dict[str, FakeCalendarClient]:
    return {
        "work": FakeCalendarClient(
            [
                calendar_entry("me@work", "Me", primary=True),
                calendar_entry("team@x", "Team", "reader"),
            ],
            events={"team@x": [event("retro", "2024-05-01T15:00:00Z")]},
            free_busy={
                "team@x": FreeBusyCalendar(
                    busy=[BusyPeriod(start="2024-05-01T15:00:00Z", end="2024-05-01T16:00:00Z")]
                )
            },
        ),
        "home": FakeCalendarClient(
            [
                calendar_entry("team@x", "Team", "writer"),
                calendar_entry("fam@g", "Family"),
            ],
            events={
                "team@x": [event("planning", "2024-05-01T09:00:00Z")],
                "fam@g": [event("dinner", "2024-05-01T18:00:00Z")],
            },
        ),
    }


class TestRegistration:
    def test_registers_every_tool(self):
        mcp, _ = _register(_two_accounts())
        assert set(mcp.tools) == {
            "calendar_list_calendars",
            "calendar_list_events",
            "calendar_search_events",
            "calendar_get_freebusy",
            "calendar_refresh_calendars",
            "calendar_get_event",
            "calendar_create_event",
            "calendar_update_event",
            "calendar_delete_event",
            "calendar_respond_to_event",
            "calendar_list_colors",
            "calendar_get_current_time",
            "calendar_list_accounts",
        }


class TestListCalendarsTool:
    async def test_deduplicates_across_accounts(self):
        mcp, _ = _register(_two_accounts())

        result = await mcp.tools["calendar_list_calendars"]()

        by_id = {c["calendar_id"]: c for c in result["calendars"]}
        assert result["total_count"] == 3
        assert by_id["team@x"]["preferred_account"] == "home"
        assert by_id["team@x"]["access_role"] == "writer"
        assert by_id["team@x"]["account_access"] == [
            {"account_id": "work", "access_role": "reader", "primary": False},
            {"account_id": "home", "access_role": "writer", "primary": False},
        ]
        assert result["accounts"] == ["work", "home"]
        assert "deduplicated" in result["note"]

    async def test_single_account_has_no_note(self):
        mcp, _ = _register(_two_accounts())

        result = await mcp.tools["calendar_list_calendars"](account="home")

        assert {c["calendar_id"] for c in result["calendars"]} == {"team@x", "fam@g"}
        assert "note" not in result
        assert "accounts" not in result

    async def test_unknown_account_fails_open(self):
        mcp, _ = _register(_two_accounts())

        result = await mcp.tools["calendar_list_calendars"](account="school")

        assert result["status"] == "error"
        assert result["error_type"] == "AccountSelectionError"
        assert result["calendars"] == []


class TestListEventsTool:
    async def test_merges_accounts_with_note(self):
        mcp, _ = _register(_two_accounts())

        result = await mcp.tools["calendar_list_events"](
            calendar_id=["Team", "Family"], time_min=START, time_max=END
        )

        assert [e["id"] for e in result["events"]] == ["planning", "dinner"]
        assert result["events"][0]["account_id"] == "home"
        assert result["events"][0]["calendar_id"] == "team@x"
        assert result["total_count"] == 2
        assert result["accounts"] == ["work", "home"]
        assert result["note"] == (
            "Showing merged events from 2 account(s), sorted chronologically"
        )

    async def test_partial_failure_note(self):
        accounts = _two_accounts()
        accounts["home"].event_errors = {
            "fam@g": CalendarRequestError(status_code=500, message="backend error")
        }
        mcp, _ = _register(accounts)

        result = await mcp.tools["calendar_list_events"](calendar_id=["Team", "Family"])

        assert [e["id"] for e in result["events"]] == ["planning"]
        assert result["note"].startswith("Partial results: 1 of 2 account(s)")
        assert result["partial_failures"][0]["account_id"] == "home"
        assert result["warnings"]

    async def test_unresolvable_calendars_fail_open(self):
        mcp, _ = _register(_two_accounts())

        result = await mcp.tools["calendar_list_events"](calendar_id="Nope")

        assert result["status"] == "error"
        assert result["error_type"] == "CalendarQueryError"
        assert result["calendar_ids"] == ["Nope"]
        assert result["events"] == []

    async def test_blank_calendar_id_raises(self):
        mcp, _ = _register(_two_accounts())

        with pytest.raises(ValueError, match="calendar_id"):
            await mcp.tools["calendar_list_events"](calendar_id="  ")

    async def test_single_account_request_error_is_redacted(self):
        accounts = {
            "work": FakeCalendarClient(
                [calendar_entry("me@work", "Me")],
                event_errors={
                    "me@work": CalendarRequestError(
                        status_code=401, message="bad access_token=ya29.leaked"
                    )
                },
            )
        }
        mcp, _ = _register(accounts)

        result = await mcp.tools["calendar_list_events"](calendar_id="me@work")

        assert result["status"] == "error"
        assert result["error_type"] == "CalendarRequestError"
        assert "ya29.leaked" not in result["error"]


class TestSearchEventsTool:
    async def test_passes_query_through(self):
        accounts = _two_accounts()
        mcp, _ = _register(accounts)

        result = await mcp.tools["calendar_search_events"](
            calendar_id="Family", query="dinner", account="home"
        )

        assert accounts["home"].list_events_calls[0]["query"] == "dinner"
        assert [e["id"] for e in result["events"]] == ["dinner"]
        assert "note" not in result

    async def test_blank_query_raises(self):
        mcp, _ = _register(_two_accounts())

        with pytest.raises(ValueError, match="query"):
            await mcp.tools["calendar_search_events"](calendar_id="Family", query=" ")


class TestFreeBusyTool:
    async def test_returns_json_ready_payload(self):
        mcp, _ = _register(_two_accounts())

        result = await mcp.tools["calendar_get_freebusy"](
            calendars=["team@x", "Nope"], time_min=START, time_max=END
        )

        assert result["time_min"] == "2024-05-01T08:00:00Z"
        assert result["calendars"]["Nope"] == {"busy": [], "errors": [{"reason": "notFound"}]}
        assert result["accounts"] == ["work", "home"]
        assert result["warnings"] == ['Calendar "Nope" not found on any account']

    async def test_preferred_account_answers(self):
        accounts = _two_accounts()
        mcp, _ = _register(accounts)

        await mcp.tools["calendar_get_freebusy"](
            calendars=["team@x"], time_min=START, time_max=END
        )

        assert accounts["home"].free_busy_calls == [["team@x"]]
        assert accounts["work"].free_busy_calls == []

    async def test_window_of_three_months_raises(self):
        mcp, _ = _register(_two_accounts())

        with pytest.raises(ValueError, match="3 months"):
            await mcp.tools["calendar_get_freebusy"](
                calendars=["team@x"], time_min=START, time_max=START + timedelta(days=90)
            )


class TestRefreshTool:
    async def test_clears_registry_cache(self):
        accounts = _two_accounts()
        mcp, _ = _register(accounts)

        await mcp.tools["calendar_list_calendars"]()
        result = await mcp.tools["calendar_refresh_calendars"]()
        await mcp.tools["calendar_list_calendars"]()

        assert result == {"status": "ok", "accounts": ["work", "home"]}
        assert accounts["work"].list_calendars_calls == 2


# ============================================================================
# Single events and writes
# ============================================================================


def _invitation(*, organizer: bool = False, invited: bool = True) -> dict:
    attendees = [{"email": "boss@x", "organizer": True, "responseStatus": "accepted"}]
    if invited:
        attendees.append(
            {
                "email": "me@home",
                "self": True,
                "organizer": organizer,
                "responseStatus": "needsAction",
            }
        )
    return {"id": "inv", "summary": "Offsite", "attendees": attendees}


def _writable_accounts() -> dict[str, FakeCalendarClient]:
    accounts = _two_accounts()
    accounts["work"].calendars.append(calendar_entry("news@x", "News", "reader"))
    accounts["home"].calendars[1] = calendar_entry("fam@g", "Family", time_zone="Europe/Oslo")
    accounts["home"].events["fam@g"].append(_invitation())
    return accounts


class TestGetEventTool:
    async def test_reads_from_preferred_account(self):
        accounts = _writable_accounts()
        mcp, _ = _register(accounts)

        result = await mcp.tools["calendar_get_event"](calendar_id="Team", event_id="planning")

        assert result["event"]["id"] == "planning"
        assert result["event"]["account_id"] == "home"
        assert result["event"]["calendar_id"] == "team@x"

    async def test_missing_event_fails_open(self):
        mcp, _ = _register(_writable_accounts())

        result = await mcp.tools["calendar_get_event"](calendar_id="Family", event_id="nope")

        assert result["status"] == "error"
        assert result["error_type"] == "CalendarRequestError"
        assert result["event_id"] == "nope"


class TestWriteGating:
    async def test_create_goes_to_the_writing_account(self):
        accounts = _writable_accounts()
        mcp, _ = _register(accounts)

        result = await mcp.tools["calendar_create_event"](
            calendar_id="Team", summary="Retro", start="2024-05-10", end="2024-05-11"
        )

        assert result["status"] == "created"
        assert result["event"]["account_id"] == "home"
        assert accounts["home"].write_calls[0][:2] == ("insert", "team@x")
        assert accounts["work"].write_calls == []

    @pytest.mark.parametrize(
        ("tool", "kwargs"),
        [
            ("calendar_create_event", {"summary": "X", "start": "2024-05-10", "end": "2024-05-11"}),
            ("calendar_update_event", {"event_id": "e1", "location": "Room 4"}),
            ("calendar_delete_event", {"event_id": "e1"}),
            ("calendar_respond_to_event", {"event_id": "e1", "response": "accepted"}),
        ],
    )
    async def test_reader_only_calendar_is_refused(self, tool, kwargs):
        accounts = _writable_accounts()
        mcp, _ = _register(accounts)

        result = await mcp.tools[tool](calendar_id="News", **kwargs)

        assert result["status"] == "error"
        assert result["error_type"] == "CalendarAccessError"
        assert 'No account has write access to calendar "News"' in result["error"]
        assert accounts["work"].write_calls == []
        assert accounts["home"].write_calls == []

    async def test_explicit_reader_account_is_refused(self):
        accounts = _writable_accounts()
        mcp, _ = _register(accounts)

        result = await mcp.tools["calendar_delete_event"](
            calendar_id="team@x", event_id="retro", account="work"
        )

        assert result["error_type"] == "CalendarAccessError"
        assert accounts["work"].events["team@x"][0]["id"] == "retro"

    async def test_read_of_reader_only_calendar_is_allowed(self):
        accounts = _writable_accounts()
        accounts["work"].events["news@x"] = [event("brief", "2024-05-01T07:00:00Z")]
        mcp, _ = _register(accounts)

        result = await mcp.tools["calendar_get_event"](calendar_id="News", event_id="brief")

        assert result["event"]["account_id"] == "work"


class TestCreateEventTool:
    async def test_all_day_event_body(self):
        accounts = _writable_accounts()
        mcp, _ = _register(accounts)

        await mcp.tools["calendar_create_event"](
            calendar_id="Family",
            summary="Holiday",
            start="2024-07-01",
            end="2024-07-08",
            attendees=["gran@x", " "],
            recurrence=["RRULE:FREQ=YEARLY"],
            color_id="5",
        )

        operation, calendar_id, _, body, send_updates = accounts["home"].write_calls[0]
        assert (operation, calendar_id, send_updates) == ("insert", "fam@g", "all")
        assert body == {
            "summary": "Holiday",
            "start": {"date": "2024-07-01"},
            "end": {"date": "2024-07-08"},
            "attendees": [{"email": "gran@x"}],
            "recurrence": ["RRULE:FREQ=YEARLY"],
            "colorId": "5",
        }

    async def test_naive_times_use_the_calendars_time_zone(self):
        accounts = _writable_accounts()
        mcp, _ = _register(accounts)

        await mcp.tools["calendar_create_event"](
            calendar_id="Family", summary="Dinner", start="2024-05-10T18:00", end="2024-05-10T20:00"
        )

        body = accounts["home"].write_calls[-1][3]
        assert body["start"] == {"dateTime": "2024-05-10T18:00:00", "timeZone": "Europe/Oslo"}
        assert body["end"] == {"dateTime": "2024-05-10T20:00:00", "timeZone": "Europe/Oslo"}

    async def test_offset_times_are_kept(self):
        accounts = _writable_accounts()
        mcp, _ = _register(accounts)

        await mcp.tools["calendar_create_event"](
            calendar_id="Team",
            summary="Sync",
            start="2024-05-10T09:00:00+02:00",
            end="2024-05-10T09:30:00+02:00",
        )

        body = accounts["home"].write_calls[-1][3]
        assert body["start"] == {"dateTime": "2024-05-10T09:00:00+02:00"}

    async def test_naive_time_without_known_zone_raises(self):
        mcp, _ = _register(_writable_accounts())

        with pytest.raises(ValueError, match="no UTC offset"):
            await mcp.tools["calendar_create_event"](
                calendar_id="Team", summary="Sync", start="2024-05-10T09:00", end="2024-05-10T10:00"
            )

    async def test_invalid_time_zone_raises(self):
        mcp, _ = _register(_writable_accounts())

        with pytest.raises(ValueError, match="Invalid timezone: Mars/Olympus"):
            await mcp.tools["calendar_create_event"](
                calendar_id="Team",
                summary="Sync",
                start="2024-05-10T09:00",
                end="2024-05-10T10:00",
                time_zone="Mars/Olympus",
            )


class TestUpdateEventTool:
    async def test_patches_only_given_fields(self):
        accounts = _writable_accounts()
        mcp, _ = _register(accounts)

        result = await mcp.tools["calendar_update_event"](
            calendar_id="Family", event_id="dinner", location="Kitchen", send_updates="none"
        )

        assert accounts["home"].write_calls == [
            ("patch", "fam@g", "dinner", {"location": "Kitchen"}, "none")
        ]
        assert result["updated_fields"] == ["location"]
        assert result["event"]["location"] == "Kitchen"
        assert result["event"]["summary"] == "dinner"

    async def test_requires_a_change(self):
        mcp, _ = _register(_writable_accounts())

        with pytest.raises(ValueError, match="At least one field"):
            await mcp.tools["calendar_update_event"](calendar_id="Family", event_id="dinner")


class TestDeleteEventTool:
    async def test_deletes_and_reports(self):
        accounts = _writable_accounts()
        mcp, _ = _register(accounts)

        result = await mcp.tools["calendar_delete_event"](calendar_id="Family", event_id="dinner")

        assert result == {
            "success": True,
            "event_id": "dinner",
            "calendar_id": "fam@g",
            "account_id": "home",
            "message": "Event deleted successfully",
        }
        assert [e["id"] for e in accounts["home"].events["fam@g"]] == ["inv"]


class TestRespondToEventTool:
    async def test_sets_own_response_without_notifying(self):
        accounts = _writable_accounts()
        mcp, _ = _register(accounts)

        result = await mcp.tools["calendar_respond_to_event"](
            calendar_id="Family", event_id="inv", response="tentative", comment="If I can"
        )

        operation, _, _, body, send_updates = accounts["home"].write_calls[-1]
        assert (operation, send_updates) == ("patch", "none")
        me = next(a for a in body["attendees"] if a.get("self"))
        assert me["responseStatus"] == "tentative"
        assert me["comment"] == "If I can"
        assert body["attendees"][0]["responseStatus"] == "accepted"
        assert result["message"] == (
            'Your response has been set to "tentative" with note: "If I can"'
        )

    async def test_non_attendee_is_refused(self):
        accounts = _writable_accounts()
        accounts["home"].events["fam@g"][-1] = _invitation(invited=False)
        mcp, _ = _register(accounts)

        result = await mcp.tools["calendar_respond_to_event"](
            calendar_id="Family", event_id="inv", response="accepted"
        )

        assert result["error_type"] == "EventResponseError"
        assert "not an attendee" in result["error"]
        assert [call[0] for call in accounts["home"].write_calls] == ["get"]

    async def test_organizer_is_refused(self):
        accounts = _writable_accounts()
        accounts["home"].events["fam@g"][-1] = _invitation(organizer=True)
        mcp, _ = _register(accounts)

        result = await mcp.tools["calendar_respond_to_event"](
            calendar_id="Family", event_id="inv", response="declined"
        )

        assert result["error_type"] == "EventResponseError"
        assert "You are the organizer" in result["error"]


# ============================================================================
# Account and service information
# ============================================================================


class TestListColorsTool:
    async def test_uses_first_selected_account(self):
        accounts = _writable_accounts()
        accounts["home"].colors = {
            "event": {"1": {"background": "#a4bdfc", "foreground": "#1d1d1d"}},
            "calendar": {},
        }
        mcp, _ = _register(accounts)

        result = await mcp.tools["calendar_list_colors"](account="home")

        assert result["account_id"] == "home"
        assert result["event"]["1"]["background"] == "#a4bdfc"


class TestCurrentTimeTool:
    async def test_explicit_time_zone(self):
        mcp, _ = _register(_writable_accounts(), now=datetime(2024, 7, 1, 12, 0, tzinfo=UTC))

        result = await mcp.tools["calendar_get_current_time"](time_zone="Europe/Oslo")

        assert result == {
            "current_time": "2024-07-01T14:00:00+02:00",
            "time_zone": "Europe/Oslo",
            "offset": "+02:00",
            "is_dst": True,
        }

    async def test_defaults_to_primary_calendar_zone(self):
        accounts = {
            "work": FakeCalendarClient(
                [calendar_entry("me@work", "Me", primary=True, time_zone="America/New_York")]
            )
        }
        mcp, _ = _register(accounts, now=datetime(2024, 1, 15, 17, 0, tzinfo=UTC))

        result = await mcp.tools["calendar_get_current_time"]()

        assert result["current_time"] == "2024-01-15T12:00:00-05:00"
        assert result["offset"] == "-05:00"
        assert result["is_dst"] is False

    async def test_falls_back_to_utc(self):
        mcp, _ = _register(_writable_accounts())

        result = await mcp.tools["calendar_get_current_time"]()

        assert result["time_zone"] == "UTC"
        assert result["offset"] == "Z"

    async def test_invalid_time_zone_raises(self):
        mcp, _ = _register(_writable_accounts())

        with pytest.raises(ValueError, match="IANA"):
            await mcp.tools["calendar_get_current_time"](time_zone="Not/AZone")


class TestListAccountsTool:
    async def test_reports_each_account_status(self):
        accounts = _writable_accounts()
        accounts["home"].list_error = CalendarRequestError(
            status_code=401, message="Invalid Credentials", account_id="home"
        )
        mcp, _ = _register(accounts)

        result = await mcp.tools["calendar_list_accounts"]()

        work, home = result["accounts"]
        assert work["status"] == "active"
        assert work["email"] == "me@work"
        assert work["calendar_count"] == 3
        assert work["primary_calendar"] == {"id": "me@work", "name": "Me", "time_zone": None}
        assert home["status"] == "error"
        assert home["error"].startswith('Account "home": ')
        assert result["total_accounts"] == 2
        assert result["message"] == "Found 2 account(s) with 1 error(s)"

    async def test_all_healthy(self):
        mcp, _ = _register(_writable_accounts())

        result = await mcp.tools["calendar_list_accounts"](account="work")

        assert result["message"] == "Found 1 authenticated account(s)"
