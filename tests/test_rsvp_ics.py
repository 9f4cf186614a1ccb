"""RSVP and ICS export tests"""

import pytest

from conftest import make_event, utc
from models.calendar import CalendarItem, RsvpStatus, Visibility
from services.ics_service import escape_ics, export_ics, fold_ics_line
from services.rsvp_service import RsvpService, split_occurrence_key
from services.visibility_service import VisibilityResolver
from utils.exceptions import EventNotFound, ValidationError

KEY = "evt_1:2025-01-06T18:00:00Z"


@pytest.fixture
def rsvp_service(session_factory, event_store, static_oracle):
    return RsvpService(session_factory, event_store, VisibilityResolver(static_oracle))


async def test_rsvp_last_write_wins(rsvp_service, event_store):
    await event_store.upsert(make_event(id="evt_1"))
    await rsvp_service.upsert("bob", KEY, RsvpStatus.MAYBE)
    await rsvp_service.upsert("bob", KEY, RsvpStatus.YES, pinned=True)

    rsvps = await rsvp_service.list_for_occurrence(KEY, "alice")
    assert len(rsvps) == 1
    assert rsvps[0]["status"] == "yes"
    assert rsvps[0]["pinned"] is True


async def test_private_rsvps_are_not_listed(rsvp_service, event_store):
    await event_store.upsert(make_event(id="evt_1"))
    await rsvp_service.upsert("bob", KEY, RsvpStatus.YES, shareable=False)
    await rsvp_service.upsert("carol", KEY, RsvpStatus.NO)
    assert [r["user_id"] for r in await rsvp_service.list_for_occurrence(KEY, "alice")] == ["carol"]


async def test_rsvp_for_unknown_event(rsvp_service):
    with pytest.raises(EventNotFound):
        await rsvp_service.upsert("bob", "evt_missing:2025-01-06T18:00:00Z", RsvpStatus.YES)


async def test_malformed_occurrence_key(rsvp_service):
    with pytest.raises(ValidationError):
        await rsvp_service.upsert("bob", "no-separator", RsvpStatus.YES)


async def test_stats(rsvp_service, event_store):
    await event_store.upsert(make_event(id="evt_1", owner_id="alice"))
    await event_store.upsert(make_event(id="evt_2", owner_id="alice"))
    await event_store.upsert(make_event(id="evt_3", owner_id="alice"))
    await event_store.set_cancelled("evt_3")
    await rsvp_service.upsert("alice", "evt_1:2025-01-06T18:00:00Z", RsvpStatus.YES)
    await rsvp_service.upsert("alice", "evt_2:2025-01-06T18:00:00Z", RsvpStatus.INTERESTED)

    assert await rsvp_service.stats("alice") == {"hosting": 2, "attending": 1, "interested": 1}
    assert await rsvp_service.stats("nobody") == {"hosting": 0, "attending": 0, "interested": 0}


async def test_hidden_event_looks_missing(rsvp_service, event_store):
    await event_store.upsert(make_event(id="evt_1", visibility=Visibility.PRIVATE))
    await rsvp_service.upsert("alice", KEY, RsvpStatus.YES)

    with pytest.raises(EventNotFound):
        await rsvp_service.upsert("mallory", KEY, RsvpStatus.YES)
    with pytest.raises(EventNotFound):
        await rsvp_service.list_for_occurrence(KEY, "mallory")
    assert [r["user_id"] for r in await rsvp_service.list_for_occurrence(KEY, "alice")] == ["alice"]


async def test_friends_event_accepts_friends_only(rsvp_service, event_store):
    await event_store.upsert(make_event(id="evt_1", visibility=Visibility.FRIENDS))
    await rsvp_service.upsert("bob", KEY, RsvpStatus.MAYBE)
    with pytest.raises(EventNotFound):
        await rsvp_service.upsert("carol", KEY, RsvpStatus.MAYBE)


async def test_key_must_name_a_real_instance(rsvp_service, event_store):
    await event_store.upsert(make_event(id="evt_1", recurrence="FREQ=WEEKLY;COUNT=5"))
    await rsvp_service.upsert("bob", "evt_1:2025-02-03T18:00:00Z", RsvpStatus.YES)

    for key in (
        "evt_1:2025-01-07T18:00:00Z",  # a Tuesday
        "evt_1:2025-02-10T18:00:00Z",  # past COUNT
        "evt_1:2025-01-13T18:30:00Z",
    ):
        with pytest.raises(ValidationError):
            await rsvp_service.upsert("bob", key, RsvpStatus.YES)


def test_split_occurrence_key():
    assert split_occurrence_key("evt_1:2025-01-06T18:00:00Z") == ("evt_1", utc(2025, 1, 6, 18))
    with pytest.raises(ValidationError):
        split_occurrence_key("evt_1:yesterday")


def test_escape_ics():
    assert escape_ics("a,b;c\\d\ne") == "a\\,b\\;c\\\\d\\ne"


def test_export_ics_document():
    items = [
        CalendarItem(
            id="evt_1:2025-01-06T18:00:00Z",
            event_id="evt_1",
            title="Sit, breathe",
            start=utc(2025, 1, 6, 18),
            end=utc(2025, 1, 6, 19),
            all_day=False,
            source="event",
            visibility=Visibility.PUBLIC,
            is_recurring=True,
            is_cancelled=True,
            location="Park",
        ),
        CalendarItem(
            id="moon-full-2025-01-13",
            event_id="moon-full-2025-01-13",
            title="Full Moon",
            start=utc(2025, 1, 13),
            end=utc(2025, 1, 14),
            all_day=True,
            source="moon",
            visibility=Visibility.PUBLIC,
        ),
    ]
    text = export_ics(items, now=utc(2025, 1, 1))
    lines = text.split("\r\n")

    assert lines[0] == "BEGIN:VCALENDAR"
    assert "PRODID:-//MyZenTribe//Calendar//EN" in lines
    assert "UID:evt_1-20250106T180000Z@myzentribe.com" in lines
    assert "UID:moon-full-2025-01-13@myzentribe.com" in lines
    assert "DTSTART:20250106T180000Z" in lines
    assert not any(line.startswith("RECURRENCE-ID") for line in lines)
    assert "SUMMARY:Sit\\, breathe" in lines
    assert "STATUS:CANCELLED" in lines
    assert "DTSTART;VALUE=DATE:20250113" in lines
    assert lines.count("BEGIN:VEVENT") == 2
    assert text.endswith("END:VCALENDAR\r\n")


def test_long_lines_are_folded():
    assert fold_ics_line("SUMMARY:short") == "SUMMARY:short"

    folded = fold_ics_line("DESCRIPTION:" + "x" * 200)
    physical = folded.split("\r\n")
    assert len(physical) == 3
    assert all(len(line.encode("utf-8")) <= 75 for line in physical)
    assert all(line.startswith(" ") for line in physical[1:])
    assert "".join(line[1:] if i else line for i, line in enumerate(physical)) == "DESCRIPTION:" + "x" * 200


def test_folding_keeps_multibyte_characters_whole():
    line = "SUMMARY:" + "月" * 40
    physical = fold_ics_line(line).split("\r\n")
    assert all(len(part.encode("utf-8")) <= 75 for part in physical)
    assert "".join(part.lstrip(" ") for part in physical) == line


def test_export_folds_long_descriptions():
    item = CalendarItem(
        id="evt_2",
        event_id="evt_2",
        title="Retreat",
        start=utc(2025, 1, 6, 18),
        end=utc(2025, 1, 6, 19),
        all_day=False,
        source="event",
        visibility=Visibility.PUBLIC,
        description="Bring a mat " * 20,
    )
    text = export_ics([item], now=utc(2025, 1, 1))
    assert all(len(line.encode("utf-8")) <= 75 for line in text.split("\r\n"))
    assert "\r\n " in text
