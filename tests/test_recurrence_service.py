"""Recurrence expansion tests"""

from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo

import pytest

from conftest import make_event, utc
from services.recurrence_service import (
    RecurrenceRule,
    expand,
    parse_rule,
)
from utils.exceptions import InvalidRecurrenceRule


JANUARY = (utc(2025, 1, 1), utc(2025, 2, 1))


# ============ Non-recurring ============


def test_single_event_inside_window():
    result = expand(make_event(), *JANUARY)
    assert result.ok
    assert len(result.occurrences) == 1
    assert result.occurrences[0].start == utc(2025, 1, 6, 18, 0)


def test_single_event_outside_window():
    event = make_event(start=utc(2025, 3, 1, 9), end=utc(2025, 3, 1, 10))
    assert expand(event, *JANUARY).occurrences == []


def test_single_event_ending_at_window_start_is_excluded():
    event = make_event(start=utc(2024, 12, 31, 23), end=utc(2025, 1, 1))
    assert expand(event, *JANUARY).occurrences == []


def test_single_event_spanning_window_start_is_included():
    event = make_event(start=utc(2024, 12, 31, 23), end=utc(2025, 1, 1, 1))
    assert len(expand(event, *JANUARY).occurrences) == 1


def test_zero_length_event_is_a_point():
    at_start = make_event(start=utc(2025, 1, 1), end=utc(2025, 1, 1))
    at_end = make_event(start=utc(2025, 2, 1), end=utc(2025, 2, 1))
    assert len(expand(at_start, *JANUARY).occurrences) == 1
    assert expand(at_end, *JANUARY).occurrences == []


def test_empty_window_yields_nothing():
    assert expand(make_event(), utc(2025, 1, 6), utc(2025, 1, 6)).occurrences == []


# ============ Parsing ============


def test_parse_full_rule():
    rule = parse_rule("RRULE:FREQ=WEEKLY;INTERVAL=2;COUNT=10;BYDAY=MO,WE;WKST=MO")
    assert rule == RecurrenceRule(
        freq="WEEKLY", interval=2, count=10, by_weekday=((0, None), (2, None))
    )


def test_parse_shorthand_pattern():
    assert parse_rule("weekly").freq == "WEEKLY"
    assert parse_rule("Daily").freq == "DAILY"


def test_parse_until_forms():
    assert parse_rule("FREQ=DAILY;UNTIL=20250110T000000Z").until == utc(2025, 1, 10)
    assert parse_rule("FREQ=DAILY;UNTIL=20250110").until == utc(2025, 1, 10, 23, 59, 59)
    floating = parse_rule("FREQ=DAILY;UNTIL=20250110T120000").until
    assert floating.tzinfo is None


@pytest.mark.parametrize(
    "text",
    [
        "",
        "FREQ=HOURLY",
        "FREQ=WEEKLY;BYMONTH=3",
        "FREQ=WEEKLY;COUNT=0",
        "FREQ=WEEKLY;INTERVAL=-1",
        "FREQ=WEEKLY;COUNT=3;UNTIL=20250101",
        "FREQ=WEEKLY;BYDAY=XX",
        "FREQ=WEEKLY;BYDAY=1MO",
        "FREQ=MONTHLY;BYDAY=6MO",
        "FREQ=WEEKLY;UNTIL=tomorrow",
        "INTERVAL=2",
        "FREQ=DAILY;FREQ=WEEKLY",
        "not a rule",
    ],
)
def test_invalid_rules_are_rejected(text):
    with pytest.raises(InvalidRecurrenceRule):
        parse_rule(text, event_id="evt_bad")


# ============ Expansion ============


def test_weekly_count_five():
    event = make_event(recurrence="FREQ=WEEKLY;COUNT=5")
    result = expand(event, utc(2025, 1, 1), utc(2025, 3, 1))
    starts = [o.start for o in result.occurrences]
    assert starts == [utc(2025, 1, 6, 18) + timedelta(weeks=i) for i in range(5)]
    assert all(o.end - o.start == timedelta(hours=1) for o in result.occurrences)


def test_weekly_count_in_january_only_has_four_mondays():
    event = make_event(recurrence="FREQ=WEEKLY;COUNT=5")
    assert len(expand(event, *JANUARY).occurrences) == 4


def test_count_counts_instances_before_the_window():
    event = make_event(recurrence="FREQ=DAILY;COUNT=10")
    result = expand(event, utc(2025, 1, 14), utc(2025, 2, 1))
    # instances run Jan 6..15, only the 14th and 15th fall inside
    assert [o.start.day for o in result.occurrences] == [14, 15]


@pytest.mark.parametrize(
    "rule,window_end",
    [
        ("FREQ=DAILY;COUNT=3", utc(2026, 1, 1)),
        ("FREQ=WEEKLY;COUNT=7;BYDAY=MO,FR", utc(2026, 1, 1)),
        ("FREQ=MONTHLY;COUNT=4;BYDAY=-1FR", utc(2027, 1, 1)),
    ],
)
def test_count_is_never_exceeded(rule, window_end):
    event = make_event(recurrence=rule)
    count = parse_rule(rule).count
    assert len(expand(event, utc(2024, 1, 1), window_end).occurrences) <= count


def test_until_is_inclusive():
    event = make_event(recurrence="FREQ=DAILY;UNTIL=20250108T180000Z")
    result = expand(event, *JANUARY)
    assert [o.start.day for o in result.occurrences] == [6, 7, 8]


def test_interval_skips_periods():
    event = make_event(recurrence="FREQ=DAILY;INTERVAL=10")
    result = expand(event, *JANUARY)
    assert [o.start.day for o in result.occurrences] == [6, 16, 26]


def test_weekly_byday():
    event = make_event(recurrence="FREQ=WEEKLY;BYDAY=MO,WE;COUNT=4")
    result = expand(event, *JANUARY)
    assert [o.start.day for o in result.occurrences] == [6, 8, 13, 15]


def test_weekly_byday_ignores_days_before_series_start():
    # series starts on a Wednesday; the Monday of that week is not an instance
    event = make_event(
        start=utc(2025, 1, 8, 9), end=utc(2025, 1, 8, 10),
        recurrence="FREQ=WEEKLY;BYDAY=MO,WE",
    )
    result = expand(event, utc(2025, 1, 1), utc(2025, 1, 14))
    assert [o.start.day for o in result.occurrences] == [8, 13]


def test_monthly_skips_missing_days():
    event = make_event(
        start=utc(2025, 1, 31, 9), end=utc(2025, 1, 31, 10),
        recurrence="FREQ=MONTHLY;COUNT=4",
    )
    result = expand(event, utc(2025, 1, 1), utc(2026, 1, 1))
    assert [(o.start.month, o.start.day) for o in result.occurrences] == [
        (1, 31), (3, 31), (5, 31), (7, 31)
    ]


def test_monthly_last_friday():
    event = make_event(
        start=utc(2025, 1, 31, 19), end=utc(2025, 1, 31, 21),
        recurrence="FREQ=MONTHLY;BYDAY=-1FR",
    )
    result = expand(event, utc(2025, 1, 1), utc(2025, 4, 1))
    assert [o.start.date().isoformat() for o in result.occurrences] == [
        "2025-01-31", "2025-02-28", "2025-03-28"
    ]


def test_monthly_first_monday():
    event = make_event(
        start=utc(2025, 1, 6, 18), end=utc(2025, 1, 6, 19),
        recurrence="FREQ=MONTHLY;BYDAY=1MO",
    )
    result = expand(event, utc(2025, 1, 1), utc(2025, 4, 1))
    assert [o.start.day for o in result.occurrences] == [6, 3, 3]


def test_yearly_leap_day_skips_common_years():
    event = make_event(
        start=utc(2024, 2, 29, 8), end=utc(2024, 2, 29, 9),
        recurrence="FREQ=YEARLY",
    )
    result = expand(event, utc(2024, 1, 1), utc(2033, 1, 1))
    assert [o.start.year for o in result.occurrences] == [2024, 2028, 2032]


def test_far_window_fast_forwards():
    event = make_event(recurrence="FREQ=DAILY")
    result = expand(event, utc(2045, 6, 1), utc(2045, 6, 4), max_iterations=50)
    assert [o.start.day for o in result.occurrences] == [1, 2, 3]


def test_iteration_ceiling_stops_runaway_expansion():
    event = make_event(recurrence="FREQ=MONTHLY;BYDAY=MO")
    result = expand(event, utc(2025, 1, 1), utc(2125, 1, 1), max_iterations=20)
    assert len(result.occurrences) == 20


def test_wall_clock_is_kept_across_dst():
    berlin = ZoneInfo("Europe/Berlin")
    event = make_event(
        start=datetime(2025, 3, 24, 9, tzinfo=berlin),
        end=datetime(2025, 3, 24, 10, tzinfo=berlin),
        recurrence="FREQ=WEEKLY;COUNT=2",
    )
    result = expand(event, utc(2025, 3, 1), utc(2025, 5, 1))
    assert [o.start.hour for o in result.occurrences] == [9, 9]
    assert result.occurrences[0].start.astimezone(timezone.utc).hour == 8
    assert result.occurrences[1].start.astimezone(timezone.utc).hour == 7


def test_occurrence_keys_are_unique():
    event = make_event(recurrence="FREQ=WEEKLY;BYDAY=MO,MO,TU")
    result = expand(event, *JANUARY)
    keys = [o.key for o in result.occurrences]
    assert len(keys) == len(set(keys))
    assert keys[0] == "evt_test:2025-01-06T18:00:00Z"


def test_expand_is_idempotent():
    event = make_event(recurrence="FREQ=WEEKLY;BYDAY=MO,TH;UNTIL=20250301")
    first = expand(event, *JANUARY)
    second = expand(event, *JANUARY)
    assert first.occurrences == second.occurrences


# ============ Malformed rules ============


def test_malformed_rule_is_reported_not_raised():
    event = make_event(id="evt_broken", recurrence="FREQ=FORTNIGHTLY")
    result = expand(event, *JANUARY)
    assert result.occurrences == []
    assert isinstance(result.error, InvalidRecurrenceRule)
    assert result.error.event_id == "evt_broken"



# ============ Iteration ceiling ============


def test_daily_byday_that_never_matches_stops_immediately():
    # every 7 days from a Monday only ever lands on Mondays
    event = make_event(start=utc(2025, 1, 6, 18), end=utc(2025, 1, 6, 19),
                       recurrence="FREQ=DAILY;INTERVAL=7;BYDAY=TU")
    result = expand(event, utc(2025, 1, 1), utc(2026, 1, 1), max_iterations=1000)
    assert result.ok
    assert result.occurrences == []


def test_filtered_daily_steps_count_against_the_ceiling():
    # Mon (filtered), Tue (kept), Wed (filtered) uses up three iterations
    event = make_event(start=utc(2025, 1, 6, 18), end=utc(2025, 1, 6, 19),
                       recurrence="FREQ=DAILY;BYDAY=TU")
    result = expand(event, utc(2025, 1, 1), utc(2025, 3, 1), max_iterations=3)
    assert [o.start for o in result.occurrences] == [utc(2025, 1, 7, 18)]


def test_skipped_months_count_against_the_ceiling():
    event = make_event(start=utc(2025, 1, 31, 9), end=utc(2025, 1, 31, 10),
                       recurrence="FREQ=MONTHLY")
    result = expand(event, utc(2025, 1, 1), utc(2026, 1, 1), max_iterations=3)
    # Jan 31, February has no 31st, Mar 31
    assert [o.start.month for o in result.occurrences] == [1, 3]
