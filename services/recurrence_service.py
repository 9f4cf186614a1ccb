"""
Recurrence expansion service

Turns a stored event plus its RRULE-style rule into the concrete
occurrences that intersect a requested window. Expansion is read-time
only; instances are never written back as rows.
"""

import re
from calendar import monthrange
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone, MAXYEAR
from typing import Iterator, List, Optional, Tuple

from config.logging_config import get_module_logger
from models.calendar import EventRecord, Occurrence
from utils.exceptions import InvalidRecurrenceRule

logger = get_module_logger(__name__)

DEFAULT_MAX_ITERATIONS = 100_000

WEEKDAY_CODES = {"MO": 0, "TU": 1, "WE": 2, "TH": 3, "FR": 4, "SA": 5, "SU": 6}
FREQUENCIES = ("DAILY", "WEEKLY", "MONTHLY", "YEARLY")

# Legacy patterns stored by older clients in place of a full rule
SHORTHAND_PATTERNS = {
    "daily": "FREQ=DAILY",
    "weekly": "FREQ=WEEKLY",
    "monthly": "FREQ=MONTHLY",
    "yearly": "FREQ=YEARLY",
}

SUPPORTED_KEYS = {"FREQ", "INTERVAL", "COUNT", "UNTIL", "BYDAY", "WKST"}

_BYDAY_RE = re.compile(r"^([+-]?\d{1,2})?(MO|TU|WE|TH|FR|SA|SU)$")


@dataclass(frozen=True)
class RecurrenceRule:
    """Parsed repeating pattern

    by_weekday holds (weekday, ordinal) pairs; ordinal is None for plain
    weekdays and +/-n for "nth weekday of the month".
    until may be naive, meaning wall time of the series start.
    """

    freq: str
    interval: int = 1
    count: Optional[int] = None
    until: Optional[datetime] = None
    by_weekday: Tuple[Tuple[int, Optional[int]], ...] = ()

    @property
    def weekdays(self) -> List[int]:
        return sorted({wd for wd, _ in self.by_weekday})

    def until_for(self, start: datetime) -> Optional[datetime]:
        if self.until is None or self.until.tzinfo is not None:
            return self.until
        return self.until.replace(tzinfo=start.tzinfo or timezone.utc)


@dataclass
class ExpansionResult:
    """Occurrences of one event plus the rule error, if any"""

    occurrences: List[Occurrence] = field(default_factory=list)
    error: Optional[InvalidRecurrenceRule] = None

    @property
    def ok(self) -> bool:
        return self.error is None


# ============ Parsing ============


def _parse_until(raw: str, text: str, event_id: Optional[str]) -> datetime:
    value = raw.strip().upper()
    try:
        if len(value) == 8 and value.isdigit():
            # DATE form: the whole day is included
            day = datetime.strptime(value, "%Y%m%d")
            return day.replace(hour=23, minute=59, second=59, tzinfo=timezone.utc)
        if value.endswith("Z"):
            parsed = datetime.strptime(value[:-1], "%Y%m%dT%H%M%S")
            return parsed.replace(tzinfo=timezone.utc)
        return datetime.strptime(value, "%Y%m%dT%H%M%S")
    except ValueError:
        raise InvalidRecurrenceRule(text, f"bad UNTIL value {raw!r}", event_id)


def _parse_positive_int(key: str, raw: str, text: str, event_id: Optional[str]) -> int:
    try:
        number = int(raw)
    except ValueError:
        raise InvalidRecurrenceRule(text, f"{key} must be an integer, got {raw!r}", event_id)
    if number < 1:
        raise InvalidRecurrenceRule(text, f"{key} must be positive", event_id)
    return number


def parse_rule(text: Optional[str], event_id: Optional[str] = None) -> RecurrenceRule:
    """Parse rule text into a RecurrenceRule

    Accepts "FREQ=WEEKLY;COUNT=5", an "RRULE:" prefixed line, or one of the
    legacy shorthand words.

    Raises:
        InvalidRecurrenceRule: on any unsupported or malformed component
    """
    if text is None or not text.strip():
        raise InvalidRecurrenceRule(text, "empty rule", event_id)

    normalized = text.strip()
    normalized = SHORTHAND_PATTERNS.get(normalized.lower(), normalized)
    if normalized.upper().startswith("RRULE:"):
        normalized = normalized[len("RRULE:"):]

    components = {}
    for part in normalized.split(";"):
        if not part.strip():
            continue
        if "=" not in part:
            raise InvalidRecurrenceRule(text, f"component {part!r} has no value", event_id)
        key, value = part.split("=", 1)
        key = key.strip().upper()
        if key in components:
            raise InvalidRecurrenceRule(text, f"duplicate {key}", event_id)
        if key not in SUPPORTED_KEYS:
            raise InvalidRecurrenceRule(text, f"unsupported component {key}", event_id)
        components[key] = value.strip()

    freq = components.get("FREQ", "").upper()
    if freq not in FREQUENCIES:
        raise InvalidRecurrenceRule(text, f"unsupported FREQ {freq or None!r}", event_id)

    interval = 1
    if "INTERVAL" in components:
        interval = _parse_positive_int("INTERVAL", components["INTERVAL"], text, event_id)

    count = None
    if "COUNT" in components:
        count = _parse_positive_int("COUNT", components["COUNT"], text, event_id)

    until = None
    if "UNTIL" in components:
        if count is not None:
            raise InvalidRecurrenceRule(text, "COUNT and UNTIL are mutually exclusive", event_id)
        until = _parse_until(components["UNTIL"], text, event_id)

    if "WKST" in components and components["WKST"].upper() not in WEEKDAY_CODES:
        raise InvalidRecurrenceRule(text, f"bad WKST {components['WKST']!r}", event_id)

    by_weekday = []
    if "BYDAY" in components:
        for token in components["BYDAY"].split(","):
            match = _BYDAY_RE.match(token.strip().upper())
            if not match:
                raise InvalidRecurrenceRule(text, f"bad BYDAY token {token!r}", event_id)
            ordinal = int(match.group(1)) if match.group(1) else None
            if ordinal is not None:
                if freq != "MONTHLY":
                    raise InvalidRecurrenceRule(
                        text, "ordinal BYDAY is only supported with FREQ=MONTHLY", event_id
                    )
                if ordinal == 0 or abs(ordinal) > 5:
                    raise InvalidRecurrenceRule(text, f"bad BYDAY ordinal {ordinal}", event_id)
            by_weekday.append((WEEKDAY_CODES[match.group(2)], ordinal))
        if not by_weekday:
            raise InvalidRecurrenceRule(text, "BYDAY is empty", event_id)
        if freq == "YEARLY":
            raise InvalidRecurrenceRule(text, "BYDAY is not supported with FREQ=YEARLY", event_id)

    return RecurrenceRule(
        freq=freq,
        interval=interval,
        count=count,
        until=until,
        by_weekday=tuple(by_weekday),
    )


# ============ Candidate generation ============


def _add_months(year: int, month: int, months: int) -> Tuple[int, int]:
    total = (year * 12 + month - 1) + months
    return total // 12, total % 12 + 1


def _monthly_days(year: int, month: int, by_weekday) -> List[int]:
    """Days of the month matching plain or ordinal weekday tokens"""
    days_in_month = monthrange(year, month)[1]
    first_weekday = monthrange(year, month)[0]
    matches = set()
    for weekday, ordinal in by_weekday:
        first = 1 + (weekday - first_weekday) % 7
        candidates = list(range(first, days_in_month + 1, 7))
        if ordinal is None:
            matches.update(candidates)
        elif ordinal > 0 and ordinal <= len(candidates):
            matches.add(candidates[ordinal - 1])
        elif ordinal < 0 and -ordinal <= len(candidates):
            matches.add(candidates[ordinal])
    return sorted(matches)


def _candidates(
    rule: RecurrenceRule, start: datetime, skip: int = 0
) -> Iterator[Optional[datetime]]:
    """Yield candidate instance starts (>= start) in ascending order

    None is yielded for a step that produced no instance (a filtered
    weekday, a month without the start day) so the caller can still count
    it against the iteration ceiling. skip fast-forwards over whole periods
    that are known to end before the window.
    """
    weekdays = rule.weekdays
    try:
        if rule.freq == "DAILY":
            if weekdays:
                reachable = {(start.weekday() + rule.interval * n) % 7 for n in range(7)}
                if reachable.isdisjoint(weekdays):
                    logger.debug("Rule %s never lands on its BYDAY weekdays", rule)
                    return
            step = timedelta(days=rule.interval)
            k = skip
            while True:
                candidate = start + step * k
                k += 1
                if weekdays and candidate.weekday() not in weekdays:
                    yield None
                    continue
                yield candidate

        elif rule.freq == "WEEKLY":
            step = timedelta(weeks=rule.interval)
            if not weekdays:
                k = skip
                while True:
                    yield start + step * k
                    k += 1
            week_anchor = start - timedelta(days=start.weekday())
            k = skip
            while True:
                week_start = week_anchor + step * k
                k += 1
                for weekday in weekdays:
                    candidate = week_start + timedelta(days=weekday)
                    if candidate >= start:
                        yield candidate

        elif rule.freq == "MONTHLY":
            k = 0
            while True:
                year, month = _add_months(start.year, start.month, rule.interval * k)
                k += 1
                if year > MAXYEAR:
                    return
                if not rule.by_weekday:
                    try:
                        yield start.replace(year=year, month=month)
                    except ValueError:
                        # e.g. the 31st in a 30 day month
                        yield None
                    continue
                produced = False
                for day in _monthly_days(year, month, rule.by_weekday):
                    candidate = start.replace(year=year, month=month, day=day)
                    if candidate >= start:
                        produced = True
                        yield candidate
                if not produced:
                    # e.g. a fifth Friday in a month that has four
                    yield None

        elif rule.freq == "YEARLY":
            k = 0
            while True:
                year = start.year + rule.interval * k
                k += 1
                if year > MAXYEAR:
                    return
                try:
                    yield start.replace(year=year)
                except ValueError:
                    # Feb 29 outside leap years
                    yield None
    except OverflowError:
        return


def _fast_forward(
    rule: RecurrenceRule, start: datetime, duration: timedelta, window_start: datetime
) -> Tuple[int, int]:
    """Return (periods to skip, instances those periods would have emitted)"""
    if rule.freq not in ("DAILY", "WEEKLY"):
        return 0, 0
    period = timedelta(days=rule.interval) if rule.freq == "DAILY" else timedelta(weeks=rule.interval)
    anchor = start
    if rule.freq == "WEEKLY" and rule.by_weekday:
        anchor = start - timedelta(days=start.weekday())
    gap = window_start - anchor - duration
    if gap <= timedelta(0):
        return 0, 0
    # keep one period of slack so nothing touching the window is skipped
    periods = max(0, gap // period - 1)
    if rule.by_weekday:
        # emitted count per period is not constant, only skip when unbounded
        if rule.count is not None:
            return 0, 0
        return periods, 0
    return periods, periods


# ============ Expansion ============


def _intersects(start: datetime, end: datetime, window_start: datetime, window_end: datetime) -> bool:
    """Half-open overlap; an instant event counts when it falls inside the window"""
    if start == end:
        return window_start <= start < window_end
    return start < window_end and end > window_start


def expand(
    event: EventRecord,
    window_start: datetime,
    window_end: datetime,
    max_iterations: int = DEFAULT_MAX_ITERATIONS,
) -> ExpansionResult:
    """Expand one event into the occurrences intersecting [window_start, window_end)

    Never raises for a bad rule: the error is returned with zero
    occurrences so a single malformed event cannot fail a whole query.

    Args:
        event: base event
        window_start: inclusive window start (aware)
        window_end: exclusive window end (aware)
        max_iterations: ceiling on generated candidates

    Returns:
        ExpansionResult with occurrences ascending by start
    """
    if window_end <= window_start:
        return ExpansionResult()

    if not event.is_recurring:
        if _intersects(event.start, event.end, window_start, window_end):
            return ExpansionResult([Occurrence(event, event.start, event.end)])
        return ExpansionResult()

    try:
        rule = parse_rule(event.recurrence, event.id)
    except InvalidRecurrenceRule as e:
        logger.warning("Skipping event %s: %s (rule=%r)", event.id, e.reason, event.recurrence)
        return ExpansionResult(error=e)

    duration = event.duration
    until = rule.until_for(event.start)
    skip, emitted = _fast_forward(rule, event.start, duration, window_start)

    occurrences: List[Occurrence] = []
    seen = set()
    iterations = 0
    for candidate in _candidates(rule, event.start, skip):
        iterations += 1
        if iterations > max_iterations:
            logger.error(
                "Expansion of event %s stopped after %d candidates (rule=%r)",
                event.id, max_iterations, event.recurrence,
            )
            break
        if candidate is None:
            continue
        if until is not None and candidate > until:
            break
        if rule.count is not None and emitted >= rule.count:
            break
        if candidate >= window_end:
            break
        emitted += 1
        if candidate in seen:
            continue
        seen.add(candidate)
        instance_end = candidate + duration
        if _intersects(candidate, instance_end, window_start, window_end):
            occurrences.append(Occurrence(event, candidate, instance_end))

    return ExpansionResult(occurrences)

