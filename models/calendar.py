"""
Calendar domain types

Plain immutable values passed between the engine stages. ORM rows in
models/database.py are converted to these at the store boundary so the
expander, resolver, overlay and aggregator never touch a session.
All datetimes are timezone-aware.
"""

import enum
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import List, Optional, Tuple


class Visibility(str, enum.Enum):
    """Access tier of an event"""

    PUBLIC = "public"
    FRIENDS = "friends"
    PRIVATE = "private"
    COMMUNITY = "community"


class RsvpStatus(str, enum.Enum):
    """Attendance answer for one occurrence"""

    YES = "yes"
    NO = "no"
    MAYBE = "maybe"
    INTERESTED = "interested"


class MoonPhase(str, enum.Enum):
    """Principal lunar phases, in lunation order"""

    NEW = "New"
    FIRST_QUARTER = "First Quarter"
    FULL = "Full"
    LAST_QUARTER = "Last Quarter"

    @property
    def display_title(self) -> str:
        if self in (MoonPhase.NEW, MoonPhase.FULL):
            return f"{self.value} Moon"
        return self.value

    @property
    def slug(self) -> str:
        return {
            MoonPhase.NEW: "moon-new",
            MoonPhase.FIRST_QUARTER: "moon-first",
            MoonPhase.FULL: "moon-full",
            MoonPhase.LAST_QUARTER: "moon-last",
        }[self]


def to_utc(value: datetime) -> datetime:
    """Normalise an aware datetime to UTC; naive values are assumed UTC"""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_naive_utc(value: datetime) -> datetime:
    """UTC wall time without tzinfo, as stored in the database"""
    return to_utc(value).replace(tzinfo=None)


@dataclass(frozen=True)
class EventRecord:
    """A stored calendar event (base of a series when recurring)"""

    id: str
    title: str
    start: datetime
    end: datetime
    owner_id: str
    visibility: Visibility = Visibility.PRIVATE
    description: Optional[str] = None
    location: Optional[str] = None
    community_id: Optional[str] = None
    recurrence: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    event_kind: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    is_cancelled: bool = False
    cancellation_reason: Optional[str] = None

    @property
    def duration(self):
        return self.end - self.start

    @property
    def is_recurring(self) -> bool:
        return bool(self.recurrence and self.recurrence.strip())


@dataclass(frozen=True)
class Occurrence:
    """One concrete instance of an event inside an expansion window"""

    event: EventRecord
    start: datetime
    end: datetime

    @property
    def event_id(self) -> str:
        return self.event.id

    @property
    def key(self) -> str:
        """Stable occurrence key used by RSVPs"""
        return occurrence_key(self.event.id, self.start)

    def sort_key(self) -> Tuple[datetime, str]:
        return (self.start, self.event.id)


def occurrence_key(event_id: str, start: datetime) -> str:
    return f"{event_id}:{to_utc(start).strftime('%Y-%m-%dT%H:%M:%SZ')}"


@dataclass(frozen=True)
class ResolvedOccurrence:
    """An occurrence the viewer may see, annotated for display"""

    occurrence: Occurrence
    is_cancelled: bool = False
    cancellation_reason: Optional[str] = None

    @property
    def start(self) -> datetime:
        return self.occurrence.start

    @property
    def event_id(self) -> str:
        return self.occurrence.event_id


@dataclass(frozen=True)
class MoonEvent:
    """Synthetic all-day moon phase marker (always public)"""

    date: date
    phase: MoonPhase

    @property
    def id(self) -> str:
        return f"{self.phase.slug}-{self.date.isoformat()}"

    @property
    def title(self) -> str:
        return self.phase.display_title


@dataclass(frozen=True)
class SessionIntervalRecord:
    """One continuous presence window; ended_at is None while open"""

    id: int
    subject_id: str
    started_at: datetime
    ended_at: Optional[datetime] = None


@dataclass
class PulseSnapshot:
    """Rolling 24h presence aggregate"""

    bucket_counts: List[int]
    coverage_percent: int
    concurrent_now: int
    window_start: datetime
    window_end: datetime
    dropped_intervals: int = 0
    computed_at: Optional[datetime] = None

    def to_dict(self) -> dict:
        return {
            "bucket_counts": list(self.bucket_counts),
            "coverage_percent": self.coverage_percent,
            "concurrent_now": self.concurrent_now,
            "window_start": self.window_start.isoformat(),
            "window_end": self.window_end.isoformat(),
        }


@dataclass
class CalendarItem:
    """Flat, display-ready entry of a resolved calendar query"""

    id: str
    event_id: str
    title: str
    start: datetime
    end: datetime
    all_day: bool
    source: str  # "event" | "moon"
    visibility: Visibility
    owner_id: Optional[str] = None
    occurrence_key: Optional[str] = None
    description: Optional[str] = None
    location: Optional[str] = None
    event_kind: Optional[str] = None
    community_id: Optional[str] = None
    is_recurring: bool = False
    is_cancelled: bool = False
    cancellation_reason: Optional[str] = None
    moon_phase: Optional[str] = None

    def sort_key(self) -> Tuple[datetime, str]:
        return (self.start, self.event_id)


@dataclass
class CalendarQueryResult:
    """Outcome of a viewer window query

    undetermined_event_ids lists events hidden because visibility could not
    be confirmed, so callers can tell "nothing visible" apart from
    "could not determine".
    """

    items: List[CalendarItem] = field(default_factory=list)
    rule_errors: List[dict] = field(default_factory=list)
    undetermined_event_ids: List[str] = field(default_factory=list)
