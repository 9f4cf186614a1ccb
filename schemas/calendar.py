"""
Request / response schemas for the calendar and presence APIs

Timestamps are AwareDatetime: values without a UTC offset are rejected
with 422 before reaching the engine.
"""

from datetime import date
from typing import List, Optional

from pydantic import AwareDatetime, BaseModel, ConfigDict, Field

from models.calendar import RsvpStatus, Visibility


# ============ Events ============


class EventUpsertRequest(BaseModel):
    """Create an event, or update one when id is given"""

    id: Optional[str] = Field(None, max_length=64, pattern=r"^[A-Za-z0-9_\-]+$")
    title: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = None
    location: Optional[str] = Field(None, max_length=300)
    start: AwareDatetime
    end: AwareDatetime
    visibility: Visibility = Visibility.PRIVATE
    community_id: Optional[str] = Field(None, max_length=64)
    recurrence: Optional[str] = Field(None, max_length=500, description="RRULE text, e.g. FREQ=WEEKLY;COUNT=5")
    latitude: Optional[float] = Field(None, ge=-90, le=90)
    longitude: Optional[float] = Field(None, ge=-180, le=180)
    event_kind: Optional[str] = Field(None, max_length=50)

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "title": "Full moon circle",
                "start": "2025-01-06T18:00:00Z",
                "end": "2025-01-06T19:00:00Z",
                "visibility": "friends",
                "recurrence": "FREQ=WEEKLY;COUNT=5",
            }
        }
    )


class CancelRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=500)


class EventResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    title: str
    description: Optional[str] = None
    location: Optional[str] = None
    start: AwareDatetime
    end: AwareDatetime
    owner_id: str
    visibility: Visibility
    community_id: Optional[str] = None
    recurrence: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    event_kind: Optional[str] = None
    is_cancelled: bool = False
    cancellation_reason: Optional[str] = None


class CalendarItemResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    event_id: str
    title: str
    start: AwareDatetime
    end: AwareDatetime
    all_day: bool
    source: str
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


class RuleErrorResponse(BaseModel):
    event_id: str
    rule: Optional[str] = None
    reason: str


class CalendarQueryResponse(BaseModel):
    items: List[CalendarItemResponse]
    rule_errors: List[RuleErrorResponse] = []
    undetermined_event_ids: List[str] = []


class MoonEventResponse(BaseModel):
    id: str
    date: date
    phase: str
    title: str


# ============ RSVP ============


class RsvpRequest(BaseModel):
    occurrence_key: str = Field(..., min_length=3, max_length=120)
    status: RsvpStatus
    pinned: Optional[bool] = None
    shareable: Optional[bool] = None


class RsvpResponse(BaseModel):
    event_id: str
    occurrence_key: str
    user_id: str
    status: RsvpStatus
    pinned: bool
    shareable: bool
    updated_at: Optional[str] = None


class EventStatsResponse(BaseModel):
    hosting: int
    attending: int
    interested: int


# ============ Presence ============


class SessionOpenRequest(BaseModel):
    started_at: Optional[AwareDatetime] = None


class SessionCloseRequest(BaseModel):
    ended_at: Optional[AwareDatetime] = None


class SessionResponse(BaseModel):
    id: int
    closed: Optional[bool] = None


class PulseResponse(BaseModel):
    bucket_counts: List[int] = Field(..., min_length=96, max_length=96)
    coverage_percent: int = Field(..., ge=0, le=100)
    concurrent_now: int
    window_start: AwareDatetime
    window_end: AwareDatetime
