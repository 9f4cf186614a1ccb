"""
Calendar API routes
Window queries, event writes, moon overlay, ICS export and RSVPs
"""

from fastapi import APIRouter, Depends, HTTPException, Path, Query, Response
from pydantic import AwareDatetime
from typing import List, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from api.dependencies.auth import (
    get_current_viewer,
    get_event_store,
    get_moon_cache,
    get_optional_viewer,
    get_query_service,
    get_rsvp_service,
)
from config.settings import fastapi_settings
from models.calendar import EventRecord
from schemas.calendar import (
    CalendarItemResponse,
    CalendarQueryResponse,
    CancelRequest,
    EventResponse,
    EventStatsResponse,
    EventUpsertRequest,
    MoonEventResponse,
    RsvpRequest,
    RsvpResponse,
)
from services.ics_service import export_ics

router = APIRouter()


@router.get("/events", response_model=CalendarQueryResponse)
async def list_events(
    start: AwareDatetime = Query(..., description="Window start (inclusive)"),
    end: AwareDatetime = Query(..., description="Window end (exclusive)"),
    owner: Optional[List[str]] = Query(None, description="Restrict to these owners"),
    include_moon: bool = Query(True),
    viewer_id: Optional[str] = Depends(get_optional_viewer),
    query_service=Depends(get_query_service),
):
    """
    Occurrences visible to the caller in [start, end)

    - anonymous callers only see public events
    - **rule_errors** lists events skipped because of a malformed rule
    - **undetermined_event_ids** lists events hidden because a relationship
      check failed or timed out
    """
    result = await query_service.query(
        viewer_id, start, end, owner_scope=owner, include_moon=include_moon
    )
    return CalendarQueryResponse(
        items=[CalendarItemResponse.model_validate(item) for item in result.items],
        rule_errors=result.rule_errors,
        undetermined_event_ids=result.undetermined_event_ids,
    )


@router.post("/events", response_model=EventResponse)
async def upsert_event(
    request: EventUpsertRequest,
    viewer_id: str = Depends(get_current_viewer),
    store=Depends(get_event_store),
):
    """Create an event owned by the caller, or update one of theirs"""
    record = EventRecord(
        id=request.id or "",
        title=request.title,
        start=request.start,
        end=request.end,
        owner_id=viewer_id,
        visibility=request.visibility,
        description=request.description,
        location=request.location,
        community_id=request.community_id,
        recurrence=request.recurrence,
        latitude=request.latitude,
        longitude=request.longitude,
        event_kind=request.event_kind,
    )
    stored = await store.upsert(record)
    return EventResponse.model_validate(stored)


@router.post("/events/{event_id}/cancel", response_model=EventResponse)
async def cancel_event(
    event_id: str,
    request: CancelRequest,
    viewer_id: str = Depends(get_current_viewer),
    store=Depends(get_event_store),
):
    """Cancel the whole series (owner only); the event stays visible, flagged"""
    stored = await store.set_cancelled(event_id, request.reason, actor_id=viewer_id)
    return EventResponse.model_validate(stored)


@router.get("/moon/{year}", response_model=List[MoonEventResponse])
async def get_moon_phases(
    year: int = Path(..., ge=1900, le=2200),
    tz: str = Query(fastapi_settings.CALENDAR_TIMEZONE, description="IANA time zone"),
    moon_cache=Depends(get_moon_cache),
):
    """Principal moon phases of a year as all-day markers"""
    try:
        ZoneInfo(tz)
    except (ZoneInfoNotFoundError, ValueError):
        raise HTTPException(status_code=422, detail=f"Unknown time zone: {tz}")

    events = await moon_cache.aget(year, tz)
    return [
        MoonEventResponse(id=e.id, date=e.date, phase=e.phase.value, title=e.title)
        for e in events
    ]


@router.get("/export.ics")
async def export_calendar(
    start: AwareDatetime = Query(...),
    end: AwareDatetime = Query(...),
    include_moon: bool = Query(False),
    viewer_id: Optional[str] = Depends(get_optional_viewer),
    query_service=Depends(get_query_service),
):
    """Visible occurrences in [start, end) as an iCalendar file"""
    result = await query_service.query(viewer_id, start, end, include_moon=include_moon)
    return Response(
        content=export_ics(result.items),
        media_type="text/calendar",
        headers={"Content-Disposition": 'attachment; filename="calendar.ics"'},
    )


@router.put("/rsvp", response_model=RsvpResponse)
async def put_rsvp(
    request: RsvpRequest,
    viewer_id: str = Depends(get_current_viewer),
    rsvp_service=Depends(get_rsvp_service),
):
    """Set the caller's answer for one occurrence (last write wins)"""
    return await rsvp_service.upsert(
        viewer_id,
        request.occurrence_key,
        request.status,
        pinned=request.pinned,
        shareable=request.shareable,
    )


@router.get("/rsvp/{occurrence_key}", response_model=List[RsvpResponse])
async def list_rsvps(
    occurrence_key: str,
    viewer_id: str = Depends(get_current_viewer),
    rsvp_service=Depends(get_rsvp_service),
):
    """Shareable answers for one occurrence (404 when the caller cannot see it)"""
    return await rsvp_service.list_for_occurrence(occurrence_key, viewer_id)


@router.get("/stats", response_model=EventStatsResponse)
async def get_event_stats(
    viewer_id: str = Depends(get_current_viewer),
    rsvp_service=Depends(get_rsvp_service),
):
    """Hosting / attending / interested counters for the caller"""
    return await rsvp_service.stats(viewer_id)
