"""
Event store boundary

Reads and writes calendar_events rows and converts them to EventRecord
values. Any database failure surfaces as StoreUnavailable; reads are
retried a few times first.
"""

import uuid
from dataclasses import replace
from datetime import datetime
from typing import List, Optional, Sequence

from sqlalchemy import and_, func, or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker

from config.logging_config import get_module_logger
from config.settings import fastapi_settings
from models.calendar import EventRecord, Visibility, to_naive_utc, to_utc
from models.database import CalendarEvent
from schemas.events import ChangeNotice
from services.event_bus_service import EventBusService
from utils.exceptions import (
    EventNotFound,
    InvalidEventSpan,
    PermissionDenied,
    StoreUnavailable,
    retry_on_error,
)

logger = get_module_logger(__name__)


def new_event_id() -> str:
    return f"evt_{uuid.uuid4().hex[:16]}"


def to_record(row: CalendarEvent) -> EventRecord:
    return EventRecord(
        id=row.id,
        title=row.title,
        start=to_utc(row.start_time),
        end=to_utc(row.end_time),
        owner_id=row.owner_id,
        visibility=row.visibility,
        description=row.description,
        location=row.location,
        community_id=row.community_id,
        recurrence=row.rrule,
        latitude=row.latitude,
        longitude=row.longitude,
        event_kind=row.event_kind,
        created_at=to_utc(row.created_at) if row.created_at else None,
        updated_at=to_utc(row.updated_at) if row.updated_at else None,
        is_cancelled=bool(row.is_cancelled),
        cancellation_reason=row.cancellation_reason,
    )


def validate_event(event: EventRecord) -> None:
    """Reject events that can never be displayed correctly"""
    if event.start.tzinfo is None or event.end.tzinfo is None:
        raise InvalidEventSpan("Event times must carry a UTC offset", {"event_id": event.id})
    if event.end < event.start:
        raise InvalidEventSpan(
            "Event ends before it starts",
            {"event_id": event.id, "start": event.start.isoformat(), "end": event.end.isoformat()},
        )
    if event.visibility == Visibility.COMMUNITY and not event.community_id:
        raise InvalidEventSpan("Community events need a community id", {"event_id": event.id})


class EventStore:
    """Async access to stored calendar events"""

    def __init__(self, session_factory: async_sessionmaker, bus: Optional[EventBusService] = None):
        self._session_factory = session_factory
        self._bus = bus

    async def _notify(self, event_id: str, action: str) -> None:
        if self._bus is not None:
            await self._bus.publish(ChangeNotice(entity_kind="event", entity_id=event_id, action=action))

    @retry_on_error(
        max_attempts=fastapi_settings.STORE_RETRY_ATTEMPTS,
        delay=fastapi_settings.STORE_RETRY_DELAY,
        exceptions=SQLAlchemyError,
    )
    async def _fetch(self, stmt) -> List[EventRecord]:
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return [to_record(row) for row in result.scalars().all()]

    async def range_query(
        self,
        window_start: datetime,
        window_end: datetime,
        owner_scope: Optional[Sequence[str]] = None,
    ) -> List[EventRecord]:
        """Events that may have an occurrence in [window_start, window_end)

        Recurring events are returned whenever their series starts before
        the window end; the expander decides which instances fall inside.
        """
        ws = to_naive_utc(window_start)
        we = to_naive_utc(window_end)
        recurring = and_(CalendarEvent.rrule.is_not(None), func.trim(CalendarEvent.rrule) != "")
        stmt = select(CalendarEvent).where(
            CalendarEvent.start_time < we,
            or_(recurring, CalendarEvent.end_time >= ws),
        )
        if owner_scope is not None:
            stmt = stmt.where(CalendarEvent.owner_id.in_(list(owner_scope)))
        stmt = stmt.order_by(CalendarEvent.start_time, CalendarEvent.id)

        try:
            events = await self._fetch(stmt)
        except SQLAlchemyError as e:
            raise StoreUnavailable(
                "Event range query failed",
                {"window_start": window_start.isoformat(), "window_end": window_end.isoformat()},
            ) from e
        logger.debug("Range query [%s, %s) returned %d events", ws, we, len(events))
        return events

    async def get(self, event_id: str) -> Optional[EventRecord]:
        try:
            events = await self._fetch(select(CalendarEvent).where(CalendarEvent.id == event_id))
        except SQLAlchemyError as e:
            raise StoreUnavailable("Event lookup failed", {"event_id": event_id}) from e
        return events[0] if events else None

    async def upsert(self, event: EventRecord) -> EventRecord:
        """Create or update one event in a single transaction

        Raises:
            InvalidEventSpan: event rejected before touching the database
            PermissionDenied: the id belongs to another owner
        """
        validate_event(event)
        if not event.id:
            event = replace(event, id=new_event_id())

        try:
            async with self._session_factory() as session:
                row = await session.get(CalendarEvent, event.id)
                created = row is None
                if created:
                    row = CalendarEvent(id=event.id, owner_id=event.owner_id)
                    session.add(row)
                elif row.owner_id != event.owner_id:
                    raise PermissionDenied(
                        "Only the owner can modify this event",
                        {"event_id": event.id, "owner_id": event.owner_id},
                    )
                row.title = event.title
                row.description = event.description
                row.location = event.location
                row.start_time = to_naive_utc(event.start)
                row.end_time = to_naive_utc(event.end)
                row.visibility = event.visibility
                row.community_id = event.community_id
                row.rrule = event.recurrence.strip() if event.recurrence and event.recurrence.strip() else None
                row.latitude = event.latitude
                row.longitude = event.longitude
                row.event_kind = event.event_kind
                await session.commit()
                await session.refresh(row)
                stored = to_record(row)
        except SQLAlchemyError as e:
            logger.error("Failed to store event %s: %s", event.id, e)
            raise StoreUnavailable("Could not store event", {"event_id": event.id}) from e

        logger.info("Event %s %s by %s", stored.id, "created" if created else "updated", stored.owner_id)
        await self._notify(stored.id, "created" if created else "updated")
        return stored

    async def set_cancelled(
        self, event_id: str, reason: Optional[str] = None, actor_id: Optional[str] = None
    ) -> EventRecord:
        """Flag the whole series as cancelled; the row is kept"""
        try:
            async with self._session_factory() as session:
                row = await session.get(CalendarEvent, event_id)
                if row is None:
                    raise EventNotFound(event_id)
                if actor_id is not None and row.owner_id != actor_id:
                    raise PermissionDenied(
                        "Only the owner can cancel this event",
                        {"event_id": event_id, "actor_id": actor_id},
                    )
                row.is_cancelled = True
                row.cancellation_reason = reason
                await session.commit()
                await session.refresh(row)
                stored = to_record(row)
        except SQLAlchemyError as e:
            logger.error("Failed to cancel event %s: %s", event_id, e)
            raise StoreUnavailable("Could not cancel event", {"event_id": event_id}) from e

        logger.info("Event %s cancelled: %s", event_id, reason)
        await self._notify(event_id, "cancelled")
        return stored
