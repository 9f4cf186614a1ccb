"""
RSVP service

One answer per (user, occurrence), last write wins. An occurrence can only
be answered or inspected by a viewer allowed to see it; anything hidden is
reported as not found. Also computes the per-user hosting / attending /
interested counters.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker

from models.calendar import EventRecord, Occurrence, RsvpStatus
from models.database import CalendarEvent, EventRsvp
from services.event_store import EventStore
from services.recurrence_service import expand
from services.visibility_service import VisibilityResolver
from utils.exceptions import EventNotFound, StoreUnavailable, ValidationError

logger = logging.getLogger(__name__)

STAMP_FORMAT = "%Y-%m-%dT%H:%M:%SZ"


def split_occurrence_key(occurrence_key: str) -> Tuple[str, datetime]:
    """Split "<event id>:<UTC start>" into the event id and an aware start"""
    event_id, sep, stamp = occurrence_key.partition(":")
    if not sep or not event_id or not stamp:
        raise ValidationError("Malformed occurrence key", {"occurrence_key": occurrence_key})
    try:
        start = datetime.strptime(stamp, STAMP_FORMAT).replace(tzinfo=timezone.utc)
    except ValueError:
        raise ValidationError("Malformed occurrence start", {"occurrence_key": occurrence_key})
    return event_id, start


class RsvpService:
    def __init__(
        self,
        session_factory: async_sessionmaker,
        store: EventStore,
        resolver: VisibilityResolver,
    ):
        self._session_factory = session_factory
        self.store = store
        self.resolver = resolver

    async def _visible_occurrence(self, viewer_id: str, occurrence_key: str) -> EventRecord:
        """Event behind the key, if the viewer may see it and the key is a real instance

        Raises:
            ValidationError: malformed key, or a start that is not an instance
            EventNotFound: unknown event, or one hidden from the viewer
        """
        event_id, start = split_occurrence_key(occurrence_key)
        event = await self.store.get(event_id)
        if event is None:
            raise EventNotFound(event_id)

        visibility = await self.resolver.resolve(
            [Occurrence(event, start, start + event.duration)], viewer_id
        )
        if not visibility.items:
            logger.info("RSVP on %s refused: not visible to %s", occurrence_key, viewer_id)
            raise EventNotFound(event_id)

        # an instant window at the claimed start catches exactly that instance
        expansion = expand(event, start, start + timedelta(seconds=1))
        if not any(o.start == start for o in expansion.occurrences):
            raise ValidationError(
                "Occurrence key does not match an instance of the event",
                {"occurrence_key": occurrence_key},
            )
        return event

    async def upsert(
        self,
        user_id: str,
        occurrence_key: str,
        status: RsvpStatus,
        pinned: Optional[bool] = None,
        shareable: Optional[bool] = None,
    ) -> Dict[str, Any]:
        """Record the user's answer for one occurrence, replacing any earlier one"""
        event = await self._visible_occurrence(user_id, occurrence_key)
        try:
            async with self._session_factory() as session:
                result = await session.execute(
                    select(EventRsvp).where(
                        EventRsvp.user_id == user_id,
                        EventRsvp.occurrence_key == occurrence_key,
                    )
                )
                rsvp = result.scalar_one_or_none()
                if rsvp is None:
                    rsvp = EventRsvp(
                        event_id=event.id,
                        occurrence_key=occurrence_key,
                        user_id=user_id,
                        pinned=bool(pinned),
                        shareable=True if shareable is None else shareable,
                    )
                    session.add(rsvp)
                else:
                    if pinned is not None:
                        rsvp.pinned = pinned
                    if shareable is not None:
                        rsvp.shareable = shareable
                rsvp.status = status
                await session.commit()
                await session.refresh(rsvp)
                payload = rsvp.to_dict()
        except SQLAlchemyError as e:
            logger.error("RSVP upsert failed for %s on %s: %s", user_id, occurrence_key, e)
            raise StoreUnavailable("Could not store RSVP", {"occurrence_key": occurrence_key}) from e

        logger.info("RSVP %s -> %s on %s", user_id, status.value, occurrence_key)
        return payload

    async def list_for_occurrence(self, occurrence_key: str, viewer_id: str) -> List[Dict[str, Any]]:
        """Shareable RSVPs of one occurrence the viewer can see"""
        await self._visible_occurrence(viewer_id, occurrence_key)
        try:
            async with self._session_factory() as session:
                result = await session.execute(
                    select(EventRsvp)
                    .where(EventRsvp.occurrence_key == occurrence_key, EventRsvp.shareable.is_(True))
                    .order_by(EventRsvp.user_id)
                )
                return [rsvp.to_dict() for rsvp in result.scalars().all()]
        except SQLAlchemyError as e:
            raise StoreUnavailable("Could not read RSVPs", {"occurrence_key": occurrence_key}) from e

    async def stats(self, user_id: str) -> Dict[str, int]:
        """hosting: own active events; attending: yes answers; interested: maybe or interested"""
        try:
            async with self._session_factory() as session:
                hosting = await session.scalar(
                    select(func.count(CalendarEvent.id)).where(
                        CalendarEvent.owner_id == user_id,
                        CalendarEvent.is_cancelled.is_(False),
                    )
                )
                rows = await session.execute(
                    select(EventRsvp.status, func.count(EventRsvp.id))
                    .where(EventRsvp.user_id == user_id)
                    .group_by(EventRsvp.status)
                )
                by_status = {status: count for status, count in rows.all()}
        except SQLAlchemyError as e:
            raise StoreUnavailable("Could not compute stats", {"user_id": user_id}) from e

        return {
            "hosting": hosting or 0,
            "attending": by_status.get(RsvpStatus.YES, 0),
            "interested": by_status.get(RsvpStatus.INTERESTED, 0) + by_status.get(RsvpStatus.MAYBE, 0),
        }
