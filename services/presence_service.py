"""
Presence aggregation ("tribe pulse")

aggregate() turns session intervals into 96 fifteen-minute occupancy
buckets over the trailing 24 hours. PresenceService is the database
boundary for opening, closing and sweeping intervals, and PulseMonitor
keeps a periodically refreshed snapshot for the pulse endpoint.
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Iterable, List, Optional

from sqlalchemy import or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker

from config.settings import fastapi_settings
from models.calendar import PulseSnapshot, SessionIntervalRecord, to_naive_utc, to_utc
from models.database import SessionInterval
from schemas.events import ChangeNotice
from services.event_bus_service import EventBusService
from utils.exceptions import (
    PermissionDenied,
    SessionNotFound,
    StoreUnavailable,
    ValidationError,
    retry_on_error,
)

logger = logging.getLogger(__name__)

WINDOW = timedelta(hours=24)
BUCKET_WIDTH = timedelta(minutes=15)
BUCKET_COUNT = 96
DEFAULT_GRACE = timedelta(minutes=fastapi_settings.PRESENCE_GRACE_MINUTES)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def effective_end(interval: SessionIntervalRecord, now: datetime, grace: timedelta) -> datetime:
    """Close time used for counting; open intervals expire after the grace period"""
    if interval.ended_at is not None:
        return interval.ended_at
    return min(now, interval.started_at + grace)


def aggregate(
    intervals: Iterable[SessionIntervalRecord],
    now: datetime,
    grace: timedelta = DEFAULT_GRACE,
) -> PulseSnapshot:
    """Bucket intervals over the 24h window ending at now

    A bucket counts every interval overlapping any part of it. Intervals
    ending before they start are dropped and logged.
    """
    window_start = now - WINDOW
    counts = [0] * BUCKET_COUNT
    dropped = 0

    for interval in intervals:
        end = effective_end(interval, now, grace)
        if end < interval.started_at:
            dropped += 1
            logger.warning(
                "Dropping session %s: ends %s before it starts %s",
                interval.id, end.isoformat(), interval.started_at.isoformat(),
            )
            continue

        clipped_start = max(interval.started_at, window_start)
        clipped_end = min(end, now)
        if clipped_end <= clipped_start:
            continue

        first = (clipped_start - window_start) // BUCKET_WIDTH
        last = -((window_start - clipped_end) // BUCKET_WIDTH)
        for index in range(max(first, 0), min(last, BUCKET_COUNT)):
            counts[index] += 1

    covered = sum(1 for count in counts if count > 0)
    return PulseSnapshot(
        bucket_counts=counts,
        coverage_percent=round(100 * covered / BUCKET_COUNT),
        concurrent_now=counts[-1],
        window_start=window_start,
        window_end=now,
        dropped_intervals=dropped,
        computed_at=now,
    )


def _record(row: SessionInterval) -> SessionIntervalRecord:
    return SessionIntervalRecord(
        id=row.id,
        subject_id=row.subject_id,
        started_at=to_utc(row.started_at),
        ended_at=to_utc(row.ended_at) if row.ended_at is not None else None,
    )


class PresenceService:
    """Session interval store plus pulse computation"""

    def __init__(
        self,
        session_factory: async_sessionmaker,
        bus: Optional[EventBusService] = None,
        grace: timedelta = DEFAULT_GRACE,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._session_factory = session_factory
        self._bus = bus
        self.grace = grace
        self._clock = clock

    async def _notify(self, interval_id: int, action: str) -> None:
        if self._bus is not None:
            await self._bus.publish(
                ChangeNotice(entity_kind="session", entity_id=str(interval_id), action=action)
            )

    async def open_interval(self, subject_id: str, started_at: Optional[datetime] = None) -> int:
        """Start a session, returning its id"""
        started_at = started_at or self._clock()
        try:
            async with self._session_factory() as session:
                row = SessionInterval(subject_id=subject_id, started_at=to_naive_utc(started_at))
                session.add(row)
                await session.commit()
                interval_id = row.id
        except SQLAlchemyError as e:
            logger.error("Failed to open session for %s: %s", subject_id, e)
            raise StoreUnavailable("Could not open session", {"subject_id": subject_id}) from e

        logger.info("Session %s opened for %s", interval_id, subject_id)
        await self._notify(interval_id, "opened")
        return interval_id

    async def close_interval(
        self, interval_id: int, ended_at: Optional[datetime] = None, subject_id: Optional[str] = None
    ) -> bool:
        """Close a session

        Returns:
            True if this call closed it, False if it was already closed

        Raises:
            SessionNotFound: unknown id
            PermissionDenied: subject_id given and not the session owner
            ValidationError: ended_at before the session start
        """
        ended_at = ended_at or self._clock()
        try:
            async with self._session_factory() as session:
                row = await session.get(SessionInterval, interval_id)
                if row is None:
                    raise SessionNotFound(interval_id)
                if subject_id is not None and row.subject_id != subject_id:
                    raise PermissionDenied(
                        "Only the session owner can close it", {"interval_id": interval_id}
                    )
                if row.ended_at is not None:
                    return False
                if to_naive_utc(ended_at) < row.started_at:
                    raise ValidationError(
                        "Session cannot end before it starts",
                        {"interval_id": interval_id, "ended_at": ended_at.isoformat()},
                    )
                row.ended_at = to_naive_utc(ended_at)
                row.closed_reason = "closed"
                await session.commit()
        except SQLAlchemyError as e:
            logger.error("Failed to close session %s: %s", interval_id, e)
            raise StoreUnavailable("Could not close session", {"interval_id": interval_id}) from e

        await self._notify(interval_id, "closed")
        return True

    @retry_on_error(
        max_attempts=fastapi_settings.STORE_RETRY_ATTEMPTS,
        delay=fastapi_settings.STORE_RETRY_DELAY,
        exceptions=SQLAlchemyError,
    )
    async def _select(self, stmt) -> List[SessionIntervalRecord]:
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return [_record(row) for row in result.scalars().all()]

    async def list_open_older_than(
        self, age: timedelta, now: Optional[datetime] = None
    ) -> List[SessionIntervalRecord]:
        """Open sessions started more than age ago"""
        cutoff = (now or self._clock()) - age
        stmt = (
            select(SessionInterval)
            .where(SessionInterval.ended_at.is_(None), SessionInterval.started_at < to_naive_utc(cutoff))
            .order_by(SessionInterval.started_at)
        )
        try:
            return await self._select(stmt)
        except SQLAlchemyError as e:
            raise StoreUnavailable("Could not list open sessions") from e

    async def intervals_in_window(self, window_start: datetime, now: datetime) -> List[SessionIntervalRecord]:
        stmt = select(SessionInterval).where(
            SessionInterval.started_at < to_naive_utc(now),
            or_(SessionInterval.ended_at.is_(None), SessionInterval.ended_at > to_naive_utc(window_start)),
        )
        try:
            return await self._select(stmt)
        except SQLAlchemyError as e:
            raise StoreUnavailable("Could not read sessions") from e

    async def sweep_stale(self, grace: Optional[timedelta] = None, now: Optional[datetime] = None) -> int:
        """Force-close sessions left open past the grace period

        Each one is closed at started_at + grace, matching how aggregate()
        already counted it. Returns the number of sessions closed.
        """
        grace = grace or self.grace
        stale = await self.list_open_older_than(grace, now)
        if not stale:
            return 0

        closed = []
        try:
            async with self._session_factory() as session:
                for record in stale:
                    result = await session.execute(
                        update(SessionInterval)
                        .where(SessionInterval.id == record.id, SessionInterval.ended_at.is_(None))
                        .values(
                            ended_at=to_naive_utc(record.started_at + grace),
                            closed_reason="expired",
                        )
                    )
                    # zero rows when the owner closed it since the listing
                    if result.rowcount:
                        closed.append(record.id)
                await session.commit()
        except SQLAlchemyError as e:
            logger.error("Stale session sweep failed: %s", e)
            raise StoreUnavailable("Could not sweep stale sessions") from e

        logger.info("Force-closed %d of %d stale sessions", len(closed), len(stale))
        for interval_id in closed:
            await self._notify(interval_id, "expired")
        return len(closed)

    async def pulse(self, now: Optional[datetime] = None) -> PulseSnapshot:
        now = now or self._clock()
        intervals = await self.intervals_in_window(now - WINDOW, now)
        return aggregate(intervals, now, self.grace)


class PulseMonitor:
    """Background refresher for the pulse snapshot

    Every poll it sweeps stale sessions and recomputes the snapshot.
    Session change notices mark the snapshot stale so the next read
    recomputes it instead of waiting for the next poll.
    """

    def __init__(self, presence: PresenceService, interval_seconds: float = fastapi_settings.PULSE_POLL_SECONDS):
        self.presence = presence
        self._interval = interval_seconds
        self._task: Optional[asyncio.Task] = None
        self._snapshot: Optional[PulseSnapshot] = None
        self._stale = True
        self._lock = asyncio.Lock()

    @property
    def is_stale(self) -> bool:
        return self._stale

    def mark_stale(self, notice: Optional[ChangeNotice] = None) -> None:
        self._stale = True

    async def refresh(self) -> PulseSnapshot:
        async with self._lock:
            self._stale = False
            try:
                self._snapshot = await self.presence.pulse()
            except Exception:
                self._stale = True
                raise
            return self._snapshot

    async def current(self) -> PulseSnapshot:
        if self._stale or self._snapshot is None:
            return await self.refresh()
        return self._snapshot

    async def start(self):
        """Start the polling task (call after startup)"""
        if self._task is None:
            self._task = asyncio.create_task(self._run())
            logger.info("Pulse monitor started (interval: %ss)", self._interval)

    async def stop(self):
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
            logger.info("Pulse monitor stopped")

    async def _run(self):
        while True:
            try:
                await self.presence.sweep_stale()
                await self.refresh()
                await asyncio.sleep(self._interval)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("Pulse refresh failed: %s", e)
                await asyncio.sleep(self._interval)
