"""
Moon phase overlay

Synthesises all-day New / First Quarter / Full / Last Quarter markers from
a mean synodic month anchored at a known new moon. The approximation drifts
by up to about a day, which is acceptable for an all-day overlay.
"""

import json
import math
from datetime import MAXYEAR, MINYEAR, date, datetime, timedelta, timezone
from typing import Dict, List, Optional, Tuple
from zoneinfo import ZoneInfo

from config.logging_config import get_module_logger
from config.redis_config import RedisCache
from models.calendar import MoonEvent, MoonPhase
from utils.exceptions import ValidationError

logger = get_module_logger(__name__)

SYNODIC_MONTH_DAYS = 29.530588
EPOCH_NEW_MOON = datetime(2000, 1, 6, 18, 14, tzinfo=timezone.utc)

PHASE_OFFSETS_DAYS = (
    (MoonPhase.NEW, 0.0),
    (MoonPhase.FIRST_QUARTER, 7.382647),
    (MoonPhase.FULL, 14.765294),
    (MoonPhase.LAST_QUARTER, 22.147941),
)

YEAR_MARGIN = timedelta(days=2)

# the margin around a year must stay inside datetime's range
FIRST_OVERLAY_YEAR = MINYEAR + 1
LAST_OVERLAY_YEAR = MAXYEAR - 1


def _days_between(start: datetime, end: datetime) -> float:
    return (end - start).total_seconds() / 86400.0


def moon_events(year: int, tz: str = "UTC") -> List[MoonEvent]:
    """Principal moon phases for a calendar year

    Instants within two days of the year boundary are kept so overlays near
    January 1st and December 31st are not clipped.

    Args:
        year: calendar year
        tz: IANA zone whose civil date each instant is truncated to

    Returns:
        MoonEvent list in chronological order

    Raises:
        ValidationError: year outside FIRST_OVERLAY_YEAR..LAST_OVERLAY_YEAR
    """
    if not FIRST_OVERLAY_YEAR <= year <= LAST_OVERLAY_YEAR:
        raise ValidationError(
            "Moon overlay year out of range",
            {"year": year, "min": FIRST_OVERLAY_YEAR, "max": LAST_OVERLAY_YEAR},
        )
    zone = ZoneInfo(tz)
    year_start = datetime(year, 1, 1, tzinfo=timezone.utc)
    year_end = datetime(year, 12, 31, 23, 59, 59, tzinfo=timezone.utc)
    lower = year_start - YEAR_MARGIN
    upper = year_end + YEAR_MARGIN

    lunation = math.floor(_days_between(EPOCH_NEW_MOON, year_start) / SYNODIC_MONTH_DAYS) - 1

    events: List[MoonEvent] = []
    seen = set()
    while True:
        new_moon = EPOCH_NEW_MOON + timedelta(days=lunation * SYNODIC_MONTH_DAYS)
        if new_moon > upper:
            break
        for phase, offset in PHASE_OFFSETS_DAYS:
            instant = new_moon + timedelta(days=offset)
            if instant < lower or instant > upper:
                continue
            local_date = instant.astimezone(zone).date()
            if (local_date, phase) in seen:
                continue
            seen.add((local_date, phase))
            events.append(MoonEvent(date=local_date, phase=phase))
        lunation += 1

    return events


def moon_events_between(
    window_start: datetime, window_end: datetime, tz: str = "UTC",
    cache: Optional["MoonOverlayCache"] = None,
) -> List[MoonEvent]:
    """Moon markers whose all-day span in tz intersects [window_start, window_end)

    Windows reaching the first or last representable year get no markers
    for that year.
    """
    zone = ZoneInfo(tz)
    # wall years +/- 1 cover any zone offset without converting the bounds
    first_year = max(window_start.year - 1, FIRST_OVERLAY_YEAR)
    last_year = min(window_end.year + 1, LAST_OVERLAY_YEAR)

    result: List[MoonEvent] = []
    seen = set()
    for year in range(first_year, last_year + 1):
        events = cache.get(year, tz) if cache is not None else moon_events(year, tz)
        for event in events:
            day_start = datetime.combine(event.date, datetime.min.time(), tzinfo=zone)
            day_end = day_start + timedelta(days=1)
            if day_start >= window_end or day_end <= window_start:
                continue
            if (event.date, event.phase) in seen:
                continue
            seen.add((event.date, event.phase))
            result.append(event)
    return result


class MoonOverlayCache:
    """Read-through cache of moon_events keyed by (year, tz)

    The in-process dict is authoritative for this worker; redis, when
    attached, lets other workers skip the computation.
    """

    def __init__(self, redis_cache: Optional[RedisCache] = None, expire: Optional[int] = None):
        self._entries: Dict[Tuple[int, str], List[MoonEvent]] = {}
        self._redis = redis_cache
        self._expire = expire

    def get(self, year: int, tz: str = "UTC") -> List[MoonEvent]:
        key = (year, tz)
        if key not in self._entries:
            self._entries[key] = moon_events(year, tz)
        return self._entries[key]

    async def aget(self, year: int, tz: str = "UTC") -> List[MoonEvent]:
        """Async lookup that also consults redis"""
        key = (year, tz)
        if key in self._entries:
            return self._entries[key]

        if self._redis is not None:
            cached = await self._redis.get(f"{year}:{tz}")
            if cached:
                events = [
                    MoonEvent(date=date.fromisoformat(item["date"]), phase=MoonPhase(item["phase"]))
                    for item in json.loads(cached)
                ]
                self._entries[key] = events
                return events

        events = self.get(year, tz)
        if self._redis is not None:
            payload = json.dumps([{"date": e.date.isoformat(), "phase": e.phase.value} for e in events])
            await self._redis.set(f"{year}:{tz}", payload, expire=self._expire)
        return events

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)
