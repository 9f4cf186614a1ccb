"""
Calendar query pipeline

store range read -> recurrence expansion -> visibility resolution ->
moon overlay merge, producing one flat list ordered by (start, event id).
"""

import logging
from datetime import datetime, timedelta
from typing import List, Optional, Sequence
from zoneinfo import ZoneInfo

from config.settings import fastapi_settings
from models.calendar import (
    CalendarItem,
    CalendarQueryResult,
    EventRecord,
    MoonEvent,
    Occurrence,
    ResolvedOccurrence,
    Visibility,
)
from services.event_store import EventStore
from services.expansion_cache import ExpansionCache
from services.moon_service import MoonOverlayCache, moon_events_between
from services.recurrence_service import ExpansionResult, expand
from services.visibility_service import VisibilityResolver
from utils.exceptions import ValidationError

logger = logging.getLogger(__name__)


def occurrence_item(resolved: ResolvedOccurrence) -> CalendarItem:
    occurrence = resolved.occurrence
    event = occurrence.event
    return CalendarItem(
        id=occurrence.key,
        event_id=event.id,
        title=event.title,
        start=occurrence.start,
        end=occurrence.end,
        all_day=False,
        source="event",
        visibility=event.visibility,
        owner_id=event.owner_id,
        occurrence_key=occurrence.key,
        description=event.description,
        location=event.location,
        event_kind=event.event_kind,
        community_id=event.community_id,
        is_recurring=event.is_recurring,
        is_cancelled=resolved.is_cancelled,
        cancellation_reason=resolved.cancellation_reason,
    )


def moon_item(moon: MoonEvent, tz: str) -> CalendarItem:
    day_start = datetime.combine(moon.date, datetime.min.time(), tzinfo=ZoneInfo(tz))
    return CalendarItem(
        id=moon.id,
        event_id=moon.id,
        title=moon.title,
        start=day_start,
        end=day_start + timedelta(days=1),
        all_day=True,
        source="moon",
        visibility=Visibility.PUBLIC,
        event_kind="moon",
        moon_phase=moon.phase.value,
    )


class CalendarQueryService:
    """Answers "what may viewer V see in [a, b)" """

    def __init__(
        self,
        store: EventStore,
        resolver: VisibilityResolver,
        expansion_cache: Optional[ExpansionCache] = None,
        moon_cache: Optional[MoonOverlayCache] = None,
        timezone_name: str = fastapi_settings.CALENDAR_TIMEZONE,
        max_iterations: int = fastapi_settings.RECURRENCE_MAX_ITERATIONS,
        deadline: Optional[float] = fastapi_settings.QUERY_DEADLINE_SECONDS,
    ):
        self.store = store
        self.resolver = resolver
        self.expansion_cache = expansion_cache
        self.moon_cache = moon_cache
        self.timezone_name = timezone_name
        self.max_iterations = max_iterations
        self.deadline = deadline

    def _expand(self, event: EventRecord, window_start: datetime, window_end: datetime) -> ExpansionResult:
        if self.expansion_cache is None:
            return expand(event, window_start, window_end, self.max_iterations)
        cached = self.expansion_cache.get(event.id, event.updated_at, window_start, window_end)
        if cached is not None:
            return cached
        result = expand(event, window_start, window_end, self.max_iterations)
        self.expansion_cache.put(event.id, event.updated_at, window_start, window_end, result)
        return result

    async def expand_window(
        self,
        window_start: datetime,
        window_end: datetime,
        owner_scope: Optional[Sequence[str]] = None,
    ):
        """Expanded occurrences (unfiltered) plus the events whose rule failed"""
        events = await self.store.range_query(window_start, window_end, owner_scope)
        occurrences: List[Occurrence] = []
        failed = []
        for event in events:
            result = self._expand(event, window_start, window_end)
            if result.error is not None:
                failed.append((event, result.error))
            occurrences.extend(result.occurrences)
        occurrences.sort(key=lambda o: o.sort_key())
        return occurrences, failed

    async def query(
        self,
        viewer_id: Optional[str],
        window_start: datetime,
        window_end: datetime,
        owner_scope: Optional[Sequence[str]] = None,
        include_moon: bool = True,
    ) -> CalendarQueryResult:
        """Everything the viewer may see in [window_start, window_end)

        Raises:
            ValidationError: naive datetimes or an inverted window
            StoreUnavailable: the event store could not be read
        """
        if window_start.tzinfo is None or window_end.tzinfo is None:
            raise ValidationError("Window bounds must carry a UTC offset")
        if window_end < window_start:
            raise ValidationError(
                "Window end is before window start",
                {"start": window_start.isoformat(), "end": window_end.isoformat()},
            )

        occurrences, failed = await self.expand_window(window_start, window_end, owner_scope)
        visibility = await self.resolver.resolve(occurrences, viewer_id, self.deadline)

        items = [occurrence_item(resolved) for resolved in visibility.items]
        if include_moon and window_end > window_start:
            moons = moon_events_between(window_start, window_end, self.timezone_name, self.moon_cache)
            items.extend(moon_item(moon, self.timezone_name) for moon in moons)
        items.sort(key=lambda item: item.sort_key())

        # only report broken rules the viewer could know about
        rule_errors = [
            {"event_id": event.id, "rule": error.rule, "reason": error.reason}
            for event, error in failed
            if event.visibility == Visibility.PUBLIC or event.owner_id == viewer_id
        ]

        logger.info(
            "Calendar query viewer=%s window=[%s, %s): %d items, %d rule errors, %d undetermined",
            viewer_id, window_start.isoformat(), window_end.isoformat(),
            len(items), len(failed), len(visibility.undetermined_event_ids),
        )
        return CalendarQueryResult(
            items=items,
            rule_errors=rule_errors,
            undetermined_event_ids=visibility.undetermined_event_ids,
        )
