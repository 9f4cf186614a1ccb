"""
Change notifier

Subscribes to the event bus and turns change notices into cache
invalidations: event notices drop cached expansions of that event,
session notices mark the pulse snapshot stale.
"""

import logging
from typing import Optional

from schemas.events import ChangeNotice
from services.event_bus_service import EventBusService
from services.expansion_cache import ExpansionCache
from services.presence_service import PulseMonitor

logger = logging.getLogger(__name__)


class ChangeNotifier:
    def __init__(
        self,
        bus: EventBusService,
        expansion_cache: Optional[ExpansionCache] = None,
        pulse_monitor: Optional[PulseMonitor] = None,
    ):
        self.bus = bus
        self.expansion_cache = expansion_cache
        self.pulse_monitor = pulse_monitor
        self.handled = 0

    def attach(self) -> None:
        self.bus.subscribe("event", self.on_event_changed)
        self.bus.subscribe("session", self.on_session_changed)

    def detach(self) -> None:
        self.bus.unsubscribe("event", self.on_event_changed)
        self.bus.unsubscribe("session", self.on_session_changed)

    def on_event_changed(self, notice: ChangeNotice) -> None:
        self.handled += 1
        if self.expansion_cache is not None:
            self.expansion_cache.invalidate_event(notice.entity_id)
        logger.debug("Event %s %s", notice.entity_id, notice.action)

    def on_session_changed(self, notice: ChangeNotice) -> None:
        self.handled += 1
        if self.pulse_monitor is not None:
            self.pulse_monitor.mark_stale(notice)
        logger.debug("Session %s %s", notice.entity_id, notice.action)
