"""
Event bus service for change notices
"""

import asyncio
from typing import Dict, List, Callable, Optional
from collections import defaultdict
import logging

from pydantic import ValidationError as PydanticValidationError

from schemas.events import ChangeNotice

logger = logging.getLogger(__name__)


class EventBusService:
    """
    Pub/sub for change notices with local and optional Redis delivery.

    Handlers subscribe per entity kind ("event", "session"). Publishing runs
    local handlers first, then forwards the notice to a Redis channel so
    other workers hear about it too.

    Features:
    - Local in-memory pub/sub
    - Optional Redis pub/sub across workers
    - Async and sync handler support
    - Error isolation (one handler error doesn't affect others)
    """

    def __init__(self, channel: str = "calendar:changes"):
        """Initialize the event bus"""
        self._subscribers: Dict[str, List[Callable]] = defaultdict(list)
        self._redis_client = None
        self._use_redis = False
        self._channel = channel
        self._listener_task: Optional[asyncio.Task] = None

    @property
    def channel(self) -> str:
        return self._channel

    def attach_redis(self, redis_client):
        """
        Use an already connected client for cross-worker delivery.

        Args:
            redis_client: redis.asyncio client
        """
        self._redis_client = redis_client
        self._use_redis = redis_client is not None
        if self._use_redis:
            logger.info("Redis event bus enabled on channel %s", self._channel)

    def subscribe(self, entity_kind: str, handler: Callable):
        """
        Subscribe to notices of one entity kind.

        Args:
            entity_kind: "event" or "session"
            handler: callback receiving the ChangeNotice
        """
        self._subscribers[entity_kind].append(handler)
        logger.debug("Subscribed handler to %s notices", entity_kind)

    def unsubscribe(self, entity_kind: str, handler: Callable):
        if entity_kind in self._subscribers:
            try:
                self._subscribers[entity_kind].remove(handler)
            except ValueError:
                # Handler not in list
                pass

    async def dispatch_local(self, notice: ChangeNotice):
        """Deliver a notice to local handlers only"""
        for handler in list(self._subscribers.get(notice.topic, [])):
            try:
                if asyncio.iscoroutinefunction(handler):
                    await handler(notice)
                else:
                    handler(notice)
            except Exception as e:
                logger.error("Error in %s notice handler: %s", notice.topic, e)

    async def publish(self, notice: ChangeNotice):
        """
        Publish a notice to all subscribers.

        Args:
            notice: change notice to publish
        """
        await self.dispatch_local(notice)

        if self._use_redis and self._redis_client:
            try:
                await self._redis_client.publish(self._channel, notice.model_dump_json())
            except Exception as e:
                logger.warning("Failed to publish to Redis: %s", e)

    async def start_listener(self):
        """Consume notices published by other workers (requires redis)"""
        if not self._use_redis or self._listener_task is not None:
            return
        self._listener_task = asyncio.create_task(self._listen())
        logger.info("Redis notice listener started")

    async def stop_listener(self):
        if self._listener_task:
            self._listener_task.cancel()
            try:
                await self._listener_task
            except asyncio.CancelledError:
                pass
            self._listener_task = None
            logger.info("Redis notice listener stopped")

    async def _listen(self):
        pubsub = self._redis_client.pubsub()
        await pubsub.subscribe(self._channel)
        try:
            async for message in pubsub.listen():
                if message.get("type") != "message":
                    continue
                try:
                    notice = ChangeNotice.model_validate_json(message["data"])
                except PydanticValidationError as e:
                    logger.warning("Ignoring malformed notice on %s: %s", self._channel, e)
                    continue
                await self.dispatch_local(notice)
        finally:
            await pubsub.unsubscribe(self._channel)
            await pubsub.close()
