"""
HealthBridge Core - Domain Event Bus
In-process subscribers plus Redis pub/sub fan-out for domain events
"""

import logging
from collections import defaultdict
from typing import Callable, Dict, List, Optional

import redis
from redis import Redis, RedisError
from pydantic import BaseModel

from app.config import settings

logger = logging.getLogger(__name__)

EventHandler = Callable[[BaseModel], None]
ALL_EVENTS = "*"


# =============================================================================
# Redis Publisher
# =============================================================================

class RedisEventPublisher:
    """Publishes events to Redis channels; disabled while Redis is unreachable"""

    def __init__(self, redis_url: Optional[str] = None, channel_prefix: Optional[str] = None):
        self.redis_url = redis_url or settings.redis_url
        self.channel_prefix = channel_prefix or settings.events_redis_channel_prefix
        self.redis_client: Optional[Redis] = None

        self._connect()

    def _connect(self):
        """Establish Redis connection"""
        try:
            self.redis_client = redis.from_url(
                self.redis_url,
                decode_responses=True,
                max_connections=settings.redis_max_connections,
                socket_connect_timeout=5,
                socket_timeout=5
            )

            self.redis_client.ping()
            logger.info(f"✓ Redis event publisher connected: {self.redis_url}")

        except RedisError as e:
            logger.error(f"Redis connection failed: {e}")
            logger.warning("Event fan-out to Redis will be disabled")
            self.redis_client = None

    def _is_available(self) -> bool:
        """Check if Redis is available"""
        if not self.redis_client:
            return False
        try:
            self.redis_client.ping()
            return True
        except RedisError:
            return False

    def channel_for(self, event_name: str) -> str:
        return f"{self.channel_prefix}:{event_name}"

    def __call__(self, event: BaseModel) -> bool:
        """
        Publish one event as JSON

        Returns:
            True if the event was handed to Redis
        """
        if not self._is_available():
            return False

        try:
            event_name = getattr(event, "event_name", type(event).__name__)
            receivers = self.redis_client.publish(self.channel_for(event_name), event.model_dump_json())
            logger.debug(f"Published {event_name} to {receivers} Redis subscribers")
            return True
        except RedisError as e:
            logger.error(f"Failed to publish event to Redis: {e}")
            return False


# =============================================================================
# Event Bus
# =============================================================================

class EventBus:
    """
    Synchronous in-process event dispatcher

    Handlers are called in subscription order. A failing handler is logged
    and does not stop delivery to the others.
    """

    def __init__(self):
        self._handlers: Dict[str, List[EventHandler]] = defaultdict(list)

    def subscribe(self, event_name: str, handler: EventHandler) -> None:
        """Register a handler for an event name, or '*' for every event"""
        self._handlers[event_name].append(handler)

    def unsubscribe(self, event_name: str, handler: EventHandler) -> None:
        if handler in self._handlers.get(event_name, []):
            self._handlers[event_name].remove(handler)

    def publish(self, event: BaseModel) -> int:
        """
        Deliver an event to its subscribers

        Returns:
            Number of handlers that completed without error
        """
        event_name = getattr(event, "event_name", type(event).__name__)
        handlers = list(self._handlers.get(event_name, [])) + list(self._handlers.get(ALL_EVENTS, []))

        delivered = 0
        for handler in handlers:
            try:
                handler(event)
                delivered += 1
            except Exception as e:
                logger.error(f"Event handler failed for {event_name}: {e}", exc_info=True)

        logger.debug(f"Event {event_name} delivered to {delivered}/{len(handlers)} handlers")
        return delivered


# =============================================================================
# Global Instance
# =============================================================================

_event_bus: Optional[EventBus] = None


def get_event_bus() -> EventBus:
    """Get or create the process-wide event bus"""
    global _event_bus
    if _event_bus is None:
        _event_bus = EventBus()
        if settings.events_publish_to_redis:
            _event_bus.subscribe(ALL_EVENTS, RedisEventPublisher())
        logger.info("✓ Event bus initialized")
    return _event_bus
