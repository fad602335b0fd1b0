"""
Event Publisher

Appends domain events to a named Redis stream as flat string field sets.
"""

import logging
from typing import Optional

from redis.exceptions import RedisError

from ..config import ServiceConfig
from ..core.errors import PublishError
from ..core.models import DomainEvent
from .redis_client import get_redis_client

logger = logging.getLogger(__name__)


class EventPublisher:
    """Publishes DomainEvents with XADD; safe to share between tasks"""

    def __init__(
        self,
        redis_client=None,
        config: Optional[ServiceConfig] = None,
        maxlen: Optional[int] = None,
    ):
        self.redis = redis_client
        self.config = config
        self.maxlen = maxlen if maxlen is not None else (config.stream_maxlen if config else None)

    async def initialize(self) -> None:
        """Attach to the shared Redis client unless one was injected"""
        if self.redis is None:
            self.redis = await get_redis_client(self.config)
        logger.info("EventPublisher initialized")

    async def publish(self, stream_name: str, event: DomainEvent) -> str:
        """
        Append an event to ``stream_name`` and return the stream entry id

        Raises:
            PublishError: the publisher is not initialized, the store is
                unreachable, the append was rejected, or the event data
                cannot be encoded
        """
        if self.redis is None:
            raise PublishError(stream_name, "EventPublisher not initialized")

        try:
            fields = event.to_fields()
        except (TypeError, ValueError) as e:
            logger.error(f"Cannot encode event {event.event_id} for {stream_name}: {e}")
            raise PublishError(stream_name, f"event data is not JSON-serializable: {e}") from e

        try:
            if self.maxlen:
                entry_id = await self.redis.xadd(stream_name, fields, maxlen=self.maxlen, approximate=True)
            else:
                entry_id = await self.redis.xadd(stream_name, fields)
        except (RedisError, OSError) as e:
            logger.error(f"Failed to publish event {event.event_id} to {stream_name}: {e}")
            raise PublishError(stream_name, str(e)) from e

        if isinstance(entry_id, bytes):
            entry_id = entry_id.decode()

        logger.info(f"Event published to {stream_name}: {event.type} ({event.event_id}) as {entry_id}")
        return entry_id
