"""
Event Consumer

Reads a Redis stream as a member of a consumer group and dispatches each entry
to the handler registered for its event type.

Delivery is at-least-once: an entry is acknowledged only after its handler
returns. Entries whose handler raised stay in the group's pending list and are
delivered again when the same consumer restarts (pending backlog) or when
another consumer claims them after ``claim_idle_ms``.
"""

import asyncio
import inspect
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, Union

from redis.exceptions import RedisError, ResponseError

from ..config import ServiceConfig
from ..core.errors import ConsumerError
from ..core.models import DomainEvent
from .redis_client import get_redis_client

logger = logging.getLogger(__name__)

EventHandler = Callable[[DomainEvent], Union[Awaitable[None], None]]
StreamEntry = Tuple[str, Optional[Dict[str, Any]]]


@dataclass
class ConsumerConfig:
    """Where and how a consumer reads"""
    stream_name: str
    group_name: str
    consumer_name: str
    block_ms: int = 5000
    count: int = 10
    retry_delay: float = 1.0
    recover_pending: bool = True
    claim_idle_ms: Optional[int] = None

    @classmethod
    def from_service_config(cls, config: ServiceConfig) -> 'ConsumerConfig':
        """Build a consumer configuration from the service configuration"""
        return cls(
            stream_name=config.stream_name,
            group_name=config.group_name,
            consumer_name=config.consumer_name,
            block_ms=config.block_ms,
            count=config.batch_count,
            retry_delay=config.consumer_retry_delay,
            claim_idle_ms=config.claim_idle_ms,
        )


class EventConsumer:
    """
    Consumer-group reader for one stream

    Instances sharing a group name split the stream between them; each entry
    is delivered to exactly one member of the group.
    """

    def __init__(self, redis_client=None, config: Optional[ServiceConfig] = None):
        self.redis = redis_client
        self.service_config = config
        self.handlers: Dict[str, EventHandler] = {}
        self.running = False

        self.stats = {
            'processed': 0,
            'acknowledged': 0,
            'failed': 0,
            'unroutable': 0,
            'read_errors': 0,
        }

    async def initialize(self) -> None:
        """Attach to the shared Redis client unless one was injected"""
        if self.redis is None:
            self.redis = await get_redis_client(self.service_config)
        logger.info("EventConsumer initialized")

    def register_handler(self, event_type: str, handler: EventHandler) -> None:
        """Route ``event_type`` to ``handler``; a later registration replaces an earlier one"""
        if event_type in self.handlers:
            logger.debug(f"Replacing handler for event type: {event_type}")
        self.handlers[event_type] = handler
        logger.debug(f"Event handler registered: {event_type}")

    on = register_handler

    async def ensure_group(self, config: ConsumerConfig) -> None:
        """Create the consumer group (and the stream) unless it already exists"""
        try:
            await self.redis.xgroup_create(config.stream_name, config.group_name, id='0', mkstream=True)
            logger.info(f"Consumer group created: {config.group_name} on {config.stream_name}")
        except ResponseError as e:
            if "BUSYGROUP" not in str(e):
                raise
            logger.debug(f"Consumer group already exists: {config.group_name} on {config.stream_name}")

    async def start(self, config: ConsumerConfig) -> None:
        """
        Consume until ``stop()`` is called

        Store errors inside the loop are logged and retried after
        ``config.retry_delay`` seconds.
        """
        if self.redis is None:
            raise ConsumerError("EventConsumer not initialized")

        await self.ensure_group(config)

        self.running = True
        backlog_id = '0' if config.recover_pending else None
        logger.info(
            f"Starting event consumer: stream={config.stream_name}, "
            f"group={config.group_name}, consumer={config.consumer_name}"
        )

        while self.running:
            try:
                if backlog_id is not None:
                    entries = await self._read(config, backlog_id, block=None)
                    if not entries:
                        logger.debug(f"Pending backlog drained for {config.consumer_name}")
                        backlog_id = None
                        continue
                    backlog_id = entries[-1][0]
                else:
                    entries = await self._read(config, '>', block=config.block_ms)
                    if not entries and config.claim_idle_ms is not None:
                        entries = await self._claim_stale(config)
                    if not entries:
                        continue

                for entry_id, fields in entries:
                    await self._process_entry(config, entry_id, fields)

            except (RedisError, OSError) as e:
                self.stats['read_errors'] += 1
                logger.error(f"Error consuming events from {config.stream_name}: {e}")
                await asyncio.sleep(config.retry_delay)

        logger.info(f"Event consumer stopped: {config.consumer_name}")

    def stop(self) -> None:
        """Ask the loop to exit; takes effect at the start of its next iteration"""
        self.running = False
        logger.info("Stopping event consumer...")

    def get_stats(self) -> Dict[str, Any]:
        """Consumer counters plus the registered event types"""
        return {
            **self.stats,
            'running': self.running,
            'handlers': sorted(self.handlers),
        }

    async def _read(self, config: ConsumerConfig, read_id: str, block: Optional[int]) -> List[StreamEntry]:
        response = await self.redis.xreadgroup(
            config.group_name,
            config.consumer_name,
            {config.stream_name: read_id},
            count=config.count,
            block=block,
        )
        entries: List[StreamEntry] = []
        for _stream, stream_entries in response or []:
            entries.extend((entry_id, fields) for entry_id, fields in stream_entries)
        return entries

    async def _claim_stale(self, config: ConsumerConfig) -> List[StreamEntry]:
        result = await self.redis.xautoclaim(
            config.stream_name,
            config.group_name,
            config.consumer_name,
            min_idle_time=config.claim_idle_ms,
            start_id='0-0',
            count=config.count,
        )
        entries = list(result[1]) if result else []
        if entries:
            logger.info(f"Claimed {len(entries)} stale entries for {config.consumer_name}")
        return entries

    async def _process_entry(self, config: ConsumerConfig, entry_id: str, fields: Optional[Dict[str, Any]]) -> bool:
        """Dispatch one entry; returns True when it was acknowledged"""
        if not fields:
            # Trimmed from the stream while still pending
            logger.warning(f"Entry {entry_id} no longer exists in {config.stream_name}, acknowledging")
            await self._ack(config, entry_id)
            return True

        try:
            event = DomainEvent.from_fields(fields)
        except ValueError as e:
            self.stats['failed'] += 1
            logger.error(f"Unparseable entry {entry_id} in {config.stream_name}: {e}")
            return False

        logger.debug(f"Processing event {event.event_id} ({event.type})")

        handler = self.handlers.get(event.type)
        if handler is None:
            self.stats['unroutable'] += 1
            logger.warning(f"No handler registered for event type: {event.type}")
        else:
            try:
                result = handler(event)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                self.stats['failed'] += 1
                logger.error(f"Handler for {event.type} failed on entry {entry_id} (event {event.event_id}): {e}")
                return False
            self.stats['processed'] += 1
            logger.debug(f"Event processed successfully: {event.event_id}")

        await self._ack(config, entry_id)
        return True

    async def _ack(self, config: ConsumerConfig, entry_id: str) -> None:
        await self.redis.xack(config.stream_name, config.group_name, entry_id)
        self.stats['acknowledged'] += 1
