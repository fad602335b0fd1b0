"""
Redis stream transport: publisher, consumer and an in-memory stand-in
"""

from .consumer import ConsumerConfig, EventConsumer
from .memory_store import InMemoryStreamStore
from .publisher import EventPublisher
from .redis_client import close_redis_client, get_redis_client

__all__ = [
    'ConsumerConfig',
    'EventConsumer',
    'EventPublisher',
    'InMemoryStreamStore',
    'close_redis_client',
    'get_redis_client',
]
