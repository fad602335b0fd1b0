"""Taktgeber - cron and one-time job scheduler publishing trigger events to Redis streams"""

__version__ = "0.1.0"

from taktgeber.core.models import DomainEvent, JobDefinition, JobKind, JobSpec, JobUpdate
from taktgeber.core.scheduler import JobScheduler
from taktgeber.events.publisher import EventPublisher
from taktgeber.events.consumer import ConsumerConfig, EventConsumer

__all__ = [
    "DomainEvent",
    "JobDefinition",
    "JobKind",
    "JobSpec",
    "JobUpdate",
    "JobScheduler",
    "EventPublisher",
    "EventConsumer",
    "ConsumerConfig",
]
