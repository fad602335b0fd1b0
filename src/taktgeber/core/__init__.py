"""
Core scheduling components: time formats, job models and the scheduler
"""

from .errors import (
    TaktgeberError,
    ValidationError,
    FormatError,
    DurationError,
    JobNotFoundError,
    ImmutableFieldError,
    TerminalStateError,
    PublishError,
    ConsumerError,
    ActionDeniedError,
    ConfigError,
)
from .models import CRONJOB_TRIGGER, CRONJOB_SOURCE, DomainEvent, JobDefinition, JobKind, JobSpec, JobStats, JobUpdate
from .scheduler import JobScheduler

__all__ = [
    'TaktgeberError',
    'ValidationError',
    'FormatError',
    'DurationError',
    'JobNotFoundError',
    'ImmutableFieldError',
    'TerminalStateError',
    'PublishError',
    'ConsumerError',
    'ActionDeniedError',
    'ConfigError',
    'CRONJOB_TRIGGER',
    'CRONJOB_SOURCE',
    'DomainEvent',
    'JobDefinition',
    'JobKind',
    'JobSpec',
    'JobStats',
    'JobUpdate',
    'JobScheduler',
]
