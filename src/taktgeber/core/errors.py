"""
Error types for Taktgeber

Validation and state errors are raised synchronously to the caller of the
scheduler API. Publish and consumption failures are only logged by the
background loops that hit them.
"""

from typing import Optional, Any


class TaktgeberError(Exception):
    """Base exception for all Taktgeber errors"""
    pass


class ValidationError(TaktgeberError, ValueError):
    """Raised when caller input is malformed or out of range"""

    def __init__(self, message: str, field: Optional[str] = None, expected: Optional[str] = None):
        self.field = field
        self.expected = expected
        self.message = message
        details = message
        if field:
            details = f"{field}: {details}"
        if expected:
            details = f"{details} (expected {expected})"
        super().__init__(details)


class FormatError(ValidationError):
    """Raised when absolute time or duration text cannot be parsed"""
    pass


class DurationError(FormatError):
    """Raised when a duration parses but is not positive"""
    pass


class JobNotFoundError(TaktgeberError, KeyError):
    """Raised when a requested job does not exist"""

    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Job not found: {job_id}")

    def __str__(self) -> str:
        return self.args[0]


class ImmutableFieldError(TaktgeberError):
    """Raised when an update touches a field that is fixed after creation"""

    def __init__(self, field: str, job_id: Optional[str] = None):
        self.field = field
        self.job_id = job_id
        super().__init__(f"Field '{field}' cannot be changed after creation")


class TerminalStateError(TaktgeberError):
    """Raised when an executed one-time job is started or updated"""

    def __init__(self, job_id: str, operation: str):
        self.job_id = job_id
        self.operation = operation
        super().__init__(f"Cannot {operation} already executed one-time job {job_id}")


class PublishError(TaktgeberError):
    """Raised when an event cannot be appended to its stream"""

    def __init__(self, stream_name: str, reason: str):
        self.stream_name = stream_name
        self.reason = reason
        super().__init__(f"Failed to publish to stream '{stream_name}': {reason}")


class ConsumerError(TaktgeberError):
    """Raised when the consumer is misused (e.g. started before initialization)"""
    pass


class ActionDeniedError(TaktgeberError):
    """Raised when a gated action is rejected by its resource validator"""

    def __init__(self, action_name: str, result: Any):
        self.action_name = action_name
        self.result = result
        super().__init__(f"Action '{action_name}' denied: {result.error}")


class ConfigError(TaktgeberError):
    """Raised when a configuration file is unreadable or invalid"""
    pass
