"""
Core data models for Taktgeber

Job definitions and their create/update inputs, plus the domain events that
fired jobs append to the stream store.
"""

import json
import uuid
from enum import Enum
from typing import Any, Dict, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from .errors import ValidationError
from .timeformat import parse_absolute

CRONJOB_TRIGGER = "cronjob:trigger"
CRONJOB_SOURCE = "cronjob"

# System-owned fields that an update may never touch
IMMUTABLE_FIELDS = ("id", "created_at", "updated_at", "executed", "executed_at", "last_error")


class JobKind(str, Enum):
    """How a job is triggered"""
    RECURRING = "recurring"
    ONE_TIME = "one-time"


def _coerce_scheduled_time(value: Any) -> Any:
    """
    Accept epoch milliseconds or ``YYYYMMDDHHMMSS`` text

    A 14-digit integer is read as ``YYYYMMDDHHMMSS``, as unquoted YAML
    produces. Epoch milliseconds only reach 14 digits after the year 2286.
    """
    if isinstance(value, int) and not isinstance(value, bool) and len(str(value)) == 14:
        return parse_absolute(str(value))
    if isinstance(value, str):
        text = value.strip()
        if text.isdigit() and len(text) != 14:
            return int(text)
        return parse_absolute(text)
    return value


def _check_payload(value: Any) -> Any:
    """Reject payloads that cannot be carried in an event's JSON data field"""
    if value is not None:
        try:
            json.dumps(value)
        except (TypeError, ValueError) as e:
            raise ValidationError(f"Payload is not JSON-serializable: {e}",
                                  field="payload", expected="JSON values only") from e
    return value


class JobDefinition(BaseModel):
    """A scheduled job as stored by the scheduler"""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    name: str
    kind: JobKind
    schedule: Optional[str] = None
    scheduled_time: Optional[int] = None
    enabled: bool = True

    # One-time jobs only
    executed: bool = False
    executed_at: Optional[int] = None

    payload: Optional[Dict[str, Any]] = None

    # Epoch milliseconds
    created_at: int
    updated_at: int

    last_error: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        """Executed one-time jobs accept no further start/update"""
        return self.kind == JobKind.ONE_TIME and self.executed

    def to_dict(self) -> Dict[str, Any]:
        """Convert to a JSON-compatible dictionary"""
        return self.model_dump(mode="json")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "JobDefinition":
        """Create a job definition from a dictionary"""
        return cls.model_validate(data)


class JobSpec(BaseModel):
    """Input for creating a job"""

    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    name: str = Field(min_length=1)
    kind: JobKind = Field(alias="type")
    schedule: Optional[str] = None
    scheduled_time: Optional[int] = None
    delay: Optional[str] = None  # relative fire time, e.g. "2h30m"
    enabled: bool = True
    payload: Optional[Dict[str, Any]] = None

    @field_validator("scheduled_time", mode="before")
    @classmethod
    def parse_scheduled_time(cls, value: Any) -> Any:
        return _coerce_scheduled_time(value)

    @field_validator("payload")
    @classmethod
    def check_payload(cls, value: Any) -> Any:
        return _check_payload(value)


class JobUpdate(BaseModel):
    """Partial update of a job; only explicitly set fields are merged"""

    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    name: Optional[str] = Field(default=None, min_length=1)
    kind: Optional[JobKind] = Field(default=None, alias="type")
    schedule: Optional[str] = None
    scheduled_time: Optional[int] = None
    delay: Optional[str] = None
    enabled: Optional[bool] = None
    payload: Optional[Dict[str, Any]] = None

    @field_validator("scheduled_time", mode="before")
    @classmethod
    def parse_scheduled_time(cls, value: Any) -> Any:
        return _coerce_scheduled_time(value)

    @field_validator("payload")
    @classmethod
    def check_payload(cls, value: Any) -> Any:
        return _check_payload(value)

    def changes(self) -> Dict[str, Any]:
        """Fields set by the caller, excluding the kind discriminator"""
        return self.model_dump(exclude_unset=True, exclude_none=True, exclude={"kind"})


class JobStats(BaseModel):
    """Counts of jobs by kind and state"""
    total: int = 0
    recurring: int = 0
    one_time: int = 0
    active: int = 0
    executed: int = 0


class DomainEvent(BaseModel):
    """Immutable event appended to a stream when a job fires"""

    model_config = ConfigDict(frozen=True)

    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    type: str
    source: str
    timestamp: int
    data: Dict[str, Any] = Field(default_factory=dict)

    def to_fields(self) -> Dict[str, str]:
        """Flatten to the string field set stored in a stream entry"""
        return {
            "eventId": self.event_id,
            "type": self.type,
            "source": self.source,
            "timestamp": str(self.timestamp),
            "data": json.dumps(self.data),
        }

    @classmethod
    def from_fields(cls, fields: Mapping[Any, Any]) -> "DomainEvent":
        """
        Rebuild an event from a stream entry

        Raises:
            ValueError: if a field is missing or cannot be decoded
        """
        decoded = {
            (k.decode() if isinstance(k, bytes) else k): (v.decode() if isinstance(v, bytes) else v)
            for k, v in fields.items()
        }
        missing = [name for name in ("eventId", "type", "source", "timestamp", "data") if name not in decoded]
        if missing:
            raise ValueError(f"Stream entry is missing fields: {', '.join(missing)}")

        return cls(
            event_id=decoded["eventId"],
            type=decoded["type"],
            source=decoded["source"],
            timestamp=int(decoded["timestamp"]),
            data=json.loads(decoded["data"]),
        )


def as_validation_error(exc: PydanticValidationError) -> ValidationError:
    """Convert a pydantic error into the first offending field's ValidationError"""
    first = exc.errors()[0]
    original = (first.get("ctx") or {}).get("error")
    if isinstance(original, ValidationError):
        return original

    field = ".".join(str(part) for part in first.get("loc", ())) or None
    if field == "type":
        field = "kind"
    return ValidationError(first.get("msg", str(exc)), field=field)
