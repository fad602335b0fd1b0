"""
Time format codecs

Conversions between the human-facing text formats and epoch milliseconds:

- absolute wall-clock time: ``YYYYMMDDHHMMSS`` (14 digits, local time)
- relative duration: ``[Nh][Nm][Ns]`` (e.g. ``2h``, ``30m``, ``1h15m30s``)

All functions are pure and safe to call from any task.
"""

import re
import time
from datetime import datetime
from typing import Any, Optional

from .errors import FormatError, DurationError

ABSOLUTE_FORMAT = "YYYYMMDDHHMMSS"
DURATION_FORMAT = "[Nh][Nm][Ns]"

MAX_DURATION_HOURS = 8760  # one year

_ABSOLUTE_RE = re.compile(r"^\d{14}$")
_DURATION_RE = re.compile(r"^(?:(\d+)h)?(?:(\d+)m)?(?:(\d+)s)?$")

_FIELD_RANGES = (
    ("month", 1, 12),
    ("day", 1, 31),
    ("hour", 0, 23),
    ("minute", 0, 59),
    ("second", 0, 59),
)


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds"""
    return int(time.time() * 1000)


def parse_absolute(value: str) -> int:
    """
    Convert a ``YYYYMMDDHHMMSS`` string (local time) to epoch milliseconds

    Raises:
        FormatError: if the text is not exactly 14 digits, a field is out of
            range, or the fields do not form a real local date/time
    """
    if not isinstance(value, str) or not _ABSOLUTE_RE.match(value):
        raise FormatError(
            f"Invalid datetime format, received: {value!r}",
            field="scheduled_time",
            expected=f"{ABSOLUTE_FORMAT} (14 digits)",
        )

    year = int(value[0:4])
    fields = {
        "month": int(value[4:6]),
        "day": int(value[6:8]),
        "hour": int(value[8:10]),
        "minute": int(value[10:12]),
        "second": int(value[12:14]),
    }

    for name, low, high in _FIELD_RANGES:
        if not low <= fields[name] <= high:
            raise FormatError(
                f"Invalid {name}: {fields[name]:02d}",
                field="scheduled_time",
                expected=f"{name} between {low:02d} and {high:02d}",
            )

    try:
        moment = datetime(year, fields["month"], fields["day"],
                          fields["hour"], fields["minute"], fields["second"])
        timestamp = moment.timestamp()
    except (ValueError, OverflowError) as e:
        raise FormatError(
            f"Invalid date: {value} does not represent a valid calendar date/time ({e})",
            field="scheduled_time",
            expected=ABSOLUTE_FORMAT,
        ) from e

    # Wall times skipped by a DST jump come back shifted
    decoded = datetime.fromtimestamp(timestamp)
    if (decoded.year, decoded.month, decoded.day,
            decoded.hour, decoded.minute, decoded.second) != (year, fields["month"], fields["day"],
                                                              fields["hour"], fields["minute"], fields["second"]):
        raise FormatError(
            f"Invalid date: {value} does not exist in the local timezone",
            field="scheduled_time",
            expected=ABSOLUTE_FORMAT,
        )

    return int(timestamp) * 1000


def format_absolute(timestamp_ms: int) -> str:
    """Convert epoch milliseconds to a zero-padded local ``YYYYMMDDHHMMSS`` string"""
    moment = datetime.fromtimestamp(timestamp_ms // 1000)
    return (
        f"{moment.year:04d}{moment.month:02d}{moment.day:02d}"
        f"{moment.hour:02d}{moment.minute:02d}{moment.second:02d}"
    )


def is_absolute_format(value: Any) -> bool:
    """Check whether a value looks like ``YYYYMMDDHHMMSS`` (no calendar check)"""
    return isinstance(value, str) and bool(_ABSOLUTE_RE.match(value))


def parse_duration(value: str) -> int:
    """
    Parse a ``[Nh][Nm][Ns]`` duration to milliseconds

    Raises:
        FormatError: empty input, bad syntax, or a component out of range
        DurationError: the duration adds up to zero
    """
    if not isinstance(value, str) or not value.strip():
        raise FormatError(
            f"Invalid duration: expected non-empty string, received: {value!r}",
            field="delay",
            expected=DURATION_FORMAT,
        )

    match = _DURATION_RE.match(value.strip())
    if not match:
        raise FormatError(
            f"Invalid duration format: {value!r}. Examples: 2h, 3m, 4s, 2h3m4s",
            field="delay",
            expected=DURATION_FORMAT,
        )

    hours_text, minutes_text, seconds_text = match.groups()
    if not (hours_text or minutes_text or seconds_text):
        raise FormatError(
            f"Invalid duration: {value!r}. At least one time unit (h, m, or s) must be specified",
            field="delay",
            expected=DURATION_FORMAT,
        )

    hours = int(hours_text) if hours_text else 0
    minutes = int(minutes_text) if minutes_text else 0
    seconds = int(seconds_text) if seconds_text else 0

    if hours > MAX_DURATION_HOURS:
        raise FormatError(f"Invalid hours: {hours}", field="delay",
                          expected=f"hours between 0 and {MAX_DURATION_HOURS}")
    if minutes > 59:
        raise FormatError(f"Invalid minutes: {minutes}", field="delay",
                          expected="minutes between 0 and 59")
    if seconds > 59:
        raise FormatError(f"Invalid seconds: {seconds}", field="delay",
                          expected="seconds between 0 and 59")

    total_ms = (hours * 3600 + minutes * 60 + seconds) * 1000
    if total_ms == 0:
        raise DurationError(
            "Duration cannot be zero, please specify a positive duration",
            field="delay",
            expected="a positive duration",
        )

    return total_ms


def format_duration(milliseconds: int) -> str:
    """Format milliseconds as ``[Nh][Nm][Ns]``; sub-second remainders are dropped"""
    if milliseconds < 0:
        raise FormatError(f"Duration must not be negative, received: {milliseconds}ms",
                          field="delay", expected="a non-negative duration")

    total_seconds = milliseconds // 1000
    hours, remainder = divmod(total_seconds, 3600)
    minutes, seconds = divmod(remainder, 60)

    result = ""
    if hours:
        result += f"{hours}h"
    if minutes:
        result += f"{minutes}m"
    if seconds:
        result += f"{seconds}s"
    return result or "0s"


def is_duration_format(value: Any) -> bool:
    """Check whether a value matches the duration grammar (ranges not checked)"""
    if not isinstance(value, str):
        return False
    match = _DURATION_RE.match(value.strip())
    return bool(match and any(match.groups()))


def future_from_duration(value: str, now: Optional[int] = None) -> int:
    """Epoch milliseconds ``now + parse_duration(value)``"""
    if now is None:
        now = now_ms()
    return now + parse_duration(value)
