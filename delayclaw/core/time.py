"""
delayclaw/core/time.py

Time helpers. Ledger and flight records carry unix seconds (UTC);
flight records are partitioned by the UTC calendar date of the
scheduled departure, formatted YYYY-MM-DD.
"""

import time
from datetime import datetime, timedelta, timezone
from typing import Union

from delayclaw.core.exceptions import ValidationError

_DATE_FORMAT = "%Y-%m-%d"


def unix_now() -> int:
    """Current UTC time in whole unix seconds."""
    return int(time.time())


def utc_date(unix_seconds: int) -> str:
    """YYYY-MM-DD of a unix timestamp, in UTC."""
    return datetime.fromtimestamp(unix_seconds, tz=timezone.utc).strftime(_DATE_FORMAT)


def previous_date(date: str) -> str:
    """The calendar day before a YYYY-MM-DD date."""
    day = datetime.strptime(date, _DATE_FORMAT) - timedelta(days=1)
    return day.strftime(_DATE_FORMAT)


def validate_date(date: str) -> str:
    try:
        datetime.strptime(date, _DATE_FORMAT)
    except (TypeError, ValueError):
        raise ValidationError(f"date must be YYYY-MM-DD, got {date!r}")
    return date


def parse_departure(value: Union[int, str]) -> int:
    """
    Accept a departure time as unix seconds or an ISO-8601 string.

    ISO strings without an offset are taken as UTC; a trailing Z is allowed.
    """
    if isinstance(value, bool):
        raise ValidationError(f"Invalid departure time: {value!r}")
    if isinstance(value, int):
        return value
    text = str(value).strip()
    if text.lstrip("-").isdigit():
        return int(text)
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        raise ValidationError(
            f"Departure time must be unix seconds or ISO-8601, got {value!r}"
        )
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return int(parsed.timestamp())
