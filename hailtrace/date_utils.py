"""Timestamp normalization helpers shared by the source adapters."""
from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import Any

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

_NUMERIC_RE = re.compile(r"^-?\d+(?:\.\d+)?$")
# Values above this are treated as epoch milliseconds rather than seconds.
_MILLIS_THRESHOLD = 10_000_000_000


def _ensure_utc(value: datetime) -> datetime:
    dt = value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def format_datetime_utc(value: datetime) -> str:
    dt = _ensure_utc(value)
    if dt.microsecond:
        text = dt.isoformat(timespec="milliseconds")
    else:
        text = dt.isoformat(timespec="seconds")
    return text.replace("+00:00", "Z")


def from_epoch(value: float) -> datetime | None:
    """Interpret a bare number as epoch seconds or milliseconds."""
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if number < 0:
        return None
    if number >= _MILLIS_THRESHOLD:
        number = number / 1000.0
    try:
        return datetime.fromtimestamp(number, timezone.utc)
    except (OverflowError, OSError, ValueError):
        return None


def _parse_datetime_token(token: str) -> datetime | None:
    cleaned = token.strip()
    if not cleaned:
        return None
    if _NUMERIC_RE.match(cleaned):
        return from_epoch(float(cleaned))
    try:
        return _ensure_utc(datetime.fromisoformat(cleaned.replace("Z", "+00:00")))
    except ValueError:
        pass
    for fmt in ("%Y-%m-%d %H:%M:%S", "%Y-%m-%dT%H:%M:%S.%f", "%Y/%m/%d %H:%M:%S"):
        try:
            return datetime.strptime(cleaned, fmt).replace(tzinfo=timezone.utc)
        except ValueError:
            continue
    return None


def parse_timestamp(value: Any) -> datetime | None:
    """Convert ISO strings, epoch numbers, or datetimes into aware UTC datetimes."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        return _ensure_utc(value)
    if isinstance(value, (int, float)):
        return from_epoch(value)
    if isinstance(value, str):
        return _parse_datetime_token(value)
    return None


def millis_between(start: datetime, end: datetime) -> int:
    return int(round((end - start).total_seconds() * 1000))
