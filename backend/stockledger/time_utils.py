from __future__ import annotations

import math
from datetime import datetime, timedelta, timezone
from typing import Optional, Union

# Event times more than this far ahead of the server clock are rejected.
FUTURE_TOLERANCE = timedelta(minutes=2)


def utcnow() -> datetime:
    """Server-side 'now' in UTC (naive, canonical)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def parse_iso_datetime(value: Optional[str]) -> Optional[datetime]:
    """
    Parse an ISO-8601 datetime string and normalize to UTC-naive datetime.

    - None / "" -> None
    - "YYYY-MM-DDTHH:MM" (naive) is interpreted as UTC
    - "...Z" or "...+/-HH:MM" is converted to UTC and tzinfo is stripped
    """
    if value is None:
        return None
    s = value.strip()
    if not s:
        return None

    if s.endswith("Z"):
        s = s[:-1] + "+00:00"

    dt = datetime.fromisoformat(s)
    return to_utc_naive(dt)


def to_utc_naive(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt
    return dt.astimezone(timezone.utc).replace(tzinfo=None)


def normalize_event_time(value: Union[datetime, str, None]) -> datetime:
    """
    Normalize a logical event time to canonical UTC-naive.

    None means "now". Raises ValueError for unparseable input.
    """
    if value is None:
        return utcnow()
    if isinstance(value, datetime):
        return to_utc_naive(value)
    if isinstance(value, str):
        dt = parse_iso_datetime(value)
        if dt is None:
            raise ValueError("invalid occurred_at")
        return dt
    raise ValueError("invalid occurred_at")


def is_in_future(dt: datetime, *, now: Optional[datetime] = None) -> bool:
    return dt > (now or utcnow()) + FUTURE_TOLERANCE


def ceil_days_between(start: datetime, end: datetime) -> int:
    """Whole days from start to end, rounded up (a partial day counts)."""
    seconds = (end - start).total_seconds()
    return math.ceil(seconds / 86400)


def to_utc_z(dt: Optional[datetime]) -> Optional[str]:
    """
    Serializes datetime to ISO-8601 with trailing 'Z'.
    If dt is naive, it is treated as UTC.
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    dt_utc = dt.astimezone(timezone.utc).replace(microsecond=0)
    return dt_utc.isoformat().replace("+00:00", "Z")
