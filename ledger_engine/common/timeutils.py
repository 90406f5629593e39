"""
Timestamp normalization for ledger records.

Ledger dates arrive in whatever shape the writer had at hand: calendar dates
from a form, ISO strings from the durable store, epoch numbers from imports.
All of them become tz-aware UTC datetimes here.

- naive datetimes are read as UTC
- 'YYYY-MM-DD' strings and `date` objects are midnight UTC
- epoch numbers >= 1e12 are milliseconds
"""

from __future__ import annotations

from datetime import date, datetime, timezone
from typing import Any, Optional

UTC = timezone.utc

# Epoch values at or above this are milliseconds (1e12 s is ~33,000 years out).
_EPOCH_MS_THRESHOLD = 1e12


def utc_now() -> datetime:
    return datetime.now(tz=UTC)


def as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def _from_string(raw: str) -> datetime:
    s = raw.strip()
    if not s:
        raise ValueError("timestamp string is empty")
    if s[-1] in "Zz":
        s = f"{s[:-1]}+00:00"
    try:
        return as_utc(datetime.fromisoformat(s))
    except ValueError:
        raise ValueError(f"not an ISO-8601 timestamp: {raw!r}") from None


def parse_timestamp(value: Any) -> datetime:
    """
    Coerce a persisted timestamp (datetime, date, ISO string, epoch number)
    into a tz-aware UTC datetime. Raises TypeError / ValueError otherwise.
    """
    if isinstance(value, datetime):
        return as_utc(value)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=UTC)
    if isinstance(value, str):
        return _from_string(value)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        seconds = value / 1000.0 if abs(value) >= _EPOCH_MS_THRESHOLD else float(value)
        return datetime.fromtimestamp(seconds, tz=UTC)
    raise TypeError(f"cannot read a timestamp from {type(value).__name__}")


def parse_optional_timestamp(value: Any) -> Optional[datetime]:
    if value is None or (isinstance(value, str) and not value.strip()):
        return None
    return parse_timestamp(value)


def isoformat_utc(value: Optional[datetime]) -> Optional[str]:
    return None if value is None else as_utc(value).isoformat()
