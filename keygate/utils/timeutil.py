"""
Timestamp helpers; all stored times are timezone-aware UTC
"""

from datetime import datetime, timezone
from typing import Optional, Union


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC"""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_timestamp(value: Union[str, int, float, datetime, None]) -> Optional[datetime]:
    """
    Parse an ISO string, epoch milliseconds or datetime into aware UTC

    Epoch values above 10**11 are treated as milliseconds, matching the
    timestamps operators paste from browser tooling.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return to_utc(value)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        seconds = value / 1000.0 if value > 10 ** 11 else float(value)
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    if isinstance(value, str):
        text = value.strip()
        if text.lstrip('-').isdigit():
            return parse_timestamp(int(text))
        if text.endswith('Z'):
            text = text[:-1] + '+00:00'
        return to_utc(datetime.fromisoformat(text))
    raise ValueError(f"Unsupported timestamp value: {value!r}")


def isoformat(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None
