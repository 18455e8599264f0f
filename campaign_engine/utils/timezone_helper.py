# campaign_engine/utils/timezone_helper.py
from datetime import datetime, timezone
from typing import Any, Optional


def utc_now() -> datetime:
    """Current time as naive UTC, the form MongoDB hands datetimes back in"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    """
    Normalise an incoming datetime for storage and comparison

    Aware datetimes are converted to UTC and stripped; naive ones are assumed
    to already be UTC.
    """
    if value is None:
        return None
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def coerce_datetime(value: Any) -> Optional[datetime]:
    """Accept a datetime, an epoch in milliseconds or an ISO string"""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return to_naive_utc(value)
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value / 1000, timezone.utc).replace(tzinfo=None)
    if isinstance(value, str):
        text = value.strip()
        if text.endswith(("Z", "z")):
            text = text[:-1] + "+00:00"
        return to_naive_utc(datetime.fromisoformat(text))
    raise ValueError(f"Unsupported datetime value: {value!r}")
