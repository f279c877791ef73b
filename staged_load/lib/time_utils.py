"""Shared time helpers.

All timestamps written to the warehouse are naive UTC datetimes.
"""

from __future__ import annotations

from datetime import date, datetime, timezone
from typing import Any, Optional

__all__ = ["parse_timestamp", "utc_now"]


def utc_now() -> datetime:
    """Return the current UTC time as a naive datetime (no tzinfo)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Coerce config / CLI input into a naive UTC datetime.

    Accepts ``None``, datetimes, dates and ISO-8601 strings (a trailing
    ``Z`` or offset is converted to UTC).
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime(value.year, value.month, value.day)
    elif isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        parsed = datetime.fromisoformat(text)
    else:
        raise ValueError(f"Cannot interpret {value!r} as a timestamp")

    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed
