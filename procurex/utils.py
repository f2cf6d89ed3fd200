"""
Utility functions shared across the app. This includes:
- utcnow: naive UTC timestamp used for every stored datetime.
- parse_datetime / parse_optional_int: tolerant parsing of JSON request values.
"""

from __future__ import annotations

from datetime import datetime, timezone


def utcnow() -> datetime:
    """Naive UTC now (all DateTime columns store naive UTC)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def parse_datetime(value) -> datetime | None:
    """
    Parse an ISO-8601 timestamp from user input.

    - Aware values are converted to naive UTC.
    - Empty values return None.
    - Invalid values raise ValueError (routes turn that into InvalidRequest).
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        raw = str(value).strip()
        if raw == "":
            return None
        if raw.endswith("Z"):
            raw = raw[:-1] + "+00:00"
        parsed = datetime.fromisoformat(raw)

    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def parse_optional_int(value) -> int | None:
    """Parse optional int from JSON/form values."""
    if value is None:
        return None
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    raw = str(value).strip()
    if raw == "":
        return None
    try:
        return int(raw)
    except ValueError:
        return None
