"""Canonical ID and timestamp factories.

All modules import from here instead of defining local _uuid()/_now() copies.

Timestamp Rule
--------------
Event timestamps travel as ISO-8601 strings in UTC with millisecond
precision and a ``Z`` suffix (``2024-05-01T12:00:00.000Z``).  Parsing
accepts any ISO-8601 form ``datetime.fromisoformat`` understands plus the
``Z`` suffix.
"""

from __future__ import annotations

import math
import uuid
from datetime import datetime, timezone


def new_id() -> str:
    """Generate a new UUID v4 string.  Use for event and correlation IDs."""
    return str(uuid.uuid4())


def utc_now() -> datetime:
    """Return the current UTC time as a timezone-aware datetime."""
    return datetime.now(timezone.utc)


def to_iso(moment: datetime) -> str:
    """Format *moment* as an ISO-8601 UTC string with a ``Z`` suffix."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    moment = moment.astimezone(timezone.utc)
    return moment.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def utc_now_iso() -> str:
    """Current instant as an ISO-8601 string."""
    return to_iso(utc_now())


def parse_iso(value: str) -> datetime:
    """Parse an ISO-8601 string; naive values are taken as UTC.

    Raises ``ValueError`` for malformed input.
    """
    text = value.strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def epoch_seconds(value: str) -> int:
    """Whole seconds since the Unix epoch for an ISO-8601 timestamp."""
    return math.floor(parse_iso(value).timestamp())
