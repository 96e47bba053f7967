"""
core/clock.py -- Server clock and the timestamp wire format used by the stores.

Every component that compares against "now" takes a Clock (a zero-argument
callable returning an aware UTC datetime) instead of calling datetime.now()
itself. Production wiring passes utcnow; tests pass a FakeClock they can
advance, which keeps expiry and lockout behaviour deterministic.

Timestamps are persisted as fixed-width ISO 8601 strings. Fixed width matters:
the stores compare timestamps inside SQL WHERE clauses, and string order only
equals chronological order when every value has the same shape.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timezone

Clock = Callable[[], datetime]

_ISO_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: datetime) -> str:
    """Render an aware datetime as a fixed-width UTC string for storage."""
    if value.tzinfo is None:
        raise ValueError("naive datetimes are not accepted; pass an aware UTC datetime")
    return value.astimezone(timezone.utc).strftime(_ISO_FORMAT)


def from_iso(value: str | None) -> datetime | None:
    """Parse a stored timestamp back into an aware UTC datetime (None passes through)."""
    if not value:
        return None
    return datetime.strptime(value, _ISO_FORMAT).replace(tzinfo=timezone.utc)
