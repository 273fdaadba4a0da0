"""
Clock abstraction for time-relative segment operators.

Services take a ``Clock`` so tests can pin "now".
"""

from datetime import datetime, timezone
from typing import Optional, Protocol


class Clock(Protocol):
    def now(self) -> datetime: ...


class SystemClock:
    """Wall clock in UTC."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class FixedClock:
    """Clock frozen at a given instant."""

    def __init__(self, instant: datetime):
        self._instant = ensure_utc(instant)

    def now(self) -> datetime:
        return self._instant


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalize a timestamp to an aware UTC datetime.

    SQLite hands back naive datetimes; they are stored as UTC.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
