"""
Clock utilities for heartbeat staleness and deploy timeouts.

The control plane never reads wall-clock time directly. It asks a clock
object, so tests and replays can move time forward explicitly.
"""

import threading
from datetime import datetime, timedelta, timezone
from typing import Optional


def utc_now() -> datetime:
    """Current wall-clock time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


class SystemClock:
    """Clock backed by wall-clock time."""

    def now(self) -> datetime:
        return utc_now()


class ManualClock:
    """
    Clock that only moves when told to.

    Args:
        start: Initial time, defaults to the current wall-clock time
    """

    def __init__(self, start: Optional[datetime] = None):
        self._now = start or utc_now()
        self._lock = threading.Lock()

    def now(self) -> datetime:
        with self._lock:
            return self._now

    def advance(self, seconds: float) -> datetime:
        """Move the clock forward and return the new time."""
        with self._lock:
            self._now = self._now + timedelta(seconds=seconds)
            return self._now

    def set(self, when: datetime) -> None:
        with self._lock:
            self._now = when


def elapsed_seconds(start_time: datetime, end_time: Optional[datetime] = None) -> float:
    """
    Calculate elapsed time in seconds between two timestamps.

    Args:
        start_time: Start timestamp
        end_time: End timestamp, defaults to current wall-clock time

    Returns:
        Elapsed time in seconds
    """
    if end_time is None:
        end_time = utc_now()

    return (end_time - start_time).total_seconds()


def format_timestamp(ts: Optional[datetime]) -> Optional[str]:
    """ISO8601 string for logs and audit records."""
    return ts.isoformat() if ts is not None else None


def ensure_utc(ts: datetime) -> datetime:
    """Treat a naive datetime as UTC; aware values are returned unchanged."""
    if ts.tzinfo is None:
        return ts.replace(tzinfo=timezone.utc)
    return ts


def parse_timestamp(value: str) -> datetime:
    """Parse an ISO8601 timestamp, treating naive values as UTC."""
    return ensure_utc(datetime.fromisoformat(value.replace('Z', '+00:00')))
