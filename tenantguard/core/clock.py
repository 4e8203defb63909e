from __future__ import annotations

from datetime import datetime, timedelta, timezone
import threading


def utc_now() -> datetime:
    # Keep every timestamp timezone-aware UTC for expiry comparisons.
    return datetime.now(timezone.utc)


class VersionClock:
    """Monotonic source of version timestamps.

    Two versions written by this process never share an ``updated_at``, so
    "latest version wins" is well defined even for back-to-back writes of the
    same entity. Other processes are only ordered by wall-clock time.
    """

    _STEP = timedelta(microseconds=1)

    def __init__(self) -> None:
        self._last: datetime | None = None
        self._lock = threading.Lock()

    def next(self) -> datetime:
        with self._lock:
            now = utc_now()
            if self._last is not None and now <= self._last:
                now = self._last + self._STEP
            self._last = now
            return now


version_clock = VersionClock()


def next_version_timestamp() -> datetime:
    return version_clock.next()
