"""Timezone-aware UTC clock utilities.

All auth code reads time through a Clock so TTLs, TOTP windows and rate
limits can be driven deterministically in tests.
"""

import threading
from datetime import datetime, timedelta, timezone


def now() -> datetime:
    """Return the current UTC time as a timezone-aware datetime."""
    return datetime.now(timezone.utc)


class Clock:
    """Wall clock. Injected into services instead of calling now() directly."""

    def now(self) -> datetime:
        return now()


class FrozenClock(Clock):
    """Manually advanced clock for tests."""

    def __init__(self, start: datetime | None = None):
        self._current = start or now()
        self._lock = threading.Lock()

    def now(self) -> datetime:
        with self._lock:
            return self._current

    def advance(self, **delta) -> datetime:
        """Move the clock forward, e.g. ``clock.advance(minutes=11)``."""
        with self._lock:
            self._current = self._current + timedelta(**delta)
            return self._current
