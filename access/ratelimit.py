"""
Sliding-window attempt limiter for second-factor verification.

Flask-Limiter throttles requests per client at the HTTP edge; this
limiter counts verification attempts per user inside the service, where
the enrollment state machine and step-up gate need the exact count.
"""
import threading
from collections import deque
from datetime import timedelta
from typing import Optional

from core.timestamps import Clock


class SlidingWindowLimiter:
    """Thread-safe per-key attempt counter over a trailing time window."""

    def __init__(self, max_attempts: int, window: timedelta, clock: Optional[Clock] = None):
        self.max_attempts = max_attempts
        self.window = window
        self._clock = clock or Clock()
        self._attempts: dict[str, deque] = {}
        self._lock = threading.Lock()

    def _prune(self, key: str) -> deque:
        cutoff = self._clock.now() - self.window
        attempts = self._attempts.setdefault(key, deque())
        while attempts and attempts[0] <= cutoff:
            attempts.popleft()
        return attempts

    def is_limited(self, key: str) -> bool:
        """True if the key has used its whole budget within the window."""
        with self._lock:
            return len(self._prune(key)) >= self.max_attempts

    def record_failure(self, key: str) -> int:
        """Record a failed attempt.

        Returns:
            Number of failures inside the window, including this one
        """
        with self._lock:
            attempts = self._prune(key)
            attempts.append(self._clock.now())
            return len(attempts)

    def reset(self, key: str) -> None:
        with self._lock:
            self._attempts.pop(key, None)

    def try_acquire(self, key: str) -> bool:
        """Claim one attempt slot if the budget allows it.

        The check and the claim happen under one lock, so concurrent callers
        can never claim more than ``max_attempts`` slots in a window. A
        successful attempt should call ``reset`` afterwards.
        """
        with self._lock:
            attempts = self._prune(key)
            if len(attempts) >= self.max_attempts:
                return False
            attempts.append(self._clock.now())
            return True

    def sweep(self) -> int:
        """Drop keys with no attempts left in the window.

        Returns:
            Number of keys removed
        """
        with self._lock:
            stale = [key for key in list(self._attempts) if not self._prune(key)]
            for key in stale:
                del self._attempts[key]
            return len(stale)
