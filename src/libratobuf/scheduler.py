"""Per-key submission readiness.

Every key carries its own period. A single polling loop checks all keys at a
fixed cadence, so a key is detected ready at most one cadence tick late.
"""

from __future__ import annotations

import threading
import time
from typing import TYPE_CHECKING, Callable, Iterable

if TYPE_CHECKING:
    from libratobuf.definitions import MetricRegistry

# Lower bound on the polling cadence
MIN_POLLING_INTERVAL_MS = 1000


def now_ms() -> float:
    """Current wall clock time in milliseconds."""
    return time.time() * 1000


def polling_interval_ms(period_ms: int) -> float:
    """Polling cadence for an engine-wide default period."""
    return max(period_ms / 20, MIN_POLLING_INTERVAL_MS)


class ReadinessTracker:
    """Tracks when each key was last submitted."""

    def __init__(self, registry: MetricRegistry, clock: Callable[[], float] = now_ms):
        """Initialize the tracker.

        Args:
            registry: Registry used to look up each key's period.
            clock: Returns the current time in milliseconds.
        """
        self.registry = registry
        self.clock = clock
        self._last_submitted_at: dict[str, float] = {}
        self._lock = threading.Lock()

    def last_submitted_at(self, key: str) -> float | None:
        """Get the last submission time of a key, or None if never submitted."""
        with self._lock:
            return self._last_submitted_at.get(key)

    def is_ready(self, key: str, now: float | None = None) -> bool:
        """Check whether a key's period has elapsed since its last submission."""
        if now is None:
            now = self.clock()
        last = self.last_submitted_at(key)
        if last is None:
            return True
        return now - last >= self.registry.resolve(key).period_ms

    def ready_keys(self, keys: Iterable[str]) -> list[str]:
        """Filter keys down to those ready for submission.

        Args:
            keys: Candidate keys, usually every buffered key.

        Returns:
            The ready keys, in the order given.
        """
        now = self.clock()
        return [key for key in keys if self.is_ready(key, now)]

    def advance(self, keys: Iterable[str], now: float | None = None) -> None:
        """Record that keys were included in a flush cycle.

        A key submitted before moves forward by exactly its period, so
        polling granularity does not accumulate as drift. A key submitted
        for the first time is stamped with the current time.

        Args:
            keys: Keys included in the cycle.
            now: Time the cycle started. Defaults to the clock.
        """
        if now is None:
            now = self.clock()
        with self._lock:
            for key in keys:
                last = self._last_submitted_at.get(key)
                if last is None:
                    self._last_submitted_at[key] = now
                else:
                    self._last_submitted_at[key] = last + self.registry.resolve(key).period_ms

    def reset(self, keys: Iterable[str] | None = None) -> None:
        """Forget submission times so keys become ready again."""
        with self._lock:
            if keys is None:
                self._last_submitted_at.clear()
            else:
                for key in keys:
                    self._last_submitted_at.pop(key, None)
