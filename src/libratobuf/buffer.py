"""In-memory buffer of raw samples awaiting aggregation.

Samples are stored per key, then per source, in insertion order. The buffer
is owned by a single engine; every operation takes the buffer lock so that
appends and drains are atomic with respect to each other.
"""

from __future__ import annotations

import re
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Iterable, Pattern

from libratobuf.errors import ConfigurationError

# key -> source -> samples
Samples = dict[str, dict[str, list["Sample"]]]


@dataclass
class Sample:
    """A single recorded value.

    Attributes:
        key: The metric key.
        value: The measured value.
        source: Source tag the value was recorded under.
        collected_at: When the value was recorded.
    """

    key: str
    value: float
    source: str
    collected_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


def compile_blacklist(patterns: Iterable[str | Pattern[str]] | None) -> list[Pattern[str]]:
    """Compile blacklist patterns.

    Raises:
        ConfigurationError: If a pattern is not a valid regular expression.
    """
    compiled = []
    for pattern in patterns or []:
        if isinstance(pattern, re.Pattern):
            compiled.append(pattern)
            continue
        try:
            compiled.append(re.compile(pattern))
        except (re.error, TypeError) as e:
            raise ConfigurationError(f"Invalid blacklist pattern {pattern!r}: {e}") from e
    return compiled


class SampleBuffer:
    """Stores samples per (key, source) until they are drained."""

    def __init__(self, blacklist: Iterable[str | Pattern[str]] | None = None):
        """Initialize the buffer.

        Args:
            blacklist: Regular expressions; keys matching any of them are
                silently dropped by record().
        """
        self.blacklist = compile_blacklist(blacklist)
        self._samples: Samples = {}
        self._lock = threading.Lock()

    def is_blacklisted(self, key: str) -> bool:
        """Check whether a key matches a blacklist pattern."""
        return any(pattern.search(key) for pattern in self.blacklist)

    def record(self, key: str, value: float, source: str) -> bool:
        """Append a sample.

        Args:
            key: The metric key.
            value: The measured value.
            source: The source tag.

        Returns:
            True if the sample was buffered, False if the key is blacklisted.
        """
        if self.is_blacklisted(key):
            return False

        sample = Sample(key=key, value=value, source=source)
        with self._lock:
            self._samples.setdefault(key, {}).setdefault(source, []).append(sample)
        return True

    def snapshot(self, keys: Iterable[str] | None = None) -> Samples:
        """Copy the samples currently buffered for some keys.

        Args:
            keys: Keys to copy. Defaults to every buffered key.

        Returns:
            A copy that later appends do not affect.
        """
        with self._lock:
            if keys is None:
                keys = list(self._samples)
            return {
                key: {source: list(samples) for source, samples in self._samples[key].items()}
                for key in keys
                if key in self._samples
            }

    def drain(self, keys: Iterable[str], snapshot: Samples | None = None) -> None:
        """Remove buffered samples for the given keys.

        Args:
            keys: Keys to drain.
            snapshot: If given, only the samples contained in this snapshot
                are removed, matched by identity. Samples appended after the
                snapshot was taken stay buffered for the next cycle, even if
                the key was cleared in between.
        """
        with self._lock:
            for key in keys:
                if snapshot is None:
                    self._samples.pop(key, None)
                    continue

                by_source = self._samples.get(key)
                if by_source is None or key not in snapshot:
                    continue
                for source, taken in snapshot[key].items():
                    samples = by_source.get(source, [])
                    drained = 0
                    for buffered, sample in zip(samples, taken):
                        if buffered is not sample:
                            break
                        drained += 1
                    remaining = samples[drained:]
                    if remaining:
                        by_source[source] = remaining
                    else:
                        by_source.pop(source, None)
                if not by_source:
                    del self._samples[key]

    def keys_present(self) -> set[str]:
        """Get every key with at least one buffered sample."""
        with self._lock:
            return {key for key, by_source in self._samples.items() if any(by_source.values())}

    def count(self, key: str) -> int:
        """Count the samples buffered for a key across all sources."""
        with self._lock:
            return sum(len(samples) for samples in self._samples.get(key, {}).values())

    def __len__(self) -> int:
        with self._lock:
            return sum(
                len(samples)
                for by_source in self._samples.values()
                for samples in by_source.values()
            )
