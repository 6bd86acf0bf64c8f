"""Shared fixtures for libratobuf tests."""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest

from libratobuf.transport import SubmissionResult


class FakeClock:
    """Millisecond clock that only moves when told to."""

    def __init__(self, start: float = 1_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, ms: float) -> None:
        self.now += ms


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Keep LIBRATO_* variables from leaking into configs."""
    for name in ("LIBRATO_EMAIL", "LIBRATO_TOKEN", "LIBRATO_SOURCE"):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def transport():
    """A transport mock that accepts every batch."""
    mock = MagicMock()
    mock.submit.side_effect = lambda gauges: SubmissionResult(
        success=True, gauge_count=len(gauges)
    )
    return mock
