"""Shared fixtures for the request throttle tests."""

import pytest


class FakeClock:
    """Manually advanced monotonic clock for token buckets."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()
