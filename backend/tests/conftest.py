"""Pytest configuration and fixtures."""

import pytest

from mdview.market.simulator import SyntheticDataSource


class FakeClock:
    """Nanosecond clock that advances by ``step`` on every read."""

    def __init__(self, start: int = 1_704_067_200_000_000_000, step: int = 100_000_000) -> None:
        self.now = start
        self.step = step

    def __call__(self) -> int:
        self.now += self.step
        return self.now


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def synthetic_source(fake_clock) -> SyntheticDataSource:
    """Seeded synthetic source with fast live pacing and a deterministic clock."""
    return SyntheticDataSource(seed=42, live_gap=0.001, clock=fake_clock)
