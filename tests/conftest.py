"""Shared pytest fixtures."""

import pytest

from swrq import QueryClient, create_query_client


class FakeClock:
    """Millisecond clock advanced by hand."""

    def __init__(self, start: int = 1_000_000) -> None:
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


@pytest.fixture
def clock() -> FakeClock:
    """Create a fresh FakeClock for each test."""
    return FakeClock()


@pytest.fixture
def client(clock: FakeClock) -> QueryClient:
    """Create a QueryClient without retries, driven by the fake clock."""
    return create_query_client(clock=clock, retry=0)
