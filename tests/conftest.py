"""Shared fixtures for the dispatch queue tests."""

import pytest

from helpers import DummyTransport, FakeClock
from mail_dispatch.core import DispatchQueue
from mail_dispatch.retry import RetryPolicy


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def transport() -> DummyTransport:
    return DummyTransport()


@pytest.fixture
def make_queue(clock):
    """Build a queue on the fake clock with no rate limit and no send pause."""

    def factory(transport, **kwargs) -> DispatchQueue:
        kwargs.setdefault("rate_limit_per_minute", 0)
        kwargs.setdefault("send_interval", 0)
        kwargs.setdefault("retry_policy", RetryPolicy(max_attempts=3, retry_delay=5.0))
        kwargs.setdefault("clock", clock)
        return DispatchQueue(transport, **kwargs)

    return factory
