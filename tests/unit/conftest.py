"""Shared fixtures for engine unit tests."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable

import pytest

from livesync.config.models import BackoffConfig
from livesync.sources.memory import InMemoryBackend

WaitUntil = Callable[..., Awaitable[None]]


async def _wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Poll *predicate* until it holds or *timeout* elapses."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            msg = "condition not met before timeout"
            raise AssertionError(msg)
        await asyncio.sleep(0.005)


@pytest.fixture
def fast_backoff() -> BackoffConfig:
    return BackoffConfig(base_seconds=0.001, cap_seconds=0.01)


@pytest.fixture
def wait_until() -> WaitUntil:
    return _wait_until


@pytest.fixture
def backend() -> InMemoryBackend:
    return InMemoryBackend()
