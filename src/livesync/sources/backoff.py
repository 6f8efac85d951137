"""Shared reconnect/retry policy: exponential backoff with full jitter."""

from __future__ import annotations

from collections.abc import Callable

import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    stop_never,
    wait_random_exponential,
)
from tenacity.stop import stop_base
from tenacity.wait import wait_base

from livesync.config.models import BackoffConfig

logger = structlog.get_logger()


def backoff_wait(config: BackoffConfig) -> wait_base:
    """Full jitter: sleep uniformly in ``[0, min(cap, base * 2**(n-1))]``."""
    return wait_random_exponential(
        multiplier=config.base_seconds, max=config.cap_seconds
    )


def backoff_stop(config: BackoffConfig) -> stop_base:
    if config.max_attempts > 0:
        return stop_after_attempt(config.max_attempts)
    return stop_never


def log_before_sleep(event: str, **context: object) -> Callable[[RetryCallState], None]:
    def _log(state: RetryCallState) -> None:
        exc = state.outcome.exception() if state.outcome is not None else None
        logger.warning(
            event,
            attempt=state.attempt_number,
            backoff_seconds=(
                round(state.next_action.sleep, 3) if state.next_action else 0.0
            ),
            error=str(exc) if exc is not None else None,
            **context,
        )

    return _log


def retrying(
    config: BackoffConfig,
    exc_types: type[BaseException] | tuple[type[BaseException], ...],
    *,
    event: str,
    **context: object,
) -> AsyncRetrying:
    """Build an ``AsyncRetrying`` that applies the configured backoff policy."""
    return AsyncRetrying(
        retry=retry_if_exception_type(exc_types),
        wait=backoff_wait(config),
        stop=backoff_stop(config),
        before_sleep=log_before_sleep(event, **context),
        reraise=True,
    )
