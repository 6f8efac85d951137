"""Reconnection / resync controller — one per subscribed topic.

State machine::

    Disconnected --(adapter reconnects)--> Resyncing --(catch-up ok)--> Connected
         ^                                     |                           |
         +-------(catch-up failed, retry)------+                           |
         +------------------------(transport drop)-------------------------+

On entering Resyncing the controller pulls every event after the topic's
contiguous mark (the point up to which nothing is missing), in bounded
pages, and applies them through the buffer before any further live event is
consumed, so nothing from the gap is lost or applied twice.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from contextlib import aclosing
from typing import Any

import structlog

from livesync.config.models import BackoffConfig, ResyncConfig
from livesync.errors import CatchUpFailure
from livesync.observability.metrics import EngineMetrics
from livesync.sources.backoff import retrying
from livesync.sources.base import CatchUpSource, EventStream
from livesync.streaming.buffer import OrderingBuffer
from livesync.streaming.events import (
    Connected,
    ConnectionState,
    Disconnected,
    Event,
)

logger = structlog.get_logger()

StateListener = Callable[[str, ConnectionState], None]


class ResyncController:
    """Supervises one topic's stream and closes gaps after reconnects."""

    def __init__(
        self,
        topic: str,
        stream: EventStream,
        catch_up: CatchUpSource,
        buffer: OrderingBuffer[Any],
        config: ResyncConfig | None = None,
        backoff: BackoffConfig | None = None,
        *,
        metrics: EngineMetrics | None = None,
        on_state_change: StateListener | None = None,
    ) -> None:
        self._topic = topic
        self._stream = stream
        self._catch_up = catch_up
        self._buffer = buffer
        self._config = config or ResyncConfig()
        self._backoff = backoff or BackoffConfig()
        self._metrics = metrics
        self._on_state_change = on_state_change
        self._state = ConnectionState.DISCONNECTED

    @property
    def topic(self) -> str:
        return self._topic

    @property
    def state(self) -> ConnectionState:
        return self._state

    async def run(self) -> None:
        """Consume the topic until cancelled or the stream closes."""
        try:
            async with aclosing(self._stream.subscribe(self._topic)) as items:
                async for item in items:
                    if isinstance(item, Connected):
                        await self._on_connected(item)
                    elif isinstance(item, Disconnected):
                        self._set_state(ConnectionState.DISCONNECTED)
                    else:
                        self._apply(item)
        finally:
            self._set_state(ConnectionState.DISCONNECTED)

    async def resync(self) -> int:
        """Catch up from the contiguous mark; returns how many events were fetched."""
        fetched = 0
        async for attempt in retrying(
            self._backoff,
            CatchUpFailure,
            event="resync.retry",
            topic=self._topic,
        ):
            with attempt:
                self._set_state(ConnectionState.RESYNCING)
                fetched = await self._catch_up_once()
            outcome = attempt.retry_state.outcome
            if (
                outcome is not None
                and outcome.failed
                and isinstance(outcome.exception(), CatchUpFailure)
            ):
                self._on_catch_up_failed()
        if self._metrics is not None:
            self._metrics.record_resync(self._topic, fetched)
        self._set_state(ConnectionState.CONNECTED)
        logger.info(
            "resync.completed",
            topic=self._topic,
            fetched=fetched,
            high_water_mark=self._buffer.topic_high_water_mark(self._topic),
            contiguous_mark=self._buffer.topic_contiguous_mark(self._topic),
        )
        return fetched

    async def _on_connected(self, signal: Connected) -> None:
        if not signal.reconnect and not self._config.catch_up_on_connect:
            self._set_state(ConnectionState.CONNECTED)
            return
        try:
            await self.resync()
        except CatchUpFailure as exc:
            # retries exhausted: keep streaming but stay visibly not live
            self._set_state(ConnectionState.DISCONNECTED)
            logger.error("resync.gave_up", topic=self._topic, error=str(exc))

    async def _catch_up_once(self) -> int:
        since = self._buffer.topic_contiguous_mark(self._topic)
        through = since
        page_size = self._config.page_size
        total = 0
        while True:
            page = await self._fetch_page(since, page_size)
            for event in page:
                self._apply(event)
                through = max(through, event.sequence_no)
            total += len(page)
            if len(page) < page_size:
                break
            last = page[-1].sequence_no
            if last <= since:
                logger.warning(
                    "resync.page_not_advancing", topic=self._topic, since=since
                )
                break
            since = last
        self._buffer.mark_caught_up(self._topic, through)
        return total

    async def _fetch_page(self, since: int, limit: int) -> list[Any]:
        try:
            return await asyncio.wait_for(
                self._catch_up.fetch_since(self._topic, since, limit=limit),
                timeout=self._config.fetch_timeout_seconds,
            )
        except CatchUpFailure:
            raise
        except TimeoutError as exc:
            raise CatchUpFailure(self._topic, since, "fetch timed out") from exc
        except Exception as exc:
            raise CatchUpFailure(self._topic, since, str(exc)) from exc

    def _apply(self, event: Event) -> None:
        try:
            self._buffer.apply(event)
        except Exception as exc:
            logger.error(
                "resync.apply_failed",
                topic=self._topic,
                record_id=event.record_id,
                sequence_no=event.sequence_no,
                error=str(exc),
            )

    def _on_catch_up_failed(self) -> None:
        self._set_state(ConnectionState.DISCONNECTED)
        if self._metrics is not None:
            self._metrics.record_catch_up_failure(self._topic)

    def _set_state(self, state: ConnectionState) -> None:
        if state == self._state:
            return
        previous, self._state = self._state, state
        logger.info(
            "resync.state_changed",
            topic=self._topic,
            previous=previous.value,
            state=state.value,
        )
        if self._on_state_change is not None:
            try:
                self._on_state_change(self._topic, state)
            except Exception as exc:
                logger.error(
                    "resync.state_listener_error", topic=self._topic, error=str(exc)
                )
