"""In-memory backend: per-topic append-only logs with live push connections.

Implements both ``Transport`` and ``CatchUpSource``. Connection drops, failed
opens, failed or slow catch-up fetches and raw redeliveries can be scripted,
which makes it the backend for tests, demos and ``livesync replay``.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import AsyncIterator
from typing import Any

import structlog

from livesync.errors import CatchUpFailure, TransportError
from livesync.streaming.events import Event, Op

logger = structlog.get_logger()


class MemoryConnection:
    """Queue-backed push connection for one topic."""

    def __init__(self, backend: InMemoryBackend, topic: str) -> None:
        self._backend = backend
        self.topic = topic
        self._queue: asyncio.Queue[Event | TransportError | None] = asyncio.Queue()
        self.closed = False

    def push(self, item: Event | TransportError) -> None:
        if not self.closed:
            self._queue.put_nowait(item)

    async def __aiter__(self) -> AsyncIterator[Event]:
        while True:
            item = await self._queue.get()
            if item is None:
                return
            if isinstance(item, TransportError):
                self.closed = True
                raise item
            yield item

    async def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._queue.put_nowait(None)
        self._backend._detach(self)


class InMemoryBackend:
    """Authoritative event log plus realtime fan-out, all in process."""

    def __init__(self) -> None:
        self._logs: dict[str, list[Event]] = {}
        self._connections: dict[str, list[MemoryConnection]] = {}
        self._next_seq: dict[str, int] = {}
        self._fail_opens = 0
        self._fail_fetches = 0
        self.fetch_delay = 0.0
        self.fetch_calls: list[tuple[str, int]] = []
        self.open_calls: list[str] = []

    # -- Authoring --------------------------------------------------------------

    def emit(
        self,
        topic: str,
        op: Op | str,
        record_id: str,
        payload: dict[str, Any] | None = None,
        *,
        server_timestamp: float | None = None,
        correlation_id: str | None = None,
        live: bool = True,
    ) -> Event:
        """Commit a new event with the next sequence_no for *topic*."""
        seq = self._next_seq.get(topic, 0) + 1
        event = Event(
            topic=topic,
            op=Op(op),
            record_id=record_id,
            payload=payload,
            server_timestamp=server_timestamp if server_timestamp is not None else time.time(),
            sequence_no=seq,
            correlation_id=correlation_id,
        )
        self.append(event, live=live)
        return event

    def append(self, event: Event, *, live: bool = True) -> None:
        """Commit *event* to the log; push it to open connections when *live*."""
        self._logs.setdefault(event.topic, []).append(event)
        self._logs[event.topic].sort(key=lambda e: e.sequence_no)
        if event.sequence_no > self._next_seq.get(event.topic, 0):
            self._next_seq[event.topic] = event.sequence_no
        if live:
            self.deliver(event)

    def deliver(self, event: Event) -> int:
        """Push *event* to open connections without logging it (redelivery)."""
        conns = list(self._connections.get(event.topic, ()))
        for conn in conns:
            conn.push(event)
        return len(conns)

    def log(self, topic: str) -> list[Event]:
        return list(self._logs.get(topic, ()))

    # -- Failure scripting ------------------------------------------------------

    def drop(self, topic: str) -> int:
        """Fail every open connection on *topic*."""
        conns = list(self._connections.get(topic, ()))
        for conn in conns:
            conn.push(TransportError(topic, "connection dropped"))
            self._detach(conn)
        logger.debug("memory_backend.dropped", topic=topic, connections=len(conns))
        return len(conns)

    def fail_next_opens(self, count: int) -> None:
        self._fail_opens = count

    def fail_next_fetches(self, count: int) -> None:
        self._fail_fetches = count

    def connection_count(self, topic: str) -> int:
        return len(self._connections.get(topic, ()))

    # -- Transport / CatchUpSource ----------------------------------------------

    async def open(self, topic: str) -> MemoryConnection:
        self.open_calls.append(topic)
        if self._fail_opens > 0:
            self._fail_opens -= 1
            raise TransportError(topic, "open refused")
        conn = MemoryConnection(self, topic)
        self._connections.setdefault(topic, []).append(conn)
        return conn

    async def fetch_since(
        self, topic: str, sequence_no: int, *, limit: int = 500
    ) -> list[Event]:
        self.fetch_calls.append((topic, sequence_no))
        if self.fetch_delay > 0:
            await asyncio.sleep(self.fetch_delay)
        if self._fail_fetches > 0:
            self._fail_fetches -= 1
            raise CatchUpFailure(topic, sequence_no, "backend unavailable")
        events = [e for e in self._logs.get(topic, ()) if e.sequence_no > sequence_no]
        return events[:limit]

    async def close(self) -> None:
        for conns in list(self._connections.values()):
            for conn in list(conns):
                await conn.close()
        self._connections.clear()

    def _detach(self, conn: MemoryConnection) -> None:
        conns = self._connections.get(conn.topic)
        if conns and conn in conns:
            conns.remove(conn)
