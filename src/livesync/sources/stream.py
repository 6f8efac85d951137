"""Reconnecting event stream — wraps any Transport with the backoff policy.

Yields ``Connected`` after every successful (re)open, the topic's events as
the backend delivers them, and ``Disconnected`` when the transport drops,
then reopens with exponential backoff (full jitter). Closing the iterator or
cancelling its consumer closes the upstream connection immediately.
"""

from __future__ import annotations

from collections.abc import AsyncIterator

import structlog

from livesync.config.models import BackoffConfig
from livesync.errors import TransportError
from livesync.observability.metrics import EngineMetrics
from livesync.sources.backoff import retrying
from livesync.sources.base import Transport, TransportConnection
from livesync.streaming.events import Connected, Disconnected, StreamItem

logger = structlog.get_logger()


class ReconnectingStream:
    """EventStream over a Transport with automatic reconnection."""

    def __init__(
        self,
        transport: Transport,
        backoff: BackoffConfig | None = None,
        *,
        metrics: EngineMetrics | None = None,
    ) -> None:
        self._transport = transport
        self._backoff = backoff or BackoffConfig()
        self._metrics = metrics
        self._connections: dict[str, TransportConnection] = {}
        self._closed: set[str] = set()

    async def subscribe(self, topic: str) -> AsyncIterator[StreamItem]:
        """Lazily stream *topic* until unsubscribed or the iterator is closed."""
        self._closed.discard(topic)
        reconnect = False
        while topic not in self._closed:
            conn = await self._open(topic)
            if topic in self._closed:
                await conn.close()
                break
            self._connections[topic] = conn
            logger.info("stream.connected", topic=topic, reconnect=reconnect)
            error: TransportError | None = None
            try:
                yield Connected(topic=topic, reconnect=reconnect)
                async for event in conn:
                    yield event
            except TransportError as exc:
                error = exc
            finally:
                self._connections.pop(topic, None)
                await conn.close()

            if topic in self._closed:
                break
            if error is None:
                error = TransportError(topic, "stream ended unexpectedly")
            if self._metrics is not None:
                self._metrics.record_disconnect(topic)
            logger.warning("stream.disconnected", topic=topic, error=str(error))
            yield Disconnected(topic=topic, error=error)
            reconnect = True
        logger.info("stream.closed", topic=topic)

    async def unsubscribe(self, topic: str) -> None:
        self._closed.add(topic)
        conn = self._connections.pop(topic, None)
        if conn is not None:
            await conn.close()

    async def _open(self, topic: str) -> TransportConnection:
        async for attempt in retrying(
            self._backoff, TransportError, event="stream.reconnect_failed", topic=topic
        ):
            with attempt:
                return await self._transport.open(topic)
        msg = "unreachable: retrying either returns or reraises"
        raise AssertionError(msg)
