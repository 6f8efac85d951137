"""Backend-agnostic protocols for push streams and catch-up fetches.

Every backend (in-memory, Supabase Realtime) implements ``Transport`` and
``CatchUpSource``; the reconnect policy and the engine never know which one
is in use.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from typing import Protocol, runtime_checkable

from livesync.streaming.events import Event, StreamItem


@runtime_checkable
class TransportConnection(Protocol):
    """One open push subscription to a topic.

    Iterating yields events until :meth:`close` is called (iteration ends) or
    the transport fails (iteration raises ``TransportError``).
    """

    def __aiter__(self) -> AsyncIterator[Event]: ...

    async def close(self) -> None: ...


@runtime_checkable
class Transport(Protocol):
    """Opens push subscriptions; raises ``TransportError`` when it cannot."""

    async def open(self, topic: str) -> TransportConnection: ...

    async def close(self) -> None: ...


@runtime_checkable
class CatchUpSource(Protocol):
    """Pull API used to close gaps after a reconnect."""

    async def fetch_since(
        self, topic: str, sequence_no: int, *, limit: int
    ) -> list[Event]:
        """Return up to *limit* events with sequence_no > *sequence_no*, ordered."""
        ...


@runtime_checkable
class EventStream(Protocol):
    """Lazy, reconnecting stream of events and connection signals per topic."""

    def subscribe(self, topic: str) -> AsyncIterator[StreamItem]: ...

    async def unsubscribe(self, topic: str) -> None: ...
