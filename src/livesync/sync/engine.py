"""Engine orchestrator — stream → buffer → resolver → notifier lifecycle.

One ``RealtimeEngine`` is built per client session with its collaborators
injected; there is no module-level state. Each subscribed topic gets a
``ResyncController`` task that owns the topic's stream; committed changes fan
out to registered subscribers.
"""

from __future__ import annotations

import asyncio
import time
import uuid
from collections.abc import Callable
from contextlib import suppress
from typing import Any, Generic

import structlog

from livesync.config.models import EngineConfig
from livesync.observability.http_health import HealthServer
from livesync.observability.metrics import EngineMetrics, MetricsReporter
from livesync.sources.base import CatchUpSource, Transport
from livesync.sources.factory import create_backend
from livesync.sources.stream import ReconnectingStream
from livesync.streaming.buffer import Commit, LocalRecordFactory, OrderingBuffer
from livesync.streaming.events import (
    AppliedResult,
    ConnectionState,
    Event,
    Op,
    PendingLocal,
    R,
    RecordFactory,
    local_record,
    synced_record,
)
from livesync.streaming.notifier import (
    FanoutNotifier,
    FilterPredicate,
    SubscriberCallback,
    SubscriptionHandle,
)
from livesync.streaming.resolver import ConflictResolver
from livesync.sync.controller import ResyncController, StateListener

logger = structlog.get_logger()


class RealtimeEngine(Generic[R]):
    """Keeps consistent live views of many topics for one client session.

    Per-topic views are mutated only from the event loop through synchronous
    buffer calls, so all writes to one topic are serialized. Topics converge
    independently of each other.
    """

    def __init__(
        self,
        config: EngineConfig,
        transport: Transport,
        catch_up: CatchUpSource,
        *,
        record_factory: RecordFactory[R] = synced_record,  # type: ignore[assignment]
        local_factory: LocalRecordFactory[R] = local_record,  # type: ignore[assignment]
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._config = config
        self._transport = transport
        self._catch_up = catch_up
        self._metrics = EngineMetrics()
        self._notifier = FanoutNotifier(config.notifier, metrics=self._metrics)
        self._buffer: OrderingBuffer[R] = OrderingBuffer(
            ConflictResolver(record_factory),
            local_factory,
            config.buffer,
            on_commit=self._on_commit,
            metrics=self._metrics,
            clock=clock,
        )
        self._stream = ReconnectingStream(
            transport, config.backoff, metrics=self._metrics
        )
        self._controllers: dict[str, ResyncController] = {}
        self._tasks: dict[str, asyncio.Task[None]] = {}
        self._connected: dict[str, asyncio.Event] = {}
        self._state_listeners: list[StateListener] = []
        self._sweeper: asyncio.Task[None] | None = None
        self._health_server: HealthServer | None = None
        self._reporter: MetricsReporter | None = None

    @classmethod
    def from_config(cls, config: EngineConfig, **kwargs: Any) -> RealtimeEngine[Any]:
        """Build an engine wired to the backend selected by ``transport_mode``."""
        transport, catch_up = create_backend(config)
        return cls(config, transport, catch_up, **kwargs)

    @property
    def transport(self) -> Transport:
        return self._transport

    @property
    def metrics(self) -> EngineMetrics:
        return self._metrics

    @property
    def notifier(self) -> FanoutNotifier:
        return self._notifier

    # -- Lifecycle --------------------------------------------------------------

    async def start(self) -> None:
        """Start the deferred-event sweeper, configured topics and health server."""
        if self._sweeper is None:
            self._sweeper = asyncio.create_task(self._sweep_loop())
        for topic in self._config.topics:
            await self.subscribe(topic)
        if self._config.health_enabled and self._health_server is None:
            self._health_server = HealthServer(
                port=self._config.health_port,
                readiness_check=self.health,
            )
            await self._health_server.start()
        interval = self._config.metrics_log_interval_seconds
        if interval > 0 and self._reporter is None:
            self._reporter = MetricsReporter(self._metrics, interval)
            await self._reporter.start()
        logger.info(
            "engine.started",
            engine_id=self._config.engine_id,
            transport_mode=self._config.transport_mode.value,
            topics=list(self._config.topics),
        )

    async def stop(self) -> None:
        """Close every topic, subscriber and background task."""
        if self._health_server is not None:
            await self._health_server.stop()
            self._health_server = None
        if self._reporter is not None:
            await self._reporter.stop()
            self._reporter = None
        for topic in list(self._tasks):
            await self.unsubscribe(topic)
        if self._sweeper is not None:
            self._sweeper.cancel()
            with suppress(asyncio.CancelledError):
                await self._sweeper
            self._sweeper = None
        await self._notifier.close()
        await self._transport.close()
        close = getattr(self._catch_up, "close", None)
        if close is not None and self._catch_up is not self._transport:
            await close()
        logger.info("engine.stopped", engine_id=self._config.engine_id)

    async def __aenter__(self) -> RealtimeEngine[R]:
        await self.start()
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.stop()

    # -- Topics -----------------------------------------------------------------

    async def subscribe(self, topic: str) -> None:
        """Start streaming *topic* (no-op if already subscribed)."""
        if topic in self._tasks:
            return
        controller = ResyncController(
            topic,
            self._stream,
            self._catch_up,
            self._buffer,
            self._config.resync,
            self._config.backoff,
            metrics=self._metrics,
            on_state_change=self._on_state_change,
        )
        self._controllers[topic] = controller
        self._connected.setdefault(topic, asyncio.Event()).clear()
        task = asyncio.create_task(controller.run(), name=f"livesync:{topic}")
        task.add_done_callback(self._on_controller_done)
        self._tasks[topic] = task
        logger.info("engine.topic_subscribed", topic=topic)

    async def unsubscribe(self, topic: str, *, forget: bool = False) -> None:
        """Stop streaming *topic*; aborts an in-flight catch-up fetch.

        The last known view is kept for display unless *forget* is set.
        """
        task = self._tasks.pop(topic, None)
        if task is not None:
            task.cancel()
        await self._stream.unsubscribe(topic)
        if task is not None:
            with suppress(asyncio.CancelledError):
                await task
        self._controllers.pop(topic, None)
        if forget:
            self._buffer.drop_topic(topic)
        logger.info("engine.topic_unsubscribed", topic=topic, forget=forget)

    def topics(self) -> list[str]:
        return list(self._controllers)

    def connection_state(self, topic: str) -> ConnectionState:
        controller = self._controllers.get(topic)
        return controller.state if controller is not None else ConnectionState.DISCONNECTED

    async def wait_until_connected(self, topic: str, timeout: float | None = None) -> None:
        event = self._connected.setdefault(topic, asyncio.Event())
        await asyncio.wait_for(event.wait(), timeout=timeout)

    def add_state_listener(self, listener: StateListener) -> None:
        self._state_listeners.append(listener)

    # -- Views & subscribers ----------------------------------------------------

    def current_view(self, topic: str) -> list[R]:
        """Ordered snapshot of *topic* for initial render; never blocks."""
        return self._buffer.current_view(topic)

    def register(
        self,
        topic: str,
        callback: SubscriberCallback,
        filter: FilterPredicate | None = None,  # noqa: A002
    ) -> SubscriptionHandle:
        return self._notifier.register(topic, callback, filter)

    def unregister(self, handle: SubscriptionHandle) -> bool:
        return self._notifier.unregister(handle)

    async def drain(self) -> None:
        """Wait until every queued delivery reached its subscriber."""
        await self._notifier.drain()

    # -- Direct writes ----------------------------------------------------------

    def apply(self, event: Event) -> AppliedResult:
        """Apply an authoritative event obtained outside the stream (e.g. an API response)."""
        return self._buffer.apply(event)

    def apply_local(
        self,
        topic: str,
        payload: dict[str, Any],
        correlation_id: str | None = None,
    ) -> PendingLocal:
        """Show *payload* optimistically until the server echoes *correlation_id*."""
        pending = PendingLocal(
            topic=topic,
            correlation_id=correlation_id or uuid.uuid4().hex,
            payload=payload,
        )
        self._buffer.apply_local(pending)
        return pending

    def discard_local(self, topic: str, correlation_id: str) -> bool:
        return self._buffer.discard_local(topic, correlation_id)

    # -- Health -----------------------------------------------------------------

    async def health(self) -> dict[str, Any]:
        topics = []
        for topic, controller in self._controllers.items():
            state = controller.state
            topics.append(
                {
                    "topic": topic,
                    "state": state.value,
                    "status": "ok" if state == ConnectionState.CONNECTED else "stale",
                    "view_size": len(self._buffer.current_view(topic)),
                    "deferred": self._buffer.deferred_count(topic),
                    "high_water_mark": self._buffer.topic_high_water_mark(topic),
                    "contiguous_mark": self._buffer.topic_contiguous_mark(topic),
                    "subscribers": len(self._notifier.subscriptions(topic)),
                }
            )
        degraded = any(t["status"] != "ok" for t in topics)
        return {
            "engine_id": self._config.engine_id,
            "status": "degraded" if degraded else "ok",
            "topics": topics,
            "metrics": self._metrics.snapshot(),
        }

    # -- Internals --------------------------------------------------------------

    def _on_commit(self, commit: Commit[Any]) -> None:
        if commit.superseded_local is not None:
            # subscribers drop the optimistic row before seeing the confirmed one
            self._notifier.publish(
                commit.topic,
                commit.record,
                Op.DELETE,
                0,
                record_id=f"local:{commit.superseded_local}",
            )
        self._notifier.publish(
            commit.topic,
            commit.record,
            commit.op,
            commit.sequence_no,
            record_id=commit.record_id,
        )

    def _on_state_change(self, topic: str, state: ConnectionState) -> None:
        event = self._connected.setdefault(topic, asyncio.Event())
        if state == ConnectionState.CONNECTED:
            event.set()
        else:
            event.clear()
        for listener in list(self._state_listeners):
            listener(topic, state)

    def _on_controller_done(self, task: asyncio.Task[None]) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                "engine.topic_failed", task=task.get_name(), error=str(exc), exc_info=exc
            )

    async def _sweep_loop(self) -> None:
        interval = self._config.buffer.sweep_interval_seconds
        while True:
            await asyncio.sleep(interval)
            dropped = self._buffer.expire_deferred()
            if dropped:
                logger.warning("engine.deferred_expired", dropped=dropped)
