"""Fan-out of committed changes to local subscribers.

Each subscription owns a bounded queue and a worker task, so delivery is
in-order per subscriber and a slow or failing callback never holds up the
others. A callback that raises or times out is logged and skipped: its
high-water mark still advances and the next change is delivered
(at-most-once).
"""

from __future__ import annotations

import asyncio
import inspect
import uuid
from collections.abc import Awaitable, Callable
from contextlib import suppress
from dataclasses import dataclass, field
from typing import Any

import structlog

from livesync.config.models import NotifierConfig
from livesync.errors import SubscriberError
from livesync.observability.metrics import EngineMetrics
from livesync.streaming.events import Op

logger = structlog.get_logger()


@dataclass(frozen=True, slots=True)
class Delivery:
    """What a subscriber callback receives."""

    topic: str
    op: Op
    record_id: str
    record: Any
    sequence_no: int


FilterPredicate = Callable[[Any], bool]
SubscriberCallback = Callable[[Delivery], Awaitable[None] | None]


@dataclass(frozen=True, slots=True)
class SubscriptionHandle:
    id: str
    topic: str


@dataclass(eq=False)
class Subscription:
    handle: SubscriptionHandle
    filter: FilterPredicate | None
    callback: SubscriberCallback
    queue: asyncio.Queue[Delivery]
    high_water_mark: int = 0
    # record_id -> last sequence_no enqueued for live records, guards against redelivery
    versions: dict[str, int] = field(default_factory=dict)
    task: asyncio.Task[None] | None = None


class FanoutNotifier:
    """Routes committed changes to the subscribers registered on their topic."""

    def __init__(
        self,
        config: NotifierConfig | None = None,
        *,
        metrics: EngineMetrics | None = None,
    ) -> None:
        self._config = config or NotifierConfig()
        self._metrics = metrics
        self._by_topic: dict[str, list[Subscription]] = {}
        self._by_id: dict[str, Subscription] = {}

    def register(
        self,
        topic: str,
        callback: SubscriberCallback,
        filter: FilterPredicate | None = None,  # noqa: A002
    ) -> SubscriptionHandle:
        """Register *callback* for changes on *topic* matching *filter*."""
        handle = SubscriptionHandle(id=uuid.uuid4().hex, topic=topic)
        sub = Subscription(
            handle=handle,
            filter=filter,
            callback=callback,
            queue=asyncio.Queue(maxsize=self._config.max_pending_per_subscriber),
        )
        sub.task = asyncio.get_running_loop().create_task(self._deliver_loop(sub))
        self._by_topic.setdefault(topic, []).append(sub)
        self._by_id[handle.id] = sub
        logger.info("notifier.registered", topic=topic, subscription_id=handle.id)
        return handle

    def unregister(self, handle: SubscriptionHandle) -> bool:
        sub = self._by_id.pop(handle.id, None)
        if sub is None:
            return False
        subs = self._by_topic.get(handle.topic, [])
        if sub in subs:
            subs.remove(sub)
        if not subs:
            self._by_topic.pop(handle.topic, None)
        if sub.task is not None:
            sub.task.cancel()
        logger.info(
            "notifier.unregistered", topic=handle.topic, subscription_id=handle.id
        )
        return True

    def publish(
        self,
        topic: str,
        record: Any,
        op: Op,
        sequence_no: int,
        *,
        record_id: str | None = None,
    ) -> int:
        """Queue a committed change for every matching subscriber; never blocks.

        Returns the number of subscribers the change was queued for.
        """
        rid = record_id if record_id is not None else str(getattr(record, "id", ""))
        delivery = Delivery(
            topic=topic, op=op, record_id=rid, record=record, sequence_no=sequence_no
        )
        queued = 0
        for sub in list(self._by_topic.get(topic, ())):
            if sequence_no > 0:
                last = sub.versions.get(rid)
                if last is not None and sequence_no <= last:
                    continue
                if op is Op.DELETE:
                    sub.versions.pop(rid, None)
                else:
                    sub.versions[rid] = sequence_no
            if sub.filter is not None:
                try:
                    if not sub.filter(record):
                        continue
                except Exception as exc:
                    logger.warning(
                        "notifier.filter_error",
                        topic=topic,
                        subscription_id=sub.handle.id,
                        sequence_no=sequence_no,
                        error=str(exc),
                    )
                    continue
            try:
                sub.queue.put_nowait(delivery)
            except asyncio.QueueFull:
                sub.high_water_mark = max(sub.high_water_mark, sequence_no)
                if self._metrics is not None:
                    self._metrics.record_dropped_delivery(topic)
                logger.error(
                    "notifier.queue_full",
                    topic=topic,
                    subscription_id=sub.handle.id,
                    sequence_no=sequence_no,
                )
                continue
            queued += 1
        return queued

    def high_water_mark(self, handle: SubscriptionHandle) -> int:
        sub = self._by_id.get(handle.id)
        if sub is None:
            msg = f"Unknown subscription: {handle.id}"
            raise KeyError(msg)
        return sub.high_water_mark

    def subscriptions(self, topic: str | None = None) -> list[dict[str, Any]]:
        subs = (
            self._by_topic.get(topic, []) if topic is not None else self._by_id.values()
        )
        return [
            {
                "subscription_id": s.handle.id,
                "topic": s.handle.topic,
                "high_water_mark": s.high_water_mark,
                "pending": s.queue.qsize(),
            }
            for s in subs
        ]

    async def drain(self) -> None:
        """Wait until every queued delivery has been attempted."""
        await asyncio.gather(*(s.queue.join() for s in list(self._by_id.values())))

    async def close(self) -> None:
        subs = list(self._by_id.values())
        for sub in subs:
            self.unregister(sub.handle)
        for sub in subs:
            if sub.task is not None:
                with suppress(asyncio.CancelledError):
                    await sub.task

    async def _deliver_loop(self, sub: Subscription) -> None:
        while True:
            delivery = await sub.queue.get()
            try:
                await self._deliver(sub, delivery)
            finally:
                sub.high_water_mark = max(sub.high_water_mark, delivery.sequence_no)
                sub.queue.task_done()

    async def _deliver(self, sub: Subscription, delivery: Delivery) -> None:
        try:
            result = sub.callback(delivery)
            if inspect.isawaitable(result):
                await asyncio.wait_for(
                    result, timeout=self._config.callback_timeout_seconds
                )
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            err = SubscriberError(sub.handle.id, delivery.sequence_no, exc)
            if self._metrics is not None:
                self._metrics.record_delivery(delivery.topic, failed=True)
            logger.error(
                "notifier.subscriber_error",
                topic=delivery.topic,
                subscription_id=sub.handle.id,
                record_id=delivery.record_id,
                sequence_no=delivery.sequence_no,
                error=str(err),
            )
            return
        if self._metrics is not None:
            self._metrics.record_delivery(delivery.topic)
