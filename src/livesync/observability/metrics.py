"""In-process engine counters and a periodic reporter."""

from __future__ import annotations

import asyncio
from collections import Counter
from contextlib import suppress
from dataclasses import dataclass, field
from typing import Any

import structlog

from livesync.streaming.events import AppliedResult

logger = structlog.get_logger()


@dataclass
class TopicCounters:
    applied: Counter[str] = field(default_factory=Counter)
    deferred_resolved: int = 0
    anomalies: int = 0
    delivered: int = 0
    subscriber_errors: int = 0
    dropped_deliveries: int = 0
    disconnects: int = 0
    resyncs: int = 0
    catch_up_failures: int = 0
    catch_up_events: int = 0

    def as_dict(self) -> dict[str, Any]:
        return {
            "applied": {r.value: self.applied.get(r.value, 0) for r in AppliedResult},
            "deferred_resolved": self.deferred_resolved,
            "anomalies": self.anomalies,
            "delivered": self.delivered,
            "subscriber_errors": self.subscriber_errors,
            "dropped_deliveries": self.dropped_deliveries,
            "disconnects": self.disconnects,
            "resyncs": self.resyncs,
            "catch_up_failures": self.catch_up_failures,
            "catch_up_events": self.catch_up_events,
        }


class EngineMetrics:
    """Per-topic counters shared by the buffer, notifier and resync controllers."""

    def __init__(self) -> None:
        self._topics: dict[str, TopicCounters] = {}

    def topic(self, topic: str) -> TopicCounters:
        counters = self._topics.get(topic)
        if counters is None:
            counters = TopicCounters()
            self._topics[topic] = counters
        return counters

    def record_applied(self, topic: str, result: AppliedResult) -> None:
        self.topic(topic).applied[result.value] += 1

    def record_deferred_resolved(self, topic: str, result: AppliedResult) -> None:
        counters = self.topic(topic)
        counters.deferred_resolved += 1
        counters.applied[result.value] += 1

    def record_anomaly(self, topic: str) -> None:
        self.topic(topic).anomalies += 1

    def record_delivery(self, topic: str, *, failed: bool = False) -> None:
        counters = self.topic(topic)
        counters.delivered += 1
        if failed:
            counters.subscriber_errors += 1

    def record_dropped_delivery(self, topic: str) -> None:
        self.topic(topic).dropped_deliveries += 1

    def record_disconnect(self, topic: str) -> None:
        self.topic(topic).disconnects += 1

    def record_resync(self, topic: str, events: int) -> None:
        counters = self.topic(topic)
        counters.resyncs += 1
        counters.catch_up_events += events

    def record_catch_up_failure(self, topic: str) -> None:
        self.topic(topic).catch_up_failures += 1

    def snapshot(self) -> dict[str, dict[str, Any]]:
        return {topic: c.as_dict() for topic, c in self._topics.items()}


class MetricsReporter:
    """Periodically logs a metrics snapshot."""

    def __init__(self, metrics: EngineMetrics, interval: float = 60.0) -> None:
        self._metrics = metrics
        self._interval = interval
        self._task: asyncio.Task[None] | None = None

    async def start(self) -> None:
        self._task = asyncio.create_task(self._report_loop())

    async def stop(self) -> None:
        if self._task:
            self._task.cancel()
            with suppress(asyncio.CancelledError):
                await self._task
            self._task = None

    async def _report_loop(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            snapshot = self._metrics.snapshot()
            logger.info(
                "engine.metrics",
                topics=len(snapshot),
                anomalies=sum(t["anomalies"] for t in snapshot.values()),
                subscriber_errors=sum(t["subscriber_errors"] for t in snapshot.values()),
                per_topic=snapshot,
            )
