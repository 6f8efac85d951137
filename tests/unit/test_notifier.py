"""Unit tests for subscriber fan-out."""

from __future__ import annotations

import asyncio
from types import SimpleNamespace

import pytest

from livesync.config.models import NotifierConfig
from livesync.observability.metrics import EngineMetrics
from livesync.streaming.events import Op
from livesync.streaming.notifier import Delivery, FanoutNotifier

TOPIC = "notifications:user-7"


def _record(rid: str, **fields):
    return SimpleNamespace(id=rid, **fields)


@pytest.mark.asyncio
class TestFanoutNotifier:
    async def test_delivers_in_order(self):
        notifier = FanoutNotifier()
        received: list[int] = []
        notifier.register(TOPIC, lambda d: received.append(d.sequence_no))
        for seq in (1, 2, 3):
            notifier.publish(TOPIC, _record(f"n{seq}"), Op.INSERT, seq)
        await notifier.drain()
        assert received == [1, 2, 3]
        await notifier.close()

    async def test_failing_callback_still_advances(self):
        metrics = EngineMetrics()
        notifier = FanoutNotifier(metrics=metrics)
        received: list[int] = []

        def callback(delivery: Delivery) -> None:
            if delivery.sequence_no == 3:
                raise RuntimeError("render failed")
            received.append(delivery.sequence_no)

        handle = notifier.register(TOPIC, callback)
        notifier.publish(TOPIC, _record("n3"), Op.INSERT, 3)
        await notifier.drain()
        assert notifier.high_water_mark(handle) == 3

        notifier.publish(TOPIC, _record("n4"), Op.INSERT, 4)
        await notifier.drain()
        assert received == [4]
        assert notifier.high_water_mark(handle) == 4
        assert metrics.snapshot()[TOPIC]["subscriber_errors"] == 1
        await notifier.close()

    async def test_failure_is_isolated_between_subscribers(self):
        notifier = FanoutNotifier()
        healthy: list[int] = []

        def broken(delivery: Delivery) -> None:
            raise ValueError("boom")

        notifier.register(TOPIC, broken)
        notifier.register(TOPIC, lambda d: healthy.append(d.sequence_no))
        notifier.publish(TOPIC, _record("n1"), Op.INSERT, 1)
        notifier.publish(TOPIC, _record("n2"), Op.INSERT, 2)
        await notifier.drain()
        assert healthy == [1, 2]
        await notifier.close()

    async def test_slow_async_callback_times_out(self):
        notifier = FanoutNotifier(NotifierConfig(callback_timeout_seconds=0.05))
        received: list[int] = []

        async def callback(delivery: Delivery) -> None:
            if delivery.sequence_no == 1:
                await asyncio.sleep(10)
            received.append(delivery.sequence_no)

        handle = notifier.register(TOPIC, callback)
        notifier.publish(TOPIC, _record("n1"), Op.INSERT, 1)
        notifier.publish(TOPIC, _record("n2"), Op.INSERT, 2)
        await asyncio.wait_for(notifier.drain(), timeout=2)
        assert received == [2]
        assert notifier.high_water_mark(handle) == 2
        await notifier.close()

    async def test_filter_selects_records(self):
        notifier = FanoutNotifier()
        received: list[str] = []
        notifier.register(
            TOPIC, lambda d: received.append(d.record_id), filter=lambda r: not r.is_read
        )
        notifier.publish(TOPIC, _record("n1", is_read=False), Op.INSERT, 1)
        notifier.publish(TOPIC, _record("n2", is_read=True), Op.INSERT, 2)
        await notifier.drain()
        assert received == ["n1"]
        await notifier.close()

    async def test_raising_filter_skips_change(self):
        notifier = FanoutNotifier()
        received: list[str] = []
        notifier.register(TOPIC, lambda d: received.append(d.record_id), filter=lambda r: r.missing)
        assert notifier.publish(TOPIC, _record("n1"), Op.INSERT, 1) == 0
        await notifier.drain()
        assert received == []
        await notifier.close()

    async def test_same_version_delivered_at_most_once(self):
        notifier = FanoutNotifier()
        received: list[tuple[str, int]] = []
        notifier.register(TOPIC, lambda d: received.append((d.record_id, d.sequence_no)))
        notifier.publish(TOPIC, _record("n1"), Op.INSERT, 1)
        notifier.publish(TOPIC, _record("n1"), Op.INSERT, 1)
        notifier.publish(TOPIC, _record("n1"), Op.UPDATE, 2)
        await notifier.drain()
        assert received == [("n1", 1), ("n1", 2)]
        await notifier.close()

    async def test_local_changes_are_not_deduplicated(self):
        notifier = FanoutNotifier()
        received: list[Op] = []
        notifier.register(TOPIC, lambda d: received.append(d.op))
        notifier.publish(TOPIC, _record("local:c1"), Op.INSERT, 0)
        notifier.publish(TOPIC, _record("local:c1"), Op.DELETE, 0)
        await notifier.drain()
        assert received == [Op.INSERT, Op.DELETE]
        await notifier.close()

    async def test_other_topics_not_delivered(self):
        notifier = FanoutNotifier()
        received: list[int] = []
        notifier.register(TOPIC, lambda d: received.append(d.sequence_no))
        assert notifier.publish("notifications:user-8", _record("n1"), Op.INSERT, 1) == 0
        await notifier.drain()
        assert received == []
        await notifier.close()

    async def test_unregister_stops_delivery(self):
        notifier = FanoutNotifier()
        received: list[int] = []
        handle = notifier.register(TOPIC, lambda d: received.append(d.sequence_no))
        assert notifier.unregister(handle) is True
        assert notifier.unregister(handle) is False
        assert notifier.publish(TOPIC, _record("n1"), Op.INSERT, 1) == 0
        assert notifier.subscriptions(TOPIC) == []
        with pytest.raises(KeyError):
            notifier.high_water_mark(handle)
        await notifier.close()

    async def test_full_queue_drops_change(self):
        metrics = EngineMetrics()
        notifier = FanoutNotifier(
            NotifierConfig(max_pending_per_subscriber=1), metrics=metrics
        )
        received: list[int] = []
        handle = notifier.register(TOPIC, lambda d: received.append(d.sequence_no))
        notifier.publish(TOPIC, _record("n1"), Op.INSERT, 1)
        notifier.publish(TOPIC, _record("n2"), Op.INSERT, 2)
        await notifier.drain()
        assert received == [1]
        assert notifier.high_water_mark(handle) == 2
        assert metrics.snapshot()[TOPIC]["dropped_deliveries"] == 1
        await notifier.close()

    async def test_delete_forgets_record_version(self):
        notifier = FanoutNotifier()
        received: list[tuple[str, int]] = []
        handle = notifier.register(TOPIC, lambda d: received.append((d.op.value, d.sequence_no)))
        notifier.publish(TOPIC, _record("n1"), Op.INSERT, 1)
        notifier.publish(TOPIC, _record("n1"), Op.UPDATE, 2)
        notifier.publish(TOPIC, _record("n1"), Op.DELETE, 3)
        await notifier.drain()
        assert received == [("insert", 1), ("update", 2), ("delete", 3)]
        assert notifier._by_id[handle.id].versions == {}
        await notifier.close()
