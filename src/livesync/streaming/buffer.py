"""Ordering & de-dup buffer — the authoritative client-side view per topic.

Each topic keeps a ViewState (record_id → latest accepted record and its
sequence_no). Events are applied only when their sequence_no is strictly
greater than the one accepted for the record, so redelivery and out-of-order
arrival never regress the view. Updates/deletes for records whose insert has
not arrived yet are held for a bounded window and replayed once it does.
A newer insert for a live record starts a new lifecycle, as after a delete.

All methods are synchronous and never perform I/O; callers on one event loop
therefore serialize every mutation of a topic's view.
"""

from __future__ import annotations

import time
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Generic

import structlog

from livesync.config.models import BufferConfig
from livesync.errors import OrderingAnomaly
from livesync.observability.metrics import EngineMetrics
from livesync.streaming.events import (
    AppliedResult,
    Event,
    Op,
    PendingLocal,
    R,
)
from livesync.streaming.resolver import ConflictResolver, incoming_wins

logger = structlog.get_logger()

# Confirmed correlation ids remembered per topic to reject late local echoes
_CONFIRMED_CAPACITY = 10_000

LocalRecordFactory = Callable[[PendingLocal], R]


@dataclass(slots=True)
class ViewEntry(Generic[R]):
    record: R
    sequence_no: int
    server_timestamp: float
    # sequence_no of the insert that started this lifecycle; orders the view
    created_seq: int


@dataclass(slots=True)
class Tombstone:
    sequence_no: int
    server_timestamp: float


@dataclass(slots=True)
class _DeferredEvent:
    event: Event
    deadline: float


@dataclass(frozen=True, slots=True)
class Commit(Generic[R]):
    """A change that was accepted into a topic's view."""

    topic: str
    op: Op
    record_id: str
    record: R
    sequence_no: int
    superseded_local: str | None = None


CommitHook = Callable[[Commit[Any]], None]


class _TopicView(Generic[R]):
    def __init__(self) -> None:
        self.entries: dict[str, ViewEntry[R]] = {}
        self.tombstones: OrderedDict[str, Tombstone] = OrderedDict()
        self.deferred: dict[str, list[_DeferredEvent]] = {}
        self.pending: OrderedDict[str, R] = OrderedDict()
        self.confirmed: OrderedDict[str, None] = OrderedDict()
        self.high_water_mark = 0
        # every sequence_no <= contiguous_mark has been seen
        self.contiguous_mark = 0
        self.ahead: set[int] = set()

    @property
    def deferred_count(self) -> int:
        return sum(len(items) for items in self.deferred.values())

    def confirm(self, correlation_id: str) -> None:
        self.confirmed[correlation_id] = None
        self.confirmed.move_to_end(correlation_id)
        while len(self.confirmed) > _CONFIRMED_CAPACITY:
            self.confirmed.popitem(last=False)

    def bury(self, record_id: str, tombstone: Tombstone, capacity: int) -> None:
        self.tombstones[record_id] = tombstone
        self.tombstones.move_to_end(record_id)
        while len(self.tombstones) > capacity:
            self.tombstones.popitem(last=False)

    def observe(self, sequence_no: int) -> None:
        if sequence_no > self.contiguous_mark:
            self.ahead.add(sequence_no)
            self._close_gaps()

    def complete_through(self, sequence_no: int) -> None:
        if sequence_no > self.contiguous_mark:
            self.contiguous_mark = sequence_no
            self.ahead = {s for s in self.ahead if s > sequence_no}
        self._close_gaps()

    def _close_gaps(self) -> None:
        while self.contiguous_mark + 1 in self.ahead:
            self.contiguous_mark += 1
            self.ahead.discard(self.contiguous_mark)


class OrderingBuffer(Generic[R]):
    """Applies events to per-topic views in sequence order, dropping duplicates."""

    def __init__(
        self,
        resolver: ConflictResolver[R],
        local_factory: LocalRecordFactory[R],
        config: BufferConfig | None = None,
        *,
        on_commit: CommitHook | None = None,
        metrics: EngineMetrics | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._resolver = resolver
        self._local_factory = local_factory
        self._config = config or BufferConfig()
        self._on_commit = on_commit
        self._metrics = metrics
        self._clock = clock
        self._views: dict[str, _TopicView[R]] = {}

    # -- Public API -------------------------------------------------------------

    def apply(self, event: Event) -> AppliedResult:
        """Apply one event to its topic's view."""
        view = self._view(event.topic)
        now = self._clock()
        self._expire_topic(event.topic, view, now)
        self._observe(event.topic, view, event.sequence_no)
        result = self._apply(view, event, deadline=now + self._config.defer_window_seconds)
        if self._metrics is not None:
            self._metrics.record_applied(event.topic, result)
        logger.debug(
            "buffer.applied",
            topic=event.topic,
            record_id=event.record_id,
            op=event.op.value,
            sequence_no=event.sequence_no,
            result=result.value,
        )
        return result

    def apply_local(self, pending: PendingLocal) -> AppliedResult:
        """Show an optimistic record until the server's insert confirms it."""
        view = self._view(pending.topic)
        cid = pending.correlation_id
        if cid in view.confirmed or cid in view.pending:
            return AppliedResult.DUPLICATE_IGNORED
        record = self._local_factory(pending)
        view.pending[cid] = record
        self._emit(
            Commit(
                topic=pending.topic,
                op=Op.INSERT,
                record_id=pending.record_id,
                record=record,
                sequence_no=0,
            )
        )
        logger.debug("buffer.local_applied", topic=pending.topic, correlation_id=cid)
        return AppliedResult.ACCEPTED

    def discard_local(self, topic: str, correlation_id: str) -> bool:
        """Remove an optimistic record whose send failed."""
        view = self._views.get(topic)
        if view is None:
            return False
        record = view.pending.pop(correlation_id, None)
        if record is None:
            return False
        self._emit(
            Commit(
                topic=topic,
                op=Op.DELETE,
                record_id=f"local:{correlation_id}",
                record=record,
                sequence_no=0,
            )
        )
        logger.info("buffer.local_discarded", topic=topic, correlation_id=correlation_id)
        return True

    def current_view(self, topic: str) -> list[R]:
        """Ordered snapshot: confirmed records by insert order, then pending ones."""
        view = self._views.get(topic)
        if view is None:
            return []
        entries = sorted(view.entries.values(), key=lambda e: e.created_seq)
        return [e.record for e in entries] + list(view.pending.values())

    def get(self, topic: str, record_id: str) -> R | None:
        view = self._views.get(topic)
        if view is None:
            return None
        entry = view.entries.get(record_id)
        return entry.record if entry is not None else None

    def accepted_sequence_no(self, topic: str, record_id: str) -> int | None:
        view = self._views.get(topic)
        if view is None:
            return None
        entry = view.entries.get(record_id)
        if entry is not None:
            return entry.sequence_no
        tomb = view.tombstones.get(record_id)
        return tomb.sequence_no if tomb is not None else None

    def topic_high_water_mark(self, topic: str) -> int:
        """Largest sequence_no accepted on *topic* (0 when nothing was)."""
        view = self._views.get(topic)
        return view.high_water_mark if view is not None else 0

    def topic_contiguous_mark(self, topic: str) -> int:
        """Highest N such that every sequence_no up to N has reached the buffer.

        This is where a catch-up fetch has to start: events below the
        high-water mark that were never delivered still lie above it.
        """
        view = self._views.get(topic)
        return view.contiguous_mark if view is not None else 0

    def mark_caught_up(self, topic: str, sequence_no: int) -> None:
        """Record that the backend holds nothing unseen up to *sequence_no*.

        Called after a complete catch-up; numbers the backend never issued
        stop holding the contiguous mark back.
        """
        self._view(topic).complete_through(sequence_no)

    def deferred_count(self, topic: str) -> int:
        view = self._views.get(topic)
        return view.deferred_count if view is not None else 0

    def topics(self) -> list[str]:
        return list(self._views)

    def expire_deferred(self) -> int:
        """Drop deferred events whose window elapsed; returns how many were dropped."""
        now = self._clock()
        return sum(
            self._expire_topic(topic, view, now) for topic, view in self._views.items()
        )

    def drop_topic(self, topic: str) -> None:
        self._views.pop(topic, None)

    # -- Internals --------------------------------------------------------------

    def _view(self, topic: str) -> _TopicView[R]:
        view = self._views.get(topic)
        if view is None:
            view = _TopicView()
            self._views[topic] = view
        return view

    def _apply(self, view: _TopicView[R], event: Event, *, deadline: float) -> AppliedResult:
        entry = view.entries.get(event.record_id)
        if entry is not None:
            return self._apply_to_live(view, entry, event)

        tomb = view.tombstones.get(event.record_id)
        if tomb is not None:
            if event.sequence_no == tomb.sequence_no:
                return AppliedResult.DUPLICATE_IGNORED
            if event.sequence_no < tomb.sequence_no:
                self._anomaly(event, "older than delete", level="debug")
                return AppliedResult.STALE_IGNORED

        if event.op is Op.INSERT:
            return self._insert(view, event)
        return self._defer(view, event, deadline)

    def _apply_to_live(
        self, view: _TopicView[R], entry: ViewEntry[R], event: Event
    ) -> AppliedResult:
        seq = event.sequence_no
        if seq == entry.sequence_no:
            return AppliedResult.DUPLICATE_IGNORED
        if seq < entry.sequence_no:
            self._anomaly(event, "arrived after a newer version", level="debug")
            return AppliedResult.STALE_IGNORED

        if event.op is Op.INSERT:
            # deleted and created again; the delete is still in flight
            return self._insert(view, event)

        if event.op is Op.DELETE:
            if not incoming_wins(entry.server_timestamp, entry.sequence_no, event):
                self._anomaly(event, "delete superseded by newer write", level="debug")
                return AppliedResult.STALE_IGNORED
            del view.entries[event.record_id]
            view.bury(
                event.record_id,
                Tombstone(sequence_no=seq, server_timestamp=event.server_timestamp),
                self._config.max_tombstones_per_topic,
            )
            self._advance(view, seq)
            self._emit(
                Commit(
                    topic=event.topic,
                    op=Op.DELETE,
                    record_id=event.record_id,
                    record=entry.record,
                    sequence_no=seq,
                )
            )
            return AppliedResult.ACCEPTED

        winner = self._resolver.resolve(
            entry.record, event, existing_sequence_no=entry.sequence_no
        )
        if winner is entry.record:
            self._anomaly(event, "superseded by newer timestamp", level="debug")
            return AppliedResult.STALE_IGNORED
        entry.record = winner
        entry.sequence_no = seq
        entry.server_timestamp = event.server_timestamp
        self._advance(view, seq)
        self._emit(
            Commit(
                topic=event.topic,
                op=Op.UPDATE,
                record_id=event.record_id,
                record=winner,
                sequence_no=seq,
            )
        )
        return AppliedResult.ACCEPTED

    def _insert(self, view: _TopicView[R], event: Event) -> AppliedResult:
        record = self._resolver.build(event)
        # A newer insert after a delete starts a fresh lifecycle
        view.tombstones.pop(event.record_id, None)
        view.entries[event.record_id] = ViewEntry(
            record=record,
            sequence_no=event.sequence_no,
            server_timestamp=event.server_timestamp,
            created_seq=event.sequence_no,
        )
        superseded: str | None = None
        cid = event.correlation_id
        if cid is not None:
            view.confirm(cid)
            if view.pending.pop(cid, None) is not None:
                superseded = cid
                logger.debug("buffer.local_confirmed", topic=event.topic, correlation_id=cid)
        self._advance(view, event.sequence_no)
        self._emit(
            Commit(
                topic=event.topic,
                op=Op.INSERT,
                record_id=event.record_id,
                record=record,
                sequence_no=event.sequence_no,
                superseded_local=superseded,
            )
        )
        self._release_deferred(view, event.record_id)
        return AppliedResult.ACCEPTED

    def _defer(self, view: _TopicView[R], event: Event, deadline: float) -> AppliedResult:
        waiting = view.deferred.setdefault(event.record_id, [])
        if any(d.event.sequence_no == event.sequence_no for d in waiting):
            return AppliedResult.DUPLICATE_IGNORED
        waiting.append(_DeferredEvent(event=event, deadline=deadline))
        logger.debug(
            "buffer.deferred",
            topic=event.topic,
            record_id=event.record_id,
            sequence_no=event.sequence_no,
        )
        if view.deferred_count > self._config.max_deferred_per_topic:
            self._evict_oldest_deferred(view)
        return AppliedResult.DEFERRED

    def _release_deferred(self, view: _TopicView[R], record_id: str) -> None:
        waiting = view.deferred.pop(record_id, None)
        if not waiting:
            return
        now = self._clock()
        for item in sorted(waiting, key=lambda d: d.event.sequence_no):
            if item.deadline <= now:
                self._anomaly(item.event, "deferred window elapsed")
                continue
            try:
                result = self._apply(view, item.event, deadline=item.deadline)
            except Exception as exc:
                self._anomaly(item.event, f"replay failed: {exc}", level="error")
                continue
            if self._metrics is not None:
                self._metrics.record_deferred_resolved(item.event.topic, result)
            logger.debug(
                "buffer.deferred_resolved",
                topic=item.event.topic,
                record_id=record_id,
                sequence_no=item.event.sequence_no,
                result=result.value,
            )

    def _observe(self, topic: str, view: _TopicView[R], sequence_no: int) -> None:
        view.observe(sequence_no)
        if len(view.ahead) > self._config.max_gap_backlog_per_topic:
            resume_at = min(view.ahead)
            logger.warning(
                "buffer.sequence_gap_skipped",
                topic=topic,
                contiguous_mark=view.contiguous_mark,
                resume_at=resume_at,
            )
            view.complete_through(resume_at)

    def _expire_topic(self, topic: str, view: _TopicView[R], now: float) -> int:
        dropped = 0
        for record_id in list(view.deferred):
            keep: list[_DeferredEvent] = []
            for item in view.deferred[record_id]:
                if item.deadline <= now:
                    self._anomaly(item.event, "deferred window elapsed")
                    dropped += 1
                else:
                    keep.append(item)
            if keep:
                view.deferred[record_id] = keep
            else:
                del view.deferred[record_id]
        return dropped

    def _evict_oldest_deferred(self, view: _TopicView[R]) -> None:
        record_id, index = min(
            (
                (rid, i)
                for rid, items in view.deferred.items()
                for i in range(len(items))
            ),
            key=lambda pair: view.deferred[pair[0]][pair[1]].deadline,
        )
        item = view.deferred[record_id].pop(index)
        if not view.deferred[record_id]:
            del view.deferred[record_id]
        self._anomaly(item.event, "deferred capacity exceeded")

    def _advance(self, view: _TopicView[R], sequence_no: int) -> None:
        if sequence_no > view.high_water_mark:
            view.high_water_mark = sequence_no

    def _emit(self, commit: Commit[R]) -> None:
        if self._on_commit is not None:
            self._on_commit(commit)

    def _anomaly(self, event: Event, reason: str, *, level: str = "warning") -> None:
        anomaly = OrderingAnomaly(event.topic, event.record_id, event.sequence_no, reason)
        if self._metrics is not None and level != "debug":
            self._metrics.record_anomaly(event.topic)
        getattr(logger, level)(
            "buffer.ordering_anomaly",
            topic=event.topic,
            record_id=event.record_id,
            sequence_no=event.sequence_no,
            op=event.op.value,
            reason=reason,
            error=str(anomaly),
        )
