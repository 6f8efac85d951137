"""Unit tests for LMS topic naming and typed domain records."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from livesync.domain.records import (
    ChatMessage,
    Doubt,
    DoubtUpvote,
    Notification,
    Priority,
    domain_local_record,
    domain_record,
    is_important,
    is_unread,
    open_doubts,
    record_type_for,
    unread_count,
    upvote_totals,
)
from livesync.domain.topics import (
    TopicKind,
    chat_room_id,
    doubts_topic,
    messages_topic,
    notifications_topic,
    parse_topic,
    upvotes_topic,
)
from livesync.streaming.events import Event, Op, PendingLocal


def _event(topic: str, record_id: str, payload: dict, seq: int = 1) -> Event:
    return Event(
        topic=topic,
        op=Op.INSERT,
        record_id=record_id,
        payload=payload,
        server_timestamp=float(seq),
        sequence_no=seq,
    )


class TestTopics:
    def test_builders(self):
        assert doubts_topic(4) == "doubts:session-4"
        assert upvotes_topic("4") == "upvotes:session-4"
        assert notifications_topic(7) == "notifications:user-7"

    def test_chat_room_is_symmetric(self):
        assert chat_room_id("bob", "alice") == chat_room_id("alice", "bob") == "alice.bob"
        assert messages_topic("bob", "alice") == "messages:room-alice.bob"

    def test_parse_topic(self):
        assert parse_topic("doubts:session-4") == (TopicKind.DOUBTS, "session-4")

    @pytest.mark.parametrize("topic", ["doubts", "doubts:", "polls:session-1"])
    def test_parse_topic_rejects_bad_names(self, topic: str):
        with pytest.raises(ValueError):
            parse_topic(topic)


class TestRecords:
    def test_variant_follows_topic(self):
        assert record_type_for("doubts:session-1") is Doubt
        assert record_type_for("upvotes:session-1") is DoubtUpvote
        assert record_type_for("messages:room-a.b") is ChatMessage
        assert record_type_for("notifications:user-1") is Notification

    def test_domain_record_from_event(self):
        record = domain_record(
            _event(
                "messages:room-a.b",
                "m1",
                {"sender_id": "a", "receiver_id": "b", "content": "hi", "extra": 1},
                seq=4,
            )
        )
        assert isinstance(record, ChatMessage)
        assert record.id == "m1"
        assert record.sequence_no == 4
        assert record.last_modified == 4.0
        assert record.is_read is False

    def test_domain_record_validates_payload(self):
        with pytest.raises(ValidationError):
            domain_record(_event("doubts:session-1", "d1", {"text": "missing ids"}))

    def test_records_are_immutable(self):
        record = domain_record(
            _event("upvotes:session-1", "u1", {"doubt_id": "d1", "user_id": "s1"})
        )
        with pytest.raises(ValidationError):
            record.user_id = "s2"

    def test_local_record_is_pending(self):
        pending = PendingLocal(
            topic="messages:room-a.b",
            correlation_id="c1",
            payload={"sender_id": "a", "receiver_id": "b", "content": "typing"},
            created_at=9.0,
        )
        record = domain_local_record(pending)
        assert record.id == "local:c1"
        assert record.pending is True
        assert record.correlation_id == "c1"
        assert record.last_modified == 9.0


class TestViewHelpers:
    def _notification(self, nid: str, **fields) -> Notification:
        return Notification(
            id=nid, last_modified=1.0, user_id="u", title="t", message="m", **fields
        )

    def test_unread_and_important(self):
        items = [
            self._notification("n1"),
            self._notification("n2", is_read=True, priority=Priority.URGENT),
            self._notification("n3", priority=Priority.HIGH),
        ]
        assert unread_count(items) == 2
        assert [n.id for n in items if is_unread(n)] == ["n1", "n3"]
        assert [n.id for n in items if is_important(n)] == ["n2", "n3"]

    def test_upvote_totals_count_each_user_once(self):
        votes = [
            DoubtUpvote(id="1", last_modified=1, doubt_id="d1", user_id="a"),
            DoubtUpvote(id="2", last_modified=1, doubt_id="d1", user_id="b"),
            DoubtUpvote(id="3", last_modified=1, doubt_id="d1", user_id="a"),
            DoubtUpvote(id="4", last_modified=1, doubt_id="d2", user_id="a"),
        ]
        assert upvote_totals(votes) == {"d1": 2, "d2": 1}

    def test_open_doubts_sorted_by_upvotes(self):
        def doubt(did: str, upvotes: int, answered: bool = False) -> Doubt:
            return Doubt(
                id=did,
                last_modified=1,
                live_session_id="s",
                student_id="x",
                text="?",
                upvotes=upvotes,
                answered=answered,
            )

        doubts = [doubt("a", 1), doubt("b", 5), doubt("c", 9, answered=True), doubt("d", 1)]
        assert [d.id for d in open_doubts(doubts)] == ["b", "a", "d"]
