"""Tagged-variant domain records synchronized by the engine.

Doubts, upvotes, chat messages and notifications share one capability set
(``id`` + ``last_modified``) so a single engine instance merges them all;
``domain_record`` picks the variant from the event's topic.
"""

from __future__ import annotations

from collections.abc import Iterable
from enum import StrEnum
from typing import Any, Self

from pydantic import BaseModel, ConfigDict

from livesync.domain.topics import TopicKind, parse_topic
from livesync.streaming.events import Event, PendingLocal


class DomainRecord(BaseModel):
    """Fields every synchronized record carries besides its payload."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    id: str
    last_modified: float
    sequence_no: int = 0
    pending: bool = False
    correlation_id: str | None = None

    @classmethod
    def from_event(cls, event: Event) -> Self:
        data: dict[str, Any] = {
            **(event.payload or {}),
            "id": event.record_id,
            "last_modified": event.server_timestamp,
            "sequence_no": event.sequence_no,
            "correlation_id": event.correlation_id,
        }
        return cls.model_validate(data)

    @classmethod
    def from_pending(cls, pending: PendingLocal) -> Self:
        data: dict[str, Any] = {
            **pending.payload,
            "id": pending.record_id,
            "last_modified": pending.created_at,
            "pending": True,
            "correlation_id": pending.correlation_id,
        }
        return cls.model_validate(data)


class Doubt(DomainRecord):
    """A question raised by a student during a live session."""

    live_session_id: str
    student_id: str
    text: str
    anonymous: bool = False
    upvotes: int = 0
    answered: bool = False
    student_name: str | None = None
    created_at: str | None = None


class DoubtUpvote(DomainRecord):
    doubt_id: str
    user_id: str


class MessageType(StrEnum):
    TEXT = "text"
    FILE = "file"
    IMAGE = "image"


class ChatMessage(DomainRecord):
    sender_id: str
    receiver_id: str
    content: str
    message_type: MessageType = MessageType.TEXT
    is_read: bool = False
    created_at: str | None = None


class NotificationType(StrEnum):
    ENROLLMENT = "enrollment"
    ANNOUNCEMENT = "announcement"
    ASSIGNMENT = "assignment"
    LIVE_SESSION = "live_session"
    DOUBT = "doubt"
    POLL = "poll"
    SYSTEM = "system"


class Priority(StrEnum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"


class Notification(DomainRecord):
    user_id: str
    type: NotificationType = NotificationType.SYSTEM
    title: str
    message: str
    is_read: bool = False
    priority: Priority = Priority.NORMAL
    course_id: str | None = None
    action_url: str | None = None


RECORD_TYPES: dict[TopicKind, type[DomainRecord]] = {
    TopicKind.DOUBTS: Doubt,
    TopicKind.UPVOTES: DoubtUpvote,
    TopicKind.MESSAGES: ChatMessage,
    TopicKind.NOTIFICATIONS: Notification,
}


def record_type_for(topic: str) -> type[DomainRecord]:
    kind, _ = parse_topic(topic)
    return RECORD_TYPES[kind]


def domain_record(event: Event) -> DomainRecord:
    """``RecordFactory`` that builds the variant matching the event's topic."""
    return record_type_for(event.topic).from_event(event)


def domain_local_record(pending: PendingLocal) -> DomainRecord:
    return record_type_for(pending.topic).from_pending(pending)


# -- View helpers --------------------------------------------------------------


def unread_count(notifications: Iterable[Notification]) -> int:
    return sum(1 for n in notifications if not n.is_read)


def is_unread(record: Any) -> bool:
    """Filter predicate: unread notifications/messages only."""
    return not getattr(record, "is_read", True)


def is_important(record: Any) -> bool:
    """Filter predicate: high or urgent notifications."""
    return getattr(record, "priority", None) in (Priority.HIGH, Priority.URGENT)


def upvote_totals(upvotes: Iterable[DoubtUpvote]) -> dict[str, int]:
    """Count upvotes per doubt, one per (doubt, user)."""
    voters: dict[str, set[str]] = {}
    for vote in upvotes:
        voters.setdefault(vote.doubt_id, set()).add(vote.user_id)
    return {doubt_id: len(users) for doubt_id, users in voters.items()}


def open_doubts(doubts: Iterable[Doubt]) -> list[Doubt]:
    """Unanswered doubts, most upvoted first (stable for ties)."""
    return sorted((d for d in doubts if not d.answered), key=lambda d: -d.upvotes)
