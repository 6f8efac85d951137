"""Topic naming conventions for the LMS realtime collections."""

from __future__ import annotations

from enum import StrEnum


class TopicKind(StrEnum):
    """Entity collections that are synchronized live."""

    DOUBTS = "doubts"
    UPVOTES = "upvotes"
    MESSAGES = "messages"
    NOTIFICATIONS = "notifications"


def doubts_topic(session_id: str | int) -> str:
    """Doubts raised during one live session: ``doubts:session-<id>``."""
    return f"{TopicKind.DOUBTS}:session-{session_id}"


def upvotes_topic(session_id: str | int) -> str:
    return f"{TopicKind.UPVOTES}:session-{session_id}"


def notifications_topic(user_id: str | int) -> str:
    return f"{TopicKind.NOTIFICATIONS}:user-{user_id}"


def chat_room_id(user_a: str, user_b: str) -> str:
    """Stable room id for a direct conversation, independent of who started it."""
    first, second = sorted((user_a, user_b))
    return f"{first}.{second}"


def messages_topic(user_a: str, user_b: str) -> str:
    return f"{TopicKind.MESSAGES}:room-{chat_room_id(user_a, user_b)}"


def parse_topic(topic: str) -> tuple[TopicKind, str]:
    """Split a topic into its kind and scope (``doubts:session-4`` → DOUBTS, ``session-4``)."""
    kind, sep, scope = topic.partition(":")
    if not sep or not scope:
        msg = f"Topic '{topic}' must look like '<kind>:<scope>'"
        raise ValueError(msg)
    try:
        return TopicKind(kind), scope
    except ValueError as exc:
        known = ", ".join(k.value for k in TopicKind)
        msg = f"Unknown topic kind '{kind}' in '{topic}' (expected one of: {known})"
        raise ValueError(msg) from exc
