"""Exception taxonomy for the merge engine.

None of these are fatal: transport and catch-up failures are retried,
ordering anomalies and subscriber failures are logged and isolated.
"""

from __future__ import annotations


class LiveSyncError(Exception):
    """Base class for all engine errors."""


class TransportError(LiveSyncError):
    """The push connection for a topic dropped or could not be opened."""

    def __init__(self, topic: str, message: str = "transport failure") -> None:
        super().__init__(f"{topic}: {message}")
        self.topic = topic


class CatchUpFailure(LiveSyncError):
    """A catch-up fetch after reconnect failed or timed out."""

    def __init__(self, topic: str, since: int, message: str = "catch-up failed") -> None:
        super().__init__(f"{topic} since={since}: {message}")
        self.topic = topic
        self.since = since


class OrderingAnomaly(LiveSyncError):
    """An event that could not be applied in order (logged, never raised to callers)."""

    def __init__(self, topic: str, record_id: str, sequence_no: int, reason: str) -> None:
        super().__init__(f"{topic}/{record_id}@{sequence_no}: {reason}")
        self.topic = topic
        self.record_id = record_id
        self.sequence_no = sequence_no
        self.reason = reason


class SubscriberError(LiveSyncError):
    """A subscriber callback raised or timed out."""

    def __init__(self, subscription_id: str, sequence_no: int, cause: BaseException) -> None:
        super().__init__(
            f"subscriber {subscription_id} failed at seq={sequence_no}: {cause!r}"
        )
        self.subscription_id = subscription_id
        self.sequence_no = sequence_no
        self.cause = cause
