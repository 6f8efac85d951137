"""Event envelope, stream signals and the generic record contract.

``Event`` is the universal change envelope every backend converts its native
messages into. The engine treats ``sequence_no`` (and ``server_timestamp`` as a
tie-break) as the ordering authority.
"""

from __future__ import annotations

import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any, Protocol, TypeVar, runtime_checkable


class Op(StrEnum):
    """Change operation carried by an event."""

    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


class AppliedResult(StrEnum):
    """Outcome of applying one event to a topic's view."""

    ACCEPTED = "accepted"
    DUPLICATE_IGNORED = "duplicate_ignored"
    STALE_IGNORED = "stale_ignored"
    DEFERRED = "deferred"


class ConnectionState(StrEnum):
    """Liveness of one topic as seen by the UI."""

    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    RESYNCING = "resyncing"


def parse_timestamp(value: Any) -> float:
    """Convert an epoch number or ISO-8601 string to epoch seconds."""
    if isinstance(value, bool):
        msg = f"Invalid timestamp: {value!r}"
        raise ValueError(msg)
    if isinstance(value, int | float):
        return float(value)
    if isinstance(value, datetime):
        return value.timestamp()
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError:
            return datetime.fromisoformat(value).timestamp()
    msg = f"Invalid timestamp: {value!r}"
    raise ValueError(msg)


@dataclass(frozen=True, slots=True)
class Event:
    """One immutable change to a record on a topic."""

    topic: str
    op: Op
    record_id: str
    payload: dict[str, Any] | None
    server_timestamp: float
    sequence_no: int
    # client-generated id echoed back by the backend for optimistic inserts
    correlation_id: str | None = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any], *, topic: str | None = None) -> Event:
        """Build an event from a backend row or JSON object.

        Accepts ``op`` in any case (Supabase reports ``INSERT``/``UPDATE``/
        ``DELETE``) and timestamps as epoch seconds or ISO-8601 strings.
        """
        try:
            resolved_topic = topic or data["topic"]
            payload = data.get("payload")
            if payload is not None and not isinstance(payload, dict):
                msg = f"payload must be an object, got {type(payload).__name__}"
                raise ValueError(msg)
            correlation_id = data.get("correlation_id")
            return cls(
                topic=str(resolved_topic),
                op=Op(str(data["op"]).lower()),
                record_id=str(data["record_id"]),
                payload=payload,
                server_timestamp=parse_timestamp(data["server_timestamp"]),
                sequence_no=int(data["sequence_no"]),
                correlation_id=str(correlation_id) if correlation_id else None,
            )
        except KeyError as exc:
            msg = f"Event is missing required field {exc.args[0]!r}"
            raise ValueError(msg) from exc

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "topic": self.topic,
            "op": self.op.value,
            "record_id": self.record_id,
            "payload": self.payload,
            "server_timestamp": self.server_timestamp,
            "sequence_no": self.sequence_no,
        }
        if self.correlation_id is not None:
            data["correlation_id"] = self.correlation_id
        return data


@dataclass(frozen=True, slots=True)
class PendingLocal:
    """An optimistic, client-constructed insert awaiting server confirmation."""

    topic: str
    correlation_id: str
    payload: dict[str, Any]
    created_at: float = field(default_factory=time.time)

    @property
    def record_id(self) -> str:
        return f"local:{self.correlation_id}"


@dataclass(frozen=True, slots=True)
class Connected:
    """Stream signal: the transport (re)opened the topic."""

    topic: str
    reconnect: bool = False


@dataclass(frozen=True, slots=True)
class Disconnected:
    """Stream signal: the transport for the topic dropped."""

    topic: str
    error: BaseException | None = field(default=None, compare=False)


StreamItem = Event | Connected | Disconnected


@runtime_checkable
class Record(Protocol):
    """Capability set the engine needs from a synchronized domain object."""

    @property
    def id(self) -> str: ...

    @property
    def last_modified(self) -> float: ...


@dataclass(frozen=True, slots=True)
class SyncedRecord:
    """Default record type: the event payload plus its version."""

    id: str
    payload: dict[str, Any]
    last_modified: float
    sequence_no: int
    pending: bool = False
    correlation_id: str | None = None


R = TypeVar("R", bound=Record)

RecordFactory = Callable[[Event], R]


def synced_record(event: Event) -> SyncedRecord:
    """Default ``RecordFactory``: wrap the event payload wholesale."""
    return SyncedRecord(
        id=event.record_id,
        payload=dict(event.payload or {}),
        last_modified=event.server_timestamp,
        sequence_no=event.sequence_no,
        correlation_id=event.correlation_id,
    )


def local_record(pending: PendingLocal) -> SyncedRecord:
    """Build the placeholder record shown for an optimistic insert."""
    return SyncedRecord(
        id=pending.record_id,
        payload=dict(pending.payload),
        last_modified=pending.created_at,
        sequence_no=0,
        pending=True,
        correlation_id=pending.correlation_id,
    )
