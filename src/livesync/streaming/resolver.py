"""Last-writer-wins conflict resolution for concurrent updates to one record."""

from __future__ import annotations

from typing import Generic

from livesync.streaming.events import Event, R, RecordFactory


def incoming_wins(
    existing_timestamp: float, existing_sequence_no: int, incoming: Event
) -> bool:
    """True when *incoming* is the later write.

    Greater ``server_timestamp`` wins; equal timestamps fall back to the higher
    ``sequence_no``, which the backend assigns as a total order.
    """
    if incoming.server_timestamp != existing_timestamp:
        return incoming.server_timestamp > existing_timestamp
    return incoming.sequence_no > existing_sequence_no


class ConflictResolver(Generic[R]):
    """Decides which version of a record survives.

    Replacement is always whole-record: the winning event's payload becomes
    the record, fields are never merged.
    """

    def __init__(self, factory: RecordFactory[R]) -> None:
        self._factory = factory

    def build(self, event: Event) -> R:
        return self._factory(event)

    def resolve(self, existing: R, incoming: Event, *, existing_sequence_no: int) -> R:
        """Return the winning record; *existing* itself when it is not superseded."""
        if incoming_wins(existing.last_modified, existing_sequence_no, incoming):
            return self._factory(incoming)
        return existing
