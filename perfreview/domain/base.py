from datetime import datetime, timezone
from typing import Iterable, List, Optional, Tuple
from uuid import UUID

from perfreview.domain.events import DomainEvent


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AggregateRoot:
    """Event-sourced aggregate base.

    Commands validate first and only then call ``_raise``, which applies the
    event to in-memory state and queues it for the repository. ``version``
    counts stored commits, not events: one successful command stored is one
    increment no matter how many events it produced.
    """

    def __init__(self) -> None:
        self.id: Optional[UUID] = None
        self.version: int = 0
        self._pending_events: List[DomainEvent] = []

    @property
    def pending_events(self) -> Tuple[DomainEvent, ...]:
        return tuple(self._pending_events)

    @property
    def has_pending_events(self) -> bool:
        return bool(self._pending_events)

    def mark_committed(self, new_version: int) -> None:
        self.version = new_version
        self._pending_events.clear()

    def _raise(self, event: DomainEvent) -> None:
        self._apply(event)
        self._pending_events.append(event)

    def _apply(self, event: DomainEvent) -> None:
        raise NotImplementedError

    @classmethod
    def rehydrate(cls, history: Iterable[Tuple[int, DomainEvent]]):
        """Rebuild from ``(version, event)`` pairs ordered by version then sequence."""
        aggregate = cls()
        for version, event in history:
            aggregate._apply(event)
            aggregate.version = version
        return aggregate
