"""Domain event primitives shared by the aggregates."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from uuid import UUID, uuid4


@dataclass(frozen=True)
class DomainEvent:
    """Immutable fact recorded by an aggregate.

    ``occurred_on`` is normally supplied by the aggregate's clock so that
    events stay deterministic under test.
    """

    aggregate_id: UUID
    occurred_on: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    event_id: UUID = field(default_factory=uuid4)
    event_name: str = field(init=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "event_name", self.__class__.__name__)


class DomainEventMixin:
    """Collects domain events in memory until the unit of work commits."""

    _domain_events: list[DomainEvent]

    def record_event(self, event: DomainEvent) -> None:
        if not hasattr(self, "_domain_events"):
            self._domain_events = []
        self._domain_events.append(event)

    def pull_domain_events(self) -> list[DomainEvent]:
        """Return the pending events and forget them."""
        events = list(getattr(self, "_domain_events", []))
        self._domain_events = []
        return events

    @property
    def domain_events(self) -> list[DomainEvent]:
        return list(getattr(self, "_domain_events", []))
