"""Unit of work for order lifecycle operations.

One ``DjangoUnitOfWork`` spans exactly one service operation::

    with DjangoUnitOfWork() as uow:
        order = uow.orders.get_by_id(order_id)
        ...
        uow.register(aggregate)
        uow.commit()

Entering opens ``transaction.atomic()``; ``commit`` flushes the staged
writes of every repository in dependency order (orders before their
records) and schedules domain events for publication once the outermost
transaction commits.  Any exception rolls every write back, and staged
rows are discarded on every exit path.
"""

from __future__ import annotations

from types import TracebackType
from typing import List, Optional, Type

import structlog
from django.db import models, transaction

from modules.orders.aggregate import OrderAggregate
from modules.orders.events import OrderStateChanged
from modules.orders.models import OrderItem, OrderJourney, OrderPayment, OrderStock
from modules.orders.repositories.django_repository import (
    OrderDjangoRepository,
    OrderItemDjangoRepository,
    OrderJourneyDjangoRepository,
    OrderLoyaltyDjangoRepository,
    OrderPaymentDjangoRepository,
    OrderStockDjangoRepository,
)
from modules.orders.repositories.interfaces import (
    IOrderItemRepository,
    IOrderJourneyRepository,
    IOrderLoyaltyRepository,
    IOrderPaymentRepository,
    IOrderRepository,
    IOrderStockRepository,
)
from shared.domain.bus import IEventBus
from shared.domain.events import DomainEvent
from shared.infrastructure.bus import event_bus as default_event_bus

logger = structlog.get_logger(__name__)


class DjangoUnitOfWork:
    """Scoped transaction boundary over the order-side repositories."""

    def __init__(
        self,
        orders: Optional[IOrderRepository] = None,
        payments: Optional[IOrderPaymentRepository] = None,
        loyalty: Optional[IOrderLoyaltyRepository] = None,
        stock: Optional[IOrderStockRepository] = None,
        journey: Optional[IOrderJourneyRepository] = None,
        items: Optional[IOrderItemRepository] = None,
        event_bus: Optional[IEventBus] = None,
    ) -> None:
        self.orders = orders or OrderDjangoRepository()
        self.payments = payments or OrderPaymentDjangoRepository()
        self.loyalty = loyalty or OrderLoyaltyDjangoRepository()
        self.stock = stock or OrderStockDjangoRepository()
        self.journey = journey or OrderJourneyDjangoRepository()
        self.items = items or OrderItemDjangoRepository()
        self._event_bus = event_bus or default_event_bus
        self._events: List[DomainEvent] = []
        self._atomic: Optional[transaction.Atomic] = None

    # ------------------------------------------------------------------
    # Context manager
    # ------------------------------------------------------------------

    def __enter__(self) -> DjangoUnitOfWork:
        self._atomic = transaction.atomic()
        self._atomic.__enter__()
        return self

    def __exit__(
        self,
        exc_type: Optional[Type[BaseException]],
        exc: Optional[BaseException],
        tb: Optional[TracebackType],
    ) -> None:
        self.discard()
        atomic, self._atomic = self._atomic, None
        if exc_type is not None:
            logger.debug("uow.rolled_back", error=exc_type.__name__)
        atomic.__exit__(exc_type, exc, tb)

    # ------------------------------------------------------------------
    # Staging
    # ------------------------------------------------------------------

    def register(self, aggregate: OrderAggregate) -> None:
        """Stage every pending change of *aggregate*.

        State changes also produce one ``OrderJourney`` row each.  Call
        once per aggregate, after its last mutation.
        """
        order = aggregate.order
        if order.persisted_version is None:
            self.orders.add(order)
        elif aggregate.order_changed:
            self.orders.update(order)

        for record in aggregate.new_records():
            self._repository_for(record).add(record)
        for record in aggregate.modified_records():
            self._repository_for(record).update(record)
        for record in aggregate.removed_records():
            self.items.remove(record)

        for event in aggregate.pull_domain_events():
            if isinstance(event, OrderStateChanged):
                self.journey.add(
                    OrderJourney(
                        order_id=event.aggregate_id,
                        old_state=event.old_state or None,
                        new_state=event.new_state,
                        reason=event.reason or "",
                        version=event.version,
                        created_at=event.occurred_on,
                    )
                )
            self._events.append(event)

    def commit(self) -> int:
        """Flush staged writes and return the number of affected rows."""
        if self._atomic is None:
            raise RuntimeError("DjangoUnitOfWork.commit() called outside its context.")
        affected = 0
        for repository in self._repositories():
            affected += repository.save()

        events, self._events = self._events, []
        if events:
            transaction.on_commit(lambda: self._event_bus.publish_all(events))
        return affected

    def discard(self) -> None:
        for repository in self._repositories():
            repository.discard()
        self._events = []

    def _repositories(self):
        return (self.orders, self.items, self.payments, self.loyalty, self.stock, self.journey)

    def _repository_for(self, record: models.Model):
        if isinstance(record, OrderItem):
            return self.items
        if isinstance(record, OrderPayment):
            return self.payments
        if isinstance(record, OrderStock):
            return self.stock
        return self.loyalty
