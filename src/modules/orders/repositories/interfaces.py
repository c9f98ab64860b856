"""Order-side repository interfaces.

Storage-agnostic contracts consumed by the lifecycle service.  Writes
are staged (``add``/``update``) and only reach storage when the unit of
work calls ``save``; reads go straight to storage.

``IOrderRepository.save`` must refuse to overwrite an order whose stored
version moved since it was loaded (optimistic concurrency).
"""

from __future__ import annotations

from abc import abstractmethod
from typing import TYPE_CHECKING, List, Optional, TypeVar
from uuid import UUID

from modules.core.repositories.interfaces import IRepository

T = TypeVar("T")

if TYPE_CHECKING:
    from modules.orders.models import (
        Order,
        OrderItem,
        OrderJourney,
        OrderLoyalty,
        OrderPayment,
        OrderStock,
    )


class IOrderRepository(IRepository["Order"]):
    """Repository contract for the ``Order`` root."""

    @abstractmethod
    def get_by_id(self, order_id: UUID) -> Optional[Order]:
        """Return the order or ``None`` for unknown / malformed ids."""

    @abstractmethod
    def get_by_reference_id(self, reference_id: str) -> Optional[Order]:
        """Look an order up by its client idempotency key."""

    @abstractmethod
    def get_by_workflow_id(self, workflow_id: str) -> Optional[Order]:
        """Look an order up by the durable run bound to it."""

    @abstractmethod
    def list(self, skip: int = 0, take: int = 50) -> List[Order]:
        """Page through orders, newest first."""

    @abstractmethod
    def update(self, entity: Order) -> None:
        """Stage a changed order; ``save`` checks its loaded version.

        Raises:
            ConcurrencyConflictError: (from ``save``) the stored version
                no longer matches ``entity.persisted_version``.
        """


class IOrderChildRepository(IRepository[T]):
    """Shared contract for records owned by one order."""

    @abstractmethod
    def get_by_order_id(self, order_id: UUID) -> List[T]:
        """All records for *order_id*, oldest first."""


class IOrderItemRepository(IOrderChildRepository["OrderItem"]):
    """Product lines of an order."""

    @abstractmethod
    def update(self, entity: OrderItem) -> None:
        """Stage a line whose quantity or amounts changed."""

    @abstractmethod
    def remove(self, entity: OrderItem) -> None:
        """Stage a stored line for deletion."""


class IOrderPaymentRepository(IOrderChildRepository["OrderPayment"]):
    """Payments of an order."""

    @abstractmethod
    def update(self, entity: OrderPayment) -> None:
        """Stage a payment whose status changed."""


class IOrderLoyaltyRepository(IOrderChildRepository["OrderLoyalty"]):
    """Append-only loyalty ledger: entries are added, never updated."""


class IOrderStockRepository(IOrderChildRepository["OrderStock"]):
    """Stock reservations of an order."""

    @abstractmethod
    def update(self, entity: OrderStock) -> None:
        """Stage a reservation whose status changed."""


class IOrderJourneyRepository(IOrderChildRepository["OrderJourney"]):
    """Append-only audit trail of state changes."""
