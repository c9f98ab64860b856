"""Django ORM implementations of the order-side repositories.

Writes are staged in memory and flushed by ``save``; the caller (the
unit of work) owns the surrounding ``transaction.atomic()`` block, so
the repositories never open transactions themselves.

Concurrency control on orders uses the ``version`` column: an update is
issued as ``UPDATE ... WHERE id = %s AND version = <loaded version>`` and
zero affected rows means another writer got there first.  No row locks
(``select_for_update``) are taken.
"""

from __future__ import annotations

from typing import Generic, List, Optional, Type, TypeVar
from uuid import UUID

import structlog
from django.core.exceptions import ValidationError
from django.db import models

from modules.orders.exceptions import ConcurrencyConflictError
from modules.orders.models import (
    Order,
    OrderItem,
    OrderJourney,
    OrderLoyalty,
    OrderPayment,
    OrderStock,
)
from modules.orders.repositories.interfaces import (
    IOrderItemRepository,
    IOrderJourneyRepository,
    IOrderLoyaltyRepository,
    IOrderPaymentRepository,
    IOrderRepository,
    IOrderStockRepository,
)

logger = structlog.get_logger(__name__)

M = TypeVar("M", bound=models.Model)

_ORDER_UPDATE_FIELDS = ("reference_id", "state", "updated_at", "version", "workflow_id")


class OrderDjangoRepository(IOrderRepository):
    """Concrete ``Order`` repository backed by Django ORM."""

    def __init__(self) -> None:
        self._added: List[Order] = []
        self._updated: List[Order] = []

    # ------------------------------------------------------------------
    # Read
    # ------------------------------------------------------------------

    def get_by_id(self, order_id: UUID) -> Optional[Order]:
        """Returns ``None`` for non-existent or invalid IDs."""
        try:
            return Order.objects.filter(id=order_id).first()
        except (ValueError, ValidationError):
            return None

    def get_by_reference_id(self, reference_id: str) -> Optional[Order]:
        if not reference_id:
            return None
        return Order.objects.filter(reference_id=reference_id).first()

    def get_by_workflow_id(self, workflow_id: str) -> Optional[Order]:
        if not workflow_id:
            return None
        return Order.objects.filter(workflow_id=workflow_id).first()

    def list(self, skip: int = 0, take: int = 50) -> List[Order]:
        return list(Order.objects.all()[skip : skip + take])

    # ------------------------------------------------------------------
    # Staged writes
    # ------------------------------------------------------------------

    def add(self, entity: Order) -> None:
        self._added.append(entity)

    def update(self, entity: Order) -> None:
        if any(staged is entity for staged in self._updated):
            return
        self._updated.append(entity)

    def discard(self) -> None:
        self._added.clear()
        self._updated.clear()

    def save(self) -> int:
        """Insert new orders, then apply version-checked updates.

        Raises:
            ConcurrencyConflictError: a staged order's stored version no
                longer matches the version it was loaded with.
        """
        affected = 0
        for order in self._added:
            order.save(force_insert=True)
            order.mark_persisted()
            affected += 1

        for order in self._updated:
            expected = order.persisted_version
            rows = Order.objects.filter(pk=order.pk, version=expected).update(
                **{field: getattr(order, field) for field in _ORDER_UPDATE_FIELDS}
            )
            if rows == 0:
                logger.warning(
                    "order.concurrency_conflict",
                    order_id=str(order.id),
                    expected_version=expected,
                    attempted_version=order.version,
                )
                raise ConcurrencyConflictError(order.id, expected)
            order.mark_persisted()
            affected += rows

        self.discard()
        if affected:
            logger.debug("order.saved", affected=affected)
        return affected


class _OrderChildDjangoRepository(Generic[M]):
    """Staged add/update/remove/save shared by the per-order record tables."""

    model: Type[M]

    def __init__(self) -> None:
        self._added: List[M] = []
        self._updated: List[M] = []
        self._removed: List[M] = []

    def get_by_order_id(self, order_id: UUID) -> List[M]:
        try:
            return list(self.model.objects.filter(order_id=order_id))
        except (ValueError, ValidationError):
            return []

    def add(self, entity: M) -> None:
        self._added.append(entity)

    def discard(self) -> None:
        self._added.clear()
        self._updated.clear()
        self._removed.clear()

    def save(self) -> int:
        """Delete, then insert, then update, so a removed row frees its slot."""
        affected = 0
        for entity in self._removed:
            entity.delete()
            affected += 1
        for entity in self._added:
            entity.save(force_insert=True)
            affected += 1
        for entity in self._updated:
            entity.save(force_update=True)
            affected += 1
        self.discard()
        return affected

    def _stage_update(self, entity: M) -> None:
        if any(staged is entity for staged in self._updated):
            return
        self._updated.append(entity)


class OrderPaymentDjangoRepository(
    _OrderChildDjangoRepository[OrderPayment], IOrderPaymentRepository
):
    model = OrderPayment

    def update(self, entity: OrderPayment) -> None:
        self._stage_update(entity)


class OrderLoyaltyDjangoRepository(
    _OrderChildDjangoRepository[OrderLoyalty], IOrderLoyaltyRepository
):
    model = OrderLoyalty


class OrderStockDjangoRepository(
    _OrderChildDjangoRepository[OrderStock], IOrderStockRepository
):
    model = OrderStock

    def update(self, entity: OrderStock) -> None:
        self._stage_update(entity)


class OrderJourneyDjangoRepository(
    _OrderChildDjangoRepository[OrderJourney], IOrderJourneyRepository
):
    model = OrderJourney


class OrderItemDjangoRepository(_OrderChildDjangoRepository[OrderItem], IOrderItemRepository):
    model = OrderItem

    def update(self, entity: OrderItem) -> None:
        self._stage_update(entity)

    def remove(self, entity: OrderItem) -> None:
        if any(staged is entity for staged in self._removed):
            return
        self._removed.append(entity)
