"""Temporal activities: the durable run's callbacks into the lifecycle service.

Activities are synchronous and run on the worker's thread pool, so each
call releases stale database connections on the way out.  Domain errors
become non-retryable ``ApplicationError`` failures; a concurrency
conflict stays retryable so Temporal reloads and reapplies.
"""

from __future__ import annotations

from typing import Any, Callable, List, TypeVar
from uuid import UUID

import structlog
from django.db import close_old_connections
from temporalio import activity
from temporalio.exceptions import ApplicationError

from modules.orders.exceptions import InvalidArgumentError, OrderLifecycleError
from modules.orders.orchestration.workflows import (
    CANCEL_ORDER,
    COMPLETE_ORDER,
    PROCESS_PAYMENT,
    RESERVE_STOCK,
    TRANSITION_TO_PENDING,
    OrderActivityInput,
    PaymentActivityInput,
    StockActivityInput,
)
from modules.orders.services import OrderLifecycleService

logger = structlog.get_logger(__name__)

R = TypeVar("R")


def _parse_uuid(value: str) -> UUID:
    try:
        return UUID(str(value))
    except ValueError:
        raise InvalidArgumentError(f"Invalid identifier: {value!r}") from None


class OrderActivities:
    """Bound activity methods sharing one lifecycle service."""

    def __init__(self, service: OrderLifecycleService) -> None:
        self._service = service

    def all(self) -> List[Callable[..., Any]]:
        return [
            self.transition_to_pending,
            self.process_payment,
            self.reserve_stock,
            self.complete_order,
            self.cancel_order,
        ]

    @activity.defn(name=TRANSITION_TO_PENDING)
    def transition_to_pending(self, params: OrderActivityInput) -> str:
        detail = self._invoke(
            TRANSITION_TO_PENDING,
            params.order_id,
            lambda order_id: self._service.mark_pending(order_id, params.reason),
        )
        return detail.state

    @activity.defn(name=PROCESS_PAYMENT)
    def process_payment(self, params: PaymentActivityInput) -> str:
        detail = self._invoke(
            PROCESS_PAYMENT,
            params.order_id,
            lambda order_id: self._service.process_payment(
                order_id,
                transaction_reference=params.transaction_reference,
                payment_id=_parse_uuid(params.payment_id) if params.payment_id else None,
            ),
        )
        return detail.state

    @activity.defn(name=RESERVE_STOCK)
    def reserve_stock(self, params: StockActivityInput) -> int:
        items = [{"sku": line.sku, "quantity": line.quantity} for line in params.items]
        reservations = self._invoke(
            RESERVE_STOCK,
            params.order_id,
            lambda order_id: self._service.reserve_stock(order_id, items),
        )
        return len(reservations)

    @activity.defn(name=COMPLETE_ORDER)
    def complete_order(self, params: OrderActivityInput) -> str:
        detail = self._invoke(
            COMPLETE_ORDER,
            params.order_id,
            lambda order_id: self._service.complete(order_id, params.reason),
        )
        return detail.state

    @activity.defn(name=CANCEL_ORDER)
    def cancel_order(self, params: OrderActivityInput) -> str:
        detail = self._invoke(
            CANCEL_ORDER,
            params.order_id,
            lambda order_id: self._service.cancel(order_id, params.reason),
        )
        return detail.state

    def _invoke(self, name: str, raw_order_id: str, call: Callable[[UUID], R]) -> R:
        log = logger.bind(activity=name, order_id=raw_order_id)
        try:
            result = call(_parse_uuid(raw_order_id))
        except OrderLifecycleError as exc:
            log.warning(
                "workflow.activity_failed",
                error=type(exc).__name__,
                message=str(exc),
                retryable=exc.retryable,
            )
            raise ApplicationError(
                str(exc), type=type(exc).__name__, non_retryable=not exc.retryable
            ) from exc
        finally:
            close_old_connections()
        log.info("workflow.activity_completed")
        return result
