"""Event handlers for order lifecycle domain events."""

from __future__ import annotations

import structlog

from modules.orders.events import (
    LoyaltyRecorded,
    OrderStateChanged,
    PaymentCompleted,
    StockReserved,
)
from shared.domain.bus import IEventHandler

logger = structlog.get_logger(__name__)


class OrderStateChangedHandler(IEventHandler[OrderStateChanged]):
    def handle(self, event: OrderStateChanged) -> None:
        logger.info(
            "order.event.state_changed",
            order_id=str(event.aggregate_id),
            old_state=event.old_state,
            new_state=event.new_state,
            version=event.version,
            reason=event.reason,
        )


class PaymentCompletedHandler(IEventHandler[PaymentCompleted]):
    def handle(self, event: PaymentCompleted) -> None:
        logger.info(
            "order.event.payment_completed",
            order_id=str(event.aggregate_id),
            payment_id=str(event.payment_id),
            amount=str(event.amount),
        )


class LoyaltyRecordedHandler(IEventHandler[LoyaltyRecorded]):
    def handle(self, event: LoyaltyRecorded) -> None:
        logger.info(
            "order.event.loyalty_recorded",
            order_id=str(event.aggregate_id),
            points_delta=event.points_delta,
        )


class StockReservedHandler(IEventHandler[StockReserved]):
    def handle(self, event: StockReserved) -> None:
        logger.info(
            "order.event.stock_reserved",
            order_id=str(event.aggregate_id),
            sku=event.sku,
            quantity=event.quantity,
        )


order_state_changed_handler = OrderStateChangedHandler()
payment_completed_handler = PaymentCompletedHandler()
loyalty_recorded_handler = LoyaltyRecordedHandler()
stock_reserved_handler = StockReservedHandler()
