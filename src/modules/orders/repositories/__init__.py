"""Order repositories package."""

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

__all__ = [
    "IOrderItemRepository",
    "IOrderJourneyRepository",
    "IOrderLoyaltyRepository",
    "IOrderPaymentRepository",
    "IOrderRepository",
    "IOrderStockRepository",
    "OrderDjangoRepository",
    "OrderItemDjangoRepository",
    "OrderJourneyDjangoRepository",
    "OrderLoyaltyDjangoRepository",
    "OrderPaymentDjangoRepository",
    "OrderStockDjangoRepository",
]
