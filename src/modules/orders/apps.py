from django.apps import AppConfig


class OrdersConfig(AppConfig):
    default_auto_field = "django.db.models.BigAutoField"
    name = "modules.orders"
    label = "orders"

    def ready(self) -> None:
        from modules.orders.events import (
            LoyaltyRecorded,
            OrderStateChanged,
            PaymentCompleted,
            StockReserved,
        )
        from modules.orders.handlers import (
            loyalty_recorded_handler,
            order_state_changed_handler,
            payment_completed_handler,
            stock_reserved_handler,
        )
        from shared.infrastructure.bus import event_bus

        event_bus.subscribe(OrderStateChanged, order_state_changed_handler)
        event_bus.subscribe(PaymentCompleted, payment_completed_handler)
        event_bus.subscribe(LoyaltyRecorded, loyalty_recorded_handler)
        event_bus.subscribe(StockReserved, stock_reserved_handler)
