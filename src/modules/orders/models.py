"""Order, OrderPayment, OrderLoyalty, OrderStock, OrderItem and OrderJourney models.

Rules carried by the tables:
- ``reference_id`` is the client idempotency key: optional, unique when set.
- ``version`` starts at 1 and is bumped by the aggregate on every persisted
  mutation; the repository uses it for optimistic concurrency.
- ``workflow_id`` links the order to its durable run and is written once.
- ``OrderLoyalty`` is an append-only ledger: the balance is the sum of
  ``points_delta`` and rows are never corrected in place.
- ``OrderItem`` holds one line per product; when an order has lines its
  total is their gross sum.
- ``OrderJourney`` records one row per persisted state change.

The models expose explicit factories (``Order.create``,
``Order.create_with_id``, ``OrderPayment.create`` ...) so that callers and
fixtures never set bookkeeping fields by hand.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, Optional
from uuid import UUID

from django.core.validators import MinValueValidator
from django.db import models
from django.utils import timezone

from modules.core.models import BaseModel
from modules.orders.constants import (
    ACTIVE_STOCK_STATUSES,
    DEFAULT_CURRENCY,
    OrderState,
    PaymentMethod,
    PaymentStatus,
    StockStatus,
)
from modules.orders.exceptions import InvalidArgumentError


class Order(BaseModel):
    """Order root entity.

    ``persisted_version`` is the version read from storage (``None`` for a
    new, unsaved order).  The repository compares it with the stored row
    before writing.
    """

    reference_id: models.CharField = models.CharField(
        max_length=255,
        unique=True,
        null=True,
        blank=True,
    )
    state: models.CharField = models.CharField(
        max_length=20,
        choices=OrderState.choices,
        default=OrderState.INITIAL,
    )
    updated_at: models.DateTimeField = models.DateTimeField(default=timezone.now)
    version: models.PositiveBigIntegerField = models.PositiveBigIntegerField(default=1)
    workflow_id: models.CharField = models.CharField(
        max_length=255,
        unique=True,
        null=True,
        blank=True,
    )

    class Meta:
        db_table = "orders"
        ordering = ["-created_at", "-id"]
        indexes = [
            models.Index(fields=["state"], name="orders_state_idx"),
            models.Index(fields=["-created_at"], name="orders_created_idx"),
        ]

    # ------------------------------------------------------------------
    # Factories
    # ------------------------------------------------------------------

    @classmethod
    def create(cls, reference_id: Optional[str], now: datetime) -> Order:
        """Build a new order in ``Initial`` state at version 1."""
        return cls(
            reference_id=reference_id or None,
            state=OrderState.INITIAL,
            created_at=now,
            updated_at=now,
            version=1,
        )

    @classmethod
    def create_with_id(
        cls,
        order_id: UUID,
        *,
        reference_id: Optional[str] = None,
        state: str = OrderState.INITIAL,
        now: Optional[datetime] = None,
        version: int = 1,
        workflow_id: Optional[str] = None,
    ) -> Order:
        """Build an order with a known identity, e.g. for test fixtures."""
        now = now or timezone.now()
        return cls(
            id=order_id,
            reference_id=reference_id,
            state=state,
            created_at=now,
            updated_at=now,
            version=version,
            workflow_id=workflow_id,
        )

    @classmethod
    def from_db(cls, db: Any, field_names: Any, values: Any) -> Order:
        instance = super().from_db(db, field_names, values)
        instance._persisted_version = instance.version
        return instance

    # ------------------------------------------------------------------
    # Persistence bookkeeping
    # ------------------------------------------------------------------

    @property
    def persisted_version(self) -> Optional[int]:
        return getattr(self, "_persisted_version", None)

    def mark_persisted(self) -> None:
        self._persisted_version = self.version

    def __str__(self) -> str:
        return f"{self.id} ({self.state} v{self.version})"


class OrderPayment(BaseModel):
    """A payment attempt for an order.

    ``paid_at`` is only ever set when the payment enters ``Completed``.
    """

    order: models.ForeignKey = models.ForeignKey(
        "orders.Order",
        on_delete=models.CASCADE,
        related_name="payments",
    )
    method: models.CharField = models.CharField(
        max_length=20,
        choices=PaymentMethod.choices,
    )
    amount: models.DecimalField = models.DecimalField(
        max_digits=12,
        decimal_places=2,
        validators=[MinValueValidator(Decimal("0.01"))],
    )
    currency: models.CharField = models.CharField(max_length=3, default=DEFAULT_CURRENCY)
    status: models.CharField = models.CharField(
        max_length=20,
        choices=PaymentStatus.choices,
        default=PaymentStatus.PENDING,
    )
    paid_at: models.DateTimeField = models.DateTimeField(null=True, blank=True)
    transaction_reference: models.CharField = models.CharField(
        max_length=255, null=True, blank=True
    )
    notes: models.TextField = models.TextField(blank=True, default="")

    class Meta:
        db_table = "order_payments"
        ordering = ["created_at", "id"]
        indexes = [
            models.Index(fields=["order", "created_at"], name="payments_order_idx"),
        ]

    @classmethod
    def create(
        cls,
        order_id: UUID,
        method: str,
        amount: Decimal,
        currency: str,
        now: datetime,
    ) -> OrderPayment:
        return cls(
            order_id=order_id,
            method=method,
            amount=amount,
            currency=currency,
            status=PaymentStatus.PENDING,
            created_at=now,
        )

    def mark_completed(
        self,
        transaction_reference: Optional[str],
        now: datetime,
        notes: Optional[str] = None,
    ) -> None:
        if self.status != PaymentStatus.PENDING:
            raise InvalidArgumentError(
                f"Payment {self.id} cannot be completed from status {self.status}."
            )
        self.status = PaymentStatus.COMPLETED
        self.paid_at = now
        self.transaction_reference = transaction_reference
        if notes is not None:
            self.notes = notes

    def refund(self, notes: Optional[str] = None) -> None:
        if self.status != PaymentStatus.COMPLETED:
            raise InvalidArgumentError(
                f"Payment {self.id} cannot be refunded from status {self.status}."
            )
        self.status = PaymentStatus.REFUNDED
        if notes is not None:
            self.notes = notes

    def __str__(self) -> str:
        return f"{self.method} {self.amount} {self.currency} [{self.status}]"


class OrderLoyalty(BaseModel):
    """Append-only loyalty ledger entry (positive earns, negative burns)."""

    order: models.ForeignKey = models.ForeignKey(
        "orders.Order",
        on_delete=models.CASCADE,
        related_name="loyalty_entries",
    )
    points_delta: models.IntegerField = models.IntegerField()
    reason: models.CharField = models.CharField(max_length=255)
    external_transaction_id: models.CharField = models.CharField(
        max_length=255, null=True, blank=True
    )

    class Meta:
        db_table = "order_loyalty"
        ordering = ["created_at", "id"]
        indexes = [
            models.Index(fields=["order", "created_at"], name="loyalty_order_idx"),
        ]

    @classmethod
    def earn(
        cls,
        order_id: UUID,
        points: int,
        reason: str,
        now: datetime,
        external_transaction_id: Optional[str] = None,
    ) -> OrderLoyalty:
        return cls(
            order_id=order_id,
            points_delta=points,
            reason=reason,
            external_transaction_id=external_transaction_id,
            created_at=now,
        )

    @classmethod
    def burn(
        cls,
        order_id: UUID,
        points: int,
        reason: str,
        now: datetime,
        external_transaction_id: Optional[str] = None,
    ) -> OrderLoyalty:
        return cls(
            order_id=order_id,
            points_delta=-points,
            reason=reason,
            external_transaction_id=external_transaction_id,
            created_at=now,
        )

    def __str__(self) -> str:
        return f"{self.points_delta:+d} ({self.reason})"


class OrderStock(BaseModel):
    """One stock reservation action for a single SKU."""

    order: models.ForeignKey = models.ForeignKey(
        "orders.Order",
        on_delete=models.CASCADE,
        related_name="stock_reservations",
    )
    sku: models.CharField = models.CharField(max_length=64)
    quantity_reserved: models.PositiveIntegerField = models.PositiveIntegerField(
        validators=[MinValueValidator(1)],
    )
    status: models.CharField = models.CharField(
        max_length=20,
        choices=StockStatus.choices,
        default=StockStatus.RESERVED,
    )
    notes: models.TextField = models.TextField(blank=True, default="")

    class Meta:
        db_table = "order_stock"
        ordering = ["created_at", "id"]
        constraints = [
            models.CheckConstraint(
                condition=models.Q(quantity_reserved__gte=1),
                name="order_stock_quantity_positive",
            ),
        ]

    @classmethod
    def reserve(cls, order_id: UUID, sku: str, quantity: int, now: datetime) -> OrderStock:
        return cls(
            order_id=order_id,
            sku=sku,
            quantity_reserved=quantity,
            status=StockStatus.RESERVED,
            created_at=now,
        )

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STOCK_STATUSES

    def release(self, reason: str = "") -> None:
        self.status = StockStatus.RELEASED
        self.notes = reason

    def commit(self) -> None:
        if self.status != StockStatus.RESERVED:
            raise InvalidArgumentError(
                f"Stock reservation {self.id} cannot be committed from {self.status}."
            )
        self.status = StockStatus.COMMITTED

    def __str__(self) -> str:
        return f"{self.sku} x{self.quantity_reserved} [{self.status}]"


class OrderItem(BaseModel):
    """A product line of an order; the order total is the sum of its lines.

    Amounts are per unit, ``gross_amount`` including tax.
    """

    order: models.ForeignKey = models.ForeignKey(
        "orders.Order",
        on_delete=models.CASCADE,
        related_name="items",
    )
    product_id: models.CharField = models.CharField(max_length=64)
    quantity: models.PositiveIntegerField = models.PositiveIntegerField(
        validators=[MinValueValidator(1)],
    )
    net_amount: models.DecimalField = models.DecimalField(max_digits=12, decimal_places=2)
    gross_amount: models.DecimalField = models.DecimalField(max_digits=12, decimal_places=2)
    currency: models.CharField = models.CharField(max_length=3, default=DEFAULT_CURRENCY)

    class Meta:
        db_table = "order_items"
        ordering = ["created_at", "id"]
        constraints = [
            models.CheckConstraint(
                condition=models.Q(quantity__gte=1),
                name="order_item_quantity_positive",
            ),
            models.UniqueConstraint(
                fields=["order", "product_id"], name="order_item_product_unique"
            ),
        ]

    @classmethod
    def create(
        cls,
        order_id: UUID,
        product_id: str,
        quantity: int,
        net_amount: Decimal,
        gross_amount: Decimal,
        currency: str,
        now: datetime,
    ) -> OrderItem:
        return cls(
            order_id=order_id,
            product_id=product_id,
            quantity=quantity,
            net_amount=net_amount,
            gross_amount=gross_amount,
            currency=currency,
            created_at=now,
        )

    def update(self, quantity: int, net_amount: Decimal, gross_amount: Decimal) -> None:
        self.quantity = quantity
        self.net_amount = net_amount
        self.gross_amount = gross_amount

    @property
    def total_net_amount(self) -> Decimal:
        return self.quantity * Decimal(self.net_amount)

    @property
    def total_gross_amount(self) -> Decimal:
        return self.quantity * Decimal(self.gross_amount)

    def __str__(self) -> str:
        return f"{self.product_id} x{self.quantity} @ {self.gross_amount} {self.currency}"


class OrderJourney(BaseModel):
    """Append-only audit trail of order state changes.

    Rows are written in the same unit of work as the state change they
    describe and are never edited afterwards.
    """

    order: models.ForeignKey = models.ForeignKey(
        "orders.Order",
        on_delete=models.CASCADE,
        related_name="journey",
    )
    old_state: models.CharField = models.CharField(  # noqa: DJ01
        max_length=20,
        choices=OrderState.choices,
        null=True,
        blank=True,
    )
    new_state: models.CharField = models.CharField(
        max_length=20,
        choices=OrderState.choices,
    )
    reason: models.TextField = models.TextField(blank=True, default="")
    version: models.PositiveBigIntegerField = models.PositiveBigIntegerField()

    class Meta:
        db_table = "order_journey"
        ordering = ["created_at", "id"]
        indexes = [
            models.Index(fields=["order", "created_at"], name="journey_order_idx"),
        ]

    def __str__(self) -> str:
        return f"{self.order_id} : {self.old_state} -> {self.new_state}"
