"""Order DTOs for the service layer.

Framework-agnostic data transfer objects using Pydantic v2.  These are
the contracts between callers (workflow activities, management
commands, any future transport) and the lifecycle service.  DTOs are
immutable (``frozen=True``).

- ``StockItemDTO``: input for one stock reservation line.
- ``InitializeOrderResultDTO``: result of ``initialize``.
- ``OrderItemDTO`` / ``PaymentDTO`` / ``LoyaltyEntryDTO`` /
  ``StockReservationDTO`` / ``OrderJourneyDTO``: read views of the
  per-order records.
- ``TransitionResultDTO``: result of a direct state transition.
- ``OrderDetailDTO``: the whole aggregate as seen by readers.
- ``WorkflowStatusDTO``: the durable run bound to an order.
- ``WorkflowHistoryEventDTO`` / ``WorkflowExecutionSummaryDTO``: the
  run's event history and its digest.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Any, Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, field_validator

if TYPE_CHECKING:
    from modules.orders.aggregate import OrderAggregate
    from modules.orders.models import (
        OrderItem,
        OrderJourney,
        OrderLoyalty,
        OrderPayment,
        OrderStock,
    )


# ---------------------------------------------------------------------------
# Input DTOs
# ---------------------------------------------------------------------------


class StockItemDTO(BaseModel):
    """Immutable DTO for a single SKU to reserve."""

    model_config = ConfigDict(frozen=True)

    sku: str
    quantity: int

    @field_validator("sku")
    @classmethod
    def sku_must_not_be_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("SKU is required.")
        return v.strip()

    @field_validator("quantity", mode="before")
    @classmethod
    def quantity_must_not_be_bool(cls, v: Any) -> Any:
        if isinstance(v, bool):
            raise ValueError("Quantity must be an integer.")
        return v

    @field_validator("quantity")
    @classmethod
    def quantity_must_be_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("Quantity must be at least 1.")
        return v


# ---------------------------------------------------------------------------
# Output DTOs
# ---------------------------------------------------------------------------


class InitializeOrderResultDTO(BaseModel):
    model_config = ConfigDict(frozen=True)

    order_id: UUID
    payment_id: Optional[UUID]
    payment_status: Optional[str]
    state: str
    created: bool


class OrderItemDTO(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: UUID
    product_id: str
    quantity: int
    net_amount: Decimal
    gross_amount: Decimal
    currency: str
    total_net_amount: Decimal
    total_gross_amount: Decimal

    @classmethod
    def from_entity(cls, item: OrderItem) -> OrderItemDTO:
        return cls(
            id=item.id,
            product_id=item.product_id,
            quantity=item.quantity,
            net_amount=item.net_amount,
            gross_amount=item.gross_amount,
            currency=item.currency,
            total_net_amount=item.total_net_amount,
            total_gross_amount=item.total_gross_amount,
        )


class PaymentDTO(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: UUID
    method: str
    amount: Decimal
    currency: str
    status: str
    paid_at: Optional[datetime]
    transaction_reference: Optional[str]
    notes: str

    @classmethod
    def from_entity(cls, payment: OrderPayment) -> PaymentDTO:
        return cls(
            id=payment.id,
            method=payment.method,
            amount=payment.amount,
            currency=payment.currency,
            status=payment.status,
            paid_at=payment.paid_at,
            transaction_reference=payment.transaction_reference,
            notes=payment.notes,
        )


class LoyaltyEntryDTO(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: UUID
    points_delta: int
    reason: str
    external_transaction_id: Optional[str]
    created_at: datetime

    @classmethod
    def from_entity(cls, entry: OrderLoyalty) -> LoyaltyEntryDTO:
        return cls(
            id=entry.id,
            points_delta=entry.points_delta,
            reason=entry.reason,
            external_transaction_id=entry.external_transaction_id,
            created_at=entry.created_at,
        )


class StockReservationDTO(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: UUID
    sku: str
    quantity_reserved: int
    status: str
    notes: str
    created_at: datetime

    @classmethod
    def from_entity(cls, reservation: OrderStock) -> StockReservationDTO:
        return cls(
            id=reservation.id,
            sku=reservation.sku,
            quantity_reserved=reservation.quantity_reserved,
            status=reservation.status,
            notes=reservation.notes,
            created_at=reservation.created_at,
        )


class OrderJourneyDTO(BaseModel):
    """One row of the order's state-change audit trail."""

    model_config = ConfigDict(frozen=True)

    id: UUID
    old_state: Optional[str]
    new_state: str
    reason: str
    version: int
    created_at: datetime

    @classmethod
    def from_entity(cls, entry: OrderJourney) -> OrderJourneyDTO:
        return cls(
            id=entry.id,
            old_state=entry.old_state,
            new_state=entry.new_state,
            reason=entry.reason,
            version=entry.version,
            created_at=entry.created_at,
        )


class TransitionResultDTO(BaseModel):
    model_config = ConfigDict(frozen=True)

    order_id: UUID
    previous_state: str
    new_state: str
    changed: bool
    reason: Optional[str]
    version: int
    transitioned_at: datetime


class OrderDetailDTO(BaseModel):
    """Immutable read view of one order aggregate."""

    model_config = ConfigDict(frozen=True)

    id: UUID
    reference_id: Optional[str]
    state: str
    version: int
    workflow_id: Optional[str]
    created_at: datetime
    updated_at: datetime
    order_total: Decimal
    total_paid: Decimal
    total_item_count: int
    loyalty_balance: int
    valid_next_states: List[str]
    items: List[OrderItemDTO]
    payments: List[PaymentDTO]
    loyalty_entries: List[LoyaltyEntryDTO]
    stock_reservations: List[StockReservationDTO]

    @classmethod
    def from_aggregate(cls, aggregate: OrderAggregate) -> OrderDetailDTO:
        order = aggregate.order
        return cls(
            id=order.id,
            reference_id=order.reference_id,
            state=order.state,
            version=order.version,
            workflow_id=order.workflow_id,
            created_at=order.created_at,
            updated_at=order.updated_at,
            order_total=aggregate.order_total,
            total_paid=aggregate.total_paid,
            total_item_count=aggregate.total_item_count,
            loyalty_balance=aggregate.loyalty_balance,
            valid_next_states=[str(s) for s in aggregate.valid_next_states()],
            items=[OrderItemDTO.from_entity(i) for i in aggregate.items],
            payments=[PaymentDTO.from_entity(p) for p in aggregate.payments],
            loyalty_entries=[LoyaltyEntryDTO.from_entity(e) for e in aggregate.loyalty_entries],
            stock_reservations=[
                StockReservationDTO.from_entity(s) for s in aggregate.stock_reservations
            ],
        )


class WorkflowStatusDTO(BaseModel):
    """Durable run bound to an order, as last described by the engine."""

    model_config = ConfigDict(frozen=True)

    order_id: UUID
    workflow_id: str
    run_instance_id: Optional[str]
    run_status: str
    order_state: Optional[str] = None


class WorkflowHistoryEventDTO(BaseModel):
    model_config = ConfigDict(frozen=True)

    event_id: int
    event_type: str
    timestamp: datetime
    activity_type: Optional[str] = None
    attributes: Dict[str, Any] = {}


class WorkflowExecutionSummaryDTO(BaseModel):
    """Digest of a run's history: progress counters and the activities it ran."""

    model_config = ConfigDict(frozen=True)

    order_id: UUID
    workflow_id: str
    run_instance_id: Optional[str]
    run_status: str
    start_time: Optional[datetime]
    close_time: Optional[datetime]
    total_events: int
    scheduled_activities: int
    completed_activities: int
    failed_activities: int
    activity_types: List[str]
