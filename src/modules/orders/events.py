"""Domain events recorded by the order aggregate."""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Optional
from uuid import UUID

from shared.domain.events import DomainEvent


@dataclass(frozen=True)
class OrderStateChanged(DomainEvent):
    """The order moved along an edge of the transition table."""

    old_state: str = ""
    new_state: str = ""
    reason: Optional[str] = None
    version: int = 0


@dataclass(frozen=True)
class PaymentCompleted(DomainEvent):
    payment_id: Optional[UUID] = None
    amount: Decimal = Decimal("0")
    transaction_reference: Optional[str] = None


@dataclass(frozen=True)
class LoyaltyRecorded(DomainEvent):
    """A ledger entry was appended (positive earn, negative burn)."""

    points_delta: int = 0
    reason: str = ""


@dataclass(frozen=True)
class StockReserved(DomainEvent):
    sku: str = ""
    quantity: int = 0
