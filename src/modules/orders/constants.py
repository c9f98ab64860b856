"""Order domain constants.

Defines the lifecycle states, the transition table that governs them,
and the enumerations used by payment, loyalty and stock records.
"""

from __future__ import annotations

from django.db import models


class OrderState(models.TextChoices):
    INITIAL = "Initial", "Initial"
    PENDING = "Pending", "Pending"
    PAID = "Paid", "Paid"
    COMPLETED = "Completed", "Completed"
    REFUNDED = "Refunded", "Refunded"
    CANCELLED = "Cancelled", "Cancelled"


VALID_TRANSITIONS: dict[str, frozenset[str]] = {
    OrderState.INITIAL: frozenset({OrderState.PENDING}),
    OrderState.PENDING: frozenset({OrderState.PAID, OrderState.CANCELLED}),
    OrderState.PAID: frozenset({OrderState.COMPLETED, OrderState.REFUNDED}),
    OrderState.REFUNDED: frozenset({OrderState.CANCELLED}),
    OrderState.COMPLETED: frozenset({OrderState.CANCELLED}),
    OrderState.CANCELLED: frozenset({OrderState.PENDING}),
}


def is_valid_transition(from_state: str, to_state: str) -> bool:
    """Return ``True`` when ``from_state -> to_state`` is an edge of the table.

    Self-transitions are not edges; callers decide how to treat them.
    """
    return to_state in VALID_TRANSITIONS.get(from_state, frozenset())


def valid_next_states(state: str) -> list[OrderState]:
    """States reachable from *state* in one step, in declaration order."""
    return [candidate for candidate in OrderState if is_valid_transition(state, candidate)]


class PaymentStatus(models.TextChoices):
    PENDING = "Pending", "Pending"
    COMPLETED = "Completed", "Completed"
    FAILED = "Failed", "Failed"
    REFUNDED = "Refunded", "Refunded"


class PaymentMethod(models.TextChoices):
    CREDIT_CARD = "credit_card", "Credit card"
    DEBIT_CARD = "debit_card", "Debit card"
    BANK_TRANSFER = "bank_transfer", "Bank transfer"
    DIGITAL_WALLET = "digital_wallet", "Digital wallet"
    CASH = "cash", "Cash"


PAYMENT_METHOD_ALIASES: dict[str, str] = {
    "creditcard": PaymentMethod.CREDIT_CARD,
    "credit-card": PaymentMethod.CREDIT_CARD,
    "debitcard": PaymentMethod.DEBIT_CARD,
    "debit-card": PaymentMethod.DEBIT_CARD,
    "banktransfer": PaymentMethod.BANK_TRANSFER,
    "bank-transfer": PaymentMethod.BANK_TRANSFER,
    "digitalwallet": PaymentMethod.DIGITAL_WALLET,
    "digital-wallet": PaymentMethod.DIGITAL_WALLET,
    "wallet": PaymentMethod.DIGITAL_WALLET,
}


class StockStatus(models.TextChoices):
    RESERVED = "Reserved", "Reserved"
    RELEASED = "Released", "Released"
    COMMITTED = "Committed", "Committed"


ACTIVE_STOCK_STATUSES: frozenset[str] = frozenset(
    {StockStatus.RESERVED, StockStatus.COMMITTED}
)

DEFAULT_CURRENCY = "USD"
CURRENCY_CODE_LENGTH = 3
