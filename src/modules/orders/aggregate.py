"""Order aggregate.

A transient, in-memory composition of one ``Order`` with its line items,
payments, loyalty ledger and stock reservations.  It is built fresh for every
lifecycle operation, is the only place where transition and business
rules run, and is discarded once the unit of work has persisted it.

The aggregate never touches storage: new child rows stay unsaved
(``_state.adding``), modified ones are listed by ``modified_records`` and
removed line items by ``removed_records`` so the unit of work can stage them.

Versioning:
- every successful state transition bumps ``Order.version`` and stamps
  ``updated_at`` from the injected clock;
- item, payment, loyalty, stock and workflow-link mutations bump the version
  once per aggregate instance (new orders stay at version 1);
- idempotent calls (self-transition, re-attaching the same workflow)
  change nothing.
"""

from __future__ import annotations

import math
from decimal import Decimal
from typing import Iterable, Optional, Sequence, Tuple
from uuid import UUID

from django.db import models

from modules.orders.constants import (
    DEFAULT_CURRENCY,
    OrderState,
    PaymentStatus,
    StockStatus,
    is_valid_transition,
    valid_next_states,
)
from modules.orders.events import (
    LoyaltyRecorded,
    OrderStateChanged,
    PaymentCompleted,
    StockReserved,
)
from modules.orders.exceptions import (
    InsufficientBalanceError,
    InvalidArgumentError,
    NotFoundError,
    StateTransitionError,
)
from modules.orders.models import Order, OrderItem, OrderLoyalty, OrderPayment, OrderStock
from shared.domain.clock import Clock, system_clock
from shared.domain.events import DomainEventMixin

_CLOSED_STATES = frozenset({OrderState.CANCELLED, OrderState.REFUNDED})
_EDITABLE_ITEM_STATES = frozenset({OrderState.INITIAL, OrderState.PENDING})

_BUSINESS_RULE_HINTS = {
    OrderState.PAID: "Order payments insufficient or invalid",
    OrderState.COMPLETED: "Order not fully paid or stock not reserved",
    OrderState.REFUNDED: "Order must be paid or completed before refunding",
    OrderState.CANCELLED: "Completed orders cannot be cancelled",
}


class OrderAggregate(DomainEventMixin):
    """Applies the transition table and the business rules to one order."""

    def __init__(
        self,
        order: Order,
        payments: Iterable[OrderPayment] = (),
        loyalty_entries: Iterable[OrderLoyalty] = (),
        stock_reservations: Iterable[OrderStock] = (),
        clock: Clock = system_clock,
        items: Iterable[OrderItem] = (),
    ) -> None:
        self._order = order
        self._items = list(items)
        self._payments = list(payments)
        self._loyalty_entries = list(loyalty_entries)
        self._stock_reservations = list(stock_reservations)
        self._clock = clock
        self._modified: list[models.Model] = []
        self._removed: list[models.Model] = []
        self._version_bumped = False

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    @classmethod
    def create(cls, reference_id: Optional[str], clock: Clock = system_clock) -> OrderAggregate:
        """Start a brand-new order in ``Initial`` state.

        The creation itself is recorded as the first journey entry.
        """
        order = Order.create(reference_id, clock.now())
        aggregate = cls(order, clock=clock)
        aggregate.record_event(
            OrderStateChanged(
                aggregate_id=order.id,
                occurred_on=order.created_at,
                old_state="",
                new_state=str(OrderState.INITIAL),
                reason="Order created",
                version=order.version,
            )
        )
        return aggregate

    @classmethod
    def load(
        cls,
        order: Order,
        payments: Iterable[OrderPayment] = (),
        loyalty_entries: Iterable[OrderLoyalty] = (),
        stock_reservations: Iterable[OrderStock] = (),
        clock: Clock = system_clock,
        items: Iterable[OrderItem] = (),
    ) -> OrderAggregate:
        return cls(order, payments, loyalty_entries, stock_reservations, clock, items)

    # ------------------------------------------------------------------
    # Read model
    # ------------------------------------------------------------------

    @property
    def order(self) -> Order:
        return self._order

    @property
    def order_id(self) -> UUID:
        return self._order.id

    @property
    def state(self) -> str:
        return self._order.state

    @property
    def items(self) -> Tuple[OrderItem, ...]:
        return tuple(self._items)

    @property
    def payments(self) -> Tuple[OrderPayment, ...]:
        return tuple(self._payments)

    @property
    def loyalty_entries(self) -> Tuple[OrderLoyalty, ...]:
        return tuple(self._loyalty_entries)

    @property
    def stock_reservations(self) -> Tuple[OrderStock, ...]:
        return tuple(self._stock_reservations)

    @property
    def active_payment(self) -> Optional[OrderPayment]:
        """Most recent payment that is still pending or completed."""
        for payment in reversed(self._payments):
            if payment.status in (PaymentStatus.PENDING, PaymentStatus.COMPLETED):
                return payment
        return None

    @property
    def order_total(self) -> Decimal:
        """Amount the order is expected to be paid for.

        The gross sum of the line items when the order has any.
        Otherwise taken from the most recent non-failed payment, so a
        refunded order still reports what it cost.
        """
        if self._items:
            return self.total_gross_amount
        for payment in reversed(self._payments):
            if payment.status != PaymentStatus.FAILED:
                return Decimal(payment.amount)
        return Decimal("0")

    @property
    def total_paid(self) -> Decimal:
        return sum(
            (Decimal(p.amount) for p in self._payments if p.status == PaymentStatus.COMPLETED),
            Decimal("0"),
        )

    @property
    def total_net_amount(self) -> Decimal:
        return sum((item.total_net_amount for item in self._items), Decimal("0"))

    @property
    def total_gross_amount(self) -> Decimal:
        return sum((item.total_gross_amount for item in self._items), Decimal("0"))

    @property
    def total_item_count(self) -> int:
        return sum(item.quantity for item in self._items)

    @property
    def loyalty_balance(self) -> int:
        return sum(entry.points_delta for entry in self._loyalty_entries)

    def is_fully_paid(self) -> bool:
        total = self.order_total
        if total == 0:
            return self.total_paid > 0
        return self.total_paid >= total

    def has_stock_reserved(self) -> bool:
        return any(reservation.is_active for reservation in self._stock_reservations)

    def valid_next_states(self) -> list[OrderState]:
        return valid_next_states(self._order.state)

    def can_transition_to(self, next_state: str) -> bool:
        return is_valid_transition(self._order.state, next_state)

    # ------------------------------------------------------------------
    # State transitions
    # ------------------------------------------------------------------

    def transition_state(self, next_state: str, reason: Optional[str] = None) -> None:
        """Move the order along one edge of the transition table.

        Raises:
            InvalidArgumentError: *next_state* is not an ``OrderState``.
            StateTransitionError: the edge does not exist.
        """
        target = self._coerce_state(next_state)
        if target == self._order.state:
            return
        self._check_structural(target, reason)
        self._apply_transition(target, reason)

    def safe_transition_state(
        self,
        next_state: str,
        reason: Optional[str] = None,
        enforce_business_rules: bool = True,
    ) -> None:
        """Like ``transition_state`` but also validates domain preconditions.

        With ``enforce_business_rules=False`` only the structural check
        applies (administrative overrides).
        """
        target = self._coerce_state(next_state)
        if target == self._order.state:
            return
        self._check_structural(target, reason)
        if enforce_business_rules and not self._satisfies_business_rules(target):
            raise StateTransitionError(
                self._order.id,
                self._order.state,
                target,
                self._business_rule_message(target, reason),
                is_business_rule=True,
            )
        self._apply_transition(target, reason)

    def is_business_rule_compliant_transition(self, next_state: str) -> bool:
        """Non-throwing check: would ``safe_transition_state`` succeed?"""
        try:
            target = self._coerce_state(next_state)
        except InvalidArgumentError:
            return False
        if target == self._order.state:
            return True
        return self.can_transition_to(target) and self._satisfies_business_rules(target)

    # ------------------------------------------------------------------
    # Line items
    # ------------------------------------------------------------------

    def add_item(
        self,
        product_id: str,
        quantity: int,
        net_amount: Decimal,
        gross_amount: Decimal,
        currency: str = DEFAULT_CURRENCY,
    ) -> OrderItem:
        """Add a product line, or grow the existing line for the product.

        A repeated product adds to the quantity and takes the new unit
        amounts.
        """
        self._ensure_items_editable()
        product_id = (product_id or "").strip()
        if not product_id:
            raise InvalidArgumentError("Product id is required.")
        self._validate_quantity(product_id, quantity)
        self._validate_unit_amounts(net_amount, gross_amount)

        existing = self.get_item_by_product(product_id)
        if existing is not None:
            existing.update(existing.quantity + quantity, net_amount, gross_amount)
            self._mark_modified(existing)
            self._touch()
            return existing

        item = OrderItem.create(
            self._order.id,
            product_id,
            quantity,
            net_amount,
            gross_amount,
            currency,
            self._clock.now(),
        )
        self._items.append(item)
        self._touch()
        return item

    def update_item(
        self, item_id: UUID, quantity: int, net_amount: Decimal, gross_amount: Decimal
    ) -> OrderItem:
        self._ensure_items_editable()
        item = self._find_item(item_id)
        self._validate_quantity(item.product_id, quantity)
        self._validate_unit_amounts(net_amount, gross_amount)
        item.update(quantity, net_amount, gross_amount)
        self._mark_modified(item)
        self._touch()
        return item

    def remove_item(self, item_id: UUID) -> OrderItem:
        self._ensure_items_editable()
        item = self._find_item(item_id)
        self._items.remove(item)
        self._modified = [record for record in self._modified if record is not item]
        if not item._state.adding:
            self._removed.append(item)
        self._touch()
        return item

    def get_item_by_product(self, product_id: str) -> Optional[OrderItem]:
        for item in self._items:
            if item.product_id == product_id:
                return item
        return None

    def has_items(self) -> bool:
        return bool(self._items)

    # ------------------------------------------------------------------
    # Payments
    # ------------------------------------------------------------------

    def add_payment(
        self, method: str, amount: Decimal, currency: str = DEFAULT_CURRENCY
    ) -> OrderPayment:
        self._ensure_open("add a payment to")
        if amount <= 0:
            raise InvalidArgumentError("Payment amount must be greater than zero.")
        if self.active_payment is not None:
            raise InvalidArgumentError(
                f"Order {self._order.id} already has an active payment."
            )
        payment = OrderPayment.create(
            self._order.id, method, amount, currency, self._clock.now()
        )
        self._payments.append(payment)
        self._touch()
        return payment

    def complete_payment(
        self,
        payment_id: Optional[UUID] = None,
        transaction_reference: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> OrderPayment:
        """Mark a pending payment ``Completed`` and stamp ``paid_at``.

        Without *payment_id* the active payment is used.
        """
        self._ensure_open("process a payment for")
        payment = self._find_payment(payment_id)
        now = self._clock.now()
        payment.mark_completed(transaction_reference, now, notes)
        self._mark_modified(payment)
        self._touch()
        self.record_event(
            PaymentCompleted(
                aggregate_id=self._order.id,
                occurred_on=now,
                payment_id=payment.id,
                amount=Decimal(payment.amount),
                transaction_reference=transaction_reference,
            )
        )
        return payment

    def refund_payments(self, reason: str) -> list[OrderPayment]:
        refunded = []
        for payment in self._payments:
            if payment.status == PaymentStatus.COMPLETED:
                payment.refund(reason)
                self._mark_modified(payment)
                refunded.append(payment)
        if refunded:
            self._touch()
        return refunded

    # ------------------------------------------------------------------
    # Stock
    # ------------------------------------------------------------------

    def reserve_stock(self, items: Sequence[Tuple[str, int]]) -> list[OrderStock]:
        """Append one reservation per ``(sku, quantity)`` pair.

        All items are validated before any reservation is recorded.
        """
        self._ensure_open("reserve stock for")
        if not items:
            raise InvalidArgumentError("At least one stock item is required.")
        for sku, quantity in items:
            if not sku or not str(sku).strip():
                raise InvalidArgumentError("Stock item SKU is required.")
            self._validate_quantity(sku, quantity)

        now = self._clock.now()
        reservations = []
        for sku, quantity in items:
            reservation = OrderStock.reserve(self._order.id, str(sku).strip(), quantity, now)
            self._stock_reservations.append(reservation)
            reservations.append(reservation)
            self.record_event(
                StockReserved(
                    aggregate_id=self._order.id,
                    occurred_on=now,
                    sku=reservation.sku,
                    quantity=quantity,
                )
            )
        self._touch()
        return reservations

    def release_stock(self, reason: str) -> list[OrderStock]:
        released = []
        for reservation in self._stock_reservations:
            if reservation.is_active:
                reservation.release(reason)
                self._mark_modified(reservation)
                released.append(reservation)
        if released:
            self._touch()
        return released

    def commit_stock(self) -> list[OrderStock]:
        committed = []
        for reservation in self._stock_reservations:
            if reservation.status == StockStatus.RESERVED:
                reservation.commit()
                self._mark_modified(reservation)
                committed.append(reservation)
        if committed:
            self._touch()
        return committed

    # ------------------------------------------------------------------
    # Loyalty ledger
    # ------------------------------------------------------------------

    def earn_loyalty(
        self,
        points: int,
        reason: Optional[str] = None,
        external_transaction_id: Optional[str] = None,
    ) -> OrderLoyalty:
        self._validate_points(points)
        if self._order.state != OrderState.COMPLETED:
            raise InvalidArgumentError(
                f"Loyalty points can only be earned for completed orders "
                f"(order {self._order.id} is {self._order.state})."
            )
        entry = OrderLoyalty.earn(
            self._order.id,
            points,
            reason or f"Points earned for order {self._order.id}",
            self._clock.now(),
            external_transaction_id,
        )
        return self._append_loyalty(entry)

    def burn_loyalty(
        self,
        points: int,
        reason: Optional[str] = None,
        external_transaction_id: Optional[str] = None,
    ) -> OrderLoyalty:
        self._validate_points(points)
        self._ensure_open("burn loyalty points for")
        balance = self.loyalty_balance
        if balance - points < 0:
            raise InsufficientBalanceError(self._order.id, balance, points)
        entry = OrderLoyalty.burn(
            self._order.id,
            points,
            reason or f"Points burned for order {self._order.id}",
            self._clock.now(),
            external_transaction_id,
        )
        return self._append_loyalty(entry)

    def calculate_points_to_earn(self, rate: Decimal = Decimal("1")) -> int:
        if rate <= 0:
            raise InvalidArgumentError("Loyalty rate must be positive.")
        return math.floor(self.order_total * Decimal(rate))

    # ------------------------------------------------------------------
    # Workflow link
    # ------------------------------------------------------------------

    def attach_workflow(self, workflow_id: str) -> bool:
        """Record the durable run driving this order.

        Returns ``False`` when the same id is already attached.  A
        different id is rejected: the link is written once.
        """
        if not workflow_id or not workflow_id.strip():
            raise InvalidArgumentError("Workflow id is required.")
        current = self._order.workflow_id
        if current == workflow_id:
            return False
        if current:
            raise InvalidArgumentError(
                f"Order {self._order.id} is already bound to workflow {current}."
            )
        self._order.workflow_id = workflow_id
        self._touch()
        return True

    # ------------------------------------------------------------------
    # Unit-of-work support
    # ------------------------------------------------------------------

    @property
    def order_changed(self) -> bool:
        return self._order.persisted_version is None or (
            self._order.version != self._order.persisted_version
        )

    def new_records(self) -> list[models.Model]:
        children: list[models.Model] = [
            *self._items,
            *self._payments,
            *self._loyalty_entries,
            *self._stock_reservations,
        ]
        return [record for record in children if record._state.adding]

    def modified_records(self) -> list[models.Model]:
        return list(self._modified)

    def removed_records(self) -> list[models.Model]:
        return list(self._removed)

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _coerce_state(self, value: str) -> OrderState:
        try:
            return OrderState(value)
        except ValueError:
            raise InvalidArgumentError(f"Invalid order state: {value!r}") from None

    def _check_structural(self, target: OrderState, reason: Optional[str]) -> None:
        current = self._order.state
        if not is_valid_transition(current, target):
            raise StateTransitionError(
                self._order.id,
                current,
                target,
                self._structural_message(current, target, reason),
            )

    def _apply_transition(self, target: OrderState, reason: Optional[str]) -> None:
        previous = self._order.state
        now = self._clock.now()
        self._order.state = target
        self._order.version += 1
        self._order.updated_at = now
        self._version_bumped = True
        self.record_event(
            OrderStateChanged(
                aggregate_id=self._order.id,
                occurred_on=now,
                old_state=str(previous),
                new_state=str(target),
                reason=reason,
                version=self._order.version,
            )
        )

    def _satisfies_business_rules(self, target: OrderState) -> bool:
        if target == OrderState.PAID:
            return self.is_fully_paid()
        if target == OrderState.COMPLETED:
            return self.is_fully_paid() and self.has_stock_reserved()
        if target == OrderState.REFUNDED:
            return self._order.state in (OrderState.PAID, OrderState.COMPLETED)
        if target == OrderState.CANCELLED:
            return self._order.state != OrderState.COMPLETED
        return True

    def _structural_message(
        self, current: str, target: str, reason: Optional[str]
    ) -> str:
        message = f"Invalid state transition from {current} to {target}"
        if reason and reason.strip():
            message += f". Reason: {reason}"
        next_states = valid_next_states(current)
        if next_states:
            message += f". Valid next states: {', '.join(str(s) for s in next_states)}"
        else:
            message += ". No valid transitions available from current state"
        return message

    def _business_rule_message(self, target: OrderState, reason: Optional[str]) -> str:
        message = f"Business rule validation failed for transition to {target}"
        if reason and reason.strip():
            message += f". Reason: {reason}"
        return f"{message}. {_BUSINESS_RULE_HINTS.get(target, 'General business rule violation')}"

    def _ensure_open(self, action: str) -> None:
        if self._order.state in _CLOSED_STATES:
            raise InvalidArgumentError(
                f"Cannot {action} order {self._order.id} in state {self._order.state}."
            )

    def _find_payment(self, payment_id: Optional[UUID]) -> OrderPayment:
        if payment_id is None:
            payment = self.active_payment
            if payment is None:
                raise NotFoundError(f"Order {self._order.id} has no active payment.")
            return payment
        for payment in self._payments:
            if str(payment.id) == str(payment_id):
                return payment
        raise NotFoundError(f"Payment {payment_id} not found for order {self._order.id}.")

    def _ensure_items_editable(self) -> None:
        if self._order.state not in _EDITABLE_ITEM_STATES:
            raise InvalidArgumentError(
                f"Items of order {self._order.id} cannot change in state {self._order.state}."
            )

    def _find_item(self, item_id: UUID) -> OrderItem:
        for item in self._items:
            if str(item.id) == str(item_id):
                return item
        raise NotFoundError(f"Item {item_id} not found in order {self._order.id}.")

    def _validate_quantity(self, label: str, quantity: int) -> None:
        if not isinstance(quantity, int) or isinstance(quantity, bool) or quantity <= 0:
            raise InvalidArgumentError(f"Quantity for {label} must be a positive integer.")

    def _validate_unit_amounts(self, net_amount: Decimal, gross_amount: Decimal) -> None:
        if net_amount < 0 or gross_amount < 0:
            raise InvalidArgumentError("Item amounts cannot be negative.")

    def _validate_points(self, points: int) -> None:
        if not isinstance(points, int) or isinstance(points, bool) or points <= 0:
            raise InvalidArgumentError("Loyalty points must be greater than zero.")

    def _append_loyalty(self, entry: OrderLoyalty) -> OrderLoyalty:
        self._loyalty_entries.append(entry)
        self._touch()
        self.record_event(
            LoyaltyRecorded(
                aggregate_id=self._order.id,
                occurred_on=entry.created_at,
                points_delta=entry.points_delta,
                reason=entry.reason,
            )
        )
        return entry

    def _mark_modified(self, record: models.Model) -> None:
        if record._state.adding:
            return
        if not any(existing is record for existing in self._modified):
            self._modified.append(record)

    def _touch(self) -> None:
        self._order.updated_at = self._clock.now()
        if self._order.persisted_version is None or self._version_bumped:
            return
        self._order.version += 1
        self._version_bumped = True
