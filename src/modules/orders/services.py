"""Order lifecycle service layer (use cases).

Every command follows the same shape: open a unit of work, load the
order (``NotFoundError`` when absent), build a private
``OrderAggregate``, apply one or more aggregate operations, stage the
result and commit.  Input validation happens before the unit of work is
opened, so invalid calls never touch storage.

Aggregate errors (``StateTransitionError``, ``InsufficientBalanceError``
...) propagate unchanged.  ``ConcurrencyConflictError`` is raised when
another writer saved the same order first; callers reload and retry.
"""

from __future__ import annotations

from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Iterable, List, Mapping, Optional, TypeVar, Union
from uuid import UUID

import structlog
from django.conf import settings
from django.db import IntegrityError
from pydantic import ValidationError

from modules.orders.aggregate import OrderAggregate
from modules.orders.constants import (
    CURRENCY_CODE_LENGTH,
    DEFAULT_CURRENCY,
    PAYMENT_METHOD_ALIASES,
    OrderState,
    PaymentMethod,
    PaymentStatus,
)
from modules.orders.dtos import (
    InitializeOrderResultDTO,
    LoyaltyEntryDTO,
    OrderDetailDTO,
    OrderItemDTO,
    OrderJourneyDTO,
    StockItemDTO,
    StockReservationDTO,
    TransitionResultDTO,
)
from modules.orders.exceptions import InvalidArgumentError, NotFoundError
from modules.orders.models import Order, OrderItem, OrderPayment, OrderStock
from modules.orders.unit_of_work import DjangoUnitOfWork
from shared.domain.clock import Clock, system_clock

logger = structlog.get_logger(__name__)

R = TypeVar("R")

MAX_PAGE_SIZE = 500

REFERENCE_ID_MAX_LENGTH = Order._meta.get_field("reference_id").max_length
TRANSACTION_REFERENCE_MAX_LENGTH = OrderPayment._meta.get_field(
    "transaction_reference"
).max_length
SKU_MAX_LENGTH = OrderStock._meta.get_field("sku").max_length
PRODUCT_ID_MAX_LENGTH = OrderItem._meta.get_field("product_id").max_length

_AMOUNT_FIELD = OrderPayment._meta.get_field("amount")
AMOUNT_DECIMAL_PLACES = _AMOUNT_FIELD.decimal_places
AMOUNT_INTEGER_DIGITS = _AMOUNT_FIELD.max_digits - _AMOUNT_FIELD.decimal_places

StockItemInput = Union[StockItemDTO, Mapping[str, Any]]


# ---------------------------------------------------------------------------
# Input normalisation
# ---------------------------------------------------------------------------


def normalize_payment_method(value: Optional[str]) -> str:
    """Map a client-supplied method onto the whitelist.

    Raises:
        InvalidArgumentError: the method is blank or not recognised.
    """
    key = (value or "").strip().lower()
    if key in PaymentMethod.values:
        return key
    if key in PAYMENT_METHOD_ALIASES:
        return str(PAYMENT_METHOD_ALIASES[key])
    raise InvalidArgumentError(
        f"Invalid payment method: {value!r}. "
        f"Supported methods: {', '.join(PaymentMethod.values)}."
    )


def normalize_currency(value: Optional[str]) -> str:
    code = (value or "").strip().upper()
    if len(code) != CURRENCY_CODE_LENGTH or not code.isalpha():
        raise InvalidArgumentError(f"Invalid currency code: {value!r}.")
    return code


def normalize_amount(value: Any, allow_zero: bool = False) -> Decimal:
    """Parse a money amount that fits the ``DecimalField(12, 2)`` columns.

    Raises:
        InvalidArgumentError: not a number, not positive (or negative with
            *allow_zero*), more than two decimal places, or more than ten
            digits before the decimal point.
    """
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise InvalidArgumentError(f"Invalid amount: {value!r}.") from None
    if not amount.is_finite():
        raise InvalidArgumentError(f"Invalid amount: {value!r}.")
    if amount < 0 or (amount == 0 and not allow_zero):
        raise InvalidArgumentError(
            "Amount cannot be negative." if allow_zero else "Amount must be greater than zero."
        )
    if amount.as_tuple().exponent < -AMOUNT_DECIMAL_PLACES:
        raise InvalidArgumentError(
            f"Amount supports at most {AMOUNT_DECIMAL_PLACES} decimal places."
        )
    if amount >= Decimal(10) ** AMOUNT_INTEGER_DIGITS:
        raise InvalidArgumentError(
            f"Amount supports at most {AMOUNT_INTEGER_DIGITS} digits before the decimal point."
        )
    return amount


def check_length(label: str, value: Optional[str], max_length: int) -> None:
    if value is not None and len(value) > max_length:
        raise InvalidArgumentError(f"{label} must be at most {max_length} characters.")


def to_stock_items(items: Iterable[StockItemInput]) -> List[StockItemDTO]:
    parsed = []
    for item in items:
        if not isinstance(item, StockItemDTO):
            try:
                item = StockItemDTO(**dict(item))
            except (TypeError, ValueError, ValidationError) as exc:
                raise InvalidArgumentError(f"Invalid stock item {item!r}: {exc}") from exc
        check_length("SKU", item.sku, SKU_MAX_LENGTH)
        parsed.append(item)
    if not parsed:
        raise InvalidArgumentError("At least one stock item is required.")
    return parsed


class OrderLifecycleService:
    """Application service for order lifecycle use-cases.

    Receives its unit-of-work factory and clock via constructor
    injection, so tests can swap storage and time.
    """

    def __init__(
        self,
        uow_factory: Callable[[], DjangoUnitOfWork] = DjangoUnitOfWork,
        clock: Clock = system_clock,
        loyalty_rate: Optional[Decimal] = None,
    ) -> None:
        self._uow_factory = uow_factory
        self._clock = clock
        if loyalty_rate is None:
            loyalty_rate = settings.LOYALTY_POINTS_PER_CURRENCY_UNIT
        self._loyalty_rate = Decimal(str(loyalty_rate))

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def initialize(
        self,
        reference_id: Optional[str],
        payment_method: Optional[str],
        amount: Any,
        currency: Optional[str] = DEFAULT_CURRENCY,
    ) -> InitializeOrderResultDTO:
        """Create an ``Initial`` order with one ``Pending`` payment.

        Idempotent by *reference_id*: an existing order is returned
        unchanged with ``created=False``.

        Raises:
            InvalidArgumentError: blank or over-long reference, unknown
                payment method, non-positive or over-wide amount, or
                malformed currency.
        """
        if not reference_id or not reference_id.strip():
            raise InvalidArgumentError("Reference id is required.")
        reference_id = reference_id.strip()
        check_length("Reference id", reference_id, REFERENCE_ID_MAX_LENGTH)
        method = normalize_payment_method(payment_method)
        amount = normalize_amount(amount)
        currency = normalize_currency(currency)

        log = logger.bind(reference_id=reference_id)

        existing = self._initialize_result_for(reference_id)
        if existing is not None:
            log.info("order.idempotency_hit", order_id=str(existing.order_id))
            return existing

        try:
            with self._uow_factory() as uow:
                aggregate = OrderAggregate.create(reference_id, self._clock)
                payment = aggregate.add_payment(method, amount, currency)
                uow.register(aggregate)
                uow.commit()
        except IntegrityError:
            # Lost a race on the unique reference_id: return the winner.
            winner = self._initialize_result_for(reference_id)
            if winner is None:
                raise
            log.info("order.idempotency_race_resolved", order_id=str(winner.order_id))
            return winner

        log.info(
            "order.initialized",
            order_id=str(aggregate.order_id),
            payment_id=str(payment.id),
            method=method,
            amount=str(amount),
            currency=currency,
        )
        return InitializeOrderResultDTO(
            order_id=aggregate.order_id,
            payment_id=payment.id,
            payment_status=payment.status,
            state=aggregate.state,
            created=True,
        )

    def mark_pending(self, order_id: UUID, reason: Optional[str] = None) -> OrderDetailDTO:
        """Move an order to ``Pending`` from ``Initial`` or ``Cancelled``.

        Already-pending orders are left untouched.
        """

        def operation(aggregate: OrderAggregate) -> None:
            aggregate.transition_state(OrderState.PENDING, reason)

        aggregate = self._execute(order_id, operation)
        logger.info("order.marked_pending", order_id=str(order_id), version=aggregate.order.version)
        return OrderDetailDTO.from_aggregate(aggregate)

    def add_item(
        self,
        order_id: UUID,
        product_id: str,
        quantity: int,
        net_amount: Any,
        gross_amount: Any,
        currency: Optional[str] = DEFAULT_CURRENCY,
    ) -> OrderItemDTO:
        """Add a product line while the order is ``Initial`` or ``Pending``.

        A product already on the order has its quantity increased and its
        unit amounts replaced.
        """
        check_length("Product id", (product_id or "").strip(), PRODUCT_ID_MAX_LENGTH)
        net = normalize_amount(net_amount, allow_zero=True)
        gross = normalize_amount(gross_amount, allow_zero=True)
        currency = normalize_currency(currency)

        item = self._execute(
            order_id,
            lambda aggregate: aggregate.add_item(product_id, quantity, net, gross, currency),
            return_result=True,
        )
        logger.info(
            "order.item_added",
            order_id=str(order_id),
            product_id=item.product_id,
            quantity=item.quantity,
        )
        return OrderItemDTO.from_entity(item)

    def update_item(
        self,
        order_id: UUID,
        item_id: UUID,
        quantity: int,
        net_amount: Any,
        gross_amount: Any,
    ) -> OrderItemDTO:
        net = normalize_amount(net_amount, allow_zero=True)
        gross = normalize_amount(gross_amount, allow_zero=True)
        item = self._execute(
            order_id,
            lambda aggregate: aggregate.update_item(item_id, quantity, net, gross),
            return_result=True,
        )
        logger.info("order.item_updated", order_id=str(order_id), item_id=str(item_id))
        return OrderItemDTO.from_entity(item)

    def remove_item(self, order_id: UUID, item_id: UUID) -> OrderDetailDTO:
        aggregate = self._execute(order_id, lambda aggregate: aggregate.remove_item(item_id))
        logger.info("order.item_removed", order_id=str(order_id), item_id=str(item_id))
        return OrderDetailDTO.from_aggregate(aggregate)

    def reserve_stock(
        self, order_id: UUID, items: Iterable[StockItemInput]
    ) -> List[StockReservationDTO]:
        stock_items = to_stock_items(items)

        def operation(aggregate: OrderAggregate):
            return aggregate.reserve_stock([(item.sku, item.quantity) for item in stock_items])

        reservations = self._execute(order_id, operation, return_result=True)
        logger.info(
            "order.stock_reserved",
            order_id=str(order_id),
            skus=[item.sku for item in stock_items],
        )
        return [StockReservationDTO.from_entity(r) for r in reservations]

    def earn_loyalty(
        self, order_id: UUID, points: int, reason: Optional[str] = None
    ) -> LoyaltyEntryDTO:
        entry = self._execute(
            order_id,
            lambda aggregate: aggregate.earn_loyalty(points, reason),
            return_result=True,
        )
        logger.info("order.loyalty_earned", order_id=str(order_id), points=points)
        return LoyaltyEntryDTO.from_entity(entry)

    def burn_loyalty(
        self, order_id: UUID, points: int, reason: Optional[str] = None
    ) -> LoyaltyEntryDTO:
        """Raises ``InsufficientBalanceError`` when the ledger would go negative."""
        entry = self._execute(
            order_id,
            lambda aggregate: aggregate.burn_loyalty(points, reason),
            return_result=True,
        )
        logger.info("order.loyalty_burned", order_id=str(order_id), points=points)
        return LoyaltyEntryDTO.from_entity(entry)

    def process_payment(
        self,
        order_id: UUID,
        transaction_reference: Optional[str] = None,
        notes: Optional[str] = None,
        payment_id: Optional[UUID] = None,
    ) -> OrderDetailDTO:
        """Complete the active payment and move the order to ``Paid``.

        An ``Initial`` order first advances to ``Pending``.  Orders that
        are already ``Paid`` or ``Completed`` are returned unchanged.

        Raises:
            StateTransitionError: the order is closed, or the completed
                payments do not cover the order total.
        """
        check_length(
            "Transaction reference", transaction_reference, TRANSACTION_REFERENCE_MAX_LENGTH
        )
        log = logger.bind(order_id=str(order_id))

        def operation(aggregate: OrderAggregate) -> None:
            if aggregate.state in (OrderState.PAID, OrderState.COMPLETED):
                log.info("order.payment_already_processed", state=aggregate.state)
                return
            if aggregate.state not in (OrderState.INITIAL, OrderState.PENDING):
                aggregate.transition_state(OrderState.PAID)
            if aggregate.state == OrderState.INITIAL:
                aggregate.transition_state(OrderState.PENDING, "Payment received")
            active = aggregate.active_payment
            if payment_id is not None or active is None or active.status != PaymentStatus.COMPLETED:
                aggregate.complete_payment(payment_id, transaction_reference, notes)
            aggregate.safe_transition_state(
                OrderState.PAID, "Payment completed", enforce_business_rules=True
            )

        aggregate = self._execute(order_id, operation)
        log.info(
            "order.payment_processed",
            state=aggregate.state,
            version=aggregate.order.version,
            transaction_reference=transaction_reference,
        )
        return OrderDetailDTO.from_aggregate(aggregate)

    def complete(self, order_id: UUID, reason: Optional[str] = None) -> OrderDetailDTO:
        """Commit reserved stock, move to ``Completed`` and earn loyalty points."""

        def operation(aggregate: OrderAggregate) -> None:
            if aggregate.state == OrderState.COMPLETED:
                return
            aggregate.commit_stock()
            aggregate.safe_transition_state(OrderState.COMPLETED, reason or "Order completed")
            points = aggregate.calculate_points_to_earn(self._loyalty_rate)
            if points > 0:
                aggregate.earn_loyalty(points, f"Points earned for order {aggregate.order_id}")

        aggregate = self._execute(order_id, operation)
        logger.info(
            "order.completed",
            order_id=str(order_id),
            loyalty_balance=aggregate.loyalty_balance,
        )
        return OrderDetailDTO.from_aggregate(aggregate)

    def refund(self, order_id: UUID, reason: Optional[str] = None) -> OrderDetailDTO:
        """Refund completed payments, release stock and move to ``Refunded``."""
        reason = reason or "Order refunded"

        def operation(aggregate: OrderAggregate) -> None:
            if aggregate.state == OrderState.REFUNDED:
                return
            aggregate.safe_transition_state(OrderState.REFUNDED, reason)
            aggregate.refund_payments(reason)
            aggregate.release_stock(reason)

        aggregate = self._execute(order_id, operation)
        logger.info("order.refunded", order_id=str(order_id))
        return OrderDetailDTO.from_aggregate(aggregate)

    def cancel(self, order_id: UUID, reason: Optional[str] = None) -> OrderDetailDTO:
        """Move the order to ``Cancelled`` and release its active stock.

        ``Paid`` orders cannot be cancelled directly; refund them first.
        """
        reason = reason or "Order cancelled"

        def operation(aggregate: OrderAggregate) -> None:
            aggregate.transition_state(OrderState.CANCELLED, reason)
            aggregate.release_stock(reason)

        aggregate = self._execute(order_id, operation)
        logger.info("order.cancelled", order_id=str(order_id), reason=reason)
        return OrderDetailDTO.from_aggregate(aggregate)

    def transition_state(
        self,
        order_id: UUID,
        target_state: str,
        reason: Optional[str] = None,
        enforce_business_rules: bool = True,
    ) -> TransitionResultDTO:
        """Move the order to *target_state* with no side effects on its records.

        The administrative path: payments, stock and loyalty are left as
        they are.  With ``enforce_business_rules=False`` only the
        transition table is checked.  A transition to the current state
        reports ``changed=False``.

        Raises:
            InvalidArgumentError: *target_state* is not an order state.
            StateTransitionError: the edge is missing, or a business rule
                fails while enforced.
        """
        previous: List[str] = []

        def operation(aggregate: OrderAggregate) -> None:
            previous.append(aggregate.state)
            aggregate.safe_transition_state(
                target_state, reason, enforce_business_rules=enforce_business_rules
            )

        aggregate = self._execute(order_id, operation)
        changed = previous[0] != aggregate.state
        logger.info(
            "order.state_transitioned",
            order_id=str(order_id),
            previous_state=previous[0],
            new_state=aggregate.state,
            changed=changed,
            enforce_business_rules=enforce_business_rules,
            version=aggregate.order.version,
        )
        return TransitionResultDTO(
            order_id=aggregate.order_id,
            previous_state=previous[0],
            new_state=aggregate.state,
            changed=changed,
            reason=reason,
            version=aggregate.order.version,
            transitioned_at=aggregate.order.updated_at,
        )

    def attach_workflow(self, order_id: UUID, workflow_id: str) -> bool:
        """Persist the durable run id on the order (written once).

        Returns ``True`` when the id was written by this call.
        """
        attached = self._execute(
            order_id,
            lambda aggregate: aggregate.attach_workflow(workflow_id),
            return_result=True,
        )
        if attached:
            logger.info("order.workflow_attached", order_id=str(order_id), workflow_id=workflow_id)
        return attached

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_order_details(self, order_id: UUID) -> OrderDetailDTO:
        """Raises ``NotFoundError`` if the order does not exist."""
        with self._uow_factory() as uow:
            return OrderDetailDTO.from_aggregate(self._load(uow, order_id))

    def get_by_reference_id(self, reference_id: str) -> Optional[OrderDetailDTO]:
        with self._uow_factory() as uow:
            order = uow.orders.get_by_reference_id(reference_id)
            if order is None:
                return None
            return OrderDetailDTO.from_aggregate(self._load(uow, order.id))

    def list_orders(self, skip: int = 0, take: int = 50) -> List[OrderDetailDTO]:
        if skip < 0:
            raise InvalidArgumentError("skip must be zero or positive.")
        if not 1 <= take <= MAX_PAGE_SIZE:
            raise InvalidArgumentError(f"take must be between 1 and {MAX_PAGE_SIZE}.")
        with self._uow_factory() as uow:
            return [
                OrderDetailDTO.from_aggregate(self._load(uow, order.id))
                for order in uow.orders.list(skip, take)
            ]

    def get_workflow_id(self, order_id: UUID) -> Optional[str]:
        with self._uow_factory() as uow:
            order = uow.orders.get_by_id(order_id)
            if order is None:
                raise NotFoundError(f"Order {order_id} not found.")
            return order.workflow_id

    def get_order_journey(self, order_id: UUID) -> List[OrderJourneyDTO]:
        """State-change audit trail of the order, oldest first."""
        with self._uow_factory() as uow:
            if uow.orders.get_by_id(order_id) is None:
                raise NotFoundError(f"Order {order_id} not found.")
            return [OrderJourneyDTO.from_entity(e) for e in uow.journey.get_by_order_id(order_id)]

    def has_active_stock(self, order_id: UUID) -> bool:
        with self._uow_factory() as uow:
            return self._load(uow, order_id).has_stock_reserved()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _load(self, uow: DjangoUnitOfWork, order_id: UUID) -> OrderAggregate:
        order = uow.orders.get_by_id(order_id)
        if order is None:
            raise NotFoundError(f"Order {order_id} not found.")
        return OrderAggregate.load(
            order,
            uow.payments.get_by_order_id(order.id),
            uow.loyalty.get_by_order_id(order.id),
            uow.stock.get_by_order_id(order.id),
            clock=self._clock,
            items=uow.items.get_by_order_id(order.id),
        )

    def _execute(
        self,
        order_id: UUID,
        operation: Callable[[OrderAggregate], R],
        return_result: bool = False,
    ):
        """Run *operation* on a freshly loaded aggregate inside one unit of work.

        Returns the aggregate, or the operation's own result when
        *return_result* is set.
        """
        with self._uow_factory() as uow:
            aggregate = self._load(uow, order_id)
            result = operation(aggregate)
            uow.register(aggregate)
            uow.commit()
        return result if return_result else aggregate

    def _initialize_result_for(self, reference_id: str) -> Optional[InitializeOrderResultDTO]:
        with self._uow_factory() as uow:
            order = uow.orders.get_by_reference_id(reference_id)
            if order is None:
                return None
            aggregate = self._load(uow, order.id)
        payment = aggregate.active_payment
        if payment is None and aggregate.payments:
            payment = aggregate.payments[-1]
        return InitializeOrderResultDTO(
            order_id=aggregate.order_id,
            payment_id=payment.id if payment else None,
            payment_status=payment.status if payment else None,
            state=aggregate.state,
            created=False,
        )
