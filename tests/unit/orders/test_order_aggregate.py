"""Unit tests for ``OrderAggregate``.

Covers:
- ``transition_state``: idempotency, structural failures, bookkeeping.
- ``safe_transition_state``: business rules per target state.
- ``is_business_rule_compliant_transition`` check.
- Line items and the order total they define.
- Payment, stock and loyalty ledger operations.
- Workflow link written once.
"""

from __future__ import annotations

from decimal import Decimal
from uuid import uuid4

import pytest

from modules.orders.aggregate import OrderAggregate
from modules.orders.constants import OrderState, PaymentStatus, StockStatus
from modules.orders.events import OrderStateChanged, PaymentCompleted
from modules.orders.exceptions import (
    InsufficientBalanceError,
    InvalidArgumentError,
    NotFoundError,
    StateTransitionError,
)
from modules.orders.models import Order, OrderItem, OrderLoyalty, OrderPayment, OrderStock

pytestmark = pytest.mark.unit


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _order(clock, state=OrderState.PENDING, version=3):
    order = Order.create_with_id(
        uuid4(), reference_id=f"ref-{uuid4()}", state=state, now=clock.now(), version=version
    )
    order.mark_persisted()
    return order


def _stored(record):
    """Mark a record built in memory as one read back from storage."""
    record._state.adding = False
    record._state.db = "default"
    return record


def _payment(order, clock, amount="100.00", status=PaymentStatus.PENDING):
    payment = OrderPayment.create(order.id, "cash", Decimal(amount), "USD", clock.now())
    payment.status = status
    if status == PaymentStatus.COMPLETED:
        payment.paid_at = clock.now()
    return _stored(payment)


def _item(order, clock, product_id="P-1", quantity=1, net="10.00", gross="12.00"):
    return _stored(
        OrderItem.create(
            order.id, product_id, quantity, Decimal(net), Decimal(gross), "USD", clock.now()
        )
    )


def _aggregate(
    clock, state=OrderState.PENDING, payments=(), loyalty=(), stock=(), order=None, items=()
):
    order = order or _order(clock, state)
    return OrderAggregate.load(order, payments, loyalty, stock, clock=clock, items=items)


@pytest.fixture()
def pending(clock):
    """Pending order with one completed 100.00 payment."""
    order = _order(clock)
    return _aggregate(
        clock, order=order, payments=[_payment(order, clock, status=PaymentStatus.COMPLETED)]
    )


@pytest.fixture()
def paid(clock):
    """Paid order with one completed 100.00 payment."""
    order = _order(clock, OrderState.PAID)
    return _aggregate(
        clock, order=order, payments=[_payment(order, clock, status=PaymentStatus.COMPLETED)]
    )


# ===========================================================================
# transition_state
# ===========================================================================


class TestTransitionState:
    def test_self_transition_changes_nothing(self, clock):
        aggregate = _aggregate(clock, OrderState.PENDING)
        before = (aggregate.order.version, aggregate.order.updated_at)
        clock.advance(60)

        aggregate.transition_state(OrderState.PENDING, "again")

        assert (aggregate.order.version, aggregate.order.updated_at) == before
        assert aggregate.domain_events == []

    def test_valid_edge_bumps_version_and_timestamp(self, clock):
        aggregate = _aggregate(clock, OrderState.PENDING)
        now = clock.advance(60)

        aggregate.transition_state(OrderState.CANCELLED, "customer request")

        assert aggregate.state == OrderState.CANCELLED
        assert aggregate.order.version == 4
        assert aggregate.order.updated_at == now
        assert aggregate.order.updated_at >= aggregate.order.created_at

    def test_valid_edge_records_state_changed_event(self, clock):
        aggregate = _aggregate(clock, OrderState.PENDING)

        aggregate.transition_state(OrderState.CANCELLED, "customer request")

        [event] = aggregate.domain_events
        assert isinstance(event, OrderStateChanged)
        assert (event.old_state, event.new_state) == ("Pending", "Cancelled")
        assert event.reason == "customer request"
        assert event.version == 4

    def test_initial_to_completed_fails(self, clock):
        aggregate = _aggregate(clock, OrderState.INITIAL)

        with pytest.raises(StateTransitionError) as exc_info:
            aggregate.transition_state(OrderState.COMPLETED)

        error = exc_info.value
        assert error.current_state == OrderState.INITIAL
        assert error.attempted_state == OrderState.COMPLETED
        assert error.order_id == aggregate.order_id
        assert error.is_business_rule is False
        assert "Valid next states: Pending" in str(error)
        assert error.valid_next_states() == ["Pending"]

    def test_failed_transition_leaves_order_untouched(self, clock):
        aggregate = _aggregate(clock, OrderState.INITIAL)

        with pytest.raises(StateTransitionError):
            aggregate.transition_state(OrderState.PAID)

        assert aggregate.state == OrderState.INITIAL
        assert aggregate.order.version == 3

    def test_unknown_state_is_invalid_argument(self, clock):
        aggregate = _aggregate(clock, OrderState.PENDING)

        with pytest.raises(InvalidArgumentError):
            aggregate.transition_state("Shipped")

    def test_reason_appears_in_structural_message(self, clock):
        aggregate = _aggregate(clock, OrderState.PAID)

        with pytest.raises(StateTransitionError, match="Reason: too late"):
            aggregate.transition_state(OrderState.CANCELLED, "too late")


# ===========================================================================
# safe_transition_state
# ===========================================================================


class TestSafeTransitionToPaid:
    def test_fails_without_completed_payment(self, clock):
        order = _order(clock)
        aggregate = _aggregate(clock, order=order, payments=[_payment(order, clock)])

        with pytest.raises(StateTransitionError) as exc_info:
            aggregate.safe_transition_state(OrderState.PAID, enforce_business_rules=True)

        assert exc_info.value.is_business_rule is True
        assert "Business rule validation failed for transition to Paid" in str(exc_info.value)
        assert aggregate.state == OrderState.PENDING

    def test_fails_without_any_payment(self, clock):
        aggregate = _aggregate(clock, OrderState.PENDING)

        with pytest.raises(StateTransitionError) as exc_info:
            aggregate.safe_transition_state(OrderState.PAID)

        assert exc_info.value.is_business_rule is True

    def test_fails_when_completed_amount_does_not_cover_total(self, clock):
        order = _order(clock)
        partial = _payment(order, clock, amount="40.00", status=PaymentStatus.COMPLETED)
        clock.advance()
        current = _payment(order, clock, amount="100.00")
        aggregate = _aggregate(clock, order=order, payments=[partial, current])

        assert aggregate.order_total == Decimal("100.00")
        assert aggregate.total_paid == Decimal("40.00")
        with pytest.raises(StateTransitionError):
            aggregate.safe_transition_state(OrderState.PAID)

    def test_succeeds_with_covering_completed_payment(self, pending):
        pending.safe_transition_state(OrderState.PAID, "paid", enforce_business_rules=True)

        assert pending.state == OrderState.PAID

    def test_rules_disabled_only_checks_structure(self, clock):
        aggregate = _aggregate(clock, OrderState.PENDING)

        aggregate.safe_transition_state(OrderState.PAID, enforce_business_rules=False)

        assert aggregate.state == OrderState.PAID

    def test_structural_check_runs_before_rules(self, clock):
        aggregate = _aggregate(clock, OrderState.INITIAL)

        with pytest.raises(StateTransitionError) as exc_info:
            aggregate.safe_transition_state(OrderState.PAID, enforce_business_rules=False)

        assert exc_info.value.is_business_rule is False


class TestSafeTransitionOtherTargets:
    def test_completed_requires_stock(self, paid):
        with pytest.raises(StateTransitionError) as exc_info:
            paid.safe_transition_state(OrderState.COMPLETED)

        assert exc_info.value.is_business_rule is True
        assert "stock not reserved" in str(exc_info.value)

    def test_completed_with_reserved_stock(self, paid):
        paid.reserve_stock([("SKU-1", 2)])

        paid.safe_transition_state(OrderState.COMPLETED)

        assert paid.state == OrderState.COMPLETED

    def test_refunded_from_paid(self, paid):
        paid.safe_transition_state(OrderState.REFUNDED, "customer return")

        assert paid.state == OrderState.REFUNDED

    def test_cancel_completed_order_breaks_business_rule(self, clock):
        aggregate = _aggregate(clock, OrderState.COMPLETED)

        with pytest.raises(StateTransitionError) as exc_info:
            aggregate.safe_transition_state(OrderState.CANCELLED)

        assert exc_info.value.is_business_rule is True

    def test_administrative_cancel_of_completed_order(self, clock):
        aggregate = _aggregate(clock, OrderState.COMPLETED)

        aggregate.safe_transition_state(OrderState.CANCELLED, enforce_business_rules=False)

        assert aggregate.state == OrderState.CANCELLED


class TestBusinessRuleCompliance:
    def test_matches_safe_transition(self, clock, pending):
        empty = _aggregate(clock, OrderState.PENDING)

        assert pending.is_business_rule_compliant_transition(OrderState.PAID) is True
        assert empty.is_business_rule_compliant_transition(OrderState.PAID) is False

    def test_rejects_structural_violation(self, pending):
        assert pending.is_business_rule_compliant_transition(OrderState.COMPLETED) is False

    def test_never_raises_on_unknown_state(self, pending):
        assert pending.is_business_rule_compliant_transition("Shipped") is False

    def test_does_not_mutate(self, pending):
        pending.is_business_rule_compliant_transition(OrderState.PAID)

        assert pending.state == OrderState.PENDING
        assert pending.order.version == 3


# ===========================================================================
# Line items
# ===========================================================================


class TestItems:
    def test_add_item_appends_new_line(self, clock):
        aggregate = _aggregate(clock, OrderState.PENDING)

        item = aggregate.add_item(" P-1 ", 2, Decimal("10.00"), Decimal("12.00"))

        assert item.product_id == "P-1"
        assert aggregate.items == (item,)
        assert aggregate.total_item_count == 2
        assert aggregate.total_net_amount == Decimal("20.00")
        assert aggregate.total_gross_amount == Decimal("24.00")
        assert aggregate.new_records() == [item]
        assert aggregate.order.version == 4

    def test_repeated_product_merges_into_existing_line(self, clock):
        order = _order(clock)
        existing = _item(order, clock, quantity=1)
        aggregate = _aggregate(clock, order=order, items=[existing])

        merged = aggregate.add_item("P-1", 3, Decimal("9.00"), Decimal("11.00"))

        assert merged is existing
        assert existing.quantity == 4
        assert existing.gross_amount == Decimal("11.00")
        assert aggregate.modified_records() == [existing]
        assert aggregate.new_records() == []

    def test_order_total_comes_from_items(self, clock):
        order = _order(clock)
        aggregate = _aggregate(
            clock,
            order=order,
            payments=[_payment(order, clock, amount="100.00", status=PaymentStatus.COMPLETED)],
            items=[_item(order, clock, quantity=3, gross="50.00")],
        )

        assert aggregate.order_total == Decimal("150.00")
        assert aggregate.is_fully_paid() is False
        with pytest.raises(StateTransitionError) as exc_info:
            aggregate.safe_transition_state(OrderState.PAID)
        assert exc_info.value.is_business_rule is True

    def test_payment_covering_items_allows_paid(self, clock):
        order = _order(clock)
        aggregate = _aggregate(
            clock,
            order=order,
            payments=[_payment(order, clock, amount="24.00", status=PaymentStatus.COMPLETED)],
            items=[_item(order, clock, quantity=2, gross="12.00")],
        )

        aggregate.safe_transition_state(OrderState.PAID)

        assert aggregate.state == OrderState.PAID

    def test_update_item(self, clock):
        order = _order(clock)
        item = _item(order, clock)
        aggregate = _aggregate(clock, order=order, items=[item])

        aggregate.update_item(item.id, 5, Decimal("1.00"), Decimal("1.50"))

        assert (item.quantity, item.net_amount, item.gross_amount) == (
            5,
            Decimal("1.00"),
            Decimal("1.50"),
        )
        assert aggregate.order_total == Decimal("7.50")
        assert aggregate.modified_records() == [item]

    def test_update_unknown_item(self, clock):
        aggregate = _aggregate(clock, OrderState.PENDING)

        with pytest.raises(NotFoundError):
            aggregate.update_item(uuid4(), 1, Decimal("1"), Decimal("1"))

    def test_remove_stored_item_is_staged_for_delete(self, clock):
        order = _order(clock)
        item = _item(order, clock)
        aggregate = _aggregate(clock, order=order, items=[item])
        aggregate.update_item(item.id, 2, Decimal("10.00"), Decimal("12.00"))

        removed = aggregate.remove_item(item.id)

        assert removed is item
        assert aggregate.items == ()
        assert aggregate.removed_records() == [item]
        assert aggregate.modified_records() == []
        assert aggregate.order.version == 4

    def test_remove_unsaved_item_is_dropped(self, clock):
        aggregate = _aggregate(clock, OrderState.PENDING)
        item = aggregate.add_item("P-1", 1, Decimal("1"), Decimal("1"))

        aggregate.remove_item(item.id)

        assert aggregate.new_records() == []
        assert aggregate.removed_records() == []

    @pytest.mark.parametrize(
        "state", [OrderState.PAID, OrderState.COMPLETED, OrderState.CANCELLED]
    )
    def test_items_frozen_after_pending(self, clock, state):
        aggregate = _aggregate(clock, state)

        with pytest.raises(InvalidArgumentError, match="cannot change"):
            aggregate.add_item("P-1", 1, Decimal("1"), Decimal("1"))

    @pytest.mark.parametrize("quantity", [0, -1, True, 1.5, "2"])
    def test_invalid_quantity_rejected(self, clock, quantity):
        aggregate = _aggregate(clock, OrderState.PENDING)

        with pytest.raises(InvalidArgumentError, match="positive integer"):
            aggregate.add_item("P-1", quantity, Decimal("1"), Decimal("1"))

        assert aggregate.items == ()

    def test_negative_amount_rejected(self, clock):
        aggregate = _aggregate(clock, OrderState.PENDING)

        with pytest.raises(InvalidArgumentError, match="cannot be negative"):
            aggregate.add_item("P-1", 1, Decimal("-1.00"), Decimal("1.00"))

    def test_blank_product_rejected(self, clock):
        aggregate = _aggregate(clock, OrderState.PENDING)

        with pytest.raises(InvalidArgumentError, match="Product id is required"):
            aggregate.add_item("  ", 1, Decimal("1"), Decimal("1"))


# ===========================================================================
# Payments
# ===========================================================================


class TestPayments:
    def test_new_order_starts_initial_at_version_one(self, clock):
        aggregate = OrderAggregate.create("ref-1", clock)
        payment = aggregate.add_payment("cash", Decimal("100"), "USD")

        assert aggregate.state == OrderState.INITIAL
        assert aggregate.order.version == 1
        assert payment.status == PaymentStatus.PENDING
        assert aggregate.active_payment is payment

    def test_create_records_initial_journey_event(self, clock):
        aggregate = OrderAggregate.create("ref-1", clock)

        [event] = aggregate.domain_events
        assert event.old_state == ""
        assert event.new_state == "Initial"

    def test_complete_payment_sets_paid_at(self, clock):
        order = _order(clock)
        aggregate = _aggregate(clock, order=order, payments=[_payment(order, clock)])
        now = clock.advance(30)

        payment = aggregate.complete_payment(transaction_reference="tx-1")

        assert payment.status == PaymentStatus.COMPLETED
        assert payment.paid_at == now
        assert payment.transaction_reference == "tx-1"
        assert any(isinstance(e, PaymentCompleted) for e in aggregate.domain_events)

    def test_complete_payment_without_active_payment(self, clock):
        aggregate = _aggregate(clock, OrderState.PENDING)

        with pytest.raises(NotFoundError):
            aggregate.complete_payment()

    def test_second_active_payment_rejected(self, clock):
        aggregate = OrderAggregate.create("ref-1", clock)
        aggregate.add_payment("cash", Decimal("100"), "USD")

        with pytest.raises(InvalidArgumentError):
            aggregate.add_payment("cash", Decimal("5"), "USD")

    def test_refund_payments(self, paid):
        refunded = paid.refund_payments("return")

        assert [p.status for p in refunded] == [PaymentStatus.REFUNDED]
        assert paid.total_paid == Decimal("0")
        assert paid.order_total == Decimal("100.00")


# ===========================================================================
# Stock
# ===========================================================================


class TestStock:
    def test_reserve_appends_one_row_per_item(self, pending):
        rows = pending.reserve_stock([("SKU-1", 2), ("SKU-2", 1)])

        assert [(r.sku, r.quantity_reserved, r.status) for r in rows] == [
            ("SKU-1", 2, StockStatus.RESERVED),
            ("SKU-2", 1, StockStatus.RESERVED),
        ]
        assert pending.has_stock_reserved() is True

    def test_non_positive_quantity_rejected_atomically(self, pending):
        with pytest.raises(InvalidArgumentError):
            pending.reserve_stock([("SKU-1", 2), ("SKU-2", 0)])

        assert pending.stock_reservations == ()

    @pytest.mark.parametrize("quantity", [True, False, 2.0])
    def test_non_integer_quantity_rejected(self, pending, quantity):
        with pytest.raises(InvalidArgumentError, match="positive integer"):
            pending.reserve_stock([("SKU-1", quantity)])

        assert pending.stock_reservations == ()

    @pytest.mark.parametrize("state", [OrderState.CANCELLED, OrderState.REFUNDED])
    def test_reserve_forbidden_on_closed_orders(self, clock, state):
        aggregate = _aggregate(clock, state)

        with pytest.raises(InvalidArgumentError):
            aggregate.reserve_stock([("SKU-1", 1)])

    def test_release_and_commit(self, clock):
        order = _order(clock, OrderState.PAID)
        reserved = _stored(OrderStock.reserve(order.id, "SKU-1", 1, clock.now()))
        aggregate = _aggregate(clock, order=order, stock=[reserved])

        assert aggregate.commit_stock() == [reserved]
        assert reserved.status == StockStatus.COMMITTED
        assert aggregate.release_stock("cancelled") == [reserved]
        assert reserved.status == StockStatus.RELEASED
        assert aggregate.has_stock_reserved() is False


# ===========================================================================
# Loyalty ledger
# ===========================================================================


class TestLoyalty:
    def test_earn_requires_completed_order(self, pending):
        with pytest.raises(InvalidArgumentError):
            pending.earn_loyalty(10, "bonus")

    def test_earn_on_completed_order(self, clock):
        aggregate = _aggregate(clock, OrderState.COMPLETED)

        entry = aggregate.earn_loyalty(10, "bonus")

        assert entry.points_delta == 10
        assert aggregate.loyalty_balance == 10

    @pytest.mark.parametrize("points", [0, -5])
    def test_points_must_be_positive(self, clock, points):
        aggregate = _aggregate(clock, OrderState.COMPLETED)

        with pytest.raises(InvalidArgumentError):
            aggregate.earn_loyalty(points, "bonus")
        with pytest.raises(InvalidArgumentError):
            aggregate.burn_loyalty(points, "redeem")

    def test_burn_within_balance(self, clock):
        order = _order(clock)
        earned = _stored(OrderLoyalty.earn(order.id, 50, "earlier order", clock.now()))
        aggregate = _aggregate(clock, order=order, loyalty=[earned])

        entry = aggregate.burn_loyalty(30, "redeem")

        assert entry.points_delta == -30
        assert aggregate.loyalty_balance == 20

    def test_burn_below_zero_raises(self, clock):
        order = _order(clock)
        earned = _stored(OrderLoyalty.earn(order.id, 50, "earlier order", clock.now()))
        aggregate = _aggregate(clock, order=order, loyalty=[earned])
        aggregate.burn_loyalty(30, "redeem")

        with pytest.raises(InsufficientBalanceError) as exc_info:
            aggregate.burn_loyalty(30, "redeem again")

        assert exc_info.value.balance == 20
        assert exc_info.value.requested == 30
        assert aggregate.loyalty_balance == 20

    @pytest.mark.parametrize("state", [OrderState.CANCELLED, OrderState.REFUNDED])
    def test_burn_forbidden_on_closed_orders(self, clock, state):
        aggregate = _aggregate(clock, state)

        with pytest.raises(InvalidArgumentError):
            aggregate.burn_loyalty(1, "redeem")

    def test_points_to_earn_are_floored(self, clock):
        order = _order(clock)
        aggregate = _aggregate(
            clock, order=order, payments=[_payment(order, clock, amount="99.99")]
        )

        assert aggregate.calculate_points_to_earn(Decimal("1")) == 99
        assert aggregate.calculate_points_to_earn(Decimal("1.5")) == 149


# ===========================================================================
# Versioning and workflow link
# ===========================================================================


class TestVersioning:
    def test_child_mutations_bump_version_once_per_operation(self, clock):
        order = _order(clock)
        aggregate = _aggregate(clock, order=order)

        aggregate.reserve_stock([("SKU-1", 1)])
        aggregate.reserve_stock([("SKU-2", 1)])

        assert aggregate.order.version == 4
        assert aggregate.order_changed is True

    def test_untouched_aggregate_is_unchanged(self, pending):
        assert pending.order_changed is False
        assert pending.new_records() == []
        assert pending.modified_records() == []


class TestAttachWorkflow:
    def test_first_attach_writes_id(self, pending):
        assert pending.attach_workflow("order-abc") is True
        assert pending.order.workflow_id == "order-abc"

    def test_same_id_is_noop(self, pending):
        pending.attach_workflow("order-abc")
        version = pending.order.version

        assert pending.attach_workflow("order-abc") is False
        assert pending.order.version == version

    def test_different_id_rejected(self, pending):
        pending.attach_workflow("order-abc")

        with pytest.raises(InvalidArgumentError):
            pending.attach_workflow("order-xyz")

        assert pending.order.workflow_id == "order-abc"
