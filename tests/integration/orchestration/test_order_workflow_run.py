"""Integration tests for ``OrderProcessingWorkflow.run``.

The workflow runs on a real worker inside Temporal's time-skipping test
server.  Activities are in-memory stubs registered under the production
activity names, so the run's control flow is exercised without a
database.

Covers:
- Payment path, with and without stock items.
- Cancel path, and cancel arriving after payment.
- An activity failure failing the run with its stage.
"""

from __future__ import annotations

from typing import Any, Dict, List, Tuple
from uuid import uuid4

import pytest
import pytest_asyncio
from temporalio import activity
from temporalio.client import WorkflowFailureError
from temporalio.exceptions import ApplicationError
from temporalio.testing import WorkflowEnvironment
from temporalio.worker import Worker

from modules.orders.orchestration.workflows import (
    CANCEL_ORDER,
    CANCEL_ORDER_SIGNAL,
    COMPLETE_ORDER,
    PAYMENT_SUCCESS_SIGNAL,
    PROCESS_PAYMENT,
    RESERVE_STOCK,
    TRANSITION_TO_PENDING,
    CancelOrderSignal,
    OrderActivityInput,
    OrderProcessingWorkflow,
    OrderWorkflowInput,
    PaymentActivityInput,
    PaymentSuccessSignal,
    StockActivityInput,
    StockLine,
)

pytestmark = pytest.mark.integration


# ---------------------------------------------------------------------------
# Stub activities
# ---------------------------------------------------------------------------


class StubActivities:
    """Records every call; ``failures`` makes an activity raise instead."""

    def __init__(self) -> None:
        self.calls: List[Tuple[str, Any]] = []
        self.failures: Dict[str, ApplicationError] = {}

    def all(self):
        return [
            self.transition_to_pending,
            self.process_payment,
            self.reserve_stock,
            self.complete_order,
            self.cancel_order,
        ]

    @property
    def names(self) -> List[str]:
        return [name for name, _ in self.calls]

    def _record(self, name: str, params: Any, result: Any) -> Any:
        self.calls.append((name, params))
        if name in self.failures:
            raise self.failures[name]
        return result

    @activity.defn(name=TRANSITION_TO_PENDING)
    async def transition_to_pending(self, params: OrderActivityInput) -> str:
        return self._record(TRANSITION_TO_PENDING, params, "Pending")

    @activity.defn(name=PROCESS_PAYMENT)
    async def process_payment(self, params: PaymentActivityInput) -> str:
        return self._record(PROCESS_PAYMENT, params, "Paid")

    @activity.defn(name=RESERVE_STOCK)
    async def reserve_stock(self, params: StockActivityInput) -> int:
        return self._record(RESERVE_STOCK, params, len(params.items))

    @activity.defn(name=COMPLETE_ORDER)
    async def complete_order(self, params: OrderActivityInput) -> str:
        return self._record(COMPLETE_ORDER, params, "Completed")

    @activity.defn(name=CANCEL_ORDER)
    async def cancel_order(self, params: OrderActivityInput) -> str:
        return self._record(CANCEL_ORDER, params, "Cancelled")


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture()
async def env():
    async with await WorkflowEnvironment.start_time_skipping() as env:
        yield env


@pytest.fixture()
def stubs():
    return StubActivities()


@pytest.fixture()
def order_id():
    return str(uuid4())


async def _run(env, stubs, params, *signals):
    """Start the run, deliver *signals* in order and return its result."""
    task_queue = f"orders-{uuid4()}"
    async with Worker(
        env.client,
        task_queue=task_queue,
        workflows=[OrderProcessingWorkflow],
        activities=stubs.all(),
    ):
        handle = await env.client.start_workflow(
            OrderProcessingWorkflow.run,
            params,
            id=f"order-{params.order_id}",
            task_queue=task_queue,
        )
        for name, payload in signals:
            await handle.signal(name, payload)
        return await handle.result()


def _paid(reference="tx-1"):
    return PAYMENT_SUCCESS_SIGNAL, PaymentSuccessSignal(transaction_reference=reference)


def _cancelled(order_id, reason="customer request"):
    return CANCEL_ORDER_SIGNAL, CancelOrderSignal(order_id=order_id, reason=reason)


# ===========================================================================
# Payment path
# ===========================================================================


class TestPaymentPath:
    @pytest.mark.asyncio
    async def test_payment_with_items_reserves_stock_then_completes(
        self, env, stubs, order_id
    ):
        params = OrderWorkflowInput(order_id=order_id, items=[StockLine("SKU-1", 2)])

        result = await _run(env, stubs, params, _paid())

        assert result == "Completed"
        assert stubs.names == [
            TRANSITION_TO_PENDING,
            PROCESS_PAYMENT,
            RESERVE_STOCK,
            COMPLETE_ORDER,
        ]
        payment = stubs.calls[1][1]
        assert payment.order_id == order_id
        assert payment.transaction_reference == "tx-1"
        stock = stubs.calls[2][1]
        assert [(line.sku, line.quantity) for line in stock.items] == [("SKU-1", 2)]

    @pytest.mark.asyncio
    async def test_payment_without_items_skips_stock_step(self, env, stubs, order_id):
        result = await _run(env, stubs, OrderWorkflowInput(order_id=order_id), _paid())

        assert result == "Completed"
        assert stubs.names == [TRANSITION_TO_PENDING, PROCESS_PAYMENT, COMPLETE_ORDER]


# ===========================================================================
# Cancel path
# ===========================================================================


class TestCancelPath:
    @pytest.mark.asyncio
    async def test_cancel_before_payment(self, env, stubs, order_id):
        result = await _run(
            env, stubs, OrderWorkflowInput(order_id=order_id), _cancelled(order_id), _paid()
        )

        assert result == "Cancelled"
        assert stubs.names == [TRANSITION_TO_PENDING, CANCEL_ORDER]
        assert stubs.calls[1][1].reason == "customer request"

    @pytest.mark.asyncio
    async def test_cancel_after_payment_is_ignored(self, env, stubs, order_id):
        result = await _run(
            env, stubs, OrderWorkflowInput(order_id=order_id), _paid(), _cancelled(order_id)
        )

        assert result == "Completed"
        assert CANCEL_ORDER not in stubs.names


# ===========================================================================
# Activity failures
# ===========================================================================


class TestActivityFailure:
    @pytest.mark.asyncio
    async def test_non_retryable_failure_fails_the_run(self, env, stubs, order_id):
        stubs.failures[COMPLETE_ORDER] = ApplicationError(
            "Order not fully paid or stock not reserved",
            type="StateTransitionError",
            non_retryable=True,
        )

        with pytest.raises(WorkflowFailureError) as exc_info:
            await _run(env, stubs, OrderWorkflowInput(order_id=order_id), _paid())

        cause = exc_info.value.cause
        assert isinstance(cause, ApplicationError)
        assert "processing failed at completing" in cause.message
        assert stubs.names.count(COMPLETE_ORDER) == 1

    @pytest.mark.asyncio
    async def test_failed_pending_transition_never_waits_for_signals(
        self, env, stubs, order_id
    ):
        stubs.failures[TRANSITION_TO_PENDING] = ApplicationError(
            "Order not found", type="NotFoundError", non_retryable=True
        )

        with pytest.raises(WorkflowFailureError) as exc_info:
            await _run(env, stubs, OrderWorkflowInput(order_id=order_id))

        assert "awaiting-pending-transition" in exc_info.value.cause.message
        assert stubs.names == [TRANSITION_TO_PENDING]
