"""Order processing workflow (runs inside the Temporal workflow sandbox).

Only the standard library and ``temporalio`` may be imported here:
activities are called by name, so the Django side never enters the
sandbox.

Flow::

    transition_to_pending                  <- reset checkpoint
    wait for PaymentSuccess | CancelOrder
    PaymentSuccess: process_payment -> reserve_stock (if items) -> complete_order
    CancelOrder:    cancel_order
"""

from dataclasses import dataclass, field
from datetime import timedelta
from typing import List, Optional

from temporalio import workflow
from temporalio.common import RetryPolicy
from temporalio.exceptions import ActivityError, ApplicationError

WORKFLOW_NAME = "OrderProcessingWorkflow"

PAYMENT_SUCCESS_SIGNAL = "PaymentSuccess"
CANCEL_ORDER_SIGNAL = "CancelOrder"

TRANSITION_TO_PENDING = "transition_to_pending"
PROCESS_PAYMENT = "process_payment"
RESERVE_STOCK = "reserve_stock"
COMPLETE_ORDER = "complete_order"
CANCEL_ORDER = "cancel_order"

DEFAULT_ACTIVITY_TIMEOUT_SECONDS = 300
ACTIVITY_MAX_ATTEMPTS = 5


# ---------------------------------------------------------------------------
# Payloads
# ---------------------------------------------------------------------------


@dataclass
class StockLine:
    sku: str
    quantity: int


@dataclass
class OrderWorkflowInput:
    order_id: str
    items: List[StockLine] = field(default_factory=list)
    activity_timeout_seconds: int = DEFAULT_ACTIVITY_TIMEOUT_SECONDS


@dataclass
class PaymentSuccessSignal:
    payment_id: Optional[str] = None
    transaction_reference: Optional[str] = None


@dataclass
class CancelOrderSignal:
    order_id: str = ""
    reason: Optional[str] = None


@dataclass
class OrderActivityInput:
    order_id: str
    reason: Optional[str] = None


@dataclass
class PaymentActivityInput:
    order_id: str
    payment_id: Optional[str] = None
    transaction_reference: Optional[str] = None


@dataclass
class StockActivityInput:
    order_id: str
    items: List[StockLine] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Workflow
# ---------------------------------------------------------------------------


@workflow.defn(name=WORKFLOW_NAME)
class OrderProcessingWorkflow:
    def __init__(self) -> None:
        self._payment: Optional[PaymentSuccessSignal] = None
        self._cancellation: Optional[CancelOrderSignal] = None
        self._stage = "starting"

    @workflow.run
    async def run(self, params: OrderWorkflowInput) -> str:
        options = {
            "start_to_close_timeout": timedelta(seconds=params.activity_timeout_seconds),
            "retry_policy": RetryPolicy(maximum_attempts=ACTIVITY_MAX_ATTEMPTS),
        }
        try:
            self._stage = "awaiting-pending-transition"
            await workflow.execute_activity(
                TRANSITION_TO_PENDING,
                OrderActivityInput(params.order_id, "Order processing started"),
                **options,
            )

            self._stage = "awaiting-payment"
            await workflow.wait_condition(
                lambda: self._payment is not None or self._cancellation is not None
            )

            if self._cancellation is not None:
                self._stage = "cancelling"
                await workflow.execute_activity(
                    CANCEL_ORDER,
                    OrderActivityInput(params.order_id, self._cancellation.reason),
                    **options,
                )
                self._stage = "cancelled"
                return "Cancelled"

            self._stage = "processing-payment"
            await workflow.execute_activity(
                PROCESS_PAYMENT,
                PaymentActivityInput(
                    params.order_id,
                    self._payment.payment_id,
                    self._payment.transaction_reference,
                ),
                **options,
            )
            if params.items:
                self._stage = "reserving-stock"
                await workflow.execute_activity(
                    RESERVE_STOCK,
                    StockActivityInput(params.order_id, params.items),
                    **options,
                )
            self._stage = "completing"
            await workflow.execute_activity(
                COMPLETE_ORDER,
                OrderActivityInput(params.order_id, "Order processing completed"),
                **options,
            )
            self._stage = "completed"
            return "Completed"
        except ActivityError as exc:
            cause = exc.cause or exc
            workflow.logger.error(
                "Order %s failed at stage %s: %s", params.order_id, self._stage, cause
            )
            raise ApplicationError(
                f"Order {params.order_id} processing failed at {self._stage}: {cause}",
                non_retryable=True,
            ) from exc

    @workflow.signal(name=PAYMENT_SUCCESS_SIGNAL)
    def payment_success(self, signal: PaymentSuccessSignal) -> None:
        if self._payment is None:
            self._payment = signal

    @workflow.signal(name=CANCEL_ORDER_SIGNAL)
    def cancel_order(self, signal: CancelOrderSignal) -> None:
        if self._payment is None and self._cancellation is None:
            self._cancellation = signal

    @workflow.query(name="stage")
    def stage(self) -> str:
        return self._stage
