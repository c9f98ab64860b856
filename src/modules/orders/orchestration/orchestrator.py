"""Workflow orchestrator: binds each order to one durable run.

The run identity is derived from the order id (``<prefix><order_id>``),
so starting twice attaches to the same run instead of creating a second
one.  External events are forwarded as named signals; an administrator
can rewind a live run to the ``awaiting-pending-transition`` checkpoint
and read back the run's event history.

Every call into the durable-execution client is bounded by a timeout
and honours caller cancellation.  Failures are logged with the order id
and workflow identity, then re-raised as ``OrchestrationError``:

- timeout, or a transient backend failure  -> ``retryable=True``
- run not found / finished, other rejections -> ``retryable=False``
"""

from __future__ import annotations

import asyncio
from typing import Awaitable, Iterable, List, Optional, Tuple, Type, TypeVar
from uuid import UUID

import structlog
from asgiref.sync import sync_to_async
from django.conf import settings

from modules.orders.dtos import (
    WorkflowExecutionSummaryDTO,
    WorkflowHistoryEventDTO,
    WorkflowStatusDTO,
)
from modules.orders.exceptions import InvalidArgumentError, OrchestrationError
from modules.orders.orchestration.interfaces import (
    ACTIVITY_EVENT_TYPES,
    ACTIVITY_TASK_COMPLETED,
    ACTIVITY_TASK_FAILED,
    ACTIVITY_TASK_SCHEDULED,
    ACTIVITY_TASK_TIMED_OUT,
    AWAITING_PENDING_TRANSITION,
    SIGNAL_REPLAY_CATEGORY,
    DurableClientError,
    HistoryEvent,
    IDurableExecutionClient,
    RunAlreadyStartedError,
    RunDescription,
    RunNotFoundError,
    RunStatus,
)
from modules.orders.orchestration.workflows import (
    CANCEL_ORDER_SIGNAL,
    PAYMENT_SUCCESS_SIGNAL,
    CancelOrderSignal,
    OrderWorkflowInput,
    PaymentSuccessSignal,
    StockLine,
)
from modules.orders.services import OrderLifecycleService, StockItemInput, to_stock_items

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class OrderWorkflowOrchestrator:
    """Starts, signals, describes and resets the durable run of an order."""

    def __init__(
        self,
        client: IDurableExecutionClient,
        lifecycle_service: OrderLifecycleService,
        timeout: Optional[float] = None,
        workflow_id_prefix: Optional[str] = None,
        activity_timeout_seconds: Optional[int] = None,
    ) -> None:
        self._client = client
        self._service = lifecycle_service
        self._timeout = timeout if timeout is not None else settings.ORCHESTRATION_TIMEOUT_SECONDS
        self._prefix = (
            workflow_id_prefix
            if workflow_id_prefix is not None
            else settings.ORDER_WORKFLOW_ID_PREFIX
        )
        self._activity_timeout = (
            activity_timeout_seconds
            if activity_timeout_seconds is not None
            else settings.ORDER_ACTIVITY_TIMEOUT_SECONDS
        )

    def workflow_id_for(self, order_id: UUID) -> str:
        return f"{self._prefix}{order_id}"

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def start_order_processing(
        self, order_id: UUID, items: Iterable[StockItemInput] = ()
    ) -> str:
        """Start (or attach to) the run for *order_id* and return its identity.

        The identity is written onto the order exactly once.  A new run
        completes the order only with stock reserved, so it needs *items*
        unless the order already holds an active reservation.

        Raises:
            InvalidArgumentError: malformed items, or no items for an order
                without reserved stock.
            NotFoundError: the order does not exist.
            OrchestrationError: the durable backend could not be reached.
        """
        workflow_id = self.workflow_id_for(order_id)
        log = logger.bind(order_id=str(order_id), workflow_id=workflow_id)

        items = list(items)
        stock_lines = [StockLine(i.sku, i.quantity) for i in to_stock_items(items)] if items else []

        bound = await sync_to_async(self._service.get_workflow_id)(order_id)
        if bound and bound != workflow_id:
            log.error("workflow.identity_mismatch", bound_workflow_id=bound)
            raise OrchestrationError(
                f"Order {order_id} is bound to workflow {bound}.",
                order_id=order_id,
                workflow_id=workflow_id,
            )

        description = await self._describe(order_id, workflow_id, "start")
        if description.is_running:
            log.info("workflow.attached", run_id=description.run_instance_id)
        else:
            if not stock_lines and not await sync_to_async(self._service.has_active_stock)(
                order_id
            ):
                log.warning("workflow.start_rejected", reason="no stock items to reserve")
                raise InvalidArgumentError(
                    f"Order {order_id} has no reserved stock; pass the items to reserve."
                )
            params = OrderWorkflowInput(
                order_id=str(order_id),
                items=stock_lines,
                activity_timeout_seconds=self._activity_timeout,
            )
            try:
                run_id = await self._call(
                    self._client.start_run(workflow_id, params),
                    "start",
                    order_id,
                    workflow_id,
                    passthrough=(RunAlreadyStartedError,),
                )
                log.info("workflow.started", run_id=run_id)
            except RunAlreadyStartedError:
                log.info("workflow.already_started")

        await sync_to_async(self._service.attach_workflow)(order_id, workflow_id)
        return workflow_id

    async def signal_payment_success(
        self,
        order_id: UUID,
        payment_id: Optional[UUID],
        transaction_reference: Optional[str],
    ) -> None:
        workflow_id = self.workflow_id_for(order_id)
        payload = PaymentSuccessSignal(
            payment_id=str(payment_id) if payment_id else None,
            transaction_reference=transaction_reference,
        )
        handle = self._client.get_run_handle(workflow_id)
        await self._call(
            handle.signal(PAYMENT_SUCCESS_SIGNAL, payload),
            "signal_payment_success",
            order_id,
            workflow_id,
        )
        logger.info(
            "workflow.signalled",
            signal=PAYMENT_SUCCESS_SIGNAL,
            order_id=str(order_id),
            workflow_id=workflow_id,
            payment_id=payload.payment_id,
        )

    async def signal_cancel_order(self, order_id: UUID, reason: Optional[str]) -> None:
        workflow_id = self.workflow_id_for(order_id)
        payload = CancelOrderSignal(order_id=str(order_id), reason=reason)
        handle = self._client.get_run_handle(workflow_id)
        await self._call(
            handle.signal(CANCEL_ORDER_SIGNAL, payload),
            "signal_cancel_order",
            order_id,
            workflow_id,
        )
        logger.info(
            "workflow.signalled",
            signal=CANCEL_ORDER_SIGNAL,
            order_id=str(order_id),
            workflow_id=workflow_id,
        )

    async def reset_to_pending_checkpoint(self, order_id: UUID) -> Optional[str]:
        """Rewind the live run to ``awaiting-pending-transition``.

        Previously delivered signals are not replayed.  Returns the new
        run instance id when the backend reports one.

        Raises:
            OrchestrationError: no live run exists (non-retryable), or the
                backend failed.
        """
        workflow_id = self.workflow_id_for(order_id)
        log = logger.bind(order_id=str(order_id), workflow_id=workflow_id)

        handle = self._client.get_run_handle(workflow_id)
        description = await self._call(handle.describe(), "reset", order_id, workflow_id)
        if not description.is_running:
            log.error(
                "workflow.reset_failed",
                reason="run is not active",
                run_status=description.status.value,
                retryable=False,
            )
            raise OrchestrationError(
                f"Cannot reset workflow {workflow_id}: run is {description.status.value}.",
                order_id=order_id,
                workflow_id=workflow_id,
            )

        new_run_id = await self._call(
            self._client.reset_run(
                workflow_id,
                description.run_instance_id,
                AWAITING_PENDING_TRANSITION,
                [SIGNAL_REPLAY_CATEGORY],
            ),
            "reset",
            order_id,
            workflow_id,
        )
        log.info(
            "workflow.reset",
            checkpoint=AWAITING_PENDING_TRANSITION.name,
            previous_run_id=description.run_instance_id,
            new_run_id=new_run_id,
        )
        return new_run_id

    async def describe(self, order_id: UUID) -> WorkflowStatusDTO:
        """Report the run bound to *order_id* next to the order's own state."""
        workflow_id = self.workflow_id_for(order_id)
        details = await sync_to_async(self._service.get_order_details)(order_id)
        description = await self._describe(order_id, workflow_id, "describe")
        return WorkflowStatusDTO(
            order_id=details.id,
            workflow_id=workflow_id,
            run_instance_id=description.run_instance_id,
            run_status=description.status.value,
            order_state=details.state,
        )

    async def get_workflow_history(self, order_id: UUID) -> List[WorkflowHistoryEventDTO]:
        """Every event of the order's run, oldest first."""
        workflow_id = self.workflow_id_for(order_id)
        events = await self._fetch_history(order_id, workflow_id)
        return [_history_dto(event) for event in events]

    async def get_activity_events(
        self, order_id: UUID, activity_type: Optional[str] = None
    ) -> List[WorkflowHistoryEventDTO]:
        """Activity events of the run, optionally for one activity type only."""
        workflow_id = self.workflow_id_for(order_id)
        events = await self._fetch_history(order_id, workflow_id)
        return [
            _history_dto(event)
            for event in events
            if event.event_type in ACTIVITY_EVENT_TYPES
            and (activity_type is None or event.activity_type == activity_type)
        ]

    async def get_execution_summary(self, order_id: UUID) -> WorkflowExecutionSummaryDTO:
        """Status and activity counters of the order's run.

        Raises:
            OrchestrationError: no run was ever started (non-retryable),
                or the backend failed.
        """
        workflow_id = self.workflow_id_for(order_id)
        description = await self._describe(order_id, workflow_id, "summary")
        if description.status is RunStatus.NOT_STARTED:
            raise self._failure(
                f"Workflow {workflow_id} was never started.",
                "summary",
                order_id,
                workflow_id,
                retryable=False,
            )
        events = await self._fetch_history(order_id, workflow_id)

        def count(event_type: str) -> int:
            return sum(1 for event in events if event.event_type == event_type)

        activity_types: List[str] = []
        for event in events:
            if event.activity_type and event.activity_type not in activity_types:
                activity_types.append(event.activity_type)

        return WorkflowExecutionSummaryDTO(
            order_id=order_id,
            workflow_id=workflow_id,
            run_instance_id=description.run_instance_id,
            run_status=description.status.value,
            start_time=events[0].timestamp if events else None,
            close_time=(
                events[-1].timestamp if events and not description.is_running else None
            ),
            total_events=len(events),
            scheduled_activities=count(ACTIVITY_TASK_SCHEDULED),
            completed_activities=count(ACTIVITY_TASK_COMPLETED),
            failed_activities=count(ACTIVITY_TASK_FAILED) + count(ACTIVITY_TASK_TIMED_OUT),
            activity_types=activity_types,
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _describe(self, order_id: UUID, workflow_id: str, operation: str) -> RunDescription:
        handle = self._client.get_run_handle(workflow_id)
        try:
            return await self._call(
                handle.describe(),
                operation,
                order_id,
                workflow_id,
                passthrough=(RunNotFoundError,),
            )
        except RunNotFoundError:
            return RunDescription(run_instance_id=None, status=RunStatus.NOT_STARTED)

    async def _fetch_history(self, order_id: UUID, workflow_id: str) -> List[HistoryEvent]:
        return await self._call(
            self._client.fetch_history(workflow_id), "history", order_id, workflow_id
        )

    async def _call(
        self,
        awaitable: Awaitable[T],
        operation: str,
        order_id: UUID,
        workflow_id: str,
        passthrough: Tuple[Type[BaseException], ...] = (),
    ) -> T:
        try:
            return await asyncio.wait_for(awaitable, timeout=self._timeout)
        except passthrough:
            raise
        except asyncio.TimeoutError as exc:
            raise self._failure(
                f"Timed out after {self._timeout}s during {operation} of workflow {workflow_id}.",
                operation,
                order_id,
                workflow_id,
                retryable=True,
            ) from exc
        except DurableClientError as exc:
            raise self._failure(
                f"Workflow {workflow_id} {operation} failed: {exc}",
                operation,
                order_id,
                workflow_id,
                retryable=exc.retryable,
            ) from exc

    def _failure(
        self,
        message: str,
        operation: str,
        order_id: UUID,
        workflow_id: str,
        retryable: bool,
    ) -> OrchestrationError:
        logger.error(
            f"workflow.{operation}_failed",
            order_id=str(order_id),
            workflow_id=workflow_id,
            retryable=retryable,
            error=message,
        )
        return OrchestrationError(
            message, order_id=order_id, workflow_id=workflow_id, retryable=retryable
        )


def _history_dto(event: HistoryEvent) -> WorkflowHistoryEventDTO:
    return WorkflowHistoryEventDTO(
        event_id=event.event_id,
        event_type=event.event_type,
        timestamp=event.timestamp,
        activity_type=event.activity_type,
        attributes=dict(event.attributes),
    )
