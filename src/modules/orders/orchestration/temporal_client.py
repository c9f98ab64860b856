"""Temporal implementation of the durable-execution client contract.

Maps ``IDurableExecutionClient`` onto ``temporalio.client.Client``:

- ``start_run``  -> ``Client.start_workflow`` on the order task queue
- ``signal``     -> ``WorkflowHandle.signal``
- ``describe``   -> ``WorkflowHandle.describe``
- ``reset_run``  -> ``WorkflowService.reset_workflow_execution``
- ``fetch_history`` -> ``WorkflowHandle.fetch_history_events``

A checkpoint is resolved against the run's history: the reset point is
the ``WorkflowTaskCompleted`` event that scheduled the checkpoint's
activity, so the rewound run re-executes that activity.

gRPC ``NOT_FOUND`` (unknown or already finished run) becomes
``RunNotFoundError``; unavailable / deadline / throttling statuses are
reported as retryable ``DurableClientError``.
"""

from __future__ import annotations

import uuid
from datetime import timezone
from typing import Any, Dict, List, Optional, Sequence

import structlog
from django.conf import settings
from temporalio.api.common.v1 import WorkflowExecution
from temporalio.api.enums.v1 import EventType, ResetReapplyExcludeType
from temporalio.api.history.v1 import HistoryEvent as TemporalHistoryEvent
from temporalio.api.workflowservice.v1 import ResetWorkflowExecutionRequest
from temporalio.client import Client, WorkflowExecutionStatus, WorkflowHandle
from temporalio.exceptions import WorkflowAlreadyStartedError
from temporalio.service import RPCError, RPCStatusCode

from modules.orders.orchestration.interfaces import (
    SIGNAL_REPLAY_CATEGORY,
    Checkpoint,
    DurableClientError,
    HistoryEvent,
    IDurableExecutionClient,
    IRunHandle,
    RunAlreadyStartedError,
    RunDescription,
    RunNotFoundError,
    RunStatus,
)
from modules.orders.orchestration.workflows import WORKFLOW_NAME

logger = structlog.get_logger(__name__)

_STATUS_MAP = {
    WorkflowExecutionStatus.RUNNING: RunStatus.RUNNING,
    WorkflowExecutionStatus.COMPLETED: RunStatus.COMPLETED,
    WorkflowExecutionStatus.CANCELED: RunStatus.CANCELLED,
    WorkflowExecutionStatus.FAILED: RunStatus.FAILED,
    WorkflowExecutionStatus.TERMINATED: RunStatus.FAILED,
    WorkflowExecutionStatus.TIMED_OUT: RunStatus.FAILED,
    WorkflowExecutionStatus.CONTINUED_AS_NEW: RunStatus.COMPLETED,
}

_RETRYABLE_STATUSES = frozenset(
    {
        RPCStatusCode.UNAVAILABLE,
        RPCStatusCode.DEADLINE_EXCEEDED,
        RPCStatusCode.RESOURCE_EXHAUSTED,
        RPCStatusCode.ABORTED,
    }
)

_REPLAY_EXCLUSIONS = {
    SIGNAL_REPLAY_CATEGORY: ResetReapplyExcludeType.RESET_REAPPLY_EXCLUDE_TYPE_SIGNAL,
}


_ACTIVITY_RESULT_ATTRIBUTES = {
    EventType.EVENT_TYPE_ACTIVITY_TASK_STARTED: "activity_task_started_event_attributes",
    EventType.EVENT_TYPE_ACTIVITY_TASK_COMPLETED: "activity_task_completed_event_attributes",
    EventType.EVENT_TYPE_ACTIVITY_TASK_FAILED: "activity_task_failed_event_attributes",
    EventType.EVENT_TYPE_ACTIVITY_TASK_TIMED_OUT: "activity_task_timed_out_event_attributes",
}


def event_type_name(event_type: int) -> str:
    """``EVENT_TYPE_ACTIVITY_TASK_SCHEDULED`` -> ``ActivityTaskScheduled``."""
    name = EventType.Name(event_type).removeprefix("EVENT_TYPE_")
    return "".join(part.capitalize() for part in name.split("_"))


def to_history_event(event: TemporalHistoryEvent, scheduled: Dict[int, str]) -> HistoryEvent:
    """Convert one Temporal history event.

    *scheduled* maps the ids of ``ActivityTaskScheduled`` events seen so
    far to their activity type, so later activity events can name theirs.
    """
    activity_type: Optional[str] = None
    attributes: Dict[str, Any] = {}
    if event.event_type == EventType.EVENT_TYPE_ACTIVITY_TASK_SCHEDULED:
        attrs = event.activity_task_scheduled_event_attributes
        activity_type = attrs.activity_type.name
        scheduled[event.event_id] = activity_type
        attributes["activity_id"] = attrs.activity_id
    elif event.event_type in _ACTIVITY_RESULT_ATTRIBUTES:
        attrs = getattr(event, _ACTIVITY_RESULT_ATTRIBUTES[event.event_type])
        activity_type = scheduled.get(attrs.scheduled_event_id)
        attributes["scheduled_event_id"] = attrs.scheduled_event_id
        if event.event_type == EventType.EVENT_TYPE_ACTIVITY_TASK_FAILED:
            attributes["failure"] = attrs.failure.message
    elif event.event_type == EventType.EVENT_TYPE_WORKFLOW_EXECUTION_SIGNALED:
        attributes["signal_name"] = (
            event.workflow_execution_signaled_event_attributes.signal_name
        )
    elif event.event_type == EventType.EVENT_TYPE_WORKFLOW_EXECUTION_STARTED:
        attributes["workflow_type"] = (
            event.workflow_execution_started_event_attributes.workflow_type.name
        )
    return HistoryEvent(
        event_id=event.event_id,
        event_type=event_type_name(event.event_type),
        timestamp=event.event_time.ToDatetime(tzinfo=timezone.utc),
        activity_type=activity_type,
        attributes=attributes,
    )


def translate_rpc_error(exc: RPCError, identity: str) -> DurableClientError:
    if exc.status == RPCStatusCode.NOT_FOUND:
        return RunNotFoundError(identity)
    return DurableClientError(
        f"Temporal request for {identity} failed ({exc.status.name}): {exc.message}",
        retryable=exc.status in _RETRYABLE_STATUSES,
    )


class TemporalRunHandle(IRunHandle):
    def __init__(self, handle: WorkflowHandle) -> None:
        self._handle = handle

    async def signal(self, name: str, payload: Any) -> None:
        try:
            await self._handle.signal(name, payload)
        except RPCError as exc:
            raise translate_rpc_error(exc, self._handle.id) from exc

    async def describe(self) -> RunDescription:
        try:
            description = await self._handle.describe()
        except RPCError as exc:
            raise translate_rpc_error(exc, self._handle.id) from exc
        status = _STATUS_MAP.get(description.status, RunStatus.FAILED)
        return RunDescription(run_instance_id=description.run_id or None, status=status)


class TemporalDurableExecutionClient(IDurableExecutionClient):
    """Durable-execution client backed by a Temporal namespace."""

    def __init__(
        self,
        client: Client,
        task_queue: Optional[str] = None,
        workflow_name: str = WORKFLOW_NAME,
    ) -> None:
        self._client = client
        self._task_queue = task_queue or settings.TEMPORAL_TASK_QUEUE
        self._workflow_name = workflow_name

    @classmethod
    async def connect(
        cls,
        target_host: Optional[str] = None,
        namespace: Optional[str] = None,
        task_queue: Optional[str] = None,
    ) -> TemporalDurableExecutionClient:
        host = target_host or settings.TEMPORAL_HOST
        namespace = namespace or settings.TEMPORAL_NAMESPACE
        client = await Client.connect(host, namespace=namespace)
        logger.info("temporal.connected", host=host, namespace=namespace)
        return cls(client, task_queue=task_queue)

    async def start_run(self, identity: str, input: Any) -> Optional[str]:
        try:
            handle = await self._client.start_workflow(
                self._workflow_name,
                input,
                id=identity,
                task_queue=self._task_queue,
            )
        except WorkflowAlreadyStartedError as exc:
            raise RunAlreadyStartedError(identity) from exc
        except RPCError as exc:
            raise translate_rpc_error(exc, identity) from exc
        return handle.first_execution_run_id or handle.result_run_id

    def get_run_handle(self, identity: str) -> IRunHandle:
        return TemporalRunHandle(self._client.get_workflow_handle(identity))

    async def reset_run(
        self,
        identity: str,
        run_instance_id: str,
        checkpoint: Checkpoint,
        excluded_replay_categories: Sequence[str],
    ) -> Optional[str]:
        try:
            exclusions = [_REPLAY_EXCLUSIONS[c] for c in excluded_replay_categories]
        except KeyError as exc:
            raise DurableClientError(f"Unknown replay category: {exc.args[0]}") from exc

        event_id = await self._find_checkpoint_event_id(identity, run_instance_id, checkpoint)
        request = ResetWorkflowExecutionRequest(
            namespace=self._client.namespace,
            workflow_execution=WorkflowExecution(workflow_id=identity, run_id=run_instance_id),
            reason=f"Reset to checkpoint {checkpoint.name}",
            workflow_task_finish_event_id=event_id,
            request_id=str(uuid.uuid4()),
            reset_reapply_exclude_types=exclusions,
        )
        try:
            response = await self._client.workflow_service.reset_workflow_execution(request)
        except RPCError as exc:
            raise translate_rpc_error(exc, identity) from exc
        return response.run_id or None

    async def fetch_history(self, identity: str) -> List[HistoryEvent]:
        handle = self._client.get_workflow_handle(identity)
        scheduled: Dict[int, str] = {}
        events: List[HistoryEvent] = []
        try:
            async for event in handle.fetch_history_events():
                events.append(to_history_event(event, scheduled))
        except RPCError as exc:
            raise translate_rpc_error(exc, identity) from exc
        return events

    async def _find_checkpoint_event_id(
        self, identity: str, run_instance_id: str, checkpoint: Checkpoint
    ) -> int:
        """Id of the ``WorkflowTaskCompleted`` event that scheduled the checkpoint."""
        handle = self._client.get_workflow_handle(identity, run_id=run_instance_id)
        last_task_completed: Optional[int] = None
        try:
            async for event in handle.fetch_history_events():
                if event.event_type == EventType.EVENT_TYPE_WORKFLOW_TASK_COMPLETED:
                    last_task_completed = event.event_id
                elif (
                    event.event_type == EventType.EVENT_TYPE_ACTIVITY_TASK_SCHEDULED
                    and event.activity_task_scheduled_event_attributes.activity_type.name
                    == checkpoint.activity_type
                    and last_task_completed is not None
                ):
                    return last_task_completed
        except RPCError as exc:
            raise translate_rpc_error(exc, identity) from exc
        raise DurableClientError(
            f"Checkpoint {checkpoint.name} not found in history of {identity}."
        )
