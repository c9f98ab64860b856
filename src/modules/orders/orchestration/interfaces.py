"""Durable-execution client contract (Dependency Inversion Principle).

The orchestrator depends exclusively on these interfaces; the Temporal
adapter and the in-memory test double implement them.

``RunStatus`` is the execution-progress state of a durable run.  It is
deliberately a separate type from ``OrderState``: the two only meet
through the orchestrator's explicit operations (start, reset).
"""

from __future__ import annotations

import enum
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence


class RunStatus(str, enum.Enum):
    NOT_STARTED = "NotStarted"
    RUNNING = "Running"
    COMPLETED = "Completed"
    CANCELLED = "Cancelled"
    FAILED = "Failed"


@dataclass(frozen=True)
class RunDescription:
    run_instance_id: Optional[str]
    status: RunStatus

    @property
    def is_running(self) -> bool:
        return self.status is RunStatus.RUNNING and bool(self.run_instance_id)


@dataclass(frozen=True)
class Checkpoint:
    """Named point in a run's history, located by the activity it schedules."""

    name: str
    activity_type: str


AWAITING_PENDING_TRANSITION = Checkpoint(
    name="awaiting-pending-transition",
    activity_type="transition_to_pending",
)

SIGNAL_REPLAY_CATEGORY = "signal"


# Event type names reported in run history.
ACTIVITY_TASK_SCHEDULED = "ActivityTaskScheduled"
ACTIVITY_TASK_STARTED = "ActivityTaskStarted"
ACTIVITY_TASK_COMPLETED = "ActivityTaskCompleted"
ACTIVITY_TASK_FAILED = "ActivityTaskFailed"
ACTIVITY_TASK_TIMED_OUT = "ActivityTaskTimedOut"

ACTIVITY_EVENT_TYPES = frozenset(
    {
        ACTIVITY_TASK_SCHEDULED,
        ACTIVITY_TASK_STARTED,
        ACTIVITY_TASK_COMPLETED,
        ACTIVITY_TASK_FAILED,
        ACTIVITY_TASK_TIMED_OUT,
    }
)


@dataclass(frozen=True)
class HistoryEvent:
    """One event of a run's history, independent of the backend."""

    event_id: int
    event_type: str
    timestamp: datetime
    activity_type: Optional[str] = None
    attributes: Dict[str, Any] = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Contract errors
# ---------------------------------------------------------------------------


class DurableClientError(Exception):
    """The durable-execution backend rejected or failed a request."""

    def __init__(self, message: str, retryable: bool = False) -> None:
        self.retryable = retryable
        super().__init__(message)


class RunNotFoundError(DurableClientError):
    """No run exists for the identity, or it has already finished."""

    def __init__(self, identity: str) -> None:
        self.identity = identity
        super().__init__(f"Durable run {identity} not found.", retryable=False)


class RunAlreadyStartedError(DurableClientError):
    """A run with the identity is already active."""

    def __init__(self, identity: str) -> None:
        self.identity = identity
        super().__init__(f"Durable run {identity} is already running.", retryable=False)


# ---------------------------------------------------------------------------
# Client contract
# ---------------------------------------------------------------------------


class IRunHandle(ABC):
    """Handle on the run bound to one identity."""

    @abstractmethod
    async def signal(self, name: str, payload: Any) -> None:
        """Deliver a named signal into the run."""

    @abstractmethod
    async def describe(self) -> RunDescription:
        """Return the current run instance and its status.

        Raises:
            RunNotFoundError: no run was ever started for the identity.
        """


class IDurableExecutionClient(ABC):
    @abstractmethod
    async def start_run(self, identity: str, input: Any) -> Optional[str]:
        """Start a run and return its run instance id.

        Raises:
            RunAlreadyStartedError: a run with *identity* is active.
        """

    @abstractmethod
    def get_run_handle(self, identity: str) -> IRunHandle:
        """Resolve the run for *identity* (no I/O)."""

    @abstractmethod
    async def reset_run(
        self,
        identity: str,
        run_instance_id: str,
        checkpoint: Checkpoint,
        excluded_replay_categories: Sequence[str],
    ) -> Optional[str]:
        """Rewind the run to *checkpoint*; return the new run instance id."""

    @abstractmethod
    async def fetch_history(self, identity: str) -> List[HistoryEvent]:
        """Every event of the latest run for *identity*, oldest first.

        Raises:
            RunNotFoundError: no run was ever started for the identity.
        """
