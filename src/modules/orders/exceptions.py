"""Order lifecycle exceptions.

Raised by the aggregate, the lifecycle service and the workflow
orchestrator.  Callers branch on the class; the attributes carry the
context needed to log or retry.
"""

from __future__ import annotations

from typing import Any, Optional


class OrderLifecycleError(Exception):
    """Base class for every error raised by the order lifecycle core."""

    retryable: bool = False


class InvalidArgumentError(OrderLifecycleError):
    """Malformed or missing input, detected before any mutation."""


class NotFoundError(OrderLifecycleError):
    """The referenced order or payment does not exist."""


class StateTransitionError(OrderLifecycleError):
    """A structural or business-rule transition violation."""

    def __init__(
        self,
        order_id: Any,
        current_state: str,
        attempted_state: str,
        message: Optional[str] = None,
        is_business_rule: bool = False,
    ) -> None:
        self.order_id = order_id
        self.current_state = current_state
        self.attempted_state = attempted_state
        self.is_business_rule = is_business_rule
        super().__init__(
            message
            or f"Invalid state transition from {current_state} to "
            f"{attempted_state} for order {order_id}"
        )

    def valid_next_states(self) -> list[str]:
        from modules.orders.constants import valid_next_states

        return [str(state) for state in valid_next_states(self.current_state)]


class InsufficientBalanceError(OrderLifecycleError):
    """Burning the requested points would take the loyalty ledger below zero."""

    def __init__(self, order_id: Any, balance: int, requested: int) -> None:
        self.order_id = order_id
        self.balance = balance
        self.requested = requested
        super().__init__(
            f"Order {order_id}: cannot burn {requested} points, "
            f"balance is {balance}."
        )


class ConcurrencyConflictError(OrderLifecycleError):
    """The stored version moved since the order was loaded (reload and retry)."""

    retryable = True

    def __init__(self, order_id: Any, expected_version: int) -> None:
        self.order_id = order_id
        self.expected_version = expected_version
        super().__init__(
            f"Order {order_id} was modified concurrently "
            f"(expected version {expected_version})."
        )


class OrchestrationError(OrderLifecycleError):
    """Interaction with the durable run failed.

    ``retryable`` distinguishes transient failures (timeouts, unavailable
    service) from definitive rejections such as a missing run.
    """

    def __init__(
        self,
        message: str,
        order_id: Any = None,
        workflow_id: Optional[str] = None,
        retryable: bool = False,
    ) -> None:
        self.order_id = order_id
        self.workflow_id = workflow_id
        self.retryable = retryable
        super().__init__(message)
