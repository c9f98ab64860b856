"""Operator entry point for the durable run of an order.

    manage.py order_workflow start <order_id> [--item SKU:QTY ...]
    manage.py order_workflow pay <order_id> [--payment-id ID] [--reference REF]
    manage.py order_workflow cancel <order_id> [--reason TEXT]
    manage.py order_workflow reset <order_id>
    manage.py order_workflow describe <order_id>
    manage.py order_workflow history <order_id> [--activity TYPE]
    manage.py order_workflow summary <order_id>
"""

from __future__ import annotations

import asyncio
from uuid import UUID

from django.core.management.base import BaseCommand, CommandError

from modules.orders.exceptions import OrderLifecycleError
from modules.orders.orchestration.orchestrator import OrderWorkflowOrchestrator
from modules.orders.orchestration.temporal_client import TemporalDurableExecutionClient
from modules.orders.services import OrderLifecycleService


def _stock_item(value: str) -> dict:
    sku, sep, quantity = value.rpartition(":")
    if not sep or not sku or not quantity.isdigit():
        raise ValueError(value)
    return {"sku": sku, "quantity": int(quantity)}


class Command(BaseCommand):
    help = "Start, signal, reset, describe or inspect the workflow driving an order."

    def add_arguments(self, parser):
        actions = parser.add_subparsers(dest="action", required=True)

        start = actions.add_parser("start", help="Start or attach to the order's run.")
        start.add_argument("order_id", type=UUID)
        start.add_argument("--item", action="append", type=_stock_item, default=[])

        pay = actions.add_parser("pay", help="Deliver the PaymentSuccess signal.")
        pay.add_argument("order_id", type=UUID)
        pay.add_argument("--payment-id", type=UUID, default=None)
        pay.add_argument("--reference", default=None)

        cancel = actions.add_parser("cancel", help="Deliver the CancelOrder signal.")
        cancel.add_argument("order_id", type=UUID)
        cancel.add_argument("--reason", default=None)

        reset = actions.add_parser("reset", help="Rewind the live run to the pending checkpoint.")
        reset.add_argument("order_id", type=UUID)

        describe = actions.add_parser("describe", help="Show the run bound to the order.")
        describe.add_argument("order_id", type=UUID)

        history = actions.add_parser("history", help="List the run's history events.")
        history.add_argument("order_id", type=UUID)
        history.add_argument("--activity", default=None, help="Only events of this activity.")

        summary = actions.add_parser("summary", help="Summarise the run's progress.")
        summary.add_argument("order_id", type=UUID)

    def handle(self, *args, **options):
        try:
            message = asyncio.run(self._dispatch(options))
        except OrderLifecycleError as exc:
            raise CommandError(str(exc)) from exc
        self.stdout.write(self.style.SUCCESS(message))

    async def _dispatch(self, options) -> str:
        client = await TemporalDurableExecutionClient.connect()
        orchestrator = OrderWorkflowOrchestrator(client, OrderLifecycleService())
        order_id = options["order_id"]
        action = options["action"]

        if action == "start":
            workflow_id = await orchestrator.start_order_processing(order_id, options["item"])
            return f"Order {order_id} bound to workflow {workflow_id}"
        if action == "pay":
            await orchestrator.signal_payment_success(
                order_id, options["payment_id"], options["reference"]
            )
            return f"PaymentSuccess delivered to order {order_id}"
        if action == "cancel":
            await orchestrator.signal_cancel_order(order_id, options["reason"])
            return f"CancelOrder delivered to order {order_id}"
        if action == "reset":
            run_id = await orchestrator.reset_to_pending_checkpoint(order_id)
            return f"Workflow for order {order_id} reset (new run {run_id or 'unknown'})"
        if action == "history":
            if options["activity"]:
                events = await orchestrator.get_activity_events(order_id, options["activity"])
            else:
                events = await orchestrator.get_workflow_history(order_id)
            return "\n".join(
                f"{e.event_id:>4} {e.timestamp.isoformat()} {e.event_type}"
                + (f" [{e.activity_type}]" if e.activity_type else "")
                for e in events
            ) or f"No history for order {order_id}"
        if action == "summary":
            s = await orchestrator.get_execution_summary(order_id)
            return (
                f"{s.workflow_id}: run={s.run_instance_id or '-'} status={s.run_status} "
                f"events={s.total_events} scheduled={s.scheduled_activities} "
                f"completed={s.completed_activities} failed={s.failed_activities} "
                f"activities={','.join(s.activity_types) or '-'}"
            )

        status = await orchestrator.describe(order_id)
        return (
            f"{status.workflow_id}: run={status.run_instance_id or '-'} "
            f"status={status.run_status} order_state={status.order_state}"
        )
