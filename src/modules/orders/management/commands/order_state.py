"""Administrative access to an order's state and its audit trail.

    manage.py order_state show <order_id>
    manage.py order_state transition <order_id> <state> [--reason TEXT] [--skip-business-rules]
    manage.py order_state journey <order_id>
"""

from __future__ import annotations

from uuid import UUID

from django.core.management.base import BaseCommand, CommandError

from modules.orders.constants import OrderState
from modules.orders.exceptions import OrderLifecycleError
from modules.orders.services import OrderLifecycleService


class Command(BaseCommand):
    help = "Show, transition or audit the state of an order."

    def add_arguments(self, parser):
        actions = parser.add_subparsers(dest="action", required=True)

        show = actions.add_parser("show", help="Show the order's state and totals.")
        show.add_argument("order_id", type=UUID)

        transition = actions.add_parser("transition", help="Move the order to another state.")
        transition.add_argument("order_id", type=UUID)
        transition.add_argument("state", choices=OrderState.values)
        transition.add_argument("--reason", default=None)
        transition.add_argument(
            "--skip-business-rules",
            action="store_true",
            help="Only check the transition table (administrative override).",
        )

        journey = actions.add_parser("journey", help="List the order's state changes.")
        journey.add_argument("order_id", type=UUID)

    def handle(self, *args, **options):
        service = OrderLifecycleService()
        try:
            message = self._dispatch(service, options)
        except OrderLifecycleError as exc:
            raise CommandError(str(exc)) from exc
        self.stdout.write(self.style.SUCCESS(message))

    def _dispatch(self, service: OrderLifecycleService, options) -> str:
        order_id = options["order_id"]
        action = options["action"]

        if action == "transition":
            result = service.transition_state(
                order_id,
                options["state"],
                options["reason"],
                enforce_business_rules=not options["skip_business_rules"],
            )
            if not result.changed:
                return f"Order {order_id} is already {result.new_state}"
            return (
                f"Order {order_id}: {result.previous_state} -> {result.new_state} "
                f"(v{result.version})"
            )
        if action == "journey":
            entries = service.get_order_journey(order_id)
            return "\n".join(
                f"v{e.version:<3} {e.created_at.isoformat()} "
                f"{e.old_state or '-'} -> {e.new_state}"
                + (f" ({e.reason})" if e.reason else "")
                for e in entries
            )

        detail = service.get_order_details(order_id)
        return (
            f"{detail.id}: state={detail.state} v{detail.version} "
            f"total={detail.order_total} paid={detail.total_paid} "
            f"items={detail.total_item_count} next={','.join(detail.valid_next_states) or '-'}"
        )
