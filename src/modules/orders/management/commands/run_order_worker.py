from __future__ import annotations

import asyncio
from concurrent.futures import ThreadPoolExecutor

import structlog
from django.conf import settings
from django.core.management.base import BaseCommand
from temporalio.client import Client
from temporalio.worker import Worker

from modules.orders.orchestration.activities import OrderActivities
from modules.orders.orchestration.workflows import OrderProcessingWorkflow
from modules.orders.services import OrderLifecycleService

logger = structlog.get_logger(__name__)


class Command(BaseCommand):
    help = "Run the Temporal worker that executes order processing workflows."

    def add_arguments(self, parser):
        parser.add_argument("--task-queue", default=settings.TEMPORAL_TASK_QUEUE)
        parser.add_argument(
            "--max-concurrent-activities",
            type=int,
            default=settings.ORDER_WORKER_MAX_CONCURRENT_ACTIVITIES,
        )

    def handle(self, *args, **options):
        try:
            asyncio.run(self._run(options["task_queue"], options["max_concurrent_activities"]))
        except KeyboardInterrupt:
            self.stdout.write("Worker stopped.")

    async def _run(self, task_queue: str, max_concurrent_activities: int) -> None:
        client = await Client.connect(
            settings.TEMPORAL_HOST, namespace=settings.TEMPORAL_NAMESPACE
        )
        activities = OrderActivities(OrderLifecycleService())

        with ThreadPoolExecutor(max_workers=max_concurrent_activities) as executor:
            worker = Worker(
                client,
                task_queue=task_queue,
                workflows=[OrderProcessingWorkflow],
                activities=activities.all(),
                activity_executor=executor,
                max_concurrent_activities=max_concurrent_activities,
            )
            logger.info(
                "worker.started",
                task_queue=task_queue,
                namespace=settings.TEMPORAL_NAMESPACE,
            )
            self.stdout.write(
                self.style.SUCCESS(f"Order worker listening on task queue '{task_queue}'")
            )
            await worker.run()
