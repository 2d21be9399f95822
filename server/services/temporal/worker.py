"""Temporal worker for distributed node execution.

The worker polls the task queue and executes:
- GraphRunWorkflow: walks the graph, schedules node activities
- NodeExecutionActivities: executes individual nodes through the registry

Multiple workers can be started on different machines for horizontal scaling.
Each node activity can execute on any available worker in the cluster.
"""

import asyncio
from typing import Optional

from temporalio.client import Client
from temporalio.worker import Worker

from core.config import Settings
from core.logging import configure_logging, get_logger
from services.execution.status import Publish
from services.node_executor import NodeExecutor
from .activities import NodeExecutionActivities, log_publish
from .client import TemporalClientWrapper
from .workflow import GraphRunWorkflow

logger = get_logger(__name__)


def create_worker(
    client: Client,
    executor: NodeExecutor,
    task_queue: str = "flowline-tasks",
    publish: Publish = log_publish,
    max_concurrent_activities: int = 100,
) -> Worker:
    """Create a worker instance (not started)."""
    activities = NodeExecutionActivities(executor, publish)
    return Worker(
        client,
        task_queue=task_queue,
        workflows=[GraphRunWorkflow],
        activities=[activities.execute_node_activity],  # Pass bound method
        max_concurrent_activities=max_concurrent_activities,
        max_concurrent_workflow_tasks=10,
    )


class TemporalWorkerManager:
    """Manages the Temporal worker lifecycle inside the API process."""

    def __init__(
        self,
        client: Client,
        executor: NodeExecutor,
        task_queue: str = "flowline-tasks",
        publish: Publish = log_publish,
    ):
        self.client = client
        self.executor = executor
        self.task_queue = task_queue
        self.publish = publish
        self._worker: Optional[Worker] = None
        self._worker_task: Optional[asyncio.Task] = None

    @property
    def is_running(self) -> bool:
        """Check if the worker is running."""
        return self._worker_task is not None and not self._worker_task.done()

    async def start(self) -> None:
        """Start the Temporal worker in the background."""
        if self.is_running:
            logger.warning("Temporal worker already running")
            return

        self._worker = create_worker(self.client, self.executor, self.task_queue, self.publish)
        logger.info("Starting Temporal worker", task_queue=self.task_queue)

        self._worker_task = asyncio.create_task(
            self._run_worker(),
            name="temporal-worker",
        )

    async def _run_worker(self) -> None:
        """Run the worker (background task)."""
        try:
            await self._worker.run()
        except asyncio.CancelledError:
            logger.info("Temporal worker cancelled")
            raise
        except Exception as e:
            logger.error("Temporal worker error", error=str(e))
            raise

    async def stop(self) -> None:
        """Stop the Temporal worker."""
        if not self.is_running:
            return

        logger.info("Stopping Temporal worker")
        await self._worker.shutdown()
        try:
            await self._worker_task
        except asyncio.CancelledError:
            logger.debug("Temporal worker task cancelled during shutdown")
        self._worker = None
        self._worker_task = None
        logger.info("Temporal worker stopped")


async def run_standalone_worker(settings: Optional[Settings] = None) -> None:
    """Run the Temporal worker as a standalone process.

    Example:
        # Start multiple workers for horizontal scaling
        python -m services.temporal.worker
    """
    settings = settings or Settings()
    configure_logging(settings)
    logger.info(
        "Starting standalone Temporal worker",
        server_address=settings.temporal_server_address,
        namespace=settings.temporal_namespace,
        task_queue=settings.temporal_task_queue,
    )

    client = await TemporalClientWrapper.from_settings(settings).connect()
    worker = create_worker(client, NodeExecutor(settings), settings.temporal_task_queue)
    logger.info("Worker running. Press Ctrl+C to stop.")
    await worker.run()


def main() -> None:
    asyncio.run(run_standalone_worker())


if __name__ == "__main__":
    # Usage: python -m services.temporal.worker
    main()
