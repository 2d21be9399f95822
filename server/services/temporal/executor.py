"""Temporal executor for graph runs.

Provides the same interface as the local run path in WorkflowService but
delegates execution to Temporal for durable workflow orchestration.
"""

import uuid
from typing import Any, Dict, Mapping, Optional

from temporalio.client import Client

from core.logging import get_logger
from models.workflow import WorkflowDefinition
from services.execution.runner import WorkflowRunResult
from services.handlers.flow import MAX_DELAY_SECONDS
from .workflow import DEFAULT_ACTIVITY_TIMEOUT_SECONDS, GraphRunWorkflow

logger = get_logger(__name__)


class TemporalExecutor:
    """Runs WorkflowDefinitions as GraphRunWorkflow executions."""

    def __init__(
        self,
        client: Client,
        task_queue: str = "flowline-tasks",
        activity_timeout: int = DEFAULT_ACTIVITY_TIMEOUT_SECONDS,
        delay_max_seconds: int = MAX_DELAY_SECONDS,
    ):
        """Initialize the Temporal executor.

        Args:
            client: Connected Temporal client
            task_queue: Temporal task queue name
            activity_timeout: Base start_to_close timeout per node activity
            delay_max_seconds: Longest delay node wait (extends its timeout)
        """
        self.client = client
        self.task_queue = task_queue
        self.activity_timeout = activity_timeout
        self.delay_max_seconds = delay_max_seconds

    def _payload(self, definition: WorkflowDefinition, initial_data: Optional[Mapping[str, Any]],
                 caller_id: str) -> Dict[str, Any]:
        return {
            "workflow": definition.model_dump(mode="json"),
            "initial_data": dict(initial_data or {}),
            "caller_id": caller_id,
            "activity_timeout": self.activity_timeout,
            "delay_max_seconds": self.delay_max_seconds,
        }

    @staticmethod
    def _run_id(definition: WorkflowDefinition) -> str:
        return f"run-{definition.id}-{uuid.uuid4().hex[:8]}"

    async def run_workflow(self, definition: WorkflowDefinition,
                           initial_data: Optional[Mapping[str, Any]] = None,
                           caller_id: str = "default") -> WorkflowRunResult:
        """Execute a workflow and wait for its result."""
        run_id = self._run_id(definition)
        logger.info("Starting Temporal graph run", workflow_id=definition.id, run_id=run_id,
                    node_count=len(definition.nodes))

        result = await self.client.execute_workflow(
            GraphRunWorkflow.run,
            self._payload(definition, initial_data, caller_id),
            id=run_id,
            task_queue=self.task_queue,
        )

        run_result = WorkflowRunResult.from_dict(result)
        logger.info("Temporal graph run finished", workflow_id=definition.id, run_id=run_id,
                    status=run_result.status, executed=len(run_result.executed))
        return run_result

    async def start_workflow(self, definition: WorkflowDefinition,
                             initial_data: Optional[Mapping[str, Any]] = None,
                             caller_id: str = "default") -> str:
        """Start a workflow without waiting; returns the run id."""
        run_id = self._run_id(definition)
        await self.client.start_workflow(
            GraphRunWorkflow.run,
            self._payload(definition, initial_data, caller_id),
            id=run_id,
            task_queue=self.task_queue,
        )
        logger.info("Temporal graph run started", workflow_id=definition.id, run_id=run_id)
        return run_id
