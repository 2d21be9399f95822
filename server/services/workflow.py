"""Workflow Service - Facade for workflow registration and execution.

This is a thin facade that delegates to specialized modules:
- WorkflowRegistry: registered workflow definitions (in memory)
- NodeExecutor: single node dispatch
- WorkflowRunner + LocalInvoker: in-process graph runs
- TemporalExecutor: durable graph runs (optional)
"""

import asyncio
import uuid
from typing import Any, Dict, List, Mapping, Optional, Set, TYPE_CHECKING

from core.logging import get_logger
from models.workflow import WorkflowDefinition
from services.execution.errors import NodeExecutionError, WorkflowError
from services.execution.runner import WorkflowRunner, WorkflowRunResult
from services.execution.steps import StepJournal
from services.node_executor import LocalInvoker, NodeExecutor

if TYPE_CHECKING:
    from core.config import Settings
    from services.status_broadcaster import StatusBroadcaster
    from services.temporal import TemporalExecutor

logger = get_logger(__name__)


class WorkflowNotFoundError(WorkflowError):
    """No workflow is registered under the requested id."""


class WorkflowRegistry:
    """In-memory store of workflow definitions keyed by id."""

    def __init__(self):
        self._workflows: Dict[str, WorkflowDefinition] = {}

    def register(self, definition: WorkflowDefinition) -> WorkflowDefinition:
        self._workflows[definition.id] = definition
        logger.info("Workflow registered", workflow_id=definition.id, nodes=len(definition.nodes))
        return definition

    def get(self, workflow_id: str) -> WorkflowDefinition:
        try:
            return self._workflows[workflow_id]
        except KeyError:
            raise WorkflowNotFoundError(f"Workflow {workflow_id} not found") from None

    def remove(self, workflow_id: str) -> bool:
        return self._workflows.pop(workflow_id, None) is not None

    def list(self) -> List[WorkflowDefinition]:
        return list(self._workflows.values())


class WorkflowService:
    """Workflow execution service.

    Runs in-process by default; when a TemporalExecutor is attached, runs are
    delegated to Temporal.
    """

    def __init__(
        self,
        settings: "Settings",
        registry: WorkflowRegistry,
        broadcaster: "StatusBroadcaster",
    ):
        self.settings = settings
        self.registry = registry
        self.broadcaster = broadcaster
        self.node_executor = NodeExecutor(settings)
        self._temporal_executor: Optional["TemporalExecutor"] = None
        self._background: Set[asyncio.Task] = set()

    def set_temporal_executor(self, executor: Optional["TemporalExecutor"]) -> None:
        """Attach (or detach with None) the Temporal executor."""
        self._temporal_executor = executor
        logger.info("Temporal execution " + ("enabled" if executor else "disabled"))

    @property
    def temporal_enabled(self) -> bool:
        return self._temporal_executor is not None

    async def execute_workflow(self, definition: WorkflowDefinition,
                               initial_data: Optional[Mapping[str, Any]] = None,
                               caller_id: str = "default",
                               journal: Optional[StepJournal] = None) -> WorkflowRunResult:
        """Run a workflow to completion and return its result.

        Failed runs are returned with status ``failed`` rather than raised.
        ``journal`` resumes an interrupted local run without repeating
        completed steps.
        """
        if self._temporal_executor is not None:
            return await self._temporal_executor.run_workflow(definition, initial_data, caller_id)

        invoker = LocalInvoker(self.node_executor, self.broadcaster.publish, journal=journal)
        runner = WorkflowRunner(invoker, caller_id=caller_id)
        try:
            return await runner.run(definition, initial_data)
        except NodeExecutionError as e:
            return e.run_result

    async def execute_registered(self, workflow_id: str,
                                 initial_data: Optional[Mapping[str, Any]] = None,
                                 caller_id: str = "default") -> WorkflowRunResult:
        return await self.execute_workflow(self.registry.get(workflow_id), initial_data, caller_id)

    async def launch(self, workflow_id: str, initial_data: Dict[str, Any],
                     caller_id: str = "default") -> str:
        """Start a registered workflow without waiting (schedule launcher)."""
        definition = self.registry.get(workflow_id)
        if self._temporal_executor is not None:
            return await self._temporal_executor.start_workflow(definition, initial_data, caller_id)

        run_id = str(uuid.uuid4())
        task = asyncio.create_task(self._run_in_background(definition, initial_data, caller_id, run_id),
                                   name=f"workflow-run-{run_id}")
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return run_id

    async def _run_in_background(self, definition: WorkflowDefinition, initial_data: Dict[str, Any],
                                 caller_id: str, run_id: str) -> None:
        invoker = LocalInvoker(self.node_executor, self.broadcaster.publish)
        runner = WorkflowRunner(invoker, caller_id=caller_id)
        try:
            await runner.run(definition, initial_data, run_id=run_id)
        except WorkflowError as e:
            logger.error("Background workflow run failed", run_id=run_id,
                         workflow_id=definition.id, error=str(e))

    async def drain(self) -> None:
        """Wait for background runs to finish."""
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def shutdown(self) -> None:
        """Cancel in-flight background runs."""
        for task in list(self._background):
            task.cancel()
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)
