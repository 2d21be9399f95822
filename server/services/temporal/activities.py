"""Temporal activities for node execution.

Each workflow node runs as one ``execute_node_activity`` call. The activity
dispatches through the same NodeExecutor registry as local runs, with an
ActivityStepHandle so completed steps survive activity retries.

Classified node failures are raised as non-retryable ApplicationErrors of type
``NodeExecutionError`` carrying the structured error as details; the workflow
turns them back into NodeExecutionError for error-trigger routing.
"""

from typing import Any, Dict

from temporalio import activity
from temporalio.exceptions import ApplicationError

from core.logging import get_logger
from services.execution.errors import ExecutorNotFoundError, NodeExecutionError
from services.execution.status import Publish
from services.node_executor import NodeExecutor, NodeInvocation
from services.temporal.steps import ActivityStepHandle, restore_journal

logger = get_logger(__name__)

NODE_EXECUTION_ERROR = "NodeExecutionError"
EXECUTOR_NOT_FOUND_ERROR = "ExecutorNotFoundError"


def log_publish(channel: str, payload: Dict[str, Any]) -> None:
    """Status publisher for standalone workers without a WebSocket hub."""
    logger.info("Node status", channel=channel, node_id=payload.get("nodeId"), status=payload.get("status"))


class NodeExecutionActivities:
    """Class-based activities sharing one executor and status publisher."""

    def __init__(self, executor: NodeExecutor, publish: Publish = log_publish):
        self.executor = executor
        self.publish = publish

    @activity.defn(name="execute_node_activity")
    async def execute_node_activity(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        invocation = NodeInvocation.from_dict(payload)
        info = activity.info()
        journal = restore_journal()
        if journal.results:
            logger.info("Resuming node from checkpoint", node_id=invocation.node_id,
                        attempt=info.attempt, completed_steps=len(journal.results))

        step = ActivityStepHandle(journal)
        if invocation.step_prefix:
            step = step.scoped(invocation.step_prefix)

        try:
            result = await self.executor.execute(invocation, step, self.publish)
        except NodeExecutionError as e:
            raise ApplicationError(
                e.error.message,
                e.error.to_dict(),
                type=NODE_EXECUTION_ERROR,
                non_retryable=True,
            ) from e
        except ExecutorNotFoundError as e:
            raise ApplicationError(str(e), invocation.node_type, type=EXECUTOR_NOT_FOUND_ERROR,
                                   non_retryable=True) from e

        return dict(result)
