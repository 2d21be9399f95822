"""Temporal workflow - the graph runner as a durable orchestrator.

The workflow ONLY orchestrates: it walks the graph with WorkflowRunner and
schedules one activity per node. All node logic, and therefore all I/O,
happens in activities. Because the runner is deterministic, replaying the
workflow history reproduces the same activity schedule.
"""

from datetime import timedelta
from typing import Any, Dict, Mapping

from temporalio import workflow
from temporalio.common import RetryPolicy
from temporalio.exceptions import ActivityError, ApplicationError

from constants import DELAY_WAIT
from models.workflow import WorkflowDefinition
from services.execution.errors import (
    ConfigurationError,
    ExecutorNotFoundError,
    NodeExecutionError,
    StructuredError,
    WorkflowCycleError,
)
from services.execution.runner import WorkflowRunner
from services.expression import to_number
from services.handlers.flow import MAX_DELAY_SECONDS, delay_seconds
from services.node_executor import NodeInvocation
from services.temporal.activities import EXECUTOR_NOT_FOUND_ERROR, NODE_EXECUTION_ERROR

DEFAULT_ACTIVITY_TIMEOUT_SECONDS = 600

# Classified failures are terminal; ambient retries only cover unclassified ones
NODE_RETRY_POLICY = RetryPolicy(
    initial_interval=timedelta(seconds=1),
    maximum_interval=timedelta(seconds=30),
    maximum_attempts=3,
    non_retryable_error_types=[NODE_EXECUTION_ERROR, EXECUTOR_NOT_FOUND_ERROR],
)


def activity_timeout(invocation: NodeInvocation, base_seconds: int,
                     max_delay_seconds: int = MAX_DELAY_SECONDS) -> timedelta:
    """start_to_close timeout of a node activity, extended by a delay node's wait."""
    if invocation.node_type != DELAY_WAIT:
        return timedelta(seconds=base_seconds)

    amount = to_number(invocation.parameters.get("amount"))
    try:
        wait = delay_seconds(amount, invocation.parameters.get("unit") or "seconds") if amount else None
    except ConfigurationError:
        wait = None
    if wait is None or wait <= 0:
        # Templated amount: resolved only inside the activity
        wait = max_delay_seconds
    return timedelta(seconds=base_seconds + min(wait, max_delay_seconds))


class ActivityInvoker:
    """Runner invoker that executes each node as a Temporal activity."""

    def __init__(self, timeout_seconds: int = DEFAULT_ACTIVITY_TIMEOUT_SECONDS,
                 max_delay_seconds: int = MAX_DELAY_SECONDS):
        self.timeout_seconds = timeout_seconds
        self.max_delay_seconds = max_delay_seconds

    async def __call__(self, invocation: NodeInvocation) -> Mapping[str, Any]:
        try:
            return await workflow.execute_activity(
                "execute_node_activity",
                invocation.to_dict(),
                start_to_close_timeout=activity_timeout(invocation, self.timeout_seconds,
                                                        self.max_delay_seconds),
                heartbeat_timeout=timedelta(minutes=2),
                retry_policy=NODE_RETRY_POLICY,
            )
        except ActivityError as e:
            cause = e.cause
            if isinstance(cause, ApplicationError) and cause.type == NODE_EXECUTION_ERROR:
                details = cause.details[0] if cause.details else {"message": cause.message}
                raise NodeExecutionError(StructuredError.from_dict(details),
                                         node_id=invocation.node_id) from e
            if isinstance(cause, ApplicationError) and cause.type == EXECUTOR_NOT_FOUND_ERROR:
                raise ExecutorNotFoundError(invocation.node_type) from e
            raise


@workflow.defn(sandboxed=False)
class GraphRunWorkflow:
    """Durable workflow run orchestrator."""

    @workflow.run
    async def run(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """Execute a workflow graph.

        Args:
            payload: Dict containing:
                - workflow: WorkflowDefinition as a dict
                - initial_data: trigger carriers and seed variables
                - caller_id: owning user (status channel)
                - activity_timeout: base activity timeout in seconds
                - delay_max_seconds: longest allowed delay node wait

        Returns:
            WorkflowRunResult as a dict (failed runs included)
        """
        definition = WorkflowDefinition.model_validate(payload["workflow"])
        invoker = ActivityInvoker(
            timeout_seconds=payload.get("activity_timeout", DEFAULT_ACTIVITY_TIMEOUT_SECONDS),
            max_delay_seconds=payload.get("delay_max_seconds", MAX_DELAY_SECONDS),
        )
        runner = WorkflowRunner(invoker, caller_id=payload.get("caller_id", "default"),
                                clock=workflow.now)

        workflow.logger.info(f"Starting graph run: {len(definition.nodes)} nodes, "
                             f"{len(definition.connections)} connections")
        try:
            result = await runner.run(definition, payload.get("initial_data") or {},
                                      run_id=workflow.info().workflow_id)
        except NodeExecutionError as e:
            workflow.logger.error(f"Graph run failed at {e.node_id}: {e.error.message}")
            return e.run_result.to_dict()
        except (WorkflowCycleError, ExecutorNotFoundError) as e:
            # Plain exceptions would fail the workflow task and be retried forever
            raise ApplicationError(str(e), type=type(e).__name__, non_retryable=True) from e

        workflow.logger.info(f"Graph run complete: executed={len(result.executed)}")
        return result.to_dict()
