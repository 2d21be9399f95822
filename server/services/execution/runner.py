"""Graph runner.

Walks a WorkflowDefinition in topological order, hands each active node to an
invoker and activates successors from the routing signals the node left in the
context. The runner itself performs no I/O: locally the invoker calls the node
registry with a LocalStepHandle, under Temporal it schedules an activity. That
keeps ``run`` deterministic and safe to replay inside a Temporal workflow.
"""

import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Mapping, Optional, Set

from constants import LOOP
from core.logging import get_logger, log_execution_time
from models.workflow import Connection, WorkflowDefinition, WorkflowNode
from services.execution.context import (
    ERROR_KEY,
    LOOP_DATA_KEY,
    ROUTING_KEYS,
    user_view,
    with_output,
    without_keys,
)
from services.execution.errors import NodeExecutionError
from services.execution.graph import (
    descendants,
    error_successors,
    loop_body_edges,
    outgoing_index,
    select_routes,
    start_nodes,
    topological_order,
)
from services.handlers.control import loop_frame
from services.node_executor import NodeInvocation

logger = get_logger(__name__)

Invoker = Callable[[NodeInvocation], Awaitable[Mapping[str, Any]]]

COMPLETED = "completed"
FAILED = "failed"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class WorkflowRunResult:
    run_id: str
    workflow_id: str
    status: str
    context: Dict[str, Any]
    executed: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    error: Optional[Dict[str, Any]] = None
    failed_node: Optional[str] = None
    started_at: Optional[str] = None
    finished_at: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.status == COMPLETED

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WorkflowRunResult":
        return cls(**data)


class _RunState:
    """Mutable bookkeeping for one run."""

    def __init__(self, definition: WorkflowDefinition, run_id: str):
        self.definition = definition
        self.run_id = run_id
        self.nodes: Dict[str, WorkflowNode] = definition.node_map()
        self.outgoing: Dict[str, List[Connection]] = outgoing_index(definition)
        self.executed: List[str] = []
        self.context: Dict[str, Any] = {}
        self.failed_node: Optional[str] = None

    def mark(self, node_id: str) -> None:
        if node_id not in self.executed:
            self.executed.append(node_id)


class WorkflowRunner:
    """Executes workflow graphs node by node through an invoker."""

    def __init__(self, invoker: Invoker, caller_id: str = "default",
                 clock: Callable[[], datetime] = _utcnow):
        self.invoker = invoker
        self.caller_id = caller_id
        self._clock = clock

    async def run(self, definition: WorkflowDefinition,
                  initial_data: Optional[Mapping[str, Any]] = None,
                  run_id: Optional[str] = None) -> WorkflowRunResult:
        """Run ``definition`` to completion.

        Returns:
            WorkflowRunResult with status ``completed``.

        Raises:
            WorkflowCycleError: if the graph has a cycle.
            ExecutorNotFoundError: if a reached node has no registered executor.
            NodeExecutionError: if a node fails without an error-trigger
                successor. The failed WorkflowRunResult is attached as
                ``run_result``.
        """
        run_id = run_id or str(uuid.uuid4())
        started_at = self._clock()
        order = topological_order(definition)
        state = _RunState(definition, run_id)
        context = dict(initial_data or {})
        state.context = context
        active = start_nodes(definition, context)

        logger.info("Workflow run started", run_id=run_id, workflow_id=definition.id,
                    nodes=len(order), start_nodes=sorted(active))

        try:
            context = await self._run_region(state, order, active, context, prefix="")
        except NodeExecutionError as exc:
            result = self._result(state, order, FAILED, started_at,
                                  error=exc.error.to_dict())
            exc.run_result = result
            logger.error("Workflow run failed", run_id=run_id, workflow_id=definition.id,
                         node_id=state.failed_node, error_code=exc.error.error_code,
                         message=exc.error.message)
            raise

        result = self._result(state, order, COMPLETED, started_at, context=context)
        log_execution_time(logger, "workflow_run", started_at.timestamp(),
                           self._clock().timestamp(), run_id=run_id,
                           workflow_id=definition.id, executed=len(result.executed))
        return result

    def _result(self, state: _RunState, order: List[str], status: str, started_at: datetime,
                context: Optional[Mapping[str, Any]] = None,
                error: Optional[Dict[str, Any]] = None) -> WorkflowRunResult:
        executed = list(state.executed)
        return WorkflowRunResult(
            run_id=state.run_id,
            workflow_id=state.definition.id,
            status=status,
            context=user_view(context if context is not None else state.context),
            executed=executed,
            skipped=[node_id for node_id in order if node_id not in executed],
            error=error,
            failed_node=state.failed_node,
            started_at=started_at.isoformat(),
            finished_at=self._clock().isoformat(),
        )

    async def _run_region(self, state: _RunState, order: Iterable[str], active: Set[str],
                          context: Dict[str, Any], prefix: str) -> Dict[str, Any]:
        active = set(active)
        handled: Set[str] = set()

        for node_id in order:
            if node_id in handled or node_id not in active:
                continue
            node = state.nodes[node_id]
            invocation = NodeInvocation(
                run_id=state.run_id,
                node_id=node_id,
                node_type=node.type,
                parameters=dict(node.data),
                context=dict(context),
                caller_id=self.caller_id,
                step_prefix=prefix,
            )

            try:
                context = dict(await self.invoker(invocation))
            except NodeExecutionError as exc:
                handlers = error_successors(node_id, state.outgoing, state.nodes)
                state.mark(node_id)
                if not handlers:
                    state.failed_node = node_id
                    state.context = context
                    raise
                logger.warning("Node failure routed to error trigger", run_id=state.run_id,
                               node_id=node_id, handlers=handlers, error_code=exc.error.error_code)
                context = {**context, ERROR_KEY: {"nodeId": node_id, "nodeType": node.type,
                                                  **exc.error.to_dict()}}
                active.update(handlers)
                state.context = context
                continue

            state.mark(node_id)

            body = loop_body_edges(node_id, state.outgoing) if node.type == LOOP else []
            if body:
                region = descendants([c.target for c in body], state.outgoing) - {node_id}
                body_order = [n for n in order if n in region]
                context = await self._run_loop(state, node, body, body_order, context, prefix)
                handled |= region

            active.update(select_routes(node, context, state.outgoing, state.nodes))
            context = without_keys(context, ROUTING_KEYS)
            state.context = context

        return context

    async def _run_loop(self, state: _RunState, node: WorkflowNode, body: List[Connection],
                        body_order: List[str], context: Dict[str, Any],
                        prefix: str) -> Dict[str, Any]:
        """Run the loop body once per item; collect each iteration's changed keys."""
        loop_data = context.get(LOOP_DATA_KEY) or {}
        items = list(loop_data.get("items") or [])
        variable_name = loop_data.get("variableName") or "loop"
        mode = loop_data.get("mode") or "forEach"
        collect = loop_data.get("collectResults", True)

        base = without_keys(context, [LOOP_DATA_KEY])
        starts = {c.target for c in body}
        results = []

        logger.info("Loop body started", run_id=state.run_id, node_id=node.id, items=len(items))
        for index in range(len(items)):
            iteration = with_output(base, variable_name, loop_frame(items, index, mode))
            out = await self._run_region(state, body_order, starts, iteration,
                                         prefix=f"{prefix}{node.id}:{index}:")
            if collect:
                results.append({
                    k: v for k, v in user_view(out).items()
                    if k != variable_name and (k not in base or base[k] != v)
                })

        summary = dict(context.get(variable_name) or {})
        if collect:
            summary["results"] = results
        return with_output(base, variable_name, summary)
