"""Node Executor - single node dispatch through a static handler registry.

Uses a registry pattern for clean handler dispatch without if-else chains.
The registry is built once per NodeExecutor from settings (caps are bound in
via ``functools.partial``) and never mutated afterwards.
"""

from dataclasses import asdict, dataclass
from functools import partial
from types import MappingProxyType
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, TYPE_CHECKING

from constants import (
    CONDITIONAL,
    DELAY_WAIT,
    ERROR_TRIGGER,
    FILTER,
    HTTP_REQUEST,
    LOOP,
    MANUAL_TRIGGER,
    MERGE,
    SCHEDULE_TRIGGER,
    SET,
    SPLIT,
    SWITCH,
)
from core.logging import get_logger
from services.execution.context import freeze
from services.execution.errors import ExecutorNotFoundError
from services.execution.status import Publish
from services.execution.steps import LocalStepHandle, StepHandle, StepJournal
from services.handlers import (
    handle_manual_trigger, handle_schedule_trigger,
    handle_filter, handle_switch, handle_merge, handle_split, handle_loop, handle_set,
    handle_delay_wait, handle_error_trigger,
    handle_http_request,
)
from services.handlers.flow import MAX_DELAY_SECONDS

if TYPE_CHECKING:
    from core.config import Settings

logger = get_logger(__name__)

NodeHandler = Callable[..., Awaitable[Dict[str, Any]]]


@dataclass
class NodeInvocation:
    """Everything needed to execute one node, serializable for activities."""
    run_id: str
    node_id: str
    node_type: str
    parameters: Dict[str, Any]
    context: Dict[str, Any]
    caller_id: str = "default"
    step_prefix: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "NodeInvocation":
        return cls(**data)


class NodeExecutor:
    """Executes individual workflow nodes using registry-based dispatch."""

    def __init__(self, settings: Optional["Settings"] = None):
        self.settings = settings
        self._handlers = MappingProxyType(self._build_handler_registry())

    def _build_handler_registry(self) -> Dict[str, NodeHandler]:
        """Build handler registry with setting-bound limits applied via partial."""
        loop_cap = self.settings.loop_hard_cap if self.settings else 1000
        delay_cap = self.settings.delay_max_seconds if self.settings else MAX_DELAY_SECONDS

        return {
            # Triggers
            MANUAL_TRIGGER: handle_manual_trigger,
            SCHEDULE_TRIGGER: handle_schedule_trigger,
            # Control flow
            FILTER: handle_filter,
            CONDITIONAL: handle_filter,
            SWITCH: handle_switch,
            MERGE: handle_merge,
            SPLIT: handle_split,
            LOOP: partial(handle_loop, max_iterations_cap=loop_cap),
            SET: handle_set,
            # Flow
            DELAY_WAIT: partial(handle_delay_wait, max_delay_seconds=delay_cap),
            ERROR_TRIGGER: handle_error_trigger,
            # HTTP
            HTTP_REQUEST: handle_http_request,
        }

    @property
    def node_types(self):
        return sorted(self._handlers)

    def get_executor(self, node_type: str) -> NodeHandler:
        handler = self._handlers.get(node_type)
        if handler is None:
            raise ExecutorNotFoundError(node_type)
        return handler

    async def execute(self, invocation: NodeInvocation, step: StepHandle,
                      publish: Publish) -> Dict[str, Any]:
        """Execute a single workflow node and return its new context."""
        handler = self.get_executor(invocation.node_type)
        logger.debug("Dispatching node", node_id=invocation.node_id,
                     node_type=invocation.node_type, run_id=invocation.run_id)
        return await handler(
            invocation.node_id,
            invocation.parameters,
            freeze(invocation.context),
            caller_id=invocation.caller_id,
            step=step,
            publish=publish,
        )


class LocalInvoker:
    """Runs node invocations in-process against one journal per run."""

    def __init__(self, executor: NodeExecutor, publish: Publish,
                 journal: Optional[StepJournal] = None, step: Optional[LocalStepHandle] = None):
        self.executor = executor
        self.publish = publish
        self.step = step if step is not None else LocalStepHandle(journal)

    @property
    def journal(self) -> StepJournal:
        return self.step.journal

    async def __call__(self, invocation: NodeInvocation) -> Mapping[str, Any]:
        step = self.step.scoped(invocation.step_prefix) if invocation.step_prefix else self.step
        return await self.executor.execute(invocation, step, self.publish)
