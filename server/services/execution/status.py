"""Node status tracking.

Every executor invocation publishes exactly one ``loading`` status followed by
exactly one terminal ``success`` or ``error`` status. ``node_status`` owns
that sequence so individual handlers cannot get it wrong:

    async with node_status(publish, channel, node_id) as status:
        ...validate, run steps...
        status.extra["branch"] = "true"

A clean exit publishes success with ``status.extra``. Any exception publishes
error (before the raise leaves the block) and is re-raised as a non-retriable
NodeExecutionError carrying the classified error.
"""

from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Callable, Dict, Optional

from core.logging import get_logger
from services.execution.errors import NodeExecutionError, classify

logger = get_logger(__name__)

Publish = Callable[[str, Dict[str, Any]], Any]

LOADING = "loading"
SUCCESS = "success"
ERROR = "error"


def status_channel(caller_id: str) -> str:
    """Realtime channel carrying node status for one user."""
    return f"workflow-status:{caller_id}"


def safe_publish(publish: Publish, channel: str, payload: Dict[str, Any]) -> None:
    """Publishing is fire-and-forget and never fails node execution."""
    try:
        publish(channel, payload)
    except Exception as e:
        logger.warning("Status publish failed", channel=channel, node_id=payload.get("nodeId"), error=str(e))


@dataclass
class NodeStatus:
    node_id: str
    channel: str
    publish: Publish
    provider: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)
    terminal: Optional[str] = None

    def _emit(self, status: str, **data: Any) -> None:
        safe_publish(self.publish, self.channel, {"nodeId": self.node_id, "status": status, **data})

    def loading(self) -> None:
        self._emit(LOADING)

    def success(self) -> None:
        if self.terminal is None:
            self.terminal = SUCCESS
            self._emit(SUCCESS, **self.extra)

    def error(self, exc: BaseException) -> NodeExecutionError:
        """Publish the error status once and return the exception to raise."""
        if isinstance(exc, NodeExecutionError):
            failure = exc
        else:
            failure = NodeExecutionError(classify(exc, self.provider), node_id=self.node_id)
        if failure.node_id is None:
            failure.node_id = self.node_id
        if self.terminal is None:
            self.terminal = ERROR
            self._emit(ERROR, error=failure.error.to_dict())
        return failure


@asynccontextmanager
async def node_status(publish: Publish, channel: str, node_id: str,
                      provider: Optional[str] = None) -> AsyncIterator[NodeStatus]:
    status = NodeStatus(node_id=node_id, channel=channel, publish=publish, provider=provider)
    status.loading()
    try:
        yield status
    except Exception as exc:
        failure = status.error(exc)
        logger.warning("Node failed", node_id=node_id, error_code=failure.error.error_code,
                       message=failure.error.message)
        if failure is exc:
            raise
        raise failure from exc
    status.success()
