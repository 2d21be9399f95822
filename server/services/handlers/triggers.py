"""Trigger node handlers - Manual and Schedule triggers.

Triggers start a run. The initial data of a run may carry the firing trigger
under its type name (``{"scheduleTrigger": {...}}``); the schedule trigger
copies that carrier into its output variable.
"""

from datetime import datetime, timezone
from typing import Any, Dict, Mapping

from core.logging import get_logger
from services.execution.context import require_variable_name, with_output
from services.execution.status import node_status, status_channel
from services.execution.steps import StepHandle

logger = get_logger(__name__)


async def handle_manual_trigger(
    node_id: str,
    parameters: Dict[str, Any],
    context: Mapping[str, Any],
    *,
    caller_id: str,
    step: StepHandle,
    publish,
) -> Dict[str, Any]:
    """Start node for manual runs; passes the initial context through."""
    async with node_status(publish, status_channel(caller_id), node_id):
        logger.info("Manual trigger fired", node_id=node_id, keys=list(context.keys()))
        return dict(context)


async def handle_schedule_trigger(
    node_id: str,
    parameters: Dict[str, Any],
    context: Mapping[str, Any],
    *,
    caller_id: str,
    step: StepHandle,
    publish,
) -> Dict[str, Any]:
    """Expose the schedule fire details to downstream nodes.

    Args:
        node_id: The node ID
        parameters: variableName (default "schedule")
        context: Initial context, normally carrying ``scheduleTrigger``

    Returns:
        New context with the fire details under the variable name.
    """
    async with node_status(publish, status_channel(caller_id), node_id) as status:
        variable_name = require_variable_name(parameters, default="schedule")
        carrier = context.get("scheduleTrigger")

        async def capture() -> Dict[str, Any]:
            if isinstance(carrier, dict):
                return dict(carrier)
            # Run started by hand (e.g. "execute workflow" from the editor)
            now = datetime.now(timezone.utc).isoformat()
            return {"nodeId": node_id, "scheduledAt": None, "triggeredAt": now, "manual": True}

        details = await step.run(f"schedule-trigger-{node_id}", capture)
        status.extra["triggeredAt"] = details.get("triggeredAt")
        return with_output(context, variable_name, details)
