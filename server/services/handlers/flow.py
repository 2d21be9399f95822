"""Flow node handlers - Delay/Wait and Error Trigger."""

from datetime import datetime, timezone
from typing import Any, Dict, Mapping

from core.logging import get_logger
from services.execution.context import (
    ERROR_HANDLED_KEY,
    ERROR_KEY,
    LAST_ERROR_KEY,
    require_variable_name,
    with_output,
    without_keys,
)
from services.execution.errors import ConfigurationError
from services.execution.status import node_status, status_channel
from services.execution.steps import StepHandle
from services.expression import to_number
from services.parameter_resolver import resolve_text

logger = get_logger(__name__)

MAX_DELAY_SECONDS = 7 * 24 * 60 * 60


def delay_seconds(amount: Any, unit: str) -> float:
    """Convert a delay amount to seconds."""
    match unit:
        case "seconds":
            return amount
        case "minutes":
            return amount * 60
        case "hours":
            return amount * 3600
        case "days":
            return amount * 86400
        case _:
            raise ConfigurationError(f"Unknown delay unit: {unit}", error_code="INVALID_DELAY")


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


async def handle_delay_wait(
    node_id: str,
    parameters: Dict[str, Any],
    context: Mapping[str, Any],
    *,
    caller_id: str,
    step: StepHandle,
    publish,
    max_delay_seconds: int = MAX_DELAY_SECONDS,
) -> Dict[str, Any]:
    """Suspend the run for ``amount`` ``unit`` through a durable sleep.

    Args:
        parameters: amount (> 0), unit (seconds|minutes|hours|days), variableName

    Returns:
        New context with ``{amount, unit, durationMs, startedAt, completedAt}``.
    """
    async with node_status(publish, status_channel(caller_id), node_id) as status:
        variable_name = require_variable_name(parameters, default="delay")
        amount = to_number(resolve_text(parameters.get("amount", ""), context))
        unit = parameters.get("unit") or "seconds"

        if amount is None or amount <= 0:
            raise ConfigurationError("Delay amount must be greater than 0", error_code="INVALID_DELAY")
        seconds = delay_seconds(amount, unit)
        if seconds > max_delay_seconds:
            raise ConfigurationError(
                f"Delay cannot exceed {max_delay_seconds // 86400} days",
                error_code="INVALID_DELAY",
                guidance="Use a shorter delay or split the wait across several nodes.",
            )

        async def mark() -> str:
            return _now_iso()

        started_at = await step.run(f"delay-start-{node_id}", mark)
        logger.info("Delay started", node_id=node_id, seconds=seconds)
        await step.sleep(f"delay-wait-{node_id}", seconds)
        completed_at = await step.run(f"delay-complete-{node_id}", mark)

        status.extra["durationMs"] = int(seconds * 1000)
        return with_output(context, variable_name, {
            "amount": amount,
            "unit": unit,
            "durationMs": int(seconds * 1000),
            "startedAt": started_at,
            "completedAt": completed_at,
        })


async def handle_error_trigger(
    node_id: str,
    parameters: Dict[str, Any],
    context: Mapping[str, Any],
    *,
    caller_id: str,
    step: StepHandle,
    publish,
) -> Dict[str, Any]:
    """Consume the upstream error carrier and let the run continue.

    Reads ``__error`` (falling back to ``__lastError``), stores
    ``{hasError, error, message, timestamp}`` under the variable name and marks
    the error handled. Without a carried error it passes through with
    ``hasError=False``.
    """
    async with node_status(publish, status_channel(caller_id), node_id) as status:
        variable_name = require_variable_name(parameters, default="error")

        async def process() -> Dict[str, Any]:
            carried = context.get(ERROR_KEY) or context.get(LAST_ERROR_KEY)
            if not carried:
                return {"hasError": False, "error": None, "message": None, "timestamp": _now_iso()}
            message = carried.get("message") if isinstance(carried, dict) else str(carried)
            return {"hasError": True, "error": carried, "message": message, "timestamp": _now_iso()}

        record = await step.run(f"error-trigger-process-{node_id}", process)
        status.extra["hasError"] = record["hasError"]

        if not record["hasError"]:
            return with_output(context, variable_name, record)

        logger.info("Error handled", node_id=node_id, message=record["message"])
        return with_output(
            without_keys(context, [ERROR_KEY]), variable_name, record,
            **{ERROR_HANDLED_KEY: True},
        )
