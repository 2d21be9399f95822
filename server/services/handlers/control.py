"""Control-flow node handlers - Filter, Switch, Merge, Split, Loop and Set.

Every handler has the executor shape::

    async def handle_x(node_id, parameters, context, *, caller_id, step, publish) -> dict

It never mutates ``context``; it returns a new context carrying its output
variable (plus any ``__`` routing signals the graph runner consumes).
"""

import math
from typing import Any, Dict, List, Mapping, Optional

import orjson

from core.logging import get_logger
from services.execution.conditions import evaluate_conditions
from services.execution.context import (
    FILTER_RESULT_KEY,
    LOOP_DATA_KEY,
    SPLIT_BATCHES_KEY,
    SPLIT_BATCH_COUNT_KEY,
    SWITCH_BRANCH_KEY,
    SWITCH_OUTPUT_KEY,
    MISSING,
    first_user_value,
    get_path,
    is_valid_variable_name,
    require_variable_name,
    with_output,
)
from services.execution.errors import ConfigurationError
from services.execution.status import node_status, status_channel
from services.execution.steps import StepHandle
from services.expression import ExpressionError, evaluate_boolean, evaluate_expression, to_number
from services.parameter_resolver import TEMPLATE_PATTERN, render, resolve_text, resolve_value

logger = get_logger(__name__)

DEFAULT_BATCH_SIZE = 10
DEFAULT_MAX_ITERATIONS = 1000


# =============================================================================
# FILTER / CONDITIONAL
# =============================================================================

async def handle_filter(
    node_id: str,
    parameters: Dict[str, Any],
    context: Mapping[str, Any],
    *,
    caller_id: str,
    step: StepHandle,
    publish,
) -> Dict[str, Any]:
    """Evaluate an ordered condition list and pick the true or false route.

    Args:
        node_id: The node ID
        parameters: conditions, logicalOperator (AND/OR), variableName
        context: Current execution context (read-only)

    Returns:
        New context with ``{passed, branch, logicalOperator, conditionResults}``
        under the variable name and the ``__filterResult`` route signal.
    """
    async with node_status(publish, status_channel(caller_id), node_id) as status:
        variable_name = require_variable_name(parameters, default="filterResult")
        conditions = parameters.get("conditions") or []
        if not isinstance(conditions, list):
            raise ConfigurationError("Conditions must be a list", error_code="INVALID_CONDITION")
        logic = str(parameters.get("logicalOperator") or "AND").upper()
        if logic not in ("AND", "OR"):
            raise ConfigurationError(f"Unknown logical operator: {logic}", error_code="INVALID_CONDITION")

        async def evaluate() -> Dict[str, Any]:
            passed, details = evaluate_conditions(conditions, context, logic)
            return {
                "passed": passed,
                "branch": "true" if passed else "false",
                "logicalOperator": logic,
                "conditionResults": [d["result"] for d in details],
                "conditionDetails": details,
            }

        result = await step.run(f"evaluate-conditions-{node_id}", evaluate)
        status.extra["branch"] = result["branch"]
        logger.info("Filter evaluated", node_id=node_id, passed=result["passed"], logic=logic)

        return with_output(context, variable_name, result,
                           **{FILTER_RESULT_KEY: {"nodeId": node_id, "passed": result["passed"]}})


# =============================================================================
# SWITCH
# =============================================================================

def _as_output_index(value: Any) -> Optional[int]:
    """Non-negative integer output index, or None when ``value`` is not one."""
    number = to_number(value)
    if number is None or isinstance(number, bool):
        return None
    if isinstance(number, float):
        if not number.is_integer():
            return None
        number = int(number)
    return number if number >= 0 else None


async def handle_switch(
    node_id: str,
    parameters: Dict[str, Any],
    context: Mapping[str, Any],
    *,
    caller_id: str,
    step: StepHandle,
    publish,
) -> Dict[str, Any]:
    """Route to one numbered output.

    Rules mode: first rule whose (templated) condition is truthy wins.
    Expression mode: a formula yielding the output index. Anything that is not
    a valid index (failed evaluation, non-integer, negative, or at/above
    ``numberOfOutputs`` when declared) falls back to ``fallbackOutput``.
    """
    async with node_status(publish, status_channel(caller_id), node_id) as status:
        variable_name = require_variable_name(parameters)
        mode = parameters.get("mode") or "rules"
        if mode not in ("rules", "expression"):
            raise ConfigurationError(f"Unknown switch mode: {mode}")
        fallback = _as_output_index(parameters.get("fallbackOutput") or 0)
        if fallback is None:
            raise ConfigurationError("Fallback output must be a non-negative integer")
        output_count = _as_output_index(parameters.get("numberOfOutputs")) if parameters.get(
            "numberOfOutputs") is not None else None
        rules = parameters.get("rules") or []

        async def decide() -> Dict[str, Any]:
            branch, output = "fallback", fallback

            if mode == "rules":
                for position, rule in enumerate(rules):
                    condition = resolve_text(rule.get("condition", ""), context)
                    try:
                        matched = evaluate_boolean(condition, context)
                    except ExpressionError as e:
                        logger.warning("Switch rule evaluation failed", node_id=node_id,
                                       rule=rule.get("name"), error=str(e))
                        continue
                    if matched:
                        rule_output = _as_output_index(rule.get("output", position))
                        output = rule_output if rule_output is not None else fallback
                        branch = rule.get("name") or f"output_{output}"
                        break
            else:
                expression = resolve_text(parameters.get("expression", ""), context)
                try:
                    index = _as_output_index(evaluate_expression(expression, context))
                except ExpressionError as e:
                    logger.warning("Switch expression evaluation failed", node_id=node_id, error=str(e))
                    index = None
                if index is not None and (output_count is None or index < output_count):
                    branch, output = f"output_{index}", index
                else:
                    logger.info("Switch expression out of range, using fallback", node_id=node_id,
                                expression=expression, fallback=fallback)

            return {"matchedBranch": branch, "matchedOutput": output, "mode": mode}

        result = await step.run(f"switch-evaluate-{node_id}", decide)
        status.extra["branch"] = result["matchedBranch"]

        return with_output(context, variable_name, result, **{
            SWITCH_OUTPUT_KEY: result["matchedOutput"],
            SWITCH_BRANCH_KEY: result["matchedBranch"],
        })


# =============================================================================
# MERGE
# =============================================================================

def _as_list(value: Any) -> List[Any]:
    if value is None:
        return []
    return list(value) if isinstance(value, (list, tuple)) else [value]


def merge_append(inputs: List[Any]) -> List[Any]:
    merged: List[Any] = []
    for value in inputs:
        merged.extend(_as_list(value))
    return merged


def merge_by_position(inputs: List[Any]) -> List[Dict[str, Any]]:
    arrays = [_as_list(v) for v in inputs]
    length = max((len(a) for a in arrays), default=0)
    merged = []
    for index in range(length):
        row: Dict[str, Any] = {}
        for array in arrays:
            if index < len(array) and isinstance(array[index], dict):
                row.update(array[index])
        merged.append(row)
    return merged


def merge_by_key(inputs: List[Any], key: str) -> List[Dict[str, Any]]:
    groups: Dict[str, Dict[str, Any]] = {}
    for item in merge_append(inputs):
        if not isinstance(item, dict):
            continue
        group = render(item.get(key)) if item.get(key) not in (None, "") else ""
        groups.setdefault(group, {}).update(item)
    return list(groups.values())


def merge_multiplex(inputs: List[Any]) -> List[Dict[str, Any]]:
    combos: List[Dict[str, Any]] = [{}]
    for position, value in enumerate(inputs):
        items = _as_list(value)
        next_combos = []
        for combo in combos:
            for item in items:
                part = item if isinstance(item, dict) else {f"input{position}": item}
                next_combos.append({**combo, **part})
        combos = next_combos
    return combos if combos != [{}] else []


def _input_paths(raw: Any) -> List[str]:
    if isinstance(raw, str):
        raw = raw.split(",")
    return [str(p).strip() for p in (raw or []) if p is not None and str(p).strip()]


def _read_input(path: str, context: Mapping[str, Any]) -> Any:
    match = TEMPLATE_PATTERN.fullmatch(path)
    value = get_path(context, match.group(1) if match else path)
    return None if value is MISSING else value


async def handle_merge(
    node_id: str,
    parameters: Dict[str, Any],
    context: Mapping[str, Any],
    *,
    caller_id: str,
    step: StepHandle,
    publish,
) -> Dict[str, Any]:
    """Combine named inputs: append, combine (position/key), multiplex or chooseBranch."""
    async with node_status(publish, status_channel(caller_id), node_id) as status:
        variable_name = require_variable_name(parameters)
        mode = parameters.get("mode") or "append"
        paths = _input_paths(parameters.get("inputs"))
        if not paths:
            raise ConfigurationError("Merge node needs at least one input variable", error_code="MERGE_INPUTS_MISSING")

        async def merge() -> Any:
            inputs = [_read_input(p, context) for p in paths]
            if mode == "append":
                return merge_append(inputs)
            if mode == "combine":
                if (parameters.get("combineBy") or "position") == "key":
                    key = parameters.get("keyField") or parameters.get("combineKey") or "id"
                    return merge_by_key(inputs, key)
                return merge_by_position(inputs)
            if mode == "multiplex":
                return merge_multiplex(inputs)
            if mode == "chooseBranch":
                return next((v for v in inputs if v is not None), None)
            raise ConfigurationError(f"Unknown merge mode: {mode}")

        merged = await step.run(f"merge-{node_id}", merge)
        status.extra["itemCount"] = len(merged) if isinstance(merged, list) else None
        return with_output(context, variable_name, merged)


# =============================================================================
# SPLIT
# =============================================================================

def split_in_batches(items: List[Any], size: int) -> List[List[Any]]:
    return [items[i:i + size] for i in range(0, len(items), size)]


def split_by_field(items: List[Any], field: str) -> List[List[Any]]:
    groups: Dict[str, List[Any]] = {}
    for item in items:
        value = get_path(item, field) if isinstance(item, dict) else MISSING
        key = "undefined" if value is MISSING or value in (None, "") else render(value)
        groups.setdefault(key, []).append(item)
    return list(groups.values())


def split_by_delimiter(text: str, delimiter: str) -> List[List[str]]:
    return [[piece.strip()] for piece in text.split(delimiter) if piece.strip()]


async def handle_split(
    node_id: str,
    parameters: Dict[str, Any],
    context: Mapping[str, Any],
    *,
    caller_id: str,
    step: StepHandle,
    publish,
) -> Dict[str, Any]:
    """Split one input into batches: splitInBatches, splitByField or splitByDelimiter."""
    async with node_status(publish, status_channel(caller_id), node_id) as status:
        variable_name = require_variable_name(parameters, default="split")
        mode = parameters.get("mode") or "splitInBatches"
        if mode not in ("splitInBatches", "splitByField", "splitByDelimiter"):
            raise ConfigurationError(f"Unknown split mode: {mode}")

        source = parameters.get("inputVariable")
        if source and TEMPLATE_PATTERN.fullmatch(str(source).strip()):
            value = _read_input(str(source).strip(), context)
        elif source:
            path = resolve_text(source, context).strip()
            value = _read_input(path, context) if path else None
        else:
            value = first_user_value(context)

        batch_size = to_number(parameters.get("batchSize", DEFAULT_BATCH_SIZE))
        batch_size = max(1, int(batch_size)) if batch_size is not None else DEFAULT_BATCH_SIZE

        async def split() -> List[List[Any]]:
            if mode == "splitByDelimiter":
                if not isinstance(value, str):
                    return [[value]]
                return split_by_delimiter(value, parameters.get("delimiter") or ",")
            if not isinstance(value, list):
                return [[value]]
            if mode == "splitByField":
                return split_by_field(value, parameters.get("field") or "type")
            return split_in_batches(value, batch_size)

        batches = await step.run(f"split-{node_id}", split)
        status.extra["batchCount"] = len(batches)

        return with_output(
            context, variable_name,
            {"batches": batches, "batchCount": len(batches), "mode": mode},
            **{SPLIT_BATCHES_KEY: batches, SPLIT_BATCH_COUNT_KEY: len(batches)},
        )


# =============================================================================
# LOOP
# =============================================================================

def loop_frame(items: List[Any], index: int, mode: str) -> Dict[str, Any]:
    """Per-iteration view exposed under the loop's variable name."""
    total = len(items)
    return {
        "items": items,
        "totalItems": total,
        "currentIndex": index,
        "currentItem": items[index] if 0 <= index < total else None,
        "isFirst": index == 0,
        "isLast": index == total - 1,
        "mode": mode,
    }


def _source_items(raw: Any, context: Mapping[str, Any]) -> List[Any]:
    """Resolve the forEach source: path/template, JSON array, CSV string or single value."""
    if isinstance(raw, list):
        return list(raw)
    if raw is None or raw == "":
        return []

    resolved = resolve_value(raw, context)
    if isinstance(resolved, list):
        return list(resolved)
    if isinstance(resolved, str):
        text = resolved.strip()
        looked_up = get_path(context, text) if text else MISSING
        if looked_up is not MISSING:
            return _as_list(looked_up)
        if text.startswith("["):
            try:
                parsed = orjson.loads(text)
            except orjson.JSONDecodeError:
                parsed = None
            if isinstance(parsed, list):
                return parsed
        if "," in text:
            return [piece.strip() for piece in text.split(",")]
        return [text] if text else []
    return [resolved]


async def handle_loop(
    node_id: str,
    parameters: Dict[str, Any],
    context: Mapping[str, Any],
    *,
    caller_id: str,
    step: StepHandle,
    publish,
    max_iterations_cap: int = DEFAULT_MAX_ITERATIONS,
) -> Dict[str, Any]:
    """Prepare loop items and expose the first iteration frame.

    forEach iterates ``sourceArray``; times iterates ``0..iterations-1``. The
    item count is capped at ``min(maxIterations, max_iterations_cap)``. When the
    workflow wires a ``loop`` body the graph runner re-binds the frame for each
    item; see services/execution/runner.py.
    """
    async with node_status(publish, status_channel(caller_id), node_id) as status:
        variable_name = require_variable_name(parameters, default="loop")
        mode = parameters.get("mode") or "forEach"
        if mode == "while":
            raise ConfigurationError("Loop mode 'while' is not supported", error_code="LOOP_MODE_UNSUPPORTED")
        if mode not in ("forEach", "times"):
            raise ConfigurationError(f"Unknown loop mode: {mode}")

        max_iterations = to_number(parameters.get("maxIterations", DEFAULT_MAX_ITERATIONS))
        if max_iterations is None or max_iterations < 1:
            raise ConfigurationError("maxIterations must be a positive number")
        cap = min(int(max_iterations), max_iterations_cap)

        if mode == "times":
            count = to_number(resolve_text(parameters.get("iterations", 1), context))
            if count is None or count < 0 or (isinstance(count, float) and not math.isfinite(count)):
                raise ConfigurationError("Iterations must be a non-negative number")
        else:
            count = None

        async def prepare() -> List[Any]:
            if mode == "times":
                items = list(range(min(int(count), cap)))
                if int(count) > cap:
                    logger.warning("Loop iterations capped", node_id=node_id, requested=int(count), cap=cap)
                return items
            items = _source_items(parameters.get("sourceArray"), context)
            if len(items) > cap:
                logger.warning("Loop items capped", node_id=node_id, requested=len(items), cap=cap)
            return items[:cap]

        items = await step.run(f"loop-execute-{node_id}", prepare)
        frame = loop_frame(items, 0, mode)
        status.extra.update(currentIndex=0, totalItems=len(items))

        return with_output(context, variable_name, frame, **{
            LOOP_DATA_KEY: {
                "nodeId": node_id,
                "variableName": variable_name,
                "items": items,
                "mode": mode,
                "collectResults": bool(parameters.get("collectResults", True)),
            },
        })


# =============================================================================
# SET
# =============================================================================

def coerce_field(raw: str, field_type: str, context: Mapping[str, Any]) -> Any:
    """Convert a resolved field value to its declared type."""
    if field_type == "number":
        number = to_number(raw)
        if number is None:
            try:
                number = float(raw)
            except (TypeError, ValueError):
                return 0
            if math.isnan(number):
                return 0
        if isinstance(number, float) and number.is_integer() and math.isfinite(number):
            return int(number)
        return number
    if field_type == "boolean":
        return raw in ("true", "1")
    if field_type == "json":
        try:
            return orjson.loads(raw)
        except orjson.JSONDecodeError:
            return raw
    if field_type == "expression":
        try:
            return evaluate_expression(raw, context)
        except ExpressionError as e:
            logger.debug("Set expression fell back to text", expression=raw, error=str(e))
            return raw
    return raw


async def handle_set(
    node_id: str,
    parameters: Dict[str, Any],
    context: Mapping[str, Any],
    *,
    caller_id: str,
    step: StepHandle,
    publish,
) -> Dict[str, Any]:
    """Assign fields (string|number|boolean|json|expression) into the context.

    With ``keepOnlySet`` the returned context holds exactly the assigned fields.
    """
    async with node_status(publish, status_channel(caller_id), node_id) as status:
        fields = parameters.get("fields") or []
        if not isinstance(fields, list):
            raise ConfigurationError("Fields must be a list")
        for field in fields:
            if not is_valid_variable_name(field.get("name")):
                raise ConfigurationError(
                    f"Invalid field name: {field.get('name')!r}",
                    error_code="INVALID_VARIABLE_NAME",
                    guidance="Field names must be identifiers and must not start with '__'.",
                )

        async def assign() -> Dict[str, Any]:
            assigned: Dict[str, Any] = {}
            for field in fields:
                raw = resolve_text(field.get("value", ""), context)
                assigned[field["name"]] = coerce_field(raw, field.get("type") or "string", context)
            return assigned

        assigned = await step.run(f"set-fields-{node_id}", assign)
        status.extra["fieldCount"] = len(assigned)

        if parameters.get("keepOnlySet"):
            return dict(assigned)
        return {**context, **assigned}
