"""Condition evaluation for the Filter/Conditional node.

Supported operators:
- equals / not_equals: numeric when both sides are numbers, string otherwise
- contains / not_contains / starts_with / ends_with: case-insensitive text
- greater_than / less_than / greater_than_or_equals / less_than_or_equals: numeric only
- is_empty / is_not_empty: None, "", [] and {} are empty
- is_true: True, "true", "1"
- is_false: False, "false", "0", None
- regex_match: case-insensitive search
"""

import re
from typing import Any, Dict, List, Mapping

from core.logging import get_logger
from services.execution.context import MISSING, get_path
from services.execution.errors import ConfigurationError
from services.expression import to_number
from services.parameter_resolver import TEMPLATE_PATTERN, render, resolve_text

logger = get_logger(__name__)

# Type alias for condition dict
ConditionDict = Dict[str, Any]

_QUOTED = re.compile(r'^(?:"(.*)"|\'(.*)\')$', re.DOTALL)


def resolve_field(field: Any, context: Mapping[str, Any]) -> Any:
    """Resolve a condition field against the context.

    ``{{a.b}}`` and ``a.b`` are context paths. A path that does not resolve is
    read as a literal: number, true/false, null or a quoted string.
    """
    if not isinstance(field, str):
        return field

    text = field.strip()
    match = TEMPLATE_PATTERN.fullmatch(text)
    path = match.group(1) if match else text

    value = get_path(context, path)
    if value is not MISSING:
        return value
    return parse_literal(path)


def parse_literal(text: str) -> Any:
    if text == 'true':
        return True
    if text == 'false':
        return False
    if text in ('null', 'undefined', ''):
        return None
    number = to_number(text)
    if number is not None:
        return number
    quoted = _QUOTED.match(text)
    if quoted:
        return quoted.group(1) if quoted.group(1) is not None else quoted.group(2)
    return text


def _require_numbers(operator: str, actual: Any, target: Any) -> tuple:
    left, right = to_number(actual), to_number(target)
    if left is None or right is None:
        raise ConfigurationError(
            f"Operator '{operator}' requires numeric values (got {render(actual)!r} and {render(target)!r})",
            error_code="INVALID_CONDITION",
            guidance="Numeric comparisons only work on numbers. Check the field and value of this condition.",
        )
    return left, right


def _is_empty(value: Any) -> bool:
    return value is None or value == '' or (isinstance(value, (list, tuple, dict)) and len(value) == 0)


def _evaluate_operator(operator: str, actual: Any, target: Any) -> bool:
    """Evaluate a single operator comparison."""
    if operator in ('equals', 'not_equals'):
        left, right = to_number(actual), to_number(target)
        same = (left == right) if left is not None and right is not None else render(actual) == render(target)
        return same if operator == 'equals' else not same

    if operator in ('contains', 'not_contains', 'starts_with', 'ends_with'):
        haystack, needle = render(actual).lower(), render(target).lower()
        if operator == 'contains':
            return needle in haystack
        if operator == 'not_contains':
            return needle not in haystack
        if operator == 'starts_with':
            return haystack.startswith(needle)
        return haystack.endswith(needle)

    if operator == 'greater_than':
        left, right = _require_numbers(operator, actual, target)
        return left > right
    if operator == 'less_than':
        left, right = _require_numbers(operator, actual, target)
        return left < right
    if operator == 'greater_than_or_equals':
        left, right = _require_numbers(operator, actual, target)
        return left >= right
    if operator == 'less_than_or_equals':
        left, right = _require_numbers(operator, actual, target)
        return left <= right

    if operator == 'is_empty':
        return _is_empty(actual)
    if operator == 'is_not_empty':
        return not _is_empty(actual)
    if operator == 'is_true':
        return actual is True or actual in ('true', '1') or (to_number(actual) == 1 and not isinstance(actual, str))
    if operator == 'is_false':
        return actual is False or actual is None or actual in ('false', '0') or (
            to_number(actual) == 0 and not isinstance(actual, str))

    if operator == 'regex_match':
        try:
            return re.search(render(target), render(actual), re.IGNORECASE) is not None
        except re.error as e:
            raise ConfigurationError(
                f"Invalid regex pattern: {render(target)} ({e})",
                error_code="INVALID_REGEX",
                guidance="The regular expression in this condition could not be compiled.",
            ) from e

    raise ConfigurationError(f"Unknown operator: {operator}", error_code="INVALID_CONDITION")


def evaluate_condition(condition: ConditionDict, context: Mapping[str, Any]) -> Dict[str, Any]:
    """Evaluate one condition; returns the per-condition result record."""
    field = condition.get('field', '')
    operator = condition.get('operator', 'equals')
    raw_value = condition.get('value', '')

    field_value = resolve_field(field, context)
    value = resolve_text(raw_value, context) if raw_value is not None else ''
    result = _evaluate_operator(operator, field_value, value)

    logger.debug("Condition evaluated", field=field, operator=operator, result=result)
    return {
        "field": field,
        "operator": operator,
        "value": value,
        "fieldValue": field_value,
        "result": result,
    }


def evaluate_conditions(conditions: List[ConditionDict], context: Mapping[str, Any],
                        logic: str = "AND") -> tuple:
    """Evaluate every condition and combine them.

    Returns:
        (passed, condition_results). An empty list passes.
    """
    results = [evaluate_condition(c, context) for c in conditions or []]
    if not results:
        return True, results
    if (logic or "AND").upper() == "OR":
        return any(r["result"] for r in results), results
    return all(r["result"] for r in results), results

