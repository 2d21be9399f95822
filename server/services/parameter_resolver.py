"""Parameter Resolver - Template variable resolution.

Resolves ``{{path}}`` and ``{{json path}}`` tokens in node parameters against
the execution context. Resolution is pure and total: it never raises, an
unresolved path becomes the empty string, and the resolution is traced at
debug level (raw template, resolved text, available keys) for diagnostics.
"""

import re
from typing import Any, Dict, Mapping

import orjson

from core.logging import get_logger
from services.execution.context import MISSING, get_path, is_reserved_key

logger = get_logger(__name__)

# Compiled regex for template matching
TEMPLATE_PATTERN = re.compile(r'\{\{\s*([^{}]*?)\s*\}\}')
JSON_HELPER = re.compile(r'^json\s+(.+)$', re.DOTALL)


def render(value: Any) -> str:
    """String representation used when a value is spliced into text."""
    if value is None or value is MISSING:
        return ''
    if isinstance(value, bool):
        return 'true' if value else 'false'
    if isinstance(value, (dict, list, tuple)):
        return orjson.dumps(value, default=str).decode()
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def render_json(value: Any) -> str:
    if value is None or value is MISSING:
        return ''
    return orjson.dumps(value, default=str).decode()


def _lookup(expression: str, context: Mapping[str, Any]) -> tuple:
    """Return (value, is_json) for one token body."""
    json_match = JSON_HELPER.match(expression)
    if json_match:
        return get_path(context, json_match.group(1).strip()), True
    return get_path(context, expression), False


def _trace(template: str, resolved: str, context: Mapping[str, Any], unresolved: list) -> None:
    logger.debug(
        "template_resolved",
        template=template,
        resolved=resolved,
        available_keys=[k for k in context.keys() if not is_reserved_key(k)],
        unresolved=unresolved or None,
    )


def resolve_text(template: Any, context: Mapping[str, Any]) -> str:
    """Resolve every token in ``template`` and always return text."""
    if template is None:
        return ''
    if not isinstance(template, str):
        return render(template)
    if '{{' not in template:
        return template

    unresolved = []

    def substitute(match: "re.Match") -> str:
        value, as_json = _lookup(match.group(1), context)
        if value is MISSING:
            unresolved.append(match.group(1))
            return ''
        return render_json(value) if as_json else render(value)

    try:
        resolved = TEMPLATE_PATTERN.sub(substitute, template)
    except (TypeError, ValueError, orjson.JSONEncodeError) as e:
        logger.warning("Template resolution failed, keeping raw text", template=template, error=str(e))
        return template

    _trace(template, resolved, context, unresolved)
    return resolved


def resolve_value(value: Any, context: Mapping[str, Any]) -> Any:
    """Resolve templates while preserving type for single-token strings.

    ``"{{items}}"`` yields the list itself; any other templated string is text.
    """
    if isinstance(value, str) and '{{' in value:
        match = TEMPLATE_PATTERN.fullmatch(value.strip())
        if match and not JSON_HELPER.match(match.group(1)):
            resolved = get_path(context, match.group(1))
            if resolved is not MISSING:
                return resolved
        return resolve_text(value, context)
    if isinstance(value, dict):
        return {k: resolve_value(v, context) for k, v in value.items()}
    if isinstance(value, list):
        return [resolve_value(item, context) for item in value]
    return value


class ParameterResolver:
    """Resolves template variables in node parameters against one context."""

    def __init__(self, context: Mapping[str, Any]):
        self.context = context

    def text(self, template: Any) -> str:
        return resolve_text(template, self.context)

    def value(self, value: Any) -> Any:
        return resolve_value(value, self.context)

    def resolve(self, parameters: Dict[str, Any], *fields: str) -> Dict[str, Any]:
        """Resolve ``fields`` (all top-level fields when none given) recursively."""
        names = fields or tuple(parameters.keys())
        template_params = [k for k in names if isinstance(parameters.get(k), str) and '{{' in parameters[k]]
        if template_params:
            logger.debug("Resolving templates", params_with_templates=template_params)
        return {
            k: (resolve_value(v, self.context) if k in names else v)
            for k, v in parameters.items()
        }
