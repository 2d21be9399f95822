"""HTTP node handler - HTTP Request."""

import json
from typing import Any, Dict, Mapping

import httpx

from core.logging import get_logger
from services.execution.context import require_variable_name, with_output
from services.execution.errors import ConfigurationError
from services.execution.status import node_status, status_channel
from services.execution.steps import StepHandle
from services.expression import to_number
from services.parameter_resolver import ParameterResolver

logger = get_logger(__name__)

BODY_METHODS = ('POST', 'PUT', 'PATCH', 'DELETE')
SUPPORTED_METHODS = ('GET', 'HEAD', 'OPTIONS') + BODY_METHODS


def _parse_headers(raw: Any) -> Dict[str, str]:
    if isinstance(raw, dict):
        return {str(k): str(v) for k, v in raw.items()}
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"Headers must be a JSON object: {e.msg}", error_code="INVALID_HEADERS") from e
    if not isinstance(parsed, dict):
        raise ConfigurationError("Headers must be a JSON object", error_code="INVALID_HEADERS")
    return {str(k): str(v) for k, v in parsed.items()}


async def handle_http_request(
    node_id: str,
    parameters: Dict[str, Any],
    context: Mapping[str, Any],
    *,
    caller_id: str,
    step: StepHandle,
    publish,
    transport: httpx.AsyncBaseTransport = None,
) -> Dict[str, Any]:
    """Handle HTTP request node execution.

    The request runs inside the ``http-request-{node_id}`` durable step, so a
    replayed run reuses the recorded response instead of sending again.

    Args:
        node_id: The node ID
        parameters: method, url, headers, body, timeout, variableName (all templated)
        context: Execution context

    Returns:
        New context with ``{status, data, headers, url, method}`` under the
        variable name.
    """
    async with node_status(publish, status_channel(caller_id), node_id) as status:
        variable_name = require_variable_name(parameters, default="httpResponse")
        resolved = ParameterResolver(context).resolve(parameters, 'method', 'url', 'headers', 'body', 'timeout')

        method = str(resolved.get('method') or 'GET').upper()
        url = str(resolved.get('url') or '').strip()
        if not url:
            raise ConfigurationError("URL is required", error_code="URL_MISSING")
        if not url.startswith(('http://', 'https://')):
            raise ConfigurationError(f"URL must start with http:// or https:// (got {url!r})",
                                     error_code="INVALID_URL")
        if method not in SUPPORTED_METHODS:
            raise ConfigurationError(f"Unsupported HTTP method: {method}", error_code="INVALID_METHOD")
        headers = _parse_headers(resolved.get('headers'))
        timeout = to_number(resolved.get('timeout', 30)) or 30
        body = resolved.get('body')

        async def send() -> Dict[str, Any]:
            request_kwargs: Dict[str, Any] = {'headers': headers}
            if method in BODY_METHODS and body not in (None, ''):
                if isinstance(body, (dict, list)):
                    request_kwargs['json'] = body
                else:
                    try:
                        request_kwargs['json'] = json.loads(body)
                    except (TypeError, json.JSONDecodeError):
                        request_kwargs['content'] = str(body)

            logger.info("[HTTP Request] Executing", node_id=node_id, method=method, url=url)
            async with httpx.AsyncClient(timeout=float(timeout), transport=transport) as client:
                response = await client.request(method, url, **request_kwargs)
                response.raise_for_status()

            try:
                data = response.json()
            except ValueError:
                data = response.text

            return {
                "status": response.status_code,
                "data": data,
                "headers": dict(response.headers),
                "url": str(response.url),
                "method": method,
            }

        result = await step.run(f"http-request-{node_id}", send)
        status.extra["statusCode"] = result["status"]
        return with_output(context, variable_name, result)
