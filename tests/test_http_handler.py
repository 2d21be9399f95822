"""Tests for the HTTP Request node using httpx.MockTransport."""

import json

import httpx
import pytest

from services.execution.errors import NodeExecutionError
from services.execution.steps import StepJournal, LocalStepHandle
from services.handlers.http import handle_http_request


class RecordingTransport(httpx.MockTransport):
    def __init__(self, status_code=200, payload=None):
        self.requests = []
        self.status_code = status_code
        self.payload = payload if payload is not None else {"ok": True}
        super().__init__(self._handle)

    def _handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return httpx.Response(self.status_code, json=self.payload)


async def run(parameters, context, publish, step, transport):
    return await handle_http_request("http-1", parameters, context, caller_id="tester",
                                     step=step, publish=publish, transport=transport)


async def test_templated_post(publish, step):
    transport = RecordingTransport(payload={"id": 42})
    out = await run({
        "method": "post",
        "url": "https://api.example.com/users/{{user.id}}",
        "headers": '{"X-Token": "{{token}}"}',
        "body": '{"name": "{{user.name}}"}',
    }, {"user": {"id": 7, "name": "Ada"}, "token": "abc"}, publish, step, transport)

    request = transport.requests[0]
    assert request.method == "POST"
    assert str(request.url) == "https://api.example.com/users/7"
    assert request.headers["X-Token"] == "abc"
    assert json.loads(request.content) == {"name": "Ada"}

    assert out["httpResponse"]["status"] == 200
    assert out["httpResponse"]["data"] == {"id": 42}
    assert publish.statuses("http-1") == ["loading", "success"]


async def test_replayed_request_is_not_sent_again(publish):
    transport = RecordingTransport()
    journal = StepJournal()
    params = {"url": "https://api.example.com/ping", "variableName": "ping"}

    first = await run(params, {}, publish, LocalStepHandle(journal), transport)
    second = await run(params, {}, publish, LocalStepHandle(journal), transport)

    assert len(transport.requests) == 1
    assert first["ping"] == second["ping"]


async def test_error_status_fails_node(publish, step):
    transport = RecordingTransport(status_code=404, payload={"error": "missing"})
    with pytest.raises(NodeExecutionError) as exc_info:
        await run({"url": "https://api.example.com/nope"}, {}, publish, step, transport)

    assert exc_info.value.error.error_code == "HTTP_ERROR"
    assert publish.statuses("http-1") == ["loading", "error"]


@pytest.mark.parametrize("parameters, code", [
    ({}, "URL_MISSING"),
    ({"url": "ftp://example.com"}, "INVALID_URL"),
    ({"url": "https://example.com", "method": "TRACE"}, "INVALID_METHOD"),
    ({"url": "https://example.com", "headers": "[1, 2]"}, "INVALID_HEADERS"),
])
async def test_configuration_errors_before_sending(publish, step, parameters, code):
    transport = RecordingTransport()
    with pytest.raises(NodeExecutionError) as exc_info:
        await run(parameters, {}, publish, step, transport)

    assert exc_info.value.error.error_code == code
    assert transport.requests == []
