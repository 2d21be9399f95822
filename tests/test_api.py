"""Route tests with the container's services overridden."""

import pytest
from dependency_injector import providers
from fastapi import FastAPI
from fastapi.testclient import TestClient

from core.container import container
from routers import workflow as workflow_router
from services.status_broadcaster import StatusBroadcaster
from services.workflow import WorkflowRegistry, WorkflowService


GRAPH = {
    "id": "greet",
    "name": "Greeter",
    "nodes": [
        {"id": "start", "type": "manualTrigger", "data": {}},
        {"id": "hello", "type": "set", "data": {"fields": [{"name": "greeting", "value": "hi {{name}}"}]}},
    ],
    "edges": [{"source": "start", "target": "hello"}],
}


@pytest.fixture
def client(memory_settings):
    service = WorkflowService(memory_settings, WorkflowRegistry(), StatusBroadcaster())
    app = FastAPI()
    app.include_router(workflow_router.router)
    with container.workflow_service.override(providers.Object(service)):
        yield TestClient(app)


def test_register_and_execute(client):
    response = client.post("/api/workflows", json=GRAPH)
    assert response.json() == {"success": True, "workflowId": "greet", "nodes": 2}

    assert client.get("/api/workflows").json()["workflows"] == [{"id": "greet", "name": "Greeter", "nodes": 2}]

    result = client.post("/api/workflows/greet/execute", json={"initialData": {"name": "Ada"}}).json()
    assert result["status"] == "completed"
    assert result["context"]["greeting"] == "hi Ada"


def test_inline_execution_reports_failure(client):
    graph = {
        "nodes": [{"id": "wait", "type": "delayWait", "data": {"amount": -1}}],
        "edges": [],
    }
    result = client.post("/api/workflows/execute", json={"workflow": graph, "callerId": "u1"}).json()

    assert result["status"] == "failed"
    assert result["failed_node"] == "wait"
    assert result["error"]["errorCode"] == "INVALID_DELAY"


def test_inline_execution_requires_workflow(client):
    assert client.post("/api/workflows/execute", json={}).status_code == 400
