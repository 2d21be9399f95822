"""Workflow registration and execution routes."""

from typing import Any, Dict

from fastapi import APIRouter, Depends, HTTPException

from core.container import container
from core.logging import get_logger
from models.workflow import ExecuteWorkflowRequest, WorkflowDefinition
from services.workflow import WorkflowService

logger = get_logger(__name__)
router = APIRouter(prefix="/api/workflows", tags=["workflows"])


@router.post("")
async def register_workflow(
    definition: WorkflowDefinition,
    workflow_service: WorkflowService = Depends(lambda: container.workflow_service())
):
    """Register (or replace) a workflow definition."""
    workflow_service.registry.register(definition)
    return {"success": True, "workflowId": definition.id, "nodes": len(definition.nodes)}


@router.get("")
async def list_workflows(
    workflow_service: WorkflowService = Depends(lambda: container.workflow_service())
):
    return {
        "workflows": [
            {"id": w.id, "name": w.name, "nodes": len(w.nodes)}
            for w in workflow_service.registry.list()
        ]
    }


@router.post("/execute")
async def execute_inline_workflow(
    request: ExecuteWorkflowRequest,
    workflow_service: WorkflowService = Depends(lambda: container.workflow_service())
) -> Dict[str, Any]:
    """Execute a workflow definition passed in the request body."""
    if request.workflow is None:
        raise HTTPException(status_code=400, detail="workflow is required")

    logger.info("Inline workflow execution requested", workflow_id=request.workflow.id,
                caller_id=request.caller_id)
    result = await workflow_service.execute_workflow(request.workflow, request.initial_data,
                                                     request.caller_id)
    return result.to_dict()


@router.post("/{workflow_id}/execute")
async def execute_registered_workflow(
    workflow_id: str,
    request: ExecuteWorkflowRequest,
    workflow_service: WorkflowService = Depends(lambda: container.workflow_service())
) -> Dict[str, Any]:
    """Execute a registered workflow."""
    logger.info("Workflow execution requested", workflow_id=workflow_id, caller_id=request.caller_id)
    result = await workflow_service.execute_registered(workflow_id, request.initial_data,
                                                       request.caller_id)
    return result.to_dict()
