"""Schedule management routes."""

from typing import Any, Dict

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from core.container import container
from core.logging import get_logger
from services.schedules import ScheduleService

logger = get_logger(__name__)
router = APIRouter(prefix="/api/schedules", tags=["schedules"])


class ScheduleSaveRequest(BaseModel):
    """Schedule fields as the editor sends them (camelCase, type-specific extras allowed)."""
    model_config = {"extra": "allow", "populate_by_name": True}

    scheduleType: str
    timezone: str = "UTC"
    userId: str = Field(default="default")


class ScheduleToggleRequest(BaseModel):
    enabled: bool


@router.put("/{workflow_id}/{node_id}")
async def save_schedule(
    workflow_id: str,
    node_id: str,
    request: ScheduleSaveRequest,
    schedule_service: ScheduleService = Depends(lambda: container.schedule_service())
) -> Dict[str, Any]:
    """Create or update the schedule of a schedule trigger node."""
    config = request.model_dump(exclude={"userId"})
    schedule = await schedule_service.save_schedule(request.userId, workflow_id, node_id, config)
    return {"success": True, "schedule": schedule.to_dict()}


@router.get("/{workflow_id}/{node_id}")
async def get_schedule(
    workflow_id: str,
    node_id: str,
    schedule_service: ScheduleService = Depends(lambda: container.schedule_service())
) -> Dict[str, Any]:
    schedule = await schedule_service.get_schedule(workflow_id, node_id)
    if schedule is None:
        raise HTTPException(status_code=404, detail="Schedule not found")
    return {"schedule": schedule.to_dict()}


@router.post("/{schedule_id}/toggle")
async def toggle_schedule(
    schedule_id: int,
    request: ScheduleToggleRequest,
    schedule_service: ScheduleService = Depends(lambda: container.schedule_service())
) -> Dict[str, Any]:
    schedule = await schedule_service.toggle_schedule(schedule_id, request.enabled)
    return {"success": True, "schedule": schedule.to_dict()}


@router.delete("/{schedule_id}")
async def delete_schedule(
    schedule_id: int,
    schedule_service: ScheduleService = Depends(lambda: container.schedule_service())
) -> Dict[str, Any]:
    await schedule_service.delete_schedule(schedule_id)
    return {"success": True}
