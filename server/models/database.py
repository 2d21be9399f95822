"""SQLModel database models and tables."""

from datetime import datetime, timezone as dt_timezone
from typing import Optional, Dict, Any
from sqlmodel import SQLModel, Field, Column, DateTime, JSON
from sqlalchemy import UniqueConstraint, func


class ScheduledWorkflow(SQLModel, table=True):
    """Recurring trigger configuration for one schedule node of a workflow."""

    __tablename__ = "scheduled_workflows"
    __table_args__ = (UniqueConstraint("workflow_id", "node_id", name="uq_schedule_workflow_node"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    workflow_id: str = Field(index=True, max_length=255)
    node_id: str = Field(max_length=255)
    user_id: str = Field(default="default", index=True, max_length=255)
    schedule_type: str = Field(max_length=20)
    timezone: str = Field(default="UTC", max_length=64)
    # Type-specific fields: intervalValue/intervalUnit, hour/minute, daysOfWeek,
    # dayOfMonth, cronExpression
    config: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))
    enabled: bool = Field(default=True, index=True)
    next_run_at: Optional[datetime] = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    last_run_at: Optional[datetime] = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    start_date: Optional[datetime] = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    end_date: Optional[datetime] = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(dt_timezone.utc),
        sa_column=Column(DateTime(timezone=True), server_default=func.now())
    )
    updated_at: datetime = Field(
        default_factory=lambda: datetime.now(dt_timezone.utc),
        sa_column=Column(DateTime(timezone=True), onupdate=func.now())
    )

    def to_schedule_config(self) -> Dict[str, Any]:
        """Flatten the row into the mapping consumed by calculate_next_run_at."""
        return {
            **(self.config or {}),
            "scheduleType": self.schedule_type,
            "timezone": self.timezone,
            "startDate": self.start_date,
            "endDate": self.end_date,
        }

    def to_dict(self) -> Dict[str, Any]:
        def iso(value: Optional[datetime]) -> Optional[str]:
            return value.isoformat() if value else None

        return {
            "id": self.id,
            "workflowId": self.workflow_id,
            "nodeId": self.node_id,
            "userId": self.user_id,
            "scheduleType": self.schedule_type,
            "timezone": self.timezone,
            "config": self.config or {},
            "enabled": self.enabled,
            "nextRunAt": iso(self.next_run_at),
            "lastRunAt": iso(self.last_run_at),
            "startDate": iso(self.start_date),
            "endDate": iso(self.end_date),
        }
