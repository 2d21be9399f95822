"""Async database service with SQLModel and SQLAlchemy 2.0."""

import logging
from datetime import datetime, timezone
from typing import Dict, Any, List, Optional
from sqlmodel import SQLModel, select
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from contextlib import asynccontextmanager

from core.config import Settings
from core.logging import get_logger
from models.database import ScheduledWorkflow

logger = get_logger(__name__)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; everything stored here is UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _normalize(schedule: Optional[ScheduledWorkflow]) -> Optional[ScheduledWorkflow]:
    if schedule is not None:
        schedule.next_run_at = as_utc(schedule.next_run_at)
        schedule.last_run_at = as_utc(schedule.last_run_at)
        schedule.start_date = as_utc(schedule.start_date)
        schedule.end_date = as_utc(schedule.end_date)
    return schedule


class Database:
    """Async database service with SQLModel."""

    def __init__(self, settings: Settings):
        self.settings = settings
        self.engine = None
        self.async_session = None

    async def startup(self):
        """Initialize database connection and create tables."""
        try:
            logging.getLogger("aiosqlite").setLevel(logging.WARNING)
            logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)

            engine_kwargs: Dict[str, Any] = {"echo": self.settings.database_echo}
            # SQLite uses a static/singleton pool; pool sizing only applies to server databases
            if not self.settings.is_sqlite:
                engine_kwargs["pool_size"] = self.settings.database_pool_size
                engine_kwargs["max_overflow"] = self.settings.database_max_overflow

            self.engine = create_async_engine(self.settings.database_url, **engine_kwargs)

            self.async_session = async_sessionmaker(
                bind=self.engine,
                class_=AsyncSession,
                expire_on_commit=False
            )

            async with self.engine.begin() as conn:
                await conn.run_sync(SQLModel.metadata.create_all)

            logger.info("Database initialized successfully")

        except Exception as e:
            logger.error("Database startup failed", error=str(e))
            raise

    async def shutdown(self):
        """Close database connections."""
        if self.engine:
            await self.engine.dispose()
            logger.info("Database connections closed")

    @asynccontextmanager
    async def get_session(self):
        """Get async database session."""
        if not self.async_session:
            raise RuntimeError("Database not initialized")

        async with self.async_session() as session:
            try:
                yield session
            except Exception:
                await session.rollback()
                raise

    # ============================================================================
    # Scheduled Workflows
    # ============================================================================

    async def upsert_schedule(self, workflow_id: str, node_id: str,
                              values: Dict[str, Any]) -> ScheduledWorkflow:
        """Create or update the schedule keyed by (workflow_id, node_id)."""
        async with self.get_session() as session:
            stmt = select(ScheduledWorkflow).where(
                ScheduledWorkflow.workflow_id == workflow_id,
                ScheduledWorkflow.node_id == node_id,
            )
            result = await session.execute(stmt)
            schedule = result.scalar_one_or_none()

            if schedule is None:
                schedule = ScheduledWorkflow(workflow_id=workflow_id, node_id=node_id, **values)
                session.add(schedule)
            else:
                for key, value in values.items():
                    setattr(schedule, key, value)
                schedule.updated_at = datetime.now(timezone.utc)

            await session.commit()
            await session.refresh(schedule)
            logger.debug("Schedule saved", schedule_id=schedule.id, workflow_id=workflow_id, node_id=node_id)
            return _normalize(schedule)

    async def get_schedule(self, workflow_id: str, node_id: str) -> Optional[ScheduledWorkflow]:
        async with self.get_session() as session:
            stmt = select(ScheduledWorkflow).where(
                ScheduledWorkflow.workflow_id == workflow_id,
                ScheduledWorkflow.node_id == node_id,
            )
            result = await session.execute(stmt)
            return _normalize(result.scalar_one_or_none())

    async def get_schedule_by_id(self, schedule_id: int) -> Optional[ScheduledWorkflow]:
        async with self.get_session() as session:
            return _normalize(await session.get(ScheduledWorkflow, schedule_id))

    async def list_enabled_schedules(self) -> List[ScheduledWorkflow]:
        async with self.get_session() as session:
            stmt = select(ScheduledWorkflow).where(ScheduledWorkflow.enabled == True)  # noqa: E712
            result = await session.execute(stmt)
            return [_normalize(s) for s in result.scalars().all()]

    async def update_schedule(self, schedule_id: int, **values: Any) -> Optional[ScheduledWorkflow]:
        """Patch selected columns; returns None when the schedule no longer exists."""
        async with self.get_session() as session:
            schedule = await session.get(ScheduledWorkflow, schedule_id)
            if schedule is None:
                return None
            for key, value in values.items():
                setattr(schedule, key, value)
            schedule.updated_at = datetime.now(timezone.utc)
            await session.commit()
            await session.refresh(schedule)
            return _normalize(schedule)

    async def delete_schedule(self, schedule_id: int) -> bool:
        async with self.get_session() as session:
            schedule = await session.get(ScheduledWorkflow, schedule_id)
            if schedule is None:
                return False
            await session.delete(schedule)
            await session.commit()
            logger.debug("Schedule deleted", schedule_id=schedule_id)
            return True
