"""Dependency injection container for the application."""

from dependency_injector import containers, providers

from core.config import Settings
from core.database import Database
from services.scheduler import TimerService
from services.schedules import ScheduleService, ScheduleStore
from services.status_broadcaster import StatusBroadcaster
from services.workflow import WorkflowRegistry, WorkflowService


class Container(containers.DeclarativeContainer):
    """Application dependency injection container."""

    # Settings
    settings = providers.Singleton(
        Settings,
    )

    # Database
    database = providers.Singleton(
        Database,
        settings=settings
    )

    schedule_store = providers.Singleton(
        ScheduleStore,
        database=database
    )

    # Realtime status fan-out (the node status publisher)
    broadcaster = providers.Singleton(
        StatusBroadcaster
    )

    # APScheduler-backed one-shot timers
    timer_service = providers.Singleton(
        TimerService
    )

    # Services
    workflow_registry = providers.Singleton(
        WorkflowRegistry
    )

    workflow_service = providers.Singleton(
        WorkflowService,
        settings=settings,
        registry=workflow_registry,
        broadcaster=broadcaster
    )

    schedule_service = providers.Singleton(
        ScheduleService,
        store=schedule_store,
        timer=timer_service,
        launcher=workflow_service.provided.launch
    )


# Global container instance
container = Container()
