"""
Flowline workflow engine API.

FastAPI app with dependency injection: workflow registration and execution,
schedule management and real-time node status over WebSocket.
"""

from datetime import datetime
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import ORJSONResponse

from core.container import container
from core.logging import configure_logging, get_logger
from routers import schedules, websocket, workflow
from services.execution.errors import (
    ConfigurationError,
    ExecutorNotFoundError,
    ScheduleNotFoundError,
    ScheduleValidationError,
    WorkflowCycleError,
)
from services.workflow import WorkflowNotFoundError

# Initialize settings and logging
settings = container.settings()
configure_logging(settings)
logger = get_logger(__name__)


async def _start_temporal(app: FastAPI) -> None:
    """Connect to Temporal and run an in-process worker."""
    from services.temporal import TemporalClientWrapper, TemporalExecutor
    from services.temporal.worker import TemporalWorkerManager

    wrapper = TemporalClientWrapper.from_settings(settings)
    client = await wrapper.connect()
    workflow_service = container.workflow_service()

    worker = TemporalWorkerManager(
        client,
        workflow_service.node_executor,
        task_queue=settings.temporal_task_queue,
        publish=container.broadcaster().publish,
    )
    await worker.start()
    workflow_service.set_temporal_executor(TemporalExecutor(
        client,
        task_queue=settings.temporal_task_queue,
        activity_timeout=settings.temporal_activity_timeout,
        delay_max_seconds=settings.delay_max_seconds,
    ))
    app.state.temporal_client = wrapper
    app.state.temporal_worker = worker


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan management."""
    logger.info("Starting Flowline services")

    container.wire(modules=[
        "routers.workflow",
        "routers.schedules",
        "routers.websocket",
    ])

    await container.database().startup()

    app.state.temporal_worker = None
    if settings.temporal_enabled:
        await _start_temporal(app)

    # Timers, then re-arm every enabled schedule
    timer_service = container.timer_service()
    timer_service.start()
    await container.schedule_service().restore()

    logger.info("Services started successfully", temporal=settings.temporal_enabled)
    yield

    timer_service.shutdown()
    await container.workflow_service().shutdown()
    if app.state.temporal_worker is not None:
        await app.state.temporal_worker.stop()
        await app.state.temporal_client.disconnect()
    await container.broadcaster().drain()
    await container.database().shutdown()
    logger.info("Services shutdown complete")


# Create FastAPI app
app = FastAPI(
    title="Flowline Workflow Engine",
    version="1.0.0",
    description="Durable workflow execution with control-flow nodes and recurring schedules",
    lifespan=lifespan,
    default_response_class=ORJSONResponse
)


def _error_response(status_code: int, exc: Exception, error_code: str) -> ORJSONResponse:
    return ORJSONResponse(
        status_code=status_code,
        content={"success": False, "error": str(exc), "errorCode": error_code},
    )


@app.exception_handler(ScheduleValidationError)
async def schedule_validation_handler(request: Request, exc: ScheduleValidationError):
    return _error_response(status.HTTP_400_BAD_REQUEST, exc, "INVALID_SCHEDULE")


@app.exception_handler(ConfigurationError)
async def configuration_error_handler(request: Request, exc: ConfigurationError):
    return _error_response(status.HTTP_400_BAD_REQUEST, exc, exc.error_code)


@app.exception_handler(WorkflowCycleError)
async def workflow_cycle_handler(request: Request, exc: WorkflowCycleError):
    return _error_response(status.HTTP_400_BAD_REQUEST, exc, "WORKFLOW_CYCLE")


@app.exception_handler(ExecutorNotFoundError)
async def executor_not_found_handler(request: Request, exc: ExecutorNotFoundError):
    return _error_response(status.HTTP_400_BAD_REQUEST, exc, "UNKNOWN_NODE_TYPE")


@app.exception_handler(ScheduleNotFoundError)
async def schedule_not_found_handler(request: Request, exc: ScheduleNotFoundError):
    return _error_response(status.HTTP_404_NOT_FOUND, exc, "SCHEDULE_NOT_FOUND")


@app.exception_handler(WorkflowNotFoundError)
async def workflow_not_found_handler(request: Request, exc: WorkflowNotFoundError):
    return _error_response(status.HTTP_404_NOT_FOUND, exc, "WORKFLOW_NOT_FOUND")


logger.info("Configuring CORS middleware", origins=settings.cors_origins)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(workflow.router)
app.include_router(schedules.router)
app.include_router(websocket.router)


@app.get("/health")
async def health_check():
    """Health check."""
    return {
        "status": "OK",
        "service": "flowline",
        "version": "1.0.0",
        "environment": "development" if settings.is_development else "production",
        "temporal_enabled": settings.temporal_enabled,
        "websocket_connections": container.broadcaster().connection_count,
        "timestamp": datetime.now().isoformat()
    }


if __name__ == "__main__":
    import uvicorn
    logger.info("Starting Flowline services", host=settings.host, port=settings.port, debug=settings.debug)
    uvicorn.run(
        "main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
    )
