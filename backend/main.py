"""FastAPI application entry point for the workflow coordination backend.

This module initializes the FastAPI application with all middleware,
routers, and event handlers configured.

Usage:
    uv run uvicorn main:app --reload
"""

import contextlib
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from agents.runner import load_agent_runner
from agents.tools import ToolExecutor
from api.routes import BackendServices, router, set_services
from api.websocket import websocket_router
from config import configure_logging, settings
from coordination import FanInReconciler, FanOutDispatcher, SubtaskWatchdog
from diffs import GitDiffSource
from events import get_event_bus
from models.database import ProjectStore
from session_manager import SessionManager
from workflow_orchestrator import WorkflowOrchestrator

# Configure structured logging
configure_logging(settings.log_level, settings.log_format)

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager for startup and shutdown events.

    Wires the store, session registry, coordination engine and orchestrator,
    and runs the subtask watchdog for the lifetime of the app.

    Args:
        app: The FastAPI application instance.

    Yields:
        None during application runtime.
    """
    # Startup
    logger.info(
        "application_starting",
        backend_port=settings.backend_port,
        log_level=settings.log_level,
        database_path=settings.database_path,
    )

    store = ProjectStore(settings.database_path, settings.database_busy_timeout_seconds)
    await store.init()

    event_bus = get_event_bus()
    runner = load_agent_runner(settings.agent_runner)
    session_manager = SessionManager(store, event_bus, runner)

    reconciler = FanInReconciler(store, session_manager, event_bus)
    dispatcher = FanOutDispatcher(
        store,
        session_manager,
        reconciler,
        event_bus,
        diff_source=GitDiffSource(timeout_seconds=settings.git_diff_timeout_seconds),
        project_root=settings.project_root,
        branch_for=settings.workflow_branch,
    )
    tool_executor = ToolExecutor(
        dispatcher,
        reconciler,
        max_parallel_tasks=settings.max_parallel_tasks,
    )
    orchestrator = WorkflowOrchestrator(store, session_manager, event_bus)

    set_services(
        BackendServices(
            store=store,
            session_manager=session_manager,
            orchestrator=orchestrator,
            tool_executor=tool_executor,
            project_root=settings.project_root,
        )
    )

    # Store on app.state for access
    app.state.store = store
    app.state.session_manager = session_manager
    app.state.orchestrator = orchestrator

    watchdog = SubtaskWatchdog(
        store,
        reconciler,
        liveness_seconds=settings.subtask_liveness_seconds,
        interval_seconds=settings.watchdog_interval_seconds,
    )
    watchdog.start()
    app.state.watchdog = watchdog

    logger.info("resources_initialized")
    logger.info("application_started")

    yield

    # Shutdown
    logger.info("application_shutting_down")

    # Stop the watchdog before sessions go away
    with contextlib.suppress(Exception):
        await app.state.watchdog.stop()

    await app.state.session_manager.cleanup_all()

    logger.info("application_shutdown_complete")


# Create FastAPI application
app = FastAPI(
    title="Workflow Coordination Backend",
    description="Backend API that drives agent workflows through gated stages "
    "and fans review work out to parallel sub-agents.",
    version="0.1.0",
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
)

# Configure CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["*"],
    expose_headers=["*"],
)

# Include HTTP routes
app.include_router(router, tags=["workflows"])

# Include WebSocket routes
app.include_router(websocket_router, tags=["websocket"])


@app.get("/", include_in_schema=False)
async def root() -> dict[str, str]:
    """Root endpoint that points at the API documentation.

    Returns:
        A welcome message with documentation URL.
    """
    return {
        "message": "Workflow Coordination Backend",
        "docs": "/docs",
        "health": "/health",
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=settings.backend_port,
        reload=True,
        log_level=settings.log_level.lower(),
    )
