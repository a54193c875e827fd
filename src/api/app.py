"""FastAPI application factory."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

from fastapi import FastAPI

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from fastapi import APIRouter
from fastapi.middleware.cors import CORSMiddleware

from src.api.event_bus import WorkflowEventBroadcaster
from src.config.settings import Settings, get_settings
from src.db.store import WorkflowStore
from src.services.audit import WorkflowAuditRecorder
from src.services.workflow_manager import SchedulingWorkflowManager
from src.shared.types import StoreBackend

logger = logging.getLogger(__name__)


def build_store(settings: Settings) -> WorkflowStore:
    """Create the workflow store selected by settings.

    Args:
        settings: Application settings.

    Returns:
        Postgres-backed store, or the in-process store for "memory".
    """
    if StoreBackend(settings.workflow_store_backend) == StoreBackend.MEMORY:
        from src.db.memory_store import InMemoryWorkflowStore

        return InMemoryWorkflowStore()

    from src.db.session import get_session_factory
    from src.db.workflows import SqlWorkflowStore

    return SqlWorkflowStore(get_session_factory())


def build_manager(settings: Settings, store: WorkflowStore) -> SchedulingWorkflowManager:
    """Create the manager and attach the audit trail to its events.

    Args:
        settings: Application settings.
        store: Workflow store the manager persists to.

    Returns:
        Ready SchedulingWorkflowManager.
    """
    manager = SchedulingWorkflowManager(store, settings=settings)
    WorkflowAuditRecorder(store).attach(manager.events)
    return manager


@asynccontextmanager
async def _lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application startup and shutdown lifecycle.

    Builds the workflow manager unless one was injected, and tears
    down pending OTP waits and pooled connections on shutdown.

    Args:
        app: FastAPI application instance.

    Yields:
        Control to the running application.
    """
    settings: Settings = app.state.settings
    if getattr(app.state, "workflow_manager", None) is None:
        manager = build_manager(settings, build_store(settings))
        _attach_manager(app, manager)
    logger.info(
        "app_started",
        extra={"store_backend": settings.workflow_store_backend},
    )
    yield
    await app.state.workflow_manager.shutdown()
    if StoreBackend(settings.workflow_store_backend) == StoreBackend.POSTGRES:
        from src.db.session import dispose_engine

        await dispose_engine()


def create_app(
    settings: Settings | None = None,
    manager: SchedulingWorkflowManager | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        settings: Settings override; loaded from env when omitted.
        manager: Prebuilt manager, used instead of building one at startup.

    Returns:
        Configured FastAPI instance.
    """
    settings = settings or get_settings()
    app = FastAPI(
        title="Scheduling Orchestrator",
        description="Automated intake-form scheduling workflows for the AI call center",
        version="0.1.0",
        lifespan=_lifespan,
    )
    app.state.settings = settings
    app.state.event_broadcaster = WorkflowEventBroadcaster()
    app.state.workflow_manager = None
    if manager is not None:
        _attach_manager(app, manager)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(_health_router())

    from src.api.workflows import register_error_handlers, ws_router
    from src.api.workflows import router as workflows_router

    app.include_router(workflows_router)
    app.include_router(ws_router)
    register_error_handlers(app)

    return app


def _attach_manager(app: FastAPI, manager: SchedulingWorkflowManager) -> None:
    """Expose the manager to routes and stream its events to dashboards."""
    app.state.workflow_manager = manager
    manager.events.subscribe(app.state.event_broadcaster.on_event)


def _health_router() -> APIRouter:
    """Create health check router.

    Returns:
        Router with health endpoints.
    """
    from fastapi import APIRouter

    router = APIRouter(tags=["health"])

    @router.get("/health")
    async def health() -> dict[str, str]:
        """Return application health status.

        Returns:
            Dict with status key.
        """
        return {"status": "ok"}

    return router


app = create_app()
