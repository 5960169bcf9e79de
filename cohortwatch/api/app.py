"""
CohortWatch: FastAPI Application.

Run: uvicorn cohortwatch.api.app:app --host 0.0.0.0 --port 8010

Routes:
  - /api/v1/institutions/{institution_id}/analysis/run, /rules/{id}/test, /events
  - /api/v1/institutions/{institution_id}/students/...
  - /api/v1/institutions/{institution_id}/alerts/...
  - GET /health
"""

from contextlib import asynccontextmanager
from typing import Optional

import structlog
from fastapi import FastAPI

from cohortwatch.api.routers.alerts import router as alerts_router
from cohortwatch.api.routers.analysis import router as analysis_router
from cohortwatch.api.routers.students import router as students_router
from cohortwatch.config import settings
from cohortwatch.db.engine import close_db, get_session_factory, init_db
from cohortwatch.db.store import RecordStore
from cohortwatch.logging_config import configure_logging
from cohortwatch.middleware.error_handler import install_error_handlers
from cohortwatch.middleware.request_context import RequestContextMiddleware
from cohortwatch.monitoring.actions import ActionExecutor
from cohortwatch.monitoring.dispatch import MessageDispatcher, build_dispatcher
from cohortwatch.monitoring.engine import MonitoringEngine
from cohortwatch.monitoring.events import ChangeEventStream, EvaluationWorker
from cohortwatch.monitoring.notifications import AlertManager
from cohortwatch.services.scheduler import AnalysisScheduler

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan: startup and shutdown."""
    logger.info("cohortwatch_starting", version=settings.app_version)
    if app.state.manage_db:
        await init_db()
    app.state.worker.start()
    if app.state.scheduler is not None:
        await app.state.scheduler.start()
    yield
    if app.state.scheduler is not None:
        app.state.scheduler.stop()
    await app.state.worker.stop()
    if app.state.manage_db:
        await close_db()
    logger.info("cohortwatch_shutdown")


def create_app(
    store: Optional[RecordStore] = None,
    dispatcher: Optional[MessageDispatcher] = None,
    enable_scheduler: bool = True,
) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Args:
        store: Record store to use; built from settings when omitted
        dispatcher: Message transport; picked from settings when omitted
        enable_scheduler: Register interval analysis jobs at startup
    """
    configure_logging()

    app = FastAPI(
        title="CohortWatch",
        description="Student lifecycle monitoring and alerting engine.",
        version=settings.app_version,
        lifespan=lifespan,
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        openapi_tags=[
            {"name": "health", "description": "Liveness probe"},
            {"name": "analysis", "description": "Batch runs, rule tests, change events"},
            {"name": "students", "description": "Signals, interventions, duplicates"},
            {"name": "alerts", "description": "Alert listing and read state"},
        ],
    )

    # ── Services ──────────────────────────────────────────────────────
    app.state.manage_db = store is None
    store = store or RecordStore(get_session_factory())
    executor = ActionExecutor(store, dispatcher or build_dispatcher())
    engine = MonitoringEngine(store, executor)
    events = ChangeEventStream()

    app.state.store = store
    app.state.engine = engine
    app.state.alerts = AlertManager(store)
    app.state.events = events
    app.state.worker = EvaluationWorker(engine, events)
    app.state.scheduler = AnalysisScheduler(engine, store) if enable_scheduler else None

    # ── Middleware (last added = outermost) ───────────────────────────
    app.add_middleware(RequestContextMiddleware)
    install_error_handlers(app)

    # ── Routes ────────────────────────────────────────────────────────
    app.include_router(analysis_router)
    app.include_router(students_router)
    app.include_router(alerts_router)

    @app.get("/health", tags=["health"])
    async def health():
        """Liveness probe; does not check dependencies."""
        return {
            "status": "ok",
            "version": settings.app_version,
            "service": "cohortwatch",
            "event_queue": events.pending,
        }

    return app


app = create_app()
