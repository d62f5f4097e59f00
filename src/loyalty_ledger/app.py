from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI
from loguru import logger

from loyalty_ledger import __version__
from loyalty_ledger.core.settings import settings
from loyalty_ledger.db.session import async_session
from loyalty_ledger.observability.points import get_points_store

from .api.routes import api_router
from .core.logging import configure_logging
from .scheduling import ExpiryJobScheduler


APP_VERSION = __version__


def _session_factory():
    return async_session()


def _schedule_path() -> Path:
    schedule_path = Path(settings.expiry_schedule_path)
    if not schedule_path.is_absolute():
        schedule_path = Path(__file__).resolve().parent.parent.parent / schedule_path
    return schedule_path


@asynccontextmanager
async def lifespan(app: FastAPI):
    schedule_path = _schedule_path()
    job_scheduler = ExpiryJobScheduler(session_factory=_session_factory, config_path=schedule_path)
    app.state.expiry_job_scheduler = job_scheduler

    scheduler_enabled = settings.expiry_scheduler_enabled
    if scheduler_enabled:
        try:
            job_scheduler.start()
        except FileNotFoundError as exc:
            logger.exception("Expiry job scheduler failed to start", error=str(exc))
        else:
            logger.info("Expiry job scheduler enabled", schedule_path=str(schedule_path))
    else:
        logger.info("Expiry job scheduler disabled", reason="expiry_scheduler_enabled is false")

    try:
        yield
    finally:
        if job_scheduler.is_running:
            await job_scheduler.stop()


def create_app() -> FastAPI:
    """Application factory for the loyalty ledger service."""
    configure_logging(
        service_name="loyalty-ledger",
        environment=settings.environment,
        version=APP_VERSION,
    )
    app = FastAPI(
        title="Loyalty Ledger API",
        version=APP_VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )
    app.include_router(api_router)

    @app.get("/healthz", tags=["Health"])
    async def health_check() -> dict[str, object]:
        scheduler = getattr(app.state, "expiry_job_scheduler", None)
        return {
            "status": "ok",
            "environment": settings.environment,
            "version": APP_VERSION,
            "scheduler": scheduler.health() if scheduler else {"running": False, "jobs": []},
            "points": get_points_store().snapshot().as_dict(),
        }

    return app
