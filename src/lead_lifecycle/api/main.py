"""FastAPI application factory for the lead lifecycle API."""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from .config import settings
from .routes.health import router as health_router
from .routes.scores import router as scores_router
from .routes.models import router as models_router
from .routes.journeys import router as journeys_router
from .routes.enrollments import router as enrollments_router
from .routes.routing import router as routing_router
from .routes.jobs import router as jobs_router
from ..errors import LifecycleError
from ..service import LifecycleService
from ..tasks.jobs import JobTracker
from ..tasks.scheduler import StageSweepRunner

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

STATUS_BY_KIND = {
    "validation_error": 400,
    "duplicate_active_enrollment": 409,
    "terminal_state_violation": 409,
    "concurrent_modification": 409,
    "operation_failed": 503,
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    logger.info("Starting Lead Lifecycle API")
    if app.state.service is None:
        app.state.service = LifecycleService.from_settings(settings)

    runner = None
    if app.state.start_sweeper and settings.sweep_interval > 0:
        runner = StageSweepRunner(app.state.service.executor, settings.sweep_interval)
        runner.start()

    yield

    # Shutdown
    if runner:
        runner.stop()
    logger.info("Lead Lifecycle API shutting down")


async def lifecycle_error_handler(request: Request, exc: LifecycleError):
    status = STATUS_BY_KIND.get(exc.kind, 500)
    if status >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.kind}")
    return JSONResponse(status_code=status, content=exc.to_dict())


async def request_validation_handler(request: Request, exc: RequestValidationError):
    problems = "; ".join(
        f"{'.'.join(str(p) for p in err.get('loc', ()))}: {err.get('msg')}" for err in exc.errors()
    )
    return JSONResponse(
        status_code=400,
        content={"success": False, "error": "validation_error", "detail": problems or "Invalid request"},
    )


def create_app(service: Optional[LifecycleService] = None, start_sweeper: bool = True) -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title="Lead Lifecycle API",
        description="Lead scoring and multi-stage journey enrollment",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.service = service
    app.state.jobs = JobTracker(retention_hours=settings.job_retention_hours)
    app.state.start_sweeper = start_sweeper

    app.add_exception_handler(LifecycleError, lifecycle_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)

    # Routes
    app.include_router(health_router)
    app.include_router(scores_router)
    app.include_router(models_router)
    app.include_router(journeys_router)
    app.include_router(enrollments_router)
    app.include_router(routing_router)
    app.include_router(jobs_router)

    return app


# Module-level app instance for uvicorn
app = create_app()
