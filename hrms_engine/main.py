"""HRMS Engine — FastAPI Application Factory."""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from hrms_engine.approvals.router import router as requests_router
from hrms_engine.attendance.router import router as attendance_router
from hrms_engine.common.exceptions import register_exception_handlers
from hrms_engine.common.logging_setup import setup_logging
from hrms_engine.common.rate_limit import limiter
from hrms_engine.config import settings
from hrms_engine.ledger.router import router as ledger_router
from hrms_engine.scheduler import DailyScheduler, JobRunner

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the daily jobs on startup, cancel them on shutdown."""
    scheduler: Optional[DailyScheduler] = None
    if settings.SCHEDULER_ENABLED:
        scheduler = DailyScheduler(app.state.jobs)
        scheduler.start()
    else:
        logger.info("Scheduler disabled; jobs run only when triggered")
    yield
    if scheduler is not None:
        await scheduler.stop()


def create_app(jobs: Optional[JobRunner] = None) -> FastAPI:
    """Create and configure the FastAPI application."""
    setup_logging()
    app = FastAPI(
        title="HRMS Engine",
        description="Attendance reconciliation, approvals and leave/overtime accounting",
        version="1.0.0",
        docs_url="/api/docs" if settings.ENVIRONMENT != "production" else None,
        redoc_url="/api/redoc" if settings.ENVIRONMENT != "production" else None,
        lifespan=lifespan,
    )
    app.state.jobs = jobs or JobRunner()

    # Exception handlers (RFC 7807)
    register_exception_handlers(app)

    # Rate limiting (slowapi)
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Health check (no auth)
    @app.get("/api/v1/health", tags=["system"])
    async def health_check():
        return {
            "status": "healthy",
            "version": "1.0.0",
            "environment": settings.ENVIRONMENT,
            "scheduler_enabled": settings.SCHEDULER_ENABLED,
        }

    # Register routers
    app.include_router(requests_router, prefix="/api/v1/requests", tags=["requests"])
    app.include_router(ledger_router, prefix="/api/v1/ledger", tags=["ledger"])
    app.include_router(attendance_router, prefix="/api/v1/attendance", tags=["attendance"])

    return app


app = create_app()
