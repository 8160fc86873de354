"""
Main FastAPI application entry point for the charity platform.
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from typing import Any

import structlog
from fastapi import APIRouter, FastAPI, Request
from fastapi.responses import JSONResponse

from charity.platform.db import check_database_health, create_all_tables_async
from charity.platform.donations.exceptions import DonationError
from charity.platform.donations.recurring.router import router as recurring_donations_router
from charity.platform.logging import setup_logging
from charity.platform.settings import settings

logger = structlog.get_logger(__name__)


def donation_error_handler(request: Request, exc: Exception) -> JSONResponse:
    """Render donation errors with their own status codes."""
    if not isinstance(exc, DonationError):
        raise exc
    if exc.status_code >= 500:
        logger.error(
            "api.donation_error",
            path=request.url.path,
            error_code=exc.error_code,
            message=exc.message,
        )
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None]:
    """Manage application lifecycle events."""
    logger.info(
        "service.startup.begin",
        service=settings.app_name,
        version=settings.app_version,
        environment=settings.environment,
    )

    # Development databases are created on the fly; production uses alembic
    if settings.is_development or settings.is_testing:
        await create_all_tables_async()
        logger.info("database.tables.ensured")

    logger.info("service.startup.complete")
    yield
    logger.info("service.shutdown")


def create_application() -> FastAPI:
    """Create and configure the FastAPI application."""
    setup_logging()

    app = FastAPI(
        title="Charity Platform Services",
        version=settings.app_version,
        lifespan=lifespan,
    )

    app.add_exception_handler(DonationError, donation_error_handler)

    api_v1 = APIRouter(prefix="/api/v1")
    api_v1.include_router(recurring_donations_router)
    app.include_router(api_v1)

    # Health check endpoint (public - no auth required)
    @app.get("/health")
    async def health_check() -> dict[str, Any]:
        """Health check endpoint for monitoring."""
        return {
            "status": "healthy",
            "version": settings.app_version,
            "environment": settings.environment,
        }

    # Readiness check endpoint (public - no auth required)
    @app.get("/health/ready")
    async def readiness_check() -> dict[str, Any]:
        """Readiness check including database connectivity."""
        database_ok = await check_database_health()
        return {
            "status": "ready" if database_ok else "not ready",
            "database": database_ok,
            "timestamp": datetime.now(UTC).isoformat(),
        }

    return app


# Create application instance
app = create_application()


# For development server
if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "charity.platform.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.is_development,
        log_level=settings.observability.log_level.value.lower(),
    )
