"""FastAPI application initialization and configuration."""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware

from .core.config import settings
from .core.database import close_db, engine, init_db
from .core.exceptions import (
    ProblemDetailsException,
    generic_exception_handler,
    problem_details_handler,
    request_validation_handler,
)
from .core.middleware import setup_middleware
from .core.observability import (
    instrument_fastapi,
    instrument_sqlalchemy,
    setup_metrics,
    setup_structured_logging,
    setup_tracing,
)
from .providers.registry import build_provider_registry
from .routers import health, metrics, payments, reservations
from .services.notification_service import build_dispatcher
from .workers.manager import WorkerManager

setup_structured_logging()

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Application lifespan context manager.

    Builds the provider registry and background workers on startup and
    tears them down on shutdown.
    """
    logger.info(
        "Starting reservation engine",
        extra={"environment": settings.environment, "debug": settings.debug}
    )

    setup_tracing()
    setup_metrics()
    instrument_sqlalchemy(engine)

    if not settings.is_production:
        # Production schemas are managed by Alembic migrations
        await init_db()
        logger.info("Database schema ensured")

    http_client = httpx.AsyncClient(timeout=settings.provider_timeout_seconds)
    app.state.provider_registry = build_provider_registry(http_client)

    worker_manager = None
    if settings.enable_background_workers:
        worker_manager = WorkerManager(app.state.provider_registry, build_dispatcher(http_client))
        await worker_manager.start_all()
    app.state.worker_manager = worker_manager

    logger.info("Application startup complete")

    try:
        yield
    finally:
        logger.info("Shutting down reservation engine")
        if worker_manager:
            await worker_manager.stop_all()
        await http_client.aclose()
        await close_db()
        logger.info("Application shutdown complete")


def create_app() -> FastAPI:
    """
    Create and configure the FastAPI application.

    Returns:
        FastAPI: Configured FastAPI application instance
    """
    app = FastAPI(
        title="Vehicle Reservation Engine",
        description=(
            "RPC-over-HTTP API for peer-to-peer vehicle reservations: conflict-free booking, "
            "pricing, payment sessions and provider webhook reconciliation"
        ),
        version="1.0.0",
        debug=settings.debug,
        lifespan=lifespan,
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID", "traceparent", "tracestate"],
    )

    setup_middleware(app, enable_logging=True)

    instrument_fastapi(app)

    app.add_exception_handler(ProblemDetailsException, problem_details_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(Exception, generic_exception_handler)

    app.include_router(health.probe_router)
    app.include_router(health.router)
    app.include_router(reservations.router)
    app.include_router(payments.router)
    app.include_router(metrics.router)

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "reservation_engine.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_level=settings.log_level.lower(),
        access_log=True,
    )
