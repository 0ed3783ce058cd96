"""FastAPI application entry point."""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from prometheus_fastapi_instrumentator import Instrumentator
from starlette.exceptions import HTTPException as StarletteHTTPException

from clinicflow.api.v1.endpoints import push
from clinicflow.api.v1.router import api_router
from clinicflow.config import Settings, get_settings
from clinicflow.container import ServiceContainer
from clinicflow.core.exceptions import AppException
from clinicflow.core.metrics import create_registry
from clinicflow.middleware.error_handler import (
    app_exception_handler,
    general_exception_handler,
    http_exception_handler,
    validation_exception_handler,
)
from clinicflow.middleware.logging import LoggingMiddleware, configure_logging

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Application lifespan manager.

    Starts the push gateway subscription and the fanout consumer (when enabled)
    and stops them, flushing pending event appends, on shutdown.
    """
    container: ServiceContainer = app.state.container
    logger.info("application_startup", environment=container.settings.environment)

    await container.start()

    yield

    logger.info("application_shutdown")
    await container.stop()


def create_app(
    settings: Settings | None = None,
    container: ServiceContainer | None = None,
) -> FastAPI:
    """
    Build the application.

    Args:
        settings: Application settings (defaults to the environment)
        container: Pre-built service container (defaults to one built from settings)

    Returns:
        Configured FastAPI application
    """
    settings = settings or get_settings()
    configure_logging(settings)

    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        description="Appointment booking core with real-time notification delivery",
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )
    app.state.container = container or ServiceContainer(settings)

    # Add CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=settings.cors_allow_credentials,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Add logging middleware
    app.add_middleware(LoggingMiddleware)

    # Add exception handlers
    app.add_exception_handler(AppException, app_exception_handler)  # type: ignore[arg-type]
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)  # type: ignore[arg-type]
    app.add_exception_handler(RequestValidationError, validation_exception_handler)  # type: ignore[arg-type]
    app.add_exception_handler(Exception, general_exception_handler)

    # Include API router
    app.include_router(api_router, prefix=settings.api_v1_prefix)
    app.include_router(push.router, tags=["Push"])

    # Setup Prometheus instrumentation
    Instrumentator(
        registry=create_registry(),
        should_group_status_codes=True,
        should_ignore_untemplated=False,
        should_instrument_requests_inprogress=True,
        excluded_handlers=["/docs", "/redoc", "/openapi.json", "/metrics"],
        inprogress_name="http_requests_inprogress",
        inprogress_labels=True,
    ).instrument(app).expose(app, endpoint="/metrics", include_in_schema=False)

    @app.get("/", tags=["Root"])
    async def root() -> dict[str, str]:
        """
        Root endpoint.

        Returns:
            Welcome message
        """
        return {
            "message": f"Welcome to {settings.app_name}",
            "version": settings.app_version,
            "docs": "/docs",
        }

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "clinicflow.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.reload,
        log_level=settings.log_level.lower(),
    )
