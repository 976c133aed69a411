"""
FastAPI Application Entry Point.

Closure Execution Service: runs user-supplied code snippets ("closures")
in sandboxed runtimes on compute hosts.
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

from closures.core.config import Settings
from closures.core.container import get_container, get_settings_dep

logger = logging.getLogger(__name__)


class HealthResponse(BaseModel):
    """Health check response model."""

    status: str
    app_name: str
    app_version: str
    timestamp: str
    debug: bool
    provisioning_provider: str
    dispatch_provider: str


def configure_logging(level: str = "INFO") -> None:
    """
    Configure root logging.

    Args:
        level: Log level name (e.g. "INFO", "DEBUG").
    """
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(levelname)s - %(message)s",
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan context manager.

    Handles startup and shutdown events:
    - Startup: Configure logging, initialize container and services
    - Shutdown: Stop in-flight executions and release clients
    """
    container = get_container()
    configure_logging(container.settings.log_level)
    await container.startup()

    yield

    await container.shutdown()


def create_app() -> FastAPI:
    """
    Create and configure the FastAPI application.

    Returns:
        Configured FastAPI application instance.
    """
    settings = get_container().settings

    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        description=(
            "Closure execution service. Register closure descriptions, create "
            "closures from them and execute them asynchronously on compute hosts."
        ),
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        lifespan=lifespan,
    )

    # Configure CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if settings.debug else [],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_routes(app)

    return app


def register_routes(app: FastAPI) -> None:
    """
    Register all application routes.

    Args:
        app: FastAPI application instance.
    """
    from closures.api.v1 import api_router

    app.include_router(
        api_router,
        prefix="/api/v1",
    )

    @app.get(
        "/health",
        response_model=HealthResponse,
        tags=["Health"],
        summary="Health Check",
        description="Check if the service is running and return configuration metadata.",
    )
    async def health_check(
        settings: Settings = Depends(get_settings_dep),
    ) -> HealthResponse:
        """
        Health check endpoint for readiness probes.

        Returns service status and configuration metadata.
        """
        return HealthResponse(
            status="healthy",
            app_name=settings.app_name,
            app_version=settings.app_version,
            timestamp=datetime.now(timezone.utc).isoformat(),
            debug=settings.debug,
            provisioning_provider=settings.provisioning.provider.value,
            dispatch_provider=settings.dispatch.provider.value,
        )


# Create the application instance
app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "closures.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
    )
