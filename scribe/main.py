"""FastAPI application entry point."""

from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from scribe.api import router as api_router
from scribe.core.errors import ConfigurationError, TransientUpstreamError, ValidationError
from scribe.core.logging import get_logger
from scribe.services import Services, build_services

logger = get_logger(__name__)


def create_app(services: Services | None = None) -> FastAPI:
    """
    Create the application.

    Args:
        services: Prebuilt service graph; built from settings at startup when omitted
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        app.state.services = services or build_services()
        await app.state.services.startup()
        try:
            yield
        finally:
            await app.state.services.shutdown()

    app = FastAPI(
        title="Scribe Retrieval",
        description="Document retrieval and intent routing for the writing assistant",
        version="0.1.0",
        lifespan=lifespan,
    )

    @app.get("/health")
    async def health_check() -> JSONResponse:
        """Health check endpoint."""
        return JSONResponse(content={"status": "ok"}, status_code=200)

    @app.exception_handler(ValidationError)
    async def validation_error_handler(request: Request, exc: ValidationError) -> JSONResponse:
        return JSONResponse(status_code=422, content={"detail": exc.message, **exc.details})

    @app.exception_handler(TransientUpstreamError)
    async def upstream_error_handler(request: Request, exc: TransientUpstreamError) -> JSONResponse:
        logger.warning(f"Upstream unavailable on {request.url.path}: {exc.message}")
        return JSONResponse(status_code=503, content={"detail": exc.message})

    @app.exception_handler(ConfigurationError)
    async def configuration_error_handler(
        request: Request, exc: ConfigurationError
    ) -> JSONResponse:
        logger.error(f"Configuration error on {request.url.path}: {exc.message}")
        return JSONResponse(status_code=503, content={"detail": exc.message})

    # Include v1 API router
    app.include_router(api_router, prefix="/v1", tags=["v1"])
    return app


app = create_app()
