from contextlib import asynccontextmanager

from fastapi import FastAPI
from loguru import logger

from storefront_api.core.settings import settings
from storefront_api.db.session import engine
from .api.routes import api_router
from .core.errors import register_error_handlers
from .core.logging import configure_logging
from .observability.tracing import configure_tracing
from .services.sinalite import build_default_sinalite_client


APP_VERSION = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    sinalite_client = build_default_sinalite_client()
    app.state.sinalite_client = sinalite_client

    if settings.sinalite_client_id and settings.sinalite_client_secret:
        logger.info("Sinalite client configured", base_url=settings.sinalite_base_url)
    else:
        logger.info(
            "Sinalite client credentials missing",
            reason="sinalite_client_id or sinalite_client_secret is empty",
        )

    try:
        yield
    finally:
        await sinalite_client.aclose()
        await engine.dispose()


def create_app() -> FastAPI:
    """Application factory for the storefront FastAPI service."""
    configure_logging(
        service_name="storefront-api",
        environment=settings.environment,
        version=APP_VERSION,
    )

    app = FastAPI(
        title="Storefront API",
        version=APP_VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    configure_tracing(
        app,
        service_name="storefront-api",
        service_version=APP_VERSION,
        environment=settings.environment,
    )

    register_error_handlers(app)
    app.include_router(api_router)

    @app.get("/healthz", tags=["Health"])
    async def health_check() -> dict[str, str]:
        return {
            "status": "ok",
            "environment": settings.environment,
            "version": APP_VERSION,
        }

    return app
