"""
FastAPI application factory.
"""

import os
import sys
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware

from customs_intel.api.extraction import analyze_pdf
from customs_intel.api.router import api_router
from customs_intel.config import settings
from customs_intel.dependencies import verify_api_key
from customs_intel.models.database import close_db
from customs_intel.observability.logging import setup_logging
from customs_intel.schemas.extraction import BatchResponse

# Startup print - visible in platform logs before logging is configured
print(f"[STARTUP] Customs Intelligence API v{settings.APP_VERSION}", flush=True)
print(f"[STARTUP] PORT={os.environ.get('PORT', 'NOT SET')}", flush=True)
print(f"[STARTUP] Python {sys.version}", flush=True)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan: startup and shutdown."""
    setup_logging()

    if settings.SENTRY_DSN:
        import sentry_sdk
        from sentry_sdk.integrations.fastapi import FastApiIntegration
        sentry_sdk.init(
            dsn=settings.SENTRY_DSN,
            integrations=[FastApiIntegration()],
            traces_sample_rate=0.1,
        )

    yield

    await close_db()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title="Customs Intelligence API",
        description="Paginated tariff extraction, legal document ingestion and import tax calculation.",
        version=settings.APP_VERSION,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS.split(","),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    if settings.PROMETHEUS_ENABLED:
        from prometheus_client import make_asgi_app
        app.mount("/metrics", make_asgi_app())

    app.include_router(api_router)

    # Older clients post batches to the bare path
    app.add_api_route(
        "/analyze-pdf",
        analyze_pdf,
        methods=["POST"],
        response_model=BatchResponse,
        response_model_by_alias=True,
        dependencies=[Depends(verify_api_key)],
        include_in_schema=False,
    )

    return app


app = create_app()
