"""FastAPI application: webhook intake, operator API, health and metrics."""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    generate_latest,
    multiprocess,
)
from starlette.responses import PlainTextResponse, Response

from automember import __version__
from automember.config import settings
from automember.db import init_staging_schema, registry_engine, staging_engine
from automember.logging_config import setup_logging
from automember.observability import setup_opentelemetry

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan: setup / teardown."""
    setup_logging()
    setup_opentelemetry(app, engines=(staging_engine, registry_engine))
    await init_staging_schema()
    logger.info("AutoMember API starting", extra={"env": settings.APP_ENV})
    yield
    await staging_engine.dispose()
    await registry_engine.dispose()
    logger.info("AutoMember API shutting down")


app = FastAPI(
    title="AutoMember",
    version=__version__,
    description="Membership renewal reconciliation and approval",
    lifespan=lifespan,
)

# ── CORS ──
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.APP_CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


from automember.api.staging import router as staging_router  # noqa: E402
from automember.api.webhooks import router as webhooks_router  # noqa: E402

app.include_router(webhooks_router)
app.include_router(staging_router)


@app.get("/health", tags=["ops"])
async def health() -> dict[str, object]:
    """Liveness check."""
    return {
        "status": "ok",
        "service": "automember",
        "staging_backend": staging_engine.url.get_backend_name(),
        "registry_backend": registry_engine.url.get_backend_name(),
    }


# ── Prometheus Metrics ──
@app.get("/metrics", tags=["ops"])
async def metrics() -> Response:
    """Prometheus scrape endpoint."""
    try:
        registry = CollectorRegistry()
        multiprocess.MultiProcessCollector(registry)
        data = generate_latest(registry)
    except ValueError:
        # Not running in multiprocess mode
        data = generate_latest()
    return PlainTextResponse(content=data, media_type=CONTENT_TYPE_LATEST)
