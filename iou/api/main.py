"""
FastAPI Application

Main application entry point with:
- CORS middleware
- Health and metrics endpoints
- API routes under /api/v1
- Engine error to HTTP status mapping
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any

from iou.config import get_settings

# Configure root logger BEFORE any other imports
logging.basicConfig(
    level=get_settings().log_level.upper(),
    format="%(levelname)s  %(name)s  %(message)s",
)
# Silence noisy loggers
logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
logging.getLogger("watchfiles").setLevel(logging.WARNING)

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from iou import __version__
from iou.api.routes import get_service, router
from iou.errors import InvalidTransition, NotFound, ValidationError
from iou.storage.database import get_engine, init_db

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    # Startup
    app.state.start_time = datetime.now(timezone.utc)
    app.state.request_count = 0
    app.state.error_count = 0

    settings = get_settings()
    if settings.storage_backend == "postgres":
        try:
            await init_db()
            logger.info("PostgreSQL tables created / verified")
        except Exception as exc:
            logger.warning("PostgreSQL init failed (will retry on first request): %s", exc)

    service = get_service()
    await service.install_default_rules()
    await service.start()

    yield

    # Shutdown
    await service.stop()
    if settings.storage_backend == "postgres":
        await get_engine().dispose()
        logger.info("Database engine disposed")


app = FastAPI(
    title="IOU Engine API",
    description="Compliance by design and knowledge graph inference for information domains",
    version=__version__,
    lifespan=lifespan,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def metrics_middleware(request: Request, call_next):
    """Track request metrics."""
    if not hasattr(app.state, "request_count"):
        app.state.request_count = 0
        app.state.error_count = 0
        app.state.start_time = datetime.now(timezone.utc)

    try:
        response = await call_next(request)
        app.state.request_count += 1
        if response.status_code >= 500:
            app.state.error_count += 1
        return response
    except Exception:
        app.state.error_count += 1
        raise


# ===== Error mapping =====

@app.exception_handler(NotFound)
async def not_found_handler(request: Request, exc: NotFound) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_404_NOT_FOUND,
        content={"detail": str(exc), "kind": exc.kind},
    )


@app.exception_handler(ValidationError)
async def validation_handler(request: Request, exc: ValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={"detail": str(exc), "field": exc.field},
    )


@app.exception_handler(InvalidTransition)
async def transition_handler(request: Request, exc: InvalidTransition) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_409_CONFLICT,
        content={"detail": str(exc), "from": exc.from_state, "to": exc.to_state},
    )


@app.get("/health")
async def health_check() -> dict[str, Any]:
    """Health check endpoint."""
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "version": __version__,
    }


@app.get("/metrics")
async def metrics() -> dict[str, Any]:
    """Basic metrics endpoint."""
    uptime = datetime.now(timezone.utc) - app.state.start_time
    workers = get_service().workers

    return {
        "uptime_seconds": uptime.total_seconds(),
        "request_count": app.state.request_count,
        "error_count": app.state.error_count,
        "objects_processed": workers.processed,
        "objects_failed": workers.failed,
        "queue_depth": workers.pending,
    }


# Include API routes
app.include_router(router, prefix="/api/v1")
