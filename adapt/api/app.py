"""
ADAPT FastAPI application.
"""

import asyncio
import time
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from adapt.api.routes import ai_logs, enrollments, health, mastery, roleplay
from adapt.api.middleware.rate_limit import RateLimitMiddleware
from adapt.core.engine import TrainingEngine
from adapt.shared.config import settings
from adapt.shared.exceptions import (
    AdaptError,
    AIError,
    LearnerLimitError,
    NotFoundError,
    SessionExpiredError,
    StalenessError,
    StorageError,
    ValidationError,
)
from adapt.shared.logging import get_logger

logger = get_logger(__name__)

SESSION_PURGE_INTERVAL_SECONDS = 300.0

# Most specific first
STATUS_BY_ERROR = (
    (NotFoundError, 404),
    (LearnerLimitError, 403),
    (SessionExpiredError, 410),
    (StalenessError, 409),
    (ValidationError, 400),
    (StorageError, 503),
    (AIError, 502),
)


def status_for(error: AdaptError) -> int:
    for error_type, status_code in STATUS_BY_ERROR:
        if isinstance(error, error_type):
            return status_code
    return 500


async def adapt_error_handler(request: Request, exc: AdaptError) -> JSONResponse:
    status_code = status_for(exc)
    if status_code >= 500:
        logger.error(f"{exc.code} on {request.url.path}: {exc}")
    return JSONResponse(
        status_code=status_code,
        content={"code": exc.code, "detail": str(exc)},
    )


async def purge_sessions_forever(engine: TrainingEngine, interval: float):
    """Drop idle roleplay sessions in the background."""
    while True:
        await asyncio.sleep(interval)
        try:
            engine.purge_expired_sessions()
        except StorageError as e:
            logger.warning(f"Session purge failed: {e}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan: startup and shutdown."""
    logger.info("Starting ADAPT API")

    engine = getattr(app.state, "engine", None) or TrainingEngine()
    app.state.engine = engine

    purge_task = asyncio.create_task(
        purge_sessions_forever(engine, SESSION_PURGE_INTERVAL_SECONDS)
    )

    # Track uptime
    health.set_start_time(time.time())

    logger.info("ADAPT API ready")
    yield

    # Shutdown
    logger.info("Shutting down ADAPT API")
    purge_task.cancel()
    try:
        await purge_task
    except asyncio.CancelledError:
        pass
    logger.info("ADAPT API stopped")


def create_app(engine: Optional[TrainingEngine] = None) -> FastAPI:
    """Create and configure FastAPI application."""
    app = FastAPI(
        title="ADAPT",
        description="Adaptive training sessions: steps, drills, roleplay and mastery analytics",
        version="0.1.0",
        lifespan=lifespan,
    )
    if engine is not None:
        app.state.engine = engine

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.api.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Rate limiting (after CORS so CORS headers applied first)
    app.add_middleware(RateLimitMiddleware)

    app.add_exception_handler(AdaptError, adapt_error_handler)

    # Routes
    app.include_router(health.router)
    app.include_router(enrollments.router)
    app.include_router(roleplay.router)
    app.include_router(mastery.router)
    app.include_router(ai_logs.router)

    @app.get("/")
    async def root():
        return {"service": "adapt", "status": "running"}

    return app


app = create_app()


def main():
    """CLI entry point for uvicorn."""
    import uvicorn

    uvicorn.run(
        "adapt.api.app:app",
        host=settings.api.host,
        port=settings.api.port,
        reload=False,
    )


if __name__ == "__main__":
    main()
