"""
Health check endpoint.
"""

import time
from typing import Optional

from fastapi import APIRouter
from pydantic import BaseModel

from adapt.api.dependencies import EngineDep
from adapt.shared.logging import get_logger

logger = get_logger(__name__)

router = APIRouter(tags=["health"])

# Track startup time for uptime
_start_time: Optional[float] = None


def set_start_time(t: float):
    """Set application start time."""
    global _start_time
    _start_time = t


class HealthResponse(BaseModel):
    """Health check response model."""

    status: str
    storage_ok: bool
    llm_provider: str
    uptime_seconds: float


@router.get("/health", response_model=HealthResponse)
async def health_check(engine: EngineDep):
    """
    Service health check.
    Returns status, storage reachability, configured provider, uptime.
    """
    storage_ok = engine.store.ping()

    uptime_seconds = 0.0
    if _start_time:
        uptime_seconds = round(time.time() - _start_time, 2)

    return HealthResponse(
        status="healthy" if storage_ok else "degraded",
        storage_ok=storage_ok,
        llm_provider=engine.gateway.provider_name,
        uptime_seconds=uptime_seconds,
    )
