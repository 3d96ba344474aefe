"""
FastAPI dependency injection for ADAPT services.
"""

from typing import Annotated

from fastapi import Depends, Request

from adapt.core.engine import TrainingEngine


def get_engine(request: Request) -> TrainingEngine:
    """Get TrainingEngine singleton from lifespan state."""
    return request.app.state.engine


EngineDep = Annotated[TrainingEngine, Depends(get_engine)]
