"""
Roleplay endpoints. Voice is handled client-side; only text crosses this API.
"""

from fastapi import APIRouter
from pydantic import BaseModel, Field

from adapt.api.dependencies import EngineDep
from adapt.core.models import RoleplaySession, TurnResult

router = APIRouter(prefix="/roleplay", tags=["roleplay"])


class StartRequest(BaseModel):
    enrollment_id: int
    step_id: int


class TurnRequest(BaseModel):
    text: str = Field(min_length=1)


@router.post("/sessions", response_model=RoleplaySession)
async def start_session(body: StartRequest, engine: EngineDep):
    return await engine.start_roleplay(body.enrollment_id, body.step_id)


@router.post("/sessions/{session_id}/begin", response_model=RoleplaySession)
async def begin_session(session_id: str, engine: EngineDep):
    return engine.begin_roleplay(session_id)


@router.post("/sessions/{session_id}/turns", response_model=TurnResult)
async def next_turn(session_id: str, body: TurnRequest, engine: EngineDep):
    """Submit a learner line; returns the AI reply or the terminal evaluation."""
    return await engine.roleplay_turn(session_id, body.text)


@router.get("/sessions/{session_id}", response_model=RoleplaySession)
async def get_session(session_id: str, engine: EngineDep):
    return engine.get_roleplay_session(session_id)
