"""
AI audit log endpoints.
"""

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Query

from adapt.api.dependencies import EngineDep

router = APIRouter(prefix="/ai-logs", tags=["ai-logs"])


@router.get("")
async def list_logs(
    engine: EngineDep,
    course_id: Optional[int] = None,
    prompt_kind: Optional[str] = None,
    status: Optional[str] = None,
    limit: int = Query(default=50, ge=1, le=500),
) -> List[Dict[str, Any]]:
    return engine.list_ai_logs(
        course_id=course_id, prompt_kind=prompt_kind, status=status, limit=limit
    )


@router.get("/stats")
async def stats(engine: EngineDep, course_id: Optional[int] = None) -> Dict[str, Any]:
    return engine.ai_stats(course_id)


@router.get("/{correlation_id}")
async def get_log(correlation_id: str, engine: EngineDep) -> Dict[str, Any]:
    return engine.get_ai_log(correlation_id)
