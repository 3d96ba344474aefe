"""
Mastery analytics endpoints for learners and curators.
"""

from typing import Optional

from fastapi import APIRouter, Query

from adapt.api.dependencies import EngineDep
from adapt.core.models import CohortReport, CourseOverview, MasteryReport

router = APIRouter(prefix="/mastery", tags=["mastery"])


@router.get("/learners/{learner_id}", response_model=MasteryReport)
async def learner_mastery(
    learner_id: str,
    engine: EngineDep,
    course_id: Optional[int] = None,
):
    return engine.learner_mastery(learner_id, course_id)


@router.get("/courses/{course_id}", response_model=CohortReport)
async def course_mastery(
    course_id: int,
    engine: EngineDep,
    min_attempts: Optional[int] = Query(default=None, ge=1),
):
    return engine.course_mastery(course_id, min_attempts)


@router.get("/courses/{course_id}/overview", response_model=CourseOverview)
async def course_overview(course_id: int, engine: EngineDep):
    return engine.course_overview(course_id)


@router.get("/curators/{curator_id}", response_model=CohortReport)
async def curator_mastery(
    curator_id: str,
    engine: EngineDep,
    min_attempts: Optional[int] = Query(default=None, ge=1),
):
    return engine.curator_mastery(curator_id, min_attempts)
