"""
Enrollment endpoints: join, current step, answers, advance, restart.
"""

from typing import Any, Dict, Union

from fastapi import APIRouter
from pydantic import BaseModel, Field

from adapt.api.dependencies import EngineDep
from adapt.core.models import AttemptOutcome, CompletedState, Course, Enrollment, Step

router = APIRouter(tags=["enrollments"])

# Grading data never leaves the server
HIDDEN_CONTENT_FIELDS = {"correct_index", "explanation", "ideal_answer", "rubric"}


class JoinRequest(BaseModel):
    learner_id: str = Field(min_length=1)


class JoinByCodeRequest(BaseModel):
    learner_id: str = Field(min_length=1)
    join_code: str = Field(pattern=r"^\d{6}$")


class AnswerRequest(BaseModel):
    step_id: int
    answer: Union[int, str]


class AdvanceRequest(BaseModel):
    step_index: int = Field(ge=0)


def learner_view(step: Step) -> Dict[str, Any]:
    data = step.model_dump(mode="json", exclude={"content": HIDDEN_CONTENT_FIELDS})
    data["kind"] = step.kind.value
    data["completed"] = False
    return data


@router.get("/courses/{course_id}")
async def get_course(course_id: int, engine: EngineDep) -> Dict[str, Any]:
    course: Course = engine.get_course(course_id)
    return {
        "id": course.id,
        "curator_id": course.curator_id,
        "title": course.title,
        "description": course.description,
        "join_code": course.join_code,
        "max_learners": course.max_learners,
        "total_steps": course.total_steps,
    }


@router.post("/courses/join", response_model=Enrollment)
async def join_by_code(body: JoinByCodeRequest, engine: EngineDep):
    return engine.join_by_code(body.learner_id, body.join_code)


@router.post("/courses/{course_id}/join", response_model=Enrollment)
async def join_course(course_id: int, body: JoinRequest, engine: EngineDep):
    return engine.join(body.learner_id, course_id)


@router.get("/enrollments/{enrollment_id}", response_model=Enrollment)
async def get_enrollment(enrollment_id: int, engine: EngineDep):
    return engine.get_enrollment(enrollment_id)


@router.get("/enrollments/{enrollment_id}/current-step")
async def current_step(enrollment_id: int, engine: EngineDep) -> Dict[str, Any]:
    """The step to render next, or `{completed: true, success_rate, ...}`."""
    current = engine.current_step(enrollment_id)
    if isinstance(current, CompletedState):
        return current.model_dump(mode="json")
    return learner_view(current)


@router.post("/enrollments/{enrollment_id}/answers", response_model=AttemptOutcome)
async def submit_answer(enrollment_id: int, body: AnswerRequest, engine: EngineDep):
    return await engine.submit_answer(enrollment_id, body.step_id, body.answer)


@router.post("/enrollments/{enrollment_id}/advance", response_model=Enrollment)
async def advance_step(enrollment_id: int, body: AdvanceRequest, engine: EngineDep):
    return engine.advance_step(enrollment_id, body.step_index)


@router.post("/enrollments/{enrollment_id}/restart", response_model=Enrollment)
async def restart(enrollment_id: int, engine: EngineDep):
    return engine.restart(enrollment_id)
