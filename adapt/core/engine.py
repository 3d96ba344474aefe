"""
TrainingEngine: wires the session engine components together.
"""

from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from adapt.core.dialogue import DialogueOrchestrator
from adapt.core.drills import DrillAttemptTracker
from adapt.core.gateway import AIGateway
from adapt.core.grounding import KnowledgeGrounder
from adapt.core.mastery import MasteryAggregator
from adapt.core.models import (
    AttemptOutcome,
    CohortReport,
    CompletedState,
    Course,
    CourseOverview,
    Enrollment,
    KnowledgeFragment,
    MasteryReport,
    RoleplaySession,
    Step,
    TurnResult,
)
from adapt.core.prompts import PromptLibrary
from adapt.core.sequencer import StepSequencer
from adapt.session.manager import RoleplaySessionStore
from adapt.storage.store import TrainingStore
from adapt.shared.exceptions import NotFoundError
from adapt.shared.llm import LLMClient
from adapt.shared.logging import get_logger

logger = get_logger(__name__)


class TrainingEngine:
    """Single entry point used by the API layer and scripts."""

    def __init__(
        self,
        store: Optional[TrainingStore] = None,
        sessions: Optional[RoleplaySessionStore] = None,
        llm: Optional[LLMClient] = None,
        prompts_dir: Optional[Path] = None
    ):
        self.store = store or TrainingStore()
        self.sessions = sessions or RoleplaySessionStore()
        self.gateway = AIGateway(self.store, llm=llm, prompts=PromptLibrary(prompts_dir))
        self.grounder = KnowledgeGrounder(self.store)
        self.tracker = DrillAttemptTracker(self.store, self.gateway, self.grounder)
        self.sequencer = StepSequencer(self.store)
        self.dialogue = DialogueOrchestrator(
            self.store, self.sessions, self.gateway, self.grounder, self.tracker
        )
        self.mastery = MasteryAggregator(self.store)

    # Courses

    def publish_course(
        self,
        course: Course,
        fragments: Optional[List[KnowledgeFragment]] = None
    ) -> Course:
        return self.store.publish_course(course, fragments)

    def get_course(self, course_id: int) -> Course:
        course = self.store.get_course(course_id)
        if course is None:
            raise NotFoundError(f"Course {course_id} not found", course_id=course_id)
        return course

    # Enrollment flow

    def join(self, learner_id: str, course_id: int) -> Enrollment:
        return self.sequencer.join(learner_id, course_id)

    def join_by_code(self, learner_id: str, join_code: str) -> Enrollment:
        return self.sequencer.join_by_code(learner_id, join_code)

    def get_enrollment(self, enrollment_id: int) -> Enrollment:
        return self.sequencer.get_enrollment(enrollment_id)

    def current_step(self, enrollment_id: int) -> Union[Step, CompletedState]:
        return self.sequencer.current_step(self.get_enrollment(enrollment_id))

    async def submit_answer(self, enrollment_id: int, step_id: int, answer: Any) -> AttemptOutcome:
        enrollment = self.get_enrollment(enrollment_id)
        step = self.store.get_step(step_id)
        if step is None:
            raise NotFoundError(f"Step {step_id} not found", step_id=step_id)
        return await self.tracker.record(enrollment, step, answer)

    def advance_step(self, enrollment_id: int, step_index: int) -> Enrollment:
        return self.sequencer.advance(enrollment_id, step_index)

    def restart(self, enrollment_id: int) -> Enrollment:
        return self.sequencer.restart(enrollment_id)

    # Roleplay

    async def start_roleplay(self, enrollment_id: int, step_id: int) -> RoleplaySession:
        return await self.dialogue.start(enrollment_id, step_id)

    def begin_roleplay(self, session_id: str) -> RoleplaySession:
        return self.dialogue.begin(session_id)

    async def roleplay_turn(self, session_id: str, learner_text: str) -> TurnResult:
        return await self.dialogue.submit_turn(session_id, learner_text)

    def get_roleplay_session(self, session_id: str) -> RoleplaySession:
        return self.dialogue.get_session(session_id)

    # Analytics

    def learner_mastery(self, learner_id: str, course_id: Optional[int] = None) -> MasteryReport:
        return self.mastery.recompute(learner_id, course_id)

    def course_mastery(self, course_id: int, min_attempts: Optional[int] = None) -> CohortReport:
        self.get_course(course_id)
        return self.mastery.recompute_cohort(course_ids=[course_id], min_attempts=min_attempts)

    def curator_mastery(self, curator_id: str, min_attempts: Optional[int] = None) -> CohortReport:
        return self.mastery.recompute_cohort(curator_id=curator_id, min_attempts=min_attempts)

    def course_overview(self, course_id: int) -> CourseOverview:
        return self.mastery.course_overview(course_id)

    # AI audit log

    def list_ai_logs(self, **filters) -> List[Dict[str, Any]]:
        return self.store.list_ai_logs(**filters)

    def get_ai_log(self, correlation_id: str) -> Dict[str, Any]:
        entry = self.store.get_ai_log(correlation_id)
        if entry is None:
            raise NotFoundError(f"AI log {correlation_id} not found", correlation_id=correlation_id)
        return entry

    def ai_stats(self, course_id: Optional[int] = None) -> Dict[str, Any]:
        return self.store.get_ai_stats(course_id)

    def purge_expired_sessions(self) -> int:
        return self.sessions.purge_expired()
