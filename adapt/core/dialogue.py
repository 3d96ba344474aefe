"""
DialogueOrchestrator: the fixed six-turn roleplay protocol.

Phases: SCENARIO -> DIALOGUE -> EVALUATION. Turn 1 is the scenario's opening
line; the learner speaks on even turns; after turn 6 the dialogue is graded.
The orchestrator only moves when the learner submits a turn.
"""

import uuid
from typing import List

from adapt.core.drills import DrillAttemptTracker
from adapt.core.gateway import AIGateway
from adapt.core.grounding import GroundingSelection, KnowledgeGrounder
from adapt.core.models import (
    DEGRADED_SCORE,
    OPEN_PASS_SCORE,
    ROLEPLAY_TURNS,
    DialoguePhase,
    Evaluation,
    RoleplayContent,
    RoleplayScenario,
    RoleplaySession,
    Step,
    StepKind,
    Turn,
    TurnResult,
    TurnRole,
)
from adapt.core.prompts import PromptKind, format_transcript
from adapt.session.manager import RoleplaySessionStore
from adapt.storage.store import TrainingStore
from adapt.shared.exceptions import (
    AIError,
    InvalidPhaseError,
    NotFoundError,
    ValidationError,
)
from adapt.shared.logging import get_logger

logger = get_logger(__name__)

NEUTRAL_CONTINUATION = "I see. Could you tell me a bit more about how you would handle this?"
DEFAULT_OPENING_LINE = "Hello, I have a problem and I hope you can help me with it."


def fallback_evaluation() -> Evaluation:
    return Evaluation(
        score_0_10=DEGRADED_SCORE,
        verdict="Automatic evaluation unavailable",
        strengths=["You carried the conversation through all turns."],
        improvements=["Retry the scenario later to get detailed feedback on your replies."],
        better_example=(
            "Acknowledge the customer's concern, ask a clarifying question, "
            "then offer a concrete next step."
        ),
        degraded=True,
    )


def evaluation_passed(evaluation: Evaluation) -> bool:
    """Degraded evaluations pass, the same as degraded open-answer grading."""
    return evaluation.degraded or evaluation.score_0_10 >= OPEN_PASS_SCORE


def fallback_scenario(content: RoleplayContent) -> RoleplayScenario:
    """Deterministic scenario built only from the authored step content."""
    return RoleplayScenario(
        situation=content.brief,
        learner_role=content.learner_role,
        goal=content.task or "Understand the customer's need and agree on a next step.",
        constraints=[],
        ai_persona=content.ai_role,
        opening_line=DEFAULT_OPENING_LINE,
    )


class DialogueOrchestrator:
    """Drives roleplay sessions and turns their evaluation into a drill attempt."""

    def __init__(
        self,
        store: TrainingStore,
        sessions: RoleplaySessionStore,
        gateway: AIGateway,
        grounder: KnowledgeGrounder,
        tracker: DrillAttemptTracker
    ):
        self.store = store
        self.sessions = sessions
        self.gateway = gateway
        self.grounder = grounder
        self.tracker = tracker

    async def start(self, enrollment_id: int, step_id: int) -> RoleplaySession:
        """
        Open a session for the enrollment's current roleplay step.

        An unevaluated session of the same episode is returned instead of a
        new one. An evaluated session whose attempt is missing gets its
        attempt recorded first. Evaluated sessions are never reused.
        """
        enrollment = self.store.get_enrollment(enrollment_id)
        if enrollment is None:
            raise NotFoundError(f"Enrollment {enrollment_id} not found", enrollment_id=enrollment_id)
        step = self.store.get_step(step_id)
        if step is None:
            raise NotFoundError(f"Step {step_id} not found", step_id=step_id)
        if step.kind != StepKind.ROLEPLAY:
            raise ValidationError(f"Step {step_id} is not a roleplay step", step_id=step_id)

        self.tracker.open_episode(enrollment, step)

        pending = self.sessions.find_open(enrollment.id, step.id, enrollment.pass_number)
        if pending is not None:
            if pending.evaluation is None:
                logger.info(f"Resuming roleplay session {pending.session_id}")
                return pending
            self._record_evaluation(pending)
            enrollment = self.store.get_enrollment(enrollment_id)
            self.tracker.open_episode(enrollment, step)

        scenario = step.content.scenario
        if scenario is None:
            scenario = await self._generate_scenario(step, enrollment.learner_id)

        session = RoleplaySession(
            session_id=uuid.uuid4().hex,
            enrollment_id=enrollment.id,
            step_id=step.id,
            course_id=step.course_id,
            learner_id=enrollment.learner_id,
            pass_number=enrollment.pass_number,
            tag=step.tag,
            scenario=scenario,
        )
        return self.sessions.create(session)

    def begin(self, session_id: str) -> RoleplaySession:
        """Enter DIALOGUE with the opening line as turn 1. Safe to call twice."""
        session = self.sessions.get(session_id)
        if session.phase == DialoguePhase.DIALOGUE:
            return session
        if session.phase != DialoguePhase.SCENARIO:
            raise InvalidPhaseError(
                f"Session {session_id} is in phase {session.phase.value}",
                session_id=session_id
            )

        opening = Turn(seq=1, role=TurnRole.AI, text=session.scenario.opening_line)
        return self.sessions.save_turns(session_id, 0, [opening], DialoguePhase.DIALOGUE)

    def get_session(self, session_id: str) -> RoleplaySession:
        return self.sessions.get(session_id)

    async def submit_turn(self, session_id: str, learner_text: str) -> TurnResult:
        """
        Accept one learner turn and answer with the next AI turn or the evaluation.

        The transcript is written only after the AI call resolves, so a
        cancelled request leaves the session exactly as it was.
        """
        text = (learner_text or "").strip()
        if not text:
            raise ValidationError("Learner turn must be non-empty text", session_id=session_id)

        session = self.sessions.get(session_id)
        if session.phase == DialoguePhase.EVALUATION and session.attempt_id is None:
            return self._record_evaluation(session)
        if session.phase != DialoguePhase.DIALOGUE:
            raise InvalidPhaseError(
                f"Session {session_id} is in phase {session.phase.value}",
                session_id=session_id
            )
        if not session.turns or session.turns[-1].role != TurnRole.AI:
            raise InvalidPhaseError(
                f"Session {session_id} is not waiting for a learner turn",
                session_id=session_id
            )

        expected_count = len(session.turns)
        transcript = session.turns + [
            Turn(seq=session.next_seq, role=TurnRole.LEARNER, text=text)
        ]
        grounding = self._grounding(session)

        if len(transcript) == ROLEPLAY_TURNS:
            return await self._finish(session, transcript, grounding)

        ai_turn = await self._next_turn(session, transcript, grounding)
        self.sessions.save_turns(
            session_id, expected_count, transcript + [ai_turn], DialoguePhase.DIALOGUE
        )
        return TurnResult(
            session_id=session_id,
            phase=DialoguePhase.DIALOGUE,
            ai_text=ai_turn.text,
            turn_number=ai_turn.seq,
        )

    async def _finish(
        self,
        session: RoleplaySession,
        transcript: List[Turn],
        grounding: GroundingSelection
    ) -> TurnResult:
        enrollment = self.store.get_enrollment(session.enrollment_id)
        step = self.store.get_step(session.step_id)
        # The episode may have closed while this session was in flight
        self.tracker.open_episode(enrollment, step)

        evaluation = await self._evaluate(session, transcript, grounding)
        saved = self.sessions.save_turns(
            session.session_id,
            len(transcript) - 1,
            transcript,
            DialoguePhase.EVALUATION,
            evaluation
        )
        logger.info(
            f"Roleplay session {session.session_id} evaluated: "
            f"score={evaluation.score_0_10} degraded={evaluation.degraded}"
        )
        return self._record_evaluation(saved)

    def _record_evaluation(self, session: RoleplaySession) -> TurnResult:
        """
        Write the drill attempt for an evaluated session and link it.

        Safe to repeat: the attempt is keyed on the session id, so a call
        that failed halfway is completed by the next one.
        """
        evaluation = session.evaluation
        enrollment = self.store.get_enrollment(session.enrollment_id)
        step = self.store.get_step(session.step_id)
        learner_lines = " | ".join(t.text for t in session.turns if t.role == TurnRole.LEARNER)

        outcome = self.tracker.record_result(
            enrollment,
            step,
            is_correct=evaluation_passed(evaluation),
            score=evaluation.score_0_10,
            user_answer=learner_lines,
            degraded=evaluation.degraded,
            session_id=session.session_id,
        )
        self.sessions.mark_recorded(session.session_id, outcome.attempt_id)

        return TurnResult(
            session_id=session.session_id,
            phase=DialoguePhase.EVALUATION,
            turn_number=len(session.turns),
            evaluation=evaluation,
            outcome=outcome,
        )

    def _grounding(self, session: RoleplaySession) -> GroundingSelection:
        scenario = session.scenario
        return self.grounder.select(
            session.course_id,
            session.tag,
            query=f"{scenario.situation} {scenario.goal}"
        )

    async def _next_turn(
        self,
        session: RoleplaySession,
        transcript: List[Turn],
        grounding: GroundingSelection
    ) -> Turn:
        seq = len(transcript) + 1
        try:
            result = await self.gateway.generate(
                PromptKind.NEXT_TURN,
                {
                    "scenario": session.scenario.model_dump_json(indent=2),
                    "transcript": format_transcript(transcript, ai_label=session.scenario.ai_persona),
                    "turn_number": seq,
                },
                grounding,
                course_id=session.course_id,
                learner_id=session.learner_id
            )
        except AIError as e:
            logger.warning(f"Next turn degraded for session {session.session_id}: {e.code}")
            return Turn(seq=seq, role=TurnRole.AI, text=NEUTRAL_CONTINUATION, degraded=True)

        output = result.output
        return Turn(
            seq=seq,
            role=TurnRole.AI,
            text=output.reply_text,
            should_escalate=output.should_escalate,
            escalation_reason=output.escalation_reason or None,
        )

    async def _evaluate(
        self,
        session: RoleplaySession,
        transcript: List[Turn],
        grounding: GroundingSelection
    ) -> Evaluation:
        try:
            result = await self.gateway.generate(
                PromptKind.EVALUATE,
                {
                    "scenario": session.scenario.model_dump_json(indent=2),
                    "transcript": format_transcript(transcript, ai_label=session.scenario.ai_persona),
                },
                grounding,
                course_id=session.course_id,
                learner_id=session.learner_id
            )
        except AIError as e:
            logger.warning(f"Evaluation degraded for session {session.session_id}: {e.code}")
            return fallback_evaluation()

        return result.output.model_copy(update={"degraded": False})

    async def _generate_scenario(self, step: Step, learner_id: str) -> RoleplayScenario:
        content: RoleplayContent = step.content
        course = self.store.get_course(step.course_id)
        grounding = self.grounder.select(step.course_id, step.tag, query=content.brief)

        try:
            result = await self.gateway.generate(
                PromptKind.SCENARIO,
                {
                    "course_title": course.title if course else "",
                    "learner_role": content.learner_role,
                    "brief": content.brief,
                    "ai_role": content.ai_role,
                },
                grounding,
                course_id=step.course_id,
                learner_id=learner_id
            )
        except AIError as e:
            logger.warning(f"Scenario generation degraded for step {step.id}: {e.code}")
            return fallback_scenario(content)

        return result.output.scenario
