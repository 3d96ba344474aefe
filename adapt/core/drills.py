"""
DrillAttemptTracker: grade one submission and decide whether a retry is owed.

An episode is the attempt history of one (enrollment, step) pair in one pass.
Attempts run initial -> drill_1 -> drill_2, stop at the first correct answer
and never exceed MAX_ATTEMPTS.
"""

from typing import Any, List, Optional, Tuple

from adapt.core.gateway import AIGateway
from adapt.core.grounding import KnowledgeGrounder
from adapt.core.models import (
    ATTEMPT_SEQUENCE,
    DEGRADED_SCORE,
    MAX_ATTEMPTS,
    OPEN_PASS_SCORE,
    AnswerFeedback,
    AttemptOutcome,
    DrillAttempt,
    Enrollment,
    GradingMatch,
    Step,
    StepKind,
    round_half_up,
)
from adapt.core.prompts import OpenGradingOutput, PromptKind
from adapt.storage.store import TrainingStore
from adapt.shared.exceptions import (
    AIError,
    EpisodeClosedError,
    StaleIndexError,
    ValidationError,
)
from adapt.shared.logging import get_logger

logger = get_logger(__name__)


def grading_score(matches: List[GradingMatch]) -> int:
    """10 * (MATCH + 0.5 * PARTIAL) / total, rounded half up."""
    if not matches:
        return 0
    full = sum(1 for m in matches if m.status == "MATCH")
    partial = sum(1 for m in matches if m.status == "PARTIAL")
    return round_half_up((full + 0.5 * partial) / len(matches) * 10)


def is_episode_terminal(attempts: List[DrillAttempt]) -> bool:
    return len(attempts) >= MAX_ATTEMPTS or any(a.is_correct for a in attempts)


def outcome_for(
    attempt: DrillAttempt,
    explanation: Optional[str] = None,
    feedback: Optional[AnswerFeedback] = None
) -> AttemptOutcome:
    attempt_number = ATTEMPT_SEQUENCE.index(attempt.attempt_type) + 1
    return AttemptOutcome(
        attempt_id=attempt.id,
        is_correct=attempt.is_correct,
        attempt_type=attempt.attempt_type,
        retry_owed=not attempt.is_correct and attempt_number < MAX_ATTEMPTS,
        attempt_number=attempt_number,
        score=attempt.score,
        grading_degraded=attempt.grading_degraded,
        explanation=explanation,
        feedback=feedback,
    )


def parse_quiz_answer(answer: Any, option_count: int) -> int:
    if isinstance(answer, bool):
        raise ValidationError("Quiz answer must be an option index")
    if isinstance(answer, str) and answer.strip().lstrip("-").isdigit():
        answer = int(answer.strip())
    if not isinstance(answer, int):
        raise ValidationError("Quiz answer must be an option index")
    if not 0 <= answer < option_count:
        raise ValidationError(
            f"Answer index {answer} out of range for {option_count} options",
            answer=answer
        )
    return answer


class DrillAttemptTracker:
    """Server-side authority over attempt sequencing, grading and counters."""

    def __init__(
        self,
        store: TrainingStore,
        gateway: AIGateway,
        grounder: KnowledgeGrounder
    ):
        self.store = store
        self.gateway = gateway
        self.grounder = grounder

    def episode_attempts(self, enrollment: Enrollment, step: Step) -> List[DrillAttempt]:
        return self.store.list_episode_attempts(enrollment.id, step.id, enrollment.pass_number)

    def open_episode(self, enrollment: Enrollment, step: Step) -> List[DrillAttempt]:
        """
        Check that `step` can take another attempt and return its prior attempts.

        Raises:
            ValidationError: step belongs to another course
            EpisodeClosedError: pass finished, or episode already terminal
            StaleIndexError: step is not the enrollment's current step
        """
        if step.course_id != enrollment.course_id:
            raise ValidationError(
                f"Step {step.id} does not belong to course {enrollment.course_id}",
                step_id=step.id
            )
        if enrollment.is_completed:
            raise EpisodeClosedError(
                f"Enrollment {enrollment.id} already finished pass {enrollment.pass_number}",
                enrollment_id=enrollment.id
            )
        if step.order_index != enrollment.last_step_index:
            raise StaleIndexError(
                f"Step {step.order_index} is not the current step {enrollment.last_step_index}",
                enrollment_id=enrollment.id,
                step_index=step.order_index
            )

        prior = self.episode_attempts(enrollment, step)
        if is_episode_terminal(prior):
            raise EpisodeClosedError(
                f"Episode for step {step.id} is closed; advance to continue",
                enrollment_id=enrollment.id,
                step_id=step.id
            )
        return prior

    async def record(
        self,
        enrollment: Enrollment,
        step: Step,
        answer: Any
    ) -> AttemptOutcome:
        """
        Grade and append one quiz/open attempt.

        Validation happens before grading, grading before the write, so a
        rejected or cancelled submission leaves no trace.
        """
        if step.kind == StepKind.ROLEPLAY:
            raise ValidationError(
                "Roleplay steps are answered through a roleplay session",
                step_id=step.id
            )

        prior = self.open_episode(enrollment, step)

        feedback = None
        explanation = None
        degraded = False

        if step.kind == StepKind.QUIZ:
            index = parse_quiz_answer(answer, len(step.content.options))
            is_correct = index == step.content.correct_index
            score = 10 if is_correct else 0
            user_answer = str(index)
            explanation = step.content.explanation
        else:
            if not isinstance(answer, str) or not answer.strip():
                raise ValidationError("Open answer must be non-empty text")
            user_answer = answer.strip()
            is_correct, score, degraded, feedback = await self._grade_open(
                enrollment, step, user_answer
            )

        return self._append(
            enrollment, step, prior, is_correct, score, user_answer, degraded,
            explanation=explanation, feedback=feedback
        )

    def record_result(
        self,
        enrollment: Enrollment,
        step: Step,
        is_correct: bool,
        score: int,
        user_answer: Optional[str],
        degraded: bool = False,
        session_id: Optional[str] = None
    ) -> AttemptOutcome:
        """
        Append an attempt graded elsewhere (roleplay evaluation).

        With `session_id`, a session records at most one attempt: a repeated
        call returns the outcome of the attempt already written.
        """
        if session_id is not None:
            existing = self.store.find_attempt_by_session(session_id)
            if existing is not None:
                return outcome_for(existing)

        prior = self.open_episode(enrollment, step)
        return self._append(
            enrollment, step, prior, is_correct, score, user_answer, degraded,
            session_id=session_id
        )

    def _append(
        self,
        enrollment: Enrollment,
        step: Step,
        prior: List[DrillAttempt],
        is_correct: bool,
        score: int,
        user_answer: Optional[str],
        degraded: bool,
        explanation: Optional[str] = None,
        feedback: Optional[AnswerFeedback] = None,
        session_id: Optional[str] = None
    ) -> AttemptOutcome:
        attempt = self.store.record_attempt(DrillAttempt(
            enrollment_id=enrollment.id,
            step_id=step.id,
            course_id=step.course_id,
            learner_id=enrollment.learner_id,
            pass_number=enrollment.pass_number,
            attempt_type=ATTEMPT_SEQUENCE[len(prior)],
            is_correct=is_correct,
            user_answer=user_answer,
            score=score,
            tag=step.tag,
            grading_degraded=degraded,
            session_id=session_id,
        ))

        outcome = outcome_for(attempt, explanation=explanation, feedback=feedback)
        logger.info(
            f"Recorded {attempt.attempt_type.value} for step {step.id}: "
            f"correct={is_correct} score={score} retry_owed={outcome.retry_owed}"
        )
        return outcome

    async def _grade_open(
        self,
        enrollment: Enrollment,
        step: Step,
        answer: str
    ) -> Tuple[bool, int, bool, Optional[AnswerFeedback]]:
        """Returns (is_correct, score, degraded, feedback)."""
        content = step.content
        grounding = self.grounder.select(step.course_id, step.tag, query=content.prompt)

        try:
            result = await self.gateway.generate(
                PromptKind.GRADE_OPEN,
                {
                    "question": content.prompt,
                    "tag": step.tag or "",
                    "ideal_answer": content.ideal_answer or "not provided",
                    "rubric": "; ".join(content.rubric) or "not provided",
                    "answer": answer,
                },
                grounding,
                course_id=step.course_id,
                learner_id=enrollment.learner_id
            )
        except AIError as e:
            logger.warning(f"Open grading degraded for step {step.id}: {e.code}")
            return True, DEGRADED_SCORE, True, None

        grading: OpenGradingOutput = result.output
        score = grading_score(grading.matches)
        feedback = AnswerFeedback(
            why_wrong=grading.why_wrong,
            ideal_answer=grading.ideal_answer or content.ideal_answer or "",
            missing_points=grading.missing_points,
            good_parts=grading.good_parts,
            example_phrases=grading.example_phrases,
            kb_gap=grading.kb_gap,
        )
        return score >= OPEN_PASS_SCORE, score, False, feedback
