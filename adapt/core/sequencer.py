"""
StepSequencer: resumable position of a learner in a course.
"""

from typing import Union

from adapt.core.drills import is_episode_terminal
from adapt.core.models import (
    PASS_THRESHOLD,
    CompletedState,
    Enrollment,
    PassClassification,
    Step,
    round_half_up,
)
from adapt.storage.store import TrainingStore
from adapt.shared.exceptions import (
    NotFoundError,
    RetryOwedError,
    StaleIndexError,
    ValidationError,
)
from adapt.shared.logging import get_logger

logger = get_logger(__name__)


def progress_pct(step_index: int, total_steps: int) -> int:
    """round(100 * (step_index + 1) / total_steps), clamped to [0, 100]."""
    if total_steps <= 0:
        return 0
    return max(0, min(100, round_half_up(100 * (step_index + 1) / total_steps)))


def classify(success_rate: float) -> PassClassification:
    if success_rate >= PASS_THRESHOLD:
        return PassClassification.COMPLETED
    return PassClassification.NEEDS_REPEAT


def success_rate(correct_answers: int, total_answers: int) -> float:
    return correct_answers / max(total_answers, 1)


class StepSequencer:
    """Moves enrollments through a course's ordered steps."""

    def __init__(self, store: TrainingStore):
        self.store = store

    def join(self, learner_id: str, course_id: int) -> Enrollment:
        """Enroll on first call; later calls return the existing enrollment."""
        if not learner_id:
            raise ValidationError("learner_id is required")
        if self.store.get_course(course_id) is None:
            raise NotFoundError(f"Course {course_id} not found", course_id=course_id)
        if self.store.count_steps(course_id) == 0:
            raise ValidationError(f"Course {course_id} has no steps", course_id=course_id)

        enrollment, created = self.store.get_or_create_enrollment(learner_id, course_id)
        if created:
            logger.info(f"Learner {learner_id} joined course {course_id}")
        return enrollment

    def join_by_code(self, learner_id: str, join_code: str) -> Enrollment:
        """Resolve a course from its join code, then join it."""
        code = (join_code or "").strip()
        if not code:
            raise ValidationError("join_code is required")
        course = self.store.get_course_by_join_code(code)
        if course is None:
            raise NotFoundError(f"No course with join code {code}", join_code=code)
        return self.join(learner_id, course.id)

    def get_enrollment(self, enrollment_id: int) -> Enrollment:
        enrollment = self.store.get_enrollment(enrollment_id)
        if enrollment is None:
            raise NotFoundError(f"Enrollment {enrollment_id} not found", enrollment_id=enrollment_id)
        return enrollment

    def current_step(self, enrollment: Enrollment) -> Union[Step, CompletedState]:
        """The step at `last_step_index`, or the pass summary once completed."""
        if enrollment.is_completed:
            rate = success_rate(enrollment.correct_answers, enrollment.total_answers)
            return CompletedState(
                success_rate=enrollment.last_success_rate if enrollment.last_success_rate is not None else rate,
                classification=enrollment.classification or classify(rate),
                correct_answers=enrollment.correct_answers,
                total_answers=enrollment.total_answers,
                score_points=enrollment.score_points,
            )

        steps = self.store.get_steps(enrollment.course_id)
        if enrollment.last_step_index >= len(steps):
            raise NotFoundError(
                f"Course {enrollment.course_id} has no step {enrollment.last_step_index}",
                enrollment_id=enrollment.id
            )
        return steps[enrollment.last_step_index]

    def advance(self, enrollment_id: int, step_index: int) -> Enrollment:
        """
        Move past `step_index`.

        Raises:
            StaleIndexError: step_index is not the current position (duplicate
                or out-of-order request); nothing changes
            RetryOwedError: the current step's episode is not finished yet
        """
        enrollment = self.get_enrollment(enrollment_id)
        if enrollment.is_completed or step_index != enrollment.last_step_index:
            raise StaleIndexError(
                f"Enrollment {enrollment_id} is at step {enrollment.last_step_index}, not {step_index}",
                enrollment_id=enrollment_id,
                step_index=step_index
            )

        steps = self.store.get_steps(enrollment.course_id)
        total_steps = len(steps)
        step = steps[step_index]

        attempts = self.store.list_episode_attempts(enrollment.id, step.id, enrollment.pass_number)
        if not is_episode_terminal(attempts):
            raise RetryOwedError(
                f"Step {step_index} still needs an answer before advancing",
                enrollment_id=enrollment_id,
                attempts=len(attempts)
            )

        next_index = step_index + 1
        updates = {
            "last_step_index": next_index,
            "progress_pct": progress_pct(step_index, total_steps),
        }

        if next_index >= total_steps:
            rate = success_rate(enrollment.correct_answers, enrollment.total_answers)
            classification = classify(rate)
            best = max(rate, enrollment.best_success_rate or 0.0)
            updates.update({
                "is_completed": 1,
                "last_success_rate": rate,
                "classification": classification.value,
                "best_success_rate": best,
                "completed_passes": enrollment.completed_passes + 1,
            })
            logger.info(
                f"Enrollment {enrollment_id} finished pass {enrollment.pass_number}: "
                f"rate={rate:.3f} {classification.value}"
            )

        return self.store.advance_enrollment(
            enrollment_id, step_index, enrollment.pass_number, updates
        )

    def restart(self, enrollment_id: int) -> Enrollment:
        """Start a review pass over a finished course."""
        enrollment = self.get_enrollment(enrollment_id)
        if not enrollment.is_completed:
            raise ValidationError(
                f"Enrollment {enrollment_id} has not finished the current pass",
                enrollment_id=enrollment_id
            )
        restarted = self.store.restart_enrollment(enrollment_id, enrollment.pass_number)
        logger.info(f"Enrollment {enrollment_id} started pass {restarted.pass_number}")
        return restarted
