"""
MasteryAggregator: per-topic accuracy recomputed from the full attempt history.
"""

from typing import Iterable, List, Optional

from adapt.core.models import (
    PASS_THRESHOLD,
    UNTAGGED,
    CohortReport,
    CourseOverview,
    DrillAttempt,
    MasteryReport,
    TagStat,
    round_half_up,
)
from adapt.storage.store import TrainingStore
from adapt.shared.config import settings
from adapt.shared.exceptions import NotFoundError, ValidationError
from adapt.shared.logging import get_logger

logger = get_logger(__name__)


def aggregate_tags(attempts: Iterable[DrillAttempt]) -> List[TagStat]:
    """Count attempts and errors per tag, sorted by tag name."""
    counts = {}
    for attempt in attempts:
        tag = attempt.tag or UNTAGGED
        total, errors = counts.get(tag, (0, 0))
        counts[tag] = (total + 1, errors + (0 if attempt.is_correct else 1))

    return [
        TagStat(tag=tag, attempts=total, errors=errors)
        for tag, (total, errors) in sorted(counts.items())
    ]


def weakest_first(stats: Iterable[TagStat]) -> List[TagStat]:
    """Ascending accuracy, then more attempts first, then tag name."""
    return sorted(stats, key=lambda s: (s.accuracy, -s.attempts, s.tag))


def needs_repeat(stats: Iterable[TagStat]) -> List[str]:
    return [s.tag for s in weakest_first(stats) if s.attempts >= 1 and s.accuracy < PASS_THRESHOLD]


def problem_topics(stats: Iterable[TagStat], min_attempts: int) -> List[TagStat]:
    return [
        s for s in weakest_first(stats)
        if s.attempts >= min_attempts and s.accuracy < PASS_THRESHOLD
    ]


class MasteryAggregator:
    """Read-only analytics over drill attempts."""

    def __init__(self, store: TrainingStore, min_attempts: Optional[int] = None):
        self.store = store
        if min_attempts is None:
            min_attempts = settings.mastery.problem_topic_min_attempts
        self.min_attempts = min_attempts

    def recompute(self, learner_id: str, course_id: Optional[int] = None) -> MasteryReport:
        attempts = self.store.list_attempts(
            learner_id=learner_id,
            course_ids=[course_id] if course_id is not None else None
        )
        stats = aggregate_tags(attempts)
        return MasteryReport(
            learner_id=learner_id,
            course_id=course_id,
            tag_stats=stats,
            needs_repeat=needs_repeat(stats),
        )

    def recompute_cohort(
        self,
        course_ids: Optional[List[int]] = None,
        curator_id: Optional[str] = None,
        min_attempts: Optional[int] = None
    ) -> CohortReport:
        """Cohort mastery over explicit courses or every course of a curator."""
        if course_ids is None:
            if not curator_id:
                raise ValidationError("Either course_ids or curator_id is required")
            course_ids = self.store.list_course_ids_by_curator(curator_id)

        if min_attempts is None:
            min_attempts = self.min_attempts
        stats = aggregate_tags(self.store.list_attempts(course_ids=course_ids))

        logger.debug(f"Cohort mastery over {len(course_ids)} courses: {len(stats)} tags")
        return CohortReport(
            course_ids=course_ids,
            min_attempts=min_attempts,
            tag_stats=stats,
            needs_repeat=needs_repeat(stats),
            problem_topics=problem_topics(stats, min_attempts),
        )

    def course_overview(self, course_id: int) -> CourseOverview:
        course = self.store.get_course(course_id)
        if course is None:
            raise NotFoundError(f"Course {course_id} not found", course_id=course_id)

        enrollments = self.store.list_enrollments_by_course(course_id)
        attempts = self.store.list_attempts(course_ids=[course_id])

        avg_progress = 0
        if enrollments:
            avg_progress = round_half_up(
                sum(e.progress_pct for e in enrollments) / len(enrollments)
            )
        correct = sum(1 for a in attempts if a.is_correct)

        return CourseOverview(
            course_id=course_id,
            title=course.title,
            total_steps=course.total_steps,
            learner_count=len(enrollments),
            avg_progress=avg_progress,
            completed_count=sum(1 for e in enrollments if e.is_completed),
            accuracy=correct / len(attempts) if attempts else 0.0,
        )
