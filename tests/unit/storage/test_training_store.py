"""
Tests for TrainingStore: WAL, publication, attempt log and compare-and-set updates.
"""

import pytest

from adapt.core.models import (
    AttemptType,
    Course,
    DrillAttempt,
    QuizContent,
    Step,
)
from adapt.shared.exceptions import (
    DuplicateAttemptError,
    LearnerLimitError,
    StaleIndexError,
    ValidationError,
)


def _attempt(enrollment, step, attempt_type=AttemptType.INITIAL, is_correct=True, score=10):
    return DrillAttempt(
        enrollment_id=enrollment.id,
        step_id=step.id,
        course_id=step.course_id,
        learner_id=enrollment.learner_id,
        pass_number=enrollment.pass_number,
        attempt_type=attempt_type,
        is_correct=is_correct,
        user_answer="0",
        score=score,
        tag=step.tag,
    )


def test_wal_mode_enabled(store):
    with store._get_connection() as conn:
        result = conn.execute("PRAGMA journal_mode").fetchone()
        assert result[0].upper() == "WAL"


def test_publish_course_round_trips_steps(store, course_factory):
    course = course_factory(["quiz", "open", "roleplay"], tags=["a", None, "c"])

    loaded = store.get_course(course.id)

    assert [s.order_index for s in loaded.steps] == [0, 1, 2]
    assert [s.kind.value for s in loaded.steps] == ["quiz", "open", "roleplay"]
    assert loaded.steps[1].tag is None
    assert loaded.steps[0].content.correct_index == 0
    assert loaded.steps[2].content.scenario.turns_total == 6


def test_publish_rejects_gaps_in_step_order(store):
    content = QuizContent(prompt="Q", options=["a", "b"], correct_index=0)
    course = Course(
        curator_id="c1",
        title="Broken",
        steps=[Step(order_index=0, content=content), Step(order_index=2, content=content)],
    )
    with pytest.raises(ValueError):
        store.publish_course(course)


def test_fragments_listed_in_document_order(store, course_factory):
    course = course_factory(["quiz"], fragments=[
        {"position": 2, "content": "third"},
        {"position": 0, "content": "first", "tags": ["greeting"]},
        {"position": 1, "content": "second"},
    ])

    fragments = store.list_fragments(course.id)

    assert [f.content for f in fragments] == ["first", "second", "third"]
    assert fragments[0].tags == ["greeting"]


def test_get_or_create_enrollment_is_idempotent(store, course_factory):
    course = course_factory(["quiz"])

    first, created = store.get_or_create_enrollment("learner-1", course.id)
    second, created_again = store.get_or_create_enrollment("learner-1", course.id)

    assert created is True
    assert created_again is False
    assert first.id == second.id


def test_record_attempt_updates_counters(store, course_factory):
    course = course_factory(["quiz"])
    enrollment, _ = store.get_or_create_enrollment("learner-1", course.id)
    step = course.steps[0]

    store.record_attempt(_attempt(enrollment, step, is_correct=False, score=0))
    store.record_attempt(_attempt(enrollment, step, AttemptType.DRILL_1, is_correct=True, score=10))

    updated = store.get_enrollment(enrollment.id)
    assert updated.total_answers == 2
    assert updated.correct_answers == 1
    assert updated.score_points == 10


def test_duplicate_attempt_slot_rejected_without_side_effects(store, course_factory):
    course = course_factory(["quiz"])
    enrollment, _ = store.get_or_create_enrollment("learner-1", course.id)
    step = course.steps[0]
    store.record_attempt(_attempt(enrollment, step, is_correct=False, score=0))

    with pytest.raises(DuplicateAttemptError):
        store.record_attempt(_attempt(enrollment, step, is_correct=True))

    updated = store.get_enrollment(enrollment.id)
    assert updated.total_answers == 1
    assert updated.correct_answers == 0
    assert len(store.list_episode_attempts(enrollment.id, step.id, 1)) == 1


def test_advance_is_compare_and_set(store, course_factory):
    course = course_factory(["quiz", "quiz"])
    enrollment, _ = store.get_or_create_enrollment("learner-1", course.id)

    advanced = store.advance_enrollment(
        enrollment.id, 0, 1, {"last_step_index": 1, "progress_pct": 50}
    )
    assert advanced.last_step_index == 1

    with pytest.raises(StaleIndexError):
        store.advance_enrollment(enrollment.id, 0, 1, {"last_step_index": 1, "progress_pct": 50})

    assert store.get_enrollment(enrollment.id).last_step_index == 1


def test_restart_keeps_best_stats(store, course_factory):
    course = course_factory(["quiz"])
    enrollment, _ = store.get_or_create_enrollment("learner-1", course.id)
    store.advance_enrollment(enrollment.id, 0, 1, {
        "last_step_index": 1,
        "progress_pct": 100,
        "is_completed": 1,
        "last_success_rate": 0.9,
        "classification": "completed",
        "best_success_rate": 0.9,
        "completed_passes": 1,
    })

    restarted = store.restart_enrollment(enrollment.id, 1)

    assert restarted.pass_number == 2
    assert restarted.last_step_index == 0
    assert restarted.is_completed is False
    assert restarted.total_answers == 0
    assert restarted.best_success_rate == 0.9
    assert restarted.completed_passes == 1

    with pytest.raises(StaleIndexError):
        store.restart_enrollment(enrollment.id, 1)


def test_list_attempts_filters_by_learner_and_course(store, course_factory):
    first = course_factory(["quiz"])
    second = course_factory(["quiz"])
    a, _ = store.get_or_create_enrollment("learner-1", first.id)
    b, _ = store.get_or_create_enrollment("learner-2", second.id)
    store.record_attempt(_attempt(a, first.steps[0]))
    store.record_attempt(_attempt(b, second.steps[0]))

    assert len(store.list_attempts(learner_id="learner-1")) == 1
    assert len(store.list_attempts(course_ids=[first.id, second.id])) == 2
    assert store.list_attempts(course_ids=[]) == []


def test_ai_log_queries_and_stats(store):
    for i, status in enumerate(["success", "success", "error"]):
        store.log_ai_interaction({
            "correlation_id": f"corr{i}",
            "course_id": 1,
            "prompt_kind": "next_turn",
            "fragment_ids": [1, 2],
            "fragment_previews": ["[1] text..."],
            "latency_ms": 100 * (i + 1),
            "status": status,
            "error_code": "AI_TIMEOUT" if status == "error" else None,
        })

    errors = store.list_ai_logs(status="error")
    assert [log["correlation_id"] for log in errors] == ["corr2"]
    assert store.get_ai_log("corr0")["fragment_ids"] == [1, 2]
    assert store.get_ai_log("missing") is None

    stats = store.get_ai_stats(course_id=1)
    assert stats["total_calls"] == 3
    assert stats["success_calls"] == 2
    assert stats["error_calls"] == 1
    assert stats["success_rate"] == 67
    assert stats["avg_latency_ms"] == 200


def test_ping(store):
    assert store.ping() is True


def test_publish_assigns_unique_join_codes(store, course_factory):
    first = course_factory(["quiz"])
    second = course_factory(["quiz"])

    assert len(first.join_code) == 6
    assert first.join_code.isdigit()
    assert first.join_code != second.join_code
    assert store.get_course_by_join_code(second.join_code).id == second.id
    assert store.get_course_by_join_code("unknown") is None


def test_publish_keeps_given_join_code_and_rejects_reuse(store):
    content = QuizContent(prompt="Q", options=["a", "b"], correct_index=0)
    course = Course(
        curator_id="c1",
        title="Coded",
        join_code="123456",
        max_learners=5,
        steps=[Step(order_index=0, content=content)],
    )

    published = store.publish_course(course)
    assert published.join_code == "123456"
    assert published.max_learners == 5

    with pytest.raises(ValidationError):
        store.publish_course(course)
    assert store.get_course_by_join_code("123456").id == published.id


def test_enrollment_respects_learner_limit(store, course_factory):
    course = course_factory(["quiz"], max_learners=2)
    store.get_or_create_enrollment("learner-1", course.id)
    store.get_or_create_enrollment("learner-2", course.id)

    with pytest.raises(LearnerLimitError):
        store.get_or_create_enrollment("learner-3", course.id)

    # Existing learners can still come back
    again, created = store.get_or_create_enrollment("learner-2", course.id)
    assert created is False
    assert len(store.list_enrollments_by_course(course.id)) == 2


def test_attempt_linked_to_session_is_found_and_unique(store, course_factory):
    course = course_factory(["roleplay"])
    enrollment, _ = store.get_or_create_enrollment("learner-1", course.id)
    step = course.steps[0]

    attempt = _attempt(enrollment, step, is_correct=False, score=3).model_copy(
        update={"session_id": "session-a"}
    )
    recorded = store.record_attempt(attempt)

    assert store.find_attempt_by_session("session-a").id == recorded.id
    assert store.find_attempt_by_session("session-b") is None

    with pytest.raises(DuplicateAttemptError):
        store.record_attempt(attempt.model_copy(update={"attempt_type": AttemptType.DRILL_1}))
    assert store.get_enrollment(enrollment.id).total_answers == 1
