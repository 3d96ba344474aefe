"""
Tests for drill attempt sequencing and grading.
"""

import pytest

from adapt.core.drills import grading_score, is_episode_terminal, parse_quiz_answer
from adapt.core.models import AttemptType, GradingMatch
from adapt.shared.exceptions import (
    EpisodeClosedError,
    StaleIndexError,
    ValidationError,
)
from adapt.shared.llm import LLMError
from adapt_test_data import grading_json


def _matches(*statuses):
    return [GradingMatch(point=f"p{i}", status=s) for i, s in enumerate(statuses)]


def test_grading_score_counts_partial_as_half():
    assert grading_score(_matches("MATCH", "MATCH", "MATCH")) == 10
    assert grading_score(_matches("MATCH", "PARTIAL", "MISS", "MISS")) == 4
    # 0.5 / 4 * 10 = 1.25
    assert grading_score(_matches("PARTIAL", "MISS", "MISS", "MISS")) == 1
    # 2.5 rounds half up
    assert grading_score(_matches("PARTIAL", "MISS")) == 3
    assert grading_score([]) == 0


def test_parse_quiz_answer():
    assert parse_quiz_answer(2, 3) == 2
    assert parse_quiz_answer(" 1 ", 3) == 1
    for bad in (3, -1, "x", True, 1.0, None):
        with pytest.raises(ValidationError):
            parse_quiz_answer(bad, 3)


@pytest.mark.asyncio
async def test_three_wrong_answers_run_the_full_drill(engine, course_factory):
    course = course_factory(["quiz", "quiz"])
    enrollment = engine.join("learner-1", course.id)
    step = course.steps[0]

    outcomes = [await engine.submit_answer(enrollment.id, step.id, 1) for _ in range(3)]

    assert [o.attempt_type for o in outcomes] == [
        AttemptType.INITIAL, AttemptType.DRILL_1, AttemptType.DRILL_2
    ]
    assert [o.retry_owed for o in outcomes] == [True, True, False]
    assert [o.attempt_number for o in outcomes] == [1, 2, 3]
    assert all(o.score == 0 for o in outcomes)
    assert outcomes[0].explanation == "The first option follows the policy."

    with pytest.raises(EpisodeClosedError):
        await engine.submit_answer(enrollment.id, step.id, 0)

    enrollment = engine.get_enrollment(enrollment.id)
    assert enrollment.total_answers == 3
    assert enrollment.correct_answers == 0


@pytest.mark.asyncio
async def test_correct_answer_closes_episode(engine, course_factory, store):
    course = course_factory(["quiz", "quiz"])
    enrollment = engine.join("learner-1", course.id)
    step = course.steps[0]

    wrong = await engine.submit_answer(enrollment.id, step.id, "2")
    right = await engine.submit_answer(enrollment.id, step.id, 0)

    assert wrong.retry_owed is True
    assert right.is_correct is True
    assert right.attempt_type == AttemptType.DRILL_1
    assert right.retry_owed is False
    assert right.score == 10

    with pytest.raises(EpisodeClosedError):
        await engine.submit_answer(enrollment.id, step.id, 0)

    attempts = store.list_episode_attempts(enrollment.id, step.id, 1)
    assert is_episode_terminal(attempts)
    assert [a.user_answer for a in attempts] == ["2", "0"]
    enrollment = engine.get_enrollment(enrollment.id)
    assert (enrollment.correct_answers, enrollment.total_answers, enrollment.score_points) == (1, 2, 10)


@pytest.mark.asyncio
async def test_out_of_range_answer_leaves_no_attempt(engine, course_factory, store):
    course = course_factory(["quiz"])
    enrollment = engine.join("learner-1", course.id)
    step = course.steps[0]

    with pytest.raises(ValidationError):
        await engine.submit_answer(enrollment.id, step.id, 5)

    assert store.list_episode_attempts(enrollment.id, step.id, 1) == []
    assert engine.get_enrollment(enrollment.id).total_answers == 0


@pytest.mark.asyncio
async def test_answer_for_non_current_step_is_stale(engine, course_factory):
    course = course_factory(["quiz", "quiz"])
    enrollment = engine.join("learner-1", course.id)

    with pytest.raises(StaleIndexError):
        await engine.submit_answer(enrollment.id, course.steps[1].id, 0)


@pytest.mark.asyncio
async def test_answer_for_other_course_step_is_rejected(engine, course_factory):
    course = course_factory(["quiz"])
    other = course_factory(["quiz"])
    enrollment = engine.join("learner-1", course.id)

    with pytest.raises(ValidationError):
        await engine.submit_answer(enrollment.id, other.steps[0].id, 0)


@pytest.mark.asyncio
async def test_roleplay_step_cannot_take_direct_answers(engine, course_factory):
    course = course_factory(["roleplay"])
    enrollment = engine.join("learner-1", course.id)

    with pytest.raises(ValidationError):
        await engine.submit_answer(enrollment.id, course.steps[0].id, "hello")


@pytest.mark.asyncio
async def test_open_answer_is_graded_by_matches(engine, course_factory, mock_llm):
    course = course_factory(["open"])
    enrollment = engine.join("learner-1", course.id)
    step = course.steps[0]
    mock_llm.set_response(grading_json(["MATCH", "PARTIAL", "MISS"]))

    outcome = await engine.submit_answer(enrollment.id, step.id, "Offer an exchange")

    # (1 + 0.5) / 3 * 10 = 5
    assert outcome.score == 5
    assert outcome.is_correct is False
    assert outcome.retry_owed is True
    assert outcome.grading_degraded is False
    assert outcome.feedback.missing_points == ["14 day window"]
    assert outcome.feedback.why_wrong == "Missed the 14 day window"


@pytest.mark.asyncio
async def test_open_answer_passes_at_six(engine, course_factory, mock_llm):
    course = course_factory(["open"])
    enrollment = engine.join("learner-1", course.id)
    mock_llm.set_response(grading_json(["MATCH", "MATCH", "PARTIAL", "MISS"]))

    outcome = await engine.submit_answer(enrollment.id, course.steps[0].id, "Exchange or credit")

    # (2 + 0.5) / 4 * 10 = 6.25
    assert outcome.score == 6
    assert outcome.is_correct is True
    assert outcome.retry_owed is False


@pytest.mark.asyncio
async def test_open_answer_grading_failure_degrades(engine, course_factory, mock_llm, store):
    course = course_factory(["open"])
    enrollment = engine.join("learner-1", course.id)
    step = course.steps[0]
    mock_llm.get_completion.side_effect = LLMError("provider down")

    outcome = await engine.submit_answer(enrollment.id, step.id, "Offer an exchange")

    assert outcome.is_correct is True
    assert outcome.score == 5
    assert outcome.grading_degraded is True
    assert outcome.feedback is None

    attempt = store.list_episode_attempts(enrollment.id, step.id, 1)[0]
    assert attempt.grading_degraded is True
    assert attempt.user_answer == "Offer an exchange"


@pytest.mark.asyncio
async def test_empty_open_answer_is_rejected(engine, course_factory, mock_llm):
    course = course_factory(["open"])
    enrollment = engine.join("learner-1", course.id)

    with pytest.raises(ValidationError):
        await engine.submit_answer(enrollment.id, course.steps[0].id, "   ")

    mock_llm.get_completion.assert_not_called()


@pytest.mark.asyncio
async def test_completed_enrollment_rejects_answers(engine, course_factory):
    course = course_factory(["quiz"])
    enrollment = engine.join("learner-1", course.id)
    step = course.steps[0]
    await engine.submit_answer(enrollment.id, step.id, 0)
    engine.advance_step(enrollment.id, 0)

    with pytest.raises(EpisodeClosedError):
        await engine.submit_answer(enrollment.id, step.id, 0)

