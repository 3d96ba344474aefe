"""
Tests for the HTTP surface: status codes, error bodies and learner views.
"""

import json

import pytest

from adapt_test_data import EVALUATION_JSON, grading_json, turn_json


@pytest.fixture
def quiz_course(course_factory):
    return course_factory(["quiz", "open"])


def _join(client, course_id, learner_id="learner-1"):
    response = client.post(f"/courses/{course_id}/join", json={"learner_id": learner_id})
    assert response.status_code == 200
    return response.json()


def test_get_course(client, quiz_course):
    response = client.get(f"/courses/{quiz_course.id}")

    assert response.status_code == 200
    assert response.json()["total_steps"] == 2


def test_unknown_course_is_404(client):
    response = client.get("/courses/999")

    assert response.status_code == 404
    assert response.json()["code"] == "NOT_FOUND"


def test_join_is_idempotent(client, quiz_course):
    first = _join(client, quiz_course.id)
    second = _join(client, quiz_course.id)

    assert first["id"] == second["id"]
    assert first["last_step_index"] == 0


def test_join_requires_learner_id(client, quiz_course):
    response = client.post(f"/courses/{quiz_course.id}/join", json={"learner_id": ""})
    assert response.status_code == 422


def test_join_by_code(client, quiz_course):
    course = client.get(f"/courses/{quiz_course.id}").json()
    assert course["join_code"] == quiz_course.join_code
    assert course["max_learners"] is None

    response = client.post(
        "/courses/join", json={"learner_id": "learner-1", "join_code": course["join_code"]}
    )

    assert response.status_code == 200
    assert response.json()["course_id"] == quiz_course.id


def test_join_by_unknown_code_is_404(client, quiz_course):
    unknown = "000000" if quiz_course.join_code != "000000" else "111111"
    response = client.post("/courses/join", json={"learner_id": "learner-1", "join_code": unknown})

    assert response.status_code == 404
    assert response.json()["code"] == "NOT_FOUND"


def test_full_course_rejects_new_learner_with_403(client, course_factory):
    course = course_factory(["quiz"], max_learners=1)
    _join(client, course.id, "learner-1")

    by_id = client.post(f"/courses/{course.id}/join", json={"learner_id": "learner-2"})
    by_code = client.post(
        "/courses/join", json={"learner_id": "learner-2", "join_code": course.join_code}
    )

    assert by_id.status_code == 403
    assert by_id.json()["code"] == "LEARNER_LIMIT_REACHED"
    assert by_code.status_code == 403
    # Enrolled learners are unaffected
    assert _join(client, course.id, "learner-1")["course_id"] == course.id


def test_current_step_hides_grading_fields(client, quiz_course):
    enrollment = _join(client, quiz_course.id)

    response = client.get(f"/enrollments/{enrollment['id']}/current-step")

    data = response.json()
    assert data["kind"] == "quiz"
    assert data["completed"] is False
    assert data["content"]["options"] == ["right", "wrong", "also wrong"]
    assert "correct_index" not in data["content"]
    assert "explanation" not in data["content"]


def test_answer_and_advance(client, quiz_course, mock_llm):
    enrollment = _join(client, quiz_course.id)
    quiz, open_step = quiz_course.steps

    wrong = client.post(
        f"/enrollments/{enrollment['id']}/answers",
        json={"step_id": quiz.id, "answer": 2},
    )
    assert wrong.status_code == 200
    assert wrong.json()["retry_owed"] is True
    assert wrong.json()["explanation"] == "The first option follows the policy."

    owed = client.post(f"/enrollments/{enrollment['id']}/advance", json={"step_index": 0})
    assert owed.status_code == 400
    assert owed.json()["code"] == "RETRY_OWED"

    right = client.post(
        f"/enrollments/{enrollment['id']}/answers",
        json={"step_id": quiz.id, "answer": 0},
    )
    assert right.json()["attempt_type"] == "drill_1"

    advanced = client.post(f"/enrollments/{enrollment['id']}/advance", json={"step_index": 0})
    assert advanced.status_code == 200
    assert advanced.json()["progress_pct"] == 50

    duplicate = client.post(f"/enrollments/{enrollment['id']}/advance", json={"step_index": 0})
    assert duplicate.status_code == 409
    assert duplicate.json()["code"] == "STALE_INDEX"

    current = client.get(f"/enrollments/{enrollment['id']}/current-step").json()
    assert current["kind"] == "open"
    assert "ideal_answer" not in current["content"]

    mock_llm.set_response(grading_json(["MATCH", "MATCH"]))
    graded = client.post(
        f"/enrollments/{enrollment['id']}/answers",
        json={"step_id": open_step.id, "answer": "Offer an exchange or store credit"},
    )
    assert graded.json()["score"] == 10

    finished = client.post(f"/enrollments/{enrollment['id']}/advance", json={"step_index": 1})
    assert finished.json()["is_completed"] is True

    summary = client.get(f"/enrollments/{enrollment['id']}/current-step").json()
    assert summary["completed"] is True
    assert summary["classification"] == "needs_repeat"
    assert summary["success_rate"] == pytest.approx(2 / 3)


def test_out_of_range_answer_is_400(client, quiz_course):
    enrollment = _join(client, quiz_course.id)

    response = client.post(
        f"/enrollments/{enrollment['id']}/answers",
        json={"step_id": quiz_course.steps[0].id, "answer": 9},
    )

    assert response.status_code == 400
    assert response.json()["code"] == "VALIDATION_ERROR"


def test_closed_episode_is_400(client, quiz_course):
    enrollment = _join(client, quiz_course.id)
    body = {"step_id": quiz_course.steps[0].id, "answer": 0}

    client.post(f"/enrollments/{enrollment['id']}/answers", json=body)
    response = client.post(f"/enrollments/{enrollment['id']}/answers", json=body)

    assert response.status_code == 400
    assert response.json()["code"] == "EPISODE_CLOSED"


def test_roleplay_endpoints(client, course_factory, mock_llm):
    course = course_factory(["roleplay"])
    enrollment = _join(client, course.id)
    mock_llm.set_responses([turn_json("Hmm."), turn_json("Okay."), json.dumps(EVALUATION_JSON)])

    session = client.post(
        "/roleplay/sessions",
        json={"enrollment_id": enrollment["id"], "step_id": course.steps[0].id},
    ).json()
    assert session["phase"] == "scenario"

    begun = client.post(f"/roleplay/sessions/{session['session_id']}/begin").json()
    assert begun["phase"] == "dialogue"
    assert begun["turns"][0]["role"] == "ai"

    for text in ("Sorry about that.", "We can exchange it.", "Here is store credit."):
        result = client.post(
            f"/roleplay/sessions/{session['session_id']}/turns", json={"text": text}
        ).json()

    assert result["phase"] == "evaluation"
    assert result["evaluation"]["score_0_10"] == 8
    assert result["outcome"]["is_correct"] is True

    late = client.post(f"/roleplay/sessions/{session['session_id']}/turns", json={"text": "Hi"})
    assert late.status_code == 400
    assert late.json()["code"] == "INVALID_PHASE"

    stored = client.get(f"/roleplay/sessions/{session['session_id']}").json()
    assert len(stored["turns"]) == 6


def test_unknown_session_is_404(client):
    response = client.get("/roleplay/sessions/missing")
    assert response.status_code == 404


def test_mastery_and_ai_log_endpoints(client, course_factory, mock_llm):
    course = course_factory(["open"])
    enrollment = _join(client, course.id)
    mock_llm.set_response(grading_json(["MISS", "MISS"]))

    client.post(
        f"/enrollments/{enrollment['id']}/answers",
        json={"step_id": course.steps[0].id, "answer": "No idea"},
    )

    learner = client.get("/mastery/learners/learner-1", params={"course_id": course.id}).json()
    assert learner["needs_repeat"] == ["objections"]
    assert learner["tag_stats"][0]["accuracy"] == 0.0

    cohort = client.get(f"/mastery/courses/{course.id}", params={"min_attempts": 1}).json()
    assert [t["tag"] for t in cohort["problem_topics"]] == ["objections"]

    curator = client.get("/mastery/curators/curator-1").json()
    assert curator["course_ids"] == [course.id]

    overview = client.get(f"/mastery/courses/{course.id}/overview").json()
    assert overview["learner_count"] == 1

    logs = client.get("/ai-logs", params={"course_id": course.id}).json()
    assert len(logs) == 1
    assert logs[0]["prompt_kind"] == "grade_open"

    entry = client.get(f"/ai-logs/{logs[0]['correlation_id']}").json()
    assert entry["status"] == "success"

    stats = client.get("/ai-logs/stats").json()
    assert stats["total_calls"] == 1
    assert stats["success_rate"] == 100

    assert client.get("/ai-logs/unknown").status_code == 404


def test_ai_failure_maps_to_degraded_not_error(client, course_factory, mock_llm):
    course = course_factory(["open"])
    enrollment = _join(client, course.id)
    mock_llm.set_response("garbage")

    response = client.post(
        f"/enrollments/{enrollment['id']}/answers",
        json={"step_id": course.steps[0].id, "answer": "Offer an exchange"},
    )

    assert response.status_code == 200
    assert response.json()["grading_degraded"] is True
