"""
Tests for RoleplaySessionStore: persistence, compare-and-set turns, idle expiry.
"""

from datetime import datetime, timedelta, timezone

import pytest

from adapt.core.models import DialoguePhase, Evaluation, RoleplaySession, Turn, TurnRole
from adapt.shared.exceptions import NotFoundError, SessionExpiredError, StaleTurnError
from adapt_test_data import EVALUATION_JSON, SCENARIO


def _session(session_id: str = "s1") -> RoleplaySession:
    return RoleplaySession(
        session_id=session_id,
        enrollment_id=1,
        step_id=10,
        course_id=5,
        learner_id="learner-1",
        tag="objections",
        scenario=SCENARIO,
    )


def _age(sessions, session_id: str, minutes: int):
    stale = (datetime.now(timezone.utc) - timedelta(minutes=minutes)).isoformat()
    with sessions._get_connection() as conn:
        conn.execute(
            "UPDATE roleplay_sessions SET last_activity = ? WHERE session_id = ?",
            (stale, session_id),
        )


def test_create_and_get(sessions):
    sessions.create(_session())

    loaded = sessions.get("s1")

    assert loaded.phase == DialoguePhase.SCENARIO
    assert loaded.scenario.opening_line == SCENARIO.opening_line
    assert loaded.turns == []


def test_missing_session_raises_not_found(sessions):
    with pytest.raises(NotFoundError):
        sessions.get("nope")


def test_save_turns_is_compare_and_set(sessions):
    sessions.create(_session())
    opening = Turn(seq=1, role=TurnRole.AI, text="Hello")

    saved = sessions.save_turns("s1", 0, [opening], DialoguePhase.DIALOGUE)
    assert saved.phase == DialoguePhase.DIALOGUE
    assert [t.text for t in saved.turns] == ["Hello"]

    with pytest.raises(StaleTurnError):
        sessions.save_turns("s1", 0, [opening], DialoguePhase.DIALOGUE)


def test_evaluated_session_is_immutable(sessions):
    sessions.create(_session())
    turns = [
        Turn(seq=i + 1, role=TurnRole.AI if i % 2 == 0 else TurnRole.LEARNER, text=f"line {i}")
        for i in range(6)
    ]
    sessions.save_turns("s1", 0, turns, DialoguePhase.EVALUATION, Evaluation(**EVALUATION_JSON))

    with pytest.raises(StaleTurnError):
        sessions.save_turns("s1", 6, turns, DialoguePhase.EVALUATION, Evaluation(**EVALUATION_JSON))


def test_idle_session_expires(sessions):
    sessions.create(_session())
    _age(sessions, "s1", minutes=31)

    with pytest.raises(SessionExpiredError):
        sessions.get("s1")


def test_evaluated_session_never_expires(sessions):
    sessions.create(_session())
    turns = [
        Turn(seq=i + 1, role=TurnRole.AI if i % 2 == 0 else TurnRole.LEARNER, text=f"line {i}")
        for i in range(6)
    ]
    sessions.save_turns("s1", 0, turns, DialoguePhase.EVALUATION, Evaluation(**EVALUATION_JSON))
    _age(sessions, "s1", minutes=120)

    assert sessions.get("s1").evaluation.score_0_10 == 8


def test_purge_expired_removes_only_idle_open_sessions(sessions):
    sessions.create(_session("idle"))
    sessions.create(_session("fresh"))
    _age(sessions, "idle", minutes=45)

    assert sessions.purge_expired() == 1

    with pytest.raises(NotFoundError):
        sessions.get("idle")
    assert sessions.get("fresh").session_id == "fresh"
