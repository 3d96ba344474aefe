"""
Pytest fixtures for ADAPT tests.
"""

from typing import Dict, List, Optional
from unittest.mock import AsyncMock

import pytest

from adapt.core.engine import TrainingEngine
from adapt.core.models import (
    Course,
    KnowledgeFragment,
    OpenContent,
    QuizContent,
    RoleplayContent,
    Step,
)
from adapt.session.manager import RoleplaySessionStore
from adapt.storage.store import TrainingStore
from adapt_test_data import SCENARIO


@pytest.fixture
def store(tmp_path) -> TrainingStore:
    """Training store on a temporary SQLite file."""
    return TrainingStore(tmp_path / "adapt.sqlite")


@pytest.fixture
def sessions(tmp_path) -> RoleplaySessionStore:
    return RoleplaySessionStore(tmp_path / "sessions.sqlite", idle_timeout_minutes=30)


@pytest.fixture
def mock_llm():
    """Mock LLM client that returns canned JSON text."""
    mock = AsyncMock()

    def set_response(response_text: str):
        mock.get_completion.side_effect = None
        mock.get_completion.return_value = response_text

    def set_responses(responses: List):
        """Queue responses; exception instances are raised in turn."""
        mock.get_completion.side_effect = list(responses)

    mock.get_completion.return_value = "{}"
    mock.set_response = set_response
    mock.set_responses = set_responses
    return mock


@pytest.fixture
def engine(store, sessions, mock_llm, tmp_path) -> TrainingEngine:
    return TrainingEngine(
        store=store,
        sessions=sessions,
        llm=mock_llm,
        prompts_dir=tmp_path / "prompts",
    )


@pytest.fixture
def course_factory(store):
    """Publish a course from a list of step kinds."""

    def make(
        kinds: List[str],
        tags: Optional[List[Optional[str]]] = None,
        curator_id: str = "curator-1",
        fragments: Optional[List[Dict]] = None,
        authored_scenario: bool = True,
        max_learners: Optional[int] = None,
    ) -> Course:
        tags = tags or ["objections"] * len(kinds)
        steps = []
        for index, kind in enumerate(kinds):
            if kind == "quiz":
                content = QuizContent(
                    prompt=f"Question {index}",
                    options=["right", "wrong", "also wrong"],
                    correct_index=0,
                    explanation="The first option follows the policy.",
                )
            elif kind == "open":
                content = OpenContent(
                    prompt="How do you handle a refund request after 20 days?",
                    ideal_answer="Offer an exchange or store credit.",
                )
            else:
                content = RoleplayContent(
                    brief="Upset customer wants a refund",
                    learner_role="Store employee",
                    task="Agree on an exchange",
                    scenario=SCENARIO if authored_scenario else None,
                )
            steps.append(Step(order_index=index, tag=tags[index], content=content))

        course = Course(
            curator_id=curator_id,
            title="Objection handling",
            max_learners=max_learners,
            steps=steps,
        )
        knowledge = [KnowledgeFragment(**f) for f in (fragments or [])]
        return store.publish_course(course, knowledge)

    return make


@pytest.fixture
def client(engine):
    """API test client bound to the test engine (runs lifespan)."""
    from fastapi.testclient import TestClient

    from adapt.api.app import create_app

    with TestClient(create_app(engine)) as tc:
        yield tc
