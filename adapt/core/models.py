"""
Pydantic models for the training engine.
"""

import math
from enum import Enum
from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, Field, computed_field, field_validator, model_validator


# Fixed policy constants
PASS_THRESHOLD = 0.80
MAX_ATTEMPTS = 3
ROLEPLAY_TURNS = 6
OPEN_PASS_SCORE = 6
DEGRADED_SCORE = 5
UNTAGGED = "untagged"


def round_half_up(value: float) -> int:
    """Round .5 away from zero for non-negative values (Python's round() is banker's)."""
    return int(math.floor(value + 0.5))


class StepKind(str, Enum):
    QUIZ = "quiz"
    OPEN = "open"
    ROLEPLAY = "roleplay"


class QuizContent(BaseModel):
    """Multiple choice question."""
    kind: Literal["quiz"] = "quiz"
    prompt: str = Field(min_length=1)
    options: List[str] = Field(min_length=2)
    correct_index: int
    explanation: Optional[str] = None

    @model_validator(mode="after")
    def check_correct_index(self) -> "QuizContent":
        if not 0 <= self.correct_index < len(self.options):
            raise ValueError(
                f"correct_index {self.correct_index} out of range for {len(self.options)} options"
            )
        return self


class OpenContent(BaseModel):
    """Free-text question graded by the model against course knowledge."""
    kind: Literal["open"] = "open"
    prompt: str = Field(min_length=1)
    ideal_answer: Optional[str] = None
    rubric: List[str] = Field(default_factory=list)


class RoleplayScenario(BaseModel):
    """Scenario descriptor for a voice roleplay."""
    situation: str = Field(min_length=1)
    learner_role: str = Field(min_length=1)
    goal: str = Field(min_length=1)
    constraints: List[str] = Field(default_factory=list)
    ai_persona: str = Field(default="Customer", min_length=1)
    opening_line: str = Field(min_length=1)
    turns_total: int = ROLEPLAY_TURNS

    @field_validator("turns_total")
    @classmethod
    def fixed_turns(cls, value: int) -> int:
        if value != ROLEPLAY_TURNS:
            raise ValueError(f"roleplay scenarios always have {ROLEPLAY_TURNS} turns")
        return value


class RoleplayContent(BaseModel):
    """Roleplay step. The scenario may be authored up front or generated on first start."""
    kind: Literal["roleplay"] = "roleplay"
    brief: str = Field(min_length=1)
    ai_role: str = "Customer"
    learner_role: str = "Employee"
    task: Optional[str] = None
    scenario: Optional[RoleplayScenario] = None


StepContent = Annotated[
    Union[QuizContent, OpenContent, RoleplayContent],
    Field(discriminator="kind"),
]


class Step(BaseModel):
    """One ordered unit of a course. Immutable once published."""
    id: Optional[int] = None
    course_id: Optional[int] = None
    order_index: int = Field(ge=0)
    tag: Optional[str] = None
    content: StepContent

    @property
    def kind(self) -> StepKind:
        return StepKind(self.content.kind)


class Course(BaseModel):
    id: Optional[int] = None
    curator_id: str
    title: str = Field(min_length=1)
    description: Optional[str] = None
    join_code: Optional[str] = Field(default=None, pattern=r"^\d{6}$")
    max_learners: Optional[int] = Field(default=None, ge=1)
    steps: List[Step] = Field(default_factory=list)

    @property
    def total_steps(self) -> int:
        return len(self.steps)


class KnowledgeFragment(BaseModel):
    """A pre-chunked unit of course knowledge, produced by ingestion."""
    id: Optional[int] = None
    course_id: Optional[int] = None
    position: int = Field(ge=0)
    content: str = Field(min_length=1)
    section_title: Optional[str] = None
    tags: List[str] = Field(default_factory=list)


class PassClassification(str, Enum):
    COMPLETED = "completed"
    NEEDS_REPEAT = "needs_repeat"


class Enrollment(BaseModel):
    """One learner's progress through one course."""
    id: int
    learner_id: str
    course_id: int
    progress_pct: int = 0
    last_step_index: int = 0
    is_completed: bool = False
    correct_answers: int = 0
    total_answers: int = 0
    score_points: int = 0
    last_success_rate: Optional[float] = None
    classification: Optional[PassClassification] = None
    pass_number: int = 1
    best_success_rate: Optional[float] = None
    completed_passes: int = 0
    updated_at: Optional[str] = None


class CompletedState(BaseModel):
    """Returned instead of a step once the pass is finished."""
    completed: bool = True
    success_rate: float
    classification: PassClassification
    correct_answers: int
    total_answers: int
    score_points: int


class AttemptType(str, Enum):
    INITIAL = "initial"
    DRILL_1 = "drill_1"
    DRILL_2 = "drill_2"


ATTEMPT_SEQUENCE = (AttemptType.INITIAL, AttemptType.DRILL_1, AttemptType.DRILL_2)


class DrillAttempt(BaseModel):
    """One graded submission. Append-only."""
    id: Optional[int] = None
    enrollment_id: int
    step_id: int
    course_id: int
    learner_id: str
    pass_number: int = 1
    attempt_type: AttemptType
    is_correct: bool
    user_answer: Optional[str] = None
    score: int = Field(ge=0, le=10)
    tag: Optional[str] = None
    grading_degraded: bool = False
    session_id: Optional[str] = None
    timestamp: Optional[str] = None


class GradingPoint(BaseModel):
    point: str = Field(min_length=1)
    source_quote: str = ""


class GradingMatch(BaseModel):
    point: str = Field(min_length=1)
    status: Literal["MATCH", "PARTIAL", "MISS"]
    comment: str = ""


class AnswerFeedback(BaseModel):
    """Learner-facing feedback for an open answer."""
    why_wrong: str = ""
    ideal_answer: str = ""
    missing_points: List[str] = Field(default_factory=list)
    good_parts: List[str] = Field(default_factory=list)
    example_phrases: List[str] = Field(default_factory=list)
    kb_gap: bool = False


class AttemptOutcome(BaseModel):
    """What the client needs to render after a submission."""
    attempt_id: Optional[int] = None
    is_correct: bool
    attempt_type: AttemptType
    retry_owed: bool
    attempt_number: int
    score: int
    grading_degraded: bool = False
    explanation: Optional[str] = None
    feedback: Optional[AnswerFeedback] = None


class TurnRole(str, Enum):
    AI = "ai"
    LEARNER = "learner"


class Turn(BaseModel):
    seq: int = Field(ge=1, le=ROLEPLAY_TURNS)
    role: TurnRole
    text: str = Field(min_length=1)
    should_escalate: bool = False
    escalation_reason: Optional[str] = None
    degraded: bool = False


class DialoguePhase(str, Enum):
    SCENARIO = "scenario"
    DIALOGUE = "dialogue"
    EVALUATION = "evaluation"


def _clean_items(items: List[str]) -> List[str]:
    return [item.strip() for item in items if isinstance(item, str) and item.strip()]


class Evaluation(BaseModel):
    """Terminal roleplay evaluation."""
    score_0_10: int = Field(ge=0, le=10)
    verdict: str = Field(min_length=1)
    strengths: List[str] = Field(min_length=1)
    improvements: List[str] = Field(min_length=1)
    better_example: str = Field(min_length=1)
    degraded: bool = False

    @field_validator("score_0_10", mode="before")
    @classmethod
    def round_score(cls, value):
        if isinstance(value, float):
            if not 0 <= value <= 10:
                raise ValueError(f"score_0_10 out of range: {value}")
            return round_half_up(value)
        return value

    @field_validator("verdict", "better_example", mode="before")
    @classmethod
    def strip_text(cls, value):
        return value.strip() if isinstance(value, str) else value

    @field_validator("strengths", "improvements", mode="before")
    @classmethod
    def clean_items(cls, value):
        if isinstance(value, list):
            return _clean_items(value)
        return value


class RoleplaySession(BaseModel):
    """Transient roleplay state for one (enrollment, step) try."""
    session_id: str
    enrollment_id: int
    step_id: int
    course_id: int
    learner_id: str
    pass_number: int = 1
    tag: Optional[str] = None
    scenario: RoleplayScenario
    phase: DialoguePhase = DialoguePhase.SCENARIO
    turns: List[Turn] = Field(default_factory=list)
    evaluation: Optional[Evaluation] = None
    attempt_id: Optional[int] = None
    created_at: Optional[str] = None
    last_activity: Optional[str] = None

    @property
    def next_seq(self) -> int:
        return len(self.turns) + 1


class TurnResult(BaseModel):
    """Reply to a learner turn: either the next AI line or the terminal evaluation."""
    session_id: str
    phase: DialoguePhase
    ai_text: Optional[str] = None
    turn_number: int
    evaluation: Optional[Evaluation] = None
    outcome: Optional[AttemptOutcome] = None


class TagStat(BaseModel):
    tag: str
    attempts: int
    errors: int

    @computed_field
    @property
    def accuracy(self) -> float:
        if self.attempts == 0:
            return 0.0
        return 1 - self.errors / self.attempts


class MasteryReport(BaseModel):
    learner_id: str
    course_id: Optional[int] = None
    tag_stats: List[TagStat]
    needs_repeat: List[str]


class CohortReport(BaseModel):
    course_ids: List[int]
    min_attempts: int
    tag_stats: List[TagStat]
    needs_repeat: List[str]
    problem_topics: List[TagStat]


class CourseOverview(BaseModel):
    course_id: int
    title: str
    total_steps: int
    learner_count: int
    avg_progress: int
    completed_count: int
    accuracy: float
