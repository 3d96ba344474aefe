"""
Prompt templates and output schemas for every AI call kind.

Templates may be overridden by dropping `config/prompts/<kind>.md` files;
placeholders use `{name}` and are filled in a single pass, so JSON examples
inside templates need no escaping and filled-in values are never re-expanded.
"""

import re
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional, Tuple, Type

from pydantic import BaseModel, Field, field_validator

from adapt.core.models import Evaluation, GradingMatch, GradingPoint, RoleplayScenario
from adapt.shared.logging import get_logger

logger = get_logger(__name__)


class PromptKind(str, Enum):
    SCENARIO = "scenario"
    NEXT_TURN = "next_turn"
    EVALUATE = "evaluate"
    GRADE_OPEN = "grade_open"


class ScenarioOutput(BaseModel):
    scenario: RoleplayScenario


class NextTurnOutput(BaseModel):
    reply_text: str = Field(min_length=1)
    should_escalate: bool = False
    escalation_reason: str = ""

    @field_validator("reply_text", mode="before")
    @classmethod
    def strip_reply(cls, value):
        return value.strip() if isinstance(value, str) else value


class OpenGradingOutput(BaseModel):
    expected_points: List[GradingPoint] = Field(min_length=1)
    matches: List[GradingMatch] = Field(min_length=1)
    why_wrong: str = ""
    ideal_answer: str = ""
    missing_points: List[str] = Field(default_factory=list)
    good_parts: List[str] = Field(default_factory=list)
    example_phrases: List[str] = Field(default_factory=list)
    kb_gap: bool = False


OUTPUT_SCHEMAS: Dict[PromptKind, Type[BaseModel]] = {
    PromptKind.SCENARIO: ScenarioOutput,
    PromptKind.NEXT_TURN: NextTurnOutput,
    PromptKind.EVALUATE: Evaluation,
    PromptKind.GRADE_OPEN: OpenGradingOutput,
}


NO_KNOWLEDGE = "No course knowledge provided."
PLACEHOLDER = re.compile(r"\{(\w+)\}")

SYSTEM_PROMPTS: Dict[PromptKind, str] = {
    PromptKind.SCENARIO: (
        "You are an experienced sales coach writing realistic roleplay scenarios for voice practice.\n"
        "When course knowledge is provided, treat it as the only source of company rules and facts.\n"
        "Do not invent policies, prices or procedures that are not in the knowledge.\n"
        "Reply with valid JSON only."
    ),
    PromptKind.NEXT_TURN: (
        "You play the customer in a training scenario.\n"
        "Answer briefly, at most 1-3 sentences, staying consistent with the scenario and your mood.\n"
        "Only refer to facts present in the course knowledge; if it lacks something, do not make it up.\n"
        "Reply with valid JSON only."
    ),
    PromptKind.EVALUATE: (
        "You are a strict but fair sales coach. Judge the employee on:\n"
        "1. Empathy and acknowledging the customer's emotions\n"
        "2. Clarifying questions\n"
        "3. A solution consistent with the course knowledge\n"
        "4. Confidence and structure, without rambling or defensiveness\n"
        "5. No blaming or arguing with the customer\n"
        "Do not invent policies or facts missing from the knowledge.\n"
        "Reply with valid JSON only."
    ),
    PromptKind.GRADE_OPEN: (
        "You grade free-text answers semantically, accepting synonyms and paraphrases.\n"
        "Derive the expected points from the course knowledge and quote the source for each.\n"
        "Mark every expected point as MATCH, PARTIAL or MISS.\n"
        "If the knowledge does not cover the question, set kb_gap to true.\n"
        "Reply with valid JSON only."
    ),
}

USER_TEMPLATES: Dict[PromptKind, str] = {
    PromptKind.SCENARIO: """Course: {course_title}
Learner role: {learner_role}
Brief: {brief}
Course knowledge:
{knowledge}

Write ONE roleplay scenario for voice practice.
- situation: 1-2 sentences on what triggered the conversation
- learner_role: 1 sentence
- goal: 1 sentence with the desired outcome
- constraints: 1-3 rules or recommendations
- ai_persona: "{ai_role}"
- turns_total: 6 (3 customer + 3 employee)
- opening_line: a realistic first customer line, 1-2 sentences

Return JSON:
{
  "scenario": {
    "situation": "...",
    "learner_role": "...",
    "goal": "...",
    "constraints": ["..."],
    "ai_persona": "{ai_role}",
    "turns_total": 6,
    "opening_line": "..."
  }
}""",
    PromptKind.NEXT_TURN: """Scenario:
{scenario}
Course knowledge:
{knowledge}
Conversation so far:
{transcript}

Write the customer's next line (turn {turn_number}).
- Stay in character and respond naturally to the employee's last line
- If the employee showed empathy or asked a good question, become a little more cooperative
- If the employee was defensive or unhelpful, become a little more irritated
- At most 1-3 sentences

Return JSON:
{
  "reply_text": "...",
  "should_escalate": false,
  "escalation_reason": ""
}""",
    PromptKind.EVALUATE: """Scenario:
{scenario}
Course knowledge:
{knowledge}
Full conversation:
{transcript}

Evaluate the employee's three replies.
- 0-3: weak (no empathy, no questions, no solution, or arguing)
- 4-6: fair (some empathy or a question, but missed the solution or got defensive)
- 7-8: good (empathy + question + attempted solution, small gaps)
- 9-10: excellent (empathy + clarifying questions + knowledge-backed solution + confidence)

Return JSON:
{
  "score_0_10": 0,
  "verdict": "...",
  "strengths": ["..."],
  "improvements": ["..."],
  "better_example": "..."
}""",
    PromptKind.GRADE_OPEN: """Question: {question}
Topic: {tag}
Reference answer: {ideal_answer}
Rubric: {rubric}
Course knowledge:
{knowledge}
Learner answer:
{answer}

Return JSON:
{
  "expected_points": [{"point": "...", "source_quote": "..."}],
  "matches": [{"point": "...", "status": "MATCH|PARTIAL|MISS", "comment": "..."}],
  "why_wrong": "...",
  "ideal_answer": "...",
  "missing_points": ["..."],
  "good_parts": ["..."],
  "example_phrases": ["..."],
  "kb_gap": false
}""",
}


class PromptLibrary:
    """Resolve (system prompt, user prompt) pairs per prompt kind."""

    def __init__(self, prompts_dir: Optional[Path] = None):
        self.prompts_dir = Path(prompts_dir or "config/prompts")
        self.templates = dict(USER_TEMPLATES)

        for kind in PromptKind:
            prompt_path = self.prompts_dir / f"{kind.value}.md"
            if prompt_path.exists():
                self.templates[kind] = prompt_path.read_text(encoding="utf-8")
                logger.info(f"Loaded prompt override: {prompt_path}")

    def render(
        self,
        kind: PromptKind,
        payload: Dict[str, str],
        knowledge: Optional[str] = None
    ) -> Tuple[str, str]:
        """Fill a template. Unknown placeholders are left as-is."""
        values = dict(payload)
        values["knowledge"] = knowledge or NO_KNOWLEDGE

        def fill(match: re.Match) -> str:
            name = match.group(1)
            return str(values[name]) if name in values else match.group(0)

        prompt = PLACEHOLDER.sub(fill, self.templates[kind])
        return SYSTEM_PROMPTS[kind], prompt


def format_transcript(turns, ai_label: str = "Customer", learner_label: str = "Employee") -> str:
    """Render turns as `[Speaker]: text` lines."""
    lines = []
    for turn in turns:
        speaker = ai_label if turn.role.value == "ai" else learner_label
        lines.append(f"[{speaker}]: {turn.text}")
    return "\n".join(lines)
