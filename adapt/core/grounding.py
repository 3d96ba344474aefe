"""
Knowledge grounding: pick a bounded, reproducible set of course fragments for a prompt.
"""

import re
from dataclasses import dataclass, field
from typing import List, Optional

from adapt.core.models import KnowledgeFragment
from adapt.storage.store import TrainingStore
from adapt.shared.tokens import count_tokens, estimate_tokens, truncate_to_tokens
from adapt.shared.config import settings
from adapt.shared.logging import get_logger

logger = get_logger(__name__)

STOP_WORDS = {
    "the", "a", "an", "is", "are", "was", "were", "be", "been", "being",
    "have", "has", "had", "do", "does", "did", "will", "would", "could", "should",
    "and", "for", "with", "that", "this", "what", "how", "from", "into",
    "и", "в", "на", "с", "по", "для", "как", "что", "это", "к", "от", "о",
}
MAX_KEYWORDS = 10


def extract_keywords(text: str) -> List[str]:
    """Lowercased content words, first occurrence order, at most MAX_KEYWORDS."""
    words = re.sub(r"[^\w\s]", " ", text.lower()).split()
    keywords = []
    for word in words:
        if len(word) > 2 and word not in STOP_WORDS and word not in keywords:
            keywords.append(word)
    return keywords[:MAX_KEYWORDS]


def overlap_score(content: str, keywords: List[str]) -> int:
    """Substring hits count 2, whole-word hits count 3 more."""
    lowered = content.lower()
    score = 0
    for keyword in keywords:
        hits = lowered.count(keyword)
        if hits:
            score += hits * 2
            score += len(re.findall(rf"\b{re.escape(keyword)}\b", lowered)) * 3
    return score


def is_tag_match(fragment: KnowledgeFragment, topic: str) -> bool:
    wanted = topic.strip().lower()
    if not wanted:
        return False
    labels = [tag.strip().lower() for tag in fragment.tags]
    if fragment.section_title:
        labels.append(fragment.section_title.strip().lower())
    return wanted in labels


@dataclass
class GroundingSelection:
    """Fragments chosen for one AI call."""
    fragments: List[KnowledgeFragment] = field(default_factory=list)
    texts: List[str] = field(default_factory=list)
    previews: List[str] = field(default_factory=list)

    @property
    def fragment_ids(self) -> List[int]:
        return [fragment.id for fragment in self.fragments]

    @property
    def text(self) -> str:
        """Prompt-ready knowledge block."""
        return "\n\n".join(
            f"[{fragment.id}] {text}" for fragment, text in zip(self.fragments, self.texts)
        )

    def __bool__(self) -> bool:
        return bool(self.fragments)


class KnowledgeGrounder:
    """Rank course fragments by tag match, then keyword overlap, then document order."""

    def __init__(
        self,
        store: TrainingStore,
        max_fragments: Optional[int] = None,
        max_tokens: Optional[int] = None,
        preview_chars: Optional[int] = None
    ):
        self.store = store
        self.max_fragments = settings.grounding.max_fragments if max_fragments is None else max_fragments
        self.max_tokens = settings.grounding.max_context_tokens if max_tokens is None else max_tokens
        self.preview_chars = settings.grounding.preview_chars if preview_chars is None else preview_chars

    def select(
        self,
        course_id: int,
        topic: Optional[str],
        query: Optional[str] = None,
        max_fragments: Optional[int] = None
    ) -> GroundingSelection:
        """
        Select up to `max_fragments` fragments for a topic.

        Args:
            course_id: Course whose knowledge base is searched
            topic: Step tag or scenario topic; exact tag matches rank first
            query: Extra text (question, brief) used for keyword overlap
            max_fragments: Override the configured bound

        Returns:
            GroundingSelection with texts trimmed to the token budget
        """
        fragments = self.store.list_fragments(course_id)
        if max_fragments is None:
            max_fragments = self.max_fragments
        ranked = self.rank(fragments, topic or "", query, max_fragments)
        selection = self._apply_budget(ranked)

        logger.debug(
            f"Grounding for course {course_id} topic={topic!r}: "
            f"{len(selection.fragments)} of {len(fragments)} fragments"
        )
        return selection

    def rank(
        self,
        fragments: List[KnowledgeFragment],
        topic: str,
        query: Optional[str],
        limit: int
    ) -> List[KnowledgeFragment]:
        """Pure ranking; identical inputs always give the identical order."""
        keywords = extract_keywords(" ".join(part for part in (topic, query) if part))

        scored = []
        for fragment in fragments:
            tag_hit = is_tag_match(fragment, topic)
            score = overlap_score(fragment.content, keywords) if keywords else 0
            scored.append((0 if tag_hit else 1, -score, fragment.position, fragment))

        relevant = [item for item in scored if item[0] == 0 or item[1] < 0]
        # Nothing relevant: fall back to the head of the document
        pool = relevant or scored
        pool.sort(key=lambda item: item[:3])
        return [item[3] for item in pool[:limit]]

    def _apply_budget(self, fragments: List[KnowledgeFragment]) -> GroundingSelection:
        selection = GroundingSelection()
        total_tokens = 0

        for fragment in fragments:
            text = fragment.content
            # Upper-bound estimate first; exact count only near the budget
            fragment_tokens = estimate_tokens(text) * 2
            if total_tokens + fragment_tokens > self.max_tokens:
                fragment_tokens = count_tokens(text)

            if total_tokens + fragment_tokens > self.max_tokens:
                remaining_tokens = self.max_tokens - total_tokens
                if remaining_tokens > 100:
                    text = truncate_to_tokens(text, remaining_tokens)
                    fragment_tokens = remaining_tokens
                else:
                    break

            selection.fragments.append(fragment)
            selection.texts.append(text)
            selection.previews.append(self.preview(fragment))
            total_tokens += fragment_tokens

        return selection

    def preview(self, fragment: KnowledgeFragment) -> str:
        return f"[{fragment.id}] {fragment.content[:self.preview_chars]}..."
