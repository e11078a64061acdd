from typing import Sequence, Set
import re

from loregate.domain.models.memory import BeliefEntry, EpisodicMemoryEntry


_WORD_SPLIT = re.compile(r"[ .,!?]+")


class ContextRanker:
    """Scores memory candidates against the player's input.

    Relevance is lexical (word overlap plus topic substring match), not
    semantic. Recency decays against the logical snapshot time so the same
    snapshot always produces the same scores.
    """

    def __init__(
        self,
        recency_weight: float = 0.4,
        relevance_weight: float = 0.4,
        significance_weight: float = 0.2,
        recency_half_life: float = 3600.0,
        topic_bonus: float = 0.3
    ):
        self.recency_weight = recency_weight
        self.relevance_weight = relevance_weight
        self.significance_weight = significance_weight
        self.recency_half_life = recency_half_life
        self.topic_bonus = topic_bonus

    @staticmethod
    def significant_words(text: str) -> Set[str]:
        """Lowercased words longer than three characters"""
        return {w for w in _WORD_SPLIT.split(text.lower()) if len(w) > 3}

    @staticmethod
    def matches_topics(content: str, topics: Sequence[str]) -> bool:
        if not content or not topics:
            return False

        content_lower = content.lower()
        return any(topic.lower() in content_lower for topic in topics)

    def calculate_relevance(self, content: str, query: str, topics: Sequence[str] = ()) -> float:
        """Fraction of query words present in content, plus a flat topic bonus"""

        if not content:
            return 0.0

        score = 0.0
        query_words = self.significant_words(query or "")
        if query_words:
            content_words = self.significant_words(content)
            score = len(query_words & content_words) / len(query_words)

        if topics and self.matches_topics(content, topics):
            score = min(1.0, score + self.topic_bonus)

        return score

    def calculate_recency(self, created_at: float, snapshot_time: float, significance: float = 0.0) -> float:
        """Exponential decay 0.5 ** (elapsed / half_life), boosted by significance"""

        elapsed = snapshot_time - created_at
        if elapsed <= 0 or self.recency_half_life <= 0:
            return 1.0

        recency = 0.5 ** (elapsed / self.recency_half_life)
        return min(1.0, recency * (1.0 + significance * 0.5))

    def score_episodic(
        self,
        memory: EpisodicMemoryEntry,
        query: str,
        topics: Sequence[str],
        snapshot_time: float
    ) -> float:
        recency = self.calculate_recency(memory.created_at, snapshot_time, memory.significance)
        relevance = self.calculate_relevance(memory.content, query, topics)

        return (
            self.recency_weight * recency +
            self.relevance_weight * relevance +
            self.significance_weight * memory.significance
        )

    def score_belief(self, belief: BeliefEntry, query: str, topics: Sequence[str]) -> float:
        relevance = self.calculate_relevance(belief.content, query, topics)
        confidence = belief.confidence

        # Contradicted beliefs count for half
        if belief.is_contradicted:
            confidence *= 0.5

        return relevance * 0.6 + confidence * 0.4
