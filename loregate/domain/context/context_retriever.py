from typing import List, Optional, Sequence
from pydantic import BaseModel, Field
import structlog

from loregate.domain.models.memory import BeliefEntry
from loregate.domain.models.snapshot import RetrievedContext
from .context_ranker import ContextRanker
from .memory.memory_store import MemoryStore


class RetrievalConfig(BaseModel):
    """Limits and weights for context retrieval"""
    max_canonical_facts: int = Field(0, ge=0, description="0 = unlimited")
    max_world_state: int = Field(0, ge=0, description="0 = unlimited")
    max_episodic_memories: int = Field(15, ge=0)
    max_beliefs: int = Field(10, ge=0)
    min_episodic_strength: float = 0.1
    min_belief_confidence: float = 0.3
    include_contradicted_beliefs: bool = False
    recency_weight: float = 0.4
    relevance_weight: float = 0.4
    significance_weight: float = 0.2
    recency_half_life: float = Field(3600.0, description="Logical seconds until recency halves")
    topic_bonus: float = 0.3


class ContextRetriever:
    """Pulls ranked, capped context from a memory store.

    Every list is ordered by a strict total order so the output is identical
    for identical store content, input and snapshot time.
    """

    def __init__(self, store: MemoryStore, config: Optional[RetrievalConfig] = None, logger=None):
        if store is None:
            raise ValueError("store is required")

        self.store = store
        self.config = config or RetrievalConfig()
        self.logger = logger or structlog.get_logger(__name__)
        self.ranker = ContextRanker(
            recency_weight=self.config.recency_weight,
            relevance_weight=self.config.relevance_weight,
            significance_weight=self.config.significance_weight,
            recency_half_life=self.config.recency_half_life,
            topic_bonus=self.config.topic_bonus
        )

    def retrieve(
        self,
        player_input: str,
        snapshot_time: float,
        topics: Optional[Sequence[str]] = None
    ) -> RetrievedContext:
        """Retrieve all categories for one interaction"""

        if player_input is None:
            raise ValueError("player_input is required")

        topic_list = list(topics or [])

        context = RetrievedContext(
            canonical_facts=self.retrieve_canonical_facts(topic_list),
            world_state=self.retrieve_world_state(topic_list),
            episodic_memories=self.retrieve_episodic_memories(player_input, topic_list, snapshot_time),
            beliefs=self.retrieve_beliefs(player_input, topic_list)
        )

        self.logger.debug(
            "Retrieved context",
            input=player_input[:50],
            facts=len(context.canonical_facts),
            world_state=len(context.world_state),
            episodes=len(context.episodic_memories),
            beliefs=len(context.beliefs)
        )

        return context

    def retrieve_canonical_facts(self, topics: Sequence[str]) -> List[str]:
        """Facts ordered by id (ordinal)"""

        facts = self.store.get_canonical_facts()

        if topics:
            lowered = {t.lower() for t in topics}
            facts = [
                f for f in facts
                if self.ranker.matches_topics(f.content, topics)
                or (f.domain is not None and f.domain.lower() in lowered)
            ]

        facts = sorted(facts, key=lambda f: f.id)
        if self.config.max_canonical_facts > 0:
            facts = facts[:self.config.max_canonical_facts]

        return [f.content for f in facts]

    def retrieve_world_state(self, topics: Sequence[str]) -> List[str]:
        """World state ordered by key (ordinal)"""

        states = self.store.get_world_state()

        if topics:
            states = [
                s for s in states
                if self.ranker.matches_topics(s.content, topics)
                or self.ranker.matches_topics(s.key, topics)
            ]

        states = sorted(states, key=lambda s: s.key)
        if self.config.max_world_state > 0:
            states = states[:self.config.max_world_state]

        return [s.content for s in states]

    def retrieve_episodic_memories(
        self,
        player_input: str,
        topics: Sequence[str],
        snapshot_time: float
    ) -> List[str]:
        """Order: score desc, created_at desc, id asc, sequence_number asc"""

        memories = self.store.get_active_episodic_memories(self.config.min_episodic_strength)

        scored = [
            (self.ranker.score_episodic(m, player_input, topics, snapshot_time), m)
            for m in memories
        ]
        # Stable sorts applied from least to most significant key
        scored.sort(key=lambda s: s[1].sequence_number)
        scored.sort(key=lambda s: s[1].id)
        scored.sort(key=lambda s: (s[0], s[1].created_at), reverse=True)

        return [m.content for _, m in scored[:self.config.max_episodic_memories]]

    def retrieve_beliefs(self, player_input: str, topics: Sequence[str]) -> List[str]:
        """Order: score desc, confidence desc, id asc, sequence_number asc"""

        beliefs = [
            b for b in self.store.get_beliefs(self.config.include_contradicted_beliefs)
            if b.confidence >= self.config.min_belief_confidence
        ]

        scored = [(self.ranker.score_belief(b, player_input, topics), b) for b in beliefs]
        scored.sort(key=lambda s: s[1].sequence_number)
        scored.sort(key=lambda s: s[1].id)
        scored.sort(key=lambda s: (s[0], s[1].confidence), reverse=True)

        return [self.format_belief(b) for _, b in scored[:self.config.max_beliefs]]

    @staticmethod
    def format_belief(belief: BeliefEntry) -> str:
        if belief.is_contradicted:
            return f"[Uncertain] {belief.content}"
        return belief.content
