from typing import List, Optional
from pydantic import BaseModel, Field
from datetime import datetime

from loregate.domain.models.constraints import ConstraintSet
from loregate.domain.models.snapshot import StateSnapshot


# Per-item formatting overhead in characters, counted on top of content length
FACT_OVERHEAD = 10
WORLD_STATE_OVERHEAD = 10
DIALOGUE_OVERHEAD = 2
EPISODIC_OVERHEAD = 12
BELIEF_OVERHEAD = 2
CONSTRAINT_OVERHEAD = 50

DIALOGUE_SHARE = 0.60
EPISODIC_SHARE = 0.25
BELIEF_SHARE = 0.15


class WorkingMemoryConfig(BaseModel):
    """Bounds for the per-attempt working memory"""
    max_dialogue_exchanges: int = Field(5, ge=0, description="Each exchange is two dialogue lines")
    max_episodic_memories: int = Field(5, ge=0)
    max_beliefs: int = Field(3, ge=0)
    max_context_characters: int = Field(2000, ge=0)
    always_include_canonical_facts: bool = True
    always_include_world_state: bool = True

    @classmethod
    def default(cls) -> "WorkingMemoryConfig":
        return cls()

    @classmethod
    def minimal(cls) -> "WorkingMemoryConfig":
        return cls(
            max_dialogue_exchanges=2,
            max_episodic_memories=2,
            max_beliefs=1,
            max_context_characters=1000
        )

    @classmethod
    def expanded(cls) -> "WorkingMemoryConfig":
        return cls(
            max_dialogue_exchanges=10,
            max_episodic_memories=10,
            max_beliefs=5,
            max_context_characters=4000
        )


class WorkingMemoryStats(BaseModel):
    """Counts describing a working memory"""
    dialogue_count: int = 0
    canonical_fact_count: int = 0
    world_state_count: int = 0
    episodic_memory_count: int = 0
    belief_count: int = 0
    constraint_count: int = 0
    total_characters: int = 0
    was_truncated: bool = False

    @property
    def total_items(self) -> int:
        return (
            self.dialogue_count + self.canonical_fact_count + self.world_state_count +
            self.episodic_memory_count + self.belief_count
        )


class WorkingMemory:
    """Bounded, short-lived view of a snapshot for a single inference attempt.

    After construction ``total_character_count`` never exceeds the configured
    budget, unless the mandatory content alone is larger (then every optional
    category is dropped). Call ``release()`` once the prompt is assembled.
    """

    def __init__(self, snapshot: StateSnapshot, config: Optional[WorkingMemoryConfig] = None):
        if snapshot is None:
            raise ValueError("snapshot is required")

        self.source_snapshot = snapshot
        self.config = config or WorkingMemoryConfig()
        self.created_at = datetime.utcnow()
        self.released = False
        self.was_truncated = False

        self.system_prompt = snapshot.system_prompt or ""
        self.player_input = snapshot.player_input or ""
        self.constraints: ConstraintSet = snapshot.constraints

        self.canonical_facts: List[str] = (
            list(snapshot.canonical_facts) if self.config.always_include_canonical_facts else []
        )
        self.world_state: List[str] = (
            list(snapshot.world_state) if self.config.always_include_world_state else []
        )

        max_dialogue_lines = self.config.max_dialogue_exchanges * 2
        history = snapshot.dialogue_history
        self.dialogue_history: List[str] = (
            list(history[-max_dialogue_lines:]) if max_dialogue_lines > 0 else []
        )
        self.episodic_memories: List[str] = list(snapshot.episodic_memories[:self.config.max_episodic_memories])
        self.beliefs: List[str] = list(snapshot.beliefs[:self.config.max_beliefs])

        self.total_character_count = self.calculate_total_characters()
        if self.total_character_count > self.config.max_context_characters:
            self._truncate_to_budget()

    def __enter__(self) -> "WorkingMemory":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()

    def mandatory_characters(self) -> int:
        """Size of content that truncation never touches"""

        total = len(self.system_prompt) + len(self.player_input)
        total += sum(len(f) + FACT_OVERHEAD for f in self.canonical_facts)
        total += sum(len(s) + WORLD_STATE_OVERHEAD for s in self.world_state)
        total += len(self.constraints) * CONSTRAINT_OVERHEAD
        return total

    def calculate_total_characters(self) -> int:
        total = self.mandatory_characters()
        total += sum(len(d) + DIALOGUE_OVERHEAD for d in self.dialogue_history)
        total += sum(len(m) + EPISODIC_OVERHEAD for m in self.episodic_memories)
        total += sum(len(b) + BELIEF_OVERHEAD for b in self.beliefs)
        return total

    def _truncate_to_budget(self) -> None:
        self.was_truncated = True

        mandatory = self.mandatory_characters()
        remaining = self.config.max_context_characters - mandatory
        if remaining <= 0:
            self.dialogue_history = []
            self.episodic_memories = []
            self.beliefs = []
            self.total_character_count = mandatory
            return

        self.dialogue_history = self._keep_most_recent(
            self.dialogue_history, int(remaining * DIALOGUE_SHARE), DIALOGUE_OVERHEAD
        )
        self.episodic_memories = self._keep_most_recent(
            self.episodic_memories, int(remaining * EPISODIC_SHARE), EPISODIC_OVERHEAD
        )
        self.beliefs = self._keep_most_recent(
            self.beliefs, int(remaining * BELIEF_SHARE), BELIEF_OVERHEAD
        )

        self.total_character_count = self.calculate_total_characters()

    @staticmethod
    def _keep_most_recent(items: List[str], budget: int, overhead: int) -> List[str]:
        """Fill from the end of the list until the next item would overflow"""

        kept: List[str] = []
        used = 0
        for item in reversed(items):
            size = len(item) + overhead
            if used + size > budget:
                break
            kept.append(item)
            used += size

        kept.reverse()
        return kept

    def get_formatted_facts(self) -> List[str]:
        return [f"[Fact] {fact}" for fact in self.canonical_facts]

    def get_formatted_world_state(self) -> List[str]:
        return [f"[State] {state}" for state in self.world_state]

    def get_formatted_memories(self) -> List[str]:
        return [f"[Memory] {memory}" for memory in self.episodic_memories]

    def get_formatted_beliefs(self) -> List[str]:
        return list(self.beliefs)

    def get_formatted_context(self) -> str:
        """Facts, world state, memories and beliefs, one per line"""
        lines = (
            self.get_formatted_facts() + self.get_formatted_world_state() +
            self.get_formatted_memories() + self.get_formatted_beliefs()
        )
        return "\n".join(lines)

    def get_formatted_dialogue(self) -> str:
        return "\n".join(self.dialogue_history)

    def get_stats(self) -> WorkingMemoryStats:
        return WorkingMemoryStats(
            dialogue_count=len(self.dialogue_history),
            canonical_fact_count=len(self.canonical_facts),
            world_state_count=len(self.world_state),
            episodic_memory_count=len(self.episodic_memories),
            belief_count=len(self.beliefs),
            constraint_count=len(self.constraints),
            total_characters=self.total_character_count,
            was_truncated=self.was_truncated
        )

    def release(self) -> None:
        """Clear internal buffers. Safe to call more than once."""

        if self.released:
            return
        self.released = True

        self.dialogue_history = []
        self.canonical_facts = []
        self.world_state = []
        self.episodic_memories = []
        self.beliefs = []
        self.system_prompt = ""
        self.player_input = ""
        self.constraints = ConstraintSet()

    def __repr__(self) -> str:
        stats = self.get_stats()
        truncated = " (truncated)" if self.was_truncated else ""
        return f"WorkingMemory[{stats.total_items} items, {self.total_character_count} chars{truncated}]"
