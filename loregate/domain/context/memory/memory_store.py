from typing import Dict, List, Optional, Protocol, runtime_checkable
from itertools import count
import threading

from loregate.domain.models.memory import (
    BeliefEntry, CanonicalFact, EpisodicMemoryEntry, WorldStateEntry
)


@runtime_checkable
class MemoryStore(Protocol):
    """Read accessors the pipeline needs from an authoritative memory system"""

    def get_canonical_facts(self) -> List[CanonicalFact]:
        ...

    def get_world_state(self) -> List[WorldStateEntry]:
        ...

    def get_active_episodic_memories(self, min_strength: float) -> List[EpisodicMemoryEntry]:
        ...

    def get_beliefs(self, include_contradicted: bool = False) -> List[BeliefEntry]:
        ...

    def is_canonical_fact(self, entry_id: str) -> bool:
        ...


class InMemoryMemoryStore:
    """Dict-backed memory store for a single NPC.

    Entries added without an explicit sequence number get the next value of a
    per-store counter. There is no persistence and no eviction.
    """

    def __init__(self):
        self.canonical_facts: Dict[str, CanonicalFact] = {}
        self.world_state: Dict[str, WorldStateEntry] = {}
        self.episodic_memories: Dict[str, EpisodicMemoryEntry] = {}
        self.beliefs: Dict[str, BeliefEntry] = {}
        self._sequence = count(1)
        self._lock = threading.Lock()

    def add_canonical_fact(
        self,
        fact_id: str,
        content: str,
        domain: Optional[str] = None,
        contradiction_keywords: Optional[List[str]] = None
    ) -> CanonicalFact:
        """Register a canonical fact. Canonical facts cannot be replaced."""

        with self._lock:
            if fact_id in self.canonical_facts:
                raise ValueError(f"Canonical fact '{fact_id}' already exists and is immutable")

            fact = CanonicalFact(
                id=fact_id,
                content=content,
                domain=domain,
                contradiction_keywords=contradiction_keywords or []
            )
            self.canonical_facts[fact_id] = fact
            return fact

    def set_world_state(self, key: str, content: str) -> WorldStateEntry:
        with self._lock:
            entry = WorldStateEntry(key=key, content=content)
            self.world_state[key] = entry
            return entry

    def add_episodic_memory(self, memory: EpisodicMemoryEntry) -> EpisodicMemoryEntry:
        with self._lock:
            if memory.sequence_number == 0:
                memory = memory.model_copy(update={"sequence_number": next(self._sequence)})
            self.episodic_memories[memory.id] = memory
            return memory

    def add_belief(self, belief: BeliefEntry) -> BeliefEntry:
        with self._lock:
            if belief.sequence_number == 0:
                belief = belief.model_copy(update={"sequence_number": next(self._sequence)})
            self.beliefs[belief.id] = belief
            return belief

    def get_canonical_facts(self) -> List[CanonicalFact]:
        with self._lock:
            return list(self.canonical_facts.values())

    def get_world_state(self) -> List[WorldStateEntry]:
        with self._lock:
            return list(self.world_state.values())

    def get_active_episodic_memories(self, min_strength: float) -> List[EpisodicMemoryEntry]:
        with self._lock:
            return [m for m in self.episodic_memories.values() if m.is_active(min_strength)]

    def get_beliefs(self, include_contradicted: bool = False) -> List[BeliefEntry]:
        with self._lock:
            return [
                b for b in self.beliefs.values()
                if include_contradicted or not b.is_contradicted
            ]

    def is_canonical_fact(self, entry_id: str) -> bool:
        with self._lock:
            return entry_id in self.canonical_facts
