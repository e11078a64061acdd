from typing import List, Optional, Sequence
import structlog

from loregate.domain.models.constraints import ConstraintSet
from loregate.domain.models.snapshot import RetrievedContext, StateSnapshot
from .context_retriever import ContextRetriever, RetrievalConfig
from .memory.memory_store import MemoryStore


class ContextManager:
    """Assembles the state snapshot for an NPC interaction from the memory store"""

    def __init__(
        self,
        store: MemoryStore,
        retrieval_config: Optional[RetrievalConfig] = None,
        max_dialogue_history: int = 20,
        logger=None
    ):
        self.store = store
        self.logger = logger or structlog.get_logger(__name__)
        self.context_retriever = ContextRetriever(store, retrieval_config, logger=self.logger)
        self.max_dialogue_history = max_dialogue_history

    def build_snapshot(
        self,
        player_input: str,
        snapshot_time: float,
        system_prompt: str = "",
        npc_id: Optional[str] = None,
        dialogue_history: Optional[List[str]] = None,
        constraints: Optional[ConstraintSet] = None,
        forbidden_knowledge: Optional[List[str]] = None,
        topics: Optional[Sequence[str]] = None
    ) -> StateSnapshot:
        """Build a snapshot with retrieved context folded in"""

        if player_input is None:
            raise ValueError("player_input is required")

        self.logger.info("Building snapshot", npc_id=npc_id, snapshot_time=snapshot_time)

        retrieved = self.retrieve(player_input, snapshot_time, topics)
        history = self.get_conversation_context(dialogue_history or [])

        snapshot = StateSnapshot(
            npc_id=npc_id,
            player_input=player_input,
            snapshot_time=snapshot_time,
            system_prompt=system_prompt,
            dialogue_history=history,
            constraints=constraints or ConstraintSet(),
            forbidden_knowledge=list(forbidden_knowledge or [])
        )

        return snapshot.with_retrieved(retrieved)

    def retrieve(
        self,
        player_input: str,
        snapshot_time: float,
        topics: Optional[Sequence[str]] = None
    ) -> RetrievedContext:
        return self.context_retriever.retrieve(player_input, snapshot_time, topics)

    def get_conversation_context(self, dialogue_history: List[str]) -> List[str]:
        """Most recent lines of the conversation, bounded for the context window"""

        if self.max_dialogue_history <= 0:
            return list(dialogue_history)
        return list(dialogue_history[-self.max_dialogue_history:])
