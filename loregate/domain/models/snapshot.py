from typing import List, Optional
from pydantic import BaseModel, ConfigDict, Field

from .constraints import ConstraintSet


class RetrievedContext(BaseModel):
    """Ranked, capped memory excerpts for one interaction"""
    model_config = ConfigDict(frozen=True)

    canonical_facts: List[str] = Field(default_factory=list)
    world_state: List[str] = Field(default_factory=list)
    episodic_memories: List[str] = Field(default_factory=list)
    beliefs: List[str] = Field(default_factory=list)

    @property
    def total_count(self) -> int:
        return (
            len(self.canonical_facts) + len(self.world_state) +
            len(self.episodic_memories) + len(self.beliefs)
        )

    @property
    def has_content(self) -> bool:
        return self.total_count > 0


class StateSnapshot(BaseModel):
    """Point-in-time bundle fed to one inference attempt.

    Owned by the caller. Nothing in the pipeline mutates it; per-attempt
    variations are derived with ``with_attempt`` / ``with_constraints``.
    """
    model_config = ConfigDict(frozen=True)

    npc_id: Optional[str] = Field(None, description="Key used for prefix stability tracking")
    player_input: str = ""
    snapshot_time: float = Field(0.0, description="Logical clock reading in seconds")
    system_prompt: str = ""
    canonical_facts: List[str] = Field(default_factory=list)
    world_state: List[str] = Field(default_factory=list)
    episodic_memories: List[str] = Field(default_factory=list)
    beliefs: List[str] = Field(default_factory=list)
    dialogue_history: List[str] = Field(default_factory=list)
    constraints: ConstraintSet = Field(default_factory=ConstraintSet)
    forbidden_knowledge: List[str] = Field(default_factory=list)
    attempt_number: int = 0

    def with_retrieved(self, context: RetrievedContext) -> "StateSnapshot":
        return self.model_copy(update={
            "canonical_facts": list(context.canonical_facts),
            "world_state": list(context.world_state),
            "episodic_memories": list(context.episodic_memories),
            "beliefs": list(context.beliefs)
        })

    def with_attempt(self, attempt_number: int) -> "StateSnapshot":
        return self.model_copy(update={"attempt_number": attempt_number})

    def with_constraints(self, constraints: ConstraintSet) -> "StateSnapshot":
        return self.model_copy(update={"constraints": constraints})
