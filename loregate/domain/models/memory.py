from typing import List, Optional
from pydantic import BaseModel, ConfigDict, Field
from enum import Enum


class MemoryAuthority(str, Enum):
    """Authority level of a memory entry"""
    CANONICAL = "canonical"
    WORLD_STATE = "world_state"
    EPISODIC = "episodic"
    BELIEF = "belief"


class CanonicalFact(BaseModel):
    """Immutable world truth. Mutation attempts against it are always rejected."""
    model_config = ConfigDict(frozen=True)

    id: str = Field(description="Stable fact identifier")
    content: str = Field(description="Fact statement")
    domain: Optional[str] = Field(None, description="Topic domain, matched exactly against retrieval topics")
    contradiction_keywords: List[str] = Field(default_factory=list)

    @property
    def authority(self) -> MemoryAuthority:
        return MemoryAuthority.CANONICAL


class WorldStateEntry(BaseModel):
    """Keyed piece of mutable world state"""
    model_config = ConfigDict(frozen=True)

    key: str = Field(description="Stable world state key")
    content: str = Field(description="Rendered state value")

    @property
    def authority(self) -> MemoryAuthority:
        return MemoryAuthority.WORLD_STATE


class EpisodicMemoryEntry(BaseModel):
    """Timestamped recollection. created_at is on the logical clock, not wall-clock."""
    model_config = ConfigDict(frozen=True)

    id: str
    content: str
    created_at: float = Field(0.0, description="Logical creation time in seconds")
    significance: float = Field(0.5, ge=0.0, le=1.0)
    strength: float = Field(1.0, ge=0.0, le=1.0)
    sequence_number: int = 0

    @property
    def authority(self) -> MemoryAuthority:
        return MemoryAuthority.EPISODIC

    def is_active(self, min_strength: float = 0.1) -> bool:
        return self.strength > min_strength


class BeliefEntry(BaseModel):
    """Confidence-weighted NPC opinion"""
    model_config = ConfigDict(frozen=True)

    id: str
    subject: str = ""
    belief: str = Field(description="Belief statement without the confidence prefix")
    confidence: float = Field(0.5, ge=0.0, le=1.0)
    is_contradicted: bool = False
    sequence_number: int = 0

    @property
    def authority(self) -> MemoryAuthority:
        return MemoryAuthority.BELIEF

    @property
    def content(self) -> str:
        """Belief statement prefixed by how sure the NPC is"""
        if self.confidence >= 0.8:
            prefix = "I know that"
        elif self.confidence >= 0.5:
            prefix = "I believe that"
        elif self.confidence >= 0.3:
            prefix = "I think that"
        else:
            prefix = "I'm not sure, but"

        return f"{prefix} {self.belief}"
