from typing import Any, Dict, List, Optional
from pydantic import BaseModel, ConfigDict, Field
from enum import Enum


class MutationType(str, Enum):
    """Kind of memory change proposed by the model"""
    APPEND_EPISODIC = "append_episodic"
    TRANSFORM_BELIEF = "transform_belief"
    TRANSFORM_RELATIONSHIP = "transform_relationship"
    EMIT_WORLD_INTENT = "emit_world_intent"


class ProposedMutation(BaseModel):
    """Memory change the model asked for. Applied by the caller only after approval."""
    model_config = ConfigDict(frozen=True)

    type: MutationType
    target: Optional[str] = Field(None, description="Memory entry id or intent type the mutation acts on")
    content: str = ""
    confidence: float = 1.0
    source_text: Optional[str] = None

    @classmethod
    def append_episodic(cls, content: str, source_text: Optional[str] = None) -> "ProposedMutation":
        return cls(type=MutationType.APPEND_EPISODIC, content=content, source_text=source_text)

    @classmethod
    def transform_belief(
        cls,
        belief_id: str,
        content: str,
        confidence: float = 1.0,
        source_text: Optional[str] = None
    ) -> "ProposedMutation":
        return cls(
            type=MutationType.TRANSFORM_BELIEF,
            target=belief_id,
            content=content,
            confidence=confidence,
            source_text=source_text
        )

    @classmethod
    def transform_relationship(cls, target: str, content: str, source_text: Optional[str] = None) -> "ProposedMutation":
        return cls(type=MutationType.TRANSFORM_RELATIONSHIP, target=target, content=content, source_text=source_text)

    @classmethod
    def emit_world_intent(cls, intent_type: str, content: str, source_text: Optional[str] = None) -> "ProposedMutation":
        return cls(type=MutationType.EMIT_WORLD_INTENT, target=intent_type, content=content, source_text=source_text)

    def __str__(self) -> str:
        return f"[{self.type.value}] {self.target or ''}: {self.content}"


class WorldIntent(BaseModel):
    """Request for the game world to do something"""
    model_config = ConfigDict(frozen=True)

    intent_type: str = ""
    target: Optional[str] = None
    parameters: Dict[str, Any] = Field(default_factory=dict)
    priority: int = 0
    source_text: Optional[str] = None

    @classmethod
    def create(cls, intent_type: str, target: Optional[str] = None, priority: int = 0) -> "WorldIntent":
        return cls(intent_type=intent_type, target=target, priority=priority)

    def __str__(self) -> str:
        return f"WorldIntent[{self.intent_type}] -> {self.target or '(none)'} (priority: {self.priority})"


class FunctionCall(BaseModel):
    """Function invocation requested in structured output"""
    model_config = ConfigDict(frozen=True)

    function_name: str
    arguments: Dict[str, Any] = Field(default_factory=dict)
    call_id: Optional[str] = None


class ParsedOutput(BaseModel):
    """Result of parsing one raw model response"""
    model_config = ConfigDict(frozen=True)

    success: bool
    dialogue_text: str = ""
    error_message: Optional[str] = None
    raw_output: str = ""
    proposed_mutations: List[ProposedMutation] = Field(default_factory=list)
    world_intents: List[WorldIntent] = Field(default_factory=list)
    function_calls: List[FunctionCall] = Field(default_factory=list)
    metadata: Dict[str, str] = Field(default_factory=dict)

    @classmethod
    def dialogue(
        cls,
        dialogue_text: str,
        raw_output: str,
        proposed_mutations: Optional[List[ProposedMutation]] = None,
        world_intents: Optional[List[WorldIntent]] = None,
        function_calls: Optional[List[FunctionCall]] = None,
        metadata: Optional[Dict[str, str]] = None
    ) -> "ParsedOutput":
        return cls(
            success=True,
            dialogue_text=dialogue_text,
            raw_output=raw_output,
            proposed_mutations=list(proposed_mutations or []),
            world_intents=list(world_intents or []),
            function_calls=list(function_calls or []),
            metadata=dict(metadata or {})
        )

    @classmethod
    def failed(cls, error_message: str, raw_output: str) -> "ParsedOutput":
        return cls(success=False, error_message=error_message, raw_output=raw_output)

    @property
    def has_structured_data(self) -> bool:
        return bool(self.proposed_mutations or self.world_intents or self.function_calls)

    def with_mutations_replaced(self, mutations: List[ProposedMutation]) -> "ParsedOutput":
        return self.model_copy(update={"proposed_mutations": list(mutations)})

    def with_intents_replaced(self, intents: List[WorldIntent]) -> "ParsedOutput":
        return self.model_copy(update={"world_intents": list(intents)})

    def with_metadata(self, key: str, value: str) -> "ParsedOutput":
        return self.model_copy(update={"metadata": {**self.metadata, key: value}})

    def __str__(self) -> str:
        if not self.success:
            return f"ParsedOutput[Failed] {self.error_message}"

        parts = ["ParsedOutput[OK]"]
        if self.dialogue_text:
            preview = self.dialogue_text[:30] + "..." if len(self.dialogue_text) > 30 else self.dialogue_text
            parts.append(f'Dialogue: "{preview}"')
        if self.proposed_mutations:
            parts.append(f"{len(self.proposed_mutations)} mutations")
        if self.world_intents:
            parts.append(f"{len(self.world_intents)} intents")
        if self.function_calls:
            parts.append(f"{len(self.function_calls)} function calls")
        return " | ".join(parts)
