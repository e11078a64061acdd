from typing import Any, Dict, Optional, Protocol, runtime_checkable
from pydantic import BaseModel, Field

from loregate.domain.models.usage import TokenUsage


class GenerationRequest(BaseModel):
    """What the pipeline hands to the generation engine for one attempt"""
    prompt: str
    static_prefix: Optional[str] = Field(None, description="Cacheable head of the prompt when caching is on")
    dynamic_suffix: Optional[str] = None
    cache_prompt: bool = False
    n_keep: Optional[int] = Field(None, description="Tokens the engine should protect from eviction")
    json_schema: Optional[Dict[str, Any]] = Field(None, description="Schema for constrained structured output")
    npc_name: Optional[str] = None
    attempt_number: int = 0


class GenerationResponse(BaseModel):
    """Raw engine output"""
    text: str = ""
    truncated: bool = Field(False, description="Generation stopped on the length limit")
    token_usage: Optional[TokenUsage] = None


@runtime_checkable
class TextGenerator(Protocol):
    """Anything that can turn a prompt into text. Transport errors are raised."""

    async def generate(self, request: GenerationRequest) -> GenerationResponse:
        ...
