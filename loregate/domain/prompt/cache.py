from typing import Any, Optional
from pydantic import BaseModel, ConfigDict, Field
from enum import IntEnum
import math


class StaticPrefixBoundary(IntEnum):
    """Where the cacheable static prefix of a prompt ends.

    Values are ordered: a later boundary always yields a prefix that contains
    every section of an earlier one.
    """
    AFTER_SYSTEM_PROMPT = 0
    AFTER_CANONICAL_FACTS = 1
    AFTER_WORLD_STATE = 2
    AFTER_CONSTRAINTS = 3


# Tier for sections that are never part of the static prefix
DYNAMIC_TIER = 4


class KvCacheConfig(BaseModel):
    """Generation-cache settings for prompt assembly"""
    enable_caching: bool = False
    boundary: StaticPrefixBoundary = StaticPrefixBoundary.AFTER_CANONICAL_FACTS
    track_metrics: bool = True
    validate_prefix_stability: bool = False
    n_keep_tokens: Optional[int] = Field(None, description="Tokens the engine should protect from eviction")

    @classmethod
    def disabled(cls) -> "KvCacheConfig":
        return cls(enable_caching=False, track_metrics=False, validate_prefix_stability=False)

    @classmethod
    def default(cls) -> "KvCacheConfig":
        return cls(
            enable_caching=True,
            boundary=StaticPrefixBoundary.AFTER_CANONICAL_FACTS,
            track_metrics=True,
            validate_prefix_stability=True
        )

    @classmethod
    def aggressive(cls) -> "KvCacheConfig":
        return cls(
            enable_caching=True,
            boundary=StaticPrefixBoundary.AFTER_WORLD_STATE,
            track_metrics=True,
            validate_prefix_stability=True
        )


def estimate_tokens(characters: int, chars_per_token: float) -> int:
    if chars_per_token <= 0:
        return 0
    return int(math.ceil(characters / chars_per_token))


class CachedPrompt(BaseModel):
    """Prompt split into a byte-stable static prefix and a per-request suffix.

    ``static_prefix + dynamic_suffix`` is always the full prompt.
    """
    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    static_prefix: str
    dynamic_suffix: str
    boundary: StaticPrefixBoundary
    chars_per_token: float = 4.0
    was_truncated: bool = False
    assembled_prompt: Any = Field(None, exclude=True)

    @property
    def full_prompt(self) -> str:
        return self.static_prefix + self.dynamic_suffix

    @property
    def static_prefix_char_count(self) -> int:
        return len(self.static_prefix)

    @property
    def dynamic_suffix_char_count(self) -> int:
        return len(self.dynamic_suffix)

    @property
    def total_char_count(self) -> int:
        return self.static_prefix_char_count + self.dynamic_suffix_char_count

    @property
    def estimated_static_tokens(self) -> int:
        return estimate_tokens(self.static_prefix_char_count, self.chars_per_token)

    @property
    def estimated_dynamic_tokens(self) -> int:
        return estimate_tokens(self.dynamic_suffix_char_count, self.chars_per_token)

    @property
    def estimated_total_tokens(self) -> int:
        return self.estimated_static_tokens + self.estimated_dynamic_tokens

    def __str__(self) -> str:
        return (
            f"CachedPrompt[static={self.static_prefix_char_count}chars/{self.estimated_static_tokens}tok, "
            f"dynamic={self.dynamic_suffix_char_count}chars/{self.estimated_dynamic_tokens}tok, "
            f"boundary={self.boundary.name}, truncated={self.was_truncated}]"
        )
