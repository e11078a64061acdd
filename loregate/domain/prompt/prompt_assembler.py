from typing import Any, List, NamedTuple, Optional
from pydantic import BaseModel, ConfigDict, Field
import structlog

from loregate.domain.context.memory.working_memory import WorkingMemory, WorkingMemoryConfig
from loregate.domain.models.constraints import ConstraintSet
from loregate.domain.models.snapshot import StateSnapshot
from .cache import DYNAMIC_TIER, CachedPrompt, KvCacheConfig, StaticPrefixBoundary, estimate_tokens


class PromptAssemblerConfig(BaseModel):
    """Token budget and section formats for prompt assembly"""
    max_prompt_tokens: int = 2048
    reserve_response_tokens: int = 256
    chars_per_token: float = 4.0
    include_retry_feedback: bool = True
    include_constraints: bool = True
    system_prompt_format: str = "System: {}"
    context_header: str = "\n[Context]"
    conversation_header: str = "\n[Conversation]"
    player_input_format: str = "\nPlayer: {}"
    npc_prompt_format: str = "\n{}:"
    default_npc_name: str = "NPC"

    @classmethod
    def default(cls) -> "PromptAssemblerConfig":
        return cls()

    @classmethod
    def small_context(cls) -> "PromptAssemblerConfig":
        return cls(max_prompt_tokens=1024, reserve_response_tokens=128)

    @classmethod
    def large_context(cls) -> "PromptAssemblerConfig":
        return cls(max_prompt_tokens=4096, reserve_response_tokens=512)

    @property
    def max_prompt_characters(self) -> int:
        return int((self.max_prompt_tokens - self.reserve_response_tokens) * self.chars_per_token)


class PromptSectionBreakdown(BaseModel):
    """Characters contributed by each prompt section. Sums to the prompt length."""
    system_prompt: int = 0
    context: int = 0
    constraints: int = 0
    retry_feedback: int = 0
    dialogue_history: int = 0
    player_input: int = 0
    formatting: int = 0

    @property
    def total(self) -> int:
        return (
            self.system_prompt + self.context + self.constraints + self.retry_feedback +
            self.dialogue_history + self.player_input + self.formatting
        )


class AssembledPrompt(BaseModel):
    """Final prompt text for one attempt"""
    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    text: str = ""
    character_count: int = 0
    estimated_tokens: int = 0
    was_truncated: bool = False
    breakdown: PromptSectionBreakdown = Field(default_factory=PromptSectionBreakdown)
    working_memory: Optional[Any] = Field(None, exclude=True)

    def __str__(self) -> str:
        truncated = " (truncated)" if self.was_truncated else ""
        return f"AssembledPrompt[{self.character_count} chars, ~{self.estimated_tokens} tokens{truncated}]"


class _Segment(NamedTuple):
    text: str
    section: str
    tier: int


class PromptAssembler:
    """Renders working memory into prompt text with a per-section size breakdown.

    Plain assembly order: system prompt, context, constraints, retry feedback,
    dialogue, player input, NPC cue. Cache-aware assembly moves constraints
    ahead of episodic memories and beliefs so that everything up to the chosen
    boundary depends only on system prompt, facts, world state and the
    caller's constraints. Retry escalations follow the boundary.
    """

    def __init__(self, config: Optional[PromptAssemblerConfig] = None, logger=None):
        self.config = config or PromptAssemblerConfig()
        self.logger = logger or structlog.get_logger(__name__)

    def assemble_from_snapshot(
        self,
        snapshot: StateSnapshot,
        npc_name: Optional[str] = None,
        retry_feedback: Optional[str] = None,
        working_memory_config: Optional[WorkingMemoryConfig] = None
    ) -> AssembledPrompt:
        """Build a working memory for the snapshot and assemble from it.

        The returned prompt owns the working memory; release it when done.
        """
        if snapshot is None:
            raise ValueError("snapshot is required")

        working_memory = WorkingMemory(snapshot, working_memory_config or self.create_working_memory_config())
        try:
            return self.assemble(working_memory, npc_name, retry_feedback)
        except Exception:
            working_memory.release()
            raise

    def assemble(
        self,
        working_memory: WorkingMemory,
        npc_name: Optional[str] = None,
        retry_feedback: Optional[str] = None,
        escalated_constraints: Optional[ConstraintSet] = None
    ) -> AssembledPrompt:
        if working_memory is None:
            raise ValueError("working_memory is required")

        segments = self._build_segments(
            working_memory, npc_name, retry_feedback, escalated_constraints, cache_layout=False
        )
        return self._to_prompt(segments, working_memory)

    def assemble_with_cache_info(
        self,
        working_memory: WorkingMemory,
        npc_name: Optional[str] = None,
        retry_feedback: Optional[str] = None,
        kv_cache_config: Optional[KvCacheConfig] = None,
        escalated_constraints: Optional[ConstraintSet] = None
    ) -> CachedPrompt:
        """Assemble and split into static prefix and dynamic suffix.

        Escalated constraints always land after the boundary, so retries
        never change the static prefix.
        """

        if working_memory is None:
            raise ValueError("working_memory is required")

        cache_config = kv_cache_config or KvCacheConfig.default()
        boundary = cache_config.boundary

        segments = self._build_segments(
            working_memory, npc_name, retry_feedback, escalated_constraints, cache_layout=True
        )
        assembled = self._to_prompt(segments, working_memory)

        static_prefix = "".join(s.text for s in segments if s.tier <= boundary)
        dynamic_suffix = "".join(s.text for s in segments if s.tier > boundary)

        cached = CachedPrompt(
            static_prefix=static_prefix,
            dynamic_suffix=dynamic_suffix,
            boundary=boundary,
            chars_per_token=self.config.chars_per_token,
            was_truncated=assembled.was_truncated,
            assembled_prompt=assembled
        )

        self.logger.debug(
            "Assembled prompt with cache split",
            boundary=boundary.name,
            static_chars=cached.static_prefix_char_count,
            dynamic_chars=cached.dynamic_suffix_char_count
        )

        return cached

    def assemble_minimal(self, system_prompt: str, player_input: str, npc_name: Optional[str] = None) -> AssembledPrompt:
        """System prompt, player input and NPC cue only"""

        parts = []
        breakdown = PromptSectionBreakdown()
        if system_prompt:
            system_section = self.config.system_prompt_format.format(system_prompt)
            parts.append(system_section)
            breakdown.system_prompt = len(system_section)

        player_section = self.config.player_input_format.format(player_input)
        parts.append(player_section)
        breakdown.player_input = len(player_section)

        npc_prompt = self.config.npc_prompt_format.format(npc_name or self.config.default_npc_name)
        parts.append(npc_prompt)
        breakdown.formatting = len(npc_prompt)

        text = "".join(parts)
        return AssembledPrompt(
            text=text,
            character_count=len(text),
            estimated_tokens=self.estimate_tokens(len(text)),
            breakdown=breakdown
        )

    def estimate_tokens(self, characters: int) -> int:
        return estimate_tokens(characters, self.config.chars_per_token)

    def estimate_characters(self, tokens: int) -> int:
        return int(tokens * self.config.chars_per_token)

    def create_working_memory_config(self) -> WorkingMemoryConfig:
        """Working memory budget derived from the prompt budget"""

        # Headers, formatting and NPC cue
        formatting_reserve = 200
        return WorkingMemoryConfig(
            max_context_characters=max(500, self.config.max_prompt_characters - formatting_reserve)
        )

    def _build_segments(
        self,
        working_memory: WorkingMemory,
        npc_name: Optional[str],
        retry_feedback: Optional[str],
        escalated_constraints: Optional[ConstraintSet],
        cache_layout: bool
    ) -> List[_Segment]:
        config = self.config
        segments: List[_Segment] = []

        if working_memory.system_prompt:
            segments.append(_Segment(
                config.system_prompt_format.format(working_memory.system_prompt),
                "system_prompt",
                StaticPrefixBoundary.AFTER_SYSTEM_PROMPT
            ))

        static_lines = (
            [(line, StaticPrefixBoundary.AFTER_CANONICAL_FACTS) for line in working_memory.get_formatted_facts()] +
            [(line, StaticPrefixBoundary.AFTER_WORLD_STATE) for line in working_memory.get_formatted_world_state()]
        )
        dynamic_lines = [
            (line, DYNAMIC_TIER)
            for line in working_memory.get_formatted_memories() + working_memory.get_formatted_beliefs()
        ]

        constraint_segments: List[_Segment] = []
        if config.include_constraints:
            constraint_text = working_memory.constraints.to_prompt_injection()
            if constraint_text:
                constraint_segments.append(
                    _Segment(constraint_text, "constraints", StaticPrefixBoundary.AFTER_CONSTRAINTS)
                )
            # Continues the rules block, but only ever in the dynamic suffix
            if escalated_constraints is not None:
                escalated_text = escalated_constraints.to_prompt_injection(header=not constraint_text)
                if escalated_text:
                    constraint_segments.append(_Segment(escalated_text, "constraints", DYNAMIC_TIER))

        if cache_layout:
            self._append_context(segments, static_lines, header_written=False)
            segments.extend(constraint_segments)
            self._append_context(
                segments, dynamic_lines, header_written=bool(static_lines)
            )
        else:
            self._append_context(segments, static_lines + dynamic_lines, header_written=False)
            segments.extend(constraint_segments)

        if config.include_retry_feedback and retry_feedback:
            segments.append(_Segment("\n" + retry_feedback, "retry_feedback", DYNAMIC_TIER))

        dialogue_text = working_memory.get_formatted_dialogue()
        if dialogue_text:
            segments.append(_Segment(config.conversation_header + "\n", "formatting", DYNAMIC_TIER))
            segments.append(_Segment(dialogue_text, "dialogue_history", DYNAMIC_TIER))

        segments.append(_Segment(
            config.player_input_format.format(working_memory.player_input), "player_input", DYNAMIC_TIER
        ))
        segments.append(_Segment(
            config.npc_prompt_format.format(npc_name or config.default_npc_name), "formatting", DYNAMIC_TIER
        ))

        return segments

    def _append_context(self, segments: List[_Segment], lines, header_written: bool) -> None:
        """Append context lines; the header goes right before the first line"""

        for line, tier in lines:
            if not header_written:
                segments.append(_Segment(self.config.context_header + "\n", "formatting", tier))
                segments.append(_Segment(line, "context", tier))
                header_written = True
            else:
                segments.append(_Segment("\n" + line, "context", tier))

    def _to_prompt(self, segments: List[_Segment], working_memory: WorkingMemory) -> AssembledPrompt:
        text = "".join(s.text for s in segments)
        breakdown = PromptSectionBreakdown()
        for segment in segments:
            setattr(breakdown, segment.section, getattr(breakdown, segment.section) + len(segment.text))

        character_count = len(text)
        was_truncated = working_memory.was_truncated

        # Working memory already truncated; this is only a final check
        if character_count > self.config.max_prompt_characters:
            was_truncated = True
            self.logger.warning(
                "Prompt exceeds character budget",
                characters=character_count,
                limit=self.config.max_prompt_characters
            )

        prompt = AssembledPrompt(
            text=text,
            character_count=character_count,
            estimated_tokens=self.estimate_tokens(character_count),
            was_truncated=was_truncated,
            breakdown=breakdown,
            working_memory=working_memory
        )

        self.logger.debug("Assembled prompt", prompt=str(prompt))

        return prompt
