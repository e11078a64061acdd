from typing import List, Union
import pytest

from loregate.domain.context.memory.memory_store import InMemoryMemoryStore
from loregate.domain.generation.generator import GenerationRequest, GenerationResponse
from loregate.domain.models.constraints import ConstraintSet
from loregate.domain.models.memory import BeliefEntry, EpisodicMemoryEntry
from loregate.domain.models.snapshot import StateSnapshot
from loregate.domain.models.usage import TokenUsage


class ScriptedGenerator:
    """Returns queued responses in order; queued exceptions are raised instead"""

    def __init__(self, responses: List[Union[str, Exception]]):
        self.responses = list(responses)
        self.requests: List[GenerationRequest] = []

    async def generate(self, request: GenerationRequest) -> GenerationResponse:
        self.requests.append(request)
        item = self.responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return GenerationResponse(text=item, token_usage=TokenUsage(prompt_tokens=10, completion_tokens=5))


@pytest.fixture
def store():
    store = InMemoryMemoryStore()
    store.add_canonical_fact("king_status", "the king is dead", domain="royalty")
    store.add_canonical_fact("capital", "Eldoria is the capital", domain="geography")
    store.set_world_state("weather", "It is raining in Eldoria")
    store.add_episodic_memory(EpisodicMemoryEntry(
        id="mem_1", content="The player bought bread at the market", created_at=900.0, significance=0.3
    ))
    store.add_belief(BeliefEntry(id="belief_1", subject="player", belief="the player is honest", confidence=0.7))
    return store


@pytest.fixture
def snapshot():
    return StateSnapshot(
        npc_id="guard_01",
        player_input="What news from the castle?",
        snapshot_time=1000.0,
        system_prompt="You are a gruff castle guard.",
        canonical_facts=["the king is dead"],
        world_state=["It is raining in Eldoria"],
        episodic_memories=["The player bought bread at the market"],
        beliefs=["I believe that the player is honest"],
        dialogue_history=["Player: Hello.", "Guard: Move along."],
        constraints=ConstraintSet()
    )


@pytest.fixture
def scripted_generator():
    def factory(*responses):
        return ScriptedGenerator(list(responses))
    return factory
