import pytest
from langchain_core.language_models import FakeListChatModel
from langchain_core.messages import AIMessage, HumanMessage, SystemMessage

from loregate.domain.generation.generator import GenerationRequest, TextGenerator
from loregate.domain.models.usage import TokenUsage
from loregate.domain.orchestration.dialogue_pipeline import DialoguePipeline
from loregate.infrastructure.llm.langchain_generator import LangChainGenerator


def test_satisfies_generator_protocol():
    assert isinstance(LangChainGenerator(FakeListChatModel(responses=["Hi."])), TextGenerator)


def test_requires_model():
    with pytest.raises(ValueError):
        LangChainGenerator(None)


def test_plain_request_is_single_human_message():
    messages = LangChainGenerator.build_messages(GenerationRequest(prompt="System: Guard.\nPlayer: Hi\nNPC:"))

    assert messages == [HumanMessage(content="System: Guard.\nPlayer: Hi\nNPC:")]


def test_cached_request_splits_system_and_human():
    request = GenerationRequest(
        prompt="System: Guard.\nPlayer: Hi\nNPC:",
        static_prefix="System: Guard.",
        dynamic_suffix="\nPlayer: Hi\nNPC:",
        cache_prompt=True
    )

    messages = LangChainGenerator.build_messages(request)

    assert messages == [SystemMessage(content="System: Guard."), HumanMessage(content="\nPlayer: Hi\nNPC:")]


def test_cached_request_without_prefix_falls_back_to_prompt():
    request = GenerationRequest(prompt="Player: Hi", static_prefix="", dynamic_suffix="Player: Hi", cache_prompt=True)

    assert len(LangChainGenerator.build_messages(request)) == 1


async def test_generate_returns_model_text():
    generator = LangChainGenerator(FakeListChatModel(responses=["Move along."]))

    response = await generator.generate(GenerationRequest(prompt="Player: Hi"))

    assert response.text == "Move along."
    assert not response.truncated


def test_truncation_from_finish_reason():
    assert LangChainGenerator._was_truncated(AIMessage(content="x", response_metadata={"finish_reason": "length"}))
    assert LangChainGenerator._was_truncated(AIMessage(content="x", response_metadata={"stop_reason": "max_tokens"}))
    assert not LangChainGenerator._was_truncated(AIMessage(content="x", response_metadata={"finish_reason": "stop"}))


def test_token_usage_from_usage_metadata():
    message = AIMessage(
        content="x",
        usage_metadata={"input_tokens": 120, "output_tokens": 15, "total_tokens": 135}
    )

    assert LangChainGenerator._token_usage(message) == TokenUsage(prompt_tokens=120, completion_tokens=15)
    assert LangChainGenerator._token_usage(AIMessage(content="x")) is None


def test_content_blocks_are_joined():
    message = AIMessage(content=[{"type": "text", "text": "Move "}, {"type": "text", "text": "along."}])

    assert LangChainGenerator._message_text(message) == "Move along."


async def test_pipeline_with_chat_model(snapshot):
    model = FakeListChatModel(responses=["*grunts* Move along, citizen.\nAnything else?"])
    pipeline = DialoguePipeline(LangChainGenerator(model))

    result = await pipeline.run(snapshot)

    assert result.success
    assert result.dialogue_text == "Move along, citizen."
