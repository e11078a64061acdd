import json
import pytest

from loregate.domain.validation.output_parser import OutputParser, OutputParserConfig, normalize_whitespace
from loregate.domain.validation.parsed_output import MutationType


@pytest.fixture
def parser():
    return OutputParser()


def test_normalize_collapses_excess_blank_lines():
    assert normalize_whitespace("a\n\n\n\n\n\nb") == "a\n\n\nb"
    assert normalize_whitespace("a\n\n\nb") == "a\n\n\nb"


def test_normalize_line_endings_bom_and_trailing_spaces():
    assert normalize_whitespace("\ufeffHi  \r\nthere\r") == "Hi\nthere\n"


def test_normalize_preserves_leading_blank_lines():
    assert normalize_whitespace("\n\nHi") == "\n\nHi"


@pytest.mark.parametrize("text", [
    "\ufeffHello  \r\n\r\n\r\n\r\n\r\n\r\nWorld\n",
    "\n\n\n\n\nTop\t \n",
    "plain",
    "",
])
def test_normalize_is_idempotent(text):
    once = normalize_whitespace(text)
    assert normalize_whitespace(once) == once


def test_meta_text_rejected_before_cleanup(parser):
    parsed = parser.parse("Example answer: I will help you.")

    assert not parsed.success
    assert "meta-text" in parsed.error_message
    assert parsed.raw_output == "Example answer: I will help you."


def test_empty_output_fails(parser):
    assert not parser.parse("   \n ").success
    assert not parser.parse(None).success


def test_strips_stage_directions_and_speaker_labels(parser):
    assert parser.parse("*smiles* Welcome, traveler.").dialogue_text == "Welcome, traveler."
    assert parser.parse("Guard: Halt! Who goes there?").dialogue_text == "Halt! Who goes there?"


def test_keeps_first_line_only(parser):
    assert parser.parse("\n\nHello there.\nSecond line.").dialogue_text == "Hello there."


def test_appends_terminal_punctuation(parser):
    assert parser.parse("Welcome home").dialogue_text == "Welcome home."


def test_trims_to_last_complete_sentence(parser):
    assert parser.parse("Welcome home. And then the").dialogue_text == "Welcome home."


def test_truncated_output_ending_on_dangling_word_fails(parser):
    parsed = parser.parse("I went to the", was_truncated=True)

    assert not parsed.success
    assert "mid-sentence" in parsed.error_message


def test_truncated_output_without_sentence_fails(parser):
    parsed = parser.parse("I went home quickly", was_truncated=True)

    assert not parsed.success
    assert parsed.error_message == "Truncated output with no complete sentence"


def test_fragment_rejected(parser):
    parsed = parser.parse("depending on the weather")

    assert not parsed.success
    assert "fragment" in parsed.error_message


def test_directions_only_is_a_failure(parser):
    parsed = parser.parse("*nods silently*")

    assert not parsed.success
    assert parsed.error_message == "Dialogue empty after removing directions"


def test_inline_markers_become_mutations_and_intents(parser):
    parsed = parser.parse("I'll remember that. [MEMORY: Player helped the guard] [ACTION: open_gate]")

    assert parsed.dialogue_text == "I'll remember that."
    assert [m.type for m in parsed.proposed_mutations] == [MutationType.APPEND_EPISODIC]
    assert parsed.proposed_mutations[0].content == "Player helped the guard"
    assert parsed.world_intents[0].intent_type == "action"
    assert parsed.world_intents[0].target == "open_gate"


def test_fenced_json_block_is_extracted(parser):
    raw = 'Fine by me.\n```json\n{"memory": "met the player", "intent": "open_gate"}\n```'

    parsed = parser.parse(raw)

    assert parsed.dialogue_text == "Fine by me."
    assert parsed.metadata["has_json"] == "true"
    assert len(parsed.proposed_mutations) == 1
    assert parsed.world_intents[0].target == "open_gate"


def test_minimal_config_keeps_text_as_is():
    parser = OutputParser(OutputParserConfig.minimal())

    parsed = parser.parse("*waves* Hello [softly]")

    assert parsed.dialogue_text == "*waves* Hello [softly]."


def test_minimum_character_count():
    parser = OutputParser(OutputParserConfig(minimum_character_count=10))

    parsed = parser.parse("Hi.")

    assert not parsed.success
    assert "too short" in parsed.error_message


def test_parse_structured_document(parser):
    document = {
        "dialogueText": "Greetings, traveler.",
        "proposedMutations": [
            {"type": "AppendEpisodic", "content": "Met a traveler"},
            {"type": "TransformBelief", "target": "belief_1", "content": "travelers are kind", "confidence": 0.6},
            {"type": "Teleport", "content": "ignored"}
        ],
        "worldIntents": [{"intentType": "follow_player", "priority": 2}],
        "functionCalls": [{"name": "give_item", "arguments": {"item": "bread"}, "id": "call_1"}]
    }

    parsed = parser.parse_structured(json.dumps(document))

    assert parsed.success
    assert parsed.dialogue_text == "Greetings, traveler."
    assert parsed.metadata == {"structured": "true"}
    assert [m.type for m in parsed.proposed_mutations] == [
        MutationType.APPEND_EPISODIC, MutationType.TRANSFORM_BELIEF
    ]
    assert parsed.world_intents[0].priority == 2
    assert parsed.function_calls[0].function_name == "give_item"
    assert parsed.has_structured_data


def test_parse_structured_falls_back_on_invalid_json(parser):
    parsed = parser.parse_structured("Hello there, friend.")

    assert parsed.success
    assert parsed.dialogue_text == "Hello there, friend."
    assert parsed.metadata["structured_fallback"] == "invalid_json"


def test_parse_structured_falls_back_on_schema_mismatch(parser):
    parsed = parser.parse_structured('{"text": "Hello."}')

    assert parsed.metadata["structured_fallback"] == "schema_mismatch"


def test_parse_structured_without_fallback_fails(parser):
    parsed = parser.parse_structured("Hello there, friend.", fallback_to_heuristic=False)

    assert not parsed.success
    assert parsed.error_message.startswith("Invalid structured output")


def test_parse_structured_rejects_meta_text_dialogue(parser):
    parsed = parser.parse_structured(json.dumps({"dialogueText": "Note: the guard is grumpy."}))

    assert not parsed.success
    assert "meta-text" in parsed.error_message
