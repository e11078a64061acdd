from typing import Any, Dict, List, Optional, Tuple
from pydantic import BaseModel, Field
import json
import re
import structlog

from .parsed_output import FunctionCall, ParsedOutput, ProposedMutation, WorldIntent
from .schema import MUTATION_TYPE_NAMES, validate_document


DEFAULT_META_TEXT_PATTERNS = [
    "example answer:", "for example:", "example:", "note:", "remember:",
    "important:", "hint:", "tip:", "answer:", "reply:", "response:",
    "player asks", "player says", "npc replies", "npc says", "character responds",
    "if you wish", "if you want", "don't forget", "keep in mind",
    "you should", "you can", "you may", "use punctuation",
    "indicate a question", "respectively", "for strong emotions",
]

DANGLING_WORDS = {
    "the", "a", "an", "to", "and", "or", "but", "for", "with",
    "of", "in", "on", "at", "by", "some", "kind",
}

FRAGMENT_PREFIXES = ["depending on", "based on", "according to", "in order to", "so that", "such that"]

TERMINAL_ENDINGS = (".", "!", "?", '."', '!"', '?"')

JSON_BLOCK_PATTERN = re.compile(r"```json\s*([\s\S]*?)```", re.IGNORECASE)
MEMORY_MARKER = re.compile(r"\[MEMORY:\s*(.+?)\]", re.IGNORECASE)
BELIEF_MARKER = re.compile(r"\[BELIEF:\s*(.+?)\]", re.IGNORECASE)
INTENT_MARKER = re.compile(r"\[INTENT:\s*(.+?)\]", re.IGNORECASE)
ACTION_MARKER = re.compile(r"\[ACTION:\s*(.+?)\]", re.IGNORECASE)

STAGE_DIRECTION = re.compile(r"\*[^*]*\*")
SCRIPT_DIRECTION = re.compile(r"\[.*?\]")
SPEAKER_LABEL = re.compile(r"^\s*[A-Z][A-Za-z\s]+:\s*", re.MULTILINE)
WHITESPACE_RUN = re.compile(r"\s+")
EXCESS_BLANK_LINES = re.compile(r"\n{4,}")


def normalize_whitespace(text: str) -> str:
    """Canonical whitespace for raw model output.

    Strips a leading byte-order mark, converts CRLF/CR to LF, trims trailing
    whitespace on every line and collapses runs of three or more blank lines
    to two. Leading blank lines and a trailing newline are kept. Idempotent.
    """
    if not text:
        return text

    if text.startswith("\ufeff"):
        text = text[1:]

    text = text.replace("\r\n", "\n").replace("\r", "\n")
    text = "\n".join(line.rstrip() for line in text.split("\n"))

    body = text.lstrip("\n")
    leading = text[:len(text) - len(body)]
    return leading + EXCESS_BLANK_LINES.sub("\n\n\n", body)


def _optional_str(value: Any) -> Optional[str]:
    return None if value is None else str(value)


class OutputParserConfig(BaseModel):
    """Cleanup steps applied to raw model output"""
    enforce_single_line: bool = True
    remove_stage_directions: bool = True
    remove_script_directions: bool = True
    remove_speaker_labels: bool = True
    extract_structured_data: bool = True
    trim_to_complete_sentence: bool = True
    normalize_whitespace: bool = True
    minimum_character_count: int = Field(1, ge=0)
    meta_text_patterns: List[str] = Field(default_factory=lambda: list(DEFAULT_META_TEXT_PATTERNS))

    @classmethod
    def default(cls) -> "OutputParserConfig":
        return cls()

    @classmethod
    def structured(cls) -> "OutputParserConfig":
        return cls(enforce_single_line=False, extract_structured_data=True, trim_to_complete_sentence=False)

    @classmethod
    def minimal(cls) -> "OutputParserConfig":
        return cls(
            enforce_single_line=False,
            remove_stage_directions=False,
            remove_script_directions=False,
            remove_speaker_labels=False,
            extract_structured_data=False,
            trim_to_complete_sentence=False
        )


class _Extraction:
    def __init__(self):
        self.mutations: List[ProposedMutation] = []
        self.intents: List[WorldIntent] = []
        self.metadata: Dict[str, str] = {}


class OutputParser:
    """Turns raw generated text into a ParsedOutput.

    Failures are returned as ``ParsedOutput.failed`` values with a
    diagnostic message; nothing here raises on bad model output.
    """

    def __init__(self, config: Optional[OutputParserConfig] = None, logger=None):
        self.config = config or OutputParserConfig()
        self.logger = logger or structlog.get_logger(__name__)

    def parse(self, raw_output: Optional[str], was_truncated: bool = False) -> ParsedOutput:
        if raw_output is None or not raw_output.strip():
            return ParsedOutput.failed("Response is empty or whitespace", raw_output or "")

        # Checked on the raw text; cleanup could hide it
        if self._contains_meta_text(raw_output):
            return ParsedOutput.failed("Response contains meta-text/explanation instead of dialogue", raw_output)

        extraction = _Extraction()
        text = raw_output

        if self.config.extract_structured_data:
            text = self._extract_structured_data(text, extraction)

        if self.config.normalize_whitespace:
            text = normalize_whitespace(text)

        dialogue, error = self._extract_dialogue_text(text, was_truncated)
        if error:
            return ParsedOutput.failed(error, raw_output)

        return self._finish(dialogue, raw_output, extraction.mutations, extraction.intents, [], extraction.metadata)

    def parse_structured(
        self,
        json_text: Optional[str],
        was_truncated: bool = False,
        fallback_to_heuristic: bool = True
    ) -> ParsedOutput:
        """Parse a schema-conformant JSON response, falling back to heuristics when it is malformed"""

        if json_text is None or not json_text.strip():
            return ParsedOutput.failed("Response is empty or whitespace", json_text or "")

        try:
            document = json.loads(json_text)
        except json.JSONDecodeError as e:
            if not fallback_to_heuristic:
                return ParsedOutput.failed(f"Invalid structured output: {e}", json_text)
            self.logger.info("Structured output is not valid JSON, falling back to heuristic parsing", error=str(e))
            return self._fallback(json_text, was_truncated, "invalid_json")

        schema_error = validate_document(document)
        if schema_error:
            if not fallback_to_heuristic:
                return ParsedOutput.failed(schema_error, json_text)
            self.logger.info("Structured output does not match schema, falling back", error=schema_error)
            return self._fallback(json_text, was_truncated, "schema_mismatch")

        dialogue_text = document["dialogueText"]
        if not dialogue_text.strip():
            return ParsedOutput.failed("Dialogue text is empty in structured output", json_text)

        if self._contains_meta_text(dialogue_text):
            return ParsedOutput.failed("Response contains meta-text/explanation instead of dialogue", json_text)

        if self.config.normalize_whitespace:
            dialogue_text = normalize_whitespace(dialogue_text)

        dialogue, error = self._extract_dialogue_text(dialogue_text, was_truncated)
        if error:
            return ParsedOutput.failed(error, json_text)

        mutations = [
            m for m in (self._mutation_from_json(item) for item in document.get("proposedMutations") or [])
            if m is not None
        ]
        intents = [
            i for i in (self._intent_from_json(item) for item in document.get("worldIntents") or [])
            if i is not None
        ]
        calls = [
            c for c in (self._function_call_from_json(item) for item in document.get("functionCalls") or [])
            if c is not None
        ]

        return self._finish(dialogue, json_text, mutations, intents, calls, {"structured": "true"})

    def _fallback(self, text: str, was_truncated: bool, reason: str) -> ParsedOutput:
        parsed = self.parse(text, was_truncated)
        return parsed.with_metadata("structured_fallback", reason)

    def _finish(
        self,
        dialogue: str,
        raw_output: str,
        mutations: List[ProposedMutation],
        intents: List[WorldIntent],
        calls: List[FunctionCall],
        metadata: Dict[str, str]
    ) -> ParsedOutput:
        if not dialogue.strip():
            return ParsedOutput.failed("Dialogue text is empty after parsing", raw_output)

        if len(dialogue) < self.config.minimum_character_count:
            return ParsedOutput.failed(
                f"Dialogue too short ({len(dialogue)} chars, minimum {self.config.minimum_character_count})",
                raw_output
            )

        result = ParsedOutput.dialogue(dialogue, raw_output, mutations, intents, calls, metadata)
        self.logger.debug("Parsed output", result=str(result))
        return result

    def _contains_meta_text(self, text: str) -> bool:
        lowered = text.lower()
        for pattern in self.config.meta_text_patterns:
            if pattern in lowered:
                self.logger.debug("Meta-text detected", pattern=pattern)
                return True
        return False

    def _extract_structured_data(self, text: str, extraction: _Extraction) -> str:
        for match in JSON_BLOCK_PATTERN.finditer(text):
            self._collect_from_json_block(match.group(1).strip(), extraction)
        text = JSON_BLOCK_PATTERN.sub("", text).strip()

        for match in MEMORY_MARKER.finditer(text):
            content = match.group(1).strip()
            extraction.mutations.append(ProposedMutation.append_episodic(content, content))
        text = MEMORY_MARKER.sub("", text).strip()

        for match in BELIEF_MARKER.finditer(text):
            content = match.group(1).strip()
            extraction.mutations.append(ProposedMutation.transform_belief("extracted", content, 0.8, content))
        text = BELIEF_MARKER.sub("", text).strip()

        for match in INTENT_MARKER.finditer(text):
            extraction.intents.append(WorldIntent.create("extracted", match.group(1).strip()))
        text = INTENT_MARKER.sub("", text).strip()

        for match in ACTION_MARKER.finditer(text):
            extraction.intents.append(WorldIntent.create("action", match.group(1).strip()))
        text = ACTION_MARKER.sub("", text).strip()

        return text

    def _collect_from_json_block(self, block: str, extraction: _Extraction) -> None:
        extraction.metadata["has_json"] = "true"

        try:
            data = json.loads(block)
        except json.JSONDecodeError as e:
            self.logger.debug("Skipping malformed JSON block", error=str(e))
            return

        if not isinstance(data, dict):
            return

        for key in ("memory", "memories"):
            for value in self._string_values(data.get(key)):
                extraction.mutations.append(ProposedMutation.append_episodic(value, block))

        for value in self._string_values(data.get("belief")):
            extraction.mutations.append(ProposedMutation.transform_belief("json_belief", value, 0.8, block))

        for key in ("intent", "action"):
            for value in self._string_values(data.get(key)):
                extraction.intents.append(WorldIntent.create("json_intent", value))

    @staticmethod
    def _string_values(value: Any) -> List[str]:
        if isinstance(value, str):
            return [value]
        if isinstance(value, list):
            return [v for v in value if isinstance(v, str)]
        return []

    def _extract_dialogue_text(self, text: str, was_truncated: bool) -> Tuple[str, Optional[str]]:
        """Clean text down to a single utterance. Returns (text, error)."""

        config = self.config

        if config.enforce_single_line:
            text = next((line.strip() for line in text.split("\n") if line.strip()), "")

        if not text.strip():
            return "", "No dialogue text after single-line extraction"

        if config.remove_stage_directions and "*" in text:
            text = STAGE_DIRECTION.sub("", text).strip()

        if config.remove_script_directions and ("[" in text or "]" in text):
            text = SCRIPT_DIRECTION.sub("", text).strip()

        if config.remove_speaker_labels:
            text = SPEAKER_LABEL.sub("", text).strip()

        text = WHITESPACE_RUN.sub(" ", text).strip()

        if not text:
            return "", "Dialogue empty after removing directions"

        if config.trim_to_complete_sentence and len(text) > 5:
            text, error = self._trim_to_complete_sentence(text, was_truncated)
            if error:
                return "", error

        if text[0].islower():
            lowered = text.lower()
            for prefix in FRAGMENT_PREFIXES:
                if lowered.startswith(prefix):
                    return "", f"Response is a fragment (starts with '{prefix}')"

        if not text.endswith(TERMINAL_ENDINGS):
            text = text.rstrip() + "."

        return text, None

    @staticmethod
    def _trim_to_complete_sentence(text: str, was_truncated: bool) -> Tuple[str, Optional[str]]:
        last_punctuation = max(text.rfind("."), text.rfind("!"), text.rfind("?"))

        if last_punctuation > 0:
            return text[:last_punctuation + 1].strip(), None

        if was_truncated:
            words = text.split()
            if words:
                last_word = words[-1].rstrip(".!?,")
                if last_word.lower() in DANGLING_WORDS:
                    return "", f"Truncated output ends mid-sentence with '{last_word}'"
            return "", "Truncated output with no complete sentence"

        return text, None

    def _mutation_from_json(self, item: Any) -> Optional[ProposedMutation]:
        if not isinstance(item, dict):
            return None

        type_name = str(item.get("type", "")).replace("_", "").lower()
        mutation_type = MUTATION_TYPE_NAMES.get(type_name)
        if mutation_type is None:
            self.logger.debug("Skipping mutation with unknown type", type=item.get("type"))
            return None

        confidence = item.get("confidence", 1.0)
        if not isinstance(confidence, (int, float)):
            confidence = 1.0

        return ProposedMutation(
            type=mutation_type,
            target=_optional_str(item.get("target")),
            content=str(item.get("content") or ""),
            confidence=float(confidence),
            source_text=json.dumps(item)
        )

    @staticmethod
    def _intent_from_json(item: Any) -> Optional[WorldIntent]:
        if not isinstance(item, dict):
            return None

        parameters = item.get("parameters") or {}
        priority = item.get("priority", 0)

        return WorldIntent(
            intent_type=str(item.get("intentType") or ""),
            target=_optional_str(item.get("target")),
            parameters=parameters if isinstance(parameters, dict) else {},
            priority=priority if isinstance(priority, int) else 0,
            source_text=json.dumps(item)
        )

    @staticmethod
    def _function_call_from_json(item: Any) -> Optional[FunctionCall]:
        if not isinstance(item, dict) or not item.get("name"):
            return None

        arguments = item.get("arguments") or {}
        return FunctionCall(
            function_name=str(item["name"]),
            arguments=arguments if isinstance(arguments, dict) else {},
            call_id=item.get("id")
        )
