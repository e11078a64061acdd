from typing import Any, Dict, List, Optional
from pydantic import BaseModel
import jsonschema
import structlog

from .parsed_output import MutationType, ParsedOutput, ProposedMutation, WorldIntent


MUTATION_ITEM_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "type": {
            "type": "string",
            "enum": ["AppendEpisodic", "TransformBelief", "TransformRelationship", "EmitWorldIntent"],
            "description": "The type of memory mutation"
        },
        "target": {
            "type": "string",
            "description": "The target of the mutation (belief ID, relationship target, etc.)"
        },
        "content": {
            "type": "string",
            "description": "The content/value of the mutation"
        },
        "confidence": {
            "type": "number",
            "minimum": 0,
            "maximum": 1,
            "description": "Confidence level for belief mutations (0-1)"
        }
    },
    "required": ["type", "content"]
}

INTENT_ITEM_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "intentType": {
            "type": "string",
            "description": "The type of intent (e.g., follow_player, give_item)"
        },
        "target": {
            "type": "string",
            "description": "The target of the intent"
        },
        "parameters": {
            "type": "object",
            "description": "Additional parameters for the intent",
            "additionalProperties": {"type": "string"}
        },
        "priority": {
            "type": "integer",
            "description": "Priority of this intent (higher = more urgent)"
        }
    },
    "required": ["intentType"]
}

FUNCTION_CALL_ITEM_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "name": {"type": "string"},
        "arguments": {"type": "object"},
        "id": {"type": "string"}
    },
    "required": ["name"]
}

# Handed to schema-capable generators
STRUCTURED_OUTPUT_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "dialogueText": {
            "type": "string",
            "description": "The NPC's dialogue response to display to the player"
        },
        "proposedMutations": {
            "type": "array",
            "description": "Memory mutations to apply after validation",
            "items": MUTATION_ITEM_SCHEMA
        },
        "worldIntents": {
            "type": "array",
            "description": "World intents representing NPC actions/desires",
            "items": INTENT_ITEM_SCHEMA
        },
        "functionCalls": {
            "type": "array",
            "description": "Functions the NPC wants to invoke",
            "items": FUNCTION_CALL_ITEM_SCHEMA
        }
    },
    "required": ["dialogueText"]
}

# Envelope check for parsing; item-level problems are handled by SchemaValidator
DOCUMENT_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "dialogueText": {"type": "string"},
        "proposedMutations": {"type": "array"},
        "worldIntents": {"type": "array"},
        "functionCalls": {"type": "array"}
    },
    "required": ["dialogueText"]
}

MUTATION_TYPE_NAMES: Dict[str, MutationType] = {
    "appendepisodic": MutationType.APPEND_EPISODIC,
    "transformbelief": MutationType.TRANSFORM_BELIEF,
    "transformrelationship": MutationType.TRANSFORM_RELATIONSHIP,
    "emitworldintent": MutationType.EMIT_WORLD_INTENT,
}


def validate_document(document: Any) -> Optional[str]:
    """Return an error message if the decoded document is not a structured response"""

    try:
        jsonschema.validate(document, DOCUMENT_SCHEMA)
    except jsonschema.ValidationError as e:
        return f"Schema validation failed: {e.message}"
    return None


class SchemaValidationResult(BaseModel):
    is_valid: bool
    error_message: Optional[str] = None
    failed_field: Optional[str] = None

    @classmethod
    def ok(cls) -> "SchemaValidationResult":
        return cls(is_valid=True)

    @classmethod
    def failure(cls, error_message: str, failed_field: Optional[str] = None) -> "SchemaValidationResult":
        return cls(is_valid=False, error_message=error_message, failed_field=failed_field)

    def __str__(self) -> str:
        if self.is_valid:
            return "Valid"
        return f"Invalid: {self.error_message} (field: {self.failed_field or 'unknown'})"


class SchemaValidator:
    """Drops malformed mutations and intents before they reach the validation gate"""

    def __init__(self, logger=None):
        self.logger = logger or structlog.get_logger(__name__)

    @staticmethod
    def validate_mutation(mutation: Optional[ProposedMutation]) -> SchemaValidationResult:
        if mutation is None:
            return SchemaValidationResult.failure("Mutation is null", "mutation")

        if not mutation.content or not mutation.content.strip():
            return SchemaValidationResult.failure("Mutation content is required", "content")

        target_missing = not mutation.target or not mutation.target.strip()

        if mutation.type == MutationType.TRANSFORM_BELIEF:
            if target_missing:
                return SchemaValidationResult.failure("TransformBelief requires a target (belief ID)", "target")
            if mutation.confidence < 0 or mutation.confidence > 1:
                return SchemaValidationResult.failure(
                    f"Confidence must be between 0 and 1 (got {mutation.confidence})", "confidence"
                )
        elif mutation.type == MutationType.TRANSFORM_RELATIONSHIP:
            if target_missing:
                return SchemaValidationResult.failure("TransformRelationship requires a target (entity ID)", "target")
        elif mutation.type == MutationType.EMIT_WORLD_INTENT:
            if target_missing:
                return SchemaValidationResult.failure("EmitWorldIntent requires a target (intent type)", "target")

        return SchemaValidationResult.ok()

    @staticmethod
    def validate_intent(intent: Optional[WorldIntent]) -> SchemaValidationResult:
        if intent is None:
            return SchemaValidationResult.failure("Intent is null", "intent")

        if not intent.intent_type or not intent.intent_type.strip():
            return SchemaValidationResult.failure("Intent type is required", "intentType")

        if intent.priority < 0:
            return SchemaValidationResult.failure(
                f"Priority must be non-negative (got {intent.priority})", "priority"
            )

        return SchemaValidationResult.ok()

    def filter_valid_mutations(self, mutations: List[ProposedMutation]) -> List[ProposedMutation]:
        valid = []
        for mutation in mutations:
            result = self.validate_mutation(mutation)
            if result.is_valid:
                valid.append(mutation)
            else:
                self.logger.warning("Dropping invalid mutation", mutation=str(mutation), reason=str(result))
        return valid

    def filter_valid_intents(self, intents: List[WorldIntent]) -> List[WorldIntent]:
        valid = []
        for intent in intents:
            result = self.validate_intent(intent)
            if result.is_valid:
                valid.append(intent)
            else:
                self.logger.warning("Dropping invalid intent", intent=str(intent), reason=str(result))
        return valid

    def validate_parsed_output(self, parsed: ParsedOutput) -> ParsedOutput:
        """Copy of parsed with invalid mutations and intents removed"""

        if not parsed.success:
            return parsed

        mutations = self.filter_valid_mutations(parsed.proposed_mutations)
        intents = self.filter_valid_intents(parsed.world_intents)

        if len(mutations) != len(parsed.proposed_mutations):
            parsed = parsed.with_mutations_replaced(mutations)
        if len(intents) != len(parsed.world_intents):
            parsed = parsed.with_intents_replaced(intents)

        return parsed
