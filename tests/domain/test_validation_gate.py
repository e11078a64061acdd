import pytest

from loregate.domain.models.constraints import Constraint, ConstraintSet, ConstraintSeverity
from loregate.domain.validation.constraint_checker import ConstraintChecker, ValidationOutcome, extract_patterns
from loregate.domain.validation.parsed_output import ParsedOutput, ProposedMutation, WorldIntent
from loregate.domain.validation.schema import SchemaValidator, validate_document
from loregate.domain.validation.validation_gate import (
    GateResult, PatternRule, PredicateRule, ValidationContext, ValidationFailureReason,
    ValidationGate, ValidationGateConfig
)


@pytest.fixture
def gate():
    return ValidationGate()


def secret_plan_constraints():
    return ConstraintSet(constraints=[
        Constraint.prohibition("NoSecretPlan", "Never mention the secret plan", None, "secret plan")
    ])


def test_extract_patterns_from_description():
    assert extract_patterns('Never say "the password" aloud') == ["the password"]
    assert extract_patterns("Do not discuss politics") == ["politics"]
    assert extract_patterns("Be polite") == []


def test_prohibition_keyword_violation():
    checker = ConstraintChecker()

    result = checker.check("Here is the secret plan for the heist.", secret_plan_constraints())

    assert result.outcome == ValidationOutcome.PROHIBITION_VIOLATED
    assert result.violations[0].violating_text.startswith("secret plan")


def test_prohibition_regex_violation():
    constraints = ConstraintSet(constraints=[
        Constraint.prohibition("NoGold", "No gold amounts", None, r"/\d+ gold/")
    ])

    result = ConstraintChecker().check("That costs 50 gold.", constraints)

    assert result.violations[0].violating_text == "50 gold"


def test_invalid_regex_falls_back_to_keyword():
    constraints = ConstraintSet(constraints=[
        Constraint.prohibition("Broken", "Broken pattern", None, "/gold(/")
    ])

    result = ConstraintChecker().check("That costs 50 gold(s).", constraints)

    assert not result.is_valid


def test_requirement_without_patterns_passes():
    constraints = ConstraintSet(constraints=[Constraint.requirement("Polite", "Be polite")])

    assert ConstraintChecker().check("Go away.", constraints).is_valid


def test_requirement_not_met():
    constraints = ConstraintSet(constraints=[
        Constraint.requirement("Greet", "Greet the player", None, "hello", "/^greetings/")
    ])
    checker = ConstraintChecker()

    assert checker.check("Greetings, friend.", constraints).is_valid
    assert checker.check("Go away.", constraints).outcome == ValidationOutcome.REQUIREMENT_NOT_MET


def test_empty_response_is_invalid_format():
    assert ConstraintChecker().check("  ", ConstraintSet()).outcome == ValidationOutcome.INVALID_FORMAT


def test_canonical_contradiction_is_critical(gate, store):
    output = ParsedOutput.dialogue("The king is not dead.", "The king is not dead.")

    result = gate.validate(output, ValidationContext(store=store))

    assert not result.passed
    assert result.has_critical_failure
    assert not result.should_retry
    assert result.failures[0].reason == ValidationFailureReason.CANONICAL_FACT_CONTRADICTION
    assert result.outcome == ValidationOutcome.CANONICAL_VIOLATION


def test_contradiction_keywords(gate, store):
    store.add_canonical_fact("queen", "the queen rules", contradiction_keywords=["the queen is gone"])
    output = ParsedOutput.dialogue("They say the queen is gone.", "")

    result = gate.validate(output, ValidationContext(store=store))

    assert [f.violated_rule for f in result.failures] == ["queen"]


def test_canonical_mutation_rejected(gate, store):
    mutation = ProposedMutation.transform_belief("king_status", "the king lives", 0.9)
    episodic = ProposedMutation.append_episodic("The player asked about the king")
    output = ParsedOutput.dialogue("Long live the king.", "", [mutation, episodic])

    result = gate.validate(output, ValidationContext(store=store))

    assert not result.passed
    assert result.failures[0].reason == ValidationFailureReason.CANONICAL_MUTATION_ATTEMPT
    assert result.failures[0].is_critical
    assert result.rejected_mutations == [mutation]
    assert result.approved_mutations == [episodic]


def test_knowledge_boundary_is_retryable(gate):
    output = ParsedOutput.dialogue("The vault code is 1234.", "")

    result = gate.validate(output, ValidationContext(forbidden_knowledge=["vault code"]))

    assert result.failures[0].reason == ValidationFailureReason.KNOWLEDGE_BOUNDARY_VIOLATION
    assert not result.has_critical_failure
    assert result.should_retry
    assert result.outcome == ValidationOutcome.KNOWLEDGE_BOUNDARY_VIOLATED


def test_constraint_failures_carry_rule_and_text(gate):
    output = ParsedOutput.dialogue("Here is the secret plan for you.", "")

    result = gate.validate(output, ValidationContext(constraints=secret_plan_constraints()))

    failure = result.failures[0]
    assert failure.reason == ValidationFailureReason.PROHIBITION_VIOLATED
    assert failure.violated_rule == "NoSecretPlan"
    assert "secret plan" in failure.violating_text


def test_critical_constraint_severity_propagates(gate):
    constraints = ConstraintSet(constraints=[
        Constraint.prohibition("NoMurder", "No murder talk", None, "murder", severity=ConstraintSeverity.CRITICAL)
    ])

    result = gate.validate(ParsedOutput.dialogue("Murder most foul.", ""), ValidationContext(constraints=constraints))

    assert result.has_critical_failure


def test_failed_parse_is_single_invalid_format_failure(gate):
    result = gate.validate(ParsedOutput.failed("Response is empty or whitespace", ""))

    assert len(result.failures) == 1
    assert result.failures[0].reason == ValidationFailureReason.INVALID_FORMAT
    assert result.outcome == ValidationOutcome.INVALID_FORMAT


def test_validate_requires_output(gate):
    with pytest.raises(ValueError):
        gate.validate(None)


def test_passing_output_approves_structured_data(gate, store):
    mutation = ProposedMutation.append_episodic("Chatted about the weather")
    intent = WorldIntent.create("follow_player")
    output = ParsedOutput.dialogue("Nasty weather today.", "", [mutation], [intent])

    result = gate.validate(output, ValidationContext(store=store))

    assert result.passed
    assert result.approved_mutations == [mutation]
    assert result.approved_intents == [intent]
    assert result.outcome == ValidationOutcome.VALID


def test_schema_validation_drops_malformed_items(gate):
    bad_belief = ProposedMutation(type="transform_belief", content="something")
    bad_intent = WorldIntent(intent_type="", priority=1)
    output = ParsedOutput.dialogue("Hmm.", "", [bad_belief], [bad_intent])

    result = gate.validate(output)

    assert result.passed
    assert result.approved_mutations == []
    assert result.approved_intents == []


def test_minimal_config_skips_canonical_checks(store):
    gate = ValidationGate(ValidationGateConfig.minimal())

    result = gate.validate(ParsedOutput.dialogue("The king is not dead.", ""), ValidationContext(store=store))

    assert result.passed


def test_custom_rules(gate):
    gate.add_rule(PatternRule(id="NoShouting", description="No shouting", pattern=r"!{2,}"))
    gate.add_rule(PredicateRule(
        id="Short",
        description="Keep it short",
        predicate=lambda output, context: len(output.dialogue_text) < 30
    ))

    result = gate.validate(ParsedOutput.dialogue("Get out of my sight, you fool!!", ""))

    assert {f.violated_rule for f in result.failures} == {"NoShouting", "Short"}
    assert result.outcome == ValidationOutcome.PROHIBITION_VIOLATED

    assert gate.remove_rule("NoShouting")
    assert not gate.remove_rule("NoShouting")
    gate.clear_rules()
    assert gate.validate(ParsedOutput.dialogue("Get out of my sight, you fool!!", "")).passed


def test_pattern_rule_requirement(gate):
    gate.add_rule(PatternRule(id="Sign", description="Sign off", pattern="farewell", is_prohibition=False))

    result = gate.validate(ParsedOutput.dialogue("Go away.", ""))

    assert result.failures[0].reason == ValidationFailureReason.REQUIREMENT_NOT_MET


def test_gate_result_factories():
    assert GateResult.succeeded(ParsedOutput.dialogue("Hi.", "")).passed
    assert not GateResult.failed().should_retry


def test_validate_document():
    assert validate_document({"dialogueText": "Hi."}) is None
    assert validate_document({"dialogueText": 3}).startswith("Schema validation failed")
    assert validate_document([]) is not None


def test_schema_validator_rules():
    validator = SchemaValidator()

    assert validator.validate_mutation(ProposedMutation.append_episodic("x")).is_valid
    assert not validator.validate_mutation(ProposedMutation.append_episodic("  ")).is_valid
    assert validator.validate_mutation(ProposedMutation.transform_belief("b1", "x", 1.5)).failed_field == "confidence"
    assert validator.validate_mutation(
        ProposedMutation(type="transform_relationship", content="x")
    ).failed_field == "target"
    assert not validator.validate_intent(WorldIntent(intent_type="wave", priority=-1)).is_valid
