from typing import Any, Callable, List, Optional, Union
from pydantic import BaseModel, ConfigDict, Field
from enum import Enum
import re
import structlog

from loregate.domain.context.memory.memory_store import MemoryStore
from loregate.domain.models.constraints import ConstraintSet, ConstraintSeverity, ConstraintType
from loregate.domain.models.snapshot import StateSnapshot
from .constraint_checker import ConstraintChecker, ValidationOutcome
from .parsed_output import ParsedOutput, ProposedMutation, WorldIntent
from .schema import SchemaValidator


class ValidationFailureReason(str, Enum):
    """Why a response failed the gate"""
    PROHIBITION_VIOLATED = "prohibition_violated"
    REQUIREMENT_NOT_MET = "requirement_not_met"
    CANONICAL_FACT_CONTRADICTION = "canonical_fact_contradiction"
    KNOWLEDGE_BOUNDARY_VIOLATION = "knowledge_boundary_violation"
    CANONICAL_MUTATION_ATTEMPT = "canonical_mutation_attempt"
    INVALID_FORMAT = "invalid_format"
    CUSTOM_RULE_FAILED = "custom_rule_failed"


class ValidationFailure(BaseModel):
    """One reason a response was not accepted"""
    model_config = ConfigDict(frozen=True)

    reason: ValidationFailureReason
    description: str = ""
    violating_text: Optional[str] = None
    violated_rule: Optional[str] = Field(None, description="Id of the constraint, fact or rule involved")
    severity: ConstraintSeverity = ConstraintSeverity.HARD

    @property
    def is_critical(self) -> bool:
        return self.severity == ConstraintSeverity.CRITICAL

    @classmethod
    def prohibition_violated(
        cls,
        description: str,
        violating_text: Optional[str] = None,
        rule: Optional[str] = None
    ) -> "ValidationFailure":
        return cls(
            reason=ValidationFailureReason.PROHIBITION_VIOLATED,
            description=description,
            violating_text=violating_text,
            violated_rule=rule
        )

    @classmethod
    def requirement_not_met(cls, description: str, rule: Optional[str] = None) -> "ValidationFailure":
        return cls(reason=ValidationFailureReason.REQUIREMENT_NOT_MET, description=description, violated_rule=rule)

    @classmethod
    def canonical_contradiction(
        cls,
        fact_id: str,
        fact_content: str,
        violating_text: Optional[str] = None
    ) -> "ValidationFailure":
        return cls(
            reason=ValidationFailureReason.CANONICAL_FACT_CONTRADICTION,
            description=f"Output contradicts canonical fact '{fact_id}': {fact_content}",
            violating_text=violating_text,
            violated_rule=fact_id,
            severity=ConstraintSeverity.CRITICAL
        )

    @classmethod
    def knowledge_boundary(cls, description: str, violating_text: Optional[str] = None) -> "ValidationFailure":
        return cls(
            reason=ValidationFailureReason.KNOWLEDGE_BOUNDARY_VIOLATION,
            description=description,
            violating_text=violating_text
        )

    @classmethod
    def canonical_mutation(cls, fact_id: str) -> "ValidationFailure":
        return cls(
            reason=ValidationFailureReason.CANONICAL_MUTATION_ATTEMPT,
            description=f"Attempted to mutate canonical fact: {fact_id}",
            violated_rule=fact_id,
            severity=ConstraintSeverity.CRITICAL
        )

    @classmethod
    def invalid_format(cls, description: str) -> "ValidationFailure":
        return cls(reason=ValidationFailureReason.INVALID_FORMAT, description=description)

    def __str__(self) -> str:
        return f"[{self.reason.value}:{self.severity.value}] {self.description}"


class GateResult(BaseModel):
    """Outcome of running a parsed response through the validation gate"""
    model_config = ConfigDict(frozen=True)

    passed: bool
    validated_output: Optional[ParsedOutput] = None
    failures: List[ValidationFailure] = Field(default_factory=list)
    approved_mutations: List[ProposedMutation] = Field(default_factory=list)
    rejected_mutations: List[ProposedMutation] = Field(default_factory=list)
    approved_intents: List[WorldIntent] = Field(default_factory=list)

    @property
    def has_critical_failure(self) -> bool:
        return any(f.is_critical for f in self.failures)

    @property
    def should_retry(self) -> bool:
        return not self.passed and not self.has_critical_failure and len(self.failures) > 0

    @property
    def outcome(self) -> ValidationOutcome:
        return outcome_for_failures(self.failures)

    @classmethod
    def succeeded(cls, output: ParsedOutput) -> "GateResult":
        return cls(
            passed=True,
            validated_output=output,
            approved_mutations=list(output.proposed_mutations),
            approved_intents=list(output.world_intents)
        )

    @classmethod
    def failed(cls, *failures: ValidationFailure) -> "GateResult":
        return cls(passed=False, failures=list(failures))

    def __str__(self) -> str:
        if self.passed:
            return f"GateResult[PASS] {len(self.approved_mutations)} mutations, {len(self.approved_intents)} intents"
        return f"GateResult[FAIL] {len(self.failures)} failures (critical: {self.has_critical_failure})"


def outcome_for_failures(failures: List[ValidationFailure]) -> ValidationOutcome:
    """Single outcome summarising a list of failures, most serious first"""

    reasons = {f.reason for f in failures}
    if not reasons:
        return ValidationOutcome.VALID
    if reasons & {
        ValidationFailureReason.CANONICAL_FACT_CONTRADICTION,
        ValidationFailureReason.CANONICAL_MUTATION_ATTEMPT
    }:
        return ValidationOutcome.CANONICAL_VIOLATION
    if ValidationFailureReason.INVALID_FORMAT in reasons:
        return ValidationOutcome.INVALID_FORMAT
    if ValidationFailureReason.KNOWLEDGE_BOUNDARY_VIOLATION in reasons:
        return ValidationOutcome.KNOWLEDGE_BOUNDARY_VIOLATED
    if reasons & {ValidationFailureReason.PROHIBITION_VIOLATED, ValidationFailureReason.CUSTOM_RULE_FAILED}:
        return ValidationOutcome.PROHIBITION_VIOLATED
    return ValidationOutcome.REQUIREMENT_NOT_MET


class ValidationContext(BaseModel):
    """Inputs the gate checks a response against"""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    store: Optional[Any] = Field(None, description="MemoryStore holding canonical facts")
    constraints: Optional[ConstraintSet] = None
    forbidden_knowledge: List[str] = Field(default_factory=list)
    snapshot: Optional[StateSnapshot] = None

    @classmethod
    def from_snapshot(cls, snapshot: StateSnapshot, store: Optional[MemoryStore] = None) -> "ValidationContext":
        return cls(
            store=store,
            constraints=snapshot.constraints,
            forbidden_knowledge=list(snapshot.forbidden_knowledge),
            snapshot=snapshot
        )


class PatternRule(BaseModel):
    """Regex rule; a prohibition fails on a match, a requirement fails without one"""
    model_config = ConfigDict(frozen=True)

    kind: str = "pattern"
    id: str
    description: str = ""
    severity: ConstraintSeverity = ConstraintSeverity.HARD
    pattern: str
    is_prohibition: bool = True
    case_insensitive: bool = True

    def validate_output(self, output: ParsedOutput, context: Optional[ValidationContext]) -> Optional[ValidationFailure]:
        flags = re.IGNORECASE if self.case_insensitive else 0
        match = re.search(self.pattern, output.dialogue_text, flags)

        if self.is_prohibition and match:
            return ValidationFailure(
                reason=ValidationFailureReason.CUSTOM_RULE_FAILED,
                description=self.description,
                violating_text=match.group(0),
                violated_rule=self.id,
                severity=self.severity
            )

        if not self.is_prohibition and not match:
            return ValidationFailure(
                reason=ValidationFailureReason.REQUIREMENT_NOT_MET,
                description=self.description,
                violated_rule=self.id,
                severity=self.severity
            )

        return None


class PredicateRule(BaseModel):
    """Arbitrary check. The predicate returns True when the output is acceptable."""
    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    kind: str = "predicate"
    id: str
    description: str = ""
    severity: ConstraintSeverity = ConstraintSeverity.HARD
    predicate: Callable[[ParsedOutput, Optional[ValidationContext]], bool]

    def validate_output(self, output: ParsedOutput, context: Optional[ValidationContext]) -> Optional[ValidationFailure]:
        if self.predicate(output, context):
            return None

        return ValidationFailure(
            reason=ValidationFailureReason.CUSTOM_RULE_FAILED,
            description=self.description,
            violated_rule=self.id,
            severity=self.severity
        )


ValidationRule = Union[PatternRule, PredicateRule]


class ValidationGateConfig(BaseModel):
    """Which gates run"""
    check_constraints: bool = True
    check_canonical_facts: bool = True
    check_knowledge_boundaries: bool = True
    validate_mutations: bool = True
    validate_schemas: bool = True

    @classmethod
    def default(cls) -> "ValidationGateConfig":
        return cls()

    @classmethod
    def minimal(cls) -> "ValidationGateConfig":
        return cls(check_canonical_facts=False, check_knowledge_boundaries=False, validate_mutations=False)


class ValidationGate:
    """Runs every enabled gate over a parsed response and collects all failures"""

    def __init__(
        self,
        config: Optional[ValidationGateConfig] = None,
        constraint_checker: Optional[ConstraintChecker] = None,
        schema_validator: Optional[SchemaValidator] = None,
        logger=None
    ):
        self.config = config or ValidationGateConfig()
        self.logger = logger or structlog.get_logger(__name__)
        self.constraint_checker = constraint_checker or ConstraintChecker(logger=self.logger)
        self.schema_validator = schema_validator or SchemaValidator(logger=self.logger)
        self.custom_rules: List[ValidationRule] = []

    def add_rule(self, rule: ValidationRule) -> None:
        self.custom_rules.append(rule)

    def remove_rule(self, rule_id: str) -> bool:
        before = len(self.custom_rules)
        self.custom_rules = [r for r in self.custom_rules if r.id != rule_id]
        return len(self.custom_rules) < before

    def clear_rules(self) -> None:
        self.custom_rules.clear()

    def validate(self, output: ParsedOutput, context: Optional[ValidationContext] = None) -> GateResult:
        if output is None:
            raise ValueError("output is required")

        if not output.success:
            return GateResult.failed(ValidationFailure.invalid_format(output.error_message or "Parsing failed"))

        if self.config.validate_schemas:
            output = self.schema_validator.validate_parsed_output(output)

        failures: List[ValidationFailure] = []
        approved_mutations: List[ProposedMutation] = []
        rejected_mutations: List[ProposedMutation] = []
        approved_intents = list(output.world_intents)
        text = output.dialogue_text

        if self.config.check_constraints and context is not None and context.constraints is not None:
            failures.extend(self.validate_constraints(text, context.constraints))

        if self.config.check_canonical_facts and context is not None and context.store is not None:
            failures.extend(self.validate_canonical_facts(text, context.store))

        if self.config.check_knowledge_boundaries and context is not None and context.forbidden_knowledge:
            failures.extend(self.validate_knowledge_boundaries(text, context.forbidden_knowledge))

        if self.config.validate_mutations and output.proposed_mutations:
            for mutation in output.proposed_mutations:
                failure = self.validate_mutation(mutation, context)
                if failure is None:
                    approved_mutations.append(mutation)
                else:
                    failures.append(failure)
                    rejected_mutations.append(mutation)
        else:
            approved_mutations.extend(output.proposed_mutations)

        for rule in self.custom_rules:
            failure = rule.validate_output(output, context)
            if failure is not None:
                failures.append(failure)

        if not failures:
            self.logger.debug("Validation passed", output=str(output))
            return GateResult(
                passed=True,
                validated_output=output,
                approved_mutations=approved_mutations,
                approved_intents=approved_intents
            )

        result = GateResult(
            passed=False,
            validated_output=output,
            failures=failures,
            approved_mutations=approved_mutations,
            rejected_mutations=rejected_mutations,
            approved_intents=approved_intents
        )

        self.logger.info(
            "Validation failed",
            failure_count=len(failures),
            critical=result.has_critical_failure,
            failures=[str(f) for f in failures]
        )

        return result

    def validate_constraints(self, text: str, constraints: ConstraintSet) -> List[ValidationFailure]:
        result = self.constraint_checker.check(text, constraints)

        failures = []
        for violation in result.violations:
            if violation.constraint.type == ConstraintType.PROHIBITION:
                reason = ValidationFailureReason.PROHIBITION_VIOLATED
            else:
                reason = ValidationFailureReason.REQUIREMENT_NOT_MET

            failures.append(ValidationFailure(
                reason=reason,
                description=violation.description,
                violating_text=violation.violating_text,
                violated_rule=violation.constraint.id,
                severity=violation.constraint.severity
            ))

        return failures

    def validate_canonical_facts(self, text: str, store: MemoryStore) -> List[ValidationFailure]:
        failures = []
        text_lower = text.lower()

        for fact in store.get_canonical_facts():
            fact_content = fact.content.lower()

            negations = [
                f"not {fact_content}",
                f"isn't {fact_content}",
                f"is not {fact_content}",
                f"wasn't {fact_content}",
                f"was not {fact_content}",
                f"don't {fact_content}",
                f"doesn't {fact_content}",
                f"never {fact_content}",
            ]
            for negation in negations:
                if negation in text_lower:
                    failures.append(ValidationFailure.canonical_contradiction(fact.id, fact.content, negation))
                    break

            if " is " in fact_content:
                for negated in (fact_content.replace(" is ", " is not "), fact_content.replace(" is ", " isn't ")):
                    if negated in text_lower:
                        failures.append(ValidationFailure.canonical_contradiction(fact.id, fact.content, negated))

            for keyword in fact.contradiction_keywords:
                if keyword.lower() in text_lower:
                    failures.append(ValidationFailure.canonical_contradiction(fact.id, fact.content, keyword))
                    break

        return failures

    @staticmethod
    def validate_knowledge_boundaries(text: str, forbidden_knowledge: List[str]) -> List[ValidationFailure]:
        failures = []
        text_lower = text.lower()

        for forbidden in forbidden_knowledge:
            forbidden_lower = forbidden.lower()
            if forbidden_lower and forbidden_lower in text_lower:
                failures.append(ValidationFailure.knowledge_boundary(
                    f"NPC revealed forbidden knowledge: '{forbidden}'",
                    forbidden_lower
                ))

        return failures

    @staticmethod
    def validate_mutation(
        mutation: ProposedMutation,
        context: Optional[ValidationContext]
    ) -> Optional[ValidationFailure]:
        if context is not None and context.store is not None and mutation.target is not None:
            if context.store.is_canonical_fact(mutation.target):
                return ValidationFailure.canonical_mutation(mutation.target)
        return None

