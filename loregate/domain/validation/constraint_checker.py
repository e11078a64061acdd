from typing import List, Optional
from pydantic import BaseModel, ConfigDict, Field
from enum import Enum
import re
import structlog

from loregate.domain.models.constraints import Constraint, ConstraintSet, ConstraintType


QUOTED_TEXT = re.compile(r"\"([^\"]+)\"|'([^']+)'")
TOPIC_KEYWORD = re.compile(r"(?:about|mention|say|discuss|reveal|tell)\s+(\w+)", re.IGNORECASE)


class ValidationOutcome(str, Enum):
    """Overall outcome of validating one response"""
    VALID = "valid"
    PROHIBITION_VIOLATED = "prohibition_violated"
    REQUIREMENT_NOT_MET = "requirement_not_met"
    CANONICAL_VIOLATION = "canonical_violation"
    KNOWLEDGE_BOUNDARY_VIOLATED = "knowledge_boundary_violated"
    INVALID_FORMAT = "invalid_format"
    GENERATION_ERROR = "generation_error"


class ConstraintViolation(BaseModel):
    """A constraint the response broke"""
    model_config = ConfigDict(frozen=True)

    constraint: Constraint
    description: str
    violating_text: Optional[str] = None

    def __str__(self) -> str:
        return f"{self.constraint.type.value}: {self.description}"


class ConstraintCheckResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    outcome: ValidationOutcome
    violations: List[ConstraintViolation] = Field(default_factory=list)
    error_message: Optional[str] = None

    @property
    def is_valid(self) -> bool:
        return self.outcome == ValidationOutcome.VALID


def extract_patterns(description: str) -> List[str]:
    """Keyword patterns implied by a constraint description.

    Quoted phrases are taken as-is; so is the word following
    about/mention/say/discuss/reveal/tell when longer than two characters.
    """
    patterns = []

    for match in QUOTED_TEXT.finditer(description):
        value = match.group(1) if match.group(1) is not None else match.group(2)
        if value and value.strip():
            patterns.append(value)

    for match in TOPIC_KEYWORD.finditer(description):
        keyword = match.group(1)
        if keyword and len(keyword) > 2:
            patterns.append(keyword)

    return patterns


class ConstraintChecker:
    """Checks response text against the prohibitions and requirements of a constraint set"""

    def __init__(self, logger=None):
        self.logger = logger or structlog.get_logger(__name__)

    def check(self, response: Optional[str], constraints: ConstraintSet) -> ConstraintCheckResult:
        if constraints is None:
            raise ValueError("constraints is required")

        if response is None or not response.strip():
            return ConstraintCheckResult(
                outcome=ValidationOutcome.INVALID_FORMAT,
                error_message="Response is empty or whitespace"
            )

        violations: List[ConstraintViolation] = []

        for prohibition in constraints.prohibitions:
            violation = self.check_prohibition(response, prohibition)
            if violation:
                violations.append(violation)
                self.logger.debug("Prohibition violated", constraint_id=prohibition.id)

        for requirement in constraints.requirements:
            violation = self.check_requirement(response, requirement)
            if violation:
                violations.append(violation)
                self.logger.debug("Requirement not met", constraint_id=requirement.id)

        if not violations:
            return ConstraintCheckResult(outcome=ValidationOutcome.VALID)

        if any(v.constraint.type == ConstraintType.PROHIBITION for v in violations):
            outcome = ValidationOutcome.PROHIBITION_VIOLATED
        else:
            outcome = ValidationOutcome.REQUIREMENT_NOT_MET

        return ConstraintCheckResult(outcome=outcome, violations=violations)

    def check_prohibition(self, response: str, prohibition: Constraint) -> Optional[ConstraintViolation]:
        response_lower = response.lower()

        for pattern in self._patterns_for(prohibition):
            if self._is_regex(pattern):
                regex = self._compile(pattern, prohibition)
                if regex is not None:
                    match = regex.search(response)
                    if match:
                        return ConstraintViolation(
                            constraint=prohibition,
                            description=f"Response contains prohibited pattern: {prohibition.description}",
                            violating_text=match.group(0)
                        )
                    continue
                pattern = pattern[1:-1]

            if not pattern:
                continue

            index = response_lower.find(pattern.lower())
            if index >= 0:
                return ConstraintViolation(
                    constraint=prohibition,
                    description=f"Response contains prohibited content: {prohibition.description}",
                    violating_text=response[index:index + len(pattern) + 20]
                )

        return None

    def check_requirement(self, response: str, requirement: Constraint) -> Optional[ConstraintViolation]:
        patterns = self._patterns_for(requirement)

        # Descriptive-only requirements cannot be verified lexically
        if not patterns:
            return None

        response_lower = response.lower()
        for pattern in patterns:
            if self._is_regex(pattern):
                regex = self._compile(pattern, requirement)
                if regex is not None and regex.search(response):
                    return None
            elif pattern.lower() in response_lower:
                return None

        return ConstraintViolation(
            constraint=requirement,
            description=f"Response does not meet requirement: {requirement.description}"
        )

    @staticmethod
    def _patterns_for(constraint: Constraint) -> List[str]:
        if constraint.validation_patterns:
            return list(constraint.validation_patterns)
        return extract_patterns(constraint.description or "")

    @staticmethod
    def _is_regex(pattern: str) -> bool:
        return len(pattern) >= 2 and pattern.startswith("/") and pattern.endswith("/")

    def _compile(self, pattern: str, constraint: Constraint) -> Optional["re.Pattern"]:
        if not self._is_regex(pattern):
            return None

        try:
            return re.compile(pattern[1:-1], re.IGNORECASE)
        except re.error as e:
            self.logger.warning(
                "Invalid regex in constraint, using keyword match",
                constraint_id=constraint.id,
                pattern=pattern,
                error=str(e)
            )
            return None
