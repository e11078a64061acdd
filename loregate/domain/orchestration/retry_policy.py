from typing import List, Optional
from pydantic import BaseModel, Field
from enum import Enum

from loregate.domain.models.constraints import Constraint, ConstraintSet
from loregate.domain.validation.validation_gate import ValidationFailure, ValidationFailureReason
from .inference_result import InferenceResult


class ConstraintEscalation(str, Enum):
    """How constraints are strengthened between attempts"""
    NONE = "none"
    ADD_SPECIFIC_PROHIBITION = "add_specific_prohibition"
    HARDEN_REQUIREMENTS = "harden_requirements"
    FULL = "full"


# Failures with no rule to strengthen; they only show up in feedback
UNESCALATED_REASONS = {ValidationFailureReason.INVALID_FORMAT}


def _truncate(text: str, max_length: int) -> str:
    if not text or len(text) <= max_length:
        return text
    return text[:max_length] + "..."


class RetryPolicy(BaseModel):
    """Attempt bounds and constraint escalation for the retry loop"""
    max_retries: int = Field(2, ge=0)
    escalation: ConstraintEscalation = ConstraintEscalation.ADD_SPECIFIC_PROHIBITION
    include_previous_response: bool = True
    include_violation_feedback: bool = True
    retry_delay_seconds: float = Field(0.0, ge=0.0)
    max_total_seconds: float = Field(30.0, description="Wall-clock budget across all attempts")

    @classmethod
    def default(cls) -> "RetryPolicy":
        return cls()

    @classmethod
    def no_retry(cls) -> "RetryPolicy":
        return cls(max_retries=0)

    @classmethod
    def aggressive(cls) -> "RetryPolicy":
        return cls(
            max_retries=3,
            escalation=ConstraintEscalation.FULL,
            include_previous_response=True,
            include_violation_feedback=True
        )

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1

    def generate_retry_constraints(
        self,
        failures: List[ValidationFailure],
        attempt_number: int,
        active_constraints: Optional[ConstraintSet] = None
    ) -> ConstraintSet:
        """Escalated constraints for the attempt after attempt_number.

        Ids are suffixed with the attempt number so repeated escalation never
        collides with constraints added on earlier attempts.
        """
        constraints = ConstraintSet()
        if self.escalation == ConstraintEscalation.NONE:
            return constraints

        add_prohibitions = self.escalation in (ConstraintEscalation.ADD_SPECIFIC_PROHIBITION, ConstraintEscalation.FULL)
        harden = self.escalation in (ConstraintEscalation.HARDEN_REQUIREMENTS, ConstraintEscalation.FULL)

        for failure in failures:
            if failure.reason in UNESCALATED_REASONS:
                continue

            rule_id = failure.violated_rule or "Unknown"
            is_requirement = failure.reason == ValidationFailureReason.REQUIREMENT_NOT_MET
            rule_description = self._rule_description(failure, active_constraints)

            if add_prohibitions:
                description = self._prohibition_from_failure(failure, rule_description, is_requirement)
                patterns = [failure.violating_text] if failure.violating_text else []
                constraints.add(Constraint.prohibition(
                    f"RetryEscalation_{rule_id}_{attempt_number}",
                    description,
                    description,
                    *patterns
                ))

            if harden and is_requirement:
                strengthened = f"MUST {rule_description or 'meet this requirement'}"
                constraints.add(Constraint.requirement(
                    f"RetryEscalation_{rule_id}_Req_{attempt_number}",
                    strengthened,
                    strengthened
                ))

        return constraints

    def generate_retry_feedback(self, previous_result: InferenceResult) -> str:
        parts = [f"[RETRY ATTEMPT {previous_result.attempt_number + 2}]"]

        if self.include_violation_feedback and previous_result.failures:
            parts.append("Your previous response violated the following constraints:")
            parts.extend(f"- {failure.description}" for failure in previous_result.failures)

        if self.include_previous_response and previous_result.response:
            parts.append(f'Previous response (rejected): "{_truncate(previous_result.response, 200)}"')

        parts.append("Please provide a new response that satisfies ALL constraints.")

        return "\n".join(parts)

    @staticmethod
    def _rule_description(failure: ValidationFailure, active_constraints: Optional[ConstraintSet]) -> str:
        """Description of the violated constraint when known, else the failure text"""

        if active_constraints is not None and failure.violated_rule:
            for constraint in active_constraints:
                if constraint.id == failure.violated_rule and constraint.description:
                    return constraint.description
        return failure.description

    @staticmethod
    def _prohibition_from_failure(failure: ValidationFailure, rule_description: str, is_requirement: bool) -> str:
        if failure.violating_text:
            return f'Do not say or imply: "{_truncate(failure.violating_text, 100)}"'
        if is_requirement:
            return f"Do not fail to: {rule_description}"
        return f"STRICTLY {rule_description}"

