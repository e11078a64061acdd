from typing import List, Optional
from pydantic import BaseModel, ConfigDict, Field

from loregate.domain.models.snapshot import StateSnapshot
from loregate.domain.models.usage import TokenUsage
from loregate.domain.validation.constraint_checker import ValidationOutcome
from loregate.domain.validation.parsed_output import ParsedOutput
from loregate.domain.validation.validation_gate import GateResult, ValidationFailure


class InferenceResult(BaseModel):
    """Outcome of a single generate, parse and validate attempt"""
    model_config = ConfigDict(frozen=True)

    success: bool
    response: str = Field("", description="Dialogue text on success, raw model text otherwise")
    outcome: ValidationOutcome
    failures: List[ValidationFailure] = Field(default_factory=list)
    snapshot: Optional[StateSnapshot] = None
    attempt_number: int = 0
    elapsed_ms: float = 0.0
    error_message: Optional[str] = None
    token_usage: Optional[TokenUsage] = None
    parsed_output: Optional[ParsedOutput] = None
    gate_result: Optional[GateResult] = None

    @classmethod
    def succeeded(
        cls,
        response: str,
        snapshot: StateSnapshot,
        elapsed_ms: float,
        token_usage: Optional[TokenUsage] = None,
        parsed_output: Optional[ParsedOutput] = None,
        gate_result: Optional[GateResult] = None
    ) -> "InferenceResult":
        return cls(
            success=True,
            response=response,
            outcome=ValidationOutcome.VALID,
            snapshot=snapshot,
            attempt_number=snapshot.attempt_number,
            elapsed_ms=elapsed_ms,
            token_usage=token_usage,
            parsed_output=parsed_output,
            gate_result=gate_result
        )

    @classmethod
    def failed_validation(
        cls,
        response: str,
        outcome: ValidationOutcome,
        failures: List[ValidationFailure],
        snapshot: StateSnapshot,
        elapsed_ms: float,
        token_usage: Optional[TokenUsage] = None,
        parsed_output: Optional[ParsedOutput] = None,
        gate_result: Optional[GateResult] = None
    ) -> "InferenceResult":
        return cls(
            success=False,
            response=response,
            outcome=outcome,
            failures=list(failures),
            snapshot=snapshot,
            attempt_number=snapshot.attempt_number,
            elapsed_ms=elapsed_ms,
            token_usage=token_usage,
            parsed_output=parsed_output,
            gate_result=gate_result
        )

    @classmethod
    def failed_error(cls, error_message: str, snapshot: StateSnapshot, elapsed_ms: float) -> "InferenceResult":
        return cls(
            success=False,
            outcome=ValidationOutcome.GENERATION_ERROR,
            snapshot=snapshot,
            attempt_number=snapshot.attempt_number,
            elapsed_ms=elapsed_ms,
            error_message=error_message
        )

    @property
    def has_critical_failure(self) -> bool:
        return any(f.is_critical for f in self.failures)

    def __str__(self) -> str:
        if self.success:
            return f"InferenceResult[Success] Attempt {self.attempt_number + 1}, {self.elapsed_ms:.0f}ms"
        if self.error_message is not None:
            return f"InferenceResult[Error] {self.error_message}"
        return (
            f"InferenceResult[{self.outcome.value}] {len(self.failures)} failures, "
            f"Attempt {self.attempt_number + 1}"
        )


class InferenceResultWithRetries(BaseModel):
    """Final result plus every attempt that led to it"""
    model_config = ConfigDict(frozen=True)

    final_result: InferenceResult
    all_attempts: List[InferenceResult] = Field(default_factory=list)
    total_elapsed_ms: float = 0.0

    @property
    def success(self) -> bool:
        return self.final_result.success

    @property
    def attempt_count(self) -> int:
        return len(self.all_attempts)

    @property
    def dialogue_text(self) -> Optional[str]:
        return self.final_result.response if self.success else None

    @property
    def gate_result(self) -> Optional[GateResult]:
        return self.final_result.gate_result

    @property
    def approved_mutations(self) -> list:
        if not self.success or self.gate_result is None:
            return []
        return list(self.gate_result.approved_mutations)

    @property
    def approved_intents(self) -> list:
        if not self.success or self.gate_result is None:
            return []
        return list(self.gate_result.approved_intents)

    def total_token_usage(self) -> Optional[TokenUsage]:
        """Summed usage over all attempts, or None when no attempt reported any"""

        usages = [a.token_usage for a in self.all_attempts if a.token_usage is not None]
        if not usages:
            return None

        total = TokenUsage()
        for usage in usages:
            total = total + usage
        return total

    def __str__(self) -> str:
        status = "Success" if self.success else "Failed"
        return f"InferenceWithRetries[{status}] {self.attempt_count} attempts, {self.total_elapsed_ms:.0f}ms total"
