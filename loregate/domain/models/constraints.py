from typing import Iterable, Iterator, List, Optional
from pydantic import BaseModel, ConfigDict, Field
from enum import Enum


class ConstraintType(str, Enum):
    """Kind of expectancy constraint"""
    PROHIBITION = "prohibition"
    REQUIREMENT = "requirement"
    PERMISSION = "permission"


class ConstraintSeverity(str, Enum):
    """How serious a violation of the constraint is"""
    SOFT = "soft"
    HARD = "hard"
    CRITICAL = "critical"


class Constraint(BaseModel):
    """A single behavioural rule for the NPC.

    Validation patterns are plain keywords/phrases matched case-insensitively,
    or regular expressions when wrapped in slashes (``/pattern/``).
    """
    model_config = ConfigDict(frozen=True)

    id: Optional[str] = None
    type: ConstraintType
    severity: ConstraintSeverity = ConstraintSeverity.HARD
    description: Optional[str] = None
    prompt_injection: Optional[str] = None
    validation_patterns: List[str] = Field(default_factory=list)
    source_rule: Optional[str] = None

    @classmethod
    def prohibition(
        cls,
        id: str,
        description: str,
        prompt_injection: Optional[str] = None,
        *patterns: str,
        severity: ConstraintSeverity = ConstraintSeverity.HARD
    ) -> "Constraint":
        return cls(
            id=id,
            type=ConstraintType.PROHIBITION,
            severity=severity,
            description=description,
            prompt_injection=prompt_injection,
            validation_patterns=list(patterns)
        )

    @classmethod
    def requirement(
        cls,
        id: str,
        description: str,
        prompt_injection: Optional[str] = None,
        *patterns: str,
        severity: ConstraintSeverity = ConstraintSeverity.HARD
    ) -> "Constraint":
        return cls(
            id=id,
            type=ConstraintType.REQUIREMENT,
            severity=severity,
            description=description,
            prompt_injection=prompt_injection,
            validation_patterns=list(patterns)
        )

    @classmethod
    def permission(cls, id: str, description: str, prompt_injection: Optional[str] = None) -> "Constraint":
        return cls(
            id=id,
            type=ConstraintType.PERMISSION,
            description=description,
            prompt_injection=prompt_injection
        )

    def __str__(self) -> str:
        return f"[{self.type.value}:{self.severity.value}] {self.description}"


class ConstraintSet(BaseModel):
    """Ordered collection of constraints for one interaction"""
    constraints: List[Constraint] = Field(default_factory=list)

    def add(self, constraint: Constraint) -> "ConstraintSet":
        self.constraints.append(constraint)
        return self

    def extend(self, constraints: Iterable[Constraint]) -> "ConstraintSet":
        self.constraints.extend(constraints)
        return self

    def merged(self, other: "ConstraintSet") -> "ConstraintSet":
        """Return a new set holding this set's constraints followed by other's"""
        return ConstraintSet(constraints=[*self.constraints, *other.constraints])

    @property
    def prohibitions(self) -> List[Constraint]:
        return [c for c in self.constraints if c.type == ConstraintType.PROHIBITION]

    @property
    def requirements(self) -> List[Constraint]:
        return [c for c in self.constraints if c.type == ConstraintType.REQUIREMENT]

    @property
    def permissions(self) -> List[Constraint]:
        return [c for c in self.constraints if c.type == ConstraintType.PERMISSION]

    @property
    def has_constraints(self) -> bool:
        return len(self.constraints) > 0

    def __len__(self) -> int:
        return len(self.constraints)

    def __iter__(self) -> Iterator[Constraint]:
        return iter(self.constraints)

    def to_prompt_injection(self, header: bool = True) -> str:
        """Render the constraints as a rules block for the prompt.

        Output depends only on the constraints and their order, so identical
        sets always render to identical text. Without the header the lines
        continue a rules block rendered just before them.
        """
        if not self.constraints:
            return ""

        lines = ["\n[Rules]" if header else ""]
        for constraint in self.constraints:
            text = constraint.prompt_injection or constraint.description or ""
            if not text:
                continue
            if constraint.type == ConstraintType.PROHIBITION:
                lines.append(f"- NEVER: {text}")
            elif constraint.type == ConstraintType.REQUIREMENT:
                lines.append(f"- ALWAYS: {text}")
            else:
                lines.append(f"- MAY: {text}")

        if len(lines) == 1:
            return ""
        return "\n".join(lines)
