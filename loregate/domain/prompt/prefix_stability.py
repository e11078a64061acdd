from typing import Dict, List, Optional
from pydantic import BaseModel, ConfigDict
from datetime import datetime
import base64
import hashlib
import threading
import structlog

from .cache import StaticPrefixBoundary


SAMPLE_LENGTH = 200


class PrefixStabilityViolation(BaseModel):
    """A static prefix that changed while its boundary stayed the same"""
    model_config = ConfigDict(frozen=True)

    key: str
    boundary: StaticPrefixBoundary
    expected_hash: str
    actual_hash: str
    expected_sample: str
    actual_sample: str
    check_number: int
    detected_at: datetime

    def __str__(self) -> str:
        return (
            f"Prefix stability violation for '{self.key}' at check #{self.check_number} "
            f"(boundary {self.boundary.name}): expected {self.expected_hash}, got {self.actual_hash}"
        )


class PrefixStabilityError(Exception):
    """Raised when a prefix violation is detected and raising is enabled"""

    def __init__(self, violation: PrefixStabilityViolation):
        super().__init__(str(violation))
        self.violation = violation


class _PrefixRecord:
    def __init__(self, prefix_hash: str, sample: str, boundary: StaticPrefixBoundary):
        self.prefix_hash = prefix_hash
        self.sample = sample
        self.boundary = boundary
        self.check_count = 0


def hash_prefix(prefix: str) -> str:
    digest = hashlib.sha256(prefix.encode("utf-8")).digest()
    return base64.b64encode(digest).decode("ascii")


def _sample(text: str) -> str:
    if len(text) <= SAMPLE_LENGTH:
        return text
    return text[:SAMPLE_LENGTH] + "..."


class PrefixStabilityValidator:
    """Tracks static prefixes per key and reports unexpected changes.

    The first prefix seen for a key becomes its baseline. A boundary change
    resets the baseline. Any other change is a violation. Safe to share
    across sessions.
    """

    def __init__(self, raise_on_violation: bool = False, logger=None):
        self.raise_on_violation = raise_on_violation
        self.logger = logger or structlog.get_logger(__name__)
        self._records: Dict[str, _PrefixRecord] = {}
        self._violations: List[PrefixStabilityViolation] = []
        self._lock = threading.Lock()

    def check(
        self,
        key: str,
        static_prefix: str,
        boundary: StaticPrefixBoundary
    ) -> Optional[PrefixStabilityViolation]:
        """Compare the prefix with the baseline for key; returns the violation, if any"""

        if not key:
            raise ValueError("key is required")
        if static_prefix is None:
            raise ValueError("static_prefix is required")

        prefix_hash = hash_prefix(static_prefix)

        with self._lock:
            record = self._records.get(key)

            if record is None or record.boundary != boundary:
                if record is not None:
                    self.logger.info(
                        "Prefix boundary changed, resetting baseline",
                        key=key,
                        old_boundary=record.boundary.name,
                        new_boundary=boundary.name
                    )
                record = _PrefixRecord(prefix_hash, _sample(static_prefix), boundary)
                record.check_count = 1
                self._records[key] = record
                return None

            record.check_count += 1
            if record.prefix_hash == prefix_hash:
                return None

            violation = PrefixStabilityViolation(
                key=key,
                boundary=boundary,
                expected_hash=record.prefix_hash,
                actual_hash=prefix_hash,
                expected_sample=record.sample,
                actual_sample=_sample(static_prefix),
                check_number=record.check_count,
                detected_at=datetime.utcnow()
            )
            self._violations.append(violation)

        self.logger.warning(
            "Prefix stability violation",
            key=key,
            boundary=boundary.name,
            expected_hash=violation.expected_hash,
            actual_hash=violation.actual_hash,
            check_number=violation.check_number
        )

        if self.raise_on_violation:
            raise PrefixStabilityError(violation)

        return violation

    def reset(self) -> None:
        with self._lock:
            self._records.clear()
            self._violations.clear()

    def reset_key(self, key: str) -> None:
        with self._lock:
            self._records.pop(key, None)

    @property
    def violations(self) -> List[PrefixStabilityViolation]:
        with self._lock:
            return list(self._violations)

    @property
    def violation_count(self) -> int:
        with self._lock:
            return len(self._violations)

    @property
    def has_violations(self) -> bool:
        return self.violation_count > 0
