"""
Payee cleanup rules.

A rule maps a raw bank description to a clean payee name (and optionally a
category). Rules suggested by the AI provider start PENDING and are never
applied until a human approves them.
"""

from __future__ import annotations

import re
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Optional

from .transaction import ConfidenceScore, utcnow


class PatternType(str, Enum):
    """How a rule pattern is matched against the payee text."""

    EXACT = "EXACT"
    CONTAINS = "CONTAINS"
    STARTS_WITH = "STARTS_WITH"
    REGEX = "REGEX"

    @property
    def specificity(self) -> int:
        return _SPECIFICITY[self]

    @classmethod
    def parse(cls, value: str) -> "PatternType":
        """Accept enum names plus the camelCase spellings the AI tends to return."""
        normalized = value.strip().upper().replace("-", "_")
        if normalized == "STARTSWITH":
            normalized = "STARTS_WITH"
        return cls(normalized)


_SPECIFICITY = {
    PatternType.EXACT: 4,
    PatternType.STARTS_WITH: 3,
    PatternType.CONTAINS: 2,
    PatternType.REGEX: 1,
}


class RuleStatus(str, Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


class RuleOrigin(str, Enum):
    LLM = "LLM"
    HUMAN = "HUMAN"


@dataclass
class CleanupRule:
    """A pattern/replacement pair with lifecycle and performance tracking."""

    pattern: str
    pattern_type: PatternType
    replacement: str
    category: Optional[str] = None
    confidence: float = 1.0
    generated_by: RuleOrigin = RuleOrigin.HUMAN
    status: RuleStatus = RuleStatus.APPROVED
    usage_count: int = 0
    success_rate: float = 1.0
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime = field(default_factory=utcnow)
    updated_at: Optional[datetime] = None
    explanation: Optional[str] = None

    @classmethod
    def from_human(
        cls,
        pattern: str,
        pattern_type: PatternType,
        replacement: str,
        category: str | None = None,
    ) -> "CleanupRule":
        """Human rules are trusted: approved with full confidence."""
        return cls(
            pattern=pattern,
            pattern_type=pattern_type,
            replacement=replacement,
            category=category,
            confidence=1.0,
            generated_by=RuleOrigin.HUMAN,
            status=RuleStatus.APPROVED,
        )

    @classmethod
    def from_suggestion(
        cls,
        pattern: str,
        pattern_type: PatternType,
        replacement: str,
        confidence: float,
        category: str | None = None,
        explanation: str | None = None,
    ) -> "CleanupRule":
        """AI suggestions are stored pending approval."""
        return cls(
            pattern=pattern,
            pattern_type=pattern_type,
            replacement=replacement,
            category=category,
            confidence=ConfidenceScore.of(confidence).value,
            generated_by=RuleOrigin.LLM,
            status=RuleStatus.PENDING,
            explanation=explanation,
        )

    @property
    def is_active(self) -> bool:
        return self.status == RuleStatus.APPROVED

    @property
    def sort_key(self) -> tuple[int, float, float]:
        """Higher sorts first: specificity, then success rate, then confidence."""
        return (self.pattern_type.specificity, self.success_rate, self.confidence)

    def matches(self, text: str) -> bool:
        """Case-insensitive match; regex must match the whole text."""
        if not text:
            return False
        lowered = text.lower()
        pattern = self.pattern.lower()
        if self.pattern_type == PatternType.EXACT:
            return lowered == pattern
        if self.pattern_type == PatternType.CONTAINS:
            return pattern in lowered
        if self.pattern_type == PatternType.STARTS_WITH:
            return lowered.startswith(pattern)
        if self.pattern_type == PatternType.REGEX:
            try:
                return re.fullmatch(self.pattern, text) is not None
            except re.error:
                return False
        raise ValueError(f"Unknown pattern type: {self.pattern_type}")

    def apply(self, text: str) -> str:
        """Clean text with this rule. Callers check ``matches`` first."""
        if self.pattern_type == PatternType.REGEX:
            try:
                return re.sub(self.pattern, self.replacement, text)
            except re.error:
                return self.replacement
        return self.replacement

    def with_status(self, status: RuleStatus) -> "CleanupRule":
        return replace(self, status=status, updated_at=utcnow())

    def with_feedback(self, was_successful: bool) -> "CleanupRule":
        """Fold one feedback observation into the running success rate."""
        successes = self.usage_count * self.success_rate + (1 if was_successful else 0)
        usage = self.usage_count + 1
        return replace(
            self,
            usage_count=usage,
            success_rate=successes / usage,
            updated_at=utcnow(),
        )
