"""Data models for the threat detection and sanitization engine."""

from __future__ import annotations

import dataclasses
import re
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

# Reporting limit for matched content; does not affect detection
MATCH_PREVIEW_LENGTH = 100
TRUNCATION_MARKER = "..."


class Severity(StrEnum):
    """Risk level of a matched pattern, ordered ``low < medium < high < critical``."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]

    @classmethod
    def parse(cls, value: str | Severity) -> Severity:
        """Coerce *value* (any case) to a :class:`Severity`, raising ``ValueError``."""
        if isinstance(value, Severity):
            return value
        return cls(str(value).strip().lower())

    def __lt__(self, other: object) -> bool:
        if not isinstance(other, Severity):
            return NotImplemented
        return self.rank < other.rank

    def __le__(self, other: object) -> bool:
        if not isinstance(other, Severity):
            return NotImplemented
        return self.rank <= other.rank

    def __gt__(self, other: object) -> bool:
        if not isinstance(other, Severity):
            return NotImplemented
        return self.rank > other.rank

    def __ge__(self, other: object) -> bool:
        if not isinstance(other, Severity):
            return NotImplemented
        return self.rank >= other.rank


_SEVERITY_RANK: dict[Severity, int] = {
    Severity.LOW: 1,
    Severity.MEDIUM: 2,
    Severity.HIGH: 3,
    Severity.CRITICAL: 4,
}


class ThreatCategory(StrEnum):
    """Categories of detected threats."""

    SQL_INJECTION = "sql_injection"
    XSS = "xss"
    HTML_INJECTION = "html_injection"
    CONTROL_CHARS = "control_chars"


class ThreatAction(StrEnum):
    """Remediation applied to a field carrying a threat."""

    SANITIZED = "sanitized"  # Cleaned, processing continues
    ISOLATED = "isolated"  # Flagged for manual review, processing continues
    REJECTED = "rejected"  # Request fails validation

    @property
    def strictness(self) -> int:
        return _ACTION_STRICTNESS[self]

    @classmethod
    def parse(cls, value: str | ThreatAction) -> ThreatAction:
        """Coerce *value* to a :class:`ThreatAction`.

        Accepts the verb forms (``sanitize``, ``isolate``, ``reject``) stored
        in policy rows as well as the past-tense wire values.
        """
        if isinstance(value, ThreatAction):
            return value
        normalized = str(value).strip().lower()
        return cls(_ACTION_ALIASES.get(normalized, normalized))


_ACTION_STRICTNESS: dict[ThreatAction, int] = {
    ThreatAction.SANITIZED: 1,
    ThreatAction.ISOLATED: 2,
    ThreatAction.REJECTED: 3,
}

_ACTION_ALIASES: dict[str, str] = {
    "sanitize": "sanitized",
    "isolate": "isolated",
    "reject": "rejected",
}


@dataclass(frozen=True)
class PatternRule:
    """A named detection rule: compiled regex plus the severity of a match."""

    pattern: re.Pattern[str]
    severity: Severity
    name: str

    def matches_all(self, text: str) -> list[str]:
        """Return every non-overlapping match of the rule in *text*."""
        return [m.group(0) for m in self.pattern.finditer(text)]


@dataclass(frozen=True)
class DetectedThreat:
    """One rule match in one field. Ephemeral, consumed by the caller."""

    type: ThreatCategory
    severity: Severity
    field_name: str
    pattern_name: str
    matched_content: str
    action: ThreatAction

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "severity": self.severity.value,
            "field_name": self.field_name,
            "pattern": self.pattern_name,
            "matched_content": self.matched_content,
            "action": self.action.value,
        }


def truncate_match(match: str, max_len: int = MATCH_PREVIEW_LENGTH) -> str:
    """Truncate *match* to *max_len* characters, appending a marker when cut."""
    if len(match) <= max_len:
        return match
    return match[:max_len] + TRUNCATION_MARKER


@dataclass(frozen=True)
class SanitizationOptions:
    """Controls which stages of :func:`~aether_guard.security.sanitizer.sanitize` run.

    Attributes:
        strip_html: Remove markup tags (inner text is kept).
        strip_sql_injection: Remove quotes, statement separators, comment
            markers and destructive SQL keyword constructs.
        strip_control_chars: Remove non-printable control characters.
        collapse_whitespace: Replace whitespace runs with one space and trim.
        max_length: Hard bound in code points, ``None`` for unbounded.
        allowed_chars: Regex character-class body (e.g. ``a-zA-Z0-9``); when
            set, every character outside the class is removed.
    """

    strip_html: bool = True
    strip_sql_injection: bool = True
    strip_control_chars: bool = True
    collapse_whitespace: bool = True
    max_length: int | None = 1000
    allowed_chars: str | None = None

    def __post_init__(self) -> None:
        if self.max_length is not None and self.max_length < 0:
            raise ValueError(f"max_length must be >= 0, got: {self.max_length}")
        if self.allowed_chars is not None:
            # Fail fast on a class body that does not compile
            re.compile(f"[{self.allowed_chars}]")

    def with_overrides(self, **overrides: Any) -> SanitizationOptions:  # noqa: ANN401
        """Return a copy with the given fields replaced."""
        return dataclasses.replace(self, **overrides)


DEFAULT_OPTIONS = SanitizationOptions()

STRICT_OPTIONS = SanitizationOptions(
    max_length=500,
    allowed_chars=r"a-zA-Z0-9\s\-_.@",
)

PERMISSIVE_OPTIONS = SanitizationOptions(
    collapse_whitespace=False,
    max_length=5000,
)
