"""Pattern catalog: named detection rules per threat category.

Compiled once at import and never mutated. Within each category rules run
from most severe to least; the ordering is for readability only, since the
detector evaluates every rule.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

from aether_guard.security.models import PatternRule, Severity

# ---------------------------------------------------------------------------
# SQL injection
# ---------------------------------------------------------------------------

_SQL_PATTERNS: tuple[PatternRule, ...] = (
    # --- Critical: data exfiltration or schema destruction ---
    PatternRule(
        re.compile(r"\bUNION\s+(?:ALL\s+)?SELECT\b", re.IGNORECASE),
        Severity.CRITICAL,
        "UNION SELECT",
    ),
    PatternRule(
        re.compile(r"\bDROP\s+(?:TABLE|DATABASE|INDEX)\b", re.IGNORECASE),
        Severity.CRITICAL,
        "DROP statement",
    ),
    PatternRule(
        re.compile(r"\bTRUNCATE\s+TABLE\b", re.IGNORECASE),
        Severity.CRITICAL,
        "TRUNCATE TABLE",
    ),
    PatternRule(re.compile(r"\bxp_cmdshell\b", re.IGNORECASE), Severity.CRITICAL, "xp_cmdshell"),
    # --- High: data modification or access ---
    PatternRule(re.compile(r"\bDELETE\s+FROM\b", re.IGNORECASE), Severity.HIGH, "DELETE FROM"),
    PatternRule(re.compile(r"\bINSERT\s+INTO\b", re.IGNORECASE), Severity.HIGH, "INSERT INTO"),
    PatternRule(re.compile(r"\bUPDATE\s+\w+\s+SET\b", re.IGNORECASE), Severity.HIGH, "UPDATE SET"),
    PatternRule(
        # The select list never spans another SELECT, so failed starts cost
        # at most the gap to the next one
        re.compile(r"\bSELECT\s(?:(?!SELECT\b)[^;])+?\sFROM\b", re.IGNORECASE),
        Severity.HIGH,
        "SELECT FROM",
    ),
    PatternRule(re.compile(r"\bEXEC(?:UTE)?\s*\(", re.IGNORECASE), Severity.HIGH, "EXEC function"),
    # --- Medium: syntax that usually only appears inside an injection ---
    PatternRule(
        re.compile(r"\bOR\s+['\"]?\d+['\"]?\s*=\s*['\"]?\d+['\"]?", re.IGNORECASE),
        Severity.MEDIUM,
        "OR 1=1 pattern",
    ),
    PatternRule(
        re.compile(r"\bAND\s+['\"]?\d+['\"]?\s*=\s*['\"]?\d+['\"]?", re.IGNORECASE),
        Severity.MEDIUM,
        "AND 1=1 pattern",
    ),
    PatternRule(re.compile(r";\s*--"), Severity.MEDIUM, "SQL comment injection"),
    PatternRule(re.compile(r"\bHAVING\b", re.IGNORECASE), Severity.MEDIUM, "HAVING clause"),
    # The body stops at the next "/*", which is where the next attempt starts
    PatternRule(
        re.compile(r"/\*(?:[^*/]|/(?!\*)|\*(?!/))*\*/"),
        Severity.MEDIUM,
        "SQL block comment",
    ),
    # --- Low: suspicious but often legitimate ---
    PatternRule(re.compile(r"\bGROUP\s+BY\b", re.IGNORECASE), Severity.LOW, "GROUP BY clause"),
    PatternRule(re.compile(r"\bORDER\s+BY\b", re.IGNORECASE), Severity.LOW, "ORDER BY clause"),
)

# ---------------------------------------------------------------------------
# Cross-site scripting
# ---------------------------------------------------------------------------

_XSS_PATTERNS: tuple[PatternRule, ...] = (
    # --- Critical: direct script execution ---
    # Tag rules also match an unterminated tag and never scan past the next "<"
    PatternRule(re.compile(r"<script\b[^<>]*>?", re.IGNORECASE), Severity.CRITICAL, "script tag"),
    PatternRule(re.compile(r"</script\s*>", re.IGNORECASE), Severity.CRITICAL, "script close tag"),
    PatternRule(
        re.compile(r"javascript\s*:", re.IGNORECASE), Severity.CRITICAL, "javascript: protocol"
    ),
    PatternRule(
        re.compile(r"vbscript\s*:", re.IGNORECASE), Severity.CRITICAL, "vbscript: protocol"
    ),
    PatternRule(
        re.compile(r"data:\s*text/html", re.IGNORECASE), Severity.CRITICAL, "data:text/html"
    ),
    # --- High: event handlers and embedding tags ---
    PatternRule(re.compile(r"\bon[a-z]+\s*=", re.IGNORECASE), Severity.HIGH, "event handler"),
    PatternRule(re.compile(r"<iframe\b[^<>]*>?", re.IGNORECASE), Severity.HIGH, "iframe tag"),
    PatternRule(re.compile(r"<object\b[^<>]*>?", re.IGNORECASE), Severity.HIGH, "object tag"),
    PatternRule(re.compile(r"<embed\b[^<>]*>?", re.IGNORECASE), Severity.HIGH, "embed tag"),
    PatternRule(
        re.compile(r"url\s*\(\s*['\"]?\s*javascript:", re.IGNORECASE),
        Severity.HIGH,
        "CSS javascript URL",
    ),
    # --- Medium: forms and style-based script ---
    PatternRule(re.compile(r"<form\b[^<>]*>?", re.IGNORECASE), Severity.MEDIUM, "form tag"),
    PatternRule(re.compile(r"<input\b[^<>]*>?", re.IGNORECASE), Severity.MEDIUM, "input tag"),
    PatternRule(re.compile(r"expression\s*\(", re.IGNORECASE), Severity.MEDIUM, "CSS expression"),
)

# ---------------------------------------------------------------------------
# Markup injection and control characters
# ---------------------------------------------------------------------------

# Generic tag; the sanitizer strips the same construct. Search it only up
# to tag_search_end(), otherwise every unclosed "<" rescans the rest of the
# text.
HTML_TAG_PATTERN = re.compile(r"<[^>]+>")

# C0 controls and DEL, excluding tab, LF and CR
CONTROL_CHAR_PATTERN = re.compile(r"[\x00-\x08\x0B\x0C\x0E-\x1F\x7F]")

# Tags (opening or closing) already reported under XSS
_XSS_TAG_PREFIXES: tuple[str, ...] = (
    "<script",
    "<iframe",
    "<object",
    "<embed",
    "</script",
    "</iframe",
    "</object",
    "</embed",
)

# Tags that can carry a URL are more concerning than plain formatting
_ESCALATED_TAG_PREFIXES: tuple[str, ...] = ("<a ", "<img ", "<link ")


def tag_search_end(text: str) -> int:
    """Return the index just past the last ``>`` in *text* (0 if there is none)."""
    return text.rfind(">") + 1


@dataclass(frozen=True)
class PatternCatalog:
    """Immutable rule set consumed by :class:`~aether_guard.security.detector.ThreatDetector`.

    Alternate catalogs can be built for tests or per-deployment tuning; the
    default one is :data:`DEFAULT_CATALOG`.
    """

    sql: tuple[PatternRule, ...] = _SQL_PATTERNS
    xss: tuple[PatternRule, ...] = _XSS_PATTERNS
    markup_tag: re.Pattern[str] = HTML_TAG_PATTERN
    markup_excluded_prefixes: tuple[str, ...] = _XSS_TAG_PREFIXES
    markup_escalated_prefixes: tuple[str, ...] = _ESCALATED_TAG_PREFIXES
    markup_severity: Severity = Severity.LOW
    markup_escalated_severity: Severity = Severity.MEDIUM
    control_chars: re.Pattern[str] = CONTROL_CHAR_PATTERN
    control_severity: Severity = Severity.LOW

    @property
    def rule_count(self) -> int:
        return len(self.sql) + len(self.xss) + 2


DEFAULT_CATALOG = PatternCatalog()
