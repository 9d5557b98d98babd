"""Threat detector: scan a field's raw text against the pattern catalog.

All checks are synchronous, allocation-free on clean input beyond the empty
result list, and safe to call concurrently.
"""

from __future__ import annotations

from collections.abc import Iterable

from aether_guard.security.models import (
    DetectedThreat,
    PatternRule,
    Severity,
    ThreatCategory,
    truncate_match,
)
from aether_guard.security.patterns import DEFAULT_CATALOG, PatternCatalog, tag_search_end
from aether_guard.security.policy import ActionPolicy

CONTROL_CHARS_PREVIEW = "[control characters]"


def highest_severity(threats: Iterable[DetectedThreat]) -> Severity | None:
    """Return the maximum severity in *threats*, or None when there are none."""
    highest: Severity | None = None
    for threat in threats:
        if highest is None or threat.severity > highest:
            highest = threat.severity
    return highest


class ThreatDetector:
    """Run every category scanner over a value and report each match.

    Categories are independent; one string may trigger several. The action
    attached to each threat comes from the injected :class:`ActionPolicy`.
    """

    def __init__(
        self,
        catalog: PatternCatalog = DEFAULT_CATALOG,
        policy: ActionPolicy | None = None,
    ) -> None:
        self._catalog = catalog
        self._policy = policy or ActionPolicy()

    @property
    def catalog(self) -> PatternCatalog:
        return self._catalog

    @property
    def policy(self) -> ActionPolicy:
        return self._policy

    highest_severity = staticmethod(highest_severity)

    def detect(
        self,
        text: str,
        field_name: str,
        *,
        tenant_id: str | None = None,
    ) -> list[DetectedThreat]:
        """Scan *text* and return threats in category order (SQL, XSS, markup, control).

        Args:
            text: Raw, unsanitized field value.
            field_name: Name reported on each threat.
            tenant_id: Tenant whose policy overrides decide the action.
        """
        threats: list[DetectedThreat] = []
        if not text:
            return threats

        self._scan_rules(
            text, field_name, ThreatCategory.SQL_INJECTION, self._catalog.sql, tenant_id, threats
        )
        self._scan_rules(
            text, field_name, ThreatCategory.XSS, self._catalog.xss, tenant_id, threats
        )
        self._scan_markup(text, field_name, tenant_id, threats)
        self._scan_control_chars(text, field_name, tenant_id, threats)
        return threats

    def is_safe(self, text: str, threshold: Severity = Severity.MEDIUM) -> bool:
        """Return False if any threat at or above *threshold* is found in *text*."""
        highest = highest_severity(self.detect(text, "value"))
        return highest is None or highest < threshold

    # ------------------------------------------------------------------
    # Category scanners
    # ------------------------------------------------------------------

    def _scan_rules(
        self,
        text: str,
        field_name: str,
        category: ThreatCategory,
        rules: tuple[PatternRule, ...],
        tenant_id: str | None,
        out: list[DetectedThreat],
    ) -> None:
        for rule in rules:
            for match in rule.matches_all(text):
                out.append(
                    self._threat(category, rule.severity, field_name, rule.name, match, tenant_id)
                )

    def _scan_markup(
        self,
        text: str,
        field_name: str,
        tenant_id: str | None,
        out: list[DetectedThreat],
    ) -> None:
        catalog = self._catalog
        for match in catalog.markup_tag.finditer(text, 0, tag_search_end(text)):
            tag = match.group(0)
            lowered = tag.lower()
            if lowered.startswith(catalog.markup_excluded_prefixes):
                continue
            severity = catalog.markup_severity
            if lowered.startswith(catalog.markup_escalated_prefixes):
                severity = catalog.markup_escalated_severity
            out.append(
                self._threat(
                    ThreatCategory.HTML_INJECTION, severity, field_name, "HTML tag", tag, tenant_id
                )
            )

    def _scan_control_chars(
        self,
        text: str,
        field_name: str,
        tenant_id: str | None,
        out: list[DetectedThreat],
    ) -> None:
        # One threat per field regardless of how many control characters occur
        if self._catalog.control_chars.search(text) is None:
            return
        out.append(
            self._threat(
                ThreatCategory.CONTROL_CHARS,
                self._catalog.control_severity,
                field_name,
                "control characters",
                CONTROL_CHARS_PREVIEW,
                tenant_id,
            )
        )

    def _threat(
        self,
        category: ThreatCategory,
        severity: Severity,
        field_name: str,
        pattern_name: str,
        matched: str,
        tenant_id: str | None,
    ) -> DetectedThreat:
        return DetectedThreat(
            type=category,
            severity=severity,
            field_name=field_name,
            pattern_name=pattern_name,
            matched_content=truncate_match(matched),
            action=self._policy.determine_action(severity, category.value, tenant_id),
        )
