"""Security event model, review lifecycle and reporting types.

Events flow through states: NEW -> REVIEWED -> APPROVED | REJECTED |
FALSE_POSITIVE. The last three are terminal.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any
from uuid import UUID, uuid4

from aether_guard.security.models import DetectedThreat, Severity, ThreatAction

DEFAULT_LIST_LIMIT = 20
MAX_LIST_LIMIT = 100
TOP_STATS_LIMIT = 10


class SecurityEventNotFoundError(Exception):
    """Raised when a security event does not exist."""

    def __init__(self, event_id: UUID | str) -> None:
        self.event_id = str(event_id)
        super().__init__(f"Security event not found: {self.event_id}")


class ReviewConflictError(Exception):
    """Raised when reviewing an event that already carries a final decision."""

    def __init__(self, event_id: UUID | str, status: str) -> None:
        self.event_id = str(event_id)
        self.status = status
        super().__init__(f"Security event {self.event_id} already reviewed as {status}")


class SecurityEventStatus(StrEnum):
    """Review lifecycle states."""

    NEW = "new"
    REVIEWED = "reviewed"  # Acknowledged, decision pending
    APPROVED = "approved"
    REJECTED = "rejected"
    FALSE_POSITIVE = "false_positive"


TERMINAL_STATUSES = frozenset(
    {
        SecurityEventStatus.APPROVED,
        SecurityEventStatus.REJECTED,
        SecurityEventStatus.FALSE_POSITIVE,
    }
)

PENDING_STATUSES = frozenset({SecurityEventStatus.NEW, SecurityEventStatus.REVIEWED})


@dataclass(frozen=True)
class RequestContext:
    """Where a request came from. Only used to populate events."""

    request_id: str = ""
    request_path: str = ""
    request_method: str = ""
    client_ip: str = ""
    user_agent: str = ""
    user_id: str | None = None
    tenant_id: str | None = None
    resource_id: str | None = None
    resource_type: str | None = None


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


@dataclass
class SecurityEvent:
    """Persisted record of one detected threat plus its review state.

    Attributes:
        id: Unique event identifier.
        tenant_id: Tenant the request belonged to, if any.
        event_type: Threat category value (``sql_injection``, ``xss``, ...).
        severity: Severity of the matched rule.
        request_id: Correlation ID of the originating request.
        request_path: URL path of the originating request.
        request_method: HTTP method of the originating request.
        client_ip: Peer address.
        user_agent: User-Agent header.
        user_id: Authenticated user, if any.
        field_name: Input field that carried the threat.
        threat_pattern: Name of the rule that matched.
        matched_content: Matched text, truncated for reporting.
        action: Remediation applied.
        resource_id: Resource created by the request, once known.
        resource_type: Kind of that resource.
        status: Review lifecycle state.
        reviewed_by: Reviewer of the last transition.
        reviewed_at: Time of the last review transition (UTC).
        review_notes: Free-form reviewer notes.
        created_at: Detection time (UTC).
    """

    event_type: str
    severity: Severity
    field_name: str
    threat_pattern: str
    matched_content: str
    action: ThreatAction
    id: UUID = field(default_factory=uuid4)
    tenant_id: str | None = None
    request_id: str = ""
    request_path: str = ""
    request_method: str = ""
    client_ip: str = ""
    user_agent: str = ""
    user_id: str | None = None
    resource_id: str | None = None
    resource_type: str | None = None
    status: SecurityEventStatus = SecurityEventStatus.NEW
    reviewed_by: str | None = None
    reviewed_at: datetime | None = None
    review_notes: str | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @classmethod
    def from_threat(cls, threat: DetectedThreat, context: RequestContext) -> SecurityEvent:
        """Create a NEW event for *threat* seen in the request described by *context*."""
        return cls(
            event_type=threat.type.value,
            severity=threat.severity,
            field_name=threat.field_name,
            threat_pattern=threat.pattern_name,
            matched_content=threat.matched_content,
            action=threat.action,
            tenant_id=context.tenant_id,
            request_id=context.request_id,
            request_path=context.request_path,
            request_method=context.request_method,
            client_ip=context.client_ip,
            user_agent=context.user_agent,
            user_id=context.user_id,
            resource_id=context.resource_id,
            resource_type=context.resource_type,
        )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def acknowledge(self, reviewer_id: str) -> bool:
        """Move NEW -> REVIEWED. Returns False (and changes nothing) otherwise."""
        if self.status != SecurityEventStatus.NEW:
            return False
        self.status = SecurityEventStatus.REVIEWED
        self.reviewed_by = reviewer_id
        self.reviewed_at = datetime.now(UTC)
        return True

    def apply_review(
        self,
        status: SecurityEventStatus | str,
        reviewer_id: str,
        notes: str | None = None,
        *,
        allow_overwrite: bool = False,
    ) -> None:
        """Record a final review decision.

        Raises:
            ValueError: If *status* is not a terminal status.
            ReviewConflictError: If the event is already terminal and
                *allow_overwrite* is false.
        """
        decision = SecurityEventStatus(status)
        if decision not in TERMINAL_STATUSES:
            raise ValueError(f"Review status must be terminal, got: {decision}")
        if self.is_terminal and not allow_overwrite:
            raise ReviewConflictError(self.id, self.status.value)

        self.status = decision
        self.reviewed_by = reviewer_id
        self.reviewed_at = datetime.now(UTC)
        self.review_notes = notes

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialisation."""
        return {
            "id": str(self.id),
            "tenant_id": self.tenant_id,
            "event_type": self.event_type,
            "severity": self.severity.value,
            "request_id": self.request_id,
            "request_path": self.request_path,
            "request_method": self.request_method,
            "client_ip": self.client_ip,
            "user_agent": self.user_agent,
            "user_id": self.user_id,
            "field_name": self.field_name,
            "threat_pattern": self.threat_pattern,
            "matched_content": self.matched_content,
            "action": self.action.value,
            "resource_id": self.resource_id,
            "resource_type": self.resource_type,
            "status": self.status.value,
            "reviewed_by": self.reviewed_by,
            "reviewed_at": _iso(self.reviewed_at),
            "review_notes": self.review_notes,
            "created_at": _iso(self.created_at),
        }


@dataclass
class SecurityEventFilters:
    """Filters for listing events. ``limit`` and ``offset`` are clamped."""

    tenant_id: str | None = None
    event_type: str | None = None
    severity: Severity | None = None
    status: SecurityEventStatus | None = None
    action: ThreatAction | None = None
    start_date: datetime | None = None
    end_date: datetime | None = None
    limit: int = DEFAULT_LIST_LIMIT
    offset: int = 0

    def __post_init__(self) -> None:
        if self.limit <= 0:
            self.limit = DEFAULT_LIST_LIMIT
        self.limit = min(self.limit, MAX_LIST_LIMIT)
        self.offset = max(self.offset, 0)


@dataclass(frozen=True)
class PathStats:
    path: str
    count: int
    critical: int = 0
    high: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "path": self.path,
            "count": self.count,
            "critical": self.critical,
            "high": self.high,
        }


@dataclass(frozen=True)
class FieldStats:
    field_name: str
    count: int

    def to_dict(self) -> dict[str, Any]:
        return {"field_name": self.field_name, "count": self.count}


@dataclass
class SecuritySummary:
    """Aggregated dashboard counts, optionally scoped to one tenant."""

    total_events: int = 0
    new_events: int = 0
    pending_review: int = 0
    events_by_severity: dict[str, int] = field(default_factory=dict)
    events_by_type: dict[str, int] = field(default_factory=dict)
    events_by_action: dict[str, int] = field(default_factory=dict)
    last_24_hours: int = 0
    last_7_days: int = 0
    top_threatened_paths: list[PathStats] = field(default_factory=list)
    top_threatened_fields: list[FieldStats] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_events": self.total_events,
            "new_events": self.new_events,
            "pending_review": self.pending_review,
            "events_by_severity": dict(self.events_by_severity),
            "events_by_type": dict(self.events_by_type),
            "events_by_action": dict(self.events_by_action),
            "last_24_hours": self.last_24_hours,
            "last_7_days": self.last_7_days,
            "top_threatened_paths": [p.to_dict() for p in self.top_threatened_paths],
            "top_threatened_fields": [f.to_dict() for f in self.top_threatened_fields],
        }
