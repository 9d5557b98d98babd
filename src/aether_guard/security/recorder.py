"""Security event recorder: forensic logging, persistence and review.

Every WARNING+ event lands in the rotating error log file as well as in the
``security_events`` table. Persistence is best-effort: a failing store is
logged and never changes the outcome of the request that triggered it.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any, Protocol
from uuid import UUID

from aether_guard.logging import get_logger
from aether_guard.security.events import (
    RequestContext,
    SecurityEvent,
    SecurityEventNotFoundError,
    SecurityEventStatus,
)
from aether_guard.security.models import DetectedThreat, ThreatAction

if TYPE_CHECKING:
    from aether_guard.api.models import SecurityEventReviewRequest

log = get_logger("aether_guard.security.recorder")


class SecurityEventStore(Protocol):
    """Persistence operations the recorder needs."""

    async def save(self, event: SecurityEvent) -> None: ...

    async def get(self, event_id: UUID | str) -> SecurityEvent | None: ...

    async def update_review(self, event: SecurityEvent) -> bool: ...

    async def attach_resource(
        self,
        request_id: str,
        resource_id: str,
        resource_type: str,
        *,
        tenant_id: str | None = None,
    ) -> int: ...


def log_security_event(event: SecurityEvent, *, logger: Any = None) -> None:  # noqa: ANN401
    """Log a forensic record for one security event."""
    (logger or log).warning(
        "security_event",
        event_id=str(event.id),
        event_type=event.event_type,
        severity=event.severity.value,
        action=event.action.value,
        request_id=event.request_id,
        request_path=event.request_path,
        request_method=event.request_method,
        client_ip=event.client_ip,
        user_id=event.user_id,
        tenant_id=event.tenant_id,
        field_name=event.field_name,
        pattern=event.threat_pattern,
        matched=event.matched_content,
        timestamp=datetime.now(UTC).isoformat(),
    )


class SecurityEventRecorder:
    """Turn detected threats into persisted, reviewable security events.

    Args:
        store: Event persistence (usually :class:`SecurityEventStorage`).
        record_sanitized: Persist events whose action is ``sanitized``.
            Isolated and rejected events are always persisted.
        allow_rereview: Let a review overwrite an earlier final decision
            instead of raising :class:`ReviewConflictError`.
        logger: structlog logger for forensic records; defaults to the
            module logger.
    """

    def __init__(
        self,
        store: SecurityEventStore,
        *,
        record_sanitized: bool = True,
        allow_rereview: bool = False,
        logger: Any = None,  # noqa: ANN401
    ) -> None:
        self._store = store
        self._record_sanitized = record_sanitized
        self._allow_rereview = allow_rereview
        self._log = logger or log

    @property
    def allow_rereview(self) -> bool:
        return self._allow_rereview

    def build_events(
        self,
        threats: Iterable[DetectedThreat],
        context: RequestContext,
    ) -> list[SecurityEvent]:
        """Create one NEW event per threat. Nothing is persisted."""
        return [SecurityEvent.from_threat(t, context) for t in threats]

    async def record(
        self,
        threats: Sequence[DetectedThreat],
        context: RequestContext,
    ) -> list[SecurityEvent]:
        """Log and persist an event for each threat.

        Returns:
            The events that were built (sanitized ones are left out when
            ``record_sanitized`` is off), whether or not saving succeeded.
        """
        if not self._record_sanitized:
            threats = [t for t in threats if t.action != ThreatAction.SANITIZED]

        events = self.build_events(threats, context)
        for event in events:
            log_security_event(event, logger=self._log)
            try:
                await self._store.save(event)
            except Exception:
                self._log.exception(
                    "security_event_persist_failed",
                    event_id=str(event.id),
                    request_id=event.request_id,
                    event_type=event.event_type,
                )
        return events

    async def _load(self, event_id: UUID | str) -> SecurityEvent:
        event = await self._store.get(event_id)
        if event is None:
            raise SecurityEventNotFoundError(event_id)
        return event

    async def review(
        self,
        event_id: UUID | str,
        reviewer_id: str,
        request: SecurityEventReviewRequest,
    ) -> SecurityEvent:
        """Apply a final review decision and persist it.

        Raises:
            SecurityEventNotFoundError: If the event does not exist.
            ReviewConflictError: If the event already has a final decision
                and re-review is disabled.
        """
        event = await self._load(event_id)
        previous = event.status
        event.apply_review(
            request.status,
            reviewer_id,
            request.review_notes,
            allow_overwrite=self._allow_rereview,
        )
        if not await self._store.update_review(event):
            raise SecurityEventNotFoundError(event_id)

        self._log.info(
            "security_event_reviewed",
            event_id=str(event.id),
            reviewer_id=reviewer_id,
            previous_status=previous.value,
            status=event.status.value,
        )
        return event

    async def acknowledge(self, event_id: UUID | str, reviewer_id: str) -> SecurityEvent:
        """Mark a NEW event as REVIEWED. Other states are returned unchanged.

        Raises:
            SecurityEventNotFoundError: If the event does not exist.
        """
        event = await self._load(event_id)
        if not event.acknowledge(reviewer_id):
            return event
        if not await self._store.update_review(event):
            raise SecurityEventNotFoundError(event_id)
        self._log.info(
            "security_event_acknowledged",
            event_id=str(event.id),
            reviewer_id=reviewer_id,
            status=SecurityEventStatus.REVIEWED.value,
        )
        return event

    async def attach_resource(
        self,
        request_id: str,
        resource_id: str,
        resource_type: str,
        *,
        tenant_id: str | None = None,
    ) -> int:
        """Link the events of an isolated request to the resource it went on to create.

        Returns:
            Number of events linked; 0 when the request produced none.
        """
        count = await self._store.attach_resource(
            request_id, resource_id, resource_type, tenant_id=tenant_id
        )
        self._log.info(
            "security_events_resource_attached",
            request_id=request_id,
            resource_id=resource_id,
            resource_type=resource_type,
            tenant_id=tenant_id,
            count=count,
        )
        return count
