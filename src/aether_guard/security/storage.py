"""PostgreSQL-backed storage for security events and action policies.

Follows the ``asyncpg.Pool`` patterns used across the project: every public
method acquires a connection from the shared pool and releases it
automatically.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any
from uuid import UUID

import asyncpg  # type: ignore[import-not-found,import-untyped]

from aether_guard.logging import get_logger
from aether_guard.security.events import (
    TOP_STATS_LIMIT,
    FieldStats,
    PathStats,
    SecurityEvent,
    SecurityEventFilters,
    SecurityEventStatus,
    SecuritySummary,
)
from aether_guard.security.models import Severity, ThreatAction
from aether_guard.security.policy import ANY_EVENT_TYPE, SecurityPolicy

log = get_logger("aether_guard.security.storage")

# Global rows use an empty-string tenant key so the uniqueness constraint
# also covers tenant_id IS NULL.
SECURITY_SCHEMA_SQL = """\
CREATE TABLE IF NOT EXISTS security_events (
    id               UUID          PRIMARY KEY,
    tenant_id        TEXT,
    event_type       VARCHAR(50)   NOT NULL,
    severity         VARCHAR(20)   NOT NULL,
    request_id       VARCHAR(100)  NOT NULL,
    request_path     VARCHAR(500),
    request_method   VARCHAR(10),
    client_ip        VARCHAR(45),
    user_agent       TEXT,
    user_id          VARCHAR(255),
    field_name       VARCHAR(255),
    threat_pattern   VARCHAR(255),
    matched_content  TEXT,
    action           VARCHAR(20)   NOT NULL,
    resource_id      VARCHAR(255),
    resource_type    VARCHAR(50),
    status           VARCHAR(50)   NOT NULL DEFAULT 'new',
    reviewed_by      VARCHAR(255),
    reviewed_at      TIMESTAMPTZ,
    review_notes     TEXT,
    created_at       TIMESTAMPTZ   NOT NULL DEFAULT now()
);

CREATE INDEX IF NOT EXISTS idx_security_events_tenant_id
    ON security_events (tenant_id);
CREATE INDEX IF NOT EXISTS idx_security_events_status
    ON security_events (status);
CREATE INDEX IF NOT EXISTS idx_security_events_severity
    ON security_events (severity);
CREATE INDEX IF NOT EXISTS idx_security_events_event_type
    ON security_events (event_type);
CREATE INDEX IF NOT EXISTS idx_security_events_created_at
    ON security_events (created_at DESC);
CREATE INDEX IF NOT EXISTS idx_security_events_request_id
    ON security_events (request_id);
CREATE INDEX IF NOT EXISTS idx_security_events_resource
    ON security_events (resource_id, resource_type);
CREATE INDEX IF NOT EXISTS idx_security_events_dashboard
    ON security_events (tenant_id, status, created_at DESC);

CREATE TABLE IF NOT EXISTS security_policies (
    id               UUID          PRIMARY KEY DEFAULT gen_random_uuid(),
    tenant_id        TEXT,
    event_type       VARCHAR(50)   NOT NULL,
    severity         VARCHAR(20)   NOT NULL,
    action           VARCHAR(20)   NOT NULL,
    enabled          BOOLEAN       NOT NULL DEFAULT TRUE,
    created_at       TIMESTAMPTZ   NOT NULL DEFAULT now(),
    updated_at       TIMESTAMPTZ   NOT NULL DEFAULT now()
);

CREATE UNIQUE INDEX IF NOT EXISTS uq_security_policies_scope
    ON security_policies ((COALESCE(tenant_id, '')), event_type, severity);
CREATE INDEX IF NOT EXISTS idx_security_policies_lookup
    ON security_policies (tenant_id, event_type, severity, enabled);

INSERT INTO security_policies (tenant_id, event_type, severity, action) VALUES
    (NULL, '*', 'low', 'sanitized'),
    (NULL, '*', 'medium', 'isolated'),
    (NULL, '*', 'high', 'isolated'),
    (NULL, '*', 'critical', 'rejected')
ON CONFLICT ((COALESCE(tenant_id, '')), event_type, severity) DO NOTHING;
"""

_EVENT_COLUMNS = """
    id, tenant_id, event_type, severity, request_id, request_path,
    request_method, client_ip, user_agent, user_id, field_name,
    threat_pattern, matched_content, action, resource_id, resource_type,
    status, reviewed_by, reviewed_at, review_notes, created_at
"""

_POLICY_COLUMNS = "id, tenant_id, event_type, severity, action, enabled, created_at, updated_at"

_TENANT_SCOPE = "($1::text IS NULL OR tenant_id = $1)"


def _row_to_event(row: Mapping[str, Any]) -> SecurityEvent:
    """Convert an ``asyncpg.Record`` to a :class:`SecurityEvent`."""
    return SecurityEvent(
        id=row["id"],
        tenant_id=row["tenant_id"],
        event_type=row["event_type"],
        severity=Severity.parse(row["severity"]),
        request_id=row["request_id"],
        request_path=row["request_path"] or "",
        request_method=row["request_method"] or "",
        client_ip=row["client_ip"] or "",
        user_agent=row["user_agent"] or "",
        user_id=row["user_id"],
        field_name=row["field_name"] or "",
        threat_pattern=row["threat_pattern"] or "",
        matched_content=row["matched_content"] or "",
        action=ThreatAction.parse(row["action"]),
        resource_id=row["resource_id"],
        resource_type=row["resource_type"],
        status=SecurityEventStatus(row["status"]),
        reviewed_by=row["reviewed_by"],
        reviewed_at=row["reviewed_at"],
        review_notes=row["review_notes"],
        created_at=row["created_at"],
    )


def _build_filter_clause(filters: SecurityEventFilters) -> tuple[str, list[Any]]:
    """Return a ``WHERE`` clause (possibly empty) and its positional args."""
    conditions: list[str] = []
    args: list[Any] = []

    def add(condition: str, value: Any) -> None:  # noqa: ANN401
        args.append(value)
        conditions.append(condition.format(n=len(args)))

    if filters.tenant_id is not None:
        add("tenant_id = ${n}", filters.tenant_id)
    if filters.event_type:
        add("event_type = ${n}", filters.event_type)
    if filters.severity is not None:
        add("severity = ${n}", filters.severity.value)
    if filters.status is not None:
        add("status = ${n}", filters.status.value)
    if filters.action is not None:
        add("action = ${n}", filters.action.value)
    if filters.start_date is not None:
        add("created_at >= ${n}", filters.start_date)
    if filters.end_date is not None:
        add("created_at <= ${n}", filters.end_date)

    where = f" WHERE {' AND '.join(conditions)}" if conditions else ""
    return where, args


class SecurityEventStorage:
    """Persistence for :class:`SecurityEvent` records."""

    def __init__(self, pool: asyncpg.Pool) -> None:  # type: ignore[type-arg]
        """Initialise with an existing asyncpg connection pool.

        Args:
            pool: An ``asyncpg.Pool`` instance shared with the rest of the
                application.
        """
        self._pool = pool

    async def initialize(self) -> None:
        """Create the security tables (and default policy rows) if missing."""
        try:
            async with self._pool.acquire() as conn:
                await conn.execute(SECURITY_SCHEMA_SQL)
            log.info("security_schema_ensured")
        except asyncpg.PostgresError as exc:
            log.error("security_schema_creation_failed", error=str(exc))
            raise

    async def save(self, event: SecurityEvent) -> None:
        async with self._pool.acquire() as conn:
            await conn.execute(
                f"""
                INSERT INTO security_events ({_EVENT_COLUMNS})
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11,
                        $12, $13, $14, $15, $16, $17, $18, $19, $20, $21)
                """,
                event.id,
                event.tenant_id,
                event.event_type,
                event.severity.value,
                event.request_id,
                event.request_path,
                event.request_method,
                event.client_ip,
                event.user_agent,
                event.user_id,
                event.field_name,
                event.threat_pattern,
                event.matched_content,
                event.action.value,
                event.resource_id,
                event.resource_type,
                event.status.value,
                event.reviewed_by,
                event.reviewed_at,
                event.review_notes,
                event.created_at,
            )
        log.debug("security_event_saved", event_id=str(event.id))

    async def get(self, event_id: UUID | str) -> SecurityEvent | None:
        """Fetch one event, or None when it does not exist."""
        if not isinstance(event_id, UUID):
            try:
                event_id = UUID(str(event_id))
            except ValueError:
                return None
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(
                f"SELECT {_EVENT_COLUMNS} FROM security_events WHERE id = $1",
                event_id,
            )
        return _row_to_event(row) if row else None

    async def update_review(self, event: SecurityEvent) -> bool:
        """Persist the review fields of *event*. Returns False if the row is gone."""
        async with self._pool.acquire() as conn:
            result = await conn.execute(
                """
                UPDATE security_events
                SET status = $1, reviewed_by = $2, reviewed_at = $3, review_notes = $4
                WHERE id = $5
                """,
                event.status.value,
                event.reviewed_by,
                event.reviewed_at,
                event.review_notes,
                event.id,
            )
        return result == "UPDATE 1"

    async def attach_resource(
        self,
        request_id: str,
        resource_id: str,
        resource_type: str,
        *,
        tenant_id: str | None = None,
    ) -> int:
        """Associate every event of *request_id* with a created resource.

        With *tenant_id* only that tenant's events are touched.

        Returns:
            Number of events updated.
        """
        async with self._pool.acquire() as conn:
            result = await conn.execute(
                """
                UPDATE security_events
                SET resource_id = $1, resource_type = $2
                WHERE request_id = $3 AND ($4::text IS NULL OR tenant_id = $4)
                """,
                resource_id,
                resource_type,
                request_id,
                tenant_id,
            )
        count = int(result.split()[-1]) if result else 0
        log.debug(
            "security_events_resource_attached",
            request_id=request_id,
            resource_type=resource_type,
            count=count,
        )
        return count

    async def list(
        self,
        filters: SecurityEventFilters | None = None,
    ) -> tuple[list[SecurityEvent], int]:
        """List events newest first.

        Returns:
            The requested page of events and the total count matching the
            filters.
        """
        filters = filters or SecurityEventFilters()
        where, args = _build_filter_clause(filters)
        limit_pos = len(args) + 1

        async with self._pool.acquire() as conn:
            total = await conn.fetchval(f"SELECT COUNT(*) FROM security_events{where}", *args)
            rows = await conn.fetch(
                f"SELECT {_EVENT_COLUMNS} FROM security_events{where} "
                f"ORDER BY created_at DESC LIMIT ${limit_pos} OFFSET ${limit_pos + 1}",
                *args,
                filters.limit,
                filters.offset,
            )
        return [_row_to_event(r) for r in rows], int(total or 0)

    async def summary(self, tenant_id: str | None = None) -> SecuritySummary:
        """Aggregate dashboard statistics, optionally for one tenant."""
        async with self._pool.acquire() as conn:
            counts = await conn.fetchrow(
                f"""
                SELECT
                    COUNT(*) AS total,
                    COUNT(*) FILTER (WHERE status = 'new') AS new_events,
                    COUNT(*) FILTER (WHERE status IN ('new', 'reviewed')) AS pending_review,
                    COUNT(*) FILTER (
                        WHERE created_at > now() - INTERVAL '24 hours'
                    ) AS last_24_hours,
                    COUNT(*) FILTER (
                        WHERE created_at > now() - INTERVAL '7 days'
                    ) AS last_7_days
                FROM security_events
                WHERE {_TENANT_SCOPE}
                """,
                tenant_id,
            )
            by_severity = await conn.fetch(
                f"SELECT severity AS key, COUNT(*) AS count FROM security_events "
                f"WHERE {_TENANT_SCOPE} GROUP BY severity",
                tenant_id,
            )
            by_type = await conn.fetch(
                f"SELECT event_type AS key, COUNT(*) AS count FROM security_events "
                f"WHERE {_TENANT_SCOPE} GROUP BY event_type",
                tenant_id,
            )
            by_action = await conn.fetch(
                f"SELECT action AS key, COUNT(*) AS count FROM security_events "
                f"WHERE {_TENANT_SCOPE} GROUP BY action",
                tenant_id,
            )
            paths = await conn.fetch(
                f"""
                SELECT
                    request_path AS path,
                    COUNT(*) AS count,
                    COUNT(*) FILTER (WHERE severity = 'critical') AS critical,
                    COUNT(*) FILTER (WHERE severity = 'high') AS high
                FROM security_events
                WHERE {_TENANT_SCOPE} AND COALESCE(request_path, '') <> ''
                GROUP BY request_path
                ORDER BY count DESC, request_path
                LIMIT $2
                """,
                tenant_id,
                TOP_STATS_LIMIT,
            )
            fields = await conn.fetch(
                f"""
                SELECT field_name, COUNT(*) AS count
                FROM security_events
                WHERE {_TENANT_SCOPE} AND COALESCE(field_name, '') <> ''
                GROUP BY field_name
                ORDER BY count DESC, field_name
                LIMIT $2
                """,
                tenant_id,
                TOP_STATS_LIMIT,
            )

        return SecuritySummary(
            total_events=counts["total"] if counts else 0,
            new_events=counts["new_events"] if counts else 0,
            pending_review=counts["pending_review"] if counts else 0,
            events_by_severity={r["key"]: r["count"] for r in by_severity},
            events_by_type={r["key"]: r["count"] for r in by_type},
            events_by_action={r["key"]: r["count"] for r in by_action},
            last_24_hours=counts["last_24_hours"] if counts else 0,
            last_7_days=counts["last_7_days"] if counts else 0,
            top_threatened_paths=[
                PathStats(
                    path=r["path"],
                    count=r["count"],
                    critical=r["critical"],
                    high=r["high"],
                )
                for r in paths
            ],
            top_threatened_fields=[
                FieldStats(field_name=r["field_name"], count=r["count"]) for r in fields
            ],
        )


class SecurityPolicyStorage:
    """Persistence for tenant and global :class:`SecurityPolicy` overrides."""

    def __init__(self, pool: asyncpg.Pool) -> None:  # type: ignore[type-arg]
        self._pool = pool

    async def fetch_policy_records(self) -> list[dict[str, Any]]:
        """Return every enabled policy row as a plain dict.

        Rows are not validated here; :class:`PolicyTable` skips malformed ones.
        """
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(
                f"SELECT {_POLICY_COLUMNS} FROM security_policies WHERE enabled = TRUE"
            )
        return [dict(r) for r in rows]

    async def list_policies(self, tenant_id: str | None = None) -> list[SecurityPolicy]:
        """List global policies, plus the tenant's own when *tenant_id* is given."""
        async with self._pool.acquire() as conn:
            if tenant_id is None:
                rows = await conn.fetch(
                    f"SELECT {_POLICY_COLUMNS} FROM security_policies "
                    "WHERE tenant_id IS NULL ORDER BY event_type, severity"
                )
            else:
                rows = await conn.fetch(
                    f"SELECT {_POLICY_COLUMNS} FROM security_policies "
                    "WHERE tenant_id IS NULL OR tenant_id = $1 "
                    "ORDER BY tenant_id NULLS FIRST, event_type, severity",
                    tenant_id,
                )

        policies: list[SecurityPolicy] = []
        for row in rows:
            try:
                policies.append(SecurityPolicy.from_record(row))
            except (KeyError, ValueError) as e:
                log.warning(
                    "malformed_security_policy_skipped",
                    policy_id=str(row["id"]),
                    error=str(e),
                )
        return policies

    async def get_policy(
        self,
        tenant_id: str | None,
        event_type: str,
        severity: Severity,
    ) -> SecurityPolicy | None:
        """Fetch the policy stored for exactly this scope, or None."""
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(
                f"""
                SELECT {_POLICY_COLUMNS} FROM security_policies
                WHERE tenant_id IS NOT DISTINCT FROM $1
                  AND event_type = $2 AND severity = $3
                """,
                tenant_id,
                event_type,
                severity.value,
            )
        return SecurityPolicy.from_record(row) if row else None

    async def upsert_policy(
        self,
        severity: Severity,
        action: ThreatAction,
        *,
        tenant_id: str | None = None,
        event_type: str = ANY_EVENT_TYPE,
        enabled: bool = True,
    ) -> SecurityPolicy:
        """Create or replace the policy for ``(tenant_id, event_type, severity)``."""
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(
                f"""
                INSERT INTO security_policies (tenant_id, event_type, severity, action, enabled)
                VALUES ($1, $2, $3, $4, $5)
                ON CONFLICT ((COALESCE(tenant_id, '')), event_type, severity)
                DO UPDATE SET action = EXCLUDED.action,
                              enabled = EXCLUDED.enabled,
                              updated_at = now()
                RETURNING {_POLICY_COLUMNS}
                """,
                tenant_id,
                event_type,
                severity.value,
                action.value,
                enabled,
            )
        policy = SecurityPolicy.from_record(row)
        log.info(
            "security_policy_upserted",
            tenant_id=tenant_id,
            event_type=event_type,
            severity=severity.value,
            action=action.value,
            enabled=enabled,
        )
        return policy
