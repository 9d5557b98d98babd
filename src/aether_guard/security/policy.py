"""Action policy: severity -> remediation action, with per-tenant overrides.

Lookups are synchronous and read an immutable :class:`PolicyTable`. The
table is rebuilt off the request path by :class:`PolicyCache` and swapped in
with a single reference assignment, so a reader sees either the old or the
new table, never a mix.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from types import MappingProxyType
from typing import TYPE_CHECKING, Any, Protocol

from aether_guard.logging import get_logger
from aether_guard.security.models import DetectedThreat, Severity, ThreatAction

if TYPE_CHECKING:
    from aether_guard.security.storage import SecurityPolicyStorage

log = get_logger("aether_guard.security.policy")

# Event type wildcard used by global/default policy rows
ANY_EVENT_TYPE = "*"

DEFAULT_ACTIONS: Mapping[Severity, ThreatAction] = MappingProxyType(
    {
        Severity.CRITICAL: ThreatAction.REJECTED,
        Severity.HIGH: ThreatAction.ISOLATED,
        Severity.MEDIUM: ThreatAction.ISOLATED,
        Severity.LOW: ThreatAction.SANITIZED,
    }
)


@dataclass(frozen=True)
class SecurityPolicy:
    """Tenant-scoped (or global, when ``tenant_id`` is None) override of the default mapping."""

    severity: Severity
    action: ThreatAction
    event_type: str = ANY_EVENT_TYPE
    tenant_id: str | None = None
    enabled: bool = True
    id: str | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def key(self) -> tuple[str | None, str, Severity]:
        return (self.tenant_id, self.event_type, self.severity)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "event_type": self.event_type,
            "severity": self.severity.value,
            "action": self.action.value,
            "enabled": self.enabled,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> SecurityPolicy:
        """Build a policy from a stored row.

        Raises:
            ValueError: If the row carries an unknown severity or action.
        """
        tenant_id = record.get("tenant_id")
        now = datetime.now(UTC)
        return cls(
            id=str(record["id"]) if record.get("id") is not None else None,
            tenant_id=str(tenant_id) if tenant_id is not None else None,
            event_type=record.get("event_type") or ANY_EVENT_TYPE,
            severity=Severity.parse(record["severity"]),
            action=ThreatAction.parse(record["action"]),
            enabled=bool(record.get("enabled", True)),
            created_at=record.get("created_at") or now,
            updated_at=record.get("updated_at") or now,
        )


class PolicyTable:
    """Immutable lookup of enabled policies keyed by ``(tenant, event_type, severity)``."""

    __slots__ = ("_entries",)

    def __init__(self, entries: Mapping[tuple[str | None, str, Severity], ThreatAction]) -> None:
        self._entries = MappingProxyType(dict(entries))

    def __len__(self) -> int:
        return len(self._entries)

    @classmethod
    def empty(cls) -> PolicyTable:
        return cls({})

    @classmethod
    def from_policies(cls, policies: Iterable[SecurityPolicy]) -> PolicyTable:
        """Build a table from enabled policies.

        When two enabled policies share a key the first one wins and the
        duplicate is logged.
        """
        entries: dict[tuple[str | None, str, Severity], ThreatAction] = {}
        for policy in policies:
            if not policy.enabled:
                continue
            if policy.key in entries:
                log.warning(
                    "duplicate_security_policy",
                    tenant_id=policy.tenant_id,
                    event_type=policy.event_type,
                    severity=policy.severity.value,
                )
                continue
            entries[policy.key] = policy.action
        return cls(entries)

    @classmethod
    def from_records(cls, records: Iterable[Mapping[str, Any]]) -> PolicyTable:
        """Build a table from raw rows, skipping malformed ones."""
        policies: list[SecurityPolicy] = []
        for record in records:
            try:
                policies.append(SecurityPolicy.from_record(record))
            except (KeyError, ValueError) as e:
                log.warning(
                    "malformed_security_policy_skipped",
                    policy_id=str(record.get("id")),
                    severity=record.get("severity"),
                    action=record.get("action"),
                    error=str(e),
                )
        return cls.from_policies(policies)

    def lookup(
        self,
        severity: Severity,
        event_type: str | None,
        tenant_id: str | None,
    ) -> ThreatAction | None:
        """Return the most specific enabled override, or None."""
        candidates: list[tuple[str | None, str, Severity]] = []
        if tenant_id is not None:
            if event_type:
                candidates.append((tenant_id, event_type, severity))
            candidates.append((tenant_id, ANY_EVENT_TYPE, severity))
        if event_type:
            candidates.append((None, event_type, severity))
        candidates.append((None, ANY_EVENT_TYPE, severity))

        for key in candidates:
            action = self._entries.get(key)
            if action is not None:
                return action
        return None


class PolicySource(Protocol):
    """Anything exposing the current policy table."""

    @property
    def table(self) -> PolicyTable: ...


@dataclass(frozen=True)
class StaticPolicySource:
    """A fixed table, for tests and deployments without a policy store."""

    table: PolicyTable = field(default_factory=PolicyTable.empty)


class ActionPolicy:
    """Map a severity to a remediation action.

    Overrides from the policy source are consulted first; the hard-coded
    :data:`DEFAULT_ACTIONS` mapping is the fallback.
    """

    def __init__(self, source: PolicySource | None = None) -> None:
        self._source: PolicySource = source or StaticPolicySource()

    def determine_action(
        self,
        severity: Severity | str,
        event_type: str | None = None,
        tenant_id: str | None = None,
    ) -> ThreatAction:
        """Return the action for *severity*, honouring tenant/global overrides.

        Raises:
            ValueError: If *severity* is not a known severity name.
        """
        level = Severity.parse(severity)
        # Read the reference once; a concurrent refresh swaps it wholesale
        table = self._source.table
        override = table.lookup(level, event_type, tenant_id)
        if override is not None:
            return override
        return DEFAULT_ACTIONS[level]

    @staticmethod
    def strictest_action(threats: Iterable[DetectedThreat]) -> ThreatAction | None:
        """Return the strictest action across *threats*, or None when empty."""
        actions = [t.action for t in threats]
        if not actions:
            return None
        return max(actions, key=lambda a: a.strictness)


class PolicyCache:
    """Hot-reloadable policy table backed by :class:`SecurityPolicyStorage`."""

    def __init__(self, storage: SecurityPolicyStorage) -> None:
        self._storage = storage
        self._table = PolicyTable.empty()
        self._loaded_at: datetime | None = None

    @property
    def table(self) -> PolicyTable:
        return self._table

    @property
    def loaded_at(self) -> datetime | None:
        return self._loaded_at

    async def refresh(self) -> bool:
        """Reload every policy row and swap in a new table.

        Returns ``True`` on success. On failure the previous table stays in
        place and the error is logged.
        """
        try:
            records = await self._storage.fetch_policy_records()
        except Exception:
            log.exception("policy_cache_refresh_failed", kept_policies=len(self._table))
            return False

        new_table = PolicyTable.from_records(records)
        self._table = new_table
        self._loaded_at = datetime.now(UTC)
        log.info("policy_cache_refreshed", policies=len(new_table))
        return True
