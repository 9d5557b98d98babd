"""Input threat detection and sanitization engine.

Public API
----------
- :class:`ThreatDetector` - scan a field value against the pattern catalog
- :class:`ActionPolicy`, :class:`PolicyCache` - severity to action mapping
- :func:`sanitize` and the ``sanitize_*`` entry points - clean untrusted text
- :class:`SecurityEventRecorder` - log, persist and review security events
- :class:`FieldValidator` - declarative per-field validation
"""

from aether_guard.security.detector import ThreatDetector, highest_severity
from aether_guard.security.events import (
    RequestContext,
    ReviewConflictError,
    SecurityEvent,
    SecurityEventFilters,
    SecurityEventNotFoundError,
    SecurityEventStatus,
    SecuritySummary,
)
from aether_guard.security.models import (
    DEFAULT_OPTIONS,
    PERMISSIVE_OPTIONS,
    STRICT_OPTIONS,
    DetectedThreat,
    SanitizationOptions,
    Severity,
    ThreatAction,
    ThreatCategory,
)
from aether_guard.security.patterns import DEFAULT_CATALOG, PatternCatalog
from aether_guard.security.policy import ActionPolicy, PolicyCache, PolicyTable, SecurityPolicy
from aether_guard.security.recorder import SecurityEventRecorder
from aether_guard.security.sanitizer import sanitize, sanitize_field
from aether_guard.security.screening import ScreeningResult, screen_payload
from aether_guard.security.validator import FieldValidator, ValidationFailedError

__all__ = [
    "DEFAULT_CATALOG",
    "DEFAULT_OPTIONS",
    "PERMISSIVE_OPTIONS",
    "STRICT_OPTIONS",
    "ActionPolicy",
    "DetectedThreat",
    "FieldValidator",
    "PatternCatalog",
    "PolicyCache",
    "PolicyTable",
    "RequestContext",
    "ReviewConflictError",
    "SanitizationOptions",
    "ScreeningResult",
    "SecurityEvent",
    "SecurityEventFilters",
    "SecurityEventNotFoundError",
    "SecurityEventRecorder",
    "SecurityEventStatus",
    "SecurityPolicy",
    "SecuritySummary",
    "Severity",
    "ThreatAction",
    "ThreatCategory",
    "ThreatDetector",
    "ValidationFailedError",
    "highest_severity",
    "sanitize",
    "sanitize_field",
    "screen_payload",
]
