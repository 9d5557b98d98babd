"""Screen a decoded JSON payload: detect threats and sanitize every string.

Keys and string values are both scanned. Threats carry the dotted path of
the field (``user.email``, ``tags[2]``); sanitization picks its entry point
from the innermost key name, so every element of ``tags`` goes through
:func:`sanitize_tag`.

``file_content`` is never sanitized. When a sibling ``mime_type`` names a
text format the base64 payload is decoded and scanned as
``file_content_decoded``, so a script inside an uploaded text file is
treated like one in any other field. Binary uploads are not scanned.

Two keys that sanitize to the same name keep the first value; later ones
are still scanned, then dropped.
"""

from __future__ import annotations

import base64
import binascii
from dataclasses import dataclass, field
from typing import Any

from aether_guard.logging import get_logger
from aether_guard.security.detector import ThreatDetector
from aether_guard.security.models import DEFAULT_OPTIONS, DetectedThreat, ThreatAction
from aether_guard.security.sanitizer import PASSTHROUGH_FIELDS, sanitize, sanitize_field

log = get_logger("aether_guard.security.screening")

FILE_CONTENT_FIELD = "file_content"
MIME_TYPE_FIELD = "mime_type"
DECODED_CONTENT_FIELD = "file_content_decoded"

_TEXT_MIME_TYPES = frozenset({"application/json", "application/xml", "application/javascript"})


def is_text_mime_type(mime_type: str) -> bool:
    """True for ``text/*`` and the JSON, XML and JavaScript media types."""
    essence = mime_type.split(";", 1)[0].strip().lower()
    return essence.startswith("text/") or essence in _TEXT_MIME_TYPES


def decode_text_upload(encoded: str) -> str | None:
    """Decode a base64 upload to text, or return None if it is not valid base64."""
    try:
        raw = base64.b64decode(encoded, validate=True)
    except (binascii.Error, ValueError):
        return None
    return raw.decode("utf-8", errors="replace")


@dataclass
class ScreeningResult:
    sanitized: Any
    threats: list[DetectedThreat] = field(default_factory=list)

    @property
    def isolated(self) -> bool:
        return any(t.action == ThreatAction.ISOLATED for t in self.threats)


def _join(path: str, key: str) -> str:
    return f"{path}.{key}" if path else key


def screen_payload(
    payload: Any,  # noqa: ANN401
    detector: ThreatDetector | None = None,
    *,
    tenant_id: str | None = None,
) -> ScreeningResult:
    """Return a sanitized copy of *payload* plus every threat found in it.

    Without a *detector* only sanitization runs.
    """
    threats: list[DetectedThreat] = []

    def scan(text: str, field_name: str) -> None:
        if detector is not None:
            threats.extend(detector.detect(text, field_name, tenant_id=tenant_id))

    def scan_upload(obj: dict[Any, Any], path: str) -> None:
        content = obj.get(FILE_CONTENT_FIELD)
        mime_type = obj.get(MIME_TYPE_FIELD)
        if detector is None or not isinstance(content, str) or not content:
            return
        if not isinstance(mime_type, str) or not is_text_mime_type(mime_type):
            return
        decoded = decode_text_upload(content)
        if decoded is None:
            log.warning("file_content_decode_failed", mime_type=mime_type, path=path or None)
            return
        before = len(threats)
        scan(decoded, _join(path, DECODED_CONTENT_FIELD))
        if len(threats) > before:
            log.warning(
                "file_content_threats_detected",
                mime_type=mime_type,
                threat_count=len(threats) - before,
            )

    def walk(value: Any, path: str, name: str) -> Any:  # noqa: ANN401
        if isinstance(value, dict):
            scan_upload(value, path)
            cleaned: dict[str, Any] = {}
            for raw_key, item in value.items():
                key = str(raw_key)
                child = _join(path, key)
                scan(key, child)
                clean_key = sanitize(key, DEFAULT_OPTIONS)
                clean_item = walk(item, child, key)
                if clean_key in cleaned:
                    log.warning("screening_key_collision", path=child, sanitized_key=clean_key)
                    continue
                cleaned[clean_key] = clean_item
            return cleaned
        if isinstance(value, list):
            return [walk(item, f"{path}[{i}]", name) for i, item in enumerate(value)]
        if isinstance(value, str):
            if name in PASSTHROUGH_FIELDS:
                return value
            scan(value, path or name)
            return sanitize_field(name, value)
        return value

    sanitized = walk(payload, "", "")
    return ScreeningResult(sanitized=sanitized, threats=threats)


def sanitize_record(record: Any) -> Any:  # noqa: ANN401
    """Sanitize every string in *record* by field name, without detection."""
    return screen_payload(record).sanitized
