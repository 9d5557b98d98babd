"""Declarative field validation built on pydantic v2 annotated types.

Each rule is an ``Annotated[str, AfterValidator(...)]`` type that raises a
:class:`PydanticCustomError` whose ``type`` is the rule tag. Request schemas
compose these types with ``Field(min_length=..., max_length=...)``.

``SafeString`` consults the threat detector passed through the validation
context (``{"detector": ThreatDetector}``); it rejects, it never cleans.
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Annotated, Any, Generic, TypeVar
from urllib.parse import urlsplit
from uuid import UUID

from pydantic import AfterValidator, BaseModel, ValidationError, ValidationInfo
from pydantic_core import PydanticCustomError

from aether_guard.security.detector import ThreatDetector, highest_severity
from aether_guard.security.models import Severity

ModelT = TypeVar("ModelT", bound=BaseModel)

# Severity at which SafeString rejects a value
SAFE_STRING_THRESHOLD = Severity.MEDIUM

_USERNAME_PATTERN = re.compile(r"^[a-zA-Z0-9_\-.]{3,50}$")
_TAG_PATTERN = re.compile(r"^[a-zA-Z0-9_\-]{1,50}$")
_FILENAME_PATTERN = re.compile(r"^[a-zA-Z0-9_\-.\s()]{1,255}$")
_SLUG_PATTERN = re.compile(r"^[a-z0-9\-]+$")
_HEX_COLOR_PATTERN = re.compile(r"^#[0-9a-fA-F]{6}$")
_EMAIL_PATTERN = re.compile(
    r"^[A-Za-z0-9._%+\-]+@[A-Za-z0-9\-]+(?:\.[A-Za-z0-9\-]+)*\.[A-Za-z]{2,}$"
)

NOTEBOOK_VISIBILITIES = ("private", "public", "shared")
USER_STATUSES = ("active", "inactive", "suspended", "pending")
DOCUMENT_TYPES = (
    "pdf",
    "document",
    "spreadsheet",
    "presentation",
    "text",
    "csv",
    "json",
    "xml",
    "image",
    "video",
    "audio",
    "unknown",
)


def _detector_from(info: ValidationInfo) -> ThreatDetector:
    context = info.context
    if isinstance(context, Mapping):
        detector = context.get("detector")
        if isinstance(detector, ThreatDetector):
            return detector
    return ThreatDetector()


def _check_safe_string(value: str, info: ValidationInfo) -> str:
    threats = _detector_from(info).detect(value, info.field_name or "")
    severity = highest_severity(threats)
    if severity is not None and severity >= SAFE_STRING_THRESHOLD:
        raise PydanticCustomError(
            "safe_string",
            "value contains a {severity} severity threat",
            {"severity": severity.value},
        )
    return value


def _pattern_rule(tag: str, pattern: re.Pattern[str], description: str) -> AfterValidator:
    def check(value: str) -> str:
        if not pattern.fullmatch(value):
            raise PydanticCustomError(tag, description)
        return value

    return AfterValidator(check)


def _one_of_rule(tag: str, allowed: tuple[str, ...]) -> AfterValidator:
    def check(value: str) -> str:
        if value not in allowed:
            raise PydanticCustomError(
                tag,
                "value must be one of: {allowed}",
                {"allowed": ", ".join(allowed)},
            )
        return value

    return AfterValidator(check)


def _check_no_html(value: str) -> str:
    if "<" in value or ">" in value:
        raise PydanticCustomError("no_html", "value cannot contain HTML tags")
    return value


def _check_email(value: str) -> str:
    if not _EMAIL_PATTERN.fullmatch(value):
        raise PydanticCustomError("email", "value is not a valid email address")
    return value


def _check_url(value: str) -> str:
    try:
        parts = urlsplit(value)
    except ValueError:
        parts = None
    if parts is None or parts.scheme not in ("http", "https") or not parts.netloc:
        raise PydanticCustomError("url", "value is not a valid http(s) URL")
    return value


def _check_uuid(value: str) -> str:
    try:
        UUID(value)
    except ValueError:
        raise PydanticCustomError("uuid", "value is not a valid UUID") from None
    return value


SafeString = Annotated[str, AfterValidator(_check_safe_string)]
Username = Annotated[str, _pattern_rule("username", _USERNAME_PATTERN, "invalid username")]
Tag = Annotated[str, _pattern_rule("tag", _TAG_PATTERN, "invalid tag")]
Filename = Annotated[str, _pattern_rule("filename", _FILENAME_PATTERN, "invalid filename")]
Slug = Annotated[str, _pattern_rule("slug", _SLUG_PATTERN, "invalid slug")]
HexColor = Annotated[str, _pattern_rule("hexcolor", _HEX_COLOR_PATTERN, "invalid hex color")]
NotebookVisibility = Annotated[str, _one_of_rule("notebook_visibility", NOTEBOOK_VISIBILITIES)]
UserStatus = Annotated[str, _one_of_rule("user_status", USER_STATUSES)]
DocumentType = Annotated[str, _one_of_rule("document_type", DOCUMENT_TYPES)]
NoHTML = Annotated[str, AfterValidator(_check_no_html)]
EmailAddress = Annotated[str, AfterValidator(_check_email)]
URLString = Annotated[str, AfterValidator(_check_url)]
UUIDString = Annotated[str, AfterValidator(_check_uuid)]


# ---------------------------------------------------------------------------
# Error reporting
# ---------------------------------------------------------------------------

_PYDANTIC_TAGS = {
    "missing": "required",
    "string_too_short": "min",
    "string_too_long": "max",
    "too_short": "min",
    "too_long": "max",
    "string_type": "type",
    "int_type": "type",
    "int_parsing": "type",
    "bool_type": "type",
    "bool_parsing": "type",
    "list_type": "type",
    "literal_error": "oneof",
    "enum": "oneof",
    "uuid_type": "uuid",
    "uuid_parsing": "uuid",
    "greater_than_equal": "gte",
    "less_than_equal": "lte",
}

_MESSAGES = {
    "required": "{field} is required",
    "email": "{field} must be a valid email address",
    "min": "{field} must be at least {param} characters long",
    "max": "{field} must be at most {param} characters long",
    "oneof": "{field} must be one of: {param}",
    "uuid": "{field} must be a valid UUID",
    "url": "{field} must be a valid URL",
    "type": "{field} has an invalid type",
    "gte": "{field} must be greater than or equal to {param}",
    "lte": "{field} must be less than or equal to {param}",
    "slug": "{field} must be a valid slug (lowercase letters, numbers, and hyphens only)",
    "username": (
        "{field} must be 3-50 characters and contain only letters, numbers, "
        "dots, hyphens, and underscores"
    ),
    "filename": "{field} contains invalid characters or is too long",
    "hexcolor": "{field} must be a valid hex color (e.g., #FF0000)",
    "no_html": "{field} cannot contain HTML tags",
    "safe_string": "{field} contains unsafe characters",
    "tag": (
        "{field} must be 1-50 characters and contain only letters, numbers, "
        "hyphens, and underscores"
    ),
    "notebook_visibility": "{field} must be one of: private, public, shared",
    "user_status": "{field} must be one of: active, inactive, suspended, pending",
    "document_type": "{field} must be a valid document type",
}

_PARAM_KEYS = ("min_length", "max_length", "expected", "ge", "le")


def validation_message(field_name: str, tag: str, param: Any = None) -> str:  # noqa: ANN401
    """Human-readable message for a failed rule."""
    template = _MESSAGES.get(tag)
    if template is None:
        return f"{field_name} is invalid"
    return template.format(field=field_name, param=param)


@dataclass(frozen=True)
class FieldError:
    """First violated constraint of one field."""

    field: str
    tag: str
    message: str
    value: Any = None

    def to_dict(self) -> dict[str, Any]:
        return {"field": self.field, "tag": self.tag, "message": self.message, "value": self.value}


@dataclass(frozen=True)
class ValidationResult(Generic[ModelT]):
    ok: bool
    value: ModelT | None = None
    errors: tuple[FieldError, ...] = field(default_factory=tuple)


class ValidationFailedError(Exception):
    """Raised by :meth:`FieldValidator.validate_or_raise`."""

    def __init__(self, errors: tuple[FieldError, ...] | list[FieldError]) -> None:
        self.errors = tuple(errors)
        fields = ", ".join(e.field for e in self.errors)
        super().__init__(f"Validation failed for: {fields}")


def _field_errors(exc: ValidationError) -> tuple[FieldError, ...]:
    errors: dict[str, FieldError] = {}
    for error in exc.errors():
        name = ".".join(str(part) for part in error["loc"]) or "__root__"
        if name in errors:
            continue
        tag = _PYDANTIC_TAGS.get(error["type"], error["type"])
        value = error.get("input")
        if tag == "min" and value == "":
            tag = "required"
        ctx = error.get("ctx") or {}
        param = next((ctx[k] for k in _PARAM_KEYS if k in ctx), None)
        errors[name] = FieldError(
            field=name,
            tag=tag,
            message=validation_message(name, tag, param),
            value=None if tag == "required" else value,
        )
    return tuple(errors.values())


class FieldValidator:
    """Validate raw records against pydantic request schemas.

    Each failing field reports its first violated constraint; fields are
    checked independently.
    """

    def __init__(self, detector: ThreatDetector | None = None) -> None:
        self._detector = detector or ThreatDetector()

    @property
    def detector(self) -> ThreatDetector:
        return self._detector

    def validate(
        self,
        schema: type[ModelT],
        record: Mapping[str, Any],
    ) -> ValidationResult[ModelT]:
        try:
            value = schema.model_validate(dict(record), context={"detector": self._detector})
        except ValidationError as exc:
            return ValidationResult(ok=False, errors=_field_errors(exc))
        return ValidationResult(ok=True, value=value)

    def validate_or_raise(self, schema: type[ModelT], record: Mapping[str, Any]) -> ModelT:
        """Return the validated model.

        Raises:
            ValidationFailedError: If any field fails.
        """
        result = self.validate(schema, record)
        if not result.ok or result.value is None:
            raise ValidationFailedError(result.errors)
        return result.value
