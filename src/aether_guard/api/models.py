"""Pydantic request models for the guard API."""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field, field_validator

from aether_guard.security.models import Severity, ThreatAction
from aether_guard.security.policy import ANY_EVENT_TYPE
from aether_guard.security.validator import (
    DocumentType,
    EmailAddress,
    Filename,
    HexColor,
    NoHTML,
    NotebookVisibility,
    SafeString,
    Slug,
    Tag,
    URLString,
    UserStatus,
    Username,
    UUIDString,
)

# ---------------------------------------------------------------------------
# Security event models
# ---------------------------------------------------------------------------


class SecurityEventReviewRequest(BaseModel):
    """Request body for reviewing a security event."""

    status: Literal["approved", "rejected", "false_positive"]
    review_notes: str | None = Field(default=None, max_length=2000)


class SecurityEventResourceRequest(BaseModel):
    """Request body linking a request's security events to the resource it created."""

    request_id: str = Field(min_length=1, max_length=255)
    resource_id: str = Field(min_length=1, max_length=255)
    resource_type: str = Field(min_length=1, max_length=50)


class SecurityPolicyUpdate(BaseModel):
    """Request body for creating or replacing a policy override."""

    severity: Severity
    action: ThreatAction
    event_type: str = Field(default=ANY_EVENT_TYPE, min_length=1, max_length=50)
    tenant_id: str | None = Field(default=None, max_length=255)
    enabled: bool = True

    @field_validator("severity", mode="before")
    @classmethod
    def _parse_severity(cls, v: object) -> object:
        return Severity.parse(v) if isinstance(v, str) else v

    @field_validator("action", mode="before")
    @classmethod
    def _parse_action(cls, v: object) -> object:
        # Accept the verb forms used by stored policy rows
        return ThreatAction.parse(v) if isinstance(v, str) else v


# ---------------------------------------------------------------------------
# Request schemas exposed through /api/v1/validate/{schema}
# ---------------------------------------------------------------------------


class UserCreateRequest(BaseModel):
    """Registration payload."""

    email: EmailAddress = Field(max_length=255)
    username: Username
    password: str = Field(min_length=8, max_length=128)
    display_name: SafeString | None = Field(default=None, max_length=100)
    status: UserStatus = "pending"


class NotebookCreateRequest(BaseModel):
    """Notebook creation payload."""

    name: SafeString = Field(min_length=1, max_length=255)
    description: SafeString | None = Field(default=None, max_length=2000)
    visibility: NotebookVisibility = "private"
    slug: Slug | None = Field(default=None, max_length=100)
    color: HexColor | None = None
    tags: list[Tag] = Field(default_factory=list, max_length=50)


class DocumentCreateRequest(BaseModel):
    """Document metadata payload (file bytes are uploaded separately)."""

    notebook_id: UUIDString
    filename: Filename
    title: SafeString = Field(min_length=1, max_length=255)
    description: SafeString | None = Field(default=None, max_length=2000)
    document_type: DocumentType = "unknown"
    source_url: URLString | None = Field(default=None, max_length=2048)
    tags: list[Tag] = Field(default_factory=list, max_length=50)


class SearchRequest(BaseModel):
    """Full-text search payload."""

    query: NoHTML = Field(min_length=1, max_length=500)
    notebook_id: UUIDString | None = None
    document_type: DocumentType | None = None
    limit: int = Field(default=20, ge=1, le=100)
    offset: int = Field(default=0, ge=0)


VALIDATION_SCHEMAS: dict[str, type[BaseModel]] = {
    "user": UserCreateRequest,
    "notebook": NotebookCreateRequest,
    "document": DocumentCreateRequest,
    "search": SearchRequest,
}
