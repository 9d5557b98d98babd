"""Unit tests for declarative field validation."""

from __future__ import annotations

from typing import Any

import pytest
from pydantic import BaseModel, Field

from aether_guard.api.models import (
    DocumentCreateRequest,
    NotebookCreateRequest,
    SearchRequest,
    UserCreateRequest,
)
from aether_guard.security.validator import (
    FieldValidator,
    SafeString,
    ValidationFailedError,
    validation_message,
)

NOTEBOOK_ID = "0b1e4f0c-8d42-4c2a-9a4e-3b1d0f6c2a11"


@pytest.fixture()
def validator(detector) -> FieldValidator:
    return FieldValidator(detector)


def _errors(validator: FieldValidator, schema: type[BaseModel], record: dict[str, Any]):
    result = validator.validate(schema, record)
    assert result.ok is False
    return {e.field: e for e in result.errors}


class TestSafeString:
    def test_script_tag_rejected(self, validator: FieldValidator) -> None:
        errors = _errors(validator, NotebookCreateRequest, {"name": "<script>alert(1)</script>"})

        assert errors["name"].tag == "safe_string"
        assert errors["name"].message == "name contains unsafe characters"
        assert errors["name"].value == "<script>alert(1)</script>"

    def test_sql_injection_rejected(self, validator: FieldValidator) -> None:
        errors = _errors(validator, NotebookCreateRequest, {"name": "x'; DROP TABLE users;--"})
        assert errors["name"].tag == "safe_string"

    def test_low_severity_accepted(self, validator: FieldValidator) -> None:
        # GROUP BY alone is a low severity match
        result = validator.validate(NotebookCreateRequest, {"name": "Sales group by region"})
        assert result.ok is True

    def test_plain_text_accepted(self, validator: FieldValidator) -> None:
        result = validator.validate(NotebookCreateRequest, {"name": "Quarterly planning"})
        assert result.ok is True
        assert result.value is not None
        assert result.value.name == "Quarterly planning"
        assert result.value.visibility == "private"

    def test_works_without_validation_context(self) -> None:
        class Note(BaseModel):
            body: SafeString

        with pytest.raises(ValueError):
            Note.model_validate({"body": "<iframe src=x>"})


class TestTags:
    def test_missing_required_field(self, validator: FieldValidator) -> None:
        errors = _errors(validator, UserCreateRequest, {"username": "alice", "password": "x" * 8})
        assert errors["email"].tag == "required"
        assert errors["email"].message == "email is required"
        assert errors["email"].value is None

    def test_empty_string_is_required(self, validator: FieldValidator) -> None:
        errors = _errors(validator, NotebookCreateRequest, {"name": ""})
        assert errors["name"].tag == "required"

    def test_min_length(self, validator: FieldValidator) -> None:
        errors = _errors(
            validator,
            UserCreateRequest,
            {"email": "a@example.com", "username": "alice", "password": "short"},
        )
        assert errors["password"].tag == "min"
        assert errors["password"].message == "password must be at least 8 characters long"

    def test_max_length(self, validator: FieldValidator) -> None:
        errors = _errors(validator, NotebookCreateRequest, {"name": "n" * 256})
        assert errors["name"].tag == "max"
        assert errors["name"].message == "name must be at most 255 characters long"

    def test_email(self, validator: FieldValidator) -> None:
        errors = _errors(
            validator,
            UserCreateRequest,
            {"email": "not-an-email", "username": "alice", "password": "x" * 8},
        )
        assert errors["email"].tag == "email"
        assert errors["email"].message == "email must be a valid email address"

    def test_username(self, validator: FieldValidator) -> None:
        errors = _errors(
            validator,
            UserCreateRequest,
            {"email": "a@example.com", "username": "a b", "password": "x" * 8},
        )
        assert errors["username"].tag == "username"

    def test_user_status(self, validator: FieldValidator) -> None:
        errors = _errors(
            validator,
            UserCreateRequest,
            {
                "email": "a@example.com",
                "username": "alice",
                "password": "x" * 8,
                "status": "banned",
            },
        )
        assert errors["status"].tag == "user_status"
        assert "active, inactive, suspended, pending" in errors["status"].message

    def test_notebook_fields(self, validator: FieldValidator) -> None:
        errors = _errors(
            validator,
            NotebookCreateRequest,
            {
                "name": "Notes",
                "visibility": "secret",
                "slug": "Not A Slug",
                "color": "red",
                "tags": ["ok", "bad tag!"],
            },
        )
        assert errors["visibility"].tag == "notebook_visibility"
        assert errors["slug"].tag == "slug"
        assert errors["color"].tag == "hexcolor"
        assert errors["tags.1"].tag == "tag"
        assert "tags.0" not in errors

    def test_document_fields(self, validator: FieldValidator) -> None:
        errors = _errors(
            validator,
            DocumentCreateRequest,
            {
                "notebook_id": "nope",
                "filename": "report?.pdf",
                "title": "Report",
                "document_type": "zip",
                "source_url": "javascript:alert(1)",
            },
        )
        assert errors["notebook_id"].tag == "uuid"
        assert errors["filename"].tag == "filename"
        assert errors["document_type"].tag == "document_type"
        assert errors["source_url"].tag == "url"
        assert "title" not in errors

    def test_search_fields(self, validator: FieldValidator) -> None:
        errors = _errors(validator, SearchRequest, {"query": "<b>hi</b>", "limit": 0})
        assert errors["query"].tag == "no_html"
        assert errors["limit"].tag == "gte"
        assert errors["limit"].message == "limit must be greater than or equal to 1"

    def test_valid_document(self, validator: FieldValidator) -> None:
        result = validator.validate(
            DocumentCreateRequest,
            {
                "notebook_id": NOTEBOOK_ID,
                "filename": "Q3 report (final).pdf",
                "title": "Q3 report",
                "document_type": "pdf",
                "source_url": "https://example.com/q3.pdf",
                "tags": ["finance", "q3"],
            },
        )
        assert result.ok is True
        assert result.errors == ()


class TestErrorReporting:
    def test_fields_checked_independently(self, validator: FieldValidator) -> None:
        errors = _errors(
            validator,
            UserCreateRequest,
            {"email": "bad", "username": "x", "password": "y"},
        )
        assert set(errors) == {"email", "username", "password"}

    def test_first_error_per_field(self, validator: FieldValidator) -> None:
        class Profile(BaseModel):
            bio: SafeString = Field(max_length=10)

        result = validator.validate(Profile, {"bio": "<script>alert(1)</script>"})
        assert result.ok is False
        assert len(result.errors) == 1
        assert result.errors[0].field == "bio"

    def test_to_dict(self, validator: FieldValidator) -> None:
        result = validator.validate(NotebookCreateRequest, {})
        assert result.errors[0].to_dict() == {
            "field": "name",
            "tag": "required",
            "message": "name is required",
            "value": None,
        }

    def test_validate_or_raise(self, validator: FieldValidator) -> None:
        with pytest.raises(ValidationFailedError) as exc_info:
            validator.validate_or_raise(NotebookCreateRequest, {"name": "<script>x</script>"})
        assert [e.field for e in exc_info.value.errors] == ["name"]
        assert "name" in str(exc_info.value)

        model = validator.validate_or_raise(NotebookCreateRequest, {"name": "Ideas"})
        assert isinstance(model, NotebookCreateRequest)

    def test_unknown_tag_message(self) -> None:
        assert validation_message("field", "mystery") == "field is invalid"
