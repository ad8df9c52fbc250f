"""
Bookflow Backend — Catalog Schemas
====================================

What:  Request schemas and response DTOs for authors, works, editions and
       the OpenLibrary import endpoints.
Why:   Keeps the wire contract (field names, messages, defaults) in one
       place, separate from the ORM models.
How:   Request schemas validate with `mode="before"` checks from common.py so
       each failure carries its exact message. DTOs are built straight from
       ORM rows with `from_attributes=True`.

Manual vs. Imported:
    Manual create commands insist on `manual: true`; the store's check
    constraints pair that flag with an owner and a NULL openlibrary_id.
    Import commands accept only the short OpenLibrary id ("OL23919A"), never
    the key form ("/authors/OL23919A").
"""

import re
import uuid
from datetime import date, datetime
from typing import Any, List, Literal, Optional
from urllib.parse import urlsplit

from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator

from bookflow.schemas.common import (
    RequestSchema,
    check_enum,
    check_int_range,
    check_literal_true,
    check_optional_trimmed,
    check_page,
    check_str,
    check_trimmed_text,
    check_uuid,
    coerce_query_number,
    fail,
)

ISO_DATE_PATTERN = re.compile(r"^[0-9]{4}-[0-9]{2}-[0-9]{2}$")
ISBN13_PATTERN = re.compile(r"^[0-9]{13}$")

WORK_SORTS = ("published_desc", "title_asc")
WorkSort = Literal["published_desc", "title_asc"]

MIN_YEAR = 1500
MAX_YEAR = 2100


# ══════════════════════════════════════════════════════════════════════════
# Field Checks
# ══════════════════════════════════════════════════════════════════════════


def check_openlibrary_id(value: Any, key_prefix: str, example: str) -> str:
    """
    Short-form OpenLibrary id: 1-25 characters, trimmed, no leading slash.

    `key_prefix` is the entity's key path ("/authors/") and `example` the id
    used in the error text ("OL23919A").
    """
    text = check_str(value, "openlibrary_id")
    if len(text) < 1:
        fail("openlibrary_id is required", "too_short")
    if len(text) > 25:
        fail("openlibrary_id cannot exceed 25 characters", "too_long")
    trimmed = text.strip()
    if not trimmed:
        fail("openlibrary_id cannot be empty after trimming", "too_short")
    if trimmed.startswith(key_prefix):
        fail(
            f"openlibrary_id must be in short format (e.g., '{example}'), "
            f"not long format (e.g., '{key_prefix}{example}')"
        )
    if trimmed.startswith("/"):
        fail(
            f"openlibrary_id must be in short format (e.g., '{example}'), "
            "not long format with leading slash"
        )
    return trimmed


def check_year(value: Any, name: str) -> int:
    return check_int_range(value, name, MIN_YEAR, MAX_YEAR)


def check_iso_date(value: Any) -> date:
    if not isinstance(value, str):
        fail("publish_date must be a string", "string_type")
    if not ISO_DATE_PATTERN.match(value):
        fail("publish_date must be in YYYY-MM-DD format")
    try:
        return date.fromisoformat(value)
    except ValueError:
        fail("publish_date must be a valid date")


def check_url(value: Any, message: str) -> str:
    if not isinstance(value, str):
        fail(message, "url_type")
    parts = urlsplit(value)
    if not parts.scheme or not (parts.netloc or parts.path):
        fail(message, "url_parsing")
    return value


# ══════════════════════════════════════════════════════════════════════════
# Path Parameters
# ══════════════════════════════════════════════════════════════════════════


class AuthorIdParams(RequestSchema):
    author_id: str = Field(alias="authorId")

    @field_validator("author_id", mode="before")
    @classmethod
    def validate_author_id(cls, value: Any) -> str:
        return check_uuid(value, "authorId must be a valid UUID")


class WorkIdParams(RequestSchema):
    work_id: str = Field(alias="workId")

    @field_validator("work_id", mode="before")
    @classmethod
    def validate_work_id(cls, value: Any) -> str:
        return check_uuid(value, "workId must be a valid UUID")


# ══════════════════════════════════════════════════════════════════════════
# Manual Create Commands
# ══════════════════════════════════════════════════════════════════════════


class CreateAuthorCommand(RequestSchema):
    """POST /api/authors: a manual author owned by the caller."""

    required_messages = {
        "name": "Name is required",
        "manual": "Manual must be true for manual authors",
    }

    name: str
    manual: bool
    openlibrary_id: None = None

    @field_validator("name", mode="before")
    @classmethod
    def validate_name(cls, value: Any) -> str:
        return check_trimmed_text(value, "Name", max_length=500)

    @field_validator("manual", mode="before")
    @classmethod
    def validate_manual(cls, value: Any) -> bool:
        return check_literal_true(value, "Manual must be true for manual authors")

    @field_validator("openlibrary_id", mode="before")
    @classmethod
    def validate_openlibrary_id(cls, value: Any) -> None:
        if value is not None:
            fail("openlibrary_id must be null for manual authors")
        return None


class CreateWorkCommand(RequestSchema):
    """POST /api/works: a manual work linked to one or more authors."""

    required_messages = {
        "title": "Title is required",
        "manual": "Manual must be true for manual works",
        "author_ids": "author_ids is required",
    }

    title: str
    manual: bool
    author_ids: List[str]
    first_publish_year: Optional[int] = None
    primary_edition_id: Optional[str] = None

    @field_validator("title", mode="before")
    @classmethod
    def validate_title(cls, value: Any) -> str:
        return check_trimmed_text(value, "Title", max_length=500)

    @field_validator("manual", mode="before")
    @classmethod
    def validate_manual(cls, value: Any) -> bool:
        return check_literal_true(value, "Manual must be true for manual works")

    @field_validator("author_ids", mode="before")
    @classmethod
    def validate_author_ids(cls, value: Any) -> List[str]:
        if not isinstance(value, list):
            fail("author_ids must be an array", "list_type")
        for item in value:
            check_uuid(item, "Each author_id must be a valid UUID")
        if len(value) < 1:
            fail("At least one author is required", "too_short")
        return value

    @field_validator("first_publish_year", mode="before")
    @classmethod
    def validate_first_publish_year(cls, value: Any) -> int:
        return check_year(value, "first_publish_year")

    @field_validator("primary_edition_id", mode="before")
    @classmethod
    def validate_primary_edition_id(cls, value: Any) -> str:
        return check_uuid(value, "primary_edition_id must be a valid UUID")


class CreateEditionCommand(RequestSchema):
    """POST /api/editions: a manual edition of an existing work."""

    required_messages = {
        "title": "Title is required",
        "manual": "Manual must be true for manual editions",
    }

    work_id: str
    title: str
    manual: bool
    publish_year: Optional[int] = None
    publish_date: Optional[date] = None
    publish_date_raw: Optional[str] = None
    isbn13: Optional[str] = None
    cover_url: Optional[str] = None
    language: Optional[str] = None

    @field_validator("work_id", mode="before")
    @classmethod
    def validate_work_id(cls, value: Any) -> str:
        return check_uuid(value, "work_id must be a valid UUID")

    @field_validator("title", mode="before")
    @classmethod
    def validate_title(cls, value: Any) -> str:
        return check_trimmed_text(value, "Title", max_length=500)

    @field_validator("manual", mode="before")
    @classmethod
    def validate_manual(cls, value: Any) -> bool:
        return check_literal_true(value, "Manual must be true for manual editions")

    @field_validator("publish_year", mode="before")
    @classmethod
    def validate_publish_year(cls, value: Any) -> int:
        return check_year(value, "publish_year")

    @field_validator("publish_date", mode="before")
    @classmethod
    def validate_publish_date(cls, value: Any) -> date:
        return check_iso_date(value)

    @field_validator("publish_date_raw", "language", mode="before")
    @classmethod
    def validate_optional_text(cls, value: Any, info: ValidationInfo) -> str:
        return check_optional_trimmed(value, info.field_name)

    @field_validator("isbn13", mode="before")
    @classmethod
    def validate_isbn13(cls, value: Any) -> str:
        if not isinstance(value, str) or not ISBN13_PATTERN.match(value):
            fail("isbn13 must be 13 digits")
        return value

    @field_validator("cover_url", mode="before")
    @classmethod
    def validate_cover_url(cls, value: Any) -> str:
        return check_url(value, "cover_url must be a valid URL")


class SetPrimaryEditionCommand(RequestSchema):
    edition_id: str

    @field_validator("edition_id", mode="before")
    @classmethod
    def validate_edition_id(cls, value: Any) -> str:
        return check_uuid(value, "edition_id must be a valid UUID")


# ══════════════════════════════════════════════════════════════════════════
# OpenLibrary Import Commands
# ══════════════════════════════════════════════════════════════════════════


class ImportAuthorCommand(RequestSchema):
    required_messages = {"openlibrary_id": "openlibrary_id is required"}

    openlibrary_id: str

    @field_validator("openlibrary_id", mode="before")
    @classmethod
    def validate_openlibrary_id(cls, value: Any) -> str:
        return check_openlibrary_id(value, "/authors/", "OL23919A")


class ImportWorkCommand(RequestSchema):
    required_messages = {"openlibrary_id": "openlibrary_id is required"}

    openlibrary_id: str
    author_id: str

    @field_validator("openlibrary_id", mode="before")
    @classmethod
    def validate_openlibrary_id(cls, value: Any) -> str:
        return check_openlibrary_id(value, "/works/", "OL123W")

    @field_validator("author_id", mode="before")
    @classmethod
    def validate_author_id(cls, value: Any) -> str:
        return check_uuid(value, "author_id must be a valid UUID")


class ImportEditionCommand(RequestSchema):
    required_messages = {"openlibrary_id": "openlibrary_id is required"}

    openlibrary_id: str
    work_id: str

    @field_validator("openlibrary_id", mode="before")
    @classmethod
    def validate_openlibrary_id(cls, value: Any) -> str:
        return check_openlibrary_id(value, "/books/", "OL123M")

    @field_validator("work_id", mode="before")
    @classmethod
    def validate_work_id(cls, value: Any) -> str:
        return check_uuid(value, "work_id must be a valid UUID")


# ══════════════════════════════════════════════════════════════════════════
# Query Strings
# ══════════════════════════════════════════════════════════════════════════


class AuthorWorksListQuery(RequestSchema):
    """GET /api/authors/{authorId}/works?page&sort&forceRefresh"""

    page: Optional[int] = None
    sort: Optional[WorkSort] = None
    force_refresh: Optional[bool] = Field(default=None, alias="forceRefresh")

    @field_validator("page", mode="before")
    @classmethod
    def validate_page(cls, value: Any) -> Optional[int]:
        return check_page(value)

    @field_validator("sort", mode="before")
    @classmethod
    def validate_sort(cls, value: Any) -> str:
        return check_enum(value, WORK_SORTS)

    @field_validator("force_refresh", mode="before")
    @classmethod
    def validate_force_refresh(cls, value: Any) -> bool:
        if isinstance(value, str):
            normalized = value.strip().lower()
            if normalized == "true":
                return True
            if normalized == "false":
                return False
        if not isinstance(value, bool):
            fail("forceRefresh must be a boolean", "bool_type")
        return value


class AuthorSearchQuery(RequestSchema):
    """GET /api/authors/search?q&limit"""

    required_messages = {"q": "Search query is required"}

    q: str
    limit: int = 10

    @field_validator("q", mode="before")
    @classmethod
    def validate_q(cls, value: Any) -> str:
        if value is None:
            fail("Search query is required", "missing")
        text = check_str(value, "q")
        if len(text) < 1:
            fail("Search query is required", "too_short")
        if len(text) > 200:
            fail("Search query cannot exceed 200 characters", "too_long")
        trimmed = text.strip()
        if not trimmed:
            fail("Search query cannot be empty after trimming", "too_short")
        return trimmed

    @field_validator("limit", mode="before")
    @classmethod
    def validate_limit(cls, value: Any) -> int:
        number = coerce_query_number(value, "Limit")
        if number is None:
            return 10
        if number < 1:
            fail("Limit must be at least 1", "too_small")
        if number > 50:
            fail("Limit cannot exceed 50", "too_big")
        return int(number)


# ══════════════════════════════════════════════════════════════════════════
# Response DTOs
# ══════════════════════════════════════════════════════════════════════════


class AuthorDto(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    name: str
    openlibrary_id: Optional[str] = None
    ol_fetched_at: Optional[datetime] = None
    ol_expires_at: Optional[datetime] = None
    manual: bool
    owner_user_id: Optional[uuid.UUID] = None
    created_at: datetime
    updated_at: datetime


class AuthorSearchResultDto(BaseModel):
    """One search hit; `id` is present only when the author is cached."""

    id: Optional[uuid.UUID] = None
    openlibrary_id: str
    name: str
    ol_fetched_at: Optional[datetime] = None
    ol_expires_at: Optional[datetime] = None


class EditionDto(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    work_id: uuid.UUID
    title: str
    openlibrary_id: Optional[str] = None
    publish_year: Optional[int] = None
    publish_date: Optional[date] = None
    publish_date_raw: Optional[str] = None
    isbn13: Optional[str] = None
    cover_url: Optional[str] = None
    language: Optional[str] = None
    manual: bool
    owner_user_id: Optional[uuid.UUID] = None
    created_at: datetime
    updated_at: datetime


class PrimaryEditionSummary(BaseModel):
    """The subset of edition columns embedded in work responses."""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    title: str
    openlibrary_id: Optional[str] = None
    publish_year: Optional[int] = None
    publish_date: Optional[date] = None
    publish_date_raw: Optional[str] = None
    isbn13: Optional[str] = None
    cover_url: Optional[str] = None
    language: Optional[str] = None


class WorkDto(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    title: str
    openlibrary_id: Optional[str] = None
    first_publish_year: Optional[int] = None
    primary_edition_id: Optional[uuid.UUID] = None
    manual: bool
    owner_user_id: Optional[uuid.UUID] = None
    created_at: datetime
    updated_at: datetime
    primary_edition: Optional[PrimaryEditionSummary] = None


class WorkListItemDto(WorkDto):
    """
    A work in an author's list.

    `publish_year` is the primary edition's year, falling back to the work's
    first publish year.
    """

    publish_year: Optional[int] = None
