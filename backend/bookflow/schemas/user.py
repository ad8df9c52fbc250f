"""
Bookflow Backend — User Shelf Schemas
=======================================

What:  Request schemas and DTOs for /api/user: the profile, the authors a
       user follows, and the works on their shelf.
Why:   Shelf updates are strict (unknown keys are rejected) because a typo
       in a field name would otherwise silently update nothing.

Update Refinement:
    Single and bulk updates must change at least one of `status` /
    `available_in_legimi`. The failure is reported once, on the path
    ["status", "available_in_legimi"].
"""

import uuid
from datetime import datetime
from typing import Any, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, field_validator, model_validator
from pydantic_core import PydanticCustomError

from bookflow.models.user import UserWorkStatus
from bookflow.schemas.catalog import WORK_SORTS, AuthorDto, WorkDto, WorkSort
from bookflow.schemas.common import (
    RequestSchema,
    StrictRequestSchema,
    check_bool_or_null,
    check_enum,
    check_page,
    check_search,
    check_uuid,
    check_work_ids,
    fail,
)

STATUSES = tuple(status.value for status in UserWorkStatus)
AUTHOR_SORTS = ("name_asc", "created_desc")
AuthorSort = Literal["name_asc", "created_desc"]

UPDATE_REQUIRED = "At least one of 'status' or 'available_in_legimi' must be provided"
UPDATE_PATH = ["status", "available_in_legimi"]


# ══════════════════════════════════════════════════════════════════════════
# Commands
# ══════════════════════════════════════════════════════════════════════════


class AttachUserAuthorCommand(RequestSchema):
    author_id: str

    @field_validator("author_id", mode="before")
    @classmethod
    def validate_author_id(cls, value: Any) -> str:
        return check_uuid(value, "author_id must be a valid UUID")


class _StatusUpdateFields(StrictRequestSchema):
    """`status` / `available_in_legimi`, at least one of which must be sent."""

    status: Optional[UserWorkStatus] = None
    available_in_legimi: Optional[bool] = None

    @field_validator("status", mode="before")
    @classmethod
    def validate_status(cls, value: Any) -> str:
        return check_enum(value, STATUSES)

    @field_validator("available_in_legimi", mode="before")
    @classmethod
    def validate_available(cls, value: Any) -> Optional[bool]:
        return check_bool_or_null(value, "available_in_legimi")

    @model_validator(mode="after")
    def require_one_change(self):
        # available_in_legimi=null is a real change, so test presence, not value
        if not {"status", "available_in_legimi"} & self.model_fields_set:
            raise PydanticCustomError("custom", UPDATE_REQUIRED, {"path": UPDATE_PATH})
        return self

    def changes(self) -> dict:
        """The columns this update sets, keyed by column name."""
        return self.model_dump(include={"status", "available_in_legimi"}, exclude_unset=True)


class UpdateUserWorkCommand(_StatusUpdateFields):
    """PATCH /api/user/works/{workId}"""


class UpdateUserWorksBulkCommand(_StatusUpdateFields):
    """POST /api/user/works/status-bulk"""

    required_messages = {"work_ids": "work_ids is required"}

    work_ids: List[str]

    @field_validator("work_ids", mode="before")
    @classmethod
    def validate_work_ids(cls, value: Any) -> List[str]:
        return check_work_ids(value)


class BulkAttachUserWorksCommand(StrictRequestSchema):
    """POST /api/user/works/bulk"""

    required_messages = {"work_ids": "work_ids is required"}

    work_ids: List[str]
    status: Optional[UserWorkStatus] = None

    @field_validator("work_ids", mode="before")
    @classmethod
    def validate_work_ids(cls, value: Any) -> List[str]:
        return check_work_ids(value)

    @field_validator("status", mode="before")
    @classmethod
    def validate_status(cls, value: Any) -> str:
        return check_enum(value, STATUSES)


# ══════════════════════════════════════════════════════════════════════════
# Query Strings
# ══════════════════════════════════════════════════════════════════════════


class UserAuthorsListQuery(RequestSchema):
    page: Optional[int] = None
    search: Optional[str] = None
    sort: Optional[AuthorSort] = None

    @field_validator("page", mode="before")
    @classmethod
    def validate_page(cls, value: Any) -> Optional[int]:
        return check_page(value)

    @field_validator("search", mode="before")
    @classmethod
    def validate_search(cls, value: Any) -> str:
        return check_search(value)

    @field_validator("sort", mode="before")
    @classmethod
    def validate_sort(cls, value: Any) -> str:
        return check_enum(value, AUTHOR_SORTS)


class UserWorksListQuery(RequestSchema):
    """
    GET /api/user/works

    `available` distinguishes "not filtering" (absent) from "filter on NULL"
    (`available=null`); check `"available" in query.model_fields_set`.
    """

    page: Optional[int] = None
    status: Optional[List[UserWorkStatus]] = None
    available: Optional[bool] = None
    sort: Optional[WorkSort] = None
    author_id: Optional[str] = None
    search: Optional[str] = None

    @field_validator("page", mode="before")
    @classmethod
    def validate_page(cls, value: Any) -> Optional[int]:
        return check_page(value)

    @field_validator("status", mode="before")
    @classmethod
    def validate_status(cls, value: Any) -> List[str]:
        # ?status=read arrives as a single string
        if isinstance(value, str):
            value = [value]
        if not isinstance(value, list):
            fail("status must be an array of valid status values", "list_type")
        if len(value) < 1:
            fail("status array must contain at least 1 element", "too_short")
        for item in value:
            check_enum(item, STATUSES)
        return value

    @field_validator("available", mode="before")
    @classmethod
    def validate_available(cls, value: Any) -> Optional[bool]:
        if isinstance(value, str):
            normalized = value.strip().lower()
            if normalized == "true":
                return True
            if normalized == "false":
                return False
            if normalized == "null":
                return None
        if value is None or isinstance(value, bool):
            return value
        fail("available must be true, false, or null", "bool_type")

    @field_validator("sort", mode="before")
    @classmethod
    def validate_sort(cls, value: Any) -> str:
        return check_enum(value, WORK_SORTS)

    @field_validator("author_id", mode="before")
    @classmethod
    def validate_author_id(cls, value: Any) -> str:
        return check_uuid(value, "author_id must be a valid UUID")

    @field_validator("search", mode="before")
    @classmethod
    def validate_search(cls, value: Any) -> str:
        return check_search(value)


# ══════════════════════════════════════════════════════════════════════════
# Response DTOs
# ══════════════════════════════════════════════════════════════════════════


class ProfileDto(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    user_id: uuid.UUID
    author_count: int
    work_count: int
    max_authors: int
    max_works: int
    created_at: datetime
    updated_at: datetime


class UserAuthorDto(BaseModel):
    author: AuthorDto
    created_at: datetime


class UserWorkItemDto(BaseModel):
    work: WorkDto
    status: UserWorkStatus
    available_in_legimi: Optional[bool] = None
    status_updated_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime


class BulkAttachResult(BaseModel):
    added: List[uuid.UUID]
    skipped: List[uuid.UUID]
