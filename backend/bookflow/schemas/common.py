"""
Bookflow Backend — Shared Schema Infrastructure
=================================================

What:  The validation entry point (`validate_input`), its tagged result type,
       reusable field checks, and response models shared by every resource.
Why:   Every endpoint validates its input BEFORE any side effect and reports
       failures as a list of field-level issues. Centralizing the mechanics
       keeps the per-resource schemas declarative.
How:   Request schemas are Pydantic models whose `mode="before"` validators
       raise `PydanticCustomError` with the exact user-facing message.
       `validate_input` runs a schema and converts Pydantic's error list into
       `ValidationIssue(path, message)` records.

Validation Result:
    validate_input(Schema, data) never raises. It returns a ValidationResult:
        result.ok       → True and result.value holds the parsed model
        result.ok False → result.issues lists every failed field
    result.unwrap() returns the value or raises ValidationError (→ 400) whose
    message is the first issue and whose details are all of them.
"""

import re
from dataclasses import dataclass, field
from typing import Any, ClassVar, Dict, Generic, List, NoReturn, Optional, Sequence, Type, TypeVar, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError
from pydantic_core import PydanticCustomError

from bookflow.exceptions import ValidationError

UUID_PATTERN = re.compile(
    r"^[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}$"
)

PathItem = Union[str, int]

MAX_BATCH_SIZE = 100


# ══════════════════════════════════════════════════════════════════════════
# Request Schema Bases
# ══════════════════════════════════════════════════════════════════════════


class RequestSchema(BaseModel):
    """
    Base class for request bodies and query strings.

    `required_messages` maps a field (by its wire name) to the message shown
    when the field is missing; unlisted fields get "<field> is required".
    Unknown keys are ignored.
    """

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    required_messages: ClassVar[Dict[str, str]] = {}


class StrictRequestSchema(RequestSchema):
    """Request schema that rejects unknown keys."""

    model_config = ConfigDict(extra="forbid", populate_by_name=True)


# ══════════════════════════════════════════════════════════════════════════
# Validation Entry Point
# ══════════════════════════════════════════════════════════════════════════


class ValidationIssue(BaseModel):
    """One failed check: where it happened and what to tell the user."""

    path: List[PathItem] = Field(default_factory=list)
    message: str


T = TypeVar("T", bound=BaseModel)


@dataclass(frozen=True)
class ValidationResult(Generic[T]):
    """Tagged outcome of `validate_input`: a parsed value or a list of issues."""

    value: Optional[T] = None
    issues: List[ValidationIssue] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.issues

    def unwrap(self) -> T:
        if self.issues:
            raise ValidationError(
                message=self.issues[0].message,
                details=[issue.model_dump() for issue in self.issues],
            )
        return self.value  # type: ignore[return-value]


def validate_input(schema: Type[T], data: Any) -> ValidationResult[T]:
    """
    Validate raw input against a request schema.

    Args:
        schema: RequestSchema subclass describing the input
        data:   Parsed JSON body or query/path dict
    Returns:
        ValidationResult holding either the parsed model or the issues.
    """
    try:
        return ValidationResult(value=schema.model_validate(data))
    except PydanticValidationError as exc:
        return ValidationResult(issues=[_to_issue(schema, err) for err in exc.errors()])


def _to_issue(schema: Type[BaseModel], err: Dict[str, Any]) -> ValidationIssue:
    """Convert one Pydantic error dict into a ValidationIssue."""
    loc = list(err.get("loc", ()))
    kind = err.get("type")
    ctx = err.get("ctx") or {}

    if kind == "missing" and loc:
        name = str(loc[0])
        messages = getattr(schema, "required_messages", {})
        return ValidationIssue(path=loc, message=messages.get(name, f"{name} is required"))
    if kind == "extra_forbidden" and loc:
        return ValidationIssue(path=[], message=f"Unrecognized key(s) in object: '{loc[0]}'")
    if kind == "model_type" or kind == "model_attributes_type":
        return ValidationIssue(path=[], message="Expected object")
    if "path" in ctx:
        return ValidationIssue(path=list(ctx["path"]), message=err["msg"])
    return ValidationIssue(path=loc, message=err["msg"])


# ══════════════════════════════════════════════════════════════════════════
# Field Checks (raise PydanticCustomError with the user-facing message)
# ══════════════════════════════════════════════════════════════════════════


def fail(message: str, kind: str = "invalid") -> NoReturn:
    raise PydanticCustomError(kind, message)


def check_str(value: Any, name: str) -> str:
    if not isinstance(value, str):
        fail(f"{name} must be a string", "string_type")
    return value


def check_uuid(value: Any, message: str) -> str:
    """UUID in canonical 8-4-4-4-12 form."""
    if not isinstance(value, str) or not UUID_PATTERN.match(value):
        fail(message, "uuid")
    return value


def check_trimmed_text(value: Any, label: str, max_length: Optional[int] = None) -> str:
    """
    Length on the raw value first, then trim, then reject empty.

    "" → "<label> cannot be empty"; "   " → "... cannot be empty after trimming".
    """
    text = check_str(value, label)
    if len(text) < 1:
        fail(f"{label} cannot be empty", "too_short")
    if max_length is not None and len(text) > max_length:
        fail(f"{label} cannot exceed {max_length} characters", "too_long")
    trimmed = text.strip()
    if not trimmed:
        fail(f"{label} cannot be empty after trimming", "too_short")
    return trimmed


def check_optional_trimmed(value: Any, name: str) -> str:
    """Optional free text: trimmed and non-empty."""
    trimmed = check_str(value, name).strip()
    if not trimmed:
        fail(f"{name} cannot be empty after trimming", "too_short")
    return trimmed


def check_int_range(value: Any, name: str, minimum: int, maximum: int) -> int:
    """JSON number that is an integer within [minimum, maximum]."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        fail(f"{name} must be a number", "int_type")
    if isinstance(value, float) and not value.is_integer():
        fail(f"{name} must be an integer", "int_type")
    number = int(value)
    if number < minimum:
        fail(f"{name} must be at least {minimum}", "too_small")
    if number > maximum:
        fail(f"{name} must be at most {maximum}", "too_big")
    return number


def check_enum(value: Any, choices: Sequence[str]) -> str:
    if value not in choices:
        expected = " | ".join(f"'{c}'" for c in choices)
        fail(f"Invalid enum value. Expected {expected}, received '{value}'", "enum")
    return value


def check_bool_or_null(value: Any, name: str) -> Optional[bool]:
    if value is not None and not isinstance(value, bool):
        fail(f"{name} must be a boolean or null", "bool_type")
    return value


def check_literal_true(value: Any, message: str) -> bool:
    if value is not True:
        fail(message, "literal_error")
    return True


def coerce_query_number(value: Any, label: str) -> Optional[float]:
    """
    Query strings carry numbers as text.

    Blank → None (treated as absent); anything else must parse as a number.
    """
    if isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            return None
        try:
            number = float(stripped)
        except ValueError:
            fail(f"{label} must be a valid number", "number_parsing")
    elif isinstance(value, bool) or not isinstance(value, (int, float)):
        fail(f"{label} must be a valid number", "number_parsing")
    else:
        number = float(value)
    if number != number:  # NaN
        fail(f"{label} must be a valid number", "number_parsing")
    if not number.is_integer():
        fail(f"{label} must be an integer", "int_type")
    return number


def check_page(value: Any) -> Optional[int]:
    number = coerce_query_number(value, "Page")
    if number is None:
        return None
    if number < 1:
        fail("Page must be at least 1", "too_small")
    return int(number)


def check_search(value: Any) -> str:
    text = check_str(value, "search")
    if len(text) > 200:
        fail("Search query cannot exceed 200 characters", "too_long")
    trimmed = text.strip()
    if not trimmed:
        fail("Search query cannot be empty after trimming", "too_short")
    return trimmed


def check_work_ids(value: Any) -> List[str]:
    """
    Bulk work id list: array of 1..100 UUIDs, deduplicated in first-seen order.

    The size limits apply to the deduplicated list.
    """
    if not isinstance(value, list):
        fail("work_ids must be an array", "list_type")
    for item in value:
        check_uuid(item, "Each work_id must be a valid UUID")
    unique = dedupe(value)
    if len(unique) < 1:
        fail("work_ids must contain at least 1 element", "too_short")
    if len(unique) > MAX_BATCH_SIZE:
        fail(f"work_ids array exceeds maximum size of {MAX_BATCH_SIZE}", "too_long")
    return unique


def dedupe(items: Sequence[Any]) -> List[Any]:
    """Drop repeated items, keeping the first occurrence of each."""
    seen = set()
    unique = []
    for item in items:
        if item not in seen:
            seen.add(item)
            unique.append(item)
    return unique


# ══════════════════════════════════════════════════════════════════════════
# Shared Response Models
# ══════════════════════════════════════════════════════════════════════════


class ErrorResponse(BaseModel):
    """
    Standardized error body for all API errors.

    Example:
        {
            "error": "Validation error",
            "message": "workId must be a valid UUID",
            "details": [{"path": ["workId"], "message": "workId must be a valid UUID"}]
        }
    """

    error: str = Field(description="Error category")
    message: str = Field(description="Human-readable error description")
    details: Optional[List[ValidationIssue]] = Field(default=None)


class HealthResponse(BaseModel):
    status: str = Field(description="Overall service status: healthy, unhealthy")
    version: str = Field(description="Application version")
    database: str = Field(description="Database connectivity: connected, disconnected")
    uptime_seconds: float = Field(description="Seconds since service started")
