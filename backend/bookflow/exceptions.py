"""
Bookflow Backend — Custom Exception Hierarchy
===============================================

What:  Defines application-specific exceptions for different error scenarios.
Why:   Each failure kind maps to exactly one HTTP status and error category,
       so routes raise and the global handlers render a consistent body.
How:   Each exception class carries a message, an optional context dict, and
       class-level `status_code` / `category`. Handlers registered in main.py
       turn them into `{"error": category, "message": message, "details"?}`.
Who:   Raised by services, validation and routes; caught by global handlers.
When:  During request processing whenever a request cannot succeed.

Exception Hierarchy:
    BookflowError (base)
    ├── ValidationError            → 400 Validation error (with issue list)
    ├── BadRequestError            → 400 Bad Request
    ├── AuthenticationError        → 401 Unauthorized
    ├── ForbiddenError             → 403 Forbidden
    ├── NotFoundError              → 404 Not found
    │   └── OpenLibraryNotFoundError → 404 "<Entity> not found"
    ├── ConflictError              → 409 Conflict
    ├── ConstraintViolationError   (store-reported, by SQLSTATE)
    │   ├── UniqueViolationError   → 409 Conflict        (23505)
    │   ├── CheckViolationError    → 409 Conflict        (23514)
    │   └── PermissionDeniedError  → 403 Forbidden       (42501)
    ├── RateLimitExceededError     → 429 Too Many Requests
    ├── AuthServiceError           → GoTrue error, status from the platform
    ├── ExternalServiceError       → 502 External service error
    └── DatabaseError              → 500 Internal server error

Design Decision:
    "Nothing matched" is NOT an exception: services return None / empty lists.
    Exceptions are reserved for requests that cannot be served, so a caller
    can never confuse an empty result with a failed query.
"""

from typing import Any, Dict, List, Optional


class BookflowError(Exception):
    """
    Base exception for all Bookflow application errors.

    Attributes:
        message:  User-facing error description (safe to return in API response)
        context:  Additional debug info (logged but NOT returned to client)
        category: Short error category rendered as the `error` field
    """

    status_code: int = 500
    category: str = "Internal server error"

    def __init__(
        self,
        message: str = "An unexpected error occurred",
        context: Optional[Dict[str, Any]] = None,
        category: Optional[str] = None,
    ):
        self.message = message
        self.context = context or {}
        if category:
            self.category = category
        super().__init__(self.message)


class ValidationError(BookflowError):
    """
    Raised when client input fails a schema.

    HTTP:    400 Bad Request
    Body:    message = first issue's message, details = every issue as
             {"path": [...], "message": "..."}
    """

    status_code = 400
    category = "Validation error"

    def __init__(
        self,
        message: str = "Invalid input",
        details: Optional[List[Dict[str, Any]]] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, context=context)
        self.details = details or []


class BadRequestError(BookflowError):
    """Request is well formed but cannot be applied (e.g. mismatched ids)."""

    status_code = 400
    category = "Bad Request"


class AuthenticationError(BookflowError):
    """
    No valid session accompanies the request.

    Why generic: the message never says whether an account exists.
    """

    status_code = 401
    category = "Unauthorized"

    def __init__(
        self,
        message: str = "Authentication required",
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, context=context)


class ForbiddenError(BookflowError):
    status_code = 403
    category = "Forbidden"


class NotFoundError(BookflowError):
    """
    Raised by routes when a lookup came back empty.

    Rows hidden by row-level security look exactly like missing rows, which is
    why most messages read "... not found or not accessible".
    """

    status_code = 404
    category = "Not found"

    def __init__(
        self,
        message: str = "The requested resource was not found",
        context: Optional[Dict[str, Any]] = None,
        category: Optional[str] = None,
    ):
        super().__init__(message=message, context=context, category=category)


class OpenLibraryNotFoundError(NotFoundError):
    """OpenLibrary answered 404 for the requested key."""

    def __init__(self, entity: str, openlibrary_id: str):
        super().__init__(
            message=f"{entity} with openlibrary_id '{openlibrary_id}' not found in OpenLibrary",
            context={"entity": entity, "openlibrary_id": openlibrary_id},
            category=f"{entity} not found",
        )
        self.entity = entity
        self.openlibrary_id = openlibrary_id


class ConflictError(BookflowError):
    status_code = 409
    category = "Conflict"


class ConstraintViolationError(BookflowError):
    """
    A store constraint rejected a write.

    What:    Base for violations recognised by SQLSTATE (see database.py).
    Attributes:
        constraint: Constraint name reported by Postgres, when available
    """

    status_code = 409
    category = "Conflict"

    def __init__(
        self,
        message: str = "Database constraint violation",
        constraint: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        ctx = context or {}
        if constraint:
            ctx["constraint"] = constraint
        super().__init__(message=message, context=ctx)
        self.constraint = constraint


class UniqueViolationError(ConstraintViolationError):
    """SQLSTATE 23505: duplicate key."""


class CheckViolationError(ConstraintViolationError):
    """SQLSTATE 23514: e.g. authors_manual_owner, editions_manual_or_ol."""


class PermissionDeniedError(ConstraintViolationError):
    """SQLSTATE 42501: row-level security refused the write."""

    status_code = 403
    category = "Forbidden"


class RateLimitExceededError(BookflowError):
    """
    Raised when a caller exceeds a sliding-window limit.

    HTTP:    429 Too Many Requests, with Retry-After when known.
    """

    status_code = 429
    category = "Too Many Requests"

    def __init__(
        self,
        message: str = "Rate limit exceeded",
        retry_after: Optional[int] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        ctx = context or {}
        if retry_after:
            ctx["retry_after"] = retry_after
        super().__init__(message=message, context=ctx)
        self.retry_after = retry_after


class AuthServiceError(BookflowError):
    """
    Supabase Auth answered with an error payload.

    Attributes:
        status_code: HTTP status returned by GoTrue (instance-level)
        code:        GoTrue error code (`invalid_credentials`, ...) if present
    """

    category = "Bad Request"

    def __init__(
        self,
        message: str,
        status_code: int = 400,
        code: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, context=context)
        self.status_code = status_code
        self.code = code


class ExternalServiceError(BookflowError):
    """
    An upstream HTTP service could not be reached or failed.

    HTTP:    502 Bad Gateway (the upstream failed, not this process).
    """

    status_code = 502
    category = "External service error"

    def __init__(
        self,
        message: str = "Could not connect to OpenLibrary. Please try again later.",
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, context=context)


class DatabaseError(BookflowError):
    """
    Raised when database operations fail unexpectedly.

    Security Note:
        The message returned to the client is always generic. The original
        error (SQL, constraint name, driver message) is only logged.
    """

    status_code = 500
    category = "Internal server error"

    def __init__(
        self,
        message: str = "A database error occurred",
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, context=context)
