"""
Bookflow Backend — Database Session Management
================================================

What:  Async SQLAlchemy engine, session factory, FastAPI dependency, and the
       helpers that bind a transaction to the caller's Supabase identity.
Why:   Centralizes all database connection logic in one place.
How:   Creates an async engine with connection pooling, provides a session
       dependency that commits on success and rolls back on error.
Who:   Used by route handlers via FastAPI's dependency injection system.
When:  Engine is created at module import; sessions are created per-request.

Row-Level Security:
    The Supabase database enforces access with RLS policies that read the
    current role and `request.jwt.claims`. A pooled connection logs in as a
    privileged user, so every request transaction first runs

        SET LOCAL ROLE authenticated            -- or anon
        SELECT set_config('request.jwt.claims', '{"sub": ..., "role": ...}', true)

    Both settings are transaction-scoped and vanish on commit/rollback, so a
    connection returned to the pool carries no identity.

Error Mapping:
    Postgres reports constraint failures with SQLSTATE codes. `map_db_error`
    converts the ones services care about into named exceptions:
        23505 unique_violation      → UniqueViolationError
        23514 check_violation       → CheckViolationError
        42501 insufficient_privilege → PermissionDeniedError
        anything else               → DatabaseError
"""

import json
import logging
from typing import TYPE_CHECKING, Any, AsyncGenerator, Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from bookflow.config import settings
from bookflow.exceptions import (
    BookflowError,
    CheckViolationError,
    DatabaseError,
    PermissionDeniedError,
    UniqueViolationError,
)

if TYPE_CHECKING:
    from bookflow.schemas.auth import AuthUser

logger = logging.getLogger(__name__)

UNIQUE_VIOLATION = "23505"
CHECK_VIOLATION = "23514"
INSUFFICIENT_PRIVILEGE = "42501"


# ── Engine Configuration ──────────────────────────────────────────────────
engine = create_async_engine(
    settings.database_url,
    pool_size=settings.db_pool_size,
    max_overflow=settings.db_max_overflow,
    pool_pre_ping=settings.db_pool_pre_ping,
    pool_recycle=3600,
    echo=settings.log_level == "DEBUG",
)

# expire_on_commit=False: DTOs are built from ORM rows after the commit
async_session_factory = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


class Base(DeclarativeBase):
    """
    Base class for all SQLAlchemy ORM models.

    The tables themselves are created and migrated by Supabase; the models
    only describe them so queries are type-checked.
    """
    pass


# ── Session Dependency ────────────────────────────────────────────────────
async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """
    FastAPI dependency that provides a database session per request.

    How it works:
        1. Creates a new session from the factory
        2. Yields it to the route handler
        3. On success: commits the transaction
        4. On error: rolls back the transaction
        5. Always: closes the session (returns connection to pool)

    One request is one transaction, so a handler that calls several services
    is atomic from the client's perspective.
    """
    async with async_session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()


# ── Row-Level Security ────────────────────────────────────────────────────
async def apply_rls_context(session: AsyncSession, user: Optional["AuthUser"]) -> None:
    """
    Bind the current transaction to the caller's identity.

    What:    Switches to the `authenticated` (or `anon`) role and publishes the
             JWT claims that Supabase policies read through auth.uid().
    When:    Right after authentication, before the first service call.
    """
    role = "authenticated" if user is not None else "anon"
    claims: dict = {"role": role}
    if user is not None:
        claims["sub"] = str(user.id)
        if user.email:
            claims["email"] = user.email

    # role is one of two literals above; SET does not accept bind parameters
    await session.execute(text(f"SET LOCAL ROLE {role}"))
    await session.execute(
        text("SELECT set_config('request.jwt.claims', :claims, true)"),
        {"claims": json.dumps(claims)},
    )


# ── Error Mapping ─────────────────────────────────────────────────────────
def _driver_errors(exc: BaseException):
    """Yield the DBAPI error and the native driver error underneath it."""
    orig = getattr(exc, "orig", None)
    if orig is not None:
        yield orig
        cause = getattr(orig, "__cause__", None)
        if cause is not None:
            yield cause
    yield exc


def get_sqlstate(exc: BaseException) -> Optional[str]:
    """
    Extract the Postgres SQLSTATE from a SQLAlchemy/driver exception.

    asyncpg exposes `sqlstate`, psycopg exposes `pgcode`/`sqlstate`.
    """
    for err in _driver_errors(exc):
        code = getattr(err, "sqlstate", None) or getattr(err, "pgcode", None)
        if code:
            return str(code)
    return None


def get_constraint_name(exc: BaseException) -> Optional[str]:
    """Name of the violated constraint, when the driver reports it."""
    for err in _driver_errors(exc):
        name = getattr(err, "constraint_name", None)
        if name:
            return str(name)
        diag = getattr(err, "diag", None)
        if diag is not None and getattr(diag, "constraint_name", None):
            return str(diag.constraint_name)
    return None


def map_db_error(
    exc: BaseException,
    message: str,
    *,
    unique_message: Optional[str] = None,
    check_message: Optional[str] = None,
    denied_message: Optional[str] = None,
    context: Optional[dict[str, Any]] = None,
) -> BookflowError:
    """
    Translate a store failure into the exception a caller should raise.

    Args:
        exc:             The caught SQLAlchemy/driver exception
        message:         DatabaseError message for unrecognised failures
        unique_message:  Message for 23505 (default names the constraint)
        check_message:   Message for 23514 (default names the constraint)
        denied_message:  Message for 42501
    Returns:
        An exception instance; the caller raises it `from exc`.
    """
    ctx = dict(context or {})
    sqlstate = get_sqlstate(exc)
    constraint = get_constraint_name(exc)

    if sqlstate == UNIQUE_VIOLATION:
        return UniqueViolationError(
            message=unique_message or f"Database constraint violation: {constraint or 'unique'}",
            constraint=constraint,
            context=ctx,
        )
    if sqlstate == CHECK_VIOLATION:
        return CheckViolationError(
            message=check_message or f"Database constraint violation: {constraint or 'check'}",
            constraint=constraint,
            context=ctx,
        )
    if sqlstate == INSUFFICIENT_PRIVILEGE:
        return PermissionDeniedError(
            message=denied_message or "Insufficient permissions",
            constraint=constraint,
            context=ctx,
        )

    ctx.update({"sqlstate": sqlstate, "original_error": str(exc)})
    return DatabaseError(message=f"{message}: {exc}", context=ctx)


# ── Lifecycle Helpers ─────────────────────────────────────────────────────
async def dispose_engine() -> None:
    """Gracefully closes all connections in the pool (application shutdown)."""
    await engine.dispose()
