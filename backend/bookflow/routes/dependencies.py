"""
Bookflow Backend — Shared Route Dependencies
==============================================

What:  FastAPI dependencies and small helpers shared by every router:
       session user resolution, the RLS-scoped DB session, the rate limiter,
       and raw body/query extraction for `validate_input`.
Why:   Handlers follow one sequence: extract → validate → authenticate →
       apply RLS → service → response. Validation runs on raw input so the
       client gets our messages rather than FastAPI's 422 format, which is
       why bodies and queries are read here instead of being declared as
       Pydantic parameters.

Session Resolution:
    The access token is read from the httpOnly session cookie, or from an
    `Authorization: Bearer` header for non-browser clients, and resolved
    through Supabase Auth. A missing or rejected token means "anonymous";
    only `require_user` turns that into a 401.
"""

import logging
from typing import Any, AsyncGenerator, Dict, Optional

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from bookflow.config import settings
from bookflow.database import apply_rls_context, get_db_session
from bookflow.exceptions import AuthenticationError, ValidationError
from bookflow.schemas.auth import AuthUser
from bookflow.services.auth_service import auth_service
from bookflow.services.rate_limit import RateLimiter

logger = logging.getLogger(__name__)

INVALID_JSON = "Invalid JSON in request body"
INVALID_AUTH_BODY = "Invalid request body format"

# Query parameters that may repeat (?status=read&status=to_read)
MULTI_VALUE_PARAMS = frozenset({"status"})


def get_access_token(request: Request) -> Optional[str]:
    token = request.cookies.get(settings.access_token_cookie)
    if token:
        return token
    header = request.headers.get("authorization", "")
    scheme, _, credentials = header.partition(" ")
    if scheme.lower() == "bearer" and credentials.strip():
        return credentials.strip()
    return None


async def get_current_user(request: Request) -> Optional[AuthUser]:
    """The signed-in user, or None for anonymous requests."""
    token = get_access_token(request)
    if not token:
        return None
    user = await auth_service.get_user(token)
    if user is None:
        logger.debug("Session token rejected by Supabase Auth")
    return user


def require_user(user: Optional[AuthUser]) -> AuthUser:
    """
    Called by handlers AFTER input validation, so malformed requests are
    reported as 400 even when unauthenticated.
    """
    if user is None:
        raise AuthenticationError()
    return user


async def get_db(
    user: Optional[AuthUser] = Depends(get_current_user),
) -> AsyncGenerator[AsyncSession, None]:
    """Request transaction bound to the caller's identity for RLS."""
    async for session in get_db_session():
        await apply_rls_context(session, user)
        yield session


def get_rate_limiter(request: Request) -> Optional[RateLimiter]:
    return getattr(request.app.state, "rate_limiter", None)


async def read_json_body(request: Request, invalid_message: str = INVALID_JSON) -> Any:
    """
    Decode the request body as JSON.

    Raises:
        ValidationError: Empty or malformed body
    """
    body = await request.body()
    if not body:
        raise ValidationError(message=invalid_message)
    try:
        return await request.json()
    except ValueError:
        logger.warning("Malformed JSON body on %s %s", request.method, request.url.path)
        raise ValidationError(message=invalid_message)


def query_to_dict(request: Request) -> Dict[str, Any]:
    """
    Query string as a plain dict.

    Repeated keys collapse to their last value, except MULTI_VALUE_PARAMS,
    which keep every value when more than one is sent.
    """
    params: Dict[str, Any] = {}
    for key in request.query_params.keys():
        values = request.query_params.getlist(key)
        if key in MULTI_VALUE_PARAMS and len(values) > 1:
            params[key] = values
        else:
            params[key] = values[-1]
    return params
