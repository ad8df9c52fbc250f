"""
Bookflow Backend — User Route Handlers
========================================

What:  Everything scoped to the signed-in user: profile, the authors and
       works on their shelf (attach, list, update status, detach) and
       account deletion.
Who:   Called by the frontend authors list, the works list, the bulk
       status toolbar and the account settings page.

Every handler here requires a session; input is still validated first so
malformed requests answer 400 regardless of authentication.

Author Additions Rate Limit:
    POST /api/user/authors is limited per user (10 per minute by default)
    with the application's RateLimiter. The check and the recording are
    separate steps: only successful additions count, and two concurrent
    requests may both pass the check.
"""

import logging
import uuid
from typing import Optional

from fastapi import APIRouter, Depends, Request, Response
from sqlalchemy.ext.asyncio import AsyncSession

from bookflow.config import settings
from bookflow.exceptions import (
    BookflowError,
    ConflictError,
    DatabaseError,
    NotFoundError,
    RateLimitExceededError,
)
from bookflow.routes.auth import clear_session_cookies
from bookflow.routes.dependencies import (
    get_current_user,
    get_db,
    get_rate_limiter,
    query_to_dict,
    read_json_body,
    require_user,
)
from bookflow.schemas.auth import AuthUser
from bookflow.schemas.catalog import AuthorIdParams, WorkIdParams
from bookflow.schemas.common import ErrorResponse, validate_input
from bookflow.schemas.user import (
    AttachUserAuthorCommand,
    BulkAttachUserWorksCommand,
    UpdateUserWorkCommand,
    UpdateUserWorksBulkCommand,
    UserAuthorsListQuery,
    UserWorksListQuery,
    UserWorkStatus,
)
from bookflow.services.account_service import account_service
from bookflow.services.authors_service import author_limit_message, authors_service
from bookflow.services.profile_service import profile_service
from bookflow.services.rate_limit import RateLimiter
from bookflow.services.works_service import ANY_AVAILABILITY, works_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/user", tags=["User"])

AUTH_RESPONSES = {400: {"model": ErrorResponse}, 401: {"model": ErrorResponse}}


def author_add_key(user_id: uuid.UUID) -> str:
    return f"author_add:{user_id}"


# ══════════════════════════════════════════════════════════════════════════
# Account & Profile
# ══════════════════════════════════════════════════════════════════════════


@router.delete(
    "/account",
    status_code=204,
    responses={401: {"model": ErrorResponse}, 500: {"model": ErrorResponse}},
    summary="Delete the signed-in account",
)
async def delete_account(
    user: Optional[AuthUser] = Depends(get_current_user),
) -> Response:
    """
    Permanently delete the account. The store cascades the deletion to the
    profile, shelf rows and the user's manual catalog entries.
    """
    user = require_user(user)
    try:
        await account_service.delete_account(user.id)
    except DatabaseError as e:
        raise BookflowError("Failed to delete user account", context=e.context) from e

    response = Response(status_code=204)
    clear_session_cookies(response)
    return response


@router.get(
    "/profile",
    responses={401: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
    summary="Get the signed-in user's profile and limits",
)
async def get_profile(
    user: Optional[AuthUser] = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    user = require_user(user)
    profile = await profile_service.get_profile(db, user.id)
    if profile is None:
        raise NotFoundError("Profile not found")
    return profile


# ══════════════════════════════════════════════════════════════════════════
# User ↔ Authors
# ══════════════════════════════════════════════════════════════════════════


@router.get("/authors", responses=AUTH_RESPONSES, summary="List the user's authors")
async def list_user_authors(
    request: Request,
    user: Optional[AuthUser] = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> dict:
    query = validate_input(UserAuthorsListQuery, query_to_dict(request)).unwrap()
    user = require_user(user)
    items, total = await authors_service.find_user_authors(
        db,
        user.id,
        page=query.page or 1,
        search=query.search,
        sort=query.sort or "name_asc",
    )
    return {"items": items, "total": total}


@router.post(
    "/authors",
    status_code=201,
    responses={
        **AUTH_RESPONSES,
        404: {"model": ErrorResponse},
        409: {"model": ErrorResponse},
        429: {"model": ErrorResponse},
    },
    summary="Add an author to the user's profile",
)
async def attach_user_author(
    request: Request,
    response: Response,
    user: Optional[AuthUser] = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    limiter: Optional[RateLimiter] = Depends(get_rate_limiter),
) -> dict:
    body = await read_json_body(request)
    command = validate_input(AttachUserAuthorCommand, body).unwrap()
    user = require_user(user)
    author_id = uuid.UUID(command.author_id)

    key = author_add_key(user.id)
    window_ms = settings.author_add_window_ms
    if limiter is not None and limiter.check_rate_limit(key, settings.author_add_limit, window_ms):
        logger.warning("User %s exceeded the author addition rate limit", user.id)
        raise RateLimitExceededError(
            message=(
                "Rate limit exceeded: maximum "
                f"{settings.author_add_limit} author additions per minute"
            ),
            retry_after=window_ms // 1000,
        )

    author_count, max_authors = await authors_service.check_user_author_limit(db, user.id)
    if author_count >= max_authors:
        raise ConflictError(author_limit_message(max_authors))

    author = await authors_service.find_by_id(db, author_id)
    if author is None:
        raise NotFoundError("Author not found or not accessible")
    if await authors_service.is_author_attached(db, user.id, author_id):
        raise ConflictError("Author is already attached to your profile")

    link = await authors_service.attach_user_author(db, user.id, author_id, max_authors)
    if limiter is not None:
        limiter.record_request(key)

    response.headers["Location"] = f"/api/user/authors/{author_id}"
    return {"author_id": link.author_id, "created_at": link.created_at}


@router.delete(
    "/authors/{author_id}",
    status_code=204,
    responses={**AUTH_RESPONSES, 404: {"model": ErrorResponse}},
    summary="Remove an author from the user's profile",
)
async def detach_user_author(
    author_id: str,
    user: Optional[AuthUser] = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> Response:
    params = validate_input(AuthorIdParams, {"authorId": author_id}).unwrap()
    user = require_user(user)
    await authors_service.detach_user_author(db, user.id, uuid.UUID(params.author_id))
    return Response(status_code=204)


# ══════════════════════════════════════════════════════════════════════════
# User ↔ Works
# ══════════════════════════════════════════════════════════════════════════


@router.get("/works", responses=AUTH_RESPONSES, summary="List the user's works")
async def list_user_works(
    request: Request,
    user: Optional[AuthUser] = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> dict:
    """
    `available` filters on Legimi availability only when present in the
    query; `available=null` selects works whose availability is unknown.
    """
    query = validate_input(UserWorksListQuery, query_to_dict(request)).unwrap()
    user = require_user(user)
    page = query.page or 1
    available = query.available if "available" in query.model_fields_set else ANY_AVAILABILITY
    items, total = await works_service.find_user_works(
        db,
        user.id,
        page=page,
        status=query.status,
        available=available,
        sort=query.sort or "published_desc",
        author_id=uuid.UUID(query.author_id) if query.author_id else None,
        search=query.search,
    )
    return {"items": items, "page": page, "total": total}


@router.post(
    "/works/bulk",
    status_code=201,
    responses={**AUTH_RESPONSES, 409: {"model": ErrorResponse}},
    summary="Add several works to the user's shelf",
)
async def bulk_attach_user_works(
    request: Request,
    user: Optional[AuthUser] = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    body = await read_json_body(request)
    command = validate_input(BulkAttachUserWorksCommand, body).unwrap()
    user = require_user(user)
    return await works_service.bulk_attach_user_works(
        db, user.id, command.work_ids, command.status or UserWorkStatus.TO_READ
    )


@router.post(
    "/works/status-bulk",
    responses=AUTH_RESPONSES,
    summary="Update status or availability of several works",
)
async def bulk_update_user_works(
    request: Request,
    user: Optional[AuthUser] = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> dict:
    body = await read_json_body(request)
    command = validate_input(UpdateUserWorksBulkCommand, body).unwrap()
    user = require_user(user)
    works = await works_service.bulk_update_user_works(
        db, user.id, command.work_ids, command.changes()
    )
    return {"works": works}


@router.patch(
    "/works/{work_id}",
    responses={**AUTH_RESPONSES, 404: {"model": ErrorResponse}},
    summary="Update status or availability of one work",
)
async def update_user_work(
    work_id: str,
    request: Request,
    user: Optional[AuthUser] = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> dict:
    params = validate_input(WorkIdParams, {"workId": work_id}).unwrap()
    body = await read_json_body(request)
    command = validate_input(UpdateUserWorkCommand, body).unwrap()
    user = require_user(user)

    item = await works_service.update_user_work(
        db, user.id, uuid.UUID(params.work_id), command.changes()
    )
    if item is None:
        raise NotFoundError("Work is not attached to your profile")
    return {"work": item}


@router.delete(
    "/works/{work_id}",
    status_code=204,
    responses={**AUTH_RESPONSES, 404: {"model": ErrorResponse}},
    summary="Remove a work from the user's shelf",
)
async def detach_user_work(
    work_id: str,
    user: Optional[AuthUser] = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> Response:
    params = validate_input(WorkIdParams, {"workId": work_id}).unwrap()
    user = require_user(user)
    await works_service.detach_user_work(db, user.id, uuid.UUID(params.work_id))
    return Response(status_code=204)
