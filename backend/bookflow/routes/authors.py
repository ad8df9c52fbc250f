"""
Bookflow Backend — Authors Route Handlers
===========================================

What:  Manual author creation, OpenLibrary author search, author detail and
       the paginated list of an author's works.
Who:   Called by the frontend authors list, the "add author" modal and the
       author page.

Author Works Listing:
    GET /api/authors/{authorId}/works reads the catalog. Two extras apply to
    OpenLibrary-backed authors:
    - forceRefresh=true re-fetches the author from OpenLibrary first
      (a failed refresh is logged and the cached row is used)
    - an author with no works yet gets their bibliography auto-imported
      once, then the page is queried again
"""

import logging
import uuid
from typing import Optional

from fastapi import APIRouter, Depends, Request, Response
from sqlalchemy.ext.asyncio import AsyncSession

from bookflow.exceptions import ConflictError, NotFoundError
from bookflow.routes.dependencies import (
    get_current_user,
    get_db,
    query_to_dict,
    read_json_body,
    require_user,
)
from bookflow.schemas.auth import AuthUser
from bookflow.schemas.catalog import (
    AuthorIdParams,
    AuthorSearchQuery,
    AuthorWorksListQuery,
    CreateAuthorCommand,
)
from bookflow.schemas.common import ErrorResponse, validate_input
from bookflow.services.authors_service import author_limit_message, authors_service
from bookflow.services.import_service import catalog_import_service
from bookflow.services.works_service import works_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/authors", tags=["Authors"])

AUTHOR_NOT_FOUND = "Author not found or not accessible"


@router.post(
    "",
    status_code=201,
    responses={
        400: {"model": ErrorResponse},
        401: {"model": ErrorResponse},
        409: {"model": ErrorResponse},
    },
    summary="Create a manual author",
)
async def create_author(
    request: Request,
    response: Response,
    user: Optional[AuthUser] = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> dict:
    body = await read_json_body(request)
    command = validate_input(CreateAuthorCommand, body).unwrap()
    user = require_user(user)

    author_count, max_authors = await authors_service.check_user_author_limit(db, user.id)
    if author_count >= max_authors:
        logger.warning("User %s reached the author limit (%d)", user.id, max_authors)
        raise ConflictError(author_limit_message(max_authors))

    author = await authors_service.create_manual_author(db, user.id, command.name)
    response.headers["Location"] = f"/api/authors/{author.id}"
    return {"author": author}


@router.get(
    "/search",
    responses={400: {"model": ErrorResponse}, 502: {"model": ErrorResponse}},
    summary="Search OpenLibrary authors",
    description=(
        "Searches OpenLibrary and merges the hits with the local author cache. "
        "Results are cached for 7 days; cached authors carry their catalog id."
    ),
)
async def search_authors(request: Request, db: AsyncSession = Depends(get_db)) -> dict:
    query = validate_input(AuthorSearchQuery, query_to_dict(request)).unwrap()
    authors = await catalog_import_service.search_authors(db, query.q, query.limit)
    return {"authors": authors}


@router.get(
    "/{author_id}",
    responses={400: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
    summary="Get an author",
)
async def get_author(author_id: str, db: AsyncSession = Depends(get_db)) -> dict:
    params = validate_input(AuthorIdParams, {"authorId": author_id}).unwrap()
    author = await authors_service.find_by_id(db, uuid.UUID(params.author_id))
    if author is None:
        raise NotFoundError(AUTHOR_NOT_FOUND)
    return {"author": author}


@router.get(
    "/{author_id}/works",
    responses={400: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
    summary="List an author's works",
)
async def list_author_works(
    author_id: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> dict:
    params = validate_input(AuthorIdParams, {"authorId": author_id}).unwrap()
    query = validate_input(AuthorWorksListQuery, query_to_dict(request)).unwrap()
    page = query.page or 1
    sort = query.sort or "published_desc"
    force_refresh = bool(query.force_refresh)

    author = await authors_service.find_by_id(db, uuid.UUID(params.author_id))
    if author is None:
        raise NotFoundError(AUTHOR_NOT_FOUND)

    if force_refresh and author.openlibrary_id:
        author = await catalog_import_service.refresh_author(db, author)

    items, total = await works_service.find_works_by_author_id(db, author.id, page, sort)

    if total == 0 and author.openlibrary_id and not force_refresh:
        imported = await catalog_import_service.import_author_works(db, author)
        if imported:
            items, total = await works_service.find_works_by_author_id(db, author.id, page, sort)

    return {"items": items, "page": page, "total": total}
