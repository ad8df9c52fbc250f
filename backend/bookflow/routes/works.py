"""
Bookflow Backend — Works Route Handlers
=========================================

What:  Manual work creation, work detail, the editions of a work, and
       choosing a work's primary edition.
Who:   Called by the frontend work page and the "add work" form.

Caching:
    Catalog reads are user-independent but RLS-filtered (manual rows are
    visible to their owner only), so responses are `private`.
"""

import logging
import uuid
from typing import Optional

from fastapi import APIRouter, Depends, Request, Response
from sqlalchemy.ext.asyncio import AsyncSession

from bookflow.exceptions import BadRequestError, ConflictError, NotFoundError
from bookflow.routes.dependencies import get_current_user, get_db, read_json_body, require_user
from bookflow.schemas.auth import AuthUser
from bookflow.schemas.catalog import CreateWorkCommand, SetPrimaryEditionCommand, WorkIdParams
from bookflow.schemas.common import ErrorResponse, validate_input
from bookflow.services.editions_service import editions_service
from bookflow.services.works_service import work_limit_message, works_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/works", tags=["Works"])

WORK_NOT_FOUND = "Work not found or not accessible"


@router.post(
    "",
    status_code=201,
    responses={
        400: {"model": ErrorResponse},
        401: {"model": ErrorResponse},
        404: {"model": ErrorResponse},
        409: {"model": ErrorResponse},
    },
    summary="Create a manual work",
)
async def create_work(
    request: Request,
    response: Response,
    user: Optional[AuthUser] = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> dict:
    """
    Create a manual work linked to existing authors.

    Order of checks: work limit (409), authors visible (404), then the
    insert, whose primary edition check may answer 404 or 400.
    """
    body = await read_json_body(request)
    command = validate_input(CreateWorkCommand, body).unwrap()
    user = require_user(user)

    work_count, max_works = await works_service.check_user_work_limit(db, user.id)
    if work_count >= max_works:
        logger.warning("User %s reached the work limit (%d)", user.id, max_works)
        raise ConflictError(work_limit_message(max_works))

    missing = await works_service.verify_authors_exist(db, command.author_ids)
    if missing:
        logger.warning("User %s referenced unknown authors: %s", user.id, missing)
        raise NotFoundError(
            "One or more authors not found or not accessible",
            context={"author_ids": missing},
        )

    work = await works_service.create_manual_work(db, user.id, command)
    response.headers["Location"] = f"/api/works/{work.id}"
    return {"work": work}


@router.get(
    "/{work_id}",
    responses={400: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
    summary="Get a work with its primary edition",
)
async def get_work(work_id: str, response: Response, db: AsyncSession = Depends(get_db)):
    params = validate_input(WorkIdParams, {"workId": work_id}).unwrap()
    work = await works_service.find_by_id_with_primary_edition(db, uuid.UUID(params.work_id))
    if work is None:
        raise NotFoundError(WORK_NOT_FOUND)
    response.headers["Cache-Control"] = "private, max-age=60"
    return work


@router.get(
    "/{work_id}/editions",
    responses={400: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
    summary="List the editions of a work",
    description="Editions are ordered newest first; editions without a year come last.",
)
async def list_work_editions(
    work_id: str, response: Response, db: AsyncSession = Depends(get_db)
) -> dict:
    params = validate_input(WorkIdParams, {"workId": work_id}).unwrap()
    work = await works_service.find_by_id(db, uuid.UUID(params.work_id))
    if work is None:
        raise NotFoundError(WORK_NOT_FOUND)
    editions = await editions_service.list_by_work_id(db, work.id)
    response.headers["Cache-Control"] = "private, max-age=60"
    return {"items": editions}


@router.post(
    "/{work_id}/primary-edition",
    responses={
        400: {"model": ErrorResponse},
        401: {"model": ErrorResponse},
        404: {"model": ErrorResponse},
    },
    summary="Choose a work's primary edition",
)
async def set_primary_edition(
    work_id: str,
    request: Request,
    user: Optional[AuthUser] = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> dict:
    params = validate_input(WorkIdParams, {"workId": work_id}).unwrap()
    body = await read_json_body(request)
    command = validate_input(SetPrimaryEditionCommand, body).unwrap()
    require_user(user)

    work = await works_service.find_by_id(db, uuid.UUID(params.work_id))
    if work is None:
        raise NotFoundError(WORK_NOT_FOUND)
    edition = await works_service.find_edition_by_id(db, uuid.UUID(command.edition_id))
    if edition is None:
        raise NotFoundError("Edition not found or not accessible")
    if edition.work_id != work.id:
        raise BadRequestError("edition_id does not belong to workId")

    await works_service.set_primary_edition(db, work.id, edition.id)

    updated = await works_service.find_by_id_with_primary_edition(db, work.id)
    if updated is None:
        raise NotFoundError(WORK_NOT_FOUND)
    logger.info("Work %s primary edition set to %s", work.id, edition.id)
    return {"work": updated}
