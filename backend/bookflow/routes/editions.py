"""
Bookflow Backend — Editions Route Handler
===========================================

What:  POST /api/editions creates a manual edition of an existing work.
"""

import logging
import uuid
from typing import Optional

from fastapi import APIRouter, Depends, Request, Response
from sqlalchemy.ext.asyncio import AsyncSession

from bookflow.exceptions import NotFoundError, UniqueViolationError
from bookflow.routes.dependencies import get_current_user, get_db, read_json_body, require_user
from bookflow.schemas.auth import AuthUser
from bookflow.schemas.catalog import CreateEditionCommand
from bookflow.schemas.common import ErrorResponse, validate_input
from bookflow.services.editions_service import editions_service
from bookflow.services.works_service import works_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/editions", tags=["Editions"])


@router.post(
    "",
    status_code=201,
    responses={
        400: {"model": ErrorResponse},
        401: {"model": ErrorResponse},
        404: {"model": ErrorResponse},
        409: {"model": ErrorResponse},
    },
    summary="Create a manual edition",
)
async def create_edition(
    request: Request,
    response: Response,
    user: Optional[AuthUser] = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> dict:
    body = await read_json_body(request)
    command = validate_input(CreateEditionCommand, body).unwrap()
    user = require_user(user)

    work = await works_service.find_by_id(db, uuid.UUID(command.work_id))
    if work is None:
        raise NotFoundError("Work not found or not accessible")

    try:
        edition = await editions_service.create_manual_edition(db, user.id, command)
    except UniqueViolationError as e:
        logger.warning("Duplicate ISBN %s from user %s", command.isbn13, user.id)
        raise UniqueViolationError(
            "Edition with this ISBN already exists", constraint=e.constraint
        ) from e

    response.headers["Location"] = f"/api/editions/{edition.id}"
    return {"edition": edition}
