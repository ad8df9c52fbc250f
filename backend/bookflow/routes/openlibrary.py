"""
Bookflow Backend — OpenLibrary Import Route Handlers
======================================================

What:  Import an author, a work (with its primary edition) or a single
       edition from OpenLibrary into the shared catalog.
How:   Validation here; the fetch → upsert → link sequence lives in
       CatalogImportService.

Failure Mapping:
    Unknown OpenLibrary id   → 404 "<Entity> not found"
    OpenLibrary unreachable  → 502 "Could not connect to OpenLibrary..."
    Catalog row missing      → 404 "... not found or not accessible"
"""

import logging
import uuid
from typing import Optional

from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from bookflow.routes.dependencies import get_current_user, get_db, read_json_body, require_user
from bookflow.schemas.auth import AuthUser
from bookflow.schemas.catalog import ImportAuthorCommand, ImportEditionCommand, ImportWorkCommand
from bookflow.schemas.common import ErrorResponse, validate_input
from bookflow.services.import_service import catalog_import_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/openlibrary/import", tags=["OpenLibrary"])

IMPORT_RESPONSES = {
    400: {"model": ErrorResponse},
    404: {"model": ErrorResponse},
    502: {"model": ErrorResponse},
}


@router.post("/author", responses=IMPORT_RESPONSES, summary="Import an author")
async def import_author(request: Request, db: AsyncSession = Depends(get_db)) -> dict:
    """A cached author that is still fresh is returned without calling OpenLibrary."""
    body = await read_json_body(request)
    command = validate_input(ImportAuthorCommand, body).unwrap()
    author = await catalog_import_service.import_author(db, command.openlibrary_id)
    return {"author": author}


@router.post(
    "/work",
    responses={**IMPORT_RESPONSES, 401: {"model": ErrorResponse}},
    summary="Import a work and link it to an author",
)
async def import_work(
    request: Request,
    user: Optional[AuthUser] = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> dict:
    body = await read_json_body(request)
    command = validate_input(ImportWorkCommand, body).unwrap()
    require_user(user)
    work = await catalog_import_service.import_work(
        db, command.openlibrary_id, uuid.UUID(command.author_id)
    )
    return {"work": work}


@router.post(
    "/edition",
    responses={**IMPORT_RESPONSES, 401: {"model": ErrorResponse}},
    summary="Import one edition of a catalogued work",
)
async def import_edition(
    request: Request,
    user: Optional[AuthUser] = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> dict:
    body = await read_json_body(request)
    command = validate_input(ImportEditionCommand, body).unwrap()
    require_user(user)
    edition = await catalog_import_service.import_edition(
        db, command.openlibrary_id, uuid.UUID(command.work_id)
    )
    return {"edition": edition}
