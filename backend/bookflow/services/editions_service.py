"""
Bookflow Backend — Editions Service
=====================================

What:  Lookups on editions and creation of manual editions.
How:   Async SQLAlchemy against the caller's RLS-scoped session. Imported
       (OpenLibrary) editions are written by WorksService through the
       `upsert_edition_from_ol` function instead.

Ordering:
    `list_by_work_id` returns newest first: publish_year DESC with undated
    editions last, ties broken by created_at DESC. The query orders the rows
    and the result is re-sorted with the same key, so the order never
    depends on how the engine breaks ties.
"""

import logging
import uuid
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from bookflow.database import map_db_error
from bookflow.models.catalog import Edition
from bookflow.schemas.catalog import CreateEditionCommand, EditionDto

logger = logging.getLogger(__name__)


def sort_editions(editions: List[EditionDto]) -> List[EditionDto]:
    """Newest first: year descending, undated last, then created_at descending."""
    by_created = sorted(editions, key=lambda e: e.created_at, reverse=True)
    return sorted(
        by_created,
        key=lambda e: (e.publish_year is None, -(e.publish_year or 0)),
    )


class EditionsService:
    async def find_by_openlibrary_id(
        self, db: AsyncSession, openlibrary_id: str
    ) -> Optional[EditionDto]:
        try:
            result = await db.execute(
                select(Edition).where(Edition.openlibrary_id == openlibrary_id)
            )
        except SQLAlchemyError as e:
            raise map_db_error(e, "Failed to fetch edition from database") from e
        edition = result.scalar_one_or_none()
        return EditionDto.model_validate(edition) if edition is not None else None

    async def find_by_isbn13(self, db: AsyncSession, isbn13: str) -> Optional[EditionDto]:
        try:
            result = await db.execute(select(Edition).where(Edition.isbn13 == isbn13))
        except SQLAlchemyError as e:
            raise map_db_error(e, "Failed to fetch edition from database") from e
        edition = result.scalar_one_or_none()
        return EditionDto.model_validate(edition) if edition is not None else None

    async def list_by_work_id(self, db: AsyncSession, work_id: uuid.UUID) -> List[EditionDto]:
        """All visible editions of a work, newest first (see module docstring)."""
        query = (
            select(Edition)
            .where(Edition.work_id == work_id)
            .order_by(
                Edition.publish_year.desc().nulls_last(),
                Edition.created_at.desc(),
            )
        )
        try:
            result = await db.execute(query)
        except SQLAlchemyError as e:
            logger.error("Database error listing editions of work %s: %s", work_id, e)
            raise map_db_error(e, "Failed to fetch editions") from e
        return sort_editions([EditionDto.model_validate(e) for e in result.scalars().all()])

    async def create_manual_edition(
        self, db: AsyncSession, user_id: uuid.UUID, command: CreateEditionCommand
    ) -> EditionDto:
        """
        Insert a manual edition owned by `user_id`.

        Raises:
            UniqueViolationError: editions_isbn13_key (ISBN already catalogued)
            CheckViolationError: editions_manual_owner / editions_manual_or_ol
            PermissionDeniedError: RLS refused the insert
            DatabaseError: Any other failure
        """
        edition = Edition(
            work_id=uuid.UUID(command.work_id),
            title=command.title.strip(),
            manual=True,
            owner_user_id=user_id,
            openlibrary_id=None,
            publish_year=command.publish_year,
            publish_date=command.publish_date,
            publish_date_raw=command.publish_date_raw,
            isbn13=command.isbn13,
            cover_url=command.cover_url,
            language=command.language,
        )
        db.add(edition)
        try:
            await db.flush()
            await db.refresh(edition)
        except SQLAlchemyError as e:
            raise map_db_error(
                e,
                "Failed to create edition",
                denied_message="Cannot create manual edition without ownership",
                context={"user_id": str(user_id), "work_id": command.work_id},
            ) from e
        logger.info("Created manual edition %s of work %s", edition.id, edition.work_id)
        return EditionDto.model_validate(edition)


editions_service = EditionsService()
