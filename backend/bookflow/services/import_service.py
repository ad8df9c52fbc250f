"""
Bookflow Backend — OpenLibrary Import Orchestrator
====================================================

What:  Coordinates OpenLibraryService with the catalog services: author
       search with cache merging, single author/work/edition imports, the
       forced refresh of an author, and the automatic import of an author's
       bibliography the first time their works are listed.
Why:   The same fetch → upsert → link sequence backs several endpoints;
       routes stay limited to HTTP concerns.
Who:   Called by the authors and openlibrary route handlers.

Orchestration Flow (POST /api/openlibrary/import/work):
    ┌─────────────┐    ┌──────────────┐    ┌──────────────┐    ┌────────────┐
    │ Author in   │───▶│ Fetch work   │───▶│ Upsert work, │───▶│ Pick + set │
    │ catalog?    │    │ + editions   │    │ link author  │    │ primary ed.│
    └─────────────┘    └──────────────┘    └──────────────┘    └────────────┘

Cache Freshness:
    Imported authors carry ol_fetched_at / ol_expires_at (now + 7 days by
    default). A cached author whose ol_expires_at is still in the future is
    served without calling OpenLibrary.

Best-Effort Steps:
    Search-cache reads and writes, forced refreshes and the per-work steps
    of an auto-import run inside SAVEPOINTs. A failure is logged and rolled
    back to the savepoint, and the request carries on with what it has.
"""

import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from bookflow.config import settings
from bookflow.exceptions import BookflowError, NotFoundError
from bookflow.schemas.catalog import (
    AuthorDto,
    AuthorSearchResultDto,
    EditionDto,
    WorkDto,
)
from bookflow.services.authors_service import AuthorsService, authors_service
from bookflow.services.openlibrary_service import (
    OpenLibraryService,
    OpenLibraryWork,
    openlibrary_service,
    select_primary_edition,
)
from bookflow.services.works_service import WorksService, works_service

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def cache_window(now: Optional[datetime] = None) -> tuple:
    """(fetched_at, expires_at) for a row cached at `now`."""
    fetched_at = now or utcnow()
    return fetched_at, fetched_at + timedelta(days=settings.openlibrary_cache_ttl_days)


def is_cache_fresh(author: AuthorDto, now: Optional[datetime] = None) -> bool:
    return author.ol_expires_at is not None and author.ol_expires_at > (now or utcnow())


class CatalogImportService:
    def __init__(
        self,
        openlibrary: OpenLibraryService = openlibrary_service,
        authors: AuthorsService = authors_service,
        works: WorksService = works_service,
    ):
        self.openlibrary = openlibrary
        self.authors = authors
        self.works = works

    # ── Author search ─────────────────────────────────────────────────────
    async def search_authors(
        self, db: AsyncSession, query: str, limit: int
    ) -> List[AuthorSearchResultDto]:
        """
        Search OpenLibrary and merge the hits with the author cache.

        Fresh cached rows are returned as stored (with their catalog id).
        Missing or stale ones are returned from the OpenLibrary data and
        written back to the cache.

        Raises:
            ExternalServiceError: The OpenLibrary search failed
        """
        hits = await self.openlibrary.search_authors(query, limit)
        if not hits:
            return []

        cached: Dict[str, AuthorDto] = {}
        try:
            async with db.begin_nested():
                cached = await self.authors.find_by_openlibrary_ids(
                    db, [hit.openlibrary_id for hit in hits]
                )
        except BookflowError as e:
            logger.warning("Author cache lookup failed, continuing without cache: %s", e.message)

        now = utcnow()
        fetched_at, expires_at = cache_window(now)
        results: List[AuthorSearchResultDto] = []
        to_cache: List[dict] = []
        for hit in hits:
            row = cached.get(hit.openlibrary_id)
            if row is not None and is_cache_fresh(row, now):
                results.append(
                    AuthorSearchResultDto(
                        id=row.id,
                        openlibrary_id=hit.openlibrary_id,
                        name=row.name,
                        ol_fetched_at=row.ol_fetched_at,
                        ol_expires_at=row.ol_expires_at,
                    )
                )
                continue
            results.append(
                AuthorSearchResultDto(
                    id=row.id if row is not None else None,
                    openlibrary_id=hit.openlibrary_id,
                    name=hit.name,
                    ol_fetched_at=fetched_at,
                    ol_expires_at=expires_at,
                )
            )
            to_cache.append(
                {
                    "openlibrary_id": hit.openlibrary_id,
                    "name": hit.name,
                    "ol_fetched_at": fetched_at,
                    "ol_expires_at": expires_at,
                }
            )

        if to_cache:
            try:
                async with db.begin_nested():
                    await self.authors.upsert_authors_cache(db, to_cache)
            except BookflowError as e:
                logger.error("Failed to cache %d searched authors: %s", len(to_cache), e.message)
        return results

    # ── Single imports ────────────────────────────────────────────────────
    async def import_author(self, db: AsyncSession, openlibrary_id: str) -> AuthorDto:
        """
        Cached author, or fetched from OpenLibrary and cached.

        Raises:
            OpenLibraryNotFoundError: Unknown OpenLibrary id (404)
            ExternalServiceError: OpenLibrary unreachable (502)
        """
        cached = await self.authors.find_by_openlibrary_id(db, openlibrary_id)
        if cached is not None and is_cache_fresh(cached):
            logger.debug("Author %s served from cache", openlibrary_id)
            return cached

        ol_author = await self.openlibrary.fetch_author_by_openlibrary_id(openlibrary_id)
        fetched_at, expires_at = cache_window()
        author = await self.authors.upsert_author_from_openlibrary(
            db, ol_author.openlibrary_id, ol_author.name, fetched_at, expires_at
        )
        logger.info("Imported author %s (%s)", openlibrary_id, author.id)
        return author

    async def _import_primary_edition(
        self, db: AsyncSession, work_id: uuid.UUID, ol_work: OpenLibraryWork
    ) -> None:
        editions = await self.openlibrary.fetch_work_editions_by_openlibrary_id(
            ol_work.openlibrary_id
        )
        selected = select_primary_edition(ol_work, editions)
        if selected is None:
            logger.debug("Work %s has no editions in OpenLibrary", ol_work.openlibrary_id)
            return
        fetched_at, expires_at = cache_window()
        edition = await self.works.upsert_edition_from_openlibrary(
            db, work_id, selected, fetched_at, expires_at
        )
        await self.works.set_primary_edition(db, work_id, edition.id)

    async def import_work(
        self, db: AsyncSession, openlibrary_id: str, author_id: uuid.UUID
    ) -> WorkDto:
        """
        Import a work with its primary edition and link it to `author_id`.

        Raises:
            NotFoundError: The author is not in the catalog (or not visible)
            OpenLibraryNotFoundError: Unknown OpenLibrary work id
            ExternalServiceError: OpenLibrary unreachable
        """
        author = await self.authors.find_by_id(db, author_id)
        if author is None:
            raise NotFoundError("Author not found or not accessible")

        ol_work = await self.openlibrary.fetch_work_by_openlibrary_id(openlibrary_id)
        work = await self.works.upsert_work_from_openlibrary(
            db, ol_work.openlibrary_id, ol_work.title, ol_work.first_publish_year
        )
        await self._import_primary_edition(db, work.id, ol_work)
        await self.works.link_author_work(db, author_id, work.id)

        imported = await self.works.find_by_id_with_primary_edition(db, work.id)
        if imported is None:
            raise NotFoundError("Work not found or not accessible")
        logger.info("Imported work %s (%s) for author %s", openlibrary_id, work.id, author_id)
        return imported

    async def import_edition(
        self, db: AsyncSession, openlibrary_id: str, work_id: uuid.UUID
    ) -> EditionDto:
        """
        Import one OpenLibrary edition of an existing work.

        Raises:
            NotFoundError: The work is not in the catalog (or not visible)
            OpenLibraryNotFoundError: Unknown OpenLibrary edition id
            ExternalServiceError: OpenLibrary unreachable
        """
        work = await self.works.find_by_id(db, work_id)
        if work is None:
            raise NotFoundError("Work not found or not accessible")

        ol_edition = await self.openlibrary.fetch_edition_by_openlibrary_id(openlibrary_id)
        fetched_at, expires_at = cache_window()
        edition = await self.works.upsert_edition_from_openlibrary(
            db, work_id, ol_edition, fetched_at, expires_at
        )
        logger.info("Imported edition %s (%s) of work %s", openlibrary_id, edition.id, work_id)
        return edition

    # ── Author bibliography ───────────────────────────────────────────────
    async def refresh_author(self, db: AsyncSession, author: AuthorDto) -> AuthorDto:
        """
        Re-fetch an imported author from OpenLibrary, ignoring the cache.

        Failures are logged and the cached row is returned unchanged.
        """
        if not author.openlibrary_id:
            logger.debug("Refresh skipped for manual author %s", author.id)
            return author
        try:
            ol_author = await self.openlibrary.fetch_author_by_openlibrary_id(
                author.openlibrary_id
            )
            fetched_at, expires_at = cache_window()
            async with db.begin_nested():
                refreshed = await self.authors.upsert_author_from_openlibrary(
                    db, ol_author.openlibrary_id, ol_author.name, fetched_at, expires_at
                )
        except BookflowError as e:
            logger.warning(
                "Refresh of author %s failed, using cached data: %s", author.id, e.message
            )
            return author
        return refreshed

    async def import_author_works(self, db: AsyncSession, author: AuthorDto) -> int:
        """
        Import an author's works (and their primary editions) from OpenLibrary.

        Each work is imported in its own savepoint: a failing work is skipped,
        a failing primary edition leaves the work without one.

        Returns:
            Number of works imported.
        """
        if not author.openlibrary_id:
            return 0
        try:
            ol_works = await self.openlibrary.fetch_author_works(author.openlibrary_id)
        except BookflowError as e:
            logger.error("Auto-import for author %s failed: %s", author.id, e.message)
            return 0

        imported = 0
        for ol_work in ol_works:
            try:
                async with db.begin_nested():
                    work = await self.works.upsert_work_from_openlibrary(
                        db, ol_work.openlibrary_id, ol_work.title, ol_work.first_publish_year
                    )
                    await self.works.link_author_work(db, author.id, work.id)
            except BookflowError as e:
                logger.warning(
                    "Failed to import work %s of author %s: %s",
                    ol_work.openlibrary_id,
                    author.id,
                    e.message,
                )
                continue
            imported += 1
            try:
                async with db.begin_nested():
                    await self._import_primary_edition(db, work.id, ol_work)
            except BookflowError as e:
                logger.warning(
                    "Failed to import primary edition of work %s: %s", work.id, e.message
                )

        logger.info(
            "Auto-imported %d/%d works for author %s", imported, len(ol_works), author.id
        )
        return imported


catalog_import_service = CatalogImportService()
