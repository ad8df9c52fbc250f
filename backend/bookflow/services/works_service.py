"""
Bookflow Backend — Works Service
==================================

What:  Everything about works: OpenLibrary cache writes (works, editions,
       author links, primary edition), manual work creation, work lookups,
       the paginated works of an author, and the user's shelf (user_works):
       listing, bulk attach, status updates and detach.
Why:   Works sit between authors and editions; keeping their queries in one
       service keeps the primary-edition join and the shelf filters
       consistent across endpoints.
How:   Async SQLAlchemy against the caller's RLS-scoped session. Shared
       catalog rows are written through SECURITY DEFINER functions
       (`upsert_work_from_ol`, `upsert_edition_from_ol`, `link_author_work`,
       `set_primary_edition`); per-user rows are written directly.

Publication Year:
    Listings expose `publish_year` = primary edition's year, falling back to
    the work's first_publish_year. "published_desc" sorts by it descending
    with unknown years last, then by title.

Shelf Limits:
    profiles.max_works caps a user's shelf. bulk_attach_user_works checks it
    up front and the store trigger enforces it again on insert.
"""

import json
import logging
import uuid
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from sqlalchemy import delete, func, insert, select, text, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from bookflow.database import map_db_error
from bookflow.exceptions import (
    BadRequestError,
    ConflictError,
    DatabaseError,
    NotFoundError,
    UniqueViolationError,
)
from bookflow.models.catalog import Author, AuthorWork, Edition, Work
from bookflow.models.user import Profile, UserWork, UserWorkStatus
from bookflow.schemas.catalog import (
    CreateWorkCommand,
    EditionDto,
    PrimaryEditionSummary,
    WorkDto,
    WorkListItemDto,
)
from bookflow.schemas.user import BulkAttachResult, UserWorkItemDto
from bookflow.services.authors_service import escape_like
from bookflow.services.openlibrary_service import OpenLibraryEdition

logger = logging.getLogger(__name__)

WORKS_PAGE_SIZE = 20

# Marks "no availability filter" in find_user_works; None filters for NULL
ANY_AVAILABILITY: Any = object()


def work_limit_message(max_works: int) -> str:
    return f"Work limit reached ({max_works} works per user)"


def _publish_year():
    return func.coalesce(Edition.publish_year, Work.first_publish_year)


def _work_order(sort: str) -> tuple:
    if sort == "title_asc":
        return (Work.title.asc(), Work.id)
    return (_publish_year().desc().nulls_last(), Work.title.asc(), Work.id)


def _work_dto(work: Work, edition: Optional[Edition], dto=WorkDto, **extra: Any) -> WorkDto:
    """Work row plus its (optional) primary edition as a DTO."""
    data = WorkDto.model_validate(work).model_dump()
    data["primary_edition"] = (
        PrimaryEditionSummary.model_validate(edition) if edition is not None else None
    )
    data.update(extra)
    return dto(**data)


def _extract_id(result: Any, keys: Sequence[str]) -> Optional[uuid.UUID]:
    """
    Find the row id in a SECURITY DEFINER function result.

    The functions return a bare uuid, a JSON object ({"id": ...}) or a list
    of those, depending on their declared return type.
    """
    if isinstance(result, uuid.UUID):
        return result
    if isinstance(result, str) and result:
        try:
            return uuid.UUID(result)
        except ValueError:
            return None
    if isinstance(result, (list, tuple)) and result:
        return _extract_id(result[0], keys)
    if isinstance(result, dict):
        for key in keys:
            found = _extract_id(result.get(key), keys)
            if found is not None:
                return found
    return None


def _as_uuids(ids: Iterable[Any]) -> List[uuid.UUID]:
    return [value if isinstance(value, uuid.UUID) else uuid.UUID(str(value)) for value in ids]


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


class WorksService:
    """Stateless work operations; every method receives the request session."""

    # ── OpenLibrary cache (RPC) ───────────────────────────────────────────
    async def upsert_work_from_openlibrary(
        self,
        db: AsyncSession,
        openlibrary_id: str,
        title: str,
        first_publish_year: Optional[int] = None,
    ) -> WorkDto:
        """Insert or refresh an OpenLibrary work and return the stored row."""
        payload = {
            "openlibrary_id": openlibrary_id,
            "title": title.strip(),
            "first_publish_year": first_publish_year,
        }
        try:
            result = await db.execute(
                text("SELECT public.upsert_work_from_ol(CAST(:work_data AS jsonb))"),
                {"work_data": json.dumps(payload)},
            )
            work_id = _extract_id(result.scalar(), ("id", "work_id"))
            lookup = Work.id == work_id if work_id else Work.openlibrary_id == openlibrary_id
            work = (await db.execute(select(Work).where(lookup))).scalar_one_or_none()
        except SQLAlchemyError as e:
            raise map_db_error(e, "Failed to upsert work from OpenLibrary") from e
        if work is None:
            raise DatabaseError(
                message="Failed to retrieve upserted work from database",
                context={"openlibrary_id": openlibrary_id},
            )
        return WorkDto.model_validate(work)

    async def upsert_edition_from_openlibrary(
        self,
        db: AsyncSession,
        work_id: uuid.UUID,
        edition: OpenLibraryEdition,
        fetched_at: Optional[datetime] = None,
        expires_at: Optional[datetime] = None,
    ) -> EditionDto:
        """Insert or refresh an OpenLibrary edition of `work_id`."""
        payload = {
            "work_id": str(work_id),
            "openlibrary_id": edition.openlibrary_id,
            "title": edition.title.strip(),
            "publish_year": edition.publish_year,
            "publish_date": edition.publish_date,
            "publish_date_raw": edition.publish_date_raw,
            "isbn13": edition.isbn13,
            "cover_url": edition.cover_url,
            "language": edition.language,
            "ol_fetched_at": _iso(fetched_at),
            "ol_expires_at": _iso(expires_at),
        }
        try:
            result = await db.execute(
                text("SELECT public.upsert_edition_from_ol(CAST(:edition_data AS jsonb))"),
                {"edition_data": json.dumps(payload)},
            )
            edition_id = _extract_id(result.scalar(), ("id", "edition_id"))
            lookup = (
                Edition.id == edition_id
                if edition_id
                else Edition.openlibrary_id == edition.openlibrary_id
            )
            row = (await db.execute(select(Edition).where(lookup))).scalar_one_or_none()
        except SQLAlchemyError as e:
            raise map_db_error(e, "Failed to upsert edition from OpenLibrary") from e
        if row is None:
            raise DatabaseError(
                message="Failed to retrieve upserted edition from database",
                context={"openlibrary_id": edition.openlibrary_id},
            )
        return EditionDto.model_validate(row)

    async def link_author_work(
        self, db: AsyncSession, author_id: uuid.UUID, work_id: uuid.UUID
    ) -> None:
        try:
            await db.execute(
                text(
                    "SELECT public.link_author_work("
                    "CAST(:author_id AS uuid), CAST(:work_id AS uuid))"
                ),
                {"author_id": str(author_id), "work_id": str(work_id)},
            )
        except SQLAlchemyError as e:
            raise map_db_error(e, "Failed to link author and work") from e

    async def set_primary_edition(
        self, db: AsyncSession, work_id: uuid.UUID, edition_id: uuid.UUID
    ) -> None:
        try:
            await db.execute(
                text(
                    "SELECT public.set_primary_edition("
                    "CAST(:work_id AS uuid), CAST(:edition_id AS uuid))"
                ),
                {"work_id": str(work_id), "edition_id": str(edition_id)},
            )
        except SQLAlchemyError as e:
            raise map_db_error(e, "Failed to set primary edition") from e

    # ── Manual works ──────────────────────────────────────────────────────
    async def check_user_work_limit(
        self, db: AsyncSession, user_id: uuid.UUID
    ) -> Tuple[int, int]:
        """
        Returns:
            (work_count, max_works)
        Raises:
            DatabaseError: The user has no profile row
        """
        try:
            result = await db.execute(
                select(Profile.work_count, Profile.max_works).where(Profile.user_id == user_id)
            )
        except SQLAlchemyError as e:
            raise map_db_error(e, "Failed to fetch user profile") from e
        row = result.one_or_none()
        if row is None:
            raise DatabaseError(
                message=f"User profile not found for user {user_id}",
                context={"user_id": str(user_id)},
            )
        return row.work_count, row.max_works

    async def verify_authors_exist(
        self, db: AsyncSession, author_ids: Sequence[Any]
    ) -> List[str]:
        """Ids from `author_ids` that do not exist or are not visible."""
        if not author_ids:
            return []
        try:
            result = await db.execute(select(Author.id).where(Author.id.in_(_as_uuids(author_ids))))
        except SQLAlchemyError as e:
            raise map_db_error(e, "Failed to verify authors") from e
        found = {str(author_id) for author_id in result.scalars().all()}
        return [str(a) for a in author_ids if str(uuid.UUID(str(a))) not in found]

    async def create_manual_work(
        self, db: AsyncSession, user_id: uuid.UUID, command: CreateWorkCommand
    ) -> WorkDto:
        """
        Create a manual work, link its authors and optionally set its
        primary edition.

        Raises:
            CheckViolationError: works_manual_owner / works_manual_or_ol
            PermissionDeniedError: RLS refused the insert
            NotFoundError: primary_edition_id does not exist
            BadRequestError: primary edition belongs to another work
            DatabaseError: Any other failure
        """
        work = Work(
            title=command.title.strip(),
            manual=True,
            owner_user_id=user_id,
            openlibrary_id=None,
            first_publish_year=command.first_publish_year,
            primary_edition_id=None,
        )
        db.add(work)
        try:
            await db.flush()
        except SQLAlchemyError as e:
            raise map_db_error(
                e,
                "Failed to create work",
                denied_message="Cannot create manual work without ownership",
                context={"user_id": str(user_id)},
            ) from e

        if command.author_ids:
            db.add_all(
                AuthorWork(author_id=author_id, work_id=work.id)
                for author_id in _as_uuids(command.author_ids)
            )
            try:
                await db.flush()
            except SQLAlchemyError as e:
                raise map_db_error(e, "Failed to create author-work links") from e

        if command.primary_edition_id:
            edition = await self.find_edition_by_id(db, uuid.UUID(command.primary_edition_id))
            if edition is None:
                raise NotFoundError(f"Primary edition not found: {command.primary_edition_id}")
            if edition.work_id != work.id:
                raise BadRequestError("Primary edition does not belong to this work")
            work.primary_edition_id = edition.id
            try:
                await db.flush()
            except SQLAlchemyError as e:
                raise map_db_error(e, "Failed to set primary edition") from e

        try:
            await db.refresh(work)
        except SQLAlchemyError as e:
            raise map_db_error(e, "Failed to create work") from e
        logger.info("Created manual work %s for user %s", work.id, user_id)

        created = await self.find_by_id_with_primary_edition(db, work.id)
        return created if created is not None else WorkDto.model_validate(work)

    # ── Lookups ───────────────────────────────────────────────────────────
    async def find_by_id(self, db: AsyncSession, work_id: uuid.UUID) -> Optional[WorkDto]:
        try:
            result = await db.execute(select(Work).where(Work.id == work_id))
        except SQLAlchemyError as e:
            raise map_db_error(e, "Failed to fetch work from database") from e
        work = result.scalar_one_or_none()
        return WorkDto.model_validate(work) if work is not None else None

    async def find_edition_by_id(
        self, db: AsyncSession, edition_id: uuid.UUID
    ) -> Optional[EditionDto]:
        try:
            result = await db.execute(select(Edition).where(Edition.id == edition_id))
        except SQLAlchemyError as e:
            raise map_db_error(e, "Failed to fetch edition from database") from e
        edition = result.scalar_one_or_none()
        return EditionDto.model_validate(edition) if edition is not None else None

    async def find_by_id_with_primary_edition(
        self, db: AsyncSession, work_id: uuid.UUID
    ) -> Optional[WorkDto]:
        """Work with its primary edition summary, or None when not visible."""
        query = (
            select(Work, Edition)
            .outerjoin(Edition, Edition.id == Work.primary_edition_id)
            .where(Work.id == work_id)
        )
        try:
            row = (await db.execute(query)).first()
        except SQLAlchemyError as e:
            raise map_db_error(e, "Failed to fetch work from database") from e
        if row is None:
            return None
        work, edition = row
        return _work_dto(work, edition)

    async def find_works_by_author_id(
        self,
        db: AsyncSession,
        author_id: uuid.UUID,
        page: int = 1,
        sort: str = "published_desc",
    ) -> Tuple[List[WorkListItemDto], int]:
        """
        One page (20) of an author's works with their primary editions.

        Returns:
            (items, total)
        """
        conditions = [AuthorWork.author_id == author_id]
        query = (
            select(Work, Edition, _publish_year().label("publish_year"))
            .join(AuthorWork, AuthorWork.work_id == Work.id)
            .outerjoin(Edition, Edition.id == Work.primary_edition_id)
            .where(*conditions)
            .order_by(*_work_order(sort))
            .offset((page - 1) * WORKS_PAGE_SIZE)
            .limit(WORKS_PAGE_SIZE)
        )
        count_query = (
            select(func.count())
            .select_from(AuthorWork)
            .join(Work, Work.id == AuthorWork.work_id)
            .where(*conditions)
        )
        try:
            total = (await db.execute(count_query)).scalar() or 0
            rows = (await db.execute(query)).all()
        except SQLAlchemyError as e:
            logger.error("Database error listing works of author %s: %s", author_id, e)
            raise map_db_error(e, "Failed to fetch works") from e

        items = [
            _work_dto(work, edition, WorkListItemDto, publish_year=publish_year)
            for work, edition, publish_year in rows
        ]
        return items, total

    # ── User shelf ────────────────────────────────────────────────────────
    async def _user_work_items(
        self,
        db: AsyncSession,
        conditions: list,
        order: tuple = (),
        offset: Optional[int] = None,
        limit: Optional[int] = None,
    ) -> List[UserWorkItemDto]:
        query = (
            select(UserWork, Work, Edition)
            .join(Work, Work.id == UserWork.work_id)
            .outerjoin(Edition, Edition.id == Work.primary_edition_id)
            .where(*conditions)
        )
        if order:
            query = query.order_by(*order)
        if offset is not None:
            query = query.offset(offset)
        if limit is not None:
            query = query.limit(limit)
        rows = (await db.execute(query)).all()
        return [
            UserWorkItemDto(
                work=_work_dto(work, edition),
                status=user_work.status,
                available_in_legimi=user_work.available_in_legimi,
                status_updated_at=user_work.status_updated_at,
                created_at=user_work.created_at,
                updated_at=user_work.updated_at,
            )
            for user_work, work, edition in rows
        ]

    async def find_user_works(
        self,
        db: AsyncSession,
        user_id: uuid.UUID,
        page: int = 1,
        status: Optional[List[UserWorkStatus]] = None,
        available: Any = ANY_AVAILABILITY,
        sort: str = "published_desc",
        author_id: Optional[uuid.UUID] = None,
        search: Optional[str] = None,
    ) -> Tuple[List[UserWorkItemDto], int]:
        """
        One page (20) of the user's shelf.

        Args:
            status:    Keep only these statuses (None or [] = all)
            available: True / False / None filters available_in_legimi;
                       ANY_AVAILABILITY disables the filter
            author_id: Keep only works linked to this author
            search:    Case-insensitive substring of the work title
        Returns:
            (items, total)
        """
        conditions: list = [UserWork.user_id == user_id]
        if status:
            conditions.append(UserWork.status.in_(status))
        if available is None:
            conditions.append(UserWork.available_in_legimi.is_(None))
        elif available is not ANY_AVAILABILITY:
            conditions.append(UserWork.available_in_legimi.is_(bool(available)))
        if author_id is not None:
            conditions.append(
                Work.id.in_(select(AuthorWork.work_id).where(AuthorWork.author_id == author_id))
            )
        if search and search.strip():
            conditions.append(
                Work.title.ilike(f"%{escape_like(search.strip())}%", escape="\\")
            )

        count_query = (
            select(func.count())
            .select_from(UserWork)
            .join(Work, Work.id == UserWork.work_id)
            .where(*conditions)
        )
        try:
            total = (await db.execute(count_query)).scalar() or 0
            items = await self._user_work_items(
                db,
                conditions,
                order=_work_order(sort),
                offset=(page - 1) * WORKS_PAGE_SIZE,
                limit=WORKS_PAGE_SIZE,
            )
        except SQLAlchemyError as e:
            logger.error("Database error listing works of user %s: %s", user_id, e)
            raise map_db_error(e, "Failed to fetch user works") from e
        return items, total

    async def verify_works_exist(
        self, db: AsyncSession, work_ids: Sequence[uuid.UUID]
    ) -> List[uuid.UUID]:
        """The subset of `work_ids` that exists and is visible, in input order."""
        if not work_ids:
            return []
        try:
            result = await db.execute(select(Work.id).where(Work.id.in_(work_ids)))
        except SQLAlchemyError as e:
            raise map_db_error(e, "Failed to verify works") from e
        found = set(result.scalars().all())
        return [work_id for work_id in work_ids if work_id in found]

    async def find_existing_user_works(
        self, db: AsyncSession, user_id: uuid.UUID, work_ids: Sequence[uuid.UUID]
    ) -> List[uuid.UUID]:
        """The subset of `work_ids` already on the user's shelf, in input order."""
        if not work_ids:
            return []
        try:
            result = await db.execute(
                select(UserWork.work_id).where(
                    UserWork.user_id == user_id, UserWork.work_id.in_(work_ids)
                )
            )
        except SQLAlchemyError as e:
            raise map_db_error(e, "Failed to find existing user works") from e
        found = set(result.scalars().all())
        return [work_id for work_id in work_ids if work_id in found]

    async def bulk_attach_user_works(
        self,
        db: AsyncSession,
        user_id: uuid.UUID,
        work_ids: Sequence[Any],
        status: UserWorkStatus = UserWorkStatus.TO_READ,
    ) -> BulkAttachResult:
        """
        Put works on the user's shelf.

        Works that do not exist (or are hidden) and works already on the
        shelf are reported as skipped. If a concurrent request attached some
        of the same works first, those are skipped as well.

        Raises:
            ConflictError: The shelf would exceed max_works
            PermissionDeniedError: RLS refused the insert
        """
        ids = _as_uuids(work_ids)
        if not ids:
            return BulkAttachResult(added=[], skipped=[])

        work_count, max_works = await self.check_user_work_limit(db, user_id)
        available = await self.verify_works_exist(db, ids)
        unavailable = [work_id for work_id in ids if work_id not in available]
        existing = await self.find_existing_user_works(db, user_id, available)
        new_ids = [work_id for work_id in available if work_id not in existing]

        if work_count + len(new_ids) > max_works:
            raise ConflictError(work_limit_message(max_works))
        if not new_ids:
            return BulkAttachResult(added=[], skipped=unavailable + existing)

        rows = [
            {"user_id": user_id, "work_id": work_id, "status": status, "available_in_legimi": None}
            for work_id in new_ids
        ]
        try:
            async with db.begin_nested():
                result = await db.execute(
                    insert(UserWork).values(rows).returning(UserWork.work_id)
                )
                added = list(result.scalars().all())
        except SQLAlchemyError as e:
            error = map_db_error(
                e,
                "Failed to attach works",
                denied_message="Cannot attach works: insufficient permissions",
                context={"user_id": str(user_id), "count": len(new_ids)},
            )
            if isinstance(error, UniqueViolationError):
                inserted = await self.find_existing_user_works(db, user_id, new_ids)
                raced = [work_id for work_id in new_ids if work_id not in inserted]
                logger.warning(
                    "Concurrent attach for user %s: %d works already present",
                    user_id,
                    len(inserted),
                )
                return BulkAttachResult(added=inserted, skipped=unavailable + existing + raced)
            detail = str(getattr(e, "orig", e)).lower()
            if "work limit" in detail or "max_works" in detail:
                raise ConflictError(work_limit_message(max_works)) from e
            raise error from e

        logger.info(
            "User %s attached %d works (%d skipped)",
            user_id,
            len(added),
            len(unavailable) + len(existing),
        )
        return BulkAttachResult(added=added, skipped=unavailable + existing)

    async def is_work_attached(
        self, db: AsyncSession, user_id: uuid.UUID, work_id: uuid.UUID
    ) -> bool:
        try:
            result = await db.execute(
                select(UserWork.work_id).where(
                    UserWork.user_id == user_id, UserWork.work_id == work_id
                )
            )
        except SQLAlchemyError as e:
            raise map_db_error(e, "Failed to check if work is attached") from e
        return result.first() is not None

    def _update_values(self, changes: Dict[str, Any]) -> Dict[str, Any]:
        values = dict(changes)
        if "status" in values:
            values["status_updated_at"] = func.now()
        values["updated_at"] = func.now()
        return values

    async def update_user_work(
        self,
        db: AsyncSession,
        user_id: uuid.UUID,
        work_id: uuid.UUID,
        changes: Dict[str, Any],
    ) -> Optional[UserWorkItemDto]:
        """
        Change status and/or availability of one shelf entry.

        Returns:
            The updated item, or None when the work is not on the shelf.
        Raises:
            PermissionDeniedError: RLS refused the update
        """
        try:
            result = await db.execute(
                update(UserWork)
                .where(UserWork.user_id == user_id, UserWork.work_id == work_id)
                .values(**self._update_values(changes))
                .returning(UserWork.work_id)
            )
            if result.first() is None:
                return None
            items = await self._user_work_items(
                db, [UserWork.user_id == user_id, UserWork.work_id == work_id]
            )
        except SQLAlchemyError as e:
            raise map_db_error(
                e,
                "Failed to update work",
                denied_message="Cannot update work: insufficient permissions",
            ) from e
        logger.info("User %s updated work %s: %s", user_id, work_id, sorted(changes))
        return items[0] if items else None

    async def bulk_update_user_works(
        self,
        db: AsyncSession,
        user_id: uuid.UUID,
        work_ids: Sequence[Any],
        changes: Dict[str, Any],
    ) -> List[UserWorkItemDto]:
        """
        Apply the same change to several shelf entries.

        Ids not on the shelf are ignored; the result holds the updated items.
        """
        ids = _as_uuids(work_ids)
        if not ids:
            return []
        try:
            result = await db.execute(
                update(UserWork)
                .where(UserWork.user_id == user_id, UserWork.work_id.in_(ids))
                .values(**self._update_values(changes))
                .returning(UserWork.work_id)
            )
            updated = list(result.scalars().all())
            if not updated:
                return []
            items = await self._user_work_items(
                db,
                [UserWork.user_id == user_id, UserWork.work_id.in_(updated)],
                order=(Work.title.asc(), Work.id),
            )
        except SQLAlchemyError as e:
            raise map_db_error(
                e,
                "Failed to update works",
                denied_message="Cannot update works: insufficient permissions",
            ) from e
        logger.info("User %s updated %d works: %s", user_id, len(updated), sorted(changes))
        return items

    async def detach_user_work(
        self, db: AsyncSession, user_id: uuid.UUID, work_id: uuid.UUID
    ) -> None:
        """
        Raises:
            NotFoundError: The work was not on the shelf
            PermissionDeniedError: RLS refused the delete
        """
        try:
            result = await db.execute(
                delete(UserWork)
                .where(UserWork.user_id == user_id, UserWork.work_id == work_id)
                .returning(UserWork.work_id)
            )
        except SQLAlchemyError as e:
            raise map_db_error(
                e,
                "Failed to detach work",
                denied_message="Cannot detach work: insufficient permissions",
            ) from e
        if result.first() is None:
            raise NotFoundError("Work is not attached to user profile")
        logger.info("User %s detached work %s", user_id, work_id)


works_service = WorksService()
