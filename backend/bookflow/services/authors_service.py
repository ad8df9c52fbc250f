"""
Bookflow Backend — Authors Service
====================================

What:  Catalog operations on authors (lookups, OpenLibrary cache upserts,
       manual creation) and the user↔author association (attach, detach,
       paginated listing).
Why:   Every author endpoint funnels through here, so store failures are
       translated into named exceptions in exactly one place.
How:   Async SQLAlchemy queries against the caller's RLS-scoped session.
       OpenLibrary cache writes go through the SECURITY DEFINER function
       `upsert_authors_cache`, since anon/authenticated roles may not write
       shared catalog rows directly.

Contract:
    "Not found" is a value: lookups return None / {} / ([], 0).
    Store failures raise: UniqueViolationError / CheckViolationError /
    PermissionDeniedError / ConflictError / DatabaseError.
"""

import json
import logging
import uuid
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple

from sqlalchemy import delete, func, select, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from bookflow.database import map_db_error
from bookflow.exceptions import (
    ConflictError,
    DatabaseError,
    NotFoundError,
    UniqueViolationError,
)
from bookflow.models.catalog import Author
from bookflow.models.user import Profile, UserAuthor
from bookflow.schemas.catalog import AuthorDto
from bookflow.schemas.user import UserAuthorDto

logger = logging.getLogger(__name__)

USER_AUTHORS_PAGE_SIZE = 30


def escape_like(term: str) -> str:
    """Escape LIKE wildcards so user input matches literally."""
    return term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def author_limit_message(max_authors: int) -> str:
    return f"Author limit reached ({max_authors} authors per user)"


class AuthorsService:
    """Stateless author operations; every method receives the request session."""

    # ── Lookups ───────────────────────────────────────────────────────────
    async def find_by_id(self, db: AsyncSession, author_id: uuid.UUID) -> Optional[AuthorDto]:
        """Author by id, or None when missing or hidden by RLS."""
        try:
            result = await db.execute(select(Author).where(Author.id == author_id))
        except SQLAlchemyError as e:
            raise map_db_error(e, "Failed to fetch author from database") from e
        author = result.scalar_one_or_none()
        return AuthorDto.model_validate(author) if author is not None else None

    async def find_by_openlibrary_id(
        self, db: AsyncSession, openlibrary_id: str
    ) -> Optional[AuthorDto]:
        try:
            result = await db.execute(
                select(Author).where(Author.openlibrary_id == openlibrary_id)
            )
        except SQLAlchemyError as e:
            raise map_db_error(e, "Failed to fetch author from database") from e
        author = result.scalar_one_or_none()
        return AuthorDto.model_validate(author) if author is not None else None

    async def find_by_openlibrary_ids(
        self, db: AsyncSession, openlibrary_ids: List[str]
    ) -> Dict[str, AuthorDto]:
        """
        Cached authors keyed by OpenLibrary id, for merging search results.

        Ids with no cached row are simply absent from the mapping.
        """
        if not openlibrary_ids:
            return {}
        try:
            result = await db.execute(
                select(Author).where(
                    Author.openlibrary_id.in_(openlibrary_ids),
                    Author.openlibrary_id.is_not(None),
                )
            )
        except SQLAlchemyError as e:
            raise map_db_error(e, "Failed to fetch authors from database") from e
        return {
            author.openlibrary_id: AuthorDto.model_validate(author)
            for author in result.scalars().all()
        }

    # ── OpenLibrary cache ─────────────────────────────────────────────────
    async def upsert_authors_cache(
        self, db: AsyncSession, entries: Iterable[Dict[str, Any]]
    ) -> None:
        """
        Insert or refresh cached OpenLibrary authors in one call.

        Args:
            entries: Dicts with openlibrary_id, name, ol_fetched_at, ol_expires_at
                     (datetimes are serialized to ISO 8601)
        """
        payload = [
            {
                "openlibrary_id": entry["openlibrary_id"],
                "name": entry["name"],
                "ol_fetched_at": _iso(entry["ol_fetched_at"]),
                "ol_expires_at": _iso(entry["ol_expires_at"]),
            }
            for entry in entries
        ]
        if not payload:
            return
        try:
            await db.execute(
                text("SELECT public.upsert_authors_cache(CAST(:authors_data AS jsonb))"),
                {"authors_data": json.dumps(payload)},
            )
        except SQLAlchemyError as e:
            raise map_db_error(e, "Failed to upsert authors cache") from e
        logger.debug("Upserted %d cached authors", len(payload))

    async def upsert_author_from_openlibrary(
        self,
        db: AsyncSession,
        openlibrary_id: str,
        name: str,
        fetched_at: datetime,
        expires_at: datetime,
    ) -> AuthorDto:
        """
        Cache one OpenLibrary author and return the stored row.

        Raises:
            DatabaseError: The upsert failed or the row is not readable afterwards
        """
        await self.upsert_authors_cache(
            db,
            [
                {
                    "openlibrary_id": openlibrary_id,
                    "name": name,
                    "ol_fetched_at": fetched_at,
                    "ol_expires_at": expires_at,
                }
            ],
        )
        author = await self.find_by_openlibrary_id(db, openlibrary_id)
        if author is None:
            raise DatabaseError(
                message="Failed to upsert author: no data returned",
                context={"openlibrary_id": openlibrary_id},
            )
        return author

    # ── Manual authors ────────────────────────────────────────────────────
    async def check_user_author_limit(
        self, db: AsyncSession, user_id: uuid.UUID
    ) -> Tuple[int, int]:
        """
        Current author count and limit for a user.

        Returns:
            (author_count, max_authors)
        Raises:
            DatabaseError: The user has no profile row (signup trigger missed)
        """
        try:
            result = await db.execute(
                select(Profile.author_count, Profile.max_authors).where(
                    Profile.user_id == user_id
                )
            )
        except SQLAlchemyError as e:
            raise map_db_error(e, "Failed to fetch user profile") from e
        row = result.one_or_none()
        if row is None:
            raise DatabaseError(
                message=f"User profile not found for user {user_id}",
                context={"user_id": str(user_id)},
            )
        return row.author_count, row.max_authors

    async def create_manual_author(
        self, db: AsyncSession, user_id: uuid.UUID, name: str
    ) -> AuthorDto:
        """
        Insert a manual author owned by `user_id`.

        Raises:
            CheckViolationError: authors_manual_owner / authors_manual_or_ol
            PermissionDeniedError: RLS refused the insert
            DatabaseError: Any other failure
        """
        author = Author(
            name=name.strip(),
            manual=True,
            owner_user_id=user_id,
            openlibrary_id=None,
            ol_fetched_at=None,
            ol_expires_at=None,
        )
        db.add(author)
        try:
            await db.flush()
            await db.refresh(author)
        except SQLAlchemyError as e:
            raise map_db_error(
                e,
                "Failed to create author",
                denied_message="Cannot create manual author without ownership",
                context={"user_id": str(user_id)},
            ) from e
        logger.info("Created manual author %s for user %s", author.id, user_id)
        return AuthorDto.model_validate(author)

    # ── User ↔ author ─────────────────────────────────────────────────────
    async def is_author_attached(
        self, db: AsyncSession, user_id: uuid.UUID, author_id: uuid.UUID
    ) -> bool:
        try:
            result = await db.execute(
                select(UserAuthor.author_id).where(
                    UserAuthor.user_id == user_id,
                    UserAuthor.author_id == author_id,
                )
            )
        except SQLAlchemyError as e:
            raise map_db_error(e, "Failed to check user author") from e
        return result.first() is not None

    async def attach_user_author(
        self,
        db: AsyncSession,
        user_id: uuid.UUID,
        author_id: uuid.UUID,
        max_authors: int,
    ) -> UserAuthor:
        """
        Add an author to the user's profile.

        The store's profile trigger enforces the author limit; its rejection
        and the race where another request attached the same author first are
        both reported as ConflictError.

        Raises:
            ConflictError: Already attached (23505) or limit trigger fired
            PermissionDeniedError: RLS refused the insert
            DatabaseError: Any other failure
        """
        link = UserAuthor(user_id=user_id, author_id=author_id)
        db.add(link)
        try:
            await db.flush()
            await db.refresh(link)
        except SQLAlchemyError as e:
            error = map_db_error(
                e,
                "Failed to attach author",
                denied_message="Cannot attach author: insufficient permissions",
                context={"user_id": str(user_id), "author_id": str(author_id)},
            )
            if isinstance(error, UniqueViolationError):
                raise ConflictError("Author is already attached to your profile") from e
            detail = str(getattr(e, "orig", e)).lower()
            if "author limit" in detail or "max_authors" in detail:
                raise ConflictError(author_limit_message(max_authors)) from e
            raise error from e
        logger.info("User %s attached author %s", user_id, author_id)
        return link

    async def detach_user_author(
        self, db: AsyncSession, user_id: uuid.UUID, author_id: uuid.UUID
    ) -> None:
        """
        Remove an author from the user's profile.

        Raises:
            NotFoundError: The author was not attached
            PermissionDeniedError: RLS refused the delete
        """
        try:
            result = await db.execute(
                delete(UserAuthor)
                .where(UserAuthor.user_id == user_id, UserAuthor.author_id == author_id)
                .returning(UserAuthor.author_id)
            )
        except SQLAlchemyError as e:
            raise map_db_error(
                e,
                "Failed to detach author",
                denied_message="Cannot detach author: insufficient permissions",
            ) from e
        if result.first() is None:
            raise NotFoundError("Author is not attached to your profile")
        logger.info("User %s detached author %s", user_id, author_id)

    async def find_user_authors(
        self,
        db: AsyncSession,
        user_id: uuid.UUID,
        page: int = 1,
        search: Optional[str] = None,
        sort: str = "name_asc",
    ) -> Tuple[List[UserAuthorDto], int]:
        """
        One page of the user's authors.

        Args:
            page:   1-based page number (30 per page)
            search: Case-insensitive substring of the author name
            sort:   "name_asc" (A→Z) or "created_desc" (recently added first)
        Returns:
            (items, total) where total counts all matches, not just this page
        """
        conditions = [UserAuthor.user_id == user_id]
        if search:
            conditions.append(Author.name.ilike(f"%{escape_like(search)}%", escape="\\"))

        base = select(Author, UserAuthor.created_at).join(
            UserAuthor, UserAuthor.author_id == Author.id
        ).where(*conditions)

        if sort == "created_desc":
            order = (UserAuthor.created_at.desc(), Author.id)
        else:
            order = (Author.name.asc(), Author.id)

        count_query = (
            select(func.count())
            .select_from(UserAuthor)
            .join(Author, UserAuthor.author_id == Author.id)
            .where(*conditions)
        )
        try:
            total = (await db.execute(count_query)).scalar() or 0
            rows = (
                await db.execute(
                    base.order_by(*order)
                    .offset((page - 1) * USER_AUTHORS_PAGE_SIZE)
                    .limit(USER_AUTHORS_PAGE_SIZE)
                )
            ).all()
        except SQLAlchemyError as e:
            logger.error("Database error listing authors of user %s: %s", user_id, e)
            raise map_db_error(e, "Failed to fetch user authors") from e

        items = [
            UserAuthorDto(author=AuthorDto.model_validate(author), created_at=created_at)
            for author, created_at in rows
        ]
        return items, total


def _iso(value: Any) -> Any:
    return value.isoformat() if isinstance(value, datetime) else value


authors_service = AuthorsService()
