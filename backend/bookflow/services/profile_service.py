"""
Bookflow Backend — Profile Service
====================================

What:  Reads (and, for recovery, creates) the per-user profile row holding
       author/work counters and limits.
Why:   Limit checks and GET /api/user/profile need the same row.
Who:   Called by the user profile route, AuthorsService and WorksService.

Normally a signup trigger creates the profile, so `create_profile` exists
only for users whose row is missing.
"""

import logging
import uuid
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from bookflow.database import map_db_error
from bookflow.exceptions import ConflictError, UniqueViolationError
from bookflow.models.user import Profile
from bookflow.schemas.user import ProfileDto

logger = logging.getLogger(__name__)

DEFAULT_MAX_AUTHORS = 500
DEFAULT_MAX_WORKS = 5000


class ProfileService:
    """Stateless access to the `profiles` table."""

    async def get_profile(self, db: AsyncSession, user_id: uuid.UUID) -> Optional[ProfileDto]:
        """
        Fetch the caller's profile.

        Returns:
            ProfileDto, or None when no row is visible for `user_id`.
        Raises:
            DatabaseError: Query failed
        """
        try:
            result = await db.execute(select(Profile).where(Profile.user_id == user_id))
        except SQLAlchemyError as e:
            logger.error("Database error fetching profile %s: %s", user_id, e)
            raise map_db_error(e, "Failed to fetch profile from database") from e

        profile = result.scalar_one_or_none()
        return ProfileDto.model_validate(profile) if profile is not None else None

    async def create_profile(self, db: AsyncSession, user_id: uuid.UUID) -> ProfileDto:
        """
        Insert a profile with zero counters and the default limits.

        Raises:
            ConflictError: A profile already exists for the user (23505)
            DatabaseError: Insert failed for another reason
        """
        profile = Profile(
            user_id=user_id,
            author_count=0,
            work_count=0,
            max_authors=DEFAULT_MAX_AUTHORS,
            max_works=DEFAULT_MAX_WORKS,
        )
        db.add(profile)
        try:
            await db.flush()
            await db.refresh(profile)
        except SQLAlchemyError as e:
            error = map_db_error(e, "Failed to create profile")
            if isinstance(error, UniqueViolationError):
                raise ConflictError(
                    "Profile already exists for this user",
                    context={"user_id": str(user_id)},
                ) from e
            raise error from e

        logger.info("Created profile for user %s", user_id)
        return ProfileDto.model_validate(profile)


profile_service = ProfileService()
