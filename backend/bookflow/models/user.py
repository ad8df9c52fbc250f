"""
Bookflow Backend — Per-User SQLAlchemy Models
===============================================

What:  ORM models for rows owned by a single user: the profile with its
       counters/limits, and the user↔author / user↔work associations.
Why:   These are the tables RLS scopes to `auth.uid()`.

Counters:
    `profiles.author_count` / `work_count` are maintained by store triggers on
    user_authors / user_works inserts and deletes. The same triggers reject
    inserts beyond `max_authors` / `max_works`. Services only read them.
"""

import enum
import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import Boolean, ForeignKey, Integer, text
from sqlalchemy.dialects.postgresql import ENUM, TIMESTAMP, UUID
from sqlalchemy.orm import Mapped, mapped_column

from bookflow.database import Base


class UserWorkStatus(str, enum.Enum):
    """Reading status of a work on a user's shelf (`user_work_status_enum`)."""

    TO_READ = "to_read"
    IN_PROGRESS = "in_progress"
    READ = "read"
    HIDDEN = "hidden"


# create_type=False: the enum type already exists in the Supabase schema
user_work_status_enum = ENUM(
    UserWorkStatus,
    name="user_work_status_enum",
    values_callable=lambda members: [m.value for m in members],
    create_type=False,
)


class Profile(Base):
    """One row per auth user, created by a signup trigger."""

    __tablename__ = "profiles"

    user_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True)
    author_count: Mapped[int] = mapped_column(
        Integer, nullable=False, server_default=text("0")
    )
    work_count: Mapped[int] = mapped_column(
        Integer, nullable=False, server_default=text("0")
    )
    max_authors: Mapped[int] = mapped_column(
        Integer, nullable=False, server_default=text("500")
    )
    max_works: Mapped[int] = mapped_column(
        Integer, nullable=False, server_default=text("5000")
    )
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, server_default=text("now()")
    )
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, server_default=text("now()")
    )


class UserAuthor(Base):
    __tablename__ = "user_authors"

    user_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True)
    author_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("authors.id", ondelete="CASCADE"),
        primary_key=True,
    )
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, server_default=text("now()")
    )


class UserWork(Base):
    """
    A work on a user's shelf.

    `status_updated_at` records the last status change (not the last change of
    `available_in_legimi`).
    """

    __tablename__ = "user_works"

    user_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True)
    work_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("works.id", ondelete="CASCADE"),
        primary_key=True,
    )
    status: Mapped[UserWorkStatus] = mapped_column(
        user_work_status_enum,
        nullable=False,
        server_default=text("'to_read'"),
    )
    available_in_legimi: Mapped[Optional[bool]] = mapped_column(Boolean)
    status_updated_at: Mapped[Optional[datetime]] = mapped_column(TIMESTAMP(timezone=True))
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, server_default=text("now()")
    )
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, server_default=text("now()")
    )
