"""
Bookflow Backend — Catalog SQLAlchemy Models
==============================================

What:  ORM models for the shared bibliographic catalog: authors, works,
       editions and the author↔work join table.
Why:   Gives services typed, composable queries against the Supabase tables.
How:   Plain declarative mappings without relationships; services write the
       joins they need explicitly (no lazy loading under asyncio).
Who:   Used by AuthorsService, WorksService and EditionsService.

Catalog Ownership:
    Rows come from two sources:
    - OpenLibrary imports: `openlibrary_id` set, `manual = false`,
      `owner_user_id = NULL`, written through SECURITY DEFINER functions.
    - Manual entries: `manual = true`, `owner_user_id = auth.uid()`,
      `openlibrary_id = NULL`. Check constraints `*_manual_owner` and
      `*_manual_or_ol` enforce the pairing; RLS hides other users' manual rows.
"""

import uuid
from datetime import date, datetime
from typing import Optional

from sqlalchemy import Boolean, Date, ForeignKey, Integer, Text, text
from sqlalchemy.dialects.postgresql import TIMESTAMP, UUID
from sqlalchemy.orm import Mapped, mapped_column

from bookflow.database import Base


class Author(Base):
    """
    An author, imported from OpenLibrary or entered manually.

    `ol_fetched_at` / `ol_expires_at` mark the freshness of imported rows;
    search results older than `ol_expires_at` are refreshed from OpenLibrary.
    """

    __tablename__ = "authors"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=text("gen_random_uuid()"),
    )
    name: Mapped[str] = mapped_column(Text, nullable=False)
    openlibrary_id: Mapped[Optional[str]] = mapped_column(Text, unique=True)
    ol_fetched_at: Mapped[Optional[datetime]] = mapped_column(TIMESTAMP(timezone=True))
    ol_expires_at: Mapped[Optional[datetime]] = mapped_column(TIMESTAMP(timezone=True))
    manual: Mapped[bool] = mapped_column(
        Boolean, nullable=False, server_default=text("false")
    )
    owner_user_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True))
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, server_default=text("now()")
    )
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, server_default=text("now()")
    )

    def __repr__(self) -> str:
        return f"<Author(id={self.id}, name='{self.name}', manual={self.manual})>"


class Work(Base):
    """
    An abstract book ("Dune"), independent of any printing.

    `primary_edition_id` points at the edition shown as the work's cover and
    publication data. It is set through the `set_primary_edition` function.
    """

    __tablename__ = "works"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=text("gen_random_uuid()"),
    )
    title: Mapped[str] = mapped_column(Text, nullable=False)
    openlibrary_id: Mapped[Optional[str]] = mapped_column(Text, unique=True)
    first_publish_year: Mapped[Optional[int]] = mapped_column(Integer)
    # use_alter: works ↔ editions reference each other
    primary_edition_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("editions.id", use_alter=True, ondelete="SET NULL"),
    )
    manual: Mapped[bool] = mapped_column(
        Boolean, nullable=False, server_default=text("false")
    )
    owner_user_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True))
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, server_default=text("now()")
    )
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, server_default=text("now()")
    )

    def __repr__(self) -> str:
        return f"<Work(id={self.id}, title='{self.title}')>"


class Edition(Base):
    """A concrete printing of a work. `isbn13` is globally unique."""

    __tablename__ = "editions"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=text("gen_random_uuid()"),
    )
    work_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("works.id", ondelete="CASCADE"),
        nullable=False,
    )
    title: Mapped[str] = mapped_column(Text, nullable=False)
    openlibrary_id: Mapped[Optional[str]] = mapped_column(Text, unique=True)
    publish_year: Mapped[Optional[int]] = mapped_column(Integer)
    publish_date: Mapped[Optional[date]] = mapped_column(Date)
    publish_date_raw: Mapped[Optional[str]] = mapped_column(Text)
    isbn13: Mapped[Optional[str]] = mapped_column(Text, unique=True)
    cover_url: Mapped[Optional[str]] = mapped_column(Text)
    language: Mapped[Optional[str]] = mapped_column(Text)
    manual: Mapped[bool] = mapped_column(
        Boolean, nullable=False, server_default=text("false")
    )
    owner_user_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True))
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, server_default=text("now()")
    )
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, server_default=text("now()")
    )

    def __repr__(self) -> str:
        return f"<Edition(id={self.id}, work_id={self.work_id}, isbn13={self.isbn13})>"


class AuthorWork(Base):
    """Many-to-many link between authors and works."""

    __tablename__ = "author_works"

    author_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("authors.id", ondelete="CASCADE"),
        primary_key=True,
    )
    work_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("works.id", ondelete="CASCADE"),
        primary_key=True,
    )
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, server_default=text("now()")
    )
