"""Relational models for the contact store."""

from __future__ import annotations

from datetime import UTC, datetime
from uuid import uuid4

from sqlalchemy import JSON, DateTime, ForeignKey, Index, Integer, String, Text, text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def utc_now() -> datetime:
    return datetime.now(UTC)


def new_uid() -> str:
    """Mint a type-4 UUID string for vCard UIDs."""
    return str(uuid4())


def new_etag(_current: str | None = None) -> str:
    """Generate a fresh opaque ETag token."""
    return uuid4().hex


class Base(DeclarativeBase):
    pass


class User(Base):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    username: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    password_hash: Mapped[str] = mapped_column(String(100), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)


class ApiToken(Base):
    """Bearer token for the import API, stored as a SHA-256 digest."""

    __tablename__ = "api_tokens"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False, index=True)
    token_hash: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)


class Contact(Base):
    """A person in the owner's address book.

    ``etag`` is the mapper's version counter: SQLAlchemy regenerates it on
    every INSERT and UPDATE and adds it to the UPDATE's WHERE clause, so a
    concurrent writer holding a stale row fails with StaleDataError.
    """

    __tablename__ = "contacts"
    __table_args__ = (
        # soft-deleted rows keep their uid, so uniqueness covers live rows only
        Index(
            "uq_contacts_live_vcard_uid",
            "user_id",
            "vcard_uid",
            unique=True,
            sqlite_where=text("deleted_at IS NULL"),
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False, index=True)

    firstname: Mapped[str | None] = mapped_column(String(100))
    lastname: Mapped[str | None] = mapped_column(String(100))
    nickname: Mapped[str | None] = mapped_column(String(100))
    gender: Mapped[str | None] = mapped_column(String(20))
    email: Mapped[str | None] = mapped_column(String(255), index=True)
    phone: Mapped[str | None] = mapped_column(String(50))
    birthday: Mapped[str | None] = mapped_column(String(10))
    address: Mapped[str | None] = mapped_column(Text)
    how_we_met: Mapped[str | None] = mapped_column(Text)
    food_preference: Mapped[str | None] = mapped_column(Text)
    work_information: Mapped[str | None] = mapped_column(Text)
    contact_information: Mapped[str | None] = mapped_column(Text)
    circles: Mapped[list[str]] = mapped_column(JSON, default=list)

    photo: Mapped[str | None] = mapped_column(String(255))
    photo_thumbnail: Mapped[str | None] = mapped_column(Text)

    vcard_uid: Mapped[str] = mapped_column(String(255), default=new_uid, nullable=False)
    vcard_extra: Mapped[str | None] = mapped_column(Text)
    etag: Mapped[str] = mapped_column(String(32), nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    __mapper_args__ = {"version_id_col": etag, "version_id_generator": new_etag}

    def __repr__(self) -> str:
        return f"<Contact {self.id} {self.firstname} {self.lastname} uid={self.vcard_uid}>"


class Note(Base):
    __tablename__ = "notes"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False, index=True)
    contact_id: Mapped[int] = mapped_column(ForeignKey("contacts.id"), nullable=False, index=True)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    date: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
