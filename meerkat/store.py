"""SQLAlchemy-backed contact store.

The store owns the engine and the session factory. Every method is
synchronous; async callers run them through
``starlette.concurrency.run_in_threadpool``.
"""

from __future__ import annotations

import hashlib
import logging
import secrets
from collections.abc import Callable, Iterator
from contextlib import contextmanager

import bcrypt
from sqlalchemy import create_engine, event, func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.orm.exc import StaleDataError
from sqlalchemy.pool import StaticPool

from .errors import Conflict, NotFound, PreconditionFailed
from .internal.elements import unquote_etag
from .models import ApiToken, Base, Contact, Note, User, utc_now

logger = logging.getLogger("meerkat.store")


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("ascii")


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def live_contacts(user_id: int):
    """SELECT for the owner's contacts that are not soft-deleted."""
    return select(Contact).where(Contact.user_id == user_id, Contact.deleted_at.is_(None))


def find_contact(session: Session, user_id: int, uid: str) -> Contact | None:
    """Resolve a CardDAV object name to a live contact.

    Looks up by ``vcard_uid`` first and falls back to the numeric primary
    key for clients that still address contacts by id.
    """
    contact = session.scalars(live_contacts(user_id).where(Contact.vcard_uid == uid)).first()
    if contact is None and uid.isdecimal():
        contact = session.scalars(live_contacts(user_id).where(Contact.id == int(uid))).first()
    return contact


def add_note(session: Session, user_id: int, contact_id: int, content: str) -> Note:
    """Attach a note to a contact inside an open session."""
    note = Note(user_id=user_id, contact_id=contact_id, content=content)
    session.add(note)
    return note


class ContactStore:
    """Contact, user and note persistence."""

    def __init__(self, database_url: str = "sqlite://"):
        kwargs: dict = {"connect_args": {"check_same_thread": False}}
        if database_url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
        self.engine = create_engine(database_url, **kwargs)
        _enable_sqlite_transactions(self.engine)
        self._sessions = sessionmaker(self.engine, expire_on_commit=False)

    def create_schema(self) -> None:
        Base.metadata.create_all(self.engine)

    def dispose(self) -> None:
        self.engine.dispose()

    @contextmanager
    def session(self) -> Iterator[Session]:
        """Read-only session; nothing is committed."""
        with self._sessions() as session:
            yield session

    @contextmanager
    def transaction(self) -> Iterator[Session]:
        """Write transaction, committed on success and rolled back on error.

        SQLite takes the database write lock at BEGIN so that a read followed
        by a write inside the block cannot interleave with another writer.
        """
        with self._sessions.begin() as session:
            session.connection(execution_options={"sqlite_immediate": True})
            yield session

    # Users and credentials

    def create_user(self, username: str, email: str, password: str) -> User:
        user = User(username=username, email=email.lower(), password_hash=hash_password(password))
        with self.transaction() as session:
            session.add(user)
        return user

    def authenticate(self, login: str, password: str) -> User | None:
        """Check a username-or-email and password pair.

        Returns:
            The matching user, or None when the login is unknown or the
            password does not match
        """
        login = login.strip().lower()
        with self.session() as session:
            user = session.scalars(
                select(User).where(
                    or_(func.lower(User.username) == login, func.lower(User.email) == login)
                )
            ).first()
        if user is None:
            return None
        if not bcrypt.checkpw(password.encode("utf-8"), user.password_hash.encode("ascii")):
            return None
        return user

    def issue_token(self, user_id: int) -> str:
        """Create a bearer token for the import API and return it in clear."""
        token = secrets.token_urlsafe(32)
        with self.transaction() as session:
            session.add(ApiToken(user_id=user_id, token_hash=hash_token(token)))
        return token

    def user_for_token(self, token: str) -> User | None:
        with self.session() as session:
            return session.scalars(
                select(User)
                .join(ApiToken, ApiToken.user_id == User.id)
                .where(ApiToken.token_hash == hash_token(token))
            ).first()

    # Contacts

    def list_contacts(self, user_id: int) -> list[Contact]:
        with self.session() as session:
            return list(session.scalars(live_contacts(user_id).order_by(Contact.id)))

    def get_contact(self, user_id: int, uid: str) -> Contact | None:
        with self.session() as session:
            return find_contact(session, user_id, uid)

    def get_contact_by_id(self, user_id: int, contact_id: int) -> Contact | None:
        with self.session() as session:
            return session.scalars(live_contacts(user_id).where(Contact.id == contact_id)).first()

    def put_contact(
        self,
        user_id: int,
        uid: str,
        apply: Callable[[Contact], None],
        if_match: str | None = None,
        if_none_match: bool = False,
    ) -> tuple[Contact, bool]:
        """Create or update the contact addressed by ``uid``.

        The precondition check, ``apply`` and the write happen in one
        transaction. The UPDATE itself is guarded by the stored ETag, so a
        concurrent writer that committed first makes this call fail.

        Args:
            user_id: Owner id
            uid: Object name from the URL (vCard UID or legacy numeric id)
            apply: Callback that copies the new state onto the contact
            if_match: ETag the stored contact must currently carry
            if_none_match: Fail if the contact already exists

        Returns:
            Tuple of (contact, created)

        Raises:
            PreconditionFailed: If a precondition does not hold
            Conflict: If the write violates a uniqueness constraint
        """
        try:
            with self.transaction() as session:
                contact = find_contact(session, user_id, uid)
                created = contact is None
                if contact is None:
                    if if_match is not None and if_match.strip() != "*":
                        raise PreconditionFailed("If-Match given for a resource that does not exist")
                    contact = Contact(user_id=user_id, vcard_uid=uid, circles=[])
                    session.add(contact)
                else:
                    if if_none_match:
                        raise PreconditionFailed("resource already exists")
                    if (
                        if_match is not None
                        and if_match.strip() != "*"
                        and unquote_etag(if_match) != contact.etag
                    ):
                        raise PreconditionFailed("ETag does not match")

                apply(contact)
                if not contact.vcard_uid:
                    contact.vcard_uid = uid
                contact.updated_at = utc_now()
        except StaleDataError as e:
            logger.info(f"Rejected concurrent update of contact {uid}")
            raise PreconditionFailed("contact was modified concurrently") from e
        except IntegrityError as e:
            raise Conflict("contact conflicts with an existing one", {"uid": uid}) from e

        return contact, created

    def delete_contact(self, user_id: int, uid: str) -> None:
        """Soft-delete a contact.

        Raises:
            NotFound: If no live contact matches ``uid``
        """
        with self.transaction() as session:
            contact = find_contact(session, user_id, uid)
            if contact is None:
                raise NotFound(f"contact {uid} not found")
            now = utc_now()
            contact.deleted_at = now
            contact.updated_at = now

    def find_by_email(self, user_id: int, email: str) -> Contact | None:
        with self.session() as session:
            return session.scalars(
                live_contacts(user_id)
                .where(func.lower(Contact.email) == email.strip().lower())
                .order_by(Contact.id)
            ).first()

    def find_by_name(self, user_id: int, firstname: str, lastname: str) -> Contact | None:
        with self.session() as session:
            return session.scalars(
                live_contacts(user_id)
                .where(
                    func.lower(Contact.firstname) == firstname.strip().lower(),
                    func.lower(Contact.lastname) == lastname.strip().lower(),
                )
                .order_by(Contact.id)
            ).first()

    def update_photo(self, user_id: int, contact_id: int, photo: str, thumbnail: str) -> None:
        """Patch only the photo columns of a contact."""
        with self.transaction() as session:
            contact = session.scalars(
                live_contacts(user_id).where(Contact.id == contact_id)
            ).first()
            if contact is None:
                raise NotFound(f"contact {contact_id} not found")
            contact.photo = photo
            contact.photo_thumbnail = thumbnail
            contact.updated_at = utc_now()

    def list_notes(self, user_id: int, contact_id: int) -> list[Note]:
        with self.session() as session:
            return list(
                session.scalars(
                    select(Note)
                    .where(Note.user_id == user_id, Note.contact_id == contact_id)
                    .order_by(Note.id)
                )
            )


def _enable_sqlite_transactions(engine) -> None:
    """Let SQLAlchemy emit BEGIN itself so SAVEPOINT and BEGIN IMMEDIATE work.

    The stdlib sqlite3 driver otherwise issues its own implicit BEGIN and
    breaks nested transactions.
    """
    if engine.dialect.name != "sqlite":
        return

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        if conn.get_execution_options().get("sqlite_immediate"):
            conn.exec_driver_sql("BEGIN IMMEDIATE")
        else:
            conn.exec_driver_sql("BEGIN")
