"""Import orchestration: upload, preview and confirm.

A CSV import goes through upload, preview (with user-chosen column
mappings) and confirm. A VCF upload is previewed on the spot, so its
session can be confirmed straight away.

Confirm applies all rows in one database transaction with a savepoint per
row; a failing row is reported and skipped without undoing the others.
Photos are saved only after that transaction has committed.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from sqlalchemy.exc import DataError, IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError
from starlette.concurrency import run_in_threadpool

from ..errors import Internal, InvalidInput, MeerkatError, NotFound
from ..fetch import ImageFetcher
from ..models import Contact, User, utc_now
from ..photos import PhotoStore, materialize_photo
from ..store import ContactStore, add_note, live_contacts
from .duplicates import detect_duplicate
from .models import (
    ACTION_ADD,
    ACTION_SKIP,
    ACTION_UPDATE,
    KIND_CSV,
    ColumnMapping,
    CsvUpload,
    ImportResult,
    ImportSession,
    PreviewResponse,
    RowImportAction,
    RowPreview,
    UploadResponse,
    VcfCard,
    VcfUpload,
)
from .parsers import (
    CSV_EXTENSIONS,
    MAX_CSV_SIZE,
    MAX_VCF_SIZE,
    SAMPLE_ROWS,
    VCF_EXTENSIONS,
    DecodedCard,
    check_upload,
    parse_csv,
    parse_vcf,
    suggest_column_mappings,
)
from .sessions import SESSION_NOT_FOUND, ImportSessions, MemoryImportSessions
from .validation import contact_preview, fields_from_contact, fields_from_parsed, map_row, validate_row

logger = logging.getLogger("meerkat.importer")

# errors that fail a single row; anything else aborts the whole import
ROW_ERRORS = (IntegrityError, DataError, StaleDataError)

MERGE_LABELS = (
    ("firstname", "First Name"),
    ("lastname", "Last Name"),
    ("nickname", "Nickname"),
    ("email", "Email"),
    ("phone", "Phone"),
    ("birthday", "Birthday"),
    ("address", "Address"),
    ("gender", "Gender"),
    ("how_we_met", "How We Met"),
    ("food_preference", "Food Preferences"),
    ("work_information", "Work Information"),
    ("contact_information", "Contact Information"),
)


@dataclass
class PhotoTask:
    """A photo to save for a contact once the import has committed."""

    contact_id: int
    data: bytes = b""
    media_type: str = ""
    url: str = ""


def merge_note(existing: Contact, fields: dict[str, Any], source: str) -> str | None:
    """Describe how ``fields`` would change ``existing``.

    Returns:
        The note text, or None when no field changes
    """
    changes = []
    for name, label in MERGE_LABELS:
        new = fields.get(name) or ""
        old = getattr(existing, name) or ""
        if new and new != old:
            changes.append(f"- {label}: {old or '(empty)'} → {new}")

    new_circles = ", ".join(fields.get("circles") or [])
    old_circles = ", ".join(existing.circles or [])
    if new_circles and new_circles != old_circles:
        changes.append(f"- Circles: {old_circles or '(empty)'} → {new_circles}")

    if not changes:
        return None
    return f"{source} Import updated this contact.\n\nChanges made:\n" + "\n".join(changes)


def patch_contact(contact: Contact, fields: dict[str, Any]) -> None:
    for name, value in fields.items():
        setattr(contact, name, list(value) if name == "circles" else value)


class ImportService:
    """Runs CSV and VCF imports for authenticated users."""

    def __init__(
        self,
        store: ContactStore,
        photos: PhotoStore,
        fetcher: ImageFetcher | None = None,
        sessions: ImportSessions | None = None,
    ):
        self.store = store
        self.photos = photos
        self.fetcher = fetcher
        self.sessions = sessions if sessions is not None else MemoryImportSessions()

    def _session(self, user: User, session_id: str, kind: str) -> ImportSession:
        session = self.sessions.get(session_id, user.id)
        if session.kind != kind:
            raise NotFound(SESSION_NOT_FOUND)
        return session

    # Upload and preview

    async def upload_csv(self, user: User, filename: str, data: bytes) -> UploadResponse:
        """Parse a CSV upload and open a session for it.

        Raises:
            InvalidInput: If the file is rejected or does not parse
        """
        self.sessions.sweep_expired()
        check_upload(filename, len(data), CSV_EXTENSIONS, MAX_CSV_SIZE)
        headers, rows = await run_in_threadpool(parse_csv, data)

        session = self.sessions.insert(user.id, CsvUpload(headers=headers, rows=rows))
        logger.info(f"CSV uploaded: session {session.id}, {len(headers)} columns, {len(rows)} rows")
        return UploadResponse(
            session_id=session.id,
            headers=headers,
            suggested_mappings=suggest_column_mappings(headers),
            row_count=len(rows),
            sample_data=rows[:SAMPLE_ROWS],
        )

    async def preview_csv(
        self, user: User, session_id: str, mappings: list[ColumnMapping]
    ) -> PreviewResponse:
        """Apply column mappings to a CSV session and classify every row.

        Raises:
            NotFound: If the session is unknown, expired, not a CSV session
                or not the caller's
        """
        session = self._session(user, session_id, KIND_CSV)
        upload = session.data

        def classify_all() -> list[RowPreview]:
            return [
                self._classify(user.id, i, map_row(row, upload.headers, mappings))
                for i, row in enumerate(upload.rows)
            ]

        rows = await run_in_threadpool(classify_all)
        self.sessions.mark_previewed(session_id, user.id, rows, mappings)
        return PreviewResponse.summarize(session_id, rows)

    async def upload_vcf(self, user: User, filename: str, data: bytes) -> PreviewResponse:
        """Decode a VCF upload, classify its cards and open a previewed session.

        Raises:
            InvalidInput: If the file is rejected or holds no decodable card
        """
        self.sessions.sweep_expired()
        check_upload(filename, len(data), VCF_EXTENSIONS, MAX_VCF_SIZE)
        decoded = await run_in_threadpool(parse_vcf, data)

        def classify_all() -> list[RowPreview]:
            return [self._classify_card(user.id, card) for card in decoded]

        rows = await run_in_threadpool(classify_all)
        cards = {
            card.index: VcfCard(contact=card.contact, photo=card.photo)
            for card in decoded
            if card.contact is not None
        }
        session = self.sessions.insert(user.id, VcfUpload(cards=cards))
        self.sessions.mark_previewed(session.id, user.id, rows)
        logger.info(f"VCF uploaded: session {session.id}, {len(decoded)} cards")
        return PreviewResponse.summarize(session.id, rows)

    def _classify(self, user_id: int, index: int, parsed: dict[str, Any]) -> RowPreview:
        preview = RowPreview(row_index=index, parsed_contact=parsed, validation_errors=validate_row(parsed))
        if preview.validation_errors:
            preview.suggested_action = ACTION_SKIP
            return preview

        match = detect_duplicate(
            self.store,
            user_id,
            parsed.get("firstname", ""),
            parsed.get("lastname", ""),
            parsed.get("email", ""),
        )
        if match is not None:
            preview.duplicate_match = match
            preview.suggested_action = ACTION_UPDATE
        return preview

    def _classify_card(self, user_id: int, card: DecodedCard) -> RowPreview:
        if card.contact is None:
            return RowPreview(
                row_index=card.index,
                validation_errors=[card.error],
                suggested_action=ACTION_SKIP,
            )
        return self._classify(user_id, card.index, contact_preview(card.contact))

    # Confirm

    async def confirm(
        self, user: User, kind: str, session_id: str, actions: list[RowImportAction]
    ) -> ImportResult:
        """Apply the chosen action to every previewed row.

        Rows without an action are skipped. The session is taken out of the
        store before any row is applied, so a second confirm of the same
        session finds nothing; it is put back only if the import rolls back.

        Raises:
            NotFound: If the session is unknown, expired, of the other kind,
                not the caller's or already being confirmed
            InvalidInput: If the session has not been previewed
            Internal: If the import transaction fails as a whole
        """
        session = self._session(user, session_id, kind)
        if not session.preview_cached:
            raise InvalidInput("Please generate a preview first", {"field": "session"})
        session = self.sessions.take(session.id, user.id)

        chosen = {a.row_index: a.action for a in actions}
        try:
            result, tasks = await run_in_threadpool(self._apply, user.id, session, chosen)
        except Internal:
            self.sessions.restore(session)
            raise

        # the rows are committed; photos are best effort from here on
        for task in tasks:
            await self._save_photo(user.id, task)

        logger.info(
            f"Import completed: session {session.id}, created={result.created}, "
            f"updated={result.updated}, skipped={result.skipped}, errors={len(result.errors)}"
        )
        return result

    def _apply(
        self, user_id: int, session: ImportSession, chosen: dict[int, str]
    ) -> tuple[ImportResult, list[PhotoTask]]:
        result = ImportResult()
        tasks: list[PhotoTask] = []
        source = session.kind.upper()

        try:
            with self.store.transaction() as db:
                for preview in sorted(session.preview_rows, key=lambda r: r.row_index):
                    result.total_processed += 1
                    action = chosen.get(preview.row_index, ACTION_SKIP)
                    if action == ACTION_SKIP:
                        result.skipped += 1
                        continue

                    error = self._apply_row(db, user_id, session, preview, action, source, result, tasks)
                    if error:
                        logger.warning(error)
                        result.errors.append(error)
                        result.skipped += 1
        except SQLAlchemyError as e:
            logger.error(f"Import transaction failed: {e}")
            raise Internal("Import failed") from e

        return result, tasks

    def _apply_row(
        self,
        db: Session,
        user_id: int,
        session: ImportSession,
        preview: RowPreview,
        action: str,
        source: str,
        result: ImportResult,
        tasks: list[PhotoTask],
    ) -> str:
        """Apply one row and return an error message, or "" on success."""
        row = preview.row_index + 1
        if preview.validation_errors:
            return f"Row {row}: Cannot import - {'; '.join(preview.validation_errors)}"

        photo = None
        if isinstance(session.data, VcfUpload):
            card = session.data.cards[preview.row_index]
            fields = fields_from_contact(card.contact)
            photo = card.photo
        else:
            fields = fields_from_parsed(preview.parsed_contact)

        if action == ACTION_ADD:
            try:
                with db.begin_nested():
                    contact = Contact(user_id=user_id, circles=[])
                    patch_contact(contact, fields)
                    db.add(contact)
            except ROW_ERRORS as e:
                return f"Row {row}: Failed to create contact: {e}"
            result.created += 1

        else:
            match = preview.duplicate_match
            contact = None
            if match is not None:
                contact = db.scalars(
                    live_contacts(user_id).where(Contact.id == match.existing_contact_id)
                ).first()
            if contact is None:
                return f"Row {row}: Cannot update - no existing contact found"

            try:
                with db.begin_nested():
                    self._write_merge_note(db, user_id, contact, fields, source)
                    patch_contact(contact, fields)
                    contact.updated_at = utc_now()
            except ROW_ERRORS as e:
                return f"Row {row}: Failed to update contact: {e}"
            result.updated += 1

        if photo is not None and not photo.empty:
            tasks.append(PhotoTask(contact.id, photo.data, photo.media_type, photo.url))
        return ""

    @staticmethod
    def _write_merge_note(
        db: Session, user_id: int, contact: Contact, fields: dict[str, Any], source: str
    ) -> None:
        content = merge_note(contact, fields, source)
        if content is None:
            return
        try:
            with db.begin_nested():
                add_note(db, user_id, contact.id, content)
        except SQLAlchemyError as e:
            logger.warning(f"Failed to create merge note for contact {contact.id}: {e}")

    async def _save_photo(self, user_id: int, task: PhotoTask) -> None:
        try:
            saved = await materialize_photo(self.photos, self.fetcher, task.data, task.media_type, task.url)
            if saved is None:
                return
            await run_in_threadpool(self.store.update_photo, user_id, task.contact_id, *saved)
        except MeerkatError as e:
            logger.warning(f"Photo for contact {task.contact_id} not attached: {e.message}")
        except Exception as e:
            logger.exception(f"Photo for contact {task.contact_id} failed: {e}")
