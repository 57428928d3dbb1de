"""Import data types.

Request and response bodies mirror the JSON the import API speaks; the
session types hold the server-side state between upload and confirm.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any

from ..carddav.vcard_mapper import CardPhoto
from ..errors import InvalidInput
from ..models import Contact

ACTION_ADD = "add"
ACTION_UPDATE = "update"
ACTION_SKIP = "skip"
ACTIONS = (ACTION_SKIP, ACTION_ADD, ACTION_UPDATE)

KIND_CSV = "csv"
KIND_VCF = "vcf"

MATCH_EMAIL = "email"
MATCH_NAME = "name"

IMPORTABLE_FIELDS = (
    "firstname",
    "lastname",
    "nickname",
    "gender",
    "email",
    "phone",
    "birthday",
    "address",
    "how_we_met",
    "food_preference",
    "work_information",
    "contact_information",
    "circles",
)


@dataclass
class ColumnMapping:
    """Maps a CSV column onto a contact field; an empty field ignores the column."""

    csv_column: str
    contact_field: str = ""

    @staticmethod
    def from_dict(data: Any) -> ColumnMapping:
        if not isinstance(data, dict) or not isinstance(data.get("csv_column"), str):
            raise InvalidInput("mapping requires a csv_column")
        contact_field = data.get("contact_field") or ""
        if not isinstance(contact_field, str):
            raise InvalidInput("contact_field must be a string")
        if contact_field and contact_field not in IMPORTABLE_FIELDS:
            raise InvalidInput(f"unknown contact field {contact_field!r}")
        return ColumnMapping(csv_column=data["csv_column"], contact_field=contact_field)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class UploadResponse:
    session_id: str
    headers: list[str]
    suggested_mappings: list[ColumnMapping]
    row_count: int
    sample_data: list[list[str]]

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class DuplicateMatch:
    """An existing contact that an import row appears to describe."""

    existing_contact_id: int
    existing_firstname: str
    existing_lastname: str
    existing_email: str
    existing_phone: str
    match_reason: str

    @staticmethod
    def for_contact(contact: Contact, reason: str) -> DuplicateMatch:
        return DuplicateMatch(
            existing_contact_id=contact.id,
            existing_firstname=contact.firstname or "",
            existing_lastname=contact.lastname or "",
            existing_email=contact.email or "",
            existing_phone=contact.phone or "",
            match_reason=reason,
        )


@dataclass
class RowPreview:
    row_index: int
    parsed_contact: dict[str, Any] = field(default_factory=dict)
    validation_errors: list[str] = field(default_factory=list)
    duplicate_match: DuplicateMatch | None = None
    suggested_action: str = ACTION_ADD

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class PreviewResponse:
    session_id: str
    rows: list[RowPreview]
    total_rows: int = 0
    valid_rows: int = 0
    duplicate_count: int = 0
    error_count: int = 0

    @staticmethod
    def summarize(session_id: str, rows: list[RowPreview]) -> PreviewResponse:
        """Build the response and its counters from a list of row previews."""
        errors = sum(1 for r in rows if r.validation_errors)
        return PreviewResponse(
            session_id=session_id,
            rows=rows,
            total_rows=len(rows),
            valid_rows=len(rows) - errors,
            duplicate_count=sum(1 for r in rows if r.duplicate_match is not None),
            error_count=errors,
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class RowImportAction:
    row_index: int
    action: str

    @staticmethod
    def from_dict(data: Any) -> RowImportAction:
        if not isinstance(data, dict):
            raise InvalidInput("action must be an object")
        row_index = data.get("row_index")
        action = data.get("action")
        if not isinstance(row_index, int) or isinstance(row_index, bool) or row_index < 0:
            raise InvalidInput("row_index must be a non-negative integer")
        if action not in ACTIONS:
            raise InvalidInput(f"action must be one of {', '.join(ACTIONS)}")
        return RowImportAction(row_index=row_index, action=action)


@dataclass
class ImportResult:
    total_processed: int = 0
    created: int = 0
    updated: int = 0
    skipped: int = 0
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class CsvUpload:
    """Session payload of a CSV upload: the raw header and data rows."""

    headers: list[str]
    rows: list[list[str]]

    @property
    def kind(self) -> str:
        return KIND_CSV


@dataclass
class VcfCard:
    """A decoded card waiting for confirm.

    ``contact`` is a transient Contact never added to a database session;
    confirm copies its fields onto a fresh or existing row.
    """

    contact: Contact
    photo: CardPhoto | None = None


@dataclass
class VcfUpload:
    """Session payload of a VCF upload, keyed by row index.

    Cards that failed to decode have a preview row but no entry here.
    """

    cards: dict[int, VcfCard]

    @property
    def kind(self) -> str:
        return KIND_VCF


@dataclass
class ImportSession:
    """Server-side state of one import, owned by a single user."""

    id: str
    user_id: int
    data: CsvUpload | VcfUpload
    created_at: datetime
    expires_at: datetime
    mappings: list[ColumnMapping] = field(default_factory=list)
    preview_rows: list[RowPreview] = field(default_factory=list)
    preview_cached: bool = False

    @property
    def kind(self) -> str:
        return self.data.kind
