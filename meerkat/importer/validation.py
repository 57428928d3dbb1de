"""Row validation and field extraction for imported contacts."""

from __future__ import annotations

from typing import Any

from ..models import Contact
from ..normalize import (
    is_valid_birthday,
    is_valid_email,
    is_valid_phone,
    normalize_birthday,
    normalize_gender,
    parse_circles,
)
from .models import ColumnMapping

FIRSTNAME_REQUIRED = "First name is required"
INVALID_EMAIL = "Invalid email format"
INVALID_BIRTHDAY = "Invalid birthday format (expected YYYY-MM-DD or --MM-DD)"
INVALID_GENDER = "Invalid gender value"
INVALID_PHONE = "Invalid phone format"

# contact columns a preview map shows for a decoded vCard
_PREVIEW_COLUMNS = (
    "firstname",
    "lastname",
    "nickname",
    "email",
    "phone",
    "birthday",
    "address",
    "gender",
    "work_information",
)

TEXT_FIELDS = (
    "firstname",
    "lastname",
    "nickname",
    "email",
    "phone",
    "address",
    "how_we_met",
    "food_preference",
    "work_information",
    "contact_information",
)


def map_row(row: list[str], headers: list[str], mappings: list[ColumnMapping]) -> dict[str, str]:
    """Apply column mappings to one CSV row.

    Values are trimmed and empty ones left out. Mappings naming an unknown
    column are ignored, as are cells beyond the end of a short row. When two
    columns map to the same field the later mapping wins.
    """
    index = {header: i for i, header in enumerate(headers)}
    parsed: dict[str, str] = {}
    for mapping in mappings:
        if not mapping.contact_field or mapping.csv_column not in index:
            continue
        i = index[mapping.csv_column]
        if i < len(row):
            value = row[i].strip()
            if value:
                parsed[mapping.contact_field] = value
    return parsed


def contact_preview(contact: Contact) -> dict[str, str]:
    """Render a decoded contact as a preview field map."""
    preview = {}
    for column in _PREVIEW_COLUMNS:
        value = getattr(contact, column)
        if value:
            preview[column] = value
    if contact.circles:
        preview["circles"] = ", ".join(contact.circles)
    return preview


def validate_row(parsed: dict[str, Any]) -> list[str]:
    """Check a preview field map.

    Returns:
        Human-readable validation errors; empty when the row is importable
    """
    errors = []
    if not str(parsed.get("firstname", "")).strip():
        errors.append(FIRSTNAME_REQUIRED)

    email = parsed.get("email", "")
    if email and not is_valid_email(email):
        errors.append(INVALID_EMAIL)

    birthday = parsed.get("birthday", "")
    if birthday and not is_valid_birthday(birthday):
        errors.append(INVALID_BIRTHDAY)

    gender = parsed.get("gender", "")
    if gender:
        try:
            normalize_gender(gender)
        except ValueError:
            errors.append(INVALID_GENDER)

    phone = parsed.get("phone", "")
    if phone and not is_valid_phone(phone):
        errors.append(INVALID_PHONE)

    return errors


def fields_from_parsed(parsed: dict[str, Any]) -> dict[str, Any]:
    """Turn a validated preview map into contact column values.

    Birthday and gender are normalised and circles split; only non-empty
    values are returned.

    Raises:
        ValueError: If birthday or gender do not normalise
    """
    fields: dict[str, Any] = {}
    for name in TEXT_FIELDS:
        value = str(parsed.get(name, "")).strip()
        if value:
            fields[name] = value

    if parsed.get("birthday"):
        fields["birthday"] = normalize_birthday(parsed["birthday"])
    if parsed.get("gender"):
        fields["gender"] = normalize_gender(parsed["gender"])
    if parsed.get("circles"):
        circles = parse_circles(parsed["circles"])
        if circles:
            fields["circles"] = circles
    return fields


def fields_from_contact(contact: Contact) -> dict[str, Any]:
    """Collect the non-empty mapped columns of a decoded vCard contact.

    The card's UID and unmapped properties ride along so that an update
    keeps the identity and round-trip data of the imported card.
    """
    fields: dict[str, Any] = {}
    for name in TEXT_FIELDS + ("birthday", "gender", "vcard_uid", "vcard_extra"):
        value = getattr(contact, name)
        if value:
            fields[name] = value
    if contact.circles:
        fields["circles"] = list(contact.circles)
    return fields
