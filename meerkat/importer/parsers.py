"""CSV and VCF upload parsing."""

from __future__ import annotations

import csv
import io
import logging
from dataclasses import dataclass

from ..carddav.vcard_mapper import CardPhoto, split_cards, vcard_to_contact
from ..errors import InvalidInput
from ..models import Contact
from .models import ColumnMapping

logger = logging.getLogger("meerkat.importer")

MAX_CSV_SIZE = 5 * 1024 * 1024
MAX_VCF_SIZE = 10 * 1024 * 1024
MAX_CSV_ROWS = 1000
MAX_VCF_CARDS = 1000
SAMPLE_ROWS = 3

CSV_EXTENSIONS = (".csv",)
VCF_EXTENSIONS = (".vcf", ".vcard")

HEADER_TO_FIELD = {
    # English
    "firstname": "firstname",
    "first name": "firstname",
    "first": "firstname",
    "given name": "firstname",
    "lastname": "lastname",
    "last name": "lastname",
    "last": "lastname",
    "surname": "lastname",
    "family name": "lastname",
    "nickname": "nickname",
    "nick": "nickname",
    "alias": "nickname",
    "email": "email",
    "e-mail": "email",
    "mail": "email",
    "email address": "email",
    "phone": "phone",
    "telephone": "phone",
    "tel": "phone",
    "mobile": "phone",
    "cell": "phone",
    "phone number": "phone",
    "birthday": "birthday",
    "birth date": "birthday",
    "birthdate": "birthday",
    "dob": "birthday",
    "date of birth": "birthday",
    "address": "address",
    "street address": "address",
    "home address": "address",
    "gender": "gender",
    "sex": "gender",
    "how we met": "how_we_met",
    "how_we_met": "how_we_met",
    "notes": "how_we_met",
    "how i met": "how_we_met",
    "food": "food_preference",
    "food preference": "food_preference",
    "food_preference": "food_preference",
    "dietary": "food_preference",
    "diet": "food_preference",
    "work": "work_information",
    "work_information": "work_information",
    "job": "work_information",
    "company": "work_information",
    "occupation": "work_information",
    "employer": "work_information",
    "contact information": "contact_information",
    "contact_information": "contact_information",
    "other contact": "contact_information",
    "circles": "circles",
    "groups": "circles",
    "tags": "circles",
    "category": "circles",
    "categories": "circles",
    # German
    "vorname": "firstname",
    "nachname": "lastname",
    "familienname": "lastname",
    "spitzname": "nickname",
    "telefon": "phone",
    "handy": "phone",
    "mobiltelefon": "phone",
    "geburtstag": "birthday",
    "geburtsdatum": "birthday",
    "adresse": "address",
    "anschrift": "address",
    "geschlecht": "gender",
    "beruf": "work_information",
    "arbeit": "work_information",
    "firma": "work_information",
    "kreise": "circles",
    "gruppen": "circles",
}


@dataclass
class DecodedCard:
    """Outcome of decoding one card of a VCF upload.

    Exactly one of ``contact`` and ``error`` is set.
    """

    index: int
    contact: Contact | None = None
    photo: CardPhoto | None = None
    error: str = ""


def check_upload(filename: str, size: int, extensions: tuple[str, ...], max_size: int) -> None:
    """Reject uploads with the wrong extension or above the size cap.

    Raises:
        InvalidInput: If the file is unacceptable
    """
    if size > max_size:
        raise InvalidInput(
            f"File too large. Maximum size is {max_size // (1024 * 1024)} MB", {"field": "file"}
        )
    if not filename.lower().endswith(extensions):
        kind = "CSV" if extensions == CSV_EXTENSIONS else "VCF"
        raise InvalidInput(f"File must be a {kind} file", {"field": "file"})


def _decode(data: bytes) -> str:
    try:
        return data.decode("utf-8-sig")
    except UnicodeDecodeError as e:
        raise InvalidInput(f"File is not valid UTF-8: {e}", {"field": "file"}) from e


def parse_csv(data: bytes) -> tuple[list[str], list[list[str]]]:
    """Parse a CSV upload into its header and data rows.

    Quotes are handled leniently and rows may have any number of fields.
    Blank lines are skipped.

    Returns:
        Tuple of (headers, rows)

    Raises:
        InvalidInput: If the document is too large, empty, headerless,
            has no data rows or too many of them
    """
    if len(data) > MAX_CSV_SIZE:
        raise InvalidInput(f"File too large. Maximum size is {MAX_CSV_SIZE // (1024 * 1024)} MB")

    reader = csv.reader(io.StringIO(_decode(data), newline=""), strict=False)
    try:
        records = [row for row in reader if row]
    except csv.Error as e:
        raise InvalidInput(f"Invalid CSV format: {e}") from e

    if not records:
        raise InvalidInput("CSV file is empty")

    headers = records[0]
    if not any(h.strip() for h in headers):
        raise InvalidInput("CSV file has no headers")

    rows = records[1:]
    if not rows:
        raise InvalidInput("CSV file has no data rows")
    if len(rows) > MAX_CSV_ROWS:
        raise InvalidInput(f"Too many rows. Maximum is {MAX_CSV_ROWS} rows")

    return headers, rows


def parse_vcf(data: bytes) -> list[DecodedCard]:
    """Decode every card of a VCF upload.

    A card that fails to decode yields an entry carrying the error and
    parsing continues with the next one.

    Raises:
        InvalidInput: If the document is too large, has too many cards or
            no card decodes at all
    """
    if len(data) > MAX_VCF_SIZE:
        raise InvalidInput(f"File too large. Maximum size is {MAX_VCF_SIZE // (1024 * 1024)} MB")

    chunks = split_cards(_decode(data))
    if len(chunks) > MAX_VCF_CARDS:
        raise InvalidInput(f"Too many contacts. Maximum is {MAX_VCF_CARDS} contacts")

    cards: list[DecodedCard] = []
    for index, chunk in enumerate(chunks):
        try:
            contact, photo = vcard_to_contact(chunk)
        except InvalidInput as e:
            logger.warning(f"Skipping card {index + 1}: {e.message}")
            cards.append(DecodedCard(index=index, error=e.message))
            continue
        cards.append(DecodedCard(index=index, contact=contact, photo=photo))

    if not any(card.contact is not None for card in cards):
        raise InvalidInput("VCF file contains no valid contacts")
    return cards


def suggest_column_mappings(headers: list[str]) -> list[ColumnMapping]:
    """Guess a contact field for every header, case-insensitively.

    Headers without a known name map to the empty field, which ignores
    the column.
    """
    return [
        ColumnMapping(csv_column=header, contact_field=HEADER_TO_FIELD.get(header.strip().lower(), ""))
        for header in headers
    ]

