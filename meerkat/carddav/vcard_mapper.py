"""Translation between stored contacts and vCard text.

Outgoing cards are built with vobject and always carry VERSION 4.0.
Incoming cards (3.0 or 4.0) are tokenised with vobject's line parser only,
so every property keeps its raw, still-escaped value. Recognised properties
are decoded onto the contact; everything else is kept verbatim in
``Contact.vcard_extra`` and written back unchanged on the next GET.
"""

from __future__ import annotations

import base64
import binascii
import io
import json
import logging
import re
from dataclasses import dataclass, field
from urllib.parse import unquote_to_bytes

import vobject
from vobject.base import ParseError, getLogicalLines, parseLine
from vobject.icalendar import stringToTextValues
from vobject.vcard import Address, Name, splitFields

from ..errors import InvalidInput
from ..models import Contact, new_uid
from ..normalize import dedupe_circles, normalize_birthday

logger = logging.getLogger("meerkat.carddav")

VCARD_VERSION = "4.0"

MAPPED_PROPERTIES = frozenset(
    {
        "VERSION",
        "UID",
        "FN",
        "N",
        "NICKNAME",
        "EMAIL",
        "TEL",
        "ADR",
        "BDAY",
        "GENDER",
        "CATEGORIES",
        "ORG",
        "PHOTO",
    }
)
_FRAMING = frozenset({"BEGIN", "END"})

GENDER_TO_VCARD = {
    "male": "M",
    "female": "F",
    "other": "O",
    "prefer_not_to_say": "N",
}
VCARD_TO_GENDER = {
    "M": "male",
    "F": "female",
    "O": "other",
    "N": "prefer_not_to_say",
    "U": "prefer_not_to_say",
}

_ESCAPE_RE = re.compile(r"\\([\\;,nN])")


@dataclass
class RawProperty:
    """One content line of an incoming card, value still escaped."""

    name: str
    params: dict[str, list[str]] = field(default_factory=dict)
    value: str = ""
    group: str | None = None

    def param(self, key: str) -> str:
        values = self.params.get(key, [])
        return values[0] if values else ""

    def text(self) -> str:
        """Return the value with vCard text escapes removed."""
        return unescape_text(self.value)

    def to_json(self) -> dict:
        data: dict = {"value": self.value, "params": self.params}
        if self.group:
            data["group"] = self.group
        return data


@dataclass
class CardPhoto:
    """Photo carried by a card, either inline bytes or a URL to fetch."""

    data: bytes = b""
    media_type: str = ""
    url: str = ""

    @property
    def empty(self) -> bool:
        return not self.data and not self.url


@dataclass
class ParsedCard:
    """A tokenised vCard."""

    properties: list[RawProperty] = field(default_factory=list)

    def all(self, name: str) -> list[RawProperty]:
        return [p for p in self.properties if p.name == name]

    def first(self, name: str) -> RawProperty | None:
        for prop in self.properties:
            if prop.name == name:
                return prop
        return None

    @property
    def uid(self) -> str:
        prop = self.first("UID")
        return prop.text().strip() if prop else ""

    @property
    def photo(self) -> CardPhoto | None:
        """The first PHOTO, or None when the card has none."""
        prop = self.first("PHOTO")
        return extract_photo(prop) if prop else None


def unescape_text(value: str) -> str:
    def repl(m: re.Match) -> str:
        c = m.group(1)
        return "\n" if c in "nN" else c

    return _ESCAPE_RE.sub(repl, value)


def split_cards(text: str) -> list[str]:
    """Split a multi-card document into one text chunk per card.

    Lines outside BEGIN:VCARD / END:VCARD are ignored. A card missing its
    END line is still returned so that parsing reports it.
    """
    cards: list[str] = []
    current: list[str] | None = None
    for line in text.splitlines():
        marker = line.strip().upper()
        if marker == "BEGIN:VCARD":
            if current:
                cards.append("\r\n".join(current))
            current = [line]
        elif current is not None:
            current.append(line)
            if marker == "END:VCARD":
                cards.append("\r\n".join(current))
                current = None
    if current:
        cards.append("\r\n".join(current))
    return cards


def parse_vcard(text: str) -> ParsedCard:
    """Tokenise a single vCard.

    Raises:
        InvalidInput: If a line cannot be parsed or the card is not framed
            by BEGIN:VCARD and END:VCARD
    """
    card = ParsedCard()
    framing: list[str] = []
    for line, number in getLogicalLines(io.StringIO(text), allowQP=False):
        if not line.strip():
            continue
        try:
            name, params, value, group = parseLine(line, number)
        except ParseError as e:
            raise InvalidInput(f"Failed to parse vCard: {e}") from e

        name = name.upper()
        if name in _FRAMING:
            framing.append(f"{name}:{value.strip().upper()}")
            continue
        card.properties.append(
            RawProperty(name=name, params=_collect_params(params), value=value, group=group)
        )

    if not framing or framing[0] != "BEGIN:VCARD" or framing[-1] != "END:VCARD":
        raise InvalidInput("Failed to parse vCard: missing BEGIN:VCARD or END:VCARD")
    return card


def _collect_params(params: list[list[str]]) -> dict[str, list[str]]:
    collected: dict[str, list[str]] = {}
    for param in params:
        if len(param) == 1:
            # vCard 2.1 style bare value, e.g. TEL;CELL:...
            collected.setdefault("TYPE", []).append(param[0])
        else:
            collected.setdefault(param[0].upper(), []).extend(param[1:])
    return collected


def _component(value: str | list[str]) -> str:
    if isinstance(value, list):
        return " ".join(v for v in value if v).strip()
    return value.strip()


def _structured(prop: RawProperty) -> list[str]:
    return [_component(v) for v in splitFields(prop.value)]


def _decode_base64(value: str) -> bytes:
    value = "".join(value.split())
    padded = value + "=" * (-len(value) % 4)
    try:
        return base64.b64decode(padded, validate=True)
    except (binascii.Error, ValueError):
        pass
    try:
        return base64.urlsafe_b64decode(padded)
    except (binascii.Error, ValueError):
        return b""


def extract_photo(prop: RawProperty) -> CardPhoto:
    """Decode a PHOTO property into bytes or a URL.

    Handles plain base64 (vCard 3.0 ``ENCODING=b``), ``data:`` URIs and
    URL values. An undecodable value yields an empty CardPhoto.
    """
    value = "".join(unescape_text(prop.value).split())
    media_type = prop.param("MEDIATYPE").lower()
    if not media_type and prop.param("TYPE"):
        media_type = "image/" + prop.param("TYPE").lower()

    value_type = prop.param("VALUE").lower()
    lowered = value.lower()
    if value_type in ("uri", "url") and not lowered.startswith("data:"):
        return CardPhoto(url=value, media_type=media_type)
    if lowered.startswith(("http://", "https://")):
        return CardPhoto(url=value, media_type=media_type)

    if lowered.startswith("data:"):
        header, _, body = value.partition(",")
        declared = header[len("data:"):].split(";", 1)[0].lower()
        if ";base64" in header.lower():
            data = _decode_base64(body)
        else:
            data = unquote_to_bytes(body)
        return CardPhoto(data=data, media_type=declared or media_type)

    return CardPhoto(data=_decode_base64(value), media_type=media_type)


def display_name(contact: Contact) -> str:
    """FN value: given and family name, else the nickname, else "Unknown"."""
    name = f"{contact.firstname or ''} {contact.lastname or ''}".strip()
    return name or (contact.nickname or "").strip() or "Unknown"


def load_extras(contact: Contact) -> dict[str, list[dict]]:
    """Decode ``vcard_extra``; a damaged blob is logged and treated as empty."""
    if not contact.vcard_extra:
        return {}
    try:
        return json.loads(contact.vcard_extra).get("properties", {})
    except (ValueError, AttributeError) as e:
        logger.warning(f"Ignoring unreadable vcard_extra on contact {contact.id}: {e}")
        return {}


def dump_extras(properties: list[RawProperty]) -> str | None:
    if not properties:
        return None
    grouped: dict[str, list[dict]] = {}
    for prop in properties:
        grouped.setdefault(prop.name, []).append(prop.to_json())
    return json.dumps({"properties": grouped}, sort_keys=True, ensure_ascii=False)


def contact_to_vcard(contact: Contact, photo_b64: str = "", photo_media_type: str = ""):
    """Build a vCard 4.0 component for a contact.

    Args:
        contact: Contact to convert
        photo_b64: Base64 image body to embed as PHOTO
        photo_media_type: Media type of the embedded image

    Returns:
        vobject Component
    """
    card = vobject.vCard()
    card.add("version").value = VCARD_VERSION
    card.add("uid").value = contact.vcard_uid or new_uid()
    card.add("fn").value = display_name(contact)
    card.add("n").value = Name(family=contact.lastname or "", given=contact.firstname or "")

    if contact.nickname:
        card.add("nickname").value = contact.nickname
    if contact.email:
        email = card.add("email")
        email.value = contact.email
        email.type_param = "INTERNET"
    if contact.phone:
        tel = card.add("tel")
        tel.value = contact.phone
        tel.type_param = "CELL"
    if contact.address:
        card.add("adr").value = Address(street=contact.address)
    if contact.birthday:
        bday = contact.birthday
        if bday.startswith("--") and len(bday) == 7:
            bday = "--" + bday[2:4] + bday[5:7]
        card.add("bday").value = bday
    if contact.gender in GENDER_TO_VCARD:
        card.add("gender").value = GENDER_TO_VCARD[contact.gender]
    if contact.circles:
        card.add("categories").value = list(contact.circles)
    if contact.work_information:
        card.add("org").value = [contact.work_information]
    if photo_b64:
        photo = card.add("photo")
        photo.value = photo_b64
        photo.params["MEDIATYPE"] = [photo_media_type or "image/jpeg"]

    for name, entries in load_extras(contact).items():
        for entry in entries:
            line = card.add(name, group=entry.get("group"))
            # written back exactly as received
            line.behavior = None
            line.value = entry.get("value", "")
            line.params = {k: list(v) for k, v in entry.get("params", {}).items()}
            line.encoded = True

    return card


def contact_to_vcard_text(contact: Contact, photo_b64: str = "", photo_media_type: str = "") -> str:
    return contact_to_vcard(contact, photo_b64, photo_media_type).serialize()


def apply_vcard(card: ParsedCard, contact: Contact) -> None:
    """Copy a parsed card onto a contact, replacing every mapped field.

    Fields the vCard has no property for (how_we_met and the like) are left
    alone. A card without PHOTO clears the stored photo; a card with one
    leaves the columns for the caller to fill once the image is saved.
    """
    extras = [p for p in card.properties if p.name not in MAPPED_PROPERTIES]

    given, family = "", ""
    n = card.first("N")
    if n is not None:
        parts = _structured(n) + ["", ""]
        family, given = parts[0], parts[1]
    if not given and not family:
        fn = card.first("FN")
        if fn is not None:
            given, _, family = fn.text().strip().partition(" ")
    contact.firstname = given.strip() or None
    contact.lastname = family.strip() or None

    contact.nickname = _first_text(card, "NICKNAME")
    contact.email = _first_text(card, "EMAIL")
    contact.phone = _first_text(card, "TEL")

    adr = card.first("ADR")
    contact.address = None
    if adr is not None:
        parts = _structured(adr) + [""] * 7
        # box, extended, street, locality, region, code, country
        ordered = [parts[2], parts[1], parts[3], parts[4], parts[5], parts[6]]
        contact.address = ", ".join(p for p in ordered if p) or None

    contact.birthday = None
    bday = card.first("BDAY")
    if bday is not None:
        try:
            contact.birthday = normalize_birthday(bday.text()) or None
        except ValueError:
            logger.debug(f"Keeping unrecognised BDAY {bday.value!r} verbatim")
            extras.append(bday)

    contact.gender = None
    gender = card.first("GENDER")
    if gender is not None:
        sex = gender.value.split(";", 1)[0].strip().upper()
        if sex in VCARD_TO_GENDER:
            contact.gender = VCARD_TO_GENDER[sex]
        elif sex:
            extras.append(gender)

    circles: list[str] = []
    for prop in card.all("CATEGORIES"):
        circles.extend(stringToTextValues(prop.value))
    contact.circles = dedupe_circles(circles)

    org = card.first("ORG")
    contact.work_information = None
    if org is not None:
        contact.work_information = ";".join(p for p in _structured(org) if p) or None

    if card.first("PHOTO") is None:
        contact.photo = None
        contact.photo_thumbnail = None

    uid = card.uid
    if uid and not contact.vcard_uid:
        contact.vcard_uid = uid

    # keep the original order within each property name
    extras.sort(key=lambda p: card.properties.index(p))
    contact.vcard_extra = dump_extras(extras)


def _first_text(card: ParsedCard, name: str) -> str | None:
    prop = card.first(name)
    if prop is None:
        return None
    return prop.text().strip() or None


def vcard_to_contact(text: str, contact: Contact | None = None) -> tuple[Contact, CardPhoto | None]:
    """Parse vCard text onto a contact.

    Args:
        text: A single vCard
        contact: Contact to update in place; a new one is created when None

    Returns:
        Tuple of (contact, photo carried by the card or None)

    Raises:
        InvalidInput: If the text is not a parseable vCard
    """
    card = parse_vcard(text)
    if contact is None:
        contact = Contact(circles=[])
    apply_vcard(card, contact)
    return contact, card.photo
