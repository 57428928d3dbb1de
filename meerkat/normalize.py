"""Normalisation of user-entered contact fields.

Shared by the vCard mapper and the import validator so that a birthday or a
gender accepted on one path is stored the same way as on the other.
"""

from __future__ import annotations

import re
from datetime import date

GENDERS = ("male", "female", "other", "prefer_not_to_say")

_GENDER_ALIASES = {
    "m": "male",
    "male": "male",
    "mann": "male",
    "maennlich": "male",
    "männlich": "male",
    "masculin": "male",
    "f": "female",
    "w": "female",
    "female": "female",
    "frau": "female",
    "weiblich": "female",
    "feminin": "female",
    "o": "other",
    "d": "other",
    "other": "other",
    "andere": "other",
    "divers": "other",
    "n": "prefer_not_to_say",
    "u": "prefer_not_to_say",
    "prefer not to say": "prefer_not_to_say",
    "prefer_not_to_say": "prefer_not_to_say",
    "keine angabe": "prefer_not_to_say",
}

# groups are always (year or "", month, day)
_BIRTHDAY_FORMATS = (
    re.compile(r"^(\d{4})-(\d{2})-(\d{2})$"),
    re.compile(r"^(\d{4})(\d{2})(\d{2})$"),
    re.compile(r"^--()(\d{2})-(\d{2})$"),
    re.compile(r"^--()(\d{2})(\d{2})$"),
)
_LEGACY_WITH_YEAR = re.compile(r"^(\d{2})\.(\d{2})\.(\d{4})$")
_LEGACY_NO_YEAR = re.compile(r"^(\d{2})\.(\d{2})\.$")
_DATETIME_SUFFIX = re.compile(r"^(\d{4}-?\d{2}-?\d{2})T.*$")

EMAIL_RE = re.compile(r"^[a-zA-Z0-9._%+\-]+@[a-zA-Z0-9.\-]+\.[a-zA-Z]{2,}$")

PHONE_MIN_DIGITS = 5
PHONE_MAX_DIGITS = 20


def normalize_birthday(value: str) -> str:
    """Bring a birthday into ``YYYY-MM-DD`` or ``--MM-DD`` form.

    Accepts ``YYYY-MM-DD``, ``--MM-DD``, ``YYYYMMDD``, ``--MMDD``,
    ``DD.MM.YYYY`` and ``DD.MM.``. A trailing time part as sent by some
    vCard 3.0 clients is ignored.

    Args:
        value: Raw birthday string

    Returns:
        The canonical form, or "" for blank input

    Raises:
        ValueError: If the value is not a recognised birthday
    """
    value = value.strip()
    if not value:
        return ""

    m = _DATETIME_SUFFIX.match(value)
    if m:
        value = m.group(1)

    m = _LEGACY_WITH_YEAR.match(value)
    if m:
        return _canonical(m.group(3), m.group(2), m.group(1))
    m = _LEGACY_NO_YEAR.match(value)
    if m:
        return _canonical("", m.group(2), m.group(1))

    for pattern in _BIRTHDAY_FORMATS:
        m = pattern.match(value)
        if m:
            return _canonical(*m.groups())

    raise ValueError(f"unrecognised birthday {value!r}")


def _canonical(year: str, month: str, day: str) -> str:
    # 2000 is a leap year, so --02-29 stays valid without a year
    try:
        date(int(year) if year else 2000, int(month), int(day))
    except ValueError as e:
        raise ValueError(f"invalid birthday date: {e}") from e
    if year:
        return f"{year}-{month}-{day}"
    return f"--{month}-{day}"


def is_valid_birthday(value: str) -> bool:
    try:
        normalize_birthday(value)
    except ValueError:
        return False
    return True


def normalize_gender(value: str) -> str:
    """Map English, German and short-code gender values onto the four-value set.

    Returns:
        One of ``GENDERS``, or "" for blank input

    Raises:
        ValueError: If the value is not recognised
    """
    key = value.strip().lower()
    if not key:
        return ""
    try:
        return _GENDER_ALIASES[key]
    except KeyError:
        raise ValueError(f"unrecognised gender {value!r}") from None


def is_valid_email(value: str) -> bool:
    return EMAIL_RE.match(value.strip()) is not None


def is_valid_phone(value: str) -> bool:
    """Check that a phone number has 5 to 20 digits once formatting is removed."""
    digits = sum(1 for c in value if c.isdigit())
    return PHONE_MIN_DIGITS <= digits <= PHONE_MAX_DIGITS


def dedupe_circles(values: list[str]) -> list[str]:
    """Trim circle names and drop empty or case-insensitive duplicates, keeping order."""
    seen: set[str] = set()
    circles: list[str] = []
    for value in values:
        name = value.strip()
        if name and name.lower() not in seen:
            seen.add(name.lower())
            circles.append(name)
    return circles


def parse_circles(value: str) -> list[str]:
    """Split a circles cell on commas or semicolons."""
    return dedupe_circles(re.split(r"[,;]", value))
