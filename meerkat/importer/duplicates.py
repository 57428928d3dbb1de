"""Duplicate detection against the owner's existing contacts."""

from __future__ import annotations

from ..store import ContactStore
from .models import MATCH_EMAIL, MATCH_NAME, DuplicateMatch


def detect_duplicate(
    store: ContactStore, user_id: int, firstname: str, lastname: str, email: str
) -> DuplicateMatch | None:
    """Find an existing contact an import row probably describes.

    An e-mail match takes priority; otherwise both names must match. All
    comparisons are case-insensitive and soft-deleted contacts never match.
    """
    if email.strip():
        existing = store.find_by_email(user_id, email)
        if existing is not None:
            return DuplicateMatch.for_contact(existing, MATCH_EMAIL)

    if firstname.strip() and lastname.strip():
        existing = store.find_by_name(user_id, firstname, lastname)
        if existing is not None:
            return DuplicateMatch.for_contact(existing, MATCH_NAME)

    return None
