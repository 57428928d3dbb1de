"""CardDAV types and address-book query matching.

CardDAV is defined in RFC 6352.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime

from .vcard_mapper import ParsedCard, RawProperty

# CardDAV capability
CAPABILITY_ADDRESSBOOK = "addressbook"

ADDRESSBOOK_NAME = "Contacts"
ADDRESSBOOK_DESCRIPTION = "Meerkat CRM Contacts"
SUPPORTED_VERSIONS = ("3.0", "4.0")

VCARD_CONTENT_TYPE = "text/vcard"

MATCH_TYPES = ("equals", "contains", "starts-with", "ends-with")


@dataclass
class AddressBook:
    """CardDAV address book collection."""

    path: str
    name: str = ADDRESSBOOK_NAME
    description: str = ADDRESSBOOK_DESCRIPTION
    max_resource_size: int = 0
    supported_versions: tuple[str, ...] = SUPPORTED_VERSIONS


@dataclass
class AddressObject:
    """CardDAV address object (vCard data)."""

    path: str
    data: str  # vCard data as string
    mod_time: datetime | None = None
    content_length: int = 0
    etag: str = ""


@dataclass
class TextMatch:
    """Text matching filter."""

    text: str
    negate_condition: bool = False
    match_type: str = "contains"  # contains, equals, starts-with, ends-with
    collation: str = "i;unicode-casemap"

    def matches(self, value: str) -> bool:
        needle, haystack = self.text, value
        if self.collation != "i;octet":
            needle, haystack = needle.casefold(), haystack.casefold()

        if self.match_type == "equals":
            ok = haystack == needle
        elif self.match_type == "starts-with":
            ok = haystack.startswith(needle)
        elif self.match_type == "ends-with":
            ok = haystack.endswith(needle)
        else:
            ok = needle in haystack
        return ok != self.negate_condition


@dataclass
class ParamFilter:
    """Parameter filter for address book queries."""

    name: str
    is_not_defined: bool = False
    text_match: TextMatch | None = None

    def matches(self, prop: RawProperty) -> bool:
        values = prop.params.get(self.name.upper())
        if self.is_not_defined:
            return values is None
        if values is None:
            return False
        if self.text_match is None:
            return True
        return any(self.text_match.matches(v) for v in values)


@dataclass
class PropFilter:
    """Property filter for address book queries."""

    name: str
    is_not_defined: bool = False
    test: str = "anyof"  # anyof, allof
    text_matches: list[TextMatch] = field(default_factory=list)
    param_filters: list[ParamFilter] = field(default_factory=list)

    def matches(self, card: ParsedCard) -> bool:
        props = card.all(self.name.upper())
        if self.is_not_defined:
            return not props
        if not props:
            return False
        if not self.text_matches and not self.param_filters:
            return True
        return any(self._matches_property(p) for p in props)

    def _matches_property(self, prop: RawProperty) -> bool:
        value = prop.text()
        results = [tm.matches(value) for tm in self.text_matches]
        results.extend(pf.matches(prop) for pf in self.param_filters)
        return all(results) if self.test == "allof" else any(results)


@dataclass
class AddressBookQuery:
    """CardDAV addressbook-query REPORT request."""

    prop_filters: list[PropFilter] = field(default_factory=list)
    test: str = "anyof"  # anyof, allof
    limit: int = 0  # <= 0 means unlimited

    def matches(self, card: ParsedCard) -> bool:
        """Check a card against the filter; an empty filter matches everything."""
        if not self.prop_filters:
            return True
        results = (pf.matches(card) for pf in self.prop_filters)
        return all(results) if self.test == "allof" else any(results)
