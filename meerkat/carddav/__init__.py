"""CardDAV support for Meerkat."""

from .backend import CardDAVBackend, StoreCardDAVBackend
from .carddav import (
    CAPABILITY_ADDRESSBOOK,
    AddressBook,
    AddressBookQuery,
    AddressObject,
    ParamFilter,
    PropFilter,
    TextMatch,
)
from .server import Handler
from .vcard_mapper import CardPhoto, contact_to_vcard_text, parse_vcard, vcard_to_contact

__all__ = [
    "CardDAVBackend",
    "StoreCardDAVBackend",
    "CAPABILITY_ADDRESSBOOK",
    "AddressBook",
    "AddressBookQuery",
    "AddressObject",
    "ParamFilter",
    "PropFilter",
    "TextMatch",
    "Handler",
    "CardPhoto",
    "contact_to_vcard_text",
    "parse_vcard",
    "vcard_to_contact",
]
