"""CardDAV backend interface and the contact-store implementation."""

from __future__ import annotations

import logging
from typing import Protocol
from urllib.parse import quote, unquote, urlsplit

from starlette.concurrency import run_in_threadpool
from starlette.requests import Request

from ..errors import Forbidden, NotFound, NotSupported
from ..fetch import ImageFetcher
from ..models import Contact, User, new_uid
from ..photos import PhotoStore, materialize_photo
from ..store import ContactStore
from .carddav import AddressBook, AddressBookQuery, AddressObject
from .vcard_mapper import apply_vcard, contact_to_vcard_text, parse_vcard

logger = logging.getLogger("meerkat.carddav")

PREFIX = "/carddav/"
ADDRESSBOOK_SEGMENT = "contacts"
VCARD_SUFFIX = ".vcf"

# path base names that are collections, never object UIDs
RESERVED_NAMES = frozenset({"", ".", "carddav", "addressbooks", "principals", "contacts"})


def principal_path(username: str) -> str:
    return f"{PREFIX}principals/{quote(username)}/"


def home_set_path(username: str) -> str:
    return f"{PREFIX}addressbooks/{quote(username)}/"


def addressbook_path(username: str) -> str:
    return f"{home_set_path(username)}{ADDRESSBOOK_SEGMENT}/"


def object_path(username: str, uid: str) -> str:
    return f"{addressbook_path(username)}{quote(uid, safe='@')}{VCARD_SUFFIX}"


def href_to_path(href: str) -> str:
    """Turn an href from a request body into a decoded path.

    Request paths arrive already percent-decoded; hrefs do not, and may be
    absolute URLs.
    """
    return unquote(urlsplit(href).path)


def uid_from_path(path: str) -> str:
    """Extract the object name from a decoded path.

    Returns:
        The UID with any ``.vcf`` suffix removed, or "" when the base name
        is a collection name
    """
    base = path.rstrip("/").rsplit("/", 1)[-1]
    if base.lower().endswith(VCARD_SUFFIX):
        base = base[: -len(VCARD_SUFFIX)]
    if base.lower() in RESERVED_NAMES:
        return ""
    return base


class CardDAVBackend(Protocol):
    """CardDAV server backend interface.

    Implementations provide storage and retrieval of address books and contacts
    for the user authenticated on ``request.state.user``. Every ``path``
    argument is already percent-decoded.
    """

    async def current_user_principal(self, request: Request) -> str:
        """Get the current user's principal path."""
        ...

    async def addressbook_home_set_path(self, request: Request) -> str:
        """Get the addressbook home set path for the current user."""
        ...

    async def list_addressbooks(self, request: Request) -> list[AddressBook]:
        """List all address books for the current user."""
        ...

    async def get_addressbook(self, request: Request, path: str) -> AddressBook:
        """Get address book by path.

        Raises:
            NotFound: If the path is not one of the user's address books
        """
        ...

    async def create_addressbook(self, request: Request, addressbook: AddressBook) -> None:
        """Create a new address book."""
        ...

    async def delete_addressbook(self, request: Request, path: str) -> None:
        """Delete an address book."""
        ...

    async def get_address_object(self, request: Request, path: str) -> AddressObject:
        """Get an address object (vCard).

        Raises:
            NotFound: If no object lives at the path
        """
        ...

    async def list_address_objects(self, request: Request, addressbook_path: str) -> list[AddressObject]:
        """List all address objects in an address book."""
        ...

    async def query_address_objects(
        self, request: Request, addressbook_path: str, query: AddressBookQuery
    ) -> list[AddressObject]:
        """Query address objects with filters."""
        ...

    async def put_address_object(
        self,
        request: Request,
        path: str,
        vcard_data: str,
        if_none_match: bool = False,
        if_match: str | None = None,
    ) -> tuple[AddressObject, bool]:
        """Create or update an address object.

        Returns:
            Tuple of (object, created)

        Raises:
            PreconditionFailed: If If-Match or If-None-Match does not hold
            InvalidInput: If the body is not a vCard
        """
        ...

    async def delete_address_object(self, request: Request, path: str) -> None:
        """Delete an address object.

        Raises:
            NotFound: If object not found
        """
        ...


class StoreCardDAVBackend:
    """CardDAV backend over the relational contact store.

    Every user has exactly one address book. It is not stored anywhere and
    exists as long as the user does.
    """

    def __init__(
        self,
        store: ContactStore,
        photos: PhotoStore,
        fetcher: ImageFetcher | None = None,
    ) -> None:
        """Initialize the backend.

        Args:
            store: Contact store
            photos: Photo store used for embedded and fetched PHOTO values
            fetcher: Remote image fetcher for URL-valued PHOTO (optional)
        """
        self.store = store
        self.photos = photos
        self.fetcher = fetcher

    @staticmethod
    def _user(request: Request) -> User:
        return request.state.user

    def _check_addressbook(self, request: Request, path: str) -> User:
        user = self._user(request)
        ab_path = unquote(addressbook_path(user.username))
        if path != ab_path.rstrip("/") and not path.startswith(ab_path):
            if path.startswith(f"{PREFIX}addressbooks/"):
                raise Forbidden("address book belongs to another user")
            raise NotFound(f"no address book at {path}")
        return user

    async def current_user_principal(self, request: Request) -> str:
        return principal_path(self._user(request).username)

    async def addressbook_home_set_path(self, request: Request) -> str:
        return home_set_path(self._user(request).username)

    async def list_addressbooks(self, request: Request) -> list[AddressBook]:
        return [AddressBook(path=addressbook_path(self._user(request).username))]

    async def get_addressbook(self, request: Request, path: str) -> AddressBook:
        user = self._check_addressbook(request, path)
        if path.rstrip("/") != unquote(addressbook_path(user.username)).rstrip("/"):
            raise NotFound(f"no address book at {path}")
        return AddressBook(path=addressbook_path(user.username))

    async def create_addressbook(self, request: Request, addressbook: AddressBook) -> None:
        raise NotSupported("creating address books is not supported")

    async def delete_addressbook(self, request: Request, path: str) -> None:
        raise NotSupported("deleting address books is not supported")

    def _to_object(self, user: User, contact: Contact) -> AddressObject:
        photo_b64, media_type = self.photos.read(contact)
        data = contact_to_vcard_text(contact, photo_b64, media_type)
        return AddressObject(
            path=object_path(user.username, contact.vcard_uid),
            data=data,
            mod_time=contact.updated_at,
            content_length=len(data.encode("utf-8")),
            etag=contact.etag,
        )

    async def get_address_object(self, request: Request, path: str) -> AddressObject:
        user = self._check_addressbook(request, path)
        uid = uid_from_path(path)
        if not uid:
            raise NotFound(f"no address object at {path}")

        contact = await run_in_threadpool(self.store.get_contact, user.id, uid)
        if contact is None:
            raise NotFound(f"contact {uid} not found")
        return await run_in_threadpool(self._to_object, user, contact)

    async def list_address_objects(self, request: Request, addressbook_path: str) -> list[AddressObject]:
        user = self._check_addressbook(request, addressbook_path)

        def load() -> list[AddressObject]:
            return [self._to_object(user, c) for c in self.store.list_contacts(user.id)]

        return await run_in_threadpool(load)

    async def query_address_objects(
        self, request: Request, addressbook_path: str, query: AddressBookQuery
    ) -> list[AddressObject]:
        objects = await self.list_address_objects(request, addressbook_path)
        matched = [obj for obj in objects if query.matches(parse_vcard(obj.data))]
        if query.limit > 0:
            matched = matched[: query.limit]
        return matched

    async def put_address_object(
        self,
        request: Request,
        path: str,
        vcard_data: str,
        if_none_match: bool = False,
        if_match: str | None = None,
    ) -> tuple[AddressObject, bool]:
        user = self._check_addressbook(request, path)
        card = parse_vcard(vcard_data)
        uid = uid_from_path(path) or card.uid or new_uid()

        # image work happens before the write transaction is opened
        saved = None
        photo = card.photo
        if photo is not None and not photo.empty:
            saved = await materialize_photo(
                self.photos, self.fetcher, photo.data, photo.media_type, photo.url
            )

        def apply(contact: Contact) -> None:
            apply_vcard(card, contact)
            if saved is not None:
                contact.photo, contact.photo_thumbnail = saved

        contact, created = await run_in_threadpool(
            self.store.put_contact, user.id, uid, apply, if_match, if_none_match
        )
        logger.info(f"{'Created' if created else 'Updated'} contact {contact.vcard_uid} for {user.username}")
        return (
            AddressObject(
                path=object_path(user.username, contact.vcard_uid),
                data="",
                mod_time=contact.updated_at,
                etag=contact.etag,
            ),
            created,
        )

    async def delete_address_object(self, request: Request, path: str) -> None:
        user = self._check_addressbook(request, path)
        uid = uid_from_path(path)
        if not uid:
            raise NotFound(f"no address object at {path}")
        await run_in_threadpool(self.store.delete_contact, user.id, uid)
        logger.info(f"Deleted contact {uid} for {user.username}")
