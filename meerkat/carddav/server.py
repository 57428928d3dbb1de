"""CardDAV server implementation."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from enum import IntEnum
from typing import Any

from lxml import etree
from starlette.requests import Request
from starlette.responses import Response

from ..auth import BASIC_REALM, authenticate_basic
from ..errors import Forbidden, MeerkatError, Unauthorized
from ..internal import Depth, HTTPError, MultiStatus, http_errorf, parse_depth
from ..internal import Response as WebDAVResponse
from ..internal.elements import (
    ADDRESS_DATA,
    ADDRESSBOOK,
    ADDRESSBOOK_DESCRIPTION,
    ADDRESSBOOK_HOME_SET,
    CARDDAV_NAMESPACE,
    COLLECTION,
    CURRENT_USER_PRINCIPAL,
    CURRENT_USER_PRIVILEGE_SET,
    DISPLAY_NAME,
    GET_CONTENT_LENGTH,
    GET_CONTENT_TYPE,
    GET_ETAG,
    GET_LAST_MODIFIED,
    MAX_RESOURCE_SIZE,
    NAMESPACE,
    RESOURCE_TYPE,
    SUPPORTED_ADDRESS_DATA,
    CurrentUserPrincipal,
    DisplayName,
    GetContentLength,
    GetContentType,
    GetETag,
    GetLastModified,
    Href,
    ResourceType,
    href_property,
    http_date,
    new_status_response,
    quote_etag,
)
from ..internal.server import (
    decode_xml_request,
    propfind_response,
    read_propfind,
    serve_error,
    serve_multistatus,
)
from ..principal import PrincipalOptions, dav_header, serve_principal
from ..store import ContactStore
from .backend import CardDAVBackend, href_to_path
from .carddav import CAPABILITY_ADDRESSBOOK, VCARD_CONTENT_TYPE, AddressBook, AddressObject
from .report import AddressBookMultigetReport, AddressBookQueryReport, parse_addressbook_report

logger = logging.getLogger("meerkat.carddav")

ALLOWED_METHODS = ["OPTIONS", "PROPFIND", "REPORT", "GET", "HEAD", "PUT", "DELETE"]


class ResourceKind(IntEnum):
    """CardDAV resource kinds, by position in the URL tree."""

    ROOT = 0
    PRINCIPAL = 1
    ADDRESSBOOK_HOME_SET = 2
    ADDRESSBOOK = 3
    ADDRESS_OBJECT = 4


@dataclass
class ResourcePath:
    kind: ResourceKind
    username: str = ""


def detect_resource(path: str) -> ResourcePath | None:
    """Classify a request path under /carddav.

    Returns:
        The resource kind and the username it belongs to, or None if the
        path is not part of the CardDAV tree
    """
    segments = [s for s in path.split("/") if s]
    if not segments or segments[0] != "carddav":
        return None
    rest = segments[1:]
    if not rest:
        return ResourcePath(ResourceKind.ROOT)

    if rest[0] == "principals":
        if len(rest) == 1:
            return ResourcePath(ResourceKind.ROOT)
        if len(rest) == 2:
            return ResourcePath(ResourceKind.PRINCIPAL, rest[1])
        return None

    if rest[0] == "addressbooks":
        if len(rest) == 1:
            return ResourcePath(ResourceKind.ROOT)
        if len(rest) == 2:
            return ResourcePath(ResourceKind.ADDRESSBOOK_HOME_SET, rest[1])
        if rest[2] != "contacts":
            return None
        if len(rest) == 3:
            return ResourcePath(ResourceKind.ADDRESSBOOK, rest[1])
        if len(rest) == 4:
            return ResourcePath(ResourceKind.ADDRESS_OBJECT, rest[1])
    return None


def _serve_meerkat_error(err: MeerkatError) -> Response:
    response = serve_error(HTTPError(err.status, err))
    if isinstance(err, Unauthorized):
        response.headers["WWW-Authenticate"] = f'Basic realm="{BASIC_REALM}"'
    return response


class Handler:
    """CardDAV HTTP handler."""

    def __init__(self, store: ContactStore, backend: CardDAVBackend, debug: bool = False):
        """Initialize handler.

        Args:
            store: Contact store used to authenticate users
            backend: CardDAV backend instance
            debug: Enable debug logging
        """
        self.store = store
        self.backend = backend
        self.debug = debug

    async def handle(self, request: Request) -> Response:
        """Handle CardDAV HTTP request.

        Args:
            request: Starlette request

        Returns:
            Starlette response
        """
        if self.debug:
            from ..debug import log_request

            # Read and cache the request body
            request_body = await request.body()
            log_request(request.method, str(request.url.path), dict(request.headers.items()), request_body)

            # request.body() can only be consumed once from the receive channel
            async def receive():
                return {"type": "http.request", "body": request_body}

            request = Request(scope=request.scope, receive=receive)

        try:
            response = await self._dispatch(request)
        except HTTPError as e:
            response = serve_error(e)
        except MeerkatError as e:
            if e.status >= 500:
                logger.warning(f"{request.method} {request.url.path}: {e}")
            response = _serve_meerkat_error(e)

        if self.debug:
            await self._log_response(response)
        return response

    async def _dispatch(self, request: Request) -> Response:
        resource = detect_resource(request.url.path)
        if resource is None:
            raise http_errorf(404, "carddav: no resource at %s", request.url.path)

        if request.method == "OPTIONS":
            return self._options(resource)

        user = await authenticate_basic(request, self.store)
        if resource.username and resource.username != user.username:
            raise Forbidden(f"{request.url.path} belongs to another user")

        if resource.kind in (ResourceKind.ROOT, ResourceKind.PRINCIPAL):
            options = PrincipalOptions(
                current_user_principal_path=await self.backend.current_user_principal(request),
                addressbook_home_set_path=await self.backend.addressbook_home_set_path(request),
                display_name=user.username,
                capabilities=[CAPABILITY_ADDRESSBOOK],
            )
            return await serve_principal(request, options, is_principal=resource.kind == ResourceKind.PRINCIPAL)

        method = request.method
        if method == "PROPFIND":
            return await self._propfind(request, resource)
        elif method == "REPORT":
            if resource.kind != ResourceKind.ADDRESSBOOK:
                raise http_errorf(400, "carddav: REPORT is only supported on the address book")
            return await self._report(request)
        elif method in ("GET", "HEAD"):
            if resource.kind != ResourceKind.ADDRESS_OBJECT:
                raise HTTPError(405)
            return await self._get(request)
        elif method == "PUT":
            if resource.kind != ResourceKind.ADDRESS_OBJECT:
                raise HTTPError(405)
            return await self._put(request)
        elif method == "DELETE":
            if resource.kind == ResourceKind.ADDRESSBOOK:
                await self.backend.delete_addressbook(request, request.url.path)
            elif resource.kind == ResourceKind.ADDRESS_OBJECT:
                await self.backend.delete_address_object(request, request.url.path)
            else:
                raise HTTPError(405)
            return Response(status_code=204)
        elif method == "MKCOL":
            await self.backend.create_addressbook(request, AddressBook(path=request.url.path))
            return Response(status_code=201)
        raise HTTPError(405)

    def _options(self, resource: ResourcePath) -> Response:
        allow = list(ALLOWED_METHODS)
        if resource.kind != ResourceKind.ADDRESS_OBJECT:
            allow = [m for m in allow if m not in ("GET", "HEAD", "PUT")]
        headers = {
            "DAV": dav_header([CAPABILITY_ADDRESSBOOK]),
            "Allow": ", ".join(allow),
        }
        return Response(status_code=204, headers=headers)

    async def _propfind(self, request: Request, resource: ResourcePath) -> Response:
        propfind = await read_propfind(request)
        depth = parse_depth(request.headers.get("depth", "0"))

        principal_path = await self.backend.current_user_principal(request)
        home_set_path = await self.backend.addressbook_home_set_path(request)
        responses: list[WebDAVResponse] = []

        if resource.kind == ResourceKind.ADDRESSBOOK_HOME_SET:
            responses.append(
                propfind_response(
                    home_set_path,
                    propfind,
                    _home_set_props(principal_path, home_set_path),
                )
            )
            if depth != Depth.ZERO:
                for addressbook in await self.backend.list_addressbooks(request):
                    responses.append(
                        propfind_response(
                            addressbook.path,
                            propfind,
                            _addressbook_props(addressbook, principal_path, home_set_path),
                        )
                    )

        elif resource.kind == ResourceKind.ADDRESSBOOK:
            addressbook = await self.backend.get_addressbook(request, request.url.path)
            responses.append(
                propfind_response(
                    addressbook.path,
                    propfind,
                    _addressbook_props(addressbook, principal_path, home_set_path),
                )
            )
            if depth != Depth.ZERO:
                for obj in await self.backend.list_address_objects(request, addressbook.path):
                    responses.append(propfind_response(obj.path, propfind, _object_props(obj)))

        else:
            obj = await self.backend.get_address_object(request, request.url.path)
            responses.append(propfind_response(obj.path, propfind, _object_props(obj)))

        return serve_multistatus(MultiStatus(responses=responses))

    async def _report(self, request: Request) -> Response:
        root = await decode_xml_request(request)
        try:
            report = parse_addressbook_report(root)
        except ValueError as e:
            raise HTTPError(400, e) from e

        responses: list[WebDAVResponse] = []
        if isinstance(report, AddressBookQueryReport):
            objects = await self.backend.query_address_objects(request, request.url.path, report.query)
            for obj in objects:
                responses.append(propfind_response(obj.path, report.propfind, _object_props(obj)))

        elif isinstance(report, AddressBookMultigetReport):
            for href in report.hrefs:
                try:
                    obj = await self.backend.get_address_object(request, href_to_path(href))
                except MeerkatError as e:
                    if e.status not in (403, 404):
                        raise
                    responses.append(new_status_response(href, 404))
                    continue
                responses.append(propfind_response(obj.path, report.propfind, _object_props(obj)))

        return serve_multistatus(MultiStatus(responses=responses))

    async def _get(self, request: Request) -> Response:
        obj = await self.backend.get_address_object(request, request.url.path)
        headers = {
            "ETag": quote_etag(obj.etag),
            "Content-Length": str(obj.content_length),
        }
        if obj.mod_time:
            headers["Last-Modified"] = http_date(obj.mod_time)

        media_type = f"{VCARD_CONTENT_TYPE}; charset=utf-8"
        if request.method == "HEAD":
            return Response(headers=headers, media_type=media_type)
        return Response(content=obj.data, headers=headers, media_type=media_type)

    async def _put(self, request: Request) -> Response:
        body = await request.body()
        try:
            vcard_data = body.decode("utf-8")
        except UnicodeDecodeError as e:
            raise HTTPError(400, e) from e

        if_none_match = request.headers.get("if-none-match", "").strip() == "*"
        if_match = request.headers.get("if-match")

        obj, created = await self.backend.put_address_object(
            request, request.url.path, vcard_data, if_none_match, if_match
        )

        headers: dict[str, str] = {}
        if obj.etag:
            headers["ETag"] = quote_etag(obj.etag)
        if obj.mod_time:
            headers["Last-Modified"] = http_date(obj.mod_time)
        return Response(status_code=201 if created else 204, headers=headers)

    async def _log_response(self, response: Response) -> None:
        """Log an outgoing response for debugging."""
        from ..debug import log_response

        headers: dict[str, Any] = dict(response.headers.items())
        log_response(response.status_code, headers, getattr(response, "body", None))


PropertyFuncs = dict[str, Callable[[], etree._Element]]


def _common_props(principal_path: str, home_set_path: str) -> PropertyFuncs:
    return {
        CURRENT_USER_PRINCIPAL: lambda: CurrentUserPrincipal(href=Href.from_string(principal_path)).to_xml(),
        ADDRESSBOOK_HOME_SET: lambda: href_property(ADDRESSBOOK_HOME_SET, home_set_path),
    }


def _home_set_props(principal_path: str, home_set_path: str) -> PropertyFuncs:
    props = {
        RESOURCE_TYPE: lambda: ResourceType(types=[COLLECTION]).to_xml(),
        DISPLAY_NAME: lambda: DisplayName(name="Address books").to_xml(),
    }
    props.update(_common_props(principal_path, home_set_path))
    return props


def _addressbook_props(addressbook: AddressBook, principal_path: str, home_set_path: str) -> PropertyFuncs:
    props = {
        RESOURCE_TYPE: lambda: ResourceType(types=[COLLECTION, ADDRESSBOOK]).to_xml(),
        DISPLAY_NAME: lambda: DisplayName(name=addressbook.name).to_xml(),
        ADDRESSBOOK_DESCRIPTION: lambda: _text_element(ADDRESSBOOK_DESCRIPTION, addressbook.description),
        SUPPORTED_ADDRESS_DATA: lambda: _supported_address_data(addressbook.supported_versions),
        CURRENT_USER_PRIVILEGE_SET: _current_user_privilege_set,
    }
    if addressbook.max_resource_size > 0:
        props[MAX_RESOURCE_SIZE] = lambda: _text_element(MAX_RESOURCE_SIZE, str(addressbook.max_resource_size))
    props.update(_common_props(principal_path, home_set_path))
    return props


def _object_props(obj: AddressObject) -> PropertyFuncs:
    props = {
        RESOURCE_TYPE: lambda: ResourceType().to_xml(),
        GET_ETAG: lambda: GetETag(etag=obj.etag).to_xml(),
        GET_CONTENT_LENGTH: lambda: GetContentLength(length=obj.content_length).to_xml(),
        GET_CONTENT_TYPE: lambda: GetContentType(content_type=VCARD_CONTENT_TYPE).to_xml(),
        ADDRESS_DATA: lambda: _text_element(ADDRESS_DATA, obj.data),
    }
    if obj.mod_time:
        props[GET_LAST_MODIFIED] = lambda: GetLastModified(last_modified=obj.mod_time).to_xml()
    return props


def _text_element(tag: str, text: str) -> etree._Element:
    elem = etree.Element(tag)
    elem.text = text
    return elem


def _supported_address_data(versions: tuple[str, ...]) -> etree._Element:
    """Create supported-address-data XML element."""
    elem = etree.Element(SUPPORTED_ADDRESS_DATA)
    for version in versions:
        data_type = etree.SubElement(elem, f"{{{CARDDAV_NAMESPACE}}}address-data-type")
        data_type.set("content-type", VCARD_CONTENT_TYPE)
        data_type.set("version", version)
    return elem


def _current_user_privilege_set() -> etree._Element:
    """Create current-user-privilege-set XML element (read and write)."""
    elem = etree.Element(CURRENT_USER_PRIVILEGE_SET)
    for name in ("read", "write"):
        privilege = etree.SubElement(elem, f"{{{NAMESPACE}}}privilege")
        etree.SubElement(privilege, f"{{{NAMESPACE}}}{name}")
    return elem
