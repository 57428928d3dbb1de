"""Principal discovery support for CardDAV."""

from __future__ import annotations

from dataclasses import dataclass, field

from lxml import etree
from starlette.requests import Request
from starlette.responses import Response

from .internal import CurrentUserPrincipal, Href, MultiStatus
from .internal.elements import (
    ADDRESSBOOK_HOME_SET,
    COLLECTION,
    CURRENT_USER_PRINCIPAL,
    DISPLAY_NAME,
    PRINCIPAL,
    PRINCIPAL_URL,
    RESOURCE_TYPE,
    DisplayName,
    ResourceType,
    href_property,
)
from .internal.server import propfind_response, read_propfind, serve_multistatus

DAV_CLASSES = ["1", "3"]


@dataclass
class PrincipalOptions:
    """Options for serving principal URLs."""

    current_user_principal_path: str
    addressbook_home_set_path: str
    display_name: str = ""
    capabilities: list[str] = field(default_factory=lambda: ["addressbook"])


def dav_header(capabilities: list[str]) -> str:
    return ", ".join(DAV_CLASSES + capabilities)


async def serve_principal(request: Request, options: PrincipalOptions, is_principal: bool = True) -> Response:
    """Serve discovery requests on the CardDAV root and the user principal.

    Both answer PROPFIND with the current-user-principal and
    addressbook-home-set a client needs to find the address book.

    Args:
        request: Starlette request
        options: Principal options
        is_principal: True for the principal URL, False for the service root

    Returns:
        Starlette response
    """
    if request.method == "OPTIONS":
        return _handle_principal_options(options)
    elif request.method == "PROPFIND":
        return await _handle_principal_propfind(request, options, is_principal)
    else:
        return Response(content="Method not allowed", status_code=405, headers={"Allow": "OPTIONS, PROPFIND"})


def _handle_principal_options(options: PrincipalOptions) -> Response:
    """Handle OPTIONS request for principal."""
    headers = {
        "DAV": dav_header(options.capabilities),
        "Allow": "OPTIONS, PROPFIND",
    }
    return Response(status_code=204, headers=headers)


async def _handle_principal_propfind(request: Request, options: PrincipalOptions, is_principal: bool) -> Response:
    """Handle PROPFIND request for principal."""
    propfind = await read_propfind(request)

    types = [COLLECTION, PRINCIPAL] if is_principal else [COLLECTION]
    props = {
        RESOURCE_TYPE: lambda: ResourceType(types=types).to_xml(),
        CURRENT_USER_PRINCIPAL: lambda: _create_current_user_principal(options.current_user_principal_path),
        PRINCIPAL_URL: lambda: href_property(PRINCIPAL_URL, options.current_user_principal_path),
        ADDRESSBOOK_HOME_SET: lambda: href_property(ADDRESSBOOK_HOME_SET, options.addressbook_home_set_path),
    }
    if options.display_name:
        props[DISPLAY_NAME] = lambda: DisplayName(name=options.display_name).to_xml()

    resp = propfind_response(request.url.path, propfind, props)
    return serve_multistatus(MultiStatus(responses=[resp]))


def _create_current_user_principal(path: str) -> etree._Element:
    """Create current-user-principal XML element."""
    return CurrentUserPrincipal(href=Href.from_string(path)).to_xml()
