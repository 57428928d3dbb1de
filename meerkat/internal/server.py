"""Internal server utilities for the WebDAV layer."""

from __future__ import annotations

from collections.abc import Callable

from lxml import etree
from starlette.requests import Request
from starlette.responses import Response as StarletteResponse

from .elements import Href, MultiStatus, Prop, PropFind, PropStat, Response, Status
from .internal import HTTPError

PropertyFunc = Callable[[], etree._Element]


def serve_error(err: HTTPError) -> StarletteResponse:
    """Serve a plain-text error response."""
    return StarletteResponse(content=str(err), status_code=err.code)


async def decode_xml_request(request: Request) -> etree._Element:
    """Decode XML request body.

    Raises:
        HTTPError: 400 if the body is not well-formed XML
    """
    body = await request.body()
    try:
        return etree.fromstring(body)
    except etree.XMLSyntaxError as e:
        raise HTTPError(400, e) from e


async def is_request_body_empty(request: Request) -> bool:
    """Check if request body is empty."""
    body = await request.body()
    return len(body.strip()) == 0


async def read_propfind(request: Request) -> PropFind:
    """Parse a PROPFIND body; an empty body means allprop."""
    if await is_request_body_empty(request):
        return PropFind(allprop=True)
    xml_elem = await decode_xml_request(request)
    return PropFind.from_xml(xml_elem)


def serve_multistatus(ms: MultiStatus) -> StarletteResponse:
    """Serve a multistatus response."""
    xml_elem = ms.to_xml()
    xml_str = etree.tostring(xml_elem, encoding="unicode", pretty_print=True)
    return StarletteResponse(
        content='<?xml version="1.0" encoding="utf-8"?>\n' + xml_str,
        status_code=207,  # Multi-Status
        media_type="application/xml; charset=utf-8",
    )


def propfind_response(href: str, propfind: PropFind, props: dict[str, PropertyFunc]) -> Response:
    """Build a PROPFIND response from a table of property builders.

    Requested properties that are present in ``props`` are returned in a
    200 propstat; the rest are listed empty in a 404 propstat.

    Args:
        href: Resource href
        propfind: PROPFIND request
        props: Property name to element builder

    Returns:
        WebDAV Response
    """
    found: list[etree._Element] = []
    not_found: list[etree._Element] = []

    for name in propfind.requested_names(list(props.keys())):
        builder = props.get(name)
        if builder is None:
            not_found.append(etree.Element(name))
        elif propfind.propname:
            found.append(etree.Element(name))
        else:
            found.append(builder())

    propstats: list[PropStat] = []
    if found:
        propstats.append(PropStat(prop=Prop(raw=found), status=Status(code=200, text="OK")))
    if not_found:
        propstats.append(
            PropStat(prop=Prop(raw=not_found), status=Status(code=404, text="Not Found"))
        )

    return Response(hrefs=[Href.from_string(href)], propstats=propstats)
