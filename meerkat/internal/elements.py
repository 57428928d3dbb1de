"""WebDAV XML elements."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from email.utils import format_datetime
from http import HTTPStatus
from urllib.parse import ParseResult as URL, urlparse

from lxml import etree

# WebDAV namespace
NAMESPACE = "DAV:"
CARDDAV_NAMESPACE = "urn:ietf:params:xml:ns:carddav"

# Common XML names
RESOURCE_TYPE = "{DAV:}resourcetype"
DISPLAY_NAME = "{DAV:}displayname"
GET_CONTENT_LENGTH = "{DAV:}getcontentlength"
GET_CONTENT_TYPE = "{DAV:}getcontenttype"
GET_LAST_MODIFIED = "{DAV:}getlastmodified"
GET_ETAG = "{DAV:}getetag"
COLLECTION = "{DAV:}collection"
PRINCIPAL = "{DAV:}principal"
PRINCIPAL_URL = "{DAV:}principal-URL"
CURRENT_USER_PRINCIPAL = "{DAV:}current-user-principal"
CURRENT_USER_PRIVILEGE_SET = "{DAV:}current-user-privilege-set"

ADDRESSBOOK = f"{{{CARDDAV_NAMESPACE}}}addressbook"
ADDRESSBOOK_HOME_SET = f"{{{CARDDAV_NAMESPACE}}}addressbook-home-set"
ADDRESSBOOK_DESCRIPTION = f"{{{CARDDAV_NAMESPACE}}}addressbook-description"
ADDRESS_DATA = f"{{{CARDDAV_NAMESPACE}}}address-data"
SUPPORTED_ADDRESS_DATA = f"{{{CARDDAV_NAMESPACE}}}supported-address-data"
MAX_RESOURCE_SIZE = f"{{{CARDDAV_NAMESPACE}}}max-resource-size"


@dataclass
class Status:
    """HTTP status for WebDAV responses."""

    code: int
    text: str = ""

    def to_string(self) -> str:
        """Marshal status to text."""
        text = self.text if self.text else HTTPStatus(self.code).phrase
        return f"HTTP/1.1 {self.code} {text}"

    @staticmethod
    def from_string(s: str) -> Status:
        """Unmarshal status from text."""
        if not s:
            return Status(code=0)

        parts = s.split(" ", 2)
        if len(parts) != 3:
            raise ValueError(f"webdav: invalid HTTP status {s!r}: expected 3 fields")

        try:
            code = int(parts[1])
        except ValueError as e:
            raise ValueError(
                f"webdav: invalid HTTP status {s!r}: failed to parse code: {e}"
            ) from e

        return Status(code=code, text=parts[2])


@dataclass
class Href:
    """WebDAV href element."""

    url: URL

    def __str__(self) -> str:
        return self.url.geturl()

    @staticmethod
    def from_string(s: str) -> Href:
        """Parse href from string."""
        return Href(url=urlparse(s))


@dataclass
class MultiStatus:
    """WebDAV multistatus response."""

    responses: list[Response] = field(default_factory=list)
    response_description: str = ""

    def to_xml(self) -> etree._Element:
        """Convert to XML element."""
        root = etree.Element(
            f"{{{NAMESPACE}}}multistatus",
            nsmap={"D": NAMESPACE, "C": CARDDAV_NAMESPACE},
        )
        for resp in self.responses:
            root.append(resp.to_xml())
        if self.response_description:
            desc = etree.SubElement(root, f"{{{NAMESPACE}}}responsedescription")
            desc.text = self.response_description
        return root

    @staticmethod
    def from_xml(element: etree._Element) -> MultiStatus:
        """Parse from XML element."""
        responses = [Response.from_xml(el) for el in element.findall(f"{{{NAMESPACE}}}response")]

        desc_el = element.find(f"{{{NAMESPACE}}}responsedescription")
        desc = desc_el.text if desc_el is not None and desc_el.text else ""

        return MultiStatus(responses=responses, response_description=desc)


@dataclass
class Prop:
    """WebDAV prop element."""

    raw: list[etree._Element] = field(default_factory=list)

    def to_xml(self) -> etree._Element:
        """Convert to XML element."""
        prop = etree.Element(f"{{{NAMESPACE}}}prop")
        for elem in self.raw:
            prop.append(elem)
        return prop

    @staticmethod
    def from_xml(element: etree._Element) -> Prop:
        """Parse from XML element."""
        return Prop(raw=[child for child in element if isinstance(child.tag, str)])

    def get(self, tag: str) -> etree._Element | None:
        """Get a property by tag name."""
        for elem in self.raw:
            if elem.tag == tag:
                return elem
        return None


@dataclass
class PropStat:
    """WebDAV propstat element."""

    prop: Prop
    status: Status
    response_description: str = ""

    def to_xml(self) -> etree._Element:
        """Convert to XML element."""
        propstat = etree.Element(f"{{{NAMESPACE}}}propstat")
        propstat.append(self.prop.to_xml())

        status_el = etree.SubElement(propstat, f"{{{NAMESPACE}}}status")
        status_el.text = self.status.to_string()

        if self.response_description:
            desc = etree.SubElement(propstat, f"{{{NAMESPACE}}}responsedescription")
            desc.text = self.response_description

        return propstat

    @staticmethod
    def from_xml(element: etree._Element) -> PropStat:
        """Parse from XML element."""
        prop_el = element.find(f"{{{NAMESPACE}}}prop")
        prop = Prop.from_xml(prop_el) if prop_el is not None else Prop()

        status_el = element.find(f"{{{NAMESPACE}}}status")
        status = Status.from_string(status_el.text if status_el is not None else "")

        return PropStat(prop=prop, status=status)


@dataclass
class Response:
    """WebDAV response element."""

    hrefs: list[Href] = field(default_factory=list)
    propstats: list[PropStat] = field(default_factory=list)
    response_description: str = ""
    status: Status | None = None

    def to_xml(self) -> etree._Element:
        """Convert to XML element."""
        resp = etree.Element(f"{{{NAMESPACE}}}response")

        for href in self.hrefs:
            href_el = etree.SubElement(resp, f"{{{NAMESPACE}}}href")
            href_el.text = str(href)

        for propstat in self.propstats:
            resp.append(propstat.to_xml())

        if self.response_description:
            desc = etree.SubElement(resp, f"{{{NAMESPACE}}}responsedescription")
            desc.text = self.response_description

        if self.status:
            status_el = etree.SubElement(resp, f"{{{NAMESPACE}}}status")
            status_el.text = self.status.to_string()

        return resp

    @staticmethod
    def from_xml(element: etree._Element) -> Response:
        """Parse from XML element."""
        hrefs = [
            Href.from_string(el.text)
            for el in element.findall(f"{{{NAMESPACE}}}href")
            if el.text
        ]
        propstats = [PropStat.from_xml(el) for el in element.findall(f"{{{NAMESPACE}}}propstat")]

        status_el = element.find(f"{{{NAMESPACE}}}status")
        status = None
        if status_el is not None and status_el.text:
            status = Status.from_string(status_el.text)

        return Response(hrefs=hrefs, propstats=propstats, status=status)


def new_status_response(path: str, code: int) -> Response:
    """Create a response carrying only a status, e.g. 404 for a multiget href."""
    return Response(hrefs=[Href.from_string(path)], status=Status(code=code))


@dataclass
class PropFind:
    """WebDAV PROPFIND request."""

    prop: Prop | None = None
    allprop: bool = False
    propname: bool = False

    @staticmethod
    def from_xml(element: etree._Element) -> PropFind:
        """Parse from XML element."""
        prop_el = element.find(f"{{{NAMESPACE}}}prop")
        prop = Prop.from_xml(prop_el) if prop_el is not None else None

        allprop = element.find(f"{{{NAMESPACE}}}allprop") is not None
        propname = element.find(f"{{{NAMESPACE}}}propname") is not None

        return PropFind(prop=prop, allprop=allprop, propname=propname)

    def requested_names(self, available: list[str]) -> list[str]:
        """Resolve which property names this request asks for."""
        if self.allprop or self.propname or self.prop is None:
            return list(available)
        return [elem.tag for elem in self.prop.raw]


@dataclass
class ResourceType:
    """WebDAV resourcetype property."""

    types: list[str] = field(default_factory=list)

    def to_xml(self) -> etree._Element:
        """Convert to XML element."""
        rt = etree.Element(RESOURCE_TYPE)
        for t in self.types:
            etree.SubElement(rt, t)
        return rt


@dataclass
class DisplayName:
    """WebDAV displayname property."""

    name: str

    def to_xml(self) -> etree._Element:
        """Convert to XML element."""
        elem = etree.Element(DISPLAY_NAME)
        elem.text = self.name
        return elem


@dataclass
class GetContentLength:
    """WebDAV getcontentlength property."""

    length: int

    def to_xml(self) -> etree._Element:
        """Convert to XML element."""
        elem = etree.Element(GET_CONTENT_LENGTH)
        elem.text = str(self.length)
        return elem


@dataclass
class GetContentType:
    """WebDAV getcontenttype property."""

    content_type: str

    def to_xml(self) -> etree._Element:
        """Convert to XML element."""
        elem = etree.Element(GET_CONTENT_TYPE)
        elem.text = self.content_type
        return elem


@dataclass
class GetLastModified:
    """WebDAV getlastmodified property."""

    last_modified: datetime

    def to_xml(self) -> etree._Element:
        """Convert to XML element."""
        elem = etree.Element(GET_LAST_MODIFIED)
        elem.text = http_date(self.last_modified)
        return elem


@dataclass
class GetETag:
    """WebDAV getetag property."""

    etag: str

    def to_xml(self) -> etree._Element:
        """Convert to XML element."""
        elem = etree.Element(GET_ETAG)
        # ETags should be quoted
        elem.text = quote_etag(self.etag)
        return elem


@dataclass
class CurrentUserPrincipal:
    """WebDAV current-user-principal property."""

    href: Href | None = None
    unauthenticated: bool = False

    def to_xml(self) -> etree._Element:
        """Convert to XML element."""
        elem = etree.Element(CURRENT_USER_PRINCIPAL)
        if self.unauthenticated:
            etree.SubElement(elem, f"{{{NAMESPACE}}}unauthenticated")
        elif self.href:
            href_el = etree.SubElement(elem, f"{{{NAMESPACE}}}href")
            href_el.text = str(self.href)
        return elem


def href_property(tag: str, path: str) -> etree._Element:
    """Create a property element wrapping a single DAV:href."""
    elem = etree.Element(tag)
    href = etree.SubElement(elem, f"{{{NAMESPACE}}}href")
    href.text = path
    return elem


def quote_etag(etag: str) -> str:
    """Wrap an opaque token in double quotes for the ETag header."""
    return etag if etag.startswith('"') else f'"{etag}"'


def unquote_etag(value: str) -> str:
    """Strip the weak prefix and quotes from an If-Match/ETag header value."""
    value = value.strip()
    if value.startswith("W/"):
        value = value[2:]
    return value.strip('"')


def http_date(dt: datetime) -> str:
    """Format a datetime in RFC 1123 form for HTTP headers."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return format_datetime(dt.astimezone(UTC), usegmt=True)
