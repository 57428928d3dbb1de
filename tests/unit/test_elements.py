"""Tests for internal elements."""

from datetime import datetime, timezone

import pytest
from lxml import etree

from meerkat.internal.elements import (
    MultiStatus,
    PropFind,
    Status,
    http_date,
    new_status_response,
    quote_etag,
    unquote_etag,
)
from meerkat.internal.internal import Depth, HTTPError, parse_depth

# https://tools.ietf.org/html/rfc4918#section-9.6.2
EXAMPLE_DELETE_MULTISTATUS_STR = """<?xml version="1.0" encoding="utf-8" ?>
<d:multistatus xmlns:d="DAV:">
  <d:response>
    <d:href>http://www.example.com/container/resource3</d:href>
    <d:status>HTTP/1.1 423 Locked</d:status>
    <d:error><d:lock-token-submitted/></d:error>
  </d:response>
</d:multistatus>"""


def test_multistatus_from_xml():
    """Test that a multistatus body parses into responses with a status."""
    xml_elem = etree.fromstring(EXAMPLE_DELETE_MULTISTATUS_STR.encode("utf-8"))
    ms = MultiStatus.from_xml(xml_elem)

    assert len(ms.responses) == 1, f"expected 1 <response>, got {len(ms.responses)}"

    resp = ms.responses[0]
    assert str(resp.hrefs[0]) == "http://www.example.com/container/resource3"
    assert resp.status is not None, "response status was not parsed"
    assert resp.status.code == 423, f"status code = {resp.status.code}, expected 423"


def test_multistatus_round_trip():
    """Test that MultiStatus can be serialized and deserialized."""
    xml_elem = etree.fromstring(EXAMPLE_DELETE_MULTISTATUS_STR.encode("utf-8"))
    ms = MultiStatus.from_xml(xml_elem)

    xml_str = etree.tostring(ms.to_xml(), encoding="unicode")

    assert "response" in xml_str
    assert "href" in xml_str
    assert "HTTP/1.1 423 Locked" in xml_str


def test_status_string():
    assert Status(code=404).to_string() == "HTTP/1.1 404 Not Found"
    assert Status.from_string("HTTP/1.1 412 Precondition Failed").code == 412
    with pytest.raises(ValueError):
        Status.from_string("garbage")


def test_new_status_response():
    xml_str = etree.tostring(new_status_response("/missing.vcf", 404).to_xml(), encoding="unicode")
    assert "/missing.vcf" in xml_str
    assert "HTTP/1.1 404 Not Found" in xml_str


def test_propfind_requested_names():
    root = etree.fromstring(b'<D:propfind xmlns:D="DAV:"><D:prop><D:getetag/></D:prop></D:propfind>')
    assert PropFind.from_xml(root).requested_names(["{DAV:}getetag", "{DAV:}displayname"]) == ["{DAV:}getetag"]
    assert PropFind(allprop=True).requested_names(["{DAV:}displayname"]) == ["{DAV:}displayname"]


def test_etag_quoting():
    assert quote_etag("abc") == '"abc"'
    assert quote_etag('"abc"') == '"abc"'
    assert unquote_etag(' W/"abc" ') == "abc"


def test_http_date():
    dt = datetime(2024, 5, 1, 12, 30, tzinfo=timezone.utc)
    assert http_date(dt) == "Wed, 01 May 2024 12:30:00 GMT"
    assert http_date(dt.replace(tzinfo=None)) == "Wed, 01 May 2024 12:30:00 GMT"


def test_parse_depth():
    assert parse_depth("0") == Depth.ZERO
    assert parse_depth("1") == Depth.ONE
    assert parse_depth("infinity") == Depth.INFINITY
    with pytest.raises(HTTPError) as exc_info:
        parse_depth("2")
    assert exc_info.value.code == 400
