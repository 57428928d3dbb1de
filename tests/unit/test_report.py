"""Tests for CardDAV REPORT parsing and query matching."""

import pytest
from lxml import etree

from meerkat.carddav.carddav import AddressBookQuery, ParamFilter, PropFilter, TextMatch
from meerkat.carddav.report import (
    AddressBookMultigetReport,
    AddressBookQueryReport,
    parse_addressbook_report,
)
from meerkat.carddav.vcard_mapper import parse_vcard

CARD = parse_vcard(
    "BEGIN:VCARD\r\n"
    "VERSION:4.0\r\n"
    "UID:c1\r\n"
    "FN:Alice Johnson\r\n"
    "N:Johnson;Alice;;;\r\n"
    "EMAIL;TYPE=INTERNET:alice@example.com\r\n"
    "TEL;TYPE=CELL:+49 30 1234567\r\n"
    "END:VCARD\r\n"
)

QUERY = b"""<?xml version="1.0" encoding="utf-8"?>
<C:addressbook-query xmlns:D="DAV:" xmlns:C="urn:ietf:params:xml:ns:carddav">
  <D:prop>
    <D:getetag/>
    <C:address-data/>
  </D:prop>
  <C:filter test="allof">
    <C:prop-filter name="FN">
      <C:text-match collation="i;unicode-casemap" match-type="starts-with">alice</C:text-match>
    </C:prop-filter>
    <C:prop-filter name="EMAIL">
      <C:param-filter name="TYPE">
        <C:text-match match-type="equals">internet</C:text-match>
      </C:param-filter>
    </C:prop-filter>
  </C:filter>
  <C:limit><C:nresults>5</C:nresults></C:limit>
</C:addressbook-query>"""

MULTIGET = b"""<?xml version="1.0" encoding="utf-8"?>
<C:addressbook-multiget xmlns:D="DAV:" xmlns:C="urn:ietf:params:xml:ns:carddav">
  <D:prop><D:getetag/></D:prop>
  <D:href>/carddav/addressbooks/alice/contacts/c1.vcf</D:href>
  <D:href> /carddav/addressbooks/alice/contacts/c2.vcf </D:href>
  <D:href></D:href>
</C:addressbook-multiget>"""


@pytest.mark.parametrize(
    "match_type,text,value,expected",
    [
        ("contains", "JOHN", "Alice Johnson", True),
        ("equals", "alice johnson", "Alice Johnson", True),
        ("equals", "alice", "Alice Johnson", False),
        ("starts-with", "ali", "Alice Johnson", True),
        ("ends-with", "son", "Alice Johnson", True),
        ("ends-with", "ali", "Alice Johnson", False),
    ],
)
def test_text_match(match_type, text, value, expected):
    tm = TextMatch(text=text, match_type=match_type)
    assert tm.matches(value) == expected, f"{match_type} {text!r} on {value!r}"


def test_text_match_octet_collation_and_negation():
    assert not TextMatch(text="alice", collation="i;octet").matches("Alice")
    assert TextMatch(text="bob", negate_condition=True).matches("Alice")


def test_prop_filter():
    assert PropFilter(name="fn", text_matches=[TextMatch(text="alice")]).matches(CARD)
    assert PropFilter(name="EMAIL").matches(CARD), "bare prop-filter tests presence"
    assert not PropFilter(name="NICKNAME").matches(CARD)
    assert PropFilter(name="NICKNAME", is_not_defined=True).matches(CARD)

    allof = PropFilter(
        name="TEL",
        test="allof",
        text_matches=[TextMatch(text="+49"), TextMatch(text="999")],
    )
    assert not allof.matches(CARD)
    allof.test = "anyof"
    assert allof.matches(CARD)


def test_param_filter():
    email = CARD.first("EMAIL")
    assert ParamFilter(name="type").matches(email)
    assert ParamFilter(name="TYPE", text_match=TextMatch(text="internet", match_type="equals")).matches(email)
    assert not ParamFilter(name="TYPE", text_match=TextMatch(text="home")).matches(email)
    assert ParamFilter(name="PREF", is_not_defined=True).matches(email)


def test_address_book_query():
    """Test anyof/allof combination and the empty filter."""
    assert AddressBookQuery().matches(CARD), "an empty filter matches every card"

    filters = [
        PropFilter(name="FN", text_matches=[TextMatch(text="alice")]),
        PropFilter(name="NICKNAME"),
    ]
    assert AddressBookQuery(prop_filters=filters).matches(CARD)
    assert not AddressBookQuery(prop_filters=filters, test="allof").matches(CARD)


def test_parse_addressbook_query():
    report = parse_addressbook_report(etree.fromstring(QUERY))

    assert isinstance(report, AddressBookQueryReport), f"got {type(report)}"
    assert [el.tag for el in report.propfind.prop.raw] == [
        "{DAV:}getetag",
        "{urn:ietf:params:xml:ns:carddav}address-data",
    ]
    query = report.query
    assert query.test == "allof"
    assert query.limit == 5
    assert [pf.name for pf in query.prop_filters] == ["FN", "EMAIL"]
    assert query.prop_filters[0].text_matches[0].match_type == "starts-with"
    assert query.prop_filters[1].param_filters[0].text_match.text == "internet"
    assert query.matches(CARD)


def test_parse_addressbook_multiget():
    report = parse_addressbook_report(etree.fromstring(MULTIGET))

    assert isinstance(report, AddressBookMultigetReport), f"got {type(report)}"
    assert report.hrefs == [
        "/carddav/addressbooks/alice/contacts/c1.vcf",
        "/carddav/addressbooks/alice/contacts/c2.vcf",
    ], f"hrefs = {report.hrefs}"
    assert not report.propfind.allprop


@pytest.mark.parametrize(
    "body",
    [
        b'<D:propfind xmlns:D="DAV:"/>',
        b'<C:addressbook-query xmlns:C="urn:ietf:params:xml:ns:carddav">'
        b'<C:filter test="someof"/></C:addressbook-query>',
        b'<C:addressbook-query xmlns:C="urn:ietf:params:xml:ns:carddav">'
        b"<C:filter><C:prop-filter/></C:filter></C:addressbook-query>",
        b'<C:addressbook-query xmlns:C="urn:ietf:params:xml:ns:carddav"><C:filter>'
        b'<C:prop-filter name="FN"><C:text-match match-type="regex">a</C:text-match></C:prop-filter>'
        b"</C:filter></C:addressbook-query>",
        b'<C:addressbook-query xmlns:C="urn:ietf:params:xml:ns:carddav">'
        b"<C:limit><C:nresults>many</C:nresults></C:limit></C:addressbook-query>",
    ],
)
def test_parse_rejects_invalid_reports(body):
    with pytest.raises(ValueError):
        parse_addressbook_report(etree.fromstring(body))
