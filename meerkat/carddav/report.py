"""CardDAV REPORT request parsing."""

from __future__ import annotations

from dataclasses import dataclass, field

from lxml import etree

from ..internal.elements import CARDDAV_NAMESPACE, NAMESPACE, Prop, PropFind
from .carddav import MATCH_TYPES, AddressBookQuery, ParamFilter, PropFilter, TextMatch

ADDRESSBOOK_QUERY = f"{{{CARDDAV_NAMESPACE}}}addressbook-query"
ADDRESSBOOK_MULTIGET = f"{{{CARDDAV_NAMESPACE}}}addressbook-multiget"


@dataclass
class AddressBookQueryReport:
    """CardDAV addressbook-query REPORT request."""

    propfind: PropFind = field(default_factory=lambda: PropFind(allprop=True))
    query: AddressBookQuery = field(default_factory=AddressBookQuery)


@dataclass
class AddressBookMultigetReport:
    """CardDAV addressbook-multiget REPORT request."""

    hrefs: list[str] = field(default_factory=list)
    propfind: PropFind = field(default_factory=lambda: PropFind(allprop=True))


def parse_addressbook_report(root: etree._Element) -> AddressBookQueryReport | AddressBookMultigetReport:
    """Parse CardDAV REPORT request body.

    Args:
        root: XML root element

    Returns:
        Parsed REPORT request

    Raises:
        ValueError: If the REPORT request is invalid
    """
    if root.tag == ADDRESSBOOK_QUERY:
        return _parse_addressbook_query(root)
    elif root.tag == ADDRESSBOOK_MULTIGET:
        return _parse_addressbook_multiget(root)
    else:
        raise ValueError(f"Unknown CardDAV REPORT type: {root.tag}")


def _parse_propfind(root: etree._Element) -> PropFind:
    """Read the prop / allprop / propname selection shared by both reports."""
    prop_el = root.find(f"{{{NAMESPACE}}}prop")
    if prop_el is not None:
        return PropFind(prop=Prop.from_xml(prop_el))
    if root.find(f"{{{NAMESPACE}}}propname") is not None:
        return PropFind(propname=True)
    return PropFind(allprop=True)


def _parse_addressbook_query(root: etree._Element) -> AddressBookQueryReport:
    """Parse addressbook-query REPORT."""
    report = AddressBookQueryReport(propfind=_parse_propfind(root))

    filter_el = root.find(f"{{{CARDDAV_NAMESPACE}}}filter")
    if filter_el is not None:
        report.query.test = _parse_test(filter_el)
        report.query.prop_filters = [
            _parse_prop_filter(el) for el in filter_el.findall(f"{{{CARDDAV_NAMESPACE}}}prop-filter")
        ]

    limit_el = root.find(f"{{{CARDDAV_NAMESPACE}}}limit")
    if limit_el is not None:
        nresults = limit_el.find(f"{{{CARDDAV_NAMESPACE}}}nresults")
        if nresults is not None:
            try:
                report.query.limit = int((nresults.text or "").strip())
            except ValueError as e:
                raise ValueError(f"invalid nresults value: {nresults.text!r}") from e

    return report


def _parse_test(el: etree._Element) -> str:
    test = el.get("test", "anyof")
    if test not in ("anyof", "allof"):
        raise ValueError(f"invalid test attribute: {test!r}")
    return test


def _parse_prop_filter(el: etree._Element) -> PropFilter:
    name = el.get("name", "")
    if not name:
        raise ValueError("prop-filter requires a name attribute")

    pf = PropFilter(name=name, test=_parse_test(el))
    for child in el:
        if child.tag == f"{{{CARDDAV_NAMESPACE}}}is-not-defined":
            pf.is_not_defined = True
        elif child.tag == f"{{{CARDDAV_NAMESPACE}}}text-match":
            pf.text_matches.append(_parse_text_match(child))
        elif child.tag == f"{{{CARDDAV_NAMESPACE}}}param-filter":
            pf.param_filters.append(_parse_param_filter(child))
    return pf


def _parse_param_filter(el: etree._Element) -> ParamFilter:
    name = el.get("name", "")
    if not name:
        raise ValueError("param-filter requires a name attribute")

    pf = ParamFilter(name=name)
    if el.find(f"{{{CARDDAV_NAMESPACE}}}is-not-defined") is not None:
        pf.is_not_defined = True
    text_el = el.find(f"{{{CARDDAV_NAMESPACE}}}text-match")
    if text_el is not None:
        pf.text_match = _parse_text_match(text_el)
    return pf


def _parse_text_match(el: etree._Element) -> TextMatch:
    match_type = el.get("match-type", "contains")
    if match_type not in MATCH_TYPES:
        raise ValueError(f"unsupported match-type: {match_type!r}")
    return TextMatch(
        text=el.text or "",
        negate_condition=el.get("negate-condition", "no") == "yes",
        match_type=match_type,
        collation=el.get("collation", "i;unicode-casemap"),
    )


def _parse_addressbook_multiget(root: etree._Element) -> AddressBookMultigetReport:
    """Parse addressbook-multiget REPORT."""
    hrefs = [
        child.text.strip()
        for child in root.findall(f"{{{NAMESPACE}}}href")
        if child.text and child.text.strip()
    ]
    return AddressBookMultigetReport(hrefs=hrefs, propfind=_parse_propfind(root))
