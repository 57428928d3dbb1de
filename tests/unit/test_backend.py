"""Tests for the CardDAV path helpers."""

import pytest

from meerkat.carddav.backend import href_to_path, object_path, uid_from_path


@pytest.mark.parametrize(
    "path,uid",
    [
        ("/carddav/addressbooks/alice/contacts/c1.vcf", "c1"),
        ("/carddav/addressbooks/alice/contacts/C1.VCF", "C1"),
        ("/carddav/addressbooks/alice/contacts/x%41.vcf", "x%41"),
        ("/carddav/addressbooks/alice/contacts/a;b.vcf", "a;b"),
        ("/carddav/addressbooks/alice/contacts/", ""),
        ("/carddav/", ""),
    ],
)
def test_uid_from_path(path, uid):
    assert uid_from_path(path) == uid


def test_href_to_path_decodes_once():
    assert href_to_path("/carddav/addressbooks/alice/contacts/x%2541.vcf") == (
        "/carddav/addressbooks/alice/contacts/x%41.vcf"
    )
    assert href_to_path("https://dav.example.com/carddav/addressbooks/alice/contacts/a%20b.vcf") == (
        "/carddav/addressbooks/alice/contacts/a b.vcf"
    )


def test_object_path_round_trips_through_href():
    href = object_path("alice", "x%41")
    assert href == "/carddav/addressbooks/alice/contacts/x%2541.vcf"
    assert uid_from_path(href_to_path(href)) == "x%41"
