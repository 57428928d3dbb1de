"""CardDAV protocol tests against the full application."""

import base64
from io import BytesIO

import pytest
from lxml import etree
from PIL import Image

from meerkat.carddav.vcard_mapper import parse_vcard

BOOK = "/carddav/addressbooks/alice/contacts/"
NS = {"D": "DAV:", "C": "urn:ietf:params:xml:ns:carddav"}

pytestmark = pytest.mark.integration

CARD = (
    "BEGIN:VCARD\r\n"
    "VERSION:4.0\r\n"
    "UID:{uid}\r\n"
    "FN:Alice Johnson\r\n"
    "N:Johnson;Alice;;;\r\n"
    "EMAIL:alice@example.com\r\n"
    "TEL;TYPE=CELL:+49 30 1234567\r\n"
    "X-CUSTOM;X-PARAM=one:keep me\\, please\r\n"
    "END:VCARD\r\n"
)


@pytest.fixture
def auth(alice, basic_auth):
    return basic_auth("alice", "alice-password")


def put_card(client, auth, uid, body=None, **headers):
    return client.put(
        f"{BOOK}{uid}.vcf",
        content=(body or CARD.format(uid=uid)).encode("utf-8"),
        headers={**auth, "Content-Type": "text/vcard", **headers},
    )


def multistatus(response):
    assert response.status_code == 207, f"status {response.status_code}: {response.text}"
    return etree.fromstring(response.content)


def test_well_known_redirect(client):
    response = client.get("/.well-known/carddav", follow_redirects=False)
    assert response.status_code == 308
    assert response.headers["location"] == "/carddav/"


def test_options_advertises_addressbook(client):
    response = client.options(BOOK)
    assert response.status_code == 204
    assert "addressbook" in response.headers["dav"], f"DAV header {response.headers['dav']!r}"
    assert "REPORT" in response.headers["allow"]


def test_requests_require_basic_auth(client, alice, basic_auth):
    response = client.get(f"{BOOK}x.vcf")
    assert response.status_code == 401
    assert response.headers["www-authenticate"] == 'Basic realm="CardDAV"'

    response = client.get(f"{BOOK}x.vcf", headers=basic_auth("alice", "wrong"))
    assert response.status_code == 401


def test_login_with_email(client, alice, basic_auth):
    response = client.request(
        "PROPFIND", "/carddav/", headers={**basic_auth("alice@example.org", "alice-password"), "Depth": "0"}
    )
    assert response.status_code == 207


def test_discovery(client, auth):
    """Test the root -> principal -> home set chain a client follows."""
    body = (
        b'<?xml version="1.0"?><D:propfind xmlns:D="DAV:" xmlns:C="urn:ietf:params:xml:ns:carddav">'
        b"<D:prop><D:current-user-principal/><C:addressbook-home-set/></D:prop></D:propfind>"
    )
    root = multistatus(client.request("PROPFIND", "/carddav/", content=body, headers={**auth, "Depth": "0"}))
    principal = root.findtext(".//D:current-user-principal/D:href", namespaces=NS)
    assert principal == "/carddav/principals/alice/", f"principal = {principal!r}"

    root = multistatus(client.request("PROPFIND", principal, content=body, headers={**auth, "Depth": "0"}))
    home = root.findtext(".//C:addressbook-home-set/D:href", namespaces=NS)
    assert home == "/carddav/addressbooks/alice/", f"home set = {home!r}"

    root = multistatus(client.request("PROPFIND", home, headers={**auth, "Depth": "1"}))
    hrefs = [el.text for el in root.findall("D:response/D:href", namespaces=NS)]
    assert hrefs == [home, BOOK], f"hrefs = {hrefs}"
    assert root.find(".//C:addressbook", namespaces=NS) is not None, "address book resourcetype missing"


def test_put_then_get(client, auth):
    response = put_card(client, auth, "c1")
    assert response.status_code == 201, f"status {response.status_code}: {response.text}"
    etag = response.headers["etag"]
    assert etag.startswith('"') and etag.endswith('"'), f"ETag {etag!r} is not quoted"

    response = client.get(f"{BOOK}c1.vcf", headers=auth)
    assert response.status_code == 200
    assert response.headers["etag"] == etag
    assert response.headers["content-type"].startswith("text/vcard")
    assert "last-modified" in response.headers

    text = response.text
    assert "UID:c1\r\n" in text
    assert "FN:Alice Johnson\r\n" in text
    assert "EMAIL;TYPE=INTERNET:alice@example.com\r\n" in text
    assert "X-CUSTOM;X-PARAM=one:keep me\\, please\r\n" in text, "unknown property not kept verbatim"

    head = client.head(f"{BOOK}c1.vcf", headers=auth)
    assert head.status_code == 200
    assert head.headers["etag"] == etag


def test_concurrent_edit_rejected(client, auth):
    """Test that a write carrying a superseded ETag fails with 412."""
    first = put_card(client, auth, "c1").headers["etag"]

    renamed = CARD.format(uid="c1").replace("Johnson;Alice", "Johnson;Alicia")
    second = put_card(client, auth, "c1", renamed, **{"If-Match": first})
    assert second.status_code == 204, f"status {second.status_code}: {second.text}"
    assert second.headers["etag"] != first

    overwritten = CARD.format(uid="c1").replace("Johnson;Alice", "Mallory;Eve")
    stale = put_card(client, auth, "c1", overwritten, **{"If-Match": first})
    assert stale.status_code == 412, f"status {stale.status_code}"

    response = client.get(f"{BOOK}c1.vcf", headers=auth)
    assert response.headers["etag"] == second.headers["etag"]
    assert "FN:Alicia Johnson" in response.text, f"winner not stored: {response.text!r}"
    assert "Mallory" not in response.text, "the stale write must not have been applied"


def test_if_none_match_on_existing(client, auth):
    put_card(client, auth, "c1")
    response = put_card(client, auth, "c1", **{"If-None-Match": "*"})
    assert response.status_code == 412


def test_put_rejects_malformed_card(client, auth):
    response = put_card(client, auth, "bad", "BEGIN:VCARD\r\nFN:No end\r\n")
    assert response.status_code == 400


def test_photo_round_trip(client, auth, photos, make_png):
    """Test that an embedded PNG comes back as a 125x125 JPEG."""
    png = base64.b64encode(make_png(300, 200)).decode("ascii")
    card = (
        "BEGIN:VCARD\r\nVERSION:3.0\r\nUID:p1\r\nFN:Picture Person\r\n"
        f"PHOTO;ENCODING=b;TYPE=PNG:{png}\r\nEND:VCARD\r\n"
    )
    assert put_card(client, auth, "p1", card).status_code == 201
    assert len(list(photos.photo_dir.glob("*_photo.jpg"))) == 1

    parsed = parse_vcard(client.get(f"{BOOK}p1.vcf", headers=auth).text)
    photo = parsed.photo
    assert photo is not None, "GET lost the photo"
    assert photo.media_type == "image/jpeg", f"media type {photo.media_type!r}"
    with Image.open(BytesIO(photo.data)) as img:
        assert img.format == "JPEG"
        assert img.size == (125, 125), f"photo size {img.size}"


def test_photo_url_to_internal_host_is_not_fetched(client, auth, resolver):
    card = (
        "BEGIN:VCARD\r\nVERSION:4.0\r\nUID:p2\r\nFN:Curious Card\r\n"
        "PHOTO;VALUE=uri:http://169.254.169.254/latest/meta-data/\r\nEND:VCARD\r\n"
    )
    response = put_card(client, auth, "p2", card)

    assert response.status_code == 201, "a rejected photo must not fail the write"
    assert resolver.calls == ["169.254.169.254"], f"lookups: {resolver.calls}"
    assert "PHOTO" not in client.get(f"{BOOK}p2.vcf", headers=auth).text


def test_oversized_photo_does_not_fail_the_write(client, auth, oversized_png):
    png = base64.b64encode(oversized_png).decode("ascii")
    card = CARD.format(uid="b1").replace("END:VCARD", f"PHOTO;MEDIATYPE=image/png:{png}\r\nEND:VCARD")

    response = put_card(client, auth, "b1", card)

    assert response.status_code == 201, f"status {response.status_code}: {response.text}"
    text = client.get(f"{BOOK}b1.vcf", headers=auth).text
    assert "FN:Alice Johnson" in text
    assert "PHOTO" not in text


def test_put_without_photo_clears_it(client, auth, make_png):
    png = base64.b64encode(make_png()).decode("ascii")
    with_photo = CARD.format(uid="c1").replace("END:VCARD", f"PHOTO;MEDIATYPE=image/png:{png}\r\nEND:VCARD")
    put_card(client, auth, "c1", with_photo)
    assert "PHOTO" in client.get(f"{BOOK}c1.vcf", headers=auth).text

    put_card(client, auth, "c1")
    assert "PHOTO" not in client.get(f"{BOOK}c1.vcf", headers=auth).text


def test_get_unknown_object(client, auth):
    assert client.get(f"{BOOK}missing.vcf", headers=auth).status_code == 404


def test_other_users_address_book_is_forbidden(client, auth, bob):
    assert client.get("/carddav/addressbooks/bob/contacts/x.vcf", headers=auth).status_code == 403
    assert client.request("PROPFIND", "/carddav/principals/bob/", headers=auth).status_code == 403


def test_delete(client, auth):
    put_card(client, auth, "c1")

    assert client.delete(f"{BOOK}c1.vcf", headers=auth).status_code == 204
    assert client.get(f"{BOOK}c1.vcf", headers=auth).status_code == 404
    assert client.delete(f"{BOOK}c1.vcf", headers=auth).status_code == 404


def test_addressbook_collections_are_fixed(client, auth):
    assert client.request("MKCOL", "/carddav/addressbooks/alice/other/", headers=auth).status_code == 404
    assert client.request("MKCOL", BOOK, headers=auth).status_code == 501
    assert client.delete(BOOK, headers=auth).status_code == 501


def test_propfind_lists_objects(client, auth):
    put_card(client, auth, "c1")
    put_card(client, auth, "c2")

    root = multistatus(client.request("PROPFIND", BOOK, headers={**auth, "Depth": "1"}))
    hrefs = [el.text for el in root.findall("D:response/D:href", namespaces=NS)]
    assert hrefs == [BOOK, f"{BOOK}c1.vcf", f"{BOOK}c2.vcf"], f"hrefs = {hrefs}"

    root = multistatus(client.request("PROPFIND", BOOK, headers={**auth, "Depth": "0"}))
    assert len(root.findall("D:response", namespaces=NS)) == 1


def test_report_multiget(client, auth):
    etag = put_card(client, auth, "c1").headers["etag"]
    body = (
        '<?xml version="1.0"?>'
        '<C:addressbook-multiget xmlns:D="DAV:" xmlns:C="urn:ietf:params:xml:ns:carddav">'
        "<D:prop><D:getetag/><C:address-data/></D:prop>"
        f"<D:href>{BOOK}c1.vcf</D:href>"
        f"<D:href>{BOOK}gone.vcf</D:href>"
        "<D:href>/carddav/addressbooks/bob/contacts/c1.vcf</D:href>"
        "</C:addressbook-multiget>"
    )
    root = multistatus(client.request("REPORT", BOOK, content=body.encode(), headers={**auth, "Depth": "1"}))

    responses = root.findall("D:response", namespaces=NS)
    assert len(responses) == 3, f"expected 3 responses, got {len(responses)}"
    assert responses[0].findtext(".//D:getetag", namespaces=NS) == etag
    assert "FN:Alice Johnson" in responses[0].findtext(".//C:address-data", namespaces=NS)
    for missing in responses[1:]:
        status = missing.findtext("D:status", namespaces=NS)
        assert status == "HTTP/1.1 404 Not Found", f"status {status!r}"


def test_uid_with_percent_sign(client, auth):
    """Test that an escaped % in an object name is decoded exactly once."""
    response = put_card(client, auth, "x%2541", CARD.format(uid="x%41"))
    assert response.status_code == 201, f"status {response.status_code}: {response.text}"

    response = client.get(f"{BOOK}x%2541.vcf", headers=auth)
    assert response.status_code == 200
    assert "UID:x%41\r\n" in response.text
    assert client.get(f"{BOOK}xA.vcf", headers=auth).status_code == 404

    body = (
        '<?xml version="1.0"?>'
        '<C:addressbook-multiget xmlns:D="DAV:" xmlns:C="urn:ietf:params:xml:ns:carddav">'
        "<D:prop><D:getetag/></D:prop>"
        f"<D:href>{BOOK}x%2541.vcf</D:href>"
        "</C:addressbook-multiget>"
    )
    root = multistatus(client.request("REPORT", BOOK, content=body.encode(), headers={**auth, "Depth": "1"}))
    assert root.findtext("D:response/D:href", namespaces=NS) == f"{BOOK}x%2541.vcf"
    assert root.find(".//D:getetag", namespaces=NS) is not None, "multiget missed the object"


def test_report_query(client, auth):
    put_card(client, auth, "c1")
    bob_card = CARD.format(uid="c2").replace("Alice Johnson", "Bob Builder").replace("N:Johnson;Alice", "N:Builder;Bob")
    put_card(client, auth, "c2", bob_card)
    body = (
        b'<?xml version="1.0"?>'
        b'<C:addressbook-query xmlns:D="DAV:" xmlns:C="urn:ietf:params:xml:ns:carddav">'
        b"<D:prop><D:getetag/></D:prop>"
        b'<C:filter><C:prop-filter name="FN"><C:text-match match-type="contains">builder</C:text-match>'
        b"</C:prop-filter></C:filter>"
        b"</C:addressbook-query>"
    )
    root = multistatus(client.request("REPORT", BOOK, content=body, headers={**auth, "Depth": "1"}))

    hrefs = [el.text for el in root.findall("D:response/D:href", namespaces=NS)]
    assert hrefs == [f"{BOOK}c2.vcf"], f"hrefs = {hrefs}"


def test_report_rejects_bad_body(client, auth):
    response = client.request("REPORT", BOOK, content=b"<not-xml", headers=auth)
    assert response.status_code == 400
