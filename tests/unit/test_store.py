"""Tests for the SQLAlchemy contact store."""

import threading

import pytest

from meerkat.errors import Conflict, NotFound, PreconditionFailed
from meerkat.importer.duplicates import detect_duplicate


def set_name(first, last="", email=None):
    def apply(contact):
        contact.firstname = first
        contact.lastname = last
        contact.email = email

    return apply


def test_authenticate(store, alice):
    assert store.authenticate("alice", "alice-password").id == alice.id
    assert store.authenticate("ALICE@example.org", "alice-password").id == alice.id
    assert store.authenticate("alice", "wrong") is None
    assert store.authenticate("nobody", "alice-password") is None


def test_tokens(store, alice):
    token = store.issue_token(alice.id)
    assert store.user_for_token(token).id == alice.id
    assert store.user_for_token(token + "x") is None


def test_put_contact_creates_then_updates(store, alice):
    """Test that every write replaces the ETag."""
    created, is_new = store.put_contact(alice.id, "uid-1", set_name("Alice", "Johnson"))
    assert is_new
    assert created.vcard_uid == "uid-1"
    assert created.etag, "a new contact must carry an ETag"

    updated, is_new = store.put_contact(alice.id, "uid-1", set_name("Alicia", "Johnson"), if_match=f'"{created.etag}"')
    assert not is_new
    assert updated.id == created.id
    assert updated.etag != created.etag, "ETag did not change on update"
    assert store.get_contact(alice.id, "uid-1").firstname == "Alicia"


def test_put_contact_preconditions(store, alice):
    contact, _ = store.put_contact(alice.id, "uid-1", set_name("Alice"))

    with pytest.raises(PreconditionFailed):
        store.put_contact(alice.id, "uid-1", set_name("Mallory"), if_match='"stale"')
    with pytest.raises(PreconditionFailed):
        store.put_contact(alice.id, "uid-1", set_name("Mallory"), if_none_match=True)
    with pytest.raises(PreconditionFailed):
        store.put_contact(alice.id, "uid-2", set_name("Ghost"), if_match='"abc"')

    assert store.get_contact(alice.id, "uid-1").firstname == "Alice", "a failed write must not persist"
    assert store.get_contact(alice.id, "uid-2") is None

    store.put_contact(alice.id, "uid-1", set_name("Alicia"), if_match="*")
    assert store.get_contact(alice.id, "uid-1").firstname == "Alicia"


def test_concurrent_writers_with_same_etag(store, alice):
    """Test that of two writers holding the same ETag exactly one wins."""
    contact, _ = store.put_contact(alice.id, "uid-1", set_name("Alice"))
    start = threading.Barrier(2)
    outcomes = {}

    def write(name):
        start.wait(5)
        try:
            store.put_contact(alice.id, "uid-1", set_name(name), if_match=f'"{contact.etag}"')
            outcomes[name] = "ok"
        except PreconditionFailed:
            outcomes[name] = "412"

    threads = [threading.Thread(target=write, args=(name,)) for name in ("Alicia", "Mallory")]
    for t in threads:
        t.start()
    for t in threads:
        t.join(10)

    assert sorted(outcomes.values()) == ["412", "ok"], f"outcomes = {outcomes}"
    winner = next(name for name, outcome in outcomes.items() if outcome == "ok")
    assert store.get_contact(alice.id, "uid-1").firstname == winner


def test_uid_change_onto_existing_contact_conflicts(store, alice):
    store.put_contact(alice.id, "uid-1", set_name("Alice"))

    def steal_uid(contact):
        contact.firstname = "Bob"
        contact.vcard_uid = "uid-1"

    with pytest.raises(Conflict):
        store.put_contact(alice.id, "uid-2", steal_uid)


def test_numeric_id_lookup(store, alice):
    contact, _ = store.put_contact(alice.id, "uid-1", set_name("Alice"))
    assert store.get_contact(alice.id, str(contact.id)).vcard_uid == "uid-1"


def test_soft_delete(store, alice):
    """Test that deleted contacts disappear but their uid can be reused."""
    store.put_contact(alice.id, "uid-1", set_name("Alice"))
    store.delete_contact(alice.id, "uid-1")

    assert store.get_contact(alice.id, "uid-1") is None
    assert store.list_contacts(alice.id) == []
    with pytest.raises(NotFound):
        store.delete_contact(alice.id, "uid-1")

    _, is_new = store.put_contact(alice.id, "uid-1", set_name("Alice again"))
    assert is_new, "a soft-deleted uid must be free for a new contact"


def test_contacts_are_owner_scoped(store, alice, bob):
    store.put_contact(alice.id, "uid-1", set_name("Alice"))

    assert store.get_contact(bob.id, "uid-1") is None
    assert store.list_contacts(bob.id) == []
    _, is_new = store.put_contact(bob.id, "uid-1", set_name("Bob"))
    assert is_new, "uids are unique per owner only"


def test_duplicate_detection(store, alice, bob):
    """Test that email wins over name and that matching is case-insensitive."""
    by_name, _ = store.put_contact(alice.id, "n", set_name("Alice", "Johnson"))
    by_email, _ = store.put_contact(alice.id, "e", set_name("Someone", "Else", "alice@example.com"))

    match = detect_duplicate(store, alice.id, "alice", "JOHNSON", "ALICE@example.com")
    assert match.existing_contact_id == by_email.id
    assert match.match_reason == "email"

    match = detect_duplicate(store, alice.id, "alice", "johnson", "")
    assert match.existing_contact_id == by_name.id
    assert match.match_reason == "name"

    assert detect_duplicate(store, alice.id, "Alice", "", "") is None
    assert detect_duplicate(store, bob.id, "Alice", "Johnson", "alice@example.com") is None


def test_update_photo_and_notes(store, alice):
    contact, _ = store.put_contact(alice.id, "uid-1", set_name("Alice"))

    store.update_photo(alice.id, contact.id, "1_photo.jpg", "data:image/jpeg;base64,AAAA")
    refreshed = store.get_contact_by_id(alice.id, contact.id)
    assert refreshed.photo == "1_photo.jpg"
    assert refreshed.etag != contact.etag, "a photo change is a change of the card"

    with pytest.raises(NotFound):
        store.update_photo(alice.id, contact.id + 100, "x.jpg", "")

    assert store.list_notes(alice.id, contact.id) == []
