"""Tests for contact field normalisation."""

import pytest

from meerkat.normalize import (
    GENDERS,
    dedupe_circles,
    is_valid_email,
    is_valid_phone,
    normalize_birthday,
    normalize_gender,
    parse_circles,
)

BIRTHDAYS = [
    ("1958-06-29", "1958-06-29"),
    ("--04-20", "--04-20"),
    ("19580629", "1958-06-29"),
    ("--0420", "--04-20"),
    ("29.06.1958", "1958-06-29"),
    ("29.06.", "--06-29"),
    ("  1990-01-02 ", "1990-01-02"),
    ("1990-01-02T00:00:00Z", "1990-01-02"),
    ("--02-29", "--02-29"),
]


@pytest.mark.parametrize("raw,expected", BIRTHDAYS)
def test_normalize_birthday(raw, expected):
    """Test every accepted birthday spelling."""
    got = normalize_birthday(raw)
    assert got == expected, f"normalize_birthday({raw!r}) = {got!r}, expected {expected!r}"


@pytest.mark.parametrize("raw,_", BIRTHDAYS)
def test_normalize_birthday_idempotent(raw, _):
    """Test that normalising twice changes nothing."""
    once = normalize_birthday(raw)
    twice = normalize_birthday(once)
    assert once == twice, f"normalize({once!r}) = {twice!r}, expected it unchanged"


def test_normalize_birthday_blank():
    assert normalize_birthday("") == ""
    assert normalize_birthday("   ") == ""


@pytest.mark.parametrize("raw", ["1990-13-01", "1990-02-30", "tomorrow", "06/29/1958", "--13-01", "1.6.1958"])
def test_normalize_birthday_rejects(raw):
    """Test that malformed or impossible dates are rejected."""
    with pytest.raises(ValueError):
        normalize_birthday(raw)


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("m", "male"),
        ("Male", "male"),
        ("männlich", "male"),
        ("W", "female"),
        ("weiblich", "female"),
        ("divers", "other"),
        ("d", "other"),
        ("prefer not to say", "prefer_not_to_say"),
        ("Keine Angabe", "prefer_not_to_say"),
    ],
)
def test_normalize_gender(raw, expected):
    got = normalize_gender(raw)
    assert got == expected, f"normalize_gender({raw!r}) = {got!r}, expected {expected!r}"


def test_normalize_gender_idempotent_and_case_insensitive():
    """Test that canonical values map to themselves in any case."""
    for gender in GENDERS:
        assert normalize_gender(gender) == gender
        assert normalize_gender(gender.upper()) == gender
        assert normalize_gender(normalize_gender(gender)) == gender


def test_normalize_gender_rejects_unknown():
    with pytest.raises(ValueError):
        normalize_gender("robot")
    assert normalize_gender("") == ""


def test_email_validation():
    assert is_valid_email("alice@example.com")
    assert is_valid_email("first.last+tag@sub.example.co.uk")
    assert not is_valid_email("alice@")
    assert not is_valid_email("alice example.com")
    assert not is_valid_email("alice@example")


def test_phone_validation():
    """Test that only the digit count matters."""
    assert is_valid_phone("+49 (30) 123-45")
    assert is_valid_phone("12345")
    assert not is_valid_phone("1234")
    assert not is_valid_phone("1" * 21)
    assert is_valid_phone("1" * 20)


def test_circles():
    """Test splitting and case-insensitive de-duplication of circles."""
    assert parse_circles("Friends, work;friends ; ;Family") == ["Friends", "work", "Family"]
    assert dedupe_circles([" a", "A", "b", ""]) == ["a", "b"]
    assert parse_circles("") == []
