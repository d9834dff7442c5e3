"""Tests for client-side field validation."""
from __future__ import annotations

import pytest

from trustudsel.errors import ValidationError
from trustudsel.services.validation import (
    generate_temporary_credential,
    normalize_phone,
    require,
    validate_code,
    validate_email,
    validate_name,
    validate_password,
    validate_password_pair,
    validate_phone,
    validate_zipcode,
)


def test_email_requires_edu_for_students() -> None:
    assert validate_email("a@b.edu", require_edu=True).is_valid
    assert validate_email("A@B.EDU", require_edu=True).is_valid
    assert not validate_email("a@b.com", require_edu=True).is_valid
    assert validate_email("a@b.com").is_valid
    assert not validate_email("not-an-email").is_valid
    assert not validate_email("   ").is_valid


@pytest.mark.parametrize(
    ("password", "fragment"),
    [
        ("Aa1!", "8 characters"),
        ("aa1!aaaa", "uppercase"),
        ("AA1!AAAA", "lowercase"),
        ("Aa!aaaaa", "digit"),
        ("Aa1aaaaa", "special"),
    ],
)
def test_password_policy_reports_first_failure(password: str, fragment: str) -> None:
    result = validate_password(password)

    assert not result.is_valid
    assert result.error_message is not None
    assert fragment in result.error_message


def test_password_pair_must_match() -> None:
    assert validate_password_pair("Aa1!aaaa", "Aa1!aaaa").is_valid
    result = validate_password_pair("Aa1!aaaa", "Aa1!aaab")
    assert result.error_message == "Passwords do not match."


def test_name_rules() -> None:
    assert validate_name("A B").is_valid
    assert not validate_name(" A ").is_valid
    assert not validate_name("Bad\tName").is_valid


def test_phone_rules_and_normalisation() -> None:
    assert validate_phone("+15551234567").is_valid
    assert validate_phone("5551234567").is_valid
    assert not validate_phone("555123456").is_valid
    assert not validate_phone("+1 555 123 4567").is_valid
    assert normalize_phone("15551234567") == "+15551234567"
    assert normalize_phone("+15551234567") == "+15551234567"


def test_code_and_zip() -> None:
    assert validate_code("123456").is_valid
    assert not validate_code("12345").is_valid
    assert validate_zipcode("12345").is_valid
    assert validate_zipcode("12345-6789").is_valid
    assert not validate_zipcode("1234").is_valid


def test_require_raises_validation_error() -> None:
    with pytest.raises(ValidationError, match="valid 6-digit code"):
        require(validate_code("abc"))


def test_temporary_credential_satisfies_policy() -> None:
    first = generate_temporary_credential()
    second = generate_temporary_credential()

    assert validate_password(first).is_valid
    assert first != second
