"""Tests for provider error classification and normalisation."""
from __future__ import annotations

from trustudsel.errors import (
    CacheError,
    ProviderError,
    SessionExpiredError,
    SideEffectError,
    ValidationError,
    as_auth_error,
    classify_provider_exception,
    normalize_error,
)
from trustudsel.models.enums import ErrorKind, ProviderErrorCode


class CodedError(Exception):
    def __init__(self, message: str, code: str = "", status: int | None = None) -> None:
        super().__init__(message)
        self.code = code
        self.status = status


def test_error_code_takes_precedence_over_message() -> None:
    error = classify_provider_exception(
        CodedError("Something odd happened", code="user_already_exists"),
    )

    assert error.code is ProviderErrorCode.ACCOUNT_EXISTS
    assert error.message == "Something odd happened"


def test_message_fragment_is_matched_when_code_is_missing() -> None:
    error = classify_provider_exception(Exception("User already registered"))

    assert error.code is ProviderErrorCode.ACCOUNT_EXISTS


def test_expired_otp_is_code_mismatch() -> None:
    error = classify_provider_exception(
        CodedError("Token has expired or is invalid", code="otp_expired", status=403),
    )

    assert error.code is ProviderErrorCode.CODE_MISMATCH


def test_unconfirmed_email_is_not_authorized() -> None:
    error = classify_provider_exception(
        CodedError("Email not confirmed", code="email_not_confirmed", status=400),
    )

    assert error.code is ProviderErrorCode.NOT_AUTHORIZED
    assert error.message == "Email not confirmed"


def test_http_429_is_rate_limited() -> None:
    error = classify_provider_exception(CodedError("slow down", status=429))

    assert error.code is ProviderErrorCode.RATE_LIMITED


def test_network_failures_are_unknown_with_network_message() -> None:
    for exc in (ConnectionError("reset"), TimeoutError(), RuntimeError("offline mode")):
        error = classify_provider_exception(exc)
        assert error.code is ProviderErrorCode.UNKNOWN
        assert "internet connection" in error.message


def test_empty_message_falls_back_to_mapped_text() -> None:
    error = classify_provider_exception(CodedError("", code="user_not_found"))

    assert error.code is ProviderErrorCode.USER_NOT_FOUND
    assert error.message == "No account was found for this email."


def test_unrecognised_error_is_unknown_and_verbatim() -> None:
    error = classify_provider_exception(Exception("Database exploded"))

    assert error.code is ProviderErrorCode.UNKNOWN
    assert error.message == "Database exploded"


def test_provider_error_passes_through() -> None:
    original = ProviderError(ProviderErrorCode.CODE_MISMATCH, "Wrong code")

    assert classify_provider_exception(original) is original
    assert as_auth_error(original) is original


def test_info_carries_kind_and_code() -> None:
    assert ValidationError("bad").info.kind is ErrorKind.VALIDATION
    assert ValidationError("bad").info.code is None
    assert CacheError("disk").info.kind is ErrorKind.CACHE
    assert SideEffectError("push").info.kind is ErrorKind.SIDE_EFFECT

    expired = SessionExpiredError().info
    assert expired.kind is ErrorKind.SESSION_EXPIRED
    assert expired.message == "Your session has expired. Please sign in again."

    provider = ProviderError(ProviderErrorCode.RATE_LIMITED, "Too many").info
    assert provider.kind is ErrorKind.PROVIDER
    assert provider.code is ProviderErrorCode.RATE_LIMITED


def test_normalize_error_handles_foreign_exceptions() -> None:
    info = normalize_error(KeyError("missing"))

    assert info.kind is ErrorKind.PROVIDER
    assert info.code is ProviderErrorCode.UNKNOWN
