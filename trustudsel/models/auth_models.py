"""
Authentication Pipeline Models.

Pydantic models and the provider error table for the contracts between
the flow controllers, the ``SessionStore`` and the UI layer.

Every flow step returns a structured, inspectable ``FlowResult`` rather
than raw strings or exception side-channels.
"""

from __future__ import annotations

from typing import Optional

from pydantic import BaseModel

from trustudsel.models.enums import ErrorKind, ProviderErrorCode


# ---------------------------------------------------------------------------
# Provider error-code mapping
# ---------------------------------------------------------------------------

# Keys are matched against the provider's error code first, then as
# substrings of the lower-cased error message.  Order matters: the first
# matching key wins.
PROVIDER_ERROR_MAP: dict[str, tuple[ProviderErrorCode, str]] = {
    "user_already_exists": (
        ProviderErrorCode.ACCOUNT_EXISTS,
        "An account with this email already exists.",
    ),
    "email_exists": (
        ProviderErrorCode.ACCOUNT_EXISTS,
        "An account with this email already exists.",
    ),
    "already registered": (
        ProviderErrorCode.ACCOUNT_EXISTS,
        "An account with this email already exists.",
    ),
    "otp_expired": (
        ProviderErrorCode.CODE_MISMATCH,
        "The verification code is invalid or has expired.",
    ),
    "token has expired or is invalid": (
        ProviderErrorCode.CODE_MISMATCH,
        "The verification code is invalid or has expired.",
    ),
    "over_email_send_rate_limit": (
        ProviderErrorCode.RATE_LIMITED,
        "Too many emails sent. Please wait before trying again.",
    ),
    "over_request_rate_limit": (
        ProviderErrorCode.RATE_LIMITED,
        "Too many requests. Please wait before trying again.",
    ),
    "rate limit": (
        ProviderErrorCode.RATE_LIMITED,
        "Too many requests. Please wait before trying again.",
    ),
    "user_not_found": (
        ProviderErrorCode.USER_NOT_FOUND,
        "No account was found for this email.",
    ),
    "email_not_confirmed": (
        ProviderErrorCode.NOT_AUTHORIZED,
        "Please verify your email before signing in.",
    ),
    "invalid_credentials": (
        ProviderErrorCode.NOT_AUTHORIZED,
        "Incorrect email or password.",
    ),
    "invalid_grant": (
        ProviderErrorCode.NOT_AUTHORIZED,
        "Incorrect email or password.",
    ),
    "session_not_found": (
        ProviderErrorCode.NOT_AUTHORIZED,
        "Your session is no longer valid. Please sign in again.",
    ),
    "bad_jwt": (
        ProviderErrorCode.NOT_AUTHORIZED,
        "Your session is no longer valid. Please sign in again.",
    ),
}


# ---------------------------------------------------------------------------
# Normalised error value
# ---------------------------------------------------------------------------

class ErrorInfo(BaseModel):
    """The single error value carried by ``SessionState`` and ``FlowResult``.

    Attributes
    ----------
    kind:
        Taxonomy bucket (validation, provider, session_expired, ...).
    code:
        Provider error category; ``None`` for non-provider errors.
    message:
        Human-readable description, verbatim from the provider where one
        was supplied.
    """

    kind: ErrorKind
    code: Optional[ProviderErrorCode] = None
    message: str

    model_config = {"frozen": True}


# ---------------------------------------------------------------------------
# Validation result
# ---------------------------------------------------------------------------

class ValidationResult(BaseModel):
    """Result of a single client-side field validation check.

    Attributes
    ----------
    is_valid:
        ``True`` when the value passes the validation rule.
    error_message:
        Human-readable description of the failure, or ``None`` on success.
    """

    is_valid: bool
    error_message: Optional[str] = None

    model_config = {"from_attributes": True}


# ---------------------------------------------------------------------------
# Unified flow step response
# ---------------------------------------------------------------------------

class FlowResult(BaseModel):
    """Response of a single flow-controller step.

    Attributes
    ----------
    success:
        ``True`` when the step completed and the flow advanced.
    stage:
        The flow stage after the step (unchanged on failure).
    error:
        Normalised error, ``None`` on success.
    can_resend:
        ``True`` when the failure offers resend-verification as the next
        action (existing, unconfirmed account).
    requires_sign_in:
        ``True`` when the flow finished without establishing a session
        and the user must sign in with an existing password.
    discarded:
        ``True`` when the step's result arrived after the flow was torn
        down and was dropped.
    message:
        Optional informational message for the UI.
    """

    success: bool
    stage: str
    error: Optional[ErrorInfo] = None
    can_resend: bool = False
    requires_sign_in: bool = False
    discarded: bool = False
    message: Optional[str] = None

    model_config = {"from_attributes": True}
