"""
Client-side Field Validation.

Every check returns a ``ValidationResult``; ``require()`` turns a failed
result into a ``ValidationError`` so flow controllers can halt before any
remote call.
"""

from __future__ import annotations

import re
import secrets
import string

from trustudsel.errors import ValidationError
from trustudsel.models.auth_models import ValidationResult


# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

_EMAIL_RE: re.Pattern[str] = re.compile(
    r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+"
    r"@[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?"
    r"(?:\.[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?)+$"
)

_PHONE_RE: re.Pattern[str] = re.compile(r"^\+?\d{10,15}$")
_CODE_RE: re.Pattern[str] = re.compile(r"^\d{6}$")
_ZIP_RE: re.Pattern[str] = re.compile(r"^\d{5}(?:-\d{4})?$")
_SPECIAL_RE: re.Pattern[str] = re.compile(r"[!@#$%^&*(),.?\":{}|<>\-_=+\[\]\\;'/`~]")

# C0 controls, DEL, and C1 controls.
_CONTROL_CHAR_RE: re.Pattern[str] = re.compile(r"[\x00-\x1f\x7f-\x9f]")

_OK = ValidationResult(is_valid=True)


def _fail(message: str) -> ValidationResult:
    return ValidationResult(is_valid=False, error_message=message)


def require(result: ValidationResult) -> None:
    """Raise ``ValidationError`` when *result* is not valid."""
    if not result.is_valid:
        raise ValidationError(result.error_message or "Invalid input.")


def normalize_email(email: str) -> str:
    """Normalise an email address: strip whitespace and lowercase."""
    return email.strip().lower()


def normalize_phone(phone: str) -> str:
    """Return *phone* with a leading ``+``."""
    phone = phone.strip()
    return phone if phone.startswith("+") else f"+{phone}"


def validate_email(email: str, require_edu: bool = False) -> ValidationResult:
    """Validate an email address against a simplified RFC 5322 regex.

    With *require_edu* the domain must end in ``.edu`` (student accounts).
    """
    if not email or not email.strip():
        return _fail("Email address is required.")
    candidate = email.strip()
    if not _EMAIL_RE.match(candidate):
        return _fail("Please enter a valid email address.")
    if require_edu and not candidate.lower().endswith(".edu"):
        return _fail("Please enter a valid .edu email address.")
    return _OK


def validate_password(password: str) -> ValidationResult:
    """Enforce the password policy.

    Policy: minimum 8 characters, at least 1 uppercase letter,
    1 lowercase letter, 1 digit, and 1 special character.
    """
    if len(password) < 8:
        return _fail("Password must be at least 8 characters.")
    if not re.search(r"[A-Z]", password):
        return _fail("Password must contain at least one uppercase letter.")
    if not re.search(r"[a-z]", password):
        return _fail("Password must contain at least one lowercase letter.")
    if not re.search(r"\d", password):
        return _fail("Password must contain at least one digit.")
    if not _SPECIAL_RE.search(password):
        return _fail("Password must contain at least one special character.")
    return _OK


def validate_password_pair(password: str, confirm: str) -> ValidationResult:
    """Policy check plus confirmation match."""
    result = validate_password(password)
    if not result.is_valid:
        return result
    if password != confirm:
        return _fail("Passwords do not match.")
    return _OK


def validate_name(name: str, field_label: str = "Full name") -> ValidationResult:
    """Validate a display name.

    Rejects control characters including newlines and tabs to prevent
    log injection and display corruption.
    """
    stripped = name.strip()
    if not stripped:
        return _fail(f"{field_label} is required.")
    if len(stripped) < 2:
        return _fail(f"{field_label} must be at least 2 characters.")
    if _CONTROL_CHAR_RE.search(stripped):
        return _fail(
            f"{field_label} contains invalid characters. "
            "Only printable characters are allowed."
        )
    return _OK


def validate_phone(phone: str) -> ValidationResult:
    if not _PHONE_RE.match(phone.strip()):
        return _fail("Please enter a valid phone number (10-15 digits).")
    return _OK


def validate_code(code: str) -> ValidationResult:
    if not _CODE_RE.match(code.strip()):
        return _fail("Please enter a valid 6-digit code.")
    return _OK


def validate_required(value: str, field_label: str) -> ValidationResult:
    if not value or not value.strip():
        return _fail(f"{field_label} is required.")
    return _OK


def validate_zipcode(zipcode: str) -> ValidationResult:
    if not _ZIP_RE.match(zipcode.strip()):
        return _fail("Please enter a valid ZIP code.")
    return _OK


def generate_temporary_credential() -> str:
    """Return a random one-time password that satisfies the policy."""
    alphabet = string.ascii_letters + string.digits
    body = "".join(secrets.choice(alphabet) for _ in range(12))
    return f"{body}Aa1!"
