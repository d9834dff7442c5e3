"""
Shared Enumerations for TruStudSel Models.

All string enumerations for type-safe field constraints.
StrEnum values compare equal to their string equivalents,
so code like ``if stage == 'awaiting-password'`` continues to work.
"""

from __future__ import annotations
from enum import StrEnum


class ErrorKind(StrEnum):
    """Top-level error taxonomy carried by ``ErrorInfo``."""

    VALIDATION = "validation"
    PROVIDER = "provider"
    SESSION_EXPIRED = "session_expired"
    CACHE = "cache"
    SIDE_EFFECT = "side_effect"


class ProviderErrorCode(StrEnum):
    """Exhaustive enumeration of identity-provider error categories."""

    ACCOUNT_EXISTS = "account_exists"
    CODE_MISMATCH = "code_mismatch"
    RATE_LIMITED = "rate_limited"
    NOT_AUTHORIZED = "not_authorized"
    USER_NOT_FOUND = "user_not_found"
    UNKNOWN = "unknown"


class CacheAge(StrEnum):
    """Freshness tier of a cached entry relative to its thresholds."""

    FRESH = "FRESH"
    STALE = "STALE"
    EXPIRED = "EXPIRED"


class CacheNamespace(StrEnum):
    """User-scoped feature cache key prefixes.

    Keys are ``prefix + user_id``; every namespace is purged on sign-out.
    """

    PROFILE = "user_profile_cache_"
    PRODUCTS = "user_products_cache_"
    CONVERSATIONS = "conversations_cache_"
    MESSAGES = "messages_cache_"


class RegistrationStage(StrEnum):
    """Registration flow states, in order."""

    COLLECTING_INFO = "collecting-info"
    AWAITING_VERIFICATION = "awaiting-verification"
    AWAITING_PASSWORD = "awaiting-password"
    COMPLETING_PROFILE = "completing-profile"
    DONE = "done"


class RecoveryStage(StrEnum):
    """Password recovery flow states.

    ``DONE`` is terminal and only reached after the provider accepts the
    new password.
    """

    REQUEST_CODE = "request-code"
    SUBMIT_NEW_PASSWORD = "submit-new-password"
    DONE = "done"
