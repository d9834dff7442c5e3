"""
Authentication Error Taxonomy.

Every failure that crosses a component boundary is one of the
``AuthError`` subclasses below.  Each carries an ``ErrorInfo`` so the
``SessionStore`` can publish it without inspecting the exception type.

Propagation rules
-----------------
- ``ValidationError`` / ``ProviderError`` halt the active flow stage.
- ``SessionExpiredError`` forces the store to the unauthenticated state.
- ``CacheError`` / ``SideEffectError`` are logged and swallowed at their
  boundary; the primary operation proceeds as if the side system were
  absent.
"""

from __future__ import annotations

from typing import Optional

from trustudsel.models.auth_models import PROVIDER_ERROR_MAP, ErrorInfo
from trustudsel.models.enums import ErrorKind, ProviderErrorCode

_NETWORK_MESSAGE: str = "Cannot reach the server. Check your internet connection."
_UNKNOWN_MESSAGE: str = "An unexpected error occurred. Please try again later."


class AuthError(Exception):
    """Base class of the taxonomy."""

    kind: ErrorKind = ErrorKind.PROVIDER

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message: str = message

    @property
    def code(self) -> Optional[ProviderErrorCode]:
        return None

    @property
    def info(self) -> ErrorInfo:
        """The normalised value published in ``SessionState.error``."""
        return ErrorInfo(kind=self.kind, code=self.code, message=self.message)


class ValidationError(AuthError):
    """Input rejected client-side before any remote call."""

    kind = ErrorKind.VALIDATION


class ProviderError(AuthError):
    """The identity provider rejected or failed a request."""

    kind = ErrorKind.PROVIDER

    def __init__(self, code: ProviderErrorCode, message: str) -> None:
        super().__init__(message)
        self._code: ProviderErrorCode = code

    @property
    def code(self) -> ProviderErrorCode:
        return self._code


class SessionExpiredError(AuthError):
    """The remote session is no longer valid."""

    kind = ErrorKind.SESSION_EXPIRED

    def __init__(
        self, message: str = "Your session has expired. Please sign in again.",
    ) -> None:
        super().__init__(message)


class CacheError(AuthError):
    """Local persistent store failure.  Always treated as a cache miss."""

    kind = ErrorKind.CACHE


class SideEffectError(AuthError):
    """Push-token or photo-upload failure.  Never fails the auth operation."""

    kind = ErrorKind.SIDE_EFFECT


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------

def classify_provider_exception(exc: Exception) -> ProviderError:
    """Map a raw provider / network exception to a ``ProviderError``.

    The provider's own message is kept verbatim when it supplied one,
    since it is authoritative on password policy and account existence.
    The mapped human message is used only when the raw text is empty.

    Parameters
    ----------
    exc:
        The exception raised by the provider SDK.

    Returns
    -------
    ProviderError
    """
    if isinstance(exc, ProviderError):
        return exc

    # Offline: unconfigured client, or socket-level failures.
    if isinstance(exc, (ConnectionError, TimeoutError, RuntimeError)):
        return ProviderError(ProviderErrorCode.UNKNOWN, _NETWORK_MESSAGE)

    raw_message = str(exc).strip()
    error_code = str(getattr(exc, "code", "") or "").lower()
    error_str = raw_message.lower()

    if error_code:
        mapped = PROVIDER_ERROR_MAP.get(error_code)
        if mapped is not None:
            return ProviderError(mapped[0], raw_message or mapped[1])

    if getattr(exc, "status", None) == 429:
        return ProviderError(
            ProviderErrorCode.RATE_LIMITED,
            raw_message or PROVIDER_ERROR_MAP["rate limit"][1],
        )

    for code_key, (provider_code, human_message) in PROVIDER_ERROR_MAP.items():
        if code_key in error_str:
            return ProviderError(provider_code, raw_message or human_message)

    return ProviderError(ProviderErrorCode.UNKNOWN, raw_message or _UNKNOWN_MESSAGE)


def normalize_error(exc: BaseException) -> ErrorInfo:
    """Return the ``ErrorInfo`` for any exception reaching the store."""
    if isinstance(exc, AuthError):
        return exc.info
    if isinstance(exc, Exception):
        return classify_provider_exception(exc).info
    return ErrorInfo(
        kind=ErrorKind.PROVIDER,
        code=ProviderErrorCode.UNKNOWN,
        message=_UNKNOWN_MESSAGE,
    )


def as_auth_error(exc: Exception) -> AuthError:
    """Return *exc* itself when it is already an ``AuthError``, else classify it."""
    if isinstance(exc, AuthError):
        return exc
    return classify_provider_exception(exc)
