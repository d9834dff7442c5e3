"""
Identity Provider Boundary.

The ``IdentityProvider`` protocol is the only surface the session core
uses to talk to the remote user pool.  Implementations must raise
``ProviderError`` (never raw SDK exceptions) so callers can rely on the
error taxonomy.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional, Protocol, runtime_checkable

from pydantic import BaseModel, Field


class ProviderSession(BaseModel):
    """An authenticated provider session and the identity it belongs to."""

    access_token: str = Field(repr=False)
    refresh_token: Optional[str] = Field(default=None, repr=False)
    expires_at: Optional[int] = None  # Unix seconds
    user_id: str
    username: str
    attributes: dict[str, str] = Field(default_factory=dict)

    def is_valid(self, now: Optional[datetime] = None) -> bool:
        """``False`` once the access token has expired."""
        if not self.access_token:
            return False
        if self.expires_at is None:
            return True
        current = now or datetime.now(tz=timezone.utc)
        return current.timestamp() < self.expires_at


class SignUpResult(BaseModel):
    """Outcome of a successful sign-up request."""

    user_id: Optional[str] = None
    username: str
    confirmed: bool = False


@runtime_checkable
class IdentityProvider(Protocol):
    """Remote user-pool contract."""

    async def sign_in(self, username: str, password: str) -> ProviderSession: ...

    async def sign_up(
        self, username: str, password: str, attributes: dict[str, str],
    ) -> SignUpResult: ...

    async def confirm_sign_up(self, username: str, code: str) -> None: ...

    async def resend_confirmation(self, username: str) -> None: ...

    async def forgot_password(self, username: str) -> None: ...

    async def forgot_password_submit(
        self, username: str, code: str, new_password: str,
    ) -> None: ...

    async def change_password(
        self, session: ProviderSession, old_password: str, new_password: str,
    ) -> None: ...

    async def update_attributes(
        self, session: ProviderSession, attributes: dict[str, str],
    ) -> None: ...

    async def current_session(self) -> Optional[ProviderSession]: ...

    async def sign_out(self) -> None: ...
