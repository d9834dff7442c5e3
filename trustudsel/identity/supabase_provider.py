"""
Supabase Identity Provider.

Adapts the ``supabase`` async client to the ``IdentityProvider``
protocol.  Supabase identifies users by email, so the email doubles as
the username throughout.

When no Supabase credentials are configured the adapter runs in offline
mode: the ``client`` property raises ``RuntimeError`` and every call
surfaces as ``ProviderError(UNKNOWN)`` with a network message, which the
session store treats like an unreachable server.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Awaitable, Callable, Optional, TypeVar

from supabase import AsyncClient, acreate_client

from trustudsel.config import AppConfig
from trustudsel.errors import ProviderError, classify_provider_exception
from trustudsel.identity.provider import ProviderSession, SignUpResult
from trustudsel.logger import StructuredLogger
from trustudsel.models.enums import ProviderErrorCode

R = TypeVar("R")


def _stringify(value: Any) -> str:
    """Render a metadata value as the string attribute form."""
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (list, dict)):
        return json.dumps(value)
    return str(value)


def _user_attributes(user: Any) -> dict[str, str]:
    """Flatten a Supabase ``User`` into provider attribute strings."""
    metadata: dict[str, Any] = dict(getattr(user, "user_metadata", None) or {})
    attributes: dict[str, str] = {
        key: _stringify(value) for key, value in metadata.items() if value is not None
    }
    email = getattr(user, "email", None)
    if email:
        attributes["email"] = email
    phone = getattr(user, "phone", None)
    if phone and "phone_number" not in attributes:
        attributes["phone_number"] = phone
    attributes["email_verified"] = (
        "true" if getattr(user, "email_confirmed_at", None) else "false"
    )
    return attributes


def _to_provider_session(session: Any, user: Any = None) -> ProviderSession:
    owner = user if user is not None else session.user
    return ProviderSession(
        access_token=session.access_token,
        refresh_token=getattr(session, "refresh_token", None),
        expires_at=getattr(session, "expires_at", None),
        user_id=str(owner.id),
        username=owner.email or str(owner.id),
        attributes=_user_attributes(owner),
    )


class SupabaseIdentityProvider:
    """``IdentityProvider`` backed by Supabase Auth.

    Parameters
    ----------
    client:
        An initialised async Supabase client, or ``None`` for offline mode.
    logger:
        Structured JSON logger.
    """

    def __init__(self, client: Optional[AsyncClient], logger: StructuredLogger) -> None:
        self._client: Optional[AsyncClient] = client
        self._logger: StructuredLogger = logger

    @classmethod
    async def connect(
        cls, config: AppConfig, logger: StructuredLogger,
    ) -> "SupabaseIdentityProvider":
        """Create the async client from *config*, or run offline."""
        url = config.SUPABASE_URL
        key = config.SUPABASE_ANON_KEY.get_secret_value()
        if not (url and key):
            logger.warning(
                "Supabase credentials not configured — identity provider offline."
            )
            return cls(None, logger)
        try:
            client = await acreate_client(url, key)
        except (ValueError, TypeError) as exc:
            logger.warning(
                "Supabase credential format error: %s. Identity provider offline.",
                exc,
            )
            return cls(None, logger)
        logger.info("Supabase client initialized.")
        return cls(client, logger)

    @property
    def raw_client(self) -> Optional[AsyncClient]:
        """The underlying client, or ``None`` in offline mode."""
        return self._client

    @property
    def client(self) -> AsyncClient:
        """Return the Supabase client.

        Raises
        ------
        RuntimeError
            If the client was not initialised (offline mode).
        """
        if self._client is None:
            raise RuntimeError("Supabase client is not available (offline mode).")
        return self._client

    async def _call(self, operation: str, call: Callable[[], Awaitable[R]]) -> R:
        """Run *call*, translating every failure into ``ProviderError``."""
        try:
            return await call()
        except ProviderError:
            raise
        except Exception as exc:
            error = classify_provider_exception(exc)
            self._logger.event(
                "PROVIDER_ERROR", "Provider call %s failed (%s): %s", operation, error.code, exc,
                level=logging.WARNING, operation=operation, code=error.code,
            )
            raise error from exc

    # ------------------------------------------------------------------
    # IdentityProvider
    # ------------------------------------------------------------------

    async def sign_in(self, username: str, password: str) -> ProviderSession:
        async def call() -> ProviderSession:
            response = await self.client.auth.sign_in_with_password({
                "email": username,
                "password": password,
            })
            if response.session is None:
                raise ProviderError(
                    ProviderErrorCode.NOT_AUTHORIZED,
                    "Sign-in did not return a session.",
                )
            return _to_provider_session(response.session, response.user)

        return await self._call("sign_in", call)

    async def sign_up(
        self, username: str, password: str, attributes: dict[str, str],
    ) -> SignUpResult:
        async def call() -> SignUpResult:
            response = await self.client.auth.sign_up({
                "email": username,
                "password": password,
                "options": {"data": dict(attributes)},
            })
            user = response.user
            # Anti-enumeration: an existing confirmed email comes back as a
            # user with no identities instead of an error.
            if user is not None and getattr(user, "identities", None) == []:
                raise ProviderError(
                    ProviderErrorCode.ACCOUNT_EXISTS,
                    "An account with this email already exists.",
                )
            return SignUpResult(
                user_id=str(user.id) if user is not None else None,
                username=username,
                confirmed=bool(user is not None and user.email_confirmed_at),
            )

        return await self._call("sign_up", call)

    async def confirm_sign_up(self, username: str, code: str) -> None:
        async def call() -> None:
            await self.client.auth.verify_otp({
                "email": username,
                "token": code,
                "type": "signup",
            })
            # Verification signs the user in; the flow signs in explicitly
            # with the temporary credential later.
            await self.client.auth.sign_out()

        await self._call("confirm_sign_up", call)

    async def resend_confirmation(self, username: str) -> None:
        async def call() -> None:
            await self.client.auth.resend({"type": "signup", "email": username})

        await self._call("resend_confirmation", call)

    async def forgot_password(self, username: str) -> None:
        async def call() -> None:
            await self.client.auth.reset_password_for_email(username)

        await self._call("forgot_password", call)

    async def forgot_password_submit(
        self, username: str, code: str, new_password: str,
    ) -> None:
        async def call() -> None:
            await self.client.auth.verify_otp({
                "email": username,
                "token": code,
                "type": "recovery",
            })
            await self.client.auth.update_user({"password": new_password})
            await self.client.auth.sign_out()

        await self._call("forgot_password_submit", call)

    async def change_password(
        self, session: ProviderSession, old_password: str, new_password: str,
    ) -> None:
        async def call() -> None:
            # Supabase does not check the old password itself.
            await self.client.auth.sign_in_with_password({
                "email": session.username,
                "password": old_password,
            })
            await self.client.auth.update_user({"password": new_password})

        await self._call("change_password", call)

    async def update_attributes(
        self, session: ProviderSession, attributes: dict[str, str],
    ) -> None:
        async def call() -> None:
            await self.client.auth.update_user({"data": dict(attributes)})

        await self._call("update_attributes", call)

    async def current_session(self) -> Optional[ProviderSession]:
        async def call() -> Optional[ProviderSession]:
            session = await self.client.auth.get_session()
            if session is None:
                return None
            # get_session() only reads local state; get_user() asks the server.
            response = await self.client.auth.get_user(session.access_token)
            if response is None or response.user is None:
                return None
            return _to_provider_session(session, response.user)

        return await self._call("current_session", call)

    async def sign_out(self) -> None:
        async def call() -> None:
            await self.client.auth.sign_out()

        await self._call("sign_out", call)
