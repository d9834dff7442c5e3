"""
Push Notification Token Service.

Registers the device's push token against the signed-in user after
sign-in or session restore, and deregisters it before sign-out
completes.  Both calls are side effects: failures are logged as
``SideEffectError`` and never block or fail the auth operation they are
attached to.

The device token itself is written to the local store (``@push_token``)
by the platform messaging integration; this service only reads it.
"""

from __future__ import annotations

import logging
from typing import Optional, Protocol

from supabase import AsyncClient

from trustudsel.errors import CacheError, SideEffectError
from trustudsel.database import LocalStore
from trustudsel.logger import StructuredLogger
from trustudsel.services.base_service import BaseService
from trustudsel.services.session_cache import PUSH_TOKEN_KEY


class PushTokenClient(Protocol):
    """Remote device-token registry."""

    async def register(self, user_id: str, token: str) -> None: ...

    async def deregister(self, user_id: str, token: str) -> None: ...


class SupabasePushTokenClient:
    """Device-token registry stored in a Supabase table.

    Rows are ``(user_id, token)`` pairs; registration upserts, and
    deregistration deletes the pair.
    """

    def __init__(self, client: Optional[AsyncClient], table: str = "device_tokens") -> None:
        self._client: Optional[AsyncClient] = client
        self._table: str = table

    @property
    def client(self) -> AsyncClient:
        if self._client is None:
            raise RuntimeError("Supabase client is not available (offline mode).")
        return self._client

    async def register(self, user_id: str, token: str) -> None:
        await (
            self.client.table(self._table)
            .upsert({"user_id": user_id, "token": token}, on_conflict="user_id,token")
            .execute()
        )

    async def deregister(self, user_id: str, token: str) -> None:
        await (
            self.client.table(self._table)
            .delete()
            .eq("user_id", user_id)
            .eq("token", token)
            .execute()
        )


class PushTokenService(BaseService):
    """Non-fatal wrapper around a ``PushTokenClient``.

    Parameters
    ----------
    client:
        The remote registry, or ``None`` when push is disabled.
    store:
        Local store holding the device token.
    logger:
        Structured JSON logger.
    """

    def __init__(
        self,
        client: Optional[PushTokenClient],
        store: LocalStore,
        logger: StructuredLogger,
    ) -> None:
        super().__init__(logger)
        self._client: Optional[PushTokenClient] = client
        self._store: LocalStore = store

    async def register(self, user_id: str) -> bool:
        """Register this device for *user_id*.  Returns ``True`` on success."""
        return await self._apply("register", user_id)

    async def deregister(self, user_id: str) -> bool:
        """Remove this device for *user_id*.  Returns ``True`` on success."""
        return await self._apply("deregister", user_id)

    async def _apply(self, action: str, user_id: str) -> bool:
        if self._client is None:
            return False
        try:
            token = await self._store.get(PUSH_TOKEN_KEY)
        except CacheError:
            return False
        if not token:
            self._logger.debug("No push token stored; skipping %s.", action)
            return False

        try:
            if action == "register":
                await self._client.register(user_id, token)
            else:
                await self._client.deregister(user_id, token)
        except Exception as exc:
            error = SideEffectError(f"Push token {action} failed: {exc}")
            self._log_event(
                "PUSH_TOKEN_FAILED", "%s", error.message,
                level=logging.WARNING, user_id=user_id,
            )
            return False

        self._log_event(
            f"PUSH_TOKEN_{action.upper()}",
            "Push token %s succeeded for %s.", action, user_id,
            user_id=user_id,
        )
        return True
