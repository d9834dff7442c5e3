"""
Sign-out Coordinator.

Performs every side effect of an explicit sign-out, in order:

1. deregister the device push token (non-fatal);
2. revoke the provider session (failure is logged, local cleanup
   continues so sign-out still works offline);
3. purge the snapshot and every user-scoped cache namespace;
4. set the "just signed out" marker.

The session store publishes the reset state once this returns.
"""

from __future__ import annotations

import logging
from typing import Optional

from trustudsel.errors import ProviderError
from trustudsel.identity.provider import IdentityProvider
from trustudsel.logger import StructuredLogger
from trustudsel.models.session_models import UserSession
from trustudsel.services.base_service import BaseService
from trustudsel.services.push_tokens import PushTokenService
from trustudsel.services.session_cache import JUST_SIGNED_OUT_KEY, SessionCacheService


class SignOutCoordinator(BaseService):
    """Runs the sign-out side effects for the session store."""

    def __init__(
        self,
        provider: IdentityProvider,
        cache: SessionCacheService,
        push: PushTokenService,
        logger: StructuredLogger,
    ) -> None:
        super().__init__(logger)
        self._provider: IdentityProvider = provider
        self._cache: SessionCacheService = cache
        self._push: PushTokenService = push

    async def run(self, user: Optional[UserSession]) -> list[str]:
        """Execute the sign-out sequence for *user*.

        Returns
        -------
        list[str]
            The cache keys that were removed.
        """
        username = user.username if user is not None else "unknown"

        if user is not None:
            await self._push.deregister(user.username)

        try:
            await self._provider.sign_out()
        except ProviderError as exc:
            self._log_event(
                "SIGN_OUT_REMOTE_FAILED",
                "Provider sign-out failed for %s: %s", username, exc,
                level=logging.WARNING,
            )

        removed = await self._cache.purge_user_scoped()
        await self._cache.set_flag(JUST_SIGNED_OUT_KEY)

        self._log_event(
            "SIGN_OUT",
            "User signed out: %s", username,
            username=username,
            purged_keys=len(removed),
        )
        return removed
