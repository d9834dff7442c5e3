"""
Background Session Revalidation.

When a cached snapshot is served past its staleness threshold, the
session store asks the ``BackgroundRefresher`` to confirm it against the
identity provider without blocking the UI.  At most one revalidation
runs at a time.

Results are never applied directly.  Each run carries the
``RefreshTicket`` it was scheduled with and hands the outcome back to a
``RevalidationTarget`` (the session store), which drops it when a more
recent explicit action (sign-out, failed sign-in, another refresh) has
superseded the ticket.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional, Protocol

from trustudsel.errors import ProviderError
from trustudsel.identity.provider import IdentityProvider
from trustudsel.logger import StructuredLogger
from trustudsel.models.enums import ProviderErrorCode
from trustudsel.models.session_models import UserSession
from trustudsel.services.base_service import BaseService

# Provider answers that mean the session itself is gone, as opposed to a
# transient failure that leaves the cached view in place.
INVALID_SESSION_CODES: frozenset[ProviderErrorCode] = frozenset({
    ProviderErrorCode.NOT_AUTHORIZED,
    ProviderErrorCode.USER_NOT_FOUND,
})


@dataclass(frozen=True)
class RefreshTicket:
    """Identity and ordering stamp of one revalidation request."""

    generation: int
    sequence: int
    username: str


class RevalidationTarget(Protocol):
    """Receiver of revalidation outcomes."""

    async def apply_revalidation(
        self, ticket: RefreshTicket, fresh: UserSession, changed: bool,
    ) -> bool: ...

    async def expire_from_revalidation(self, ticket: RefreshTicket) -> bool: ...


class BackgroundRefresher(BaseService):
    """Runs one non-blocking revalidation task at a time.

    Parameters
    ----------
    provider:
        Identity provider used for the session check.
    logger:
        Structured JSON logger.
    """

    def __init__(self, provider: IdentityProvider, logger: StructuredLogger) -> None:
        super().__init__(logger)
        self._provider: IdentityProvider = provider
        self._task: Optional[asyncio.Task[None]] = None
        self._scheduled_count: int = 0

    @property
    def pending(self) -> bool:
        """``True`` while a revalidation task is running."""
        return self._task is not None and not self._task.done()

    @property
    def scheduled_count(self) -> int:
        """Total number of revalidations scheduled by this instance."""
        return self._scheduled_count

    def schedule(
        self,
        ticket: RefreshTicket,
        cached: UserSession,
        target: RevalidationTarget,
    ) -> bool:
        """Start a revalidation of *cached* unless one is already running.

        Returns
        -------
        bool
            ``True`` if a new task was started.
        """
        if self.pending:
            self._logger.debug("Revalidation already pending; not scheduling another.")
            return False
        self._task = asyncio.get_running_loop().create_task(
            self._revalidate(ticket, cached, target),
            name=f"session-revalidate-{ticket.sequence}",
        )
        self._scheduled_count += 1
        self._log_event(
            "REVALIDATION_SCHEDULED",
            "Background revalidation scheduled for %s.", ticket.username,
            level=logging.DEBUG,
        )
        return True

    def cancel(self) -> None:
        """Cancel the in-flight task, if any.  Its result is never applied."""
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None

    async def join(self) -> None:
        """Wait for the in-flight task to finish (or be cancelled)."""
        task = self._task
        if task is not None:
            await asyncio.wait({task})

    async def _revalidate(
        self,
        ticket: RefreshTicket,
        cached: UserSession,
        target: RevalidationTarget,
    ) -> None:
        try:
            session = await self._provider.current_session()
        except ProviderError as exc:
            if exc.code in INVALID_SESSION_CODES:
                await target.expire_from_revalidation(ticket)
                return
            self._log_event(
                "REVALIDATION_DEFERRED",
                "Revalidation for %s failed transiently (%s); keeping cached view.",
                ticket.username, exc.code,
                level=logging.WARNING,
            )
            return
        except Exception:
            self._logger.error(
                "Unexpected error during background revalidation.", exc_info=True,
            )
            return

        if session is None or not session.is_valid():
            await target.expire_from_revalidation(ticket)
            return

        fresh = UserSession.from_provider(session.username, session.attributes)
        changed = fresh != cached
        applied = await target.apply_revalidation(ticket, fresh, changed)
        self._log_event(
            "REVALIDATION_COMPLETE",
            "Revalidation for %s complete (changed=%s, applied=%s).",
            ticket.username, changed, applied,
            level=logging.DEBUG,
        )
