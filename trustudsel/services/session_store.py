"""
Session Store.

The single authoritative source of authentication state.  UI code reads
``store.state`` and re-renders from ``subscribe()`` notifications; every
auth operation goes through this object.

Contract
--------
- Each operation patches ``loading=True, error=None``, performs its
  work, then patches ``loading=False`` with ``error`` set to ``None`` or
  the normalised ``ErrorInfo``.  Failures are re-raised as typed
  ``AuthError`` subclasses after the patch.
- ``is_authenticated`` is ``True`` only while ``user`` is set; the
  ``SessionState`` model rejects any other combination.
- Background revalidation results are applied only if their
  ``RefreshTicket`` still matches the current generation, refresh
  sequence and username.  Sign-in, failed sign-in, sign-out and expiry
  bump the generation; sign-in, sign-out and every refresh request bump
  the sequence.
- Explicit operations check the same counters after each remote call and
  drop their own result when a later sign-in or sign-out has landed.
- Only ``sign_in`` failures and invalid sessions clear the identity.
  Transient provider failures set ``error`` and keep the user.
"""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Optional, TypeVar

from trustudsel.errors import (
    AuthError,
    ProviderError,
    SessionExpiredError,
    as_auth_error,
)
from trustudsel.identity.provider import IdentityProvider, SignUpResult
from trustudsel.logger import StructuredLogger
from trustudsel.models.auth_models import ErrorInfo
from trustudsel.models.enums import CacheAge, CacheNamespace, ProviderErrorCode
from trustudsel.models.session_models import SessionState, UserSession
from trustudsel.services.background_refresher import (
    INVALID_SESSION_CODES,
    BackgroundRefresher,
    RefreshTicket,
)
from trustudsel.services.base_service import BaseService
from trustudsel.services.push_tokens import PushTokenService
from trustudsel.services.session_cache import JUST_SIGNED_OUT_KEY, SessionCacheService
from trustudsel.services.signout import SignOutCoordinator
from trustudsel.services.validation import (
    normalize_email,
    require,
    validate_code,
    validate_email,
    validate_password,
    validate_required,
)

R = TypeVar("R")

Listener = Callable[[SessionState], None]

_STATE_FIELDS: frozenset[str] = frozenset(SessionState.model_fields)
_USER_FIELDS: frozenset[str] = frozenset(UserSession.model_fields)


def _is_invalid_session(error: AuthError) -> bool:
    return isinstance(error, SessionExpiredError) or error.code in INVALID_SESSION_CODES


class SessionStore(BaseService):
    """Authoritative authentication state and the operations that change it.

    Parameters
    ----------
    provider:
        Remote identity provider.
    cache:
        Snapshot and feature-cache service.
    push:
        Device push-token registration (non-fatal side effect).
    logger:
        Structured JSON logger.
    refresher:
        Background revalidation runner; one is created when omitted.
    sign_out_coordinator:
        Sign-out side-effect runner; one is created when omitted.
    """

    def __init__(
        self,
        provider: IdentityProvider,
        cache: SessionCacheService,
        push: PushTokenService,
        logger: StructuredLogger,
        refresher: Optional[BackgroundRefresher] = None,
        sign_out_coordinator: Optional[SignOutCoordinator] = None,
    ) -> None:
        super().__init__(logger)
        self._provider: IdentityProvider = provider
        self._cache: SessionCacheService = cache
        self._push: PushTokenService = push
        self._refresher: BackgroundRefresher = (
            refresher or BackgroundRefresher(provider, logger)
        )
        self._sign_out: SignOutCoordinator = (
            sign_out_coordinator or SignOutCoordinator(provider, cache, push, logger)
        )
        self._state: SessionState = SessionState()
        self._listeners: list[Listener] = []
        self._generation: int = 0
        self._refresh_seq: int = 0

    # ------------------------------------------------------------------
    # State access
    # ------------------------------------------------------------------

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def refresher(self) -> BackgroundRefresher:
        return self._refresher

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Call *listener* with every new state.  Returns an unsubscribe function."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _patch(self, *, error: Optional[ErrorInfo], **changes: Any) -> SessionState:
        """Merge *changes* into the state and notify listeners.

        ``error`` must always be given so no transition leaves a previous
        error behind by accident.
        """
        unknown = set(changes) - _STATE_FIELDS
        if unknown:
            raise TypeError(f"Unknown session state fields: {sorted(unknown)}")
        values = self._state.model_dump(exclude={"user", "error"})
        values["user"] = self._state.user
        values.update(changes)
        values["error"] = error
        self._state = SessionState(**values)

        for listener in list(self._listeners):
            try:
                listener(self._state)
            except Exception:
                self._logger.error("Session state listener raised.", exc_info=True)
        return self._state

    def _reset_identity(
        self, error: Optional[ErrorInfo], cancel_refresher: bool = True,
    ) -> None:
        """Drop the identity and invalidate any background work.

        ``cancel_refresher`` must be ``False`` when called from inside the
        revalidation task itself.
        """
        self._generation += 1
        if cancel_refresher:
            self._refresher.cancel()
        self._patch(is_authenticated=False, user=None, loading=False, error=error)

    def _next_sequence(self) -> int:
        self._refresh_seq += 1
        return self._refresh_seq

    def _marker(self) -> tuple[int, int]:
        return self._generation, self._refresh_seq

    def _superseded(self, marker: tuple[int, int], operation: str) -> bool:
        """Whether an explicit action ran since *marker* was taken."""
        if marker == self._marker():
            return False
        self._log_event(
            "RESULT_DISCARDED", "Discarding superseded %s result.", operation,
            level=logging.DEBUG, operation=operation,
        )
        return True

    # ------------------------------------------------------------------
    # Startup
    # ------------------------------------------------------------------

    async def restore_session(self) -> SessionState:
        """Cache-aside startup read.

        A fresh or stale snapshot is published immediately (stale ones
        also schedule one background revalidation).  A missing, expired
        or unreadable snapshot, or a pending "just signed out" marker,
        falls through to a blocking remote check.
        """
        self._patch(loading=True, error=None)

        just_signed_out = await self.consume_signed_out_marker()
        entry = None if just_signed_out else await self._cache.load_snapshot()

        if entry is not None:
            age = self._cache.classify(entry)
            if age is not CacheAge.EXPIRED:
                user = entry.data
                self._generation += 1
                marker = self._marker()
                self._patch(is_authenticated=True, user=user, loading=False, error=None)
                self._log_event(
                    "SESSION_RESTORED",
                    "Session restored from cache for %s (%s).", user.username, age.name,
                    username=user.username,
                )
                await self._push.register(user.username)
                if age is CacheAge.STALE and not self._superseded(marker, "restore_session"):
                    self._schedule_revalidation(user)
                return self._state
            self._logger.info("Cached session snapshot expired; revalidating.")

        return await self._blocking_check()

    async def consume_signed_out_marker(self) -> bool:
        """Return whether the user explicitly signed out last run, clearing the marker."""
        return await self._cache.pop_flag(JUST_SIGNED_OUT_KEY)

    async def _blocking_check(self) -> SessionState:
        self._next_sequence()
        marker = self._marker()
        try:
            session = await self._provider.current_session()
        except Exception as exc:
            if self._superseded(marker, "session_check"):
                return self._state
            error = as_auth_error(exc)
            self._reset_identity(error.info)
            self._log_event(
                "SESSION_CHECK_FAILED", "Startup session check failed: %s", error.message,
                level=logging.WARNING,
            )
            return self._state

        if self._superseded(marker, "session_check"):
            return self._state
        if session is None or not session.is_valid():
            self._reset_identity(None)
            return self._state

        user = UserSession.from_provider(session.username, session.attributes)
        if not await self._establish(user, register_push=True):
            return self._state
        self._log_event(
            "SESSION_RESTORED", "Session restored from provider for %s.", user.username,
            username=user.username,
        )
        return self._state

    # ------------------------------------------------------------------
    # Sign-in / sign-up
    # ------------------------------------------------------------------

    async def sign_in(self, username: str, password: str) -> UserSession:
        """Authenticate and publish the projected user.

        Raises
        ------
        ValidationError
            Missing credentials.
        ProviderError
            The provider rejected the credentials.
        SessionExpiredError
            A sign-out or another sign-in completed while this one was
            in flight.
        """
        self._next_sequence()
        marker = self._marker()
        self._patch(loading=True, error=None)
        identifier = normalize_email(username) if "@" in username else username.strip()
        try:
            require(validate_required(identifier, "Email"))
            require(validate_required(password, "Password"))
            session = await self._provider.sign_in(identifier, password)
        except Exception as exc:
            error = as_auth_error(exc)
            if not self._superseded(marker, "sign_in"):
                self._reset_identity(error.info)
            self._log_event(
                "SIGN_IN_FAILED", "Sign-in failed for %s: %s", identifier, error.message,
                level=logging.WARNING, username=identifier,
            )
            if error is exc:
                raise
            raise error from exc

        if self._superseded(marker, "sign_in"):
            raise SessionExpiredError("Sign-in was superseded by a newer session change.")
        attributes = dict(session.attributes)
        if not attributes.get("email") and "@" in identifier:
            attributes["email"] = identifier
        user = UserSession.from_provider(session.username, attributes)
        if not await self._establish(user, register_push=True):
            raise SessionExpiredError("Sign-in was superseded by a newer session change.")
        self._log_event("SIGN_IN", "User signed in: %s", user.username, username=user.username)
        return user

    async def sign_up(
        self, username: str, password: str, attributes: dict[str, str],
    ) -> SignUpResult:
        """Create an unconfirmed account."""
        identifier = normalize_email(username)

        async def call() -> SignUpResult:
            require(validate_email(identifier))
            require(validate_password(password))
            return await self._provider.sign_up(identifier, password, attributes)

        result = await self._run("sign_up", call)
        self._log_event("SIGN_UP", "Account created for %s.", identifier, username=identifier)
        return result

    async def confirm_registration(self, username: str, code: str) -> None:
        identifier = normalize_email(username)

        async def call() -> None:
            require(validate_code(code))
            await self._provider.confirm_sign_up(identifier, code.strip())

        await self._run("confirm_registration", call)
        self._log_event(
            "REGISTRATION_CONFIRMED", "Registration confirmed for %s.", identifier,
            username=identifier,
        )

    async def resend_verification(self, username: str) -> None:
        identifier = normalize_email(username)

        async def call() -> None:
            require(validate_required(identifier, "Email"))
            await self._provider.resend_confirmation(identifier)

        await self._run("resend_verification", call)

    # ------------------------------------------------------------------
    # Password recovery
    # ------------------------------------------------------------------

    async def request_password_reset(self, username: str) -> None:
        identifier = normalize_email(username)

        async def call() -> None:
            require(validate_email(identifier))
            await self._provider.forgot_password(identifier)

        await self._run("request_password_reset", call)
        self._log_event(
            "PASSWORD_RESET_REQUESTED", "Password reset requested for %s.", identifier,
            username=identifier,
        )

    async def submit_new_password(self, username: str, code: str, new_password: str) -> None:
        identifier = normalize_email(username)

        async def call() -> None:
            require(validate_code(code))
            require(validate_password(new_password))
            await self._provider.forgot_password_submit(identifier, code.strip(), new_password)

        await self._run("submit_new_password", call)
        self._log_event(
            "PASSWORD_RESET", "Password reset completed for %s.", identifier,
            username=identifier,
        )

    # ------------------------------------------------------------------
    # Sign-out
    # ------------------------------------------------------------------

    async def sign_out(self) -> None:
        """Run the sign-out side effects and publish the reset state.

        Never raises for remote failures; local cleanup always completes.
        """
        user = self._state.user
        self._generation += 1
        self._next_sequence()
        self._refresher.cancel()
        self._patch(loading=True, error=None)

        await self._sign_out.run(user)

        signed_out = SessionState.signed_out()
        self._patch(
            is_authenticated=signed_out.is_authenticated,
            user=signed_out.user,
            loading=signed_out.loading,
            error=signed_out.error,
        )

    # ------------------------------------------------------------------
    # Profile
    # ------------------------------------------------------------------

    async def update_local_user(self, **partial: Any) -> Optional[UserSession]:
        """Merge *partial* into the in-memory user.  No-op when signed out.

        Only the published state changes; neither the cache nor the
        provider is touched.
        """
        unknown = set(partial) - _USER_FIELDS
        if unknown:
            raise TypeError(f"Unknown user fields: {sorted(unknown)}")
        user = self._state.user
        if user is None:
            return None
        merged = UserSession.model_validate({**user.model_dump(), **partial})
        self._patch(user=merged, error=self._state.error)
        return merged

    async def update_remote_attributes(self, attributes: dict[str, str]) -> UserSession:
        """Send *attributes* to the provider, then refresh the session.

        Raises
        ------
        ProviderError
            ``NOT_AUTHORIZED`` when there is no current provider session.
        """
        async def call() -> None:
            session = await self._provider.current_session()
            if session is None or not session.is_valid():
                raise ProviderError(
                    ProviderErrorCode.NOT_AUTHORIZED,
                    "You must be signed in to update your profile.",
                )
            await self._provider.update_attributes(session, attributes)

        await self._run("update_remote_attributes", call)
        self._log_event(
            "ATTRIBUTES_UPDATED", "Updated %d profile attributes.", len(attributes),
            attributes=sorted(attributes),
        )
        return await self.refresh_session()

    async def refresh_session(self) -> UserSession:
        """Blocking remote check that re-projects and re-caches the user.

        Supersedes any in-flight background revalidation.  A transient
        provider failure keeps the current identity and only sets
        ``error``; an invalid session signs the user out and purges the
        user-scoped caches.  If a sign-out or sign-in completes while the
        check is in flight, its result is not applied.

        Raises
        ------
        SessionExpiredError
            No valid provider session exists, or the refresh was
            superseded by a sign-out.
        ProviderError
            The provider check itself failed.
        """
        self._next_sequence()
        marker = self._marker()
        self._patch(loading=True, error=None)
        try:
            session = await self._provider.current_session()
            if session is None or not session.is_valid():
                raise SessionExpiredError()
        except Exception as exc:
            error = as_auth_error(exc)
            if self._superseded(marker, "refresh_session"):
                self._logger.debug("Refresh failed after being superseded: %s", error.message)
            elif _is_invalid_session(error):
                self._reset_identity(error.info)
                await self._cache.purge_user_scoped()
                self._log_event(
                    "SESSION_EXPIRED", "Session refresh found no valid session.",
                    level=logging.WARNING,
                )
            else:
                self._patch(loading=False, error=error.info)
                self._log_event(
                    "REFRESH_FAILED", "Session refresh failed: %s", error.message,
                    level=logging.WARNING, code=error.code,
                )
            if error is exc:
                raise
            raise error from exc

        user = UserSession.from_provider(session.username, session.attributes)
        if self._superseded(marker, "refresh_session") or not await self._establish(
            user, register_push=False,
        ):
            current = self._state.user
            if current is None:
                raise SessionExpiredError()
            return current
        self._log_event(
            "SESSION_REFRESHED", "Session refreshed for %s.", user.username,
            level=logging.DEBUG, username=user.username,
        )
        return user

    # ------------------------------------------------------------------
    # Background revalidation
    # ------------------------------------------------------------------

    def _ticket_is_current(self, ticket: RefreshTicket) -> bool:
        user = self._state.user
        return (
            ticket.generation == self._generation
            and ticket.sequence == self._refresh_seq
            and user is not None
            and user.username == ticket.username
        )

    def _schedule_revalidation(self, user: UserSession) -> bool:
        if self._refresher.pending:
            return False
        ticket = RefreshTicket(
            generation=self._generation,
            sequence=self._next_sequence(),
            username=user.username,
        )
        return self._refresher.schedule(ticket, user, self)

    async def apply_revalidation(
        self, ticket: RefreshTicket, fresh: UserSession, changed: bool,
    ) -> bool:
        """Apply a background result.  Returns ``False`` when it was discarded."""
        if not self._ticket_is_current(ticket):
            self._log_event(
                "REVALIDATION_DISCARDED",
                "Discarding superseded revalidation for %s.", ticket.username,
                level=logging.DEBUG,
            )
            return False

        if changed:
            self._patch(
                is_authenticated=True, user=fresh, loading=False, error=self._state.error,
            )
        await self._cache.save_snapshot(fresh)

        # An explicit action that ran during the write must not be undone by it.
        current = self._state.user
        if current is None:
            await self._cache.clear_snapshot()
            return False
        if current.username != ticket.username:
            await self._cache.save_snapshot(current)
            return False
        return True

    async def expire_from_revalidation(self, ticket: RefreshTicket) -> bool:
        """Force the unauthenticated state after the provider rejected the session."""
        if not self._ticket_is_current(ticket):
            return False
        # Runs inside the revalidation task, so the task must not cancel itself.
        self._reset_identity(SessionExpiredError().info, cancel_refresher=False)
        await self._cache.purge_user_scoped()
        self._log_event(
            "SESSION_EXPIRED", "Cached session for %s is no longer valid.", ticket.username,
            level=logging.WARNING, username=ticket.username,
        )
        return True

    # ------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------

    async def aclose(self) -> None:
        """Cancel background work.  The store may not be used afterwards."""
        self._refresher.cancel()
        self._listeners.clear()

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    async def _establish(self, user: UserSession, register_push: bool) -> bool:
        """Publish *user* as authenticated and write the caches.

        Returns ``False`` when a sign-out or another sign-in landed during
        the cache writes; the writes are then rolled back.
        """
        self._generation += 1
        marker = self._marker()
        self._patch(is_authenticated=True, user=user, loading=False, error=None)
        await self._cache.save_snapshot(user)
        await self._cache.write_feature(CacheNamespace.PROFILE, user.username, user)

        if self._superseded(marker, "establish"):
            current = self._state.user
            if current is None:
                await self._cache.purge_user_scoped()
            elif current.username != user.username:
                await self._cache.save_snapshot(current)
            return False

        if register_push:
            await self._push.register(user.username)
        return True

    async def _run(self, operation: str, call: Callable[[], Awaitable[R]]) -> R:
        """Run *call* inside the loading/error envelope; identity is untouched."""
        self._patch(loading=True, error=None)
        try:
            result = await call()
        except Exception as exc:
            error = as_auth_error(exc)
            self._patch(loading=False, error=error.info)
            self._log_event(
                "OPERATION_FAILED", "%s failed: %s", operation, error.message,
                level=logging.WARNING, operation=operation,
            )
            if error is exc:
                raise
            raise error from exc
        self._patch(loading=False, error=None)
        return result
