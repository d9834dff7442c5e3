"""Tests for sign-out cleanup and its interaction with background revalidation."""
from __future__ import annotations

import asyncio
from collections.abc import Generator

import pytest

from conftest import FakeClock, FakeIdentityProvider, FakePushClient
from trustudsel.database import LocalStore
from trustudsel.errors import ProviderError, SessionExpiredError
from trustudsel.logger import StructuredLogger
from trustudsel.models.enums import CacheNamespace, ProviderErrorCode
from trustudsel.models.session_models import SessionState, UserSession
from trustudsel.services.background_refresher import BackgroundRefresher, RefreshTicket
from trustudsel.services.push_tokens import PushTokenService
from trustudsel.services.session_cache import (
    JUST_SIGNED_OUT_KEY,
    PUSH_TOKEN_KEY,
    SessionCacheService,
)
from trustudsel.services.session_store import SessionStore

EMAIL = "student@state.edu"
PASSWORD = "Passw0rd!"


class UncancellableRefresher(BackgroundRefresher):
    """Lets a revalidation outlive ``cancel()``, as a result already in flight would."""

    def cancel(self) -> None:
        pass


@pytest.fixture
def racing_store(
    provider: FakeIdentityProvider,
    cache: SessionCacheService,
    push: PushTokenService,
    logger: StructuredLogger,
) -> Generator[SessionStore]:
    refresher = UncancellableRefresher(provider=provider, logger=logger)
    store = SessionStore(
        provider=provider, cache=cache, push=push, logger=logger, refresher=refresher,
    )
    yield store
    BackgroundRefresher.cancel(refresher)


async def test_sign_out_resets_state_and_purges_user_scoped_keys(
    session_store: SessionStore,
    provider: FakeIdentityProvider,
    cache: SessionCacheService,
    local_store: LocalStore,
) -> None:
    provider.add_account(EMAIL, PASSWORD)
    await session_store.sign_in(EMAIL, PASSWORD)
    for namespace in CacheNamespace:
        await cache.write_feature(namespace, EMAIL, {"cached": True})
    await local_store.set("app_theme", "dark")

    await session_store.sign_out()

    assert session_store.state == SessionState(
        is_authenticated=False, user=None, loading=False, error=None,
    )
    assert await cache.load_snapshot() is None
    for namespace in CacheNamespace:
        assert await cache.read_feature(namespace, EMAIL) is None
    assert await local_store.get("app_theme") == "dark"
    assert await local_store.get(JUST_SIGNED_OUT_KEY) is not None
    assert provider.session is None


async def test_sign_out_deregisters_push_token_first(
    session_store: SessionStore,
    provider: FakeIdentityProvider,
    push_client: FakePushClient,
    device_token: str,
    local_store: LocalStore,
) -> None:
    provider.add_account(EMAIL, PASSWORD)
    await session_store.sign_in(EMAIL, PASSWORD)
    assert push_client.registered == {(EMAIL, device_token)}

    await session_store.sign_out()

    assert push_client.calls == ["register", "deregister"]
    assert push_client.registered == set()
    # The device token belongs to the device, not the user.
    assert await local_store.get(PUSH_TOKEN_KEY) == device_token


async def test_sign_out_completes_when_remote_calls_fail(
    session_store: SessionStore,
    provider: FakeIdentityProvider,
    push_client: FakePushClient,
    cache: SessionCacheService,
    device_token: str,
) -> None:
    provider.add_account(EMAIL, PASSWORD)
    await session_store.sign_in(EMAIL, PASSWORD)
    push_client.fail = True
    provider.fail_next(
        "sign_out", ProviderError(ProviderErrorCode.UNKNOWN, "Cannot reach the server."),
    )

    await session_store.sign_out()

    assert session_store.state == SessionState.signed_out()
    assert await cache.load_snapshot() is None


async def test_restore_after_sign_out_ignores_cached_snapshot(
    session_store: SessionStore,
    provider: FakeIdentityProvider,
    cache: SessionCacheService,
) -> None:
    provider.add_account(EMAIL, PASSWORD)
    user = await session_store.sign_in(EMAIL, PASSWORD)
    await session_store.sign_out()
    # A snapshot written behind the sign-out's back must not be served.
    await cache.save_snapshot(user)
    provider.calls.clear()

    state = await session_store.restore_session()

    assert state == SessionState.signed_out()
    assert provider.calls == ["current_session"]
    assert await cache.pop_flag(JUST_SIGNED_OUT_KEY) is False


async def test_background_refresh_after_sign_out_is_discarded(
    racing_store: SessionStore,
    provider: FakeIdentityProvider,
    cache: SessionCacheService,
    clock: FakeClock,
) -> None:
    provider.add_account(EMAIL, PASSWORD, {"name": "Renamed Remotely"})
    provider.start_session(EMAIL)
    cached = UserSession(username=EMAIL, email=EMAIL, name="Sam Student")
    await cache.save_snapshot(cached)
    clock.advance(cache.staleness_ms + 1)
    gate = provider.block("current_session")

    await racing_store.restore_session()
    assert racing_store.refresher.pending is True

    await racing_store.sign_out()
    # The stale request now resolves with a valid, changed session.
    provider.start_session(EMAIL)
    gate.set()
    await racing_store.refresher.join()

    assert racing_store.state == SessionState.signed_out()
    assert await cache.load_snapshot() is None


async def test_expiry_from_superseded_refresh_is_discarded(
    racing_store: SessionStore,
    provider: FakeIdentityProvider,
    cache: SessionCacheService,
    clock: FakeClock,
) -> None:
    cached = UserSession(username=EMAIL, email=EMAIL, name="Sam Student")
    await cache.save_snapshot(cached)
    clock.advance(cache.staleness_ms + 1)
    gate = provider.block("current_session")

    await racing_store.restore_session()

    # A fresh sign-in supersedes the pending revalidation.
    provider.add_account(EMAIL, PASSWORD)
    provider.gates.clear()
    await racing_store.sign_in(EMAIL, PASSWORD)
    signed_in = racing_store.state
    provider.session = None
    gate.set()
    await racing_store.refresher.join()

    assert racing_store.state == signed_in
    assert racing_store.state.is_authenticated is True


async def test_stale_ticket_is_rejected(session_store: SessionStore) -> None:
    user = UserSession(username=EMAIL, email=EMAIL)
    ticket = RefreshTicket(generation=-1, sequence=-1, username=EMAIL)

    assert await session_store.apply_revalidation(ticket, user, changed=True) is False
    assert await session_store.expire_from_revalidation(ticket) is False
    assert session_store.state.user is None


async def test_refresh_in_flight_during_sign_out_is_discarded(
    session_store: SessionStore,
    provider: FakeIdentityProvider,
    cache: SessionCacheService,
    local_store: LocalStore,
) -> None:
    provider.add_account(EMAIL, PASSWORD)
    await session_store.sign_in(EMAIL, PASSWORD)
    gate = provider.block("current_session")
    refresh = asyncio.create_task(session_store.refresh_session())
    await asyncio.sleep(0)

    await session_store.sign_out()
    # The in-flight check resolves with a valid session after the sign-out.
    provider.start_session(EMAIL)
    gate.set()
    with pytest.raises(SessionExpiredError):
        await refresh

    assert session_store.state == SessionState.signed_out()
    assert await cache.load_snapshot() is None
    assert await cache.read_feature(CacheNamespace.PROFILE, EMAIL) is None
    assert await local_store.get(JUST_SIGNED_OUT_KEY) is not None


async def test_sign_in_in_flight_during_sign_out_is_discarded(
    session_store: SessionStore,
    provider: FakeIdentityProvider,
    cache: SessionCacheService,
) -> None:
    provider.add_account(EMAIL, PASSWORD)
    gate = provider.block("sign_in")
    sign_in = asyncio.create_task(session_store.sign_in(EMAIL, PASSWORD))
    await asyncio.sleep(0)

    await session_store.sign_out()
    gate.set()
    with pytest.raises(SessionExpiredError):
        await sign_in

    assert session_store.state == SessionState.signed_out()
    assert await cache.load_snapshot() is None
