"""Shared fixtures: fake provider and side systems, a controllable clock, a tmp store."""
from __future__ import annotations

import asyncio
from collections.abc import Generator
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import pytest

from trustudsel.database import LocalStore
from trustudsel.errors import ProviderError, SideEffectError
from trustudsel.identity.provider import ProviderSession, SignUpResult
from trustudsel.logger import StructuredLogger
from trustudsel.models.enums import ProviderErrorCode
from trustudsel.services.push_tokens import PushTokenService
from trustudsel.services.registration_flow import RegistrationFlowController
from trustudsel.services.recovery_flow import PasswordRecoveryFlowController
from trustudsel.services.session_cache import PUSH_TOKEN_KEY, SessionCacheService
from trustudsel.services.session_store import SessionStore

START_MS = 1_700_000_000_000
EXPIRY_MS = 86_400_000
VALID_CODE = "123456"


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------

@dataclass
class FakeAccount:
    password: str
    attributes: dict[str, str] = field(default_factory=dict)
    confirmed: bool = True


class FakeIdentityProvider:
    """In-memory user pool with the same error behaviour as the real one."""

    def __init__(self) -> None:
        self.accounts: dict[str, FakeAccount] = {}
        self.session: Optional[ProviderSession] = None
        self.calls: list[str] = []
        self.failures: dict[str, Exception] = {}
        self.gates: dict[str, asyncio.Event] = {}

    # --- test helpers ---

    def add_account(
        self,
        email: str,
        password: str,
        attributes: Optional[dict[str, str]] = None,
        confirmed: bool = True,
    ) -> FakeAccount:
        base = {"email": email, "email_verified": "true" if confirmed else "false"}
        account = FakeAccount(password, {**base, **(attributes or {})}, confirmed)
        self.accounts[email] = account
        return account

    def start_session(self, email: str) -> ProviderSession:
        self.session = ProviderSession(
            access_token=f"token-{email}",
            user_id=f"id-{email}",
            username=email,
            attributes=dict(self.accounts[email].attributes),
        )
        return self.session

    def fail_next(self, operation: str, error: Exception) -> None:
        self.failures[operation] = error

    def block(self, operation: str) -> asyncio.Event:
        gate = asyncio.Event()
        self.gates[operation] = gate
        return gate

    async def _enter(self, operation: str) -> None:
        self.calls.append(operation)
        gate = self.gates.get(operation)
        if gate is not None:
            await gate.wait()
        error = self.failures.pop(operation, None)
        if error is not None:
            raise error

    def _account(self, username: str) -> FakeAccount:
        account = self.accounts.get(username)
        if account is None:
            raise ProviderError(ProviderErrorCode.USER_NOT_FOUND, "User does not exist.")
        return account

    # --- IdentityProvider ---

    async def sign_in(self, username: str, password: str) -> ProviderSession:
        await self._enter("sign_in")
        account = self.accounts.get(username)
        if account is None or account.password != password:
            raise ProviderError(
                ProviderErrorCode.NOT_AUTHORIZED, "Incorrect username or password.",
            )
        if not account.confirmed:
            raise ProviderError(ProviderErrorCode.NOT_AUTHORIZED, "User is not confirmed.")
        return self.start_session(username)

    async def sign_up(
        self, username: str, password: str, attributes: dict[str, str],
    ) -> SignUpResult:
        await self._enter("sign_up")
        if username in self.accounts:
            raise ProviderError(ProviderErrorCode.ACCOUNT_EXISTS, "User already exists")
        self.add_account(username, password, attributes, confirmed=False)
        return SignUpResult(user_id=f"id-{username}", username=username)

    async def confirm_sign_up(self, username: str, code: str) -> None:
        await self._enter("confirm_sign_up")
        account = self._account(username)
        if code != VALID_CODE:
            raise ProviderError(
                ProviderErrorCode.CODE_MISMATCH,
                "Invalid verification code provided, please try again.",
            )
        account.confirmed = True
        account.attributes["email_verified"] = "true"

    async def resend_confirmation(self, username: str) -> None:
        await self._enter("resend_confirmation")
        self._account(username)

    async def forgot_password(self, username: str) -> None:
        await self._enter("forgot_password")
        self._account(username)

    async def forgot_password_submit(self, username: str, code: str, new_password: str) -> None:
        await self._enter("forgot_password_submit")
        account = self._account(username)
        if code != VALID_CODE:
            raise ProviderError(
                ProviderErrorCode.CODE_MISMATCH,
                "Invalid verification code provided, please try again.",
            )
        account.password = new_password

    async def change_password(
        self, session: ProviderSession, old_password: str, new_password: str,
    ) -> None:
        await self._enter("change_password")
        account = self._account(session.username)
        if account.password != old_password:
            raise ProviderError(
                ProviderErrorCode.NOT_AUTHORIZED, "Incorrect username or password.",
            )
        account.password = new_password

    async def update_attributes(
        self, session: ProviderSession, attributes: dict[str, str],
    ) -> None:
        await self._enter("update_attributes")
        self._account(session.username).attributes.update(attributes)

    async def current_session(self) -> Optional[ProviderSession]:
        await self._enter("current_session")
        if self.session is None:
            return None
        account = self.accounts.get(self.session.username)
        if account is None:
            return self.session
        return self.session.model_copy(update={"attributes": dict(account.attributes)})

    async def sign_out(self) -> None:
        await self._enter("sign_out")
        self.session = None


class FakePushClient:
    def __init__(self) -> None:
        self.registered: set[tuple[str, str]] = set()
        self.calls: list[str] = []
        self.fail: bool = False

    async def register(self, user_id: str, token: str) -> None:
        self.calls.append("register")
        if self.fail:
            raise ConnectionError("push backend unreachable")
        self.registered.add((user_id, token))

    async def deregister(self, user_id: str, token: str) -> None:
        self.calls.append("deregister")
        if self.fail:
            raise ConnectionError("push backend unreachable")
        self.registered.discard((user_id, token))


class FakeUploader:
    def __init__(self) -> None:
        self.uploads: list[tuple[str, str]] = []
        self.fail: bool = False

    async def upload(self, user_id: str, path: str) -> str:
        if self.fail:
            raise SideEffectError("Photo upload failed: bucket unavailable")
        self.uploads.append((user_id, path))
        return f"{user_id}/photo.jpg"


class FakeClock:
    """Epoch-ms clock that only moves when told to."""

    def __init__(self, start: int = START_MS) -> None:
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


class FakeMonotonic:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture(scope="session")
def logger(tmp_path_factory: pytest.TempPathFactory) -> StructuredLogger:
    log_file = tmp_path_factory.mktemp("logs") / "test.log"
    return StructuredLogger(name="trustudsel.tests", log_file=str(log_file))


@pytest.fixture
def local_store(tmp_path: Path, logger: StructuredLogger) -> Generator[LocalStore]:
    store = LocalStore(sqlite_path=tmp_path / "local.db", logger=logger)
    yield store
    store.close()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def monotonic() -> FakeMonotonic:
    return FakeMonotonic()


@pytest.fixture
def cache(
    local_store: LocalStore, logger: StructuredLogger, clock: FakeClock, tmp_path: Path,
) -> SessionCacheService:
    return SessionCacheService(
        store=local_store,
        logger=logger,
        expiry_ms=EXPIRY_MS,
        kdf_iterations=1_000,
        salt_path=tmp_path / "salt",
        clock=clock,
    )


@pytest.fixture
def provider() -> FakeIdentityProvider:
    return FakeIdentityProvider()


@pytest.fixture
def push_client() -> FakePushClient:
    return FakePushClient()


@pytest.fixture
def push(
    push_client: FakePushClient, local_store: LocalStore, logger: StructuredLogger,
) -> PushTokenService:
    return PushTokenService(client=push_client, store=local_store, logger=logger)


@pytest.fixture
def uploader() -> FakeUploader:
    return FakeUploader()


@pytest.fixture
def session_store(
    provider: FakeIdentityProvider,
    cache: SessionCacheService,
    push: PushTokenService,
    logger: StructuredLogger,
) -> Generator[SessionStore]:
    store = SessionStore(provider=provider, cache=cache, push=push, logger=logger)
    yield store
    store.refresher.cancel()


@pytest.fixture
def registration(
    session_store: SessionStore,
    provider: FakeIdentityProvider,
    uploader: FakeUploader,
    logger: StructuredLogger,
    monotonic: FakeMonotonic,
) -> Generator[RegistrationFlowController]:
    flow = RegistrationFlowController(
        store=session_store,
        provider=provider,
        photo_uploader=uploader,
        logger=logger,
        cooldown_s=30,
        clock=monotonic,
    )
    yield flow
    flow.teardown()


@pytest.fixture
def recovery(
    session_store: SessionStore, logger: StructuredLogger,
) -> PasswordRecoveryFlowController:
    return PasswordRecoveryFlowController(store=session_store, logger=logger)


@pytest.fixture
async def device_token(local_store: LocalStore) -> str:
    token = "device-token-abc"
    await local_store.set(PUSH_TOKEN_KEY, token)
    return token
