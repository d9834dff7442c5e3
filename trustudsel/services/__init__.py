"""
Session Services Package.

Contains the session store, its cache and side-effect services, and the
registration / password-recovery flow controllers.

The ``create_services()`` factory wires every service together and
returns a typed dict that the UI layer can consume without knowing the
internal dependency graph.  Flow controllers are per-screen objects, so
the container holds factories for them rather than instances.
"""

from __future__ import annotations

from pathlib import Path
from typing import Callable, Optional, TypedDict

from supabase import AsyncClient

from trustudsel.config import AppConfig
from trustudsel.database import LocalStore
from trustudsel.identity.provider import IdentityProvider
from trustudsel.logger import get_logger
from trustudsel.services.background_refresher import BackgroundRefresher
from trustudsel.services.photo_upload import PhotoUploader, SupabasePhotoUploader
from trustudsel.services.push_tokens import (
    PushTokenClient,
    PushTokenService,
    SupabasePushTokenClient,
)
from trustudsel.services.recovery_flow import PasswordRecoveryFlowController
from trustudsel.services.registration_flow import RegistrationFlowController, StatusCallback
from trustudsel.services.session_cache import SessionCacheService
from trustudsel.services.session_store import SessionStore
from trustudsel.services.signout import SignOutCoordinator

RegistrationFactory = Callable[..., RegistrationFlowController]
RecoveryFactory = Callable[[], PasswordRecoveryFlowController]


class ServiceContainer(TypedDict):
    """Typed container for all session services."""

    # --- Core ---
    session_store: SessionStore
    session_cache: SessionCacheService
    push_token_service: PushTokenService

    # --- Flow controller factories ---
    registration_flow: RegistrationFactory
    recovery_flow: RecoveryFactory


def create_services(
    store: LocalStore,
    config: AppConfig,
    provider: IdentityProvider,
    client: Optional[AsyncClient] = None,
    push_client: Optional[PushTokenClient] = None,
    photo_uploader: Optional[PhotoUploader] = None,
) -> ServiceContainer:
    """
    Wire the session services together.

    This is the single composition root for the service layer.  The
    entry point calls it once at startup.

    Args:
        store: Initialised local persistent store.
        config: Application configuration.
        provider: Identity provider (Supabase-backed in production).
        client: Async Supabase client used for the default push-token
            registry and photo uploader; ``None`` in offline mode.
        push_client: Overrides the push-token registry.
        photo_uploader: Overrides the profile photo uploader.

    Returns:
        ServiceContainer mapping service names to fully-wired instances.
    """
    logger = get_logger("services")

    # ------------------------------------------------------------------
    # 1. Cache and side-effect services
    # ------------------------------------------------------------------
    session_cache = SessionCacheService(
        store=store,
        logger=get_logger("session_cache"),
        expiry_ms=config.session_cache_expiry_ms,
        kdf_iterations=config.SESSION_KDF_ITERATIONS,
        salt_path=Path(config.SESSION_SALT_PATH),
    )
    if push_client is None and client is not None:
        push_client = SupabasePushTokenClient(client, table=config.PUSH_TOKEN_TABLE)
    push_token_service = PushTokenService(
        client=push_client,
        store=store,
        logger=logger,
    )
    if photo_uploader is None and client is not None:
        photo_uploader = SupabasePhotoUploader(client, bucket=config.PROFILE_PHOTO_BUCKET)

    # ------------------------------------------------------------------
    # 2. Session store
    # ------------------------------------------------------------------
    session_store = SessionStore(
        provider=provider,
        cache=session_cache,
        push=push_token_service,
        logger=get_logger("session"),
        refresher=BackgroundRefresher(provider=provider, logger=logger),
        sign_out_coordinator=SignOutCoordinator(
            provider=provider,
            cache=session_cache,
            push=push_token_service,
            logger=logger,
        ),
    )

    # ------------------------------------------------------------------
    # 3. Flow controller factories (one controller per screen visit)
    # ------------------------------------------------------------------
    def registration_flow(
        on_status: Optional[StatusCallback] = None,
        on_tick: Optional[Callable[[int], None]] = None,
    ) -> RegistrationFlowController:
        return RegistrationFlowController(
            store=session_store,
            provider=provider,
            photo_uploader=photo_uploader,
            logger=get_logger("registration"),
            cooldown_s=config.RESEND_COOLDOWN_S,
            on_status=on_status,
            on_tick=on_tick,
        )

    def recovery_flow() -> PasswordRecoveryFlowController:
        return PasswordRecoveryFlowController(
            store=session_store,
            logger=get_logger("recovery"),
        )

    return ServiceContainer(
        session_store=session_store,
        session_cache=session_cache,
        push_token_service=push_token_service,
        registration_flow=registration_flow,
        recovery_flow=recovery_flow,
    )
