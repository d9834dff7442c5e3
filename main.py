"""
TruStudSel Session Core Entry Point.

Bootstraps the dependency graph via constructor injection, restores the
previous session (cache-aside) and logs the resulting state.  Every
subsystem is wired here; there are no module-level globals.

Usage::

    python main.py
"""

from __future__ import annotations

import asyncio
import atexit
import sys
from pathlib import Path

from trustudsel.config import get_config
from trustudsel.database import LocalStore
from trustudsel.identity.supabase_provider import SupabaseIdentityProvider
from trustudsel.logger import StructuredLogger, get_logger
from trustudsel.models.session_models import SessionState
from trustudsel.services import create_services


async def main() -> SessionState:
    """Wire dependencies and restore the session."""
    logger: StructuredLogger = get_logger("main")
    logger.info("Starting TruStudSel session core...")

    # ------------------------------------------------------------------
    # 1. Configuration (from .env / environment variables)
    # ------------------------------------------------------------------
    config = get_config()

    # ------------------------------------------------------------------
    # 2. Local persistent store (SQLite, always available)
    # ------------------------------------------------------------------
    store = LocalStore(
        sqlite_path=Path(config.LOCAL_STORE_PATH),
        logger=StructuredLogger(name="database"),
    )

    # LocalStore.close() is idempotent; this covers unclean exits.
    atexit.register(store.close)

    # ------------------------------------------------------------------
    # 3. Identity provider (offline when Supabase is not configured)
    # ------------------------------------------------------------------
    provider = await SupabaseIdentityProvider.connect(
        config, StructuredLogger(name="identity"),
    )

    # ------------------------------------------------------------------
    # 4. Service container (single composition root)
    # ------------------------------------------------------------------
    services = create_services(
        store=store,
        config=config,
        provider=provider,
        client=provider.raw_client,
    )
    session_store = services["session_store"]

    # ------------------------------------------------------------------
    # 5. Cache-aside session restore
    # ------------------------------------------------------------------
    try:
        state = await session_store.restore_session()
        logger.event(
            "STARTUP_STATE",
            "Session restored: authenticated=%s",
            state.is_authenticated,
            username=state.user.username if state.user else None,
        )
        # Let a stale-cache revalidation finish before shutting down.
        await session_store.refresher.join()
        return session_store.state
    finally:
        await session_store.aclose()
        store.close()
        logger.info("TruStudSel session core shut down.")


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass
    except Exception as exc:
        sys.stderr.write(f"FATAL: {type(exc).__name__}: {exc}\n")
        sys.exit(1)
