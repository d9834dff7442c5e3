"""
Application Configuration.

Pydantic Settings model for the TruStudSel session core.
All configuration is loaded from environment variables and .env files.
Inject an AppConfig instance via dependency injection where needed.
"""

from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Optional

from pydantic_settings import BaseSettings
from pydantic import SecretStr, model_validator


class AppConfig(BaseSettings):
    """Central configuration loaded from environment variables and defaults."""

    # --- Supabase (identity provider) ---
    SUPABASE_URL: str = ""
    SUPABASE_ANON_KEY: SecretStr = SecretStr("")

    # --- Local persistent store ---
    LOCAL_STORE_PATH: str = "trustudsel_local.db"

    # --- Session cache ---
    SESSION_CACHE_EXPIRY_S: int = 86_400  # 24 h; staleness is a third of this
    SESSION_KDF_ITERATIONS: int = 600_000
    SESSION_SALT_PATH: str = str(Path.home() / ".trustudsel_session_salt")

    # --- Registration flow ---
    RESEND_COOLDOWN_S: int = 30

    # --- Side systems ---
    PROFILE_PHOTO_BUCKET: str = "profile-photos"
    PUSH_TOKEN_TABLE: str = "device_tokens"

    # --- Logging ---
    LOG_FILE: str = "trustudsel.log"
    LOG_MAX_BYTES: int = 5_242_880  # 5 MB
    LOG_BACKUP_COUNT: int = 3

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "extra": "ignore"}

    @model_validator(mode="after")
    def _warn_missing_env(self) -> "AppConfig":
        """Emit a startup warning when critical configuration is empty.

        Pydantic silently falls back to defaults when ``.env`` is missing.
        This validator logs a warning so operators know the app is running
        with placeholder values.
        """
        _log = logging.getLogger("trustudsel.config")

        if not Path(".env").exists():
            _log.warning(
                "No .env file found — all configuration loaded from "
                "environment variables or defaults."
            )

        if not self.SUPABASE_URL:
            _log.warning(
                "SUPABASE_URL is empty — identity provider is disabled. "
                "Only cached sessions can be restored."
            )

        return self

    @property
    def session_cache_expiry_ms(self) -> int:
        """Expiry threshold for the cached session snapshot, in milliseconds."""
        return self.SESSION_CACHE_EXPIRY_S * 1000


# ---------------------------------------------------------------------------
# Module-level cached factory
# ---------------------------------------------------------------------------

_config_instance: Optional[AppConfig] = None
_config_lock: threading.Lock = threading.Lock()


def get_config() -> AppConfig:
    """Return a cached ``AppConfig`` instance.

    On first call, creates an ``AppConfig`` instance (reading from ``.env``).
    Subsequent calls return the same instance.  Uses a check-lock-check
    pattern so first initialisation stays safe if a worker thread races
    the event loop.

    Prefer direct constructor injection of ``AppConfig`` in new code;
    this factory exists for modules such as the logger that cannot take
    the config as an argument.
    """
    global _config_instance
    if _config_instance is None:
        with _config_lock:
            if _config_instance is None:
                _config_instance = AppConfig()
    return _config_instance
