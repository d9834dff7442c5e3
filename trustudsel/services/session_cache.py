"""
Encrypted Session Cache Service.

Layers the session snapshot and the user-scoped feature caches over the
``LocalStore``.  Every entry is a ``CacheEntry`` (the data plus the
epoch-ms time it was written), so readers can classify its age against
the two thresholds:

- ``expiry`` (default 24 h): older entries must not be served without a
  blocking revalidation.
- ``staleness = expiry / 3``: older entries are still served but trigger
  one background revalidation.

Security model
--------------
- The session snapshot is encrypted with AES-256-GCM (confidentiality and
  integrity).  The key is derived at runtime from machine identity
  (hostname + OS username) via PBKDF2-HMAC-SHA256 with a per-install
  random salt file.  The key is **never** persisted.
- Feature caches hold non-secret listing data and are stored as plain
  JSON.
- Explicit sign-out deletes every user-scoped key.

Storage layout (``kv_store`` keys)::

    @session_snapshot          encrypted CacheEntry[UserSession]
    user_profile_cache_<id>    CacheEntry[json]
    user_products_cache_<id>   CacheEntry[json]
    conversations_cache_<id>   CacheEntry[json]
    messages_cache_<id>        CacheEntry[json]
    @just_signed_out           ephemeral flag
"""

from __future__ import annotations

import asyncio
import base64
import getpass
import json
import os
import platform
import socket
import stat
from pathlib import Path
from typing import Any, Optional

from Crypto.Cipher import AES
from Crypto.Hash import SHA256
from Crypto.Protocol.KDF import PBKDF2
from pydantic import ValidationError as PydanticValidationError

from trustudsel.database import LocalStore
from trustudsel.errors import CacheError
from trustudsel.logger import StructuredLogger
from trustudsel.models.enums import CacheAge, CacheNamespace
from trustudsel.models.session_models import CacheEntry, UserSession
from trustudsel.utils.clock import Clock, now_ms
from trustudsel.utils.general import convert_to_json_safe

SESSION_SNAPSHOT_KEY: str = "@session_snapshot"
JUST_SIGNED_OUT_KEY: str = "@just_signed_out"
PUSH_TOKEN_KEY: str = "@push_token"

USER_SCOPED_PREFIXES: tuple[str, ...] = tuple(ns.value for ns in CacheNamespace)


class SessionCacheService:
    """Cache-aside storage for the session snapshot and feature caches.

    Parameters
    ----------
    store:
        The local persistent key/value store.
    logger:
        A ``StructuredLogger`` instance for structured JSON log output.
    expiry_ms:
        Age beyond which an entry is ``EXPIRED``.
    kdf_iterations:
        PBKDF2 iteration count for the snapshot key.
    salt_path:
        Location of the per-install random salt file.
    clock:
        Epoch-ms clock; injectable for tests.
    """

    _KEY_LENGTH: int = 32  # 256 bits

    def __init__(
        self,
        store: LocalStore,
        logger: StructuredLogger,
        expiry_ms: int = 86_400_000,
        kdf_iterations: int = 600_000,
        salt_path: Optional[Path] = None,
        clock: Clock = now_ms,
    ) -> None:
        self._store: LocalStore = store
        self._logger: StructuredLogger = logger
        self._expiry_ms: int = expiry_ms
        self._kdf_iterations: int = kdf_iterations
        self._salt_path: Path = salt_path or Path.home() / ".trustudsel_session_salt"
        self._clock: Clock = clock
        self._key: Optional[bytes] = None

    # ------------------------------------------------------------------
    # Thresholds
    # ------------------------------------------------------------------

    @property
    def expiry_ms(self) -> int:
        return self._expiry_ms

    @property
    def staleness_ms(self) -> int:
        return self._expiry_ms // 3

    def now(self) -> int:
        """Current time according to the injected clock."""
        return self._clock()

    def classify(self, entry: CacheEntry[Any], now: Optional[int] = None) -> CacheAge:
        """Return the freshness tier of *entry* at *now*."""
        age = (self._clock() if now is None else now) - entry.timestamp
        if age > self._expiry_ms:
            return CacheAge.EXPIRED
        if age > self.staleness_ms:
            return CacheAge.STALE
        return CacheAge.FRESH

    # ------------------------------------------------------------------
    # Session snapshot
    # ------------------------------------------------------------------

    async def save_snapshot(self, user: UserSession) -> bool:
        """Encrypt and persist *user* with the current timestamp.

        Returns
        -------
        bool
            ``False`` if encryption or the store write failed.  The error
            is logged but not raised, since caching is non-critical.
        """
        entry = CacheEntry[UserSession](data=user, timestamp=self._clock())
        plaintext = entry.model_dump_json().encode("utf-8")
        try:
            key = await self._get_key()
            cipher = AES.new(key, AES.MODE_GCM)
            ciphertext, tag = cipher.encrypt_and_digest(plaintext)
            blob = json.dumps({
                "nonce": base64.b64encode(cipher.nonce).decode("ascii"),
                "tag": base64.b64encode(tag).decode("ascii"),
                "ciphertext": base64.b64encode(ciphertext).decode("ascii"),
            })
        except (OSError, ValueError) as exc:
            self._logger.warning("Failed to encrypt session snapshot: %s", exc)
            return False

        try:
            await self._store.set(SESSION_SNAPSHOT_KEY, blob)
        except CacheError:
            return False
        self._logger.debug("Session snapshot cached for %s.", user.username)
        return True

    async def load_snapshot(self) -> Optional[CacheEntry[UserSession]]:
        """Load and decrypt the cached session snapshot.

        Returns
        -------
        CacheEntry[UserSession] or None
            The entry regardless of its age (callers classify it).
            ``None`` is returned when:

            - No snapshot exists or the store failed.
            - Decryption fails (corrupted data or machine identity changed).
            - The payload is malformed or timestamped in the future.
        """
        try:
            raw = await self._store.get(SESSION_SNAPSHOT_KEY)
        except CacheError:
            return None
        if raw is None:
            self._logger.debug("No cached session snapshot found.")
            return None

        try:
            envelope: dict[str, str] = json.loads(raw)
            key = await self._get_key()
            cipher = AES.new(
                key, AES.MODE_GCM, nonce=base64.b64decode(envelope["nonce"]),
            )
            plaintext = cipher.decrypt_and_verify(
                base64.b64decode(envelope["ciphertext"]),
                base64.b64decode(envelope["tag"]),
            )
        except (ValueError, KeyError, TypeError, OSError) as exc:
            self._logger.warning(
                "Decryption of session snapshot failed (corrupted data or "
                "machine identity changed): %s",
                exc,
            )
            return None

        try:
            entry = CacheEntry[UserSession].model_validate_json(plaintext)
        except PydanticValidationError as exc:
            self._logger.warning("Cached session payload is malformed: %s", exc)
            return None

        if entry.timestamp > self._clock():
            self._logger.warning(
                "Cached session snapshot is timestamped in the future; ignoring.",
            )
            return None
        return entry

    async def clear_snapshot(self) -> None:
        """Delete the snapshot.  Store failures are logged only."""
        try:
            await self._store.remove(SESSION_SNAPSHOT_KEY)
        except CacheError:
            self._logger.error("Failed to clear cached session snapshot.")

    # ------------------------------------------------------------------
    # Feature caches
    # ------------------------------------------------------------------

    @staticmethod
    def feature_key(namespace: CacheNamespace, user_id: str) -> str:
        return f"{namespace.value}{user_id}"

    async def write_feature(
        self, namespace: CacheNamespace, user_id: str, data: object,
    ) -> bool:
        """Persist *data* under ``namespace + user_id`` with a timestamp."""
        payload = json.dumps({
            "data": convert_to_json_safe(data),
            "timestamp": self._clock(),
        }, ensure_ascii=False)
        try:
            await self._store.set(self.feature_key(namespace, user_id), payload)
        except CacheError:
            return False
        return True

    async def read_feature(
        self,
        namespace: CacheNamespace,
        user_id: str,
        max_age_ms: Optional[int] = None,
    ) -> Optional[CacheEntry[Any]]:
        """Return the feature entry, or ``None`` on a miss.

        Entries older than *max_age_ms* (default: the snapshot expiry)
        count as misses.
        """
        try:
            raw = await self._store.get(self.feature_key(namespace, user_id))
        except CacheError:
            return None
        if raw is None:
            return None
        try:
            entry = CacheEntry[Any].model_validate_json(raw)
        except PydanticValidationError as exc:
            self._logger.warning(
                "Feature cache %s is malformed: %s", namespace.value, exc,
            )
            return None
        now = self._clock()
        limit = self._expiry_ms if max_age_ms is None else max_age_ms
        if entry.timestamp > now or now - entry.timestamp > limit:
            return None
        return entry

    async def purge_user_scoped(self) -> list[str]:
        """Remove the snapshot and every key under a user-scoped namespace.

        Returns
        -------
        list[str]
            The removed keys (empty when the store failed).
        """
        try:
            keys = await self._store.get_all_keys()
            doomed = [
                key for key in keys
                if key == SESSION_SNAPSHOT_KEY or key.startswith(USER_SCOPED_PREFIXES)
            ]
            await self._store.multi_remove(doomed)
        except CacheError:
            self._logger.error("Failed to purge user-scoped caches.")
            return []
        self._logger.info("Purged %d user-scoped cache keys.", len(doomed))
        return doomed

    # ------------------------------------------------------------------
    # Flags
    # ------------------------------------------------------------------

    async def set_flag(self, key: str) -> None:
        try:
            await self._store.set(key, "1")
        except CacheError:
            self._logger.warning("Could not set flag %s.", key)

    async def pop_flag(self, key: str) -> bool:
        """Return whether *key* was set, clearing it."""
        try:
            value = await self._store.get(key)
            if value is None:
                return False
            await self._store.remove(key)
        except CacheError:
            return False
        return True

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    async def _get_key(self) -> bytes:
        """Return the snapshot key, deriving it once per process."""
        if self._key is None:
            self._key = await asyncio.to_thread(self._derive_key)
        return self._key

    def _derive_key(self) -> bytes:
        """Derive a 256-bit AES key from machine identity via PBKDF2-HMAC-SHA256.

        The key is deterministic for a given (hostname, OS username, salt)
        triple.  If the machine identity changes, previously cached
        snapshots become undecryptable and are treated as corrupted.

        Raises
        ------
        OSError
            If the per-install salt file cannot be created or read.
        """
        password: str = f"{socket.gethostname()}:{getpass.getuser()}"
        salt: bytes = self._get_or_create_salt()
        return PBKDF2(
            password=password,
            salt=salt,
            dkLen=self._KEY_LENGTH,
            count=self._kdf_iterations,
            hmac_hash_module=SHA256,
        )

    def _get_or_create_salt(self) -> bytes:
        """Return the per-install random salt, creating it on first run.

        Raises
        ------
        OSError
            If the salt file cannot be read or written.
        """
        if self._salt_path.exists():
            data: bytes = self._salt_path.read_bytes()
            if len(data) == 32:
                return data
            self._logger.warning(
                "Salt file has unexpected length (%d); regenerating.",
                len(data),
            )
        salt: bytes = os.urandom(32)
        self._salt_path.parent.mkdir(parents=True, exist_ok=True)
        self._salt_path.write_bytes(salt)

        if platform.system() != "Windows":
            self._salt_path.chmod(stat.S_IRUSR | stat.S_IWUSR)  # 0o600

        self._logger.info("Per-install session salt created at %s.", self._salt_path)
        return salt
