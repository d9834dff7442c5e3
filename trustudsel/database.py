"""
Local Persistent Store.

Async key/value store over a local SQLite file.  This is the only
persistence the session core has: the cached session snapshot, the
namespaced feature caches (profile, products, conversations, messages)
and ephemeral flags such as "just signed out" all live in the single
``kv_store`` table.

SQLite is blocking, so every call runs on a worker thread via
``asyncio.to_thread`` while holding the write lock; the event loop is
never blocked on disk I/O.  Every failure surfaces as ``CacheError`` so
callers can treat it as a miss.

Usage (dependency injection at app startup)::

    from trustudsel.database import LocalStore
    from trustudsel.logger import StructuredLogger

    store = LocalStore(
        sqlite_path=Path("trustudsel_local.db"),
        logger=StructuredLogger(name="local_store"),
    )
    await store.set("@flag", "1")
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
import threading
from pathlib import Path
from typing import Callable, Iterable, Optional, TypeVar

from trustudsel.errors import CacheError
from trustudsel.logger import StructuredLogger

R = TypeVar("R")

_SCHEMA: str = """
CREATE TABLE IF NOT EXISTS kv_store (
    key        TEXT PRIMARY KEY,
    value      TEXT NOT NULL,
    updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
)
"""


class LocalStore:
    """Namespaced string key/value store backed by SQLite.

    Parameters
    ----------
    sqlite_path:
        Filesystem path for the SQLite database file.  Parent
        directories are created when missing.
    logger:
        A ``StructuredLogger`` instance for structured JSON log output.
    """

    def __init__(self, sqlite_path: Path, logger: StructuredLogger) -> None:
        self._logger: StructuredLogger = logger
        self._write_lock: threading.RLock = threading.RLock()
        self._closed: bool = False
        self._sqlite_conn: sqlite3.Connection = self._connect_sqlite(sqlite_path)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def get(self, key: str) -> Optional[str]:
        """Return the value stored under *key*, or ``None``."""

        def op() -> Optional[str]:
            row = self._sqlite_conn.execute(
                "SELECT value FROM kv_store WHERE key = ?", (key,),
            ).fetchone()
            return None if row is None else str(row["value"])

        return await self._run("get", op)

    async def set(self, key: str, value: str) -> None:
        """Insert or replace *key*."""

        def op() -> None:
            self._sqlite_conn.execute(
                """
                INSERT INTO kv_store (key, value)
                VALUES (?, ?)
                ON CONFLICT(key) DO UPDATE SET
                    value = excluded.value,
                    updated_at = CURRENT_TIMESTAMP
                """,
                (key, value),
            )
            self._sqlite_conn.commit()

        await self._run("set", op)

    async def remove(self, key: str) -> None:
        """Delete *key*.  Missing keys are ignored."""

        def op() -> None:
            self._sqlite_conn.execute("DELETE FROM kv_store WHERE key = ?", (key,))
            self._sqlite_conn.commit()

        await self._run("remove", op)

    async def get_all_keys(self) -> list[str]:
        """Return every stored key."""

        def op() -> list[str]:
            rows = self._sqlite_conn.execute(
                "SELECT key FROM kv_store ORDER BY key",
            ).fetchall()
            return [str(row["key"]) for row in rows]

        return await self._run("get_all_keys", op)

    async def multi_remove(self, keys: Iterable[str]) -> None:
        """Delete all *keys* in a single transaction."""
        key_list = list(keys)
        if not key_list:
            return

        def op() -> None:
            try:
                self._sqlite_conn.executemany(
                    "DELETE FROM kv_store WHERE key = ?",
                    [(key,) for key in key_list],
                )
                self._sqlite_conn.commit()
            except sqlite3.Error:
                self._sqlite_conn.rollback()
                raise

        await self._run("multi_remove", op)

    def close(self) -> None:
        """Close the SQLite connection.

        Safe to call multiple times; subsequent calls are no-ops.
        """
        with self._write_lock:
            if self._closed:
                return
            self._closed = True
            try:
                self._sqlite_conn.close()
                self._logger.info("SQLite connection closed.")
            except sqlite3.ProgrammingError:
                pass

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    async def _run(self, operation: str, op: Callable[[], R]) -> R:
        """Execute *op* on a worker thread under the write lock."""

        def locked() -> R:
            with self._write_lock:
                if self._closed:
                    raise sqlite3.ProgrammingError("store is closed")
                return op()

        try:
            return await asyncio.to_thread(locked)
        except sqlite3.Error as exc:
            self._logger.event(
                "CACHE_ERROR", "Local store %s failed: %s", operation, exc,
                level=logging.WARNING, operation=operation,
            )
            raise CacheError(f"Local store {operation} failed: {exc}") from exc

    def _connect_sqlite(self, path: Path) -> sqlite3.Connection:
        """Open (or create) the SQLite database and ensure the schema.

        Raises
        ------
        PermissionError
            If the OS denies access to the database file or its directory.
        """
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            conn = sqlite3.connect(str(path), check_same_thread=False)
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA journal_mode=WAL;")
            conn.execute(_SCHEMA)
            conn.commit()
            self._logger.info("SQLite store opened at %s", path)
            return conn
        except PermissionError as exc:
            msg = (
                f"Cannot open the local store at '{path}'. "
                "The file or its directory may be read-only or locked by "
                "another process.  Please check file permissions and try again."
            )
            self._logger.error(msg)
            raise PermissionError(msg) from exc
