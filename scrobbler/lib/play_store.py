"""
Persistent play log used for duplicate suppression.

One SQLite table, append-only.  The window check and the insert happen in
one ``BEGIN IMMEDIATE`` transaction, so two device loops (or two processes)
recording the same track cannot both win.  All SQLite work runs on a single
worker thread; callers just await.
"""

import asyncio
import logging
import sqlite3
import threading
from concurrent.futures import ThreadPoolExecutor

from scrobbler.lib.models import PlayRecord

logger = logging.getLogger(__name__)

DEFAULT_DATABASE = "tracks.db"

_SCHEMA = """
CREATE TABLE IF NOT EXISTS tracks (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    device_name TEXT NOT NULL,
    track_info TEXT NOT NULL,
    played_at INTEGER NOT NULL,
    UNIQUE(device_name, track_info, played_at)
);
CREATE INDEX IF NOT EXISTS idx_tracks_device_played
    ON tracks (device_name, track_info, played_at);
"""


class PlayStoreError(Exception):
    """Read or write against the play log failed."""


class PlayStore:
    """Async facade over the SQLite play log.

    Example:
        store = PlayStore("tracks.db")
        await store.open()
        if await store.record_if_new("Kitchen", "Low - Words", now, 3600):
            ...
        await store.close()
    """

    def __init__(self, path: str = DEFAULT_DATABASE, *, busy_timeout: float = 5.0):
        self.path = path
        self.busy_timeout = busy_timeout
        self._conn: sqlite3.Connection | None = None
        self._lock = threading.Lock()
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="play-store")

    async def _run(self, func, *args):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, self._call, func, *args)

    def _call(self, func, *args):
        with self._lock:
            if self._conn is None:
                raise PlayStoreError("Play store is not open")
            try:
                return func(self._conn, *args)
            except sqlite3.Error as e:
                raise PlayStoreError(f"{func.__name__.lstrip('_')}: {e}") from e

    # ── Lifecycle ──

    def _open(self) -> None:
        with self._lock:
            if self._conn is not None:
                return
            try:
                # isolation_level=None: we issue BEGIN/COMMIT ourselves
                conn = sqlite3.connect(self.path, timeout=self.busy_timeout,
                                       isolation_level=None, check_same_thread=False)
                conn.executescript(_SCHEMA)
            except sqlite3.Error as e:
                raise PlayStoreError(f"Cannot open play log {self.path}: {e}") from e
            self._conn = conn
        logger.info("Play log ready at %s", self.path)

    async def open(self) -> None:
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(self._executor, self._open)

    def _close(self) -> None:
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None

    async def close(self) -> None:
        if self._conn is not None:
            loop = asyncio.get_running_loop()
            await loop.run_in_executor(self._executor, self._close)
        self._executor.shutdown(wait=False)

    # ── Queries ──

    @staticmethod
    def _played_within(conn, device_name: str, track_key: str, since: int) -> bool:
        row = conn.execute(
            "SELECT 1 FROM tracks "
            "WHERE device_name = ? AND track_info = ? AND played_at > ? LIMIT 1",
            (device_name, track_key, since),
        ).fetchone()
        return row is not None

    @staticmethod
    def _record_if_new(conn, device_name: str, track_key: str,
                       played_at: int, window: int) -> bool:
        conn.execute("BEGIN IMMEDIATE")
        try:
            if PlayStore._played_within(conn, device_name, track_key, played_at - window):
                conn.execute("COMMIT")
                return False
            conn.execute(
                "INSERT INTO tracks (device_name, track_info, played_at) VALUES (?, ?, ?)",
                (device_name, track_key, played_at),
            )
            conn.execute("COMMIT")
            return True
        except BaseException:
            conn.execute("ROLLBACK")
            raise

    @staticmethod
    def _last_play(conn, device_name: str) -> PlayRecord | None:
        row = conn.execute(
            "SELECT device_name, track_info, played_at FROM tracks "
            "WHERE device_name = ? ORDER BY played_at DESC, id DESC LIMIT 1",
            (device_name,),
        ).fetchone()
        return PlayRecord(*row) if row else None

    @staticmethod
    def _recent_plays(conn, device_name: str, limit: int) -> list[PlayRecord]:
        rows = conn.execute(
            "SELECT device_name, track_info, played_at FROM tracks "
            "WHERE device_name = ? ORDER BY played_at DESC, id DESC LIMIT ?",
            (device_name, limit),
        ).fetchall()
        return [PlayRecord(*row) for row in rows]

    async def record_if_new(self, device_name: str, track_key: str,
                            played_at: int, window: int) -> bool:
        """Insert a play unless the same track was logged within *window* seconds.

        Returns True if the play was recorded, False if it was suppressed.
        """
        return await self._run(self._record_if_new, device_name, track_key,
                               int(played_at), int(window))

    async def played_within(self, device_name: str, track_key: str, since: int) -> bool:
        return await self._run(self._played_within, device_name, track_key, int(since))

    async def last_play(self, device_name: str) -> PlayRecord | None:
        """Most recent play logged for *device_name*."""
        return await self._run(self._last_play, device_name)

    async def recent_plays(self, device_name: str, limit: int = 10) -> list[PlayRecord]:
        return await self._run(self._recent_plays, device_name, limit)
