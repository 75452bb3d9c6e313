"""SQLite connection layer with sqlite-vec, plus an asyncio connection pool."""

from __future__ import annotations

import asyncio
import logging
import sqlite3
from pathlib import Path
from typing import Callable, TypeVar

import sqlite_vec

from threadline.db.migrations import initialize

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Database:
    """SQLite database file with sqlite-vec vector functions loaded."""

    def __init__(self, db_path: Path | str) -> None:
        """Store the database path. Call connect() to open a connection.

        Args:
            db_path: Path to the SQLite database file (created if missing).
        """
        self.db_path = Path(db_path)
        self._conn: sqlite3.Connection | None = None

    def connect(self, *, check_same_thread: bool = True) -> sqlite3.Connection:
        """Open a connection, load sqlite-vec, and return the connection.

        Pass ``check_same_thread=False`` for connections handed to worker
        threads by ConnectionPool; the pool guarantees one user at a time.
        """
        conn = sqlite3.connect(self.db_path, check_same_thread=check_same_thread)
        conn.row_factory = sqlite3.Row
        conn.enable_load_extension(True)
        sqlite_vec.load(conn)
        conn.enable_load_extension(False)
        conn.execute("PRAGMA foreign_keys = ON")
        conn.execute("PRAGMA journal_mode = WAL")
        conn.execute("PRAGMA busy_timeout = 5000")
        return conn

    def __enter__(self) -> sqlite3.Connection:
        """Open the database and return the connection (context manager support)."""
        self._conn = self.connect()
        return self._conn

    def __exit__(self, *args: object) -> None:
        """Close the connection when leaving the context manager."""
        if self._conn:
            self._conn.close()
            self._conn = None


class ConnectionPool:
    """Fixed-size pool of sqlite connections shared by all async components.

    ``run(fn, *args)`` borrows a connection, executes ``fn(conn, *args)`` in
    a worker thread and returns its result. The event loop never blocks on
    sqlite. A connection goes back to the pool only after its worker thread
    has finished with it, including when the awaiting task is cancelled.
    """

    def __init__(self, database: Database, size: int = 4) -> None:
        if size < 1:
            raise ValueError("pool size must be >= 1")
        self._database = database
        self._size = size
        self._idle: asyncio.Queue[sqlite3.Connection] | None = None
        self._all: list[sqlite3.Connection] = []

    @property
    def size(self) -> int:
        return self._size

    async def open(self) -> ConnectionPool:
        """Open every connection and make sure the schema is current."""
        if self._idle is not None:
            return self
        idle: asyncio.Queue[sqlite3.Connection] = asyncio.Queue()
        for i in range(self._size):
            conn = await asyncio.to_thread(self._database.connect, check_same_thread=False)
            if i == 0:
                await asyncio.to_thread(initialize, conn)
            self._all.append(conn)
            idle.put_nowait(conn)
        self._idle = idle
        logger.debug("Opened %d connections to %s", self._size, self._database.db_path)
        return self

    async def close(self) -> None:
        """Close every connection. Outstanding run() calls must have finished."""
        for conn in self._all:
            conn.close()
        self._all.clear()
        self._idle = None

    async def __aenter__(self) -> ConnectionPool:
        return await self.open()

    async def __aexit__(self, *args: object) -> None:
        await self.close()

    async def run(self, fn: Callable[..., T], *args: object) -> T:
        """Run ``fn(conn, *args)`` on a pooled connection in a worker thread."""
        if self._idle is None:
            raise RuntimeError("ConnectionPool is not open; call open() first")
        idle = self._idle
        conn = await idle.get()
        task = asyncio.ensure_future(asyncio.to_thread(fn, conn, *args))
        handed_off = False
        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            if not task.done():
                # The worker thread still owns the connection.
                handed_off = True
                task.add_done_callback(lambda t: _release_after(t, idle, conn))
            raise
        finally:
            if not handed_off:
                idle.put_nowait(conn)


def _release_after(
    task: asyncio.Future, idle: asyncio.Queue[sqlite3.Connection], conn: sqlite3.Connection
) -> None:
    if not task.cancelled() and task.exception() is not None:
        logger.warning("Database call finished after cancellation with error: %s", task.exception())
    idle.put_nowait(conn)
