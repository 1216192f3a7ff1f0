"""SQLite connection layer with sqlite-vec extension and a small connection pool."""

from __future__ import annotations

import logging
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import TYPE_CHECKING, Iterator

import sqlite_vec

from memsearch.errors import OperationCancelled

if TYPE_CHECKING:
    from memsearch.search.context import OperationContext

logger = logging.getLogger(__name__)

# Progress handler granularity, in SQLite VM instructions.
_PROGRESS_STEPS = 1000


class Database:
    """Per-deployment SQLite database with sqlite-vec vector search support."""

    def __init__(self, db_path: Path | str) -> None:
        """Store the database path. Call connect() to open a connection.

        Args:
            db_path: Path to the SQLite database file (created if missing).
        """
        self.db_path = Path(db_path)
        self.vec_error: str | None = None
        self._conn: sqlite3.Connection | None = None

    def connect(self) -> sqlite3.Connection:
        """Open a connection, load sqlite-vec, and return the connection.

        A failure to load the extension is recorded in ``vec_error`` and the
        connection is still returned; vector search then degrades to the
        in-process cosine scan.
        """
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(self.db_path, timeout=30.0, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        try:
            conn.enable_load_extension(True)
            sqlite_vec.load(conn)
            conn.enable_load_extension(False)
        except (AttributeError, sqlite3.OperationalError) as exc:
            self.vec_error = f"sqlite-vec unavailable: {exc}"
            logger.debug("sqlite-vec load failed for %s: %s", self.db_path, exc)
        conn.execute("PRAGMA foreign_keys = ON")
        conn.execute("PRAGMA journal_mode = WAL")
        conn.execute("PRAGMA busy_timeout = 30000")
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
    """Hands out sqlite3 connections to concurrent callers.

    Connections are created on demand and at most ``size`` idle connections are
    kept. Every acquired connection is returned (or closed) on every exit path.
    """

    def __init__(self, database: Database, size: int = 4) -> None:
        self.database = database
        self.size = max(1, size)
        self._idle: list[sqlite3.Connection] = []
        self._lock = threading.Lock()
        self._closed = False

    @property
    def vec_error(self) -> str | None:
        return self.database.vec_error

    @contextmanager
    def acquire(self, ctx: OperationContext | None = None) -> Iterator[sqlite3.Connection]:
        """Yield a pooled connection bound to *ctx*.

        While the connection is held, a progress handler interrupts any running
        statement once *ctx* is cancelled or past its deadline; the resulting
        ``sqlite3.OperationalError`` surfaces as OperationCancelled.

        Raises:
            OperationCancelled: If *ctx* is already done or finishes mid-query.
        """
        if ctx is not None:
            ctx.check()
        conn = self._take()
        if ctx is not None:
            conn.set_progress_handler(lambda: 1 if ctx.done() else 0, _PROGRESS_STEPS)
        try:
            yield conn
        except sqlite3.OperationalError as exc:
            if ctx is not None and ctx.done():
                raise OperationCancelled(ctx.reason()) from exc
            raise
        finally:
            if ctx is not None:
                conn.set_progress_handler(None, 0)
            self._give_back(conn)

    def _take(self) -> sqlite3.Connection:
        with self._lock:
            if self._closed:
                raise RuntimeError("connection pool is closed")
            if self._idle:
                return self._idle.pop()
        return self.database.connect()

    def _give_back(self, conn: sqlite3.Connection) -> None:
        if conn.in_transaction:
            conn.rollback()
        with self._lock:
            if not self._closed and len(self._idle) < self.size:
                self._idle.append(conn)
                return
        conn.close()

    def close(self) -> None:
        """Close every idle connection; held connections close on release."""
        with self._lock:
            self._closed = True
            idle, self._idle = self._idle, []
        for conn in idle:
            conn.close()
