"""A bounded pool of SQLite connections for the payment database."""

from __future__ import annotations

import itertools
import queue
import sqlite3
import threading
from contextlib import contextmanager
from typing import Iterator

from kassi.errors import PoolError, QueryError
from kassi.schema import create_schema

_MEMORY_URLS = frozenset({"", ":memory:", "sqlite://", "sqlite:///:memory:"})
_memory_ids = itertools.count(1)


class Database:
    """Hands out pooled connections to one SQLite database."""

    acquire_timeout = 30.0

    def __init__(self, database_url: str, max_size: int = 10) -> None:
        if max_size < 1:
            raise ValueError("max_size must be at least 1")
        self.max_size = max_size
        self._target, self._uri = self._resolve(database_url)
        self._idle: queue.LifoQueue[sqlite3.Connection] = queue.LifoQueue()
        self._slots = threading.BoundedSemaphore(max_size)
        self._closed = False

    @staticmethod
    def _resolve(database_url: str) -> tuple[str, bool]:
        if database_url in _MEMORY_URLS:
            name = f"kassi-memory-{next(_memory_ids)}"
            return f"file:{name}?mode=memory&cache=shared", True
        if database_url.startswith("sqlite:///"):
            return database_url[len("sqlite:///"):], False
        if "://" in database_url:
            scheme = database_url.split("://", 1)[0]
            raise PoolError(f"unsupported database url scheme '{scheme}'")
        return database_url, False

    def _connect(self) -> sqlite3.Connection:
        try:
            conn = sqlite3.connect(
                self._target,
                uri=self._uri,
                isolation_level=None,
                check_same_thread=False,
            )
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA foreign_keys = ON")
            conn.execute("PRAGMA busy_timeout = 5000")
        except sqlite3.Error as exc:
            raise PoolError(exc) from exc
        return conn

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        """Borrow a connection for the duration of the block."""
        if self._closed:
            raise PoolError("pool is closed")
        if not self._slots.acquire(timeout=self.acquire_timeout):
            raise PoolError("timed out waiting for a connection")
        try:
            try:
                conn = self._idle.get_nowait()
            except queue.Empty:
                conn = self._connect()
        except BaseException:
            self._slots.release()
            raise
        try:
            yield conn
        finally:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            if self._closed:
                conn.close()
            else:
                self._idle.put(conn)
            self._slots.release()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Borrow a connection and run the block in one transaction."""
        with self.connection() as conn:
            try:
                conn.execute("BEGIN")
            except sqlite3.Error as exc:
                raise QueryError(exc) from exc
            try:
                yield conn
            except BaseException:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise
            try:
                conn.execute("COMMIT")
            except sqlite3.Error as exc:
                raise QueryError(exc) from exc

    def close(self) -> None:
        """Close idle connections and refuse further use."""
        self._closed = True
        while True:
            try:
                self._idle.get_nowait().close()
            except queue.Empty:
                break

    def __enter__(self) -> Database:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


def create_pool(database_url: str) -> Database:
    """Open a pool of up to ten connections and make sure the schema exists."""
    db = Database(database_url, max_size=10)
    try:
        with db.connection() as conn:
            create_schema(conn)
    except sqlite3.Error as exc:
        db.close()
        raise PoolError(exc) from exc
    return db