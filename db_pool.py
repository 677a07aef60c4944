"""Pooled SQLite connections shared by the persistence helpers in ``db``."""
import logging
import sqlite3
import threading
from contextlib import contextmanager
from queue import Empty, Queue
from typing import Generator

logger = logging.getLogger(__name__)


class SQLiteConnectionPool:
    """Thread-safe pool handing out at most ``max_connections`` SQLite handles.

    Connections are opened lazily with ``check_same_thread`` disabled because
    FastAPI runs synchronous endpoints on a worker thread pool; every handle is
    used by a single caller at a time, which the queue guarantees.
    """

    def __init__(self, database: str, max_connections: int = 5, busy_timeout_ms: int = 5000):
        self.database = database
        self.max_connections = max_connections
        self.busy_timeout_ms = busy_timeout_ms
        self._pool: Queue[sqlite3.Connection] = Queue(maxsize=max_connections)
        self._lock = threading.Lock()
        self._created_connections = 0

    def _open(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.database, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        conn.execute(f"PRAGMA busy_timeout = {int(self.busy_timeout_ms)}")
        return conn

    def _acquire(self) -> sqlite3.Connection:
        try:
            return self._pool.get(block=False)
        except Empty:
            pass
        with self._lock:
            if self._created_connections < self.max_connections:
                self._created_connections += 1
                logger.debug(
                    "Opening SQLite connection %s/%s for %s",
                    self._created_connections,
                    self.max_connections,
                    self.database,
                )
                return self._open()
        # Pool exhausted: block until another caller releases a handle.
        return self._pool.get(block=True)

    def _discard(self, connection: sqlite3.Connection) -> None:
        try:
            connection.close()
        except sqlite3.Error:
            logger.debug("Ignoring error while closing a broken connection", exc_info=True)
        with self._lock:
            self._created_connections -= 1

    @contextmanager
    def get_connection(self) -> Generator[sqlite3.Connection, None, None]:
        """Yield a pooled connection; uncommitted work is rolled back on release."""
        connection = self._acquire()
        try:
            yield connection
        finally:
            try:
                connection.rollback()
                self._pool.put(connection)
            except sqlite3.Error as exc:
                logger.error("Dropping SQLite connection that failed to reset: %s", exc)
                self._discard(connection)

    def close_all(self) -> None:
        """Close every idle connection; used when the database path changes."""
        while True:
            try:
                connection = self._pool.get(block=False)
            except Empty:
                break
            self._discard(connection)
