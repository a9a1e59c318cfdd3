"""PostgreSQL connection handles shared by the result store and credit ledger."""

import logging
import threading
from contextlib import contextmanager
from typing import Optional

from psycopg2 import pool

logger = logging.getLogger(__name__)


class Database:
    """Lazily-initialised connection pool for one DSN.

    Created at startup and closed on shutdown; each store receives its own
    handle so the credit store and the result store can live in different
    databases.
    """

    def __init__(self, dsn: str, *, name: str = "database", minconn: int = 1, maxconn: int = 10) -> None:
        self.dsn = dsn
        self.name = name
        self.minconn = minconn
        self.maxconn = maxconn
        self._pool: Optional[pool.ThreadedConnectionPool] = None
        self._lock = threading.Lock()

    def init_pool(self) -> pool.ThreadedConnectionPool:
        """Initialise and return the connection pool."""
        with self._lock:
            if self._pool is None:
                if not self.dsn:
                    raise RuntimeError(f"A DSN is required for the {self.name} connection pool")
                self._pool = pool.ThreadedConnectionPool(
                    self.minconn,
                    self.maxconn,
                    dsn=self.dsn,
                    connect_timeout=5,
                )
                logger.info("Connection pool initialised for %s", self.name)
            return self._pool

    @contextmanager
    def get_connection(self):
        """Context manager yielding a pooled connection."""
        pg_pool = self.init_pool()
        conn = pg_pool.getconn()
        try:
            yield conn
        finally:
            pg_pool.putconn(conn)

    def ping(self) -> bool:
        try:
            with self.get_connection() as conn:
                with conn.cursor() as cur:
                    cur.execute("SELECT 1")
                conn.rollback()
            return True
        except Exception as exc:  # noqa: BLE001
            logger.warning("Ping failed for %s: %s", self.name, exc)
            return False

    def close(self) -> None:
        with self._lock:
            if self._pool is not None:
                self._pool.closeall()
                self._pool = None
                logger.info("Connection pool closed for %s", self.name)
