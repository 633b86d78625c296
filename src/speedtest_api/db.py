import logging
import os
import threading
from typing import Any, Dict, List, Optional, Sequence

import psycopg2.extras
from dotenv import load_dotenv
from psycopg2.pool import ThreadedConnectionPool

log = logging.getLogger(__name__)


# PUBLIC_INTERFACE
def load_env_file(path: Optional[str] = None) -> bool:
    """
    Load KEY=VALUE pairs from a .env file into the process environment.

    Defaults to ENV_FILE, then ./.env. Variables already set in the real
    environment win. Returns False when the file is missing or empty.
    """
    path = path or os.getenv("ENV_FILE", ".env")
    loaded = load_dotenv(path)
    if loaded:
        log.info("Loaded environment from %s", path)
    return loaded


def _required_env(name: str) -> str:
    value = os.getenv(name)
    if not value:
        raise RuntimeError(
            f"Missing required environment variable '{name}'. "
            "Set it in the service environment or .env file."
        )
    return value


# PUBLIC_INTERFACE
def build_dsn() -> str:
    """
    Build DSN from the database env vars.

    Uses:
      - DB_URL (optional full DSN; if provided, it wins)
      - DB_USER, DB_PASSWORD, DB_NAME (required)
      - DB_HOST, DB_PORT (optional)
    """
    url = os.getenv("DB_URL")
    if url:
        return url

    user = _required_env("DB_USER")
    password = _required_env("DB_PASSWORD")
    name = _required_env("DB_NAME")
    host = os.getenv("DB_HOST", "localhost")
    port = os.getenv("DB_PORT", "5432")
    return f"postgresql://{user}:{password}@{host}:{port}/{name}"


class BlockingConnectionPool(ThreadedConnectionPool):
    """
    ThreadedConnectionPool that makes callers wait for a free connection.

    The stock pool raises PoolError once maxconn connections are checked out;
    here getconn blocks on a semaphore with one slot per connection instead.
    There is no acquisition timeout.
    """

    def __init__(self, minconn: int, maxconn: int, *args: Any, **kwargs: Any) -> None:
        self._slots = threading.BoundedSemaphore(maxconn)
        super().__init__(minconn, maxconn, *args, **kwargs)

    def getconn(self, key=None):
        self._slots.acquire()
        try:
            return super().getconn(key)
        except Exception:
            self._slots.release()
            raise

    def putconn(self, conn=None, key=None, close=False):
        try:
            super().putconn(conn, key, close)
        finally:
            self._slots.release()


# PUBLIC_INTERFACE
def create_pool() -> BlockingConnectionPool:
    """Create the process-wide PostgreSQL connection pool."""
    minconn = int(os.getenv("DB_POOL_MIN", "1"))
    maxconn = int(os.getenv("DB_POOL_MAX", "5"))
    pool = BlockingConnectionPool(minconn=minconn, maxconn=maxconn, dsn=build_dsn())
    log.info("Database pool ready (min=%d, max=%d)", minconn, maxconn)
    return pool


def _dict_cursor(conn):
    return conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor)


# PUBLIC_INTERFACE
def fetch_one(conn, query: str, params: Optional[Sequence[Any]] = None) -> Optional[Dict[str, Any]]:
    """Fetch a single row as a dict, or None."""
    with _dict_cursor(conn) as cur:
        cur.execute(query, params or [])
        row = cur.fetchone()
        return dict(row) if row else None


# PUBLIC_INTERFACE
def fetch_all(conn, query: str, params: Optional[Sequence[Any]] = None) -> List[Dict[str, Any]]:
    """Fetch all rows as dicts."""
    with _dict_cursor(conn) as cur:
        cur.execute(query, params or [])
        rows = cur.fetchall()
        return [dict(r) for r in rows]
