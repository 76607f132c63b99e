import os
import threading
from contextlib import contextmanager
from typing import Optional

from psycopg.rows import dict_row

# psycopg3 connection pooling lives in a separate package.
from psycopg_pool import ConnectionPool

from .config import settings

DATABASE_URL = settings.db_url or "postgresql://localhost/retailpos"


def _env_int(name: str, default: int) -> int:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except Exception:
        return default


# Pool sizing defaults are conservative for local/dev. Override in prod via
# DB_POOL_MIN_SIZE / DB_POOL_MAX_SIZE.
_POOL_MIN = _env_int("DB_POOL_MIN_SIZE", 1)
_POOL_MAX = _env_int("DB_POOL_MAX_SIZE", 10)

_pool: Optional[ConnectionPool] = None
_pool_lock = threading.Lock()


def _get_pool() -> ConnectionPool:
    # Opened on first use so importing this module never dials the database.
    global _pool
    with _pool_lock:
        if _pool is None:
            _pool = ConnectionPool(
                conninfo=DATABASE_URL,
                min_size=_POOL_MIN,
                max_size=_POOL_MAX,
                kwargs={"row_factory": dict_row},
                open=True,
            )
        return _pool


@contextmanager
def get_conn():
    # pool.connection() commits on success, rolls back on exception and
    # returns the connection to the pool.
    with _get_pool().connection() as conn:
        yield conn


def close_pools() -> None:
    global _pool
    with _pool_lock:
        if _pool is None:
            return
        try:
            _pool.close()
        finally:
            _pool = None


def set_business_context(conn, business_id: str):
    with conn.cursor() as cur:
        # `SET ... = %s` is not valid when using the extended query protocol (psycopg sends $1).
        # set_config(name text, value text, is_local boolean)
        cur.execute(
            "SELECT set_config('app.current_business_id', %s::text, true)",
            (business_id,),
        )
