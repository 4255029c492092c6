# shared/db.py

from __future__ import annotations

from contextlib import contextmanager
from typing import Callable, Iterator, TypeVar
import hashlib
import random
import threading
import time

import mysql.connector
from mysql.connector import pooling
from mysql.connector.errors import PoolError

from shared.utils import env_bool, env_int, load_env
from shared.tenant import get_env

load_env()

T = TypeVar("T")

_POOL_LOCK = threading.Lock()
_POOLS: dict[str, pooling.MySQLConnectionPool] = {}

_RETRYABLE_POOL_ERRORS = ("exhausted", "failed getting connection")


# ======================================================
# CONNECTIONS
# ======================================================


def _connection_kwargs() -> dict:
    return {
        "host": get_env("DB_HOST"),
        "port": env_int("DB_PORT", 3306),
        "user": get_env("DB_USER"),
        "password": get_env("DB_PASSWORD"),
        "database": get_env("DB_NAME"),
        "ssl_disabled": env_bool("DB_SSL_DISABLED", False),
    }


def _get_pool(params: dict) -> pooling.MySQLConnectionPool:
    # Tenants sharing a database share a pool.
    signature = "|".join(f"{key}={params.get(key)}" for key in sorted(params))
    key = "adsheet_" + hashlib.md5(signature.encode("utf-8")).hexdigest()[:12]
    with _POOL_LOCK:
        if key not in _POOLS:
            _POOLS[key] = pooling.MySQLConnectionPool(
                pool_name=key,
                pool_size=max(env_int("DB_POOL_SIZE", 5), 1),
                pool_reset_session=env_bool("DB_POOL_RESET_SESSION", True),
                **params,
            )
        return _POOLS[key]


def _acquire(pool: pooling.MySQLConnectionPool):
    """
    Borrow a pooled connection, waiting with jittered backoff while the pool
    is exhausted (bulk creates from several tabs tend to arrive together).
    """
    timeout_s = max(env_int("DB_POOL_ACQUIRE_TIMEOUT_MS", 2000), 0) / 1000
    base_ms = max(env_int("DB_POOL_ACQUIRE_BACKOFF_MS", 50), 1)
    cap_ms = max(env_int("DB_POOL_ACQUIRE_MAX_BACKOFF_MS", 500), 1)
    deadline = time.monotonic() + timeout_s if timeout_s else None

    attempt = 0
    while True:
        try:
            return pool.get_connection()
        except PoolError as exc:
            if not any(text in str(exc).lower() for text in _RETRYABLE_POOL_ERRORS):
                raise
            if deadline is not None and time.monotonic() >= deadline:
                raise
            attempt += 1
            wait_ms = min(cap_ms, base_ms * (1 + attempt * 0.2)) * random.uniform(0.75, 1.25)
            time.sleep(max(wait_ms, 1) / 1000)


def get_connection():
    params = _connection_kwargs()
    if not env_bool("DB_POOL_ENABLED", True):
        return mysql.connector.connect(**params)
    return _acquire(_get_pool(params))


@contextmanager
def _cursor(**cursor_kwargs) -> Iterator[tuple[object, object]]:
    conn = get_connection()
    cursor = conn.cursor(**cursor_kwargs)
    try:
        yield conn, cursor
    finally:
        cursor.close()
        conn.close()


# ======================================================
# QUERIES
# ======================================================


def fetch_all(query: str, params: tuple | None = None) -> list[dict]:
    with _cursor(dictionary=True) as (_, cursor):
        cursor.execute(query, params)
        return cursor.fetchall()


def fetch_one(query: str, params: tuple | None = None) -> dict | None:
    rows = fetch_all(query, params)
    return rows[0] if rows else None


def run_transaction(
    work: Callable[[mysql.connector.cursor.MySQLCursor], T],
    *,
    cursor_kwargs: dict | None = None,
) -> T:
    """
    Run ``work(cursor)`` in one transaction; any exception rolls it back
    and propagates.
    """
    with _cursor(**(cursor_kwargs or {})) as (conn, cursor):
        conn.start_transaction()
        try:
            result = work(cursor)
        except Exception:
            conn.rollback()
            raise
        conn.commit()
        return result
