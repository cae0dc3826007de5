"""Thread-local Postgres connections for the event log and photo store."""

from __future__ import annotations

from contextlib import contextmanager
import logging
import threading
from typing import Any, Iterator

import psycopg

from .retry import with_retry


logger = logging.getLogger("flow_backlog.postgres_runtime")

_LOCAL = threading.local()


@contextmanager
def postgres_threadlocal_connection(dsn: str, *, connect_attempts: int = 3) -> Iterator[psycopg.Connection[Any]]:
    """Yield this thread's connection to ``dsn``; commit on success, roll back on error."""
    key = str(dsn or "").strip()
    connection = _connection_for(key, attempts=max(1, int(connect_attempts)))
    try:
        yield connection
    except BaseException:
        # An aborted transaction blocks the session until rolled back.
        try:
            connection.rollback()
        except psycopg.Error:
            _discard(key)
        raise
    if not connection.autocommit:
        try:
            connection.commit()
        except psycopg.Error:
            _discard(key)
            raise
    if connection.closed or connection.broken:
        _discard(key)


def clear_threadlocal_postgres_connections() -> None:
    for key in list(_pool()):
        _discard(key)


def _pool() -> dict[str, psycopg.Connection[Any]]:
    pool = getattr(_LOCAL, "pool", None)
    if pool is None:
        pool = {}
        _LOCAL.pool = pool
    return pool


def _connection_for(key: str, *, attempts: int) -> psycopg.Connection[Any]:
    pool = _pool()
    cached = pool.get(key)
    if cached is not None:
        if not (cached.closed or cached.broken):
            return cached
        _discard(key)
    connection = with_retry(
        lambda: psycopg.connect(key),
        attempts=attempts,
        base_delay_seconds=0.05,
        max_delay_seconds=1.0,
        retry_on=(psycopg.OperationalError,),
    )
    pool[key] = connection
    return connection


def _discard(key: str) -> None:
    connection = _pool().pop(key, None)
    if connection is None:
        return
    try:
        connection.close()
    except psycopg.Error as exc:
        logger.debug("Ignoring error while closing Postgres connection: %s", exc)
