"""Connection and transaction helpers shared by the PostgreSQL repositories."""
from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Iterator, Optional, Tuple

import psycopg2
import psycopg2.extras
from psycopg2.extensions import connection as PgConnection
from psycopg2.extensions import cursor as PgCursor

from .. import app_context
from .errors import TransientStorageFailure

logger = logging.getLogger("keydesk.storage")

TRANSIENT_ERRORS = (psycopg2.OperationalError, psycopg2.InterfaceError)


@contextmanager
def managed_connection(conn: Optional[PgConnection] = None) -> Iterator[Tuple[PgConnection, bool]]:
    """Yield ``(connection, managed)``; managed connections commit or roll back here.

    When ``conn`` is supplied the caller owns the transaction boundary.
    """

    if conn is not None:
        yield conn, False
        return

    try:
        connection = app_context.get_conn()
    except TRANSIENT_ERRORS as exc:
        logger.warning("Database connection failed: %s", exc)
        raise TransientStorageFailure() from exc

    try:
        yield connection, True
        connection.commit()
    except Exception:
        connection.rollback()
        raise
    finally:
        connection.close()


@contextmanager
def dict_cursor(conn: Optional[PgConnection] = None) -> Iterator[PgCursor]:
    """Cursor returning ``RealDictRow`` rows inside a managed transaction."""

    try:
        with managed_connection(conn) as (connection, _managed):
            cursor = connection.cursor(cursor_factory=psycopg2.extras.RealDictCursor)
            try:
                yield cursor
            finally:
                cursor.close()
    except TRANSIENT_ERRORS as exc:
        logger.warning("Database operation failed: %s", exc)
        raise TransientStorageFailure() from exc
