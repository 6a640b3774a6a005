"""Database access layer using psycopg2.

Provides:
- get_conn(): Get a database connection from DATABASE_URL
- txn(): Context manager for short, safe transactions
- fetchone/fetchall: Query helpers
- lock_folios(): SELECT ... FOR UPDATE over folio rows in id order
"""

import os
from contextlib import contextmanager
from typing import Any, Iterable, Iterator, Sequence

import psycopg2
from psycopg2.extensions import connection as PgConnection, cursor as PgCursor
from psycopg2.extensions import parse_dsn


def get_conn() -> PgConnection:
    """Get a new database connection from DATABASE_URL.

    When the DSN/URL carries no password and DB_PASSWORD is set, the password
    is passed separately (secret injected apart from the connection string).

    Returns:
        psycopg2 connection object.

    Raises:
        RuntimeError: If DATABASE_URL is not set.
        psycopg2.Error: On connection failure.
    """
    dsn = os.environ.get("DATABASE_URL")
    if not dsn:
        raise RuntimeError("DATABASE_URL environment variable not set")

    password = os.environ.get("DB_PASSWORD")
    if password and "password" not in parse_dsn(dsn):
        return psycopg2.connect(dsn, password=password)
    return psycopg2.connect(dsn)


@contextmanager
def txn(conn: PgConnection | None = None) -> Iterator[PgCursor]:
    """Context manager for a short, safe transaction.

    If conn is None, creates a new connection that is closed on exit.
    Commits on successful exit, rolls back on exception.

    Args:
        conn: Optional existing connection. If None, creates new one.

    Yields:
        Cursor for executing queries within the transaction.

    Example:
        with txn() as cur:
            lock_folios(cur, ["f-1", "f-2"])
    """
    owns_conn = conn is None
    if owns_conn:
        conn = get_conn()

    try:
        with conn.cursor() as cur:
            yield cur
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        if owns_conn:
            conn.close()


def fetchone(
    cur: PgCursor,
    query: str,
    params: Sequence[Any] | None = None,
) -> tuple[Any, ...] | None:
    """Execute query and fetch one row."""
    cur.execute(query, params)
    return cur.fetchone()


def fetchall(
    cur: PgCursor,
    query: str,
    params: Sequence[Any] | None = None,
) -> list[tuple[Any, ...]]:
    """Execute query and fetch all rows."""
    cur.execute(query, params)
    return cur.fetchall()


def lock_folios(cur: PgCursor, folio_ids: Iterable[str]) -> list[str]:
    """Lock folio rows until commit/rollback.

    Rows are locked in ascending id order so that two transactions locking
    overlapping folio sets cannot deadlock.

    Args:
        cur: Cursor inside a transaction.
        folio_ids: Folio ids to lock. Unknown ids are ignored.

    Returns:
        Ids of the folios actually locked, ascending.
    """
    ordered = sorted({str(f) for f in folio_ids})
    if not ordered:
        return []
    rows = fetchall(
        cur,
        "SELECT id FROM folios WHERE id = ANY(%s) ORDER BY id FOR UPDATE",
        (ordered,),
    )
    return [str(r[0]) for r in rows]
