"""Database connection handling for the Postgres state store."""

import os
from contextlib import contextmanager
from typing import Generator, Optional

import psycopg2
from psycopg2.extras import RealDictCursor

from rwl.config import load_env


def get_connection_string(database_url: Optional[str] = None) -> str:
    """Get the Postgres DSN.

    An explicit URL wins; otherwise DATABASE_URL is read from the environment
    (after loading .env).
    """
    if database_url:
        return database_url

    load_env()
    database_url = os.environ.get("DATABASE_URL")
    if database_url:
        return database_url

    raise ValueError(
        "DATABASE_URL environment variable is required for the postgres backend.\n"
        "Set it in your environment or create a .env file."
    )


@contextmanager
def get_connection(database_url: Optional[str] = None) -> Generator:
    """Get a database connection context manager."""
    conn = psycopg2.connect(get_connection_string(database_url))
    try:
        yield conn
    finally:
        conn.close()


@contextmanager
def get_cursor(database_url: Optional[str] = None, commit: bool = True) -> Generator:
    """Get a dict cursor; commits on success, rolls back on any exception."""
    with get_connection(database_url) as conn:
        cursor = conn.cursor(cursor_factory=RealDictCursor)
        try:
            yield cursor
            if commit:
                conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            cursor.close()
