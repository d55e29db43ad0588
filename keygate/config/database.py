"""
Database configuration for KeyGate
Supports both SQLite (development) and PostgreSQL (production)
"""

import os
import sqlite3
import psycopg2
from psycopg2.extras import RealDictCursor
from contextlib import contextmanager
from typing import Any, Generator, Sequence, Union
import logging

from ..errors import StorageUnavailableError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 5.0


class DatabaseConfig:
    """
    Database configuration and connection factory

    Every connection carries a bounded timeout; driver-level operational
    failures (unreachable server, lock wait, statement timeout) surface as
    StorageUnavailableError so callers can tell them apart from bad input.
    """

    def __init__(self, environment: str = None, database_url: str = None,
                 sqlite_path: str = None, timeout: float = None):
        self.environment = environment or os.getenv('ENVIRONMENT', 'development')
        self.database_url = database_url if database_url is not None else os.getenv('DATABASE_URL')
        self.sqlite_path = sqlite_path or os.getenv('KEYGATE_SQLITE_PATH', 'keygate.db')
        if timeout is None:
            timeout = float(os.getenv('KEYGATE_DB_TIMEOUT', DEFAULT_TIMEOUT_SECONDS))
        if timeout <= 0:
            raise ValueError("Database timeout must be positive")
        self.timeout = timeout
        self.use_postgres = bool(self.environment == 'production' and self.database_url)

    @property
    def blob_type(self) -> str:
        return "BYTEA" if self.use_postgres else "BLOB"

    def describe(self) -> str:
        return "PostgreSQL" if self.use_postgres else f"SQLite ({self.sqlite_path})"

    def _connect_sqlite(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.sqlite_path, timeout=self.timeout, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        return conn

    def _connect_postgres(self):
        timeout_ms = int(self.timeout * 1000)
        conn = psycopg2.connect(
            self.database_url,
            connect_timeout=max(1, int(self.timeout)),
            options=f"-c statement_timeout={timeout_ms} -c lock_timeout={timeout_ms}",
            cursor_factory=RealDictCursor,
        )
        conn.autocommit = False
        return conn

    @contextmanager
    def get_connection(self) -> Generator[Union[sqlite3.Connection, 'psycopg2.extensions.connection'], None, None]:
        """Open a connection for one unit of work; commits are left to the caller"""
        try:
            conn = self._connect_postgres() if self.use_postgres else self._connect_sqlite()
        except (sqlite3.OperationalError, psycopg2.OperationalError) as e:
            logger.error(f"Could not connect to {self.describe()}: {e}")
            raise StorageUnavailableError() from e

        try:
            yield conn
        except (sqlite3.OperationalError, psycopg2.OperationalError, psycopg2.InterfaceError) as e:
            logger.error(f"Storage operation failed on {self.describe()}: {e}")
            try:
                conn.rollback()
            except (sqlite3.Error, psycopg2.Error):
                pass
            raise StorageUnavailableError() from e
        finally:
            conn.close()

    def execute(self, conn, query: str, params: Sequence[Any] = ()):
        """
        Run a query written with ``?`` placeholders and return the cursor

        Queries in this package never contain a literal question mark, so the
        placeholder can be swapped for psycopg2's ``%s`` textually.
        """
        if self.use_postgres:
            cursor = conn.cursor()
            cursor.execute(query.replace('?', '%s'), tuple(params))
            return cursor
        return conn.execute(query, tuple(params))


def is_integrity_error(error: Exception) -> bool:
    """True for unique/primary key violations on either backend"""
    return isinstance(error, (sqlite3.IntegrityError, psycopg2.IntegrityError))
