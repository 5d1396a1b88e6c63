"""Statistics source backed by a psycopg connection to the target."""
from typing import Any, Callable, Dict, Iterator, Optional
import logging
import re

import psycopg
from psycopg.rows import dict_row

from pg_stats_exporter.config import ScrapeTarget
from pg_stats_exporter.descriptors import DescriptorGroup
from pg_stats_exporter.errors import (
    AuthenticationError,
    DatabaseConnectionError,
    QueryTimeoutError,
    SchemaError,
    ScrapeError,
    TransientQueryError,
)

logger = logging.getLogger(__name__)

Row = Dict[str, Any]

# SQLSTATEs for a missing database, extension, view, function or column, or
# a view the scraping role may not read
_SCHEMA_SQLSTATES = {"3D000", "3F000", "42P01", "42883", "42703", "42501"}
_TRANSIENT_SQLSTATES = {"40001", "40P01", "55P03"}
_TIMEOUT_SQLSTATES = {"57014"}
_AUTH_MESSAGES = ("authentication failed", "no pg_hba.conf entry", "password")
_MISSING_DATABASE_RE = re.compile(r'database ".*" does not exist')


def classify_error(exc: Exception, group: Optional[str] = None) -> ScrapeError:
    """Map a psycopg exception to the scrape error taxonomy."""
    sqlstate = getattr(exc, "sqlstate", None) or ""
    message = str(exc).strip() or exc.__class__.__name__

    if sqlstate in _TIMEOUT_SQLSTATES:
        return QueryTimeoutError(message, group)
    if sqlstate.startswith("28"):
        return AuthenticationError(message, group)
    if sqlstate in _SCHEMA_SQLSTATES or sqlstate.startswith("42"):
        return SchemaError(message, group)
    if sqlstate in _TRANSIENT_SQLSTATES:
        return TransientQueryError(message, group)
    if sqlstate.startswith("08") or sqlstate.startswith("57P"):
        return DatabaseConnectionError(message, group)

    if isinstance(exc, psycopg.OperationalError):
        # libpq reports rejected credentials and a missing database at connect
        # time without a SQLSTATE
        lowered = message.lower()
        if not sqlstate and any(m in lowered for m in _AUTH_MESSAGES):
            return AuthenticationError(message, group)
        if not sqlstate and _MISSING_DATABASE_RE.search(message):
            return SchemaError(message, group)
        return DatabaseConnectionError(message, group)
    if isinstance(exc, psycopg.InterfaceError):
        return DatabaseConnectionError(message, group)

    return TransientQueryError(message, group)


class StatSource:
    """Owns the connection to the target and runs the statistics queries."""

    def __init__(
        self,
        target: ScrapeTarget,
        query_timeout_s: float = 10.0,
        connect: Callable[..., Any] = psycopg.connect,
    ):
        self.target = target
        self.query_timeout_s = query_timeout_s
        self._connect = connect
        self._conn = None

    @property
    def connected(self) -> bool:
        return self._conn is not None and not self._conn.closed

    def connect(self):
        """Open the connection if needed and return it."""
        if self.connected:
            return self._conn

        timeout_ms = int(self.query_timeout_s * 1000)
        try:
            self._conn = self._connect(
                **self.target.connect_kwargs(),
                autocommit=True,
                row_factory=dict_row,
                options=f"-c statement_timeout={timeout_ms}",
            )
        except psycopg.Error as e:
            self._conn = None
            raise classify_error(e) from e

        logger.info(f"Connected to {self.target.identifier} (statement_timeout={timeout_ms}ms)")
        return self._conn

    def query(self, group: DescriptorGroup) -> Iterator[Row]:
        """Stream the rows of one statistics group.

        Rows are yielded as dicts. The first row is checked against the
        columns declared by the group.
        """
        conn = self.connect()
        checked = False
        try:
            with conn.cursor() as cursor:
                for row in cursor.stream(group.query):
                    if not checked:
                        missing = set(group.columns) - set(row)
                        if missing:
                            raise SchemaError(
                                f"result is missing declared columns {sorted(missing)}",
                                group.id,
                            )
                        checked = True
                    yield row
        except psycopg.Error as e:
            error = classify_error(e, group.id)
            if isinstance(error, DatabaseConnectionError) or conn.closed:
                self.close()
            raise error from e

    def close(self):
        """Close the connection, if any."""
        conn, self._conn = self._conn, None
        if conn is not None and not conn.closed:
            try:
                conn.close()
            except psycopg.Error as e:
                logger.warning(f"Error closing connection to {self.target.identifier}: {e}")
