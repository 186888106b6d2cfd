"""
DB-API 2 connectors for the trend historian.

A Connector opens connections, runs one statement under an explicit
timeout, and translates driver exceptions into the ``historian.errors``
taxonomy. Two backends:

  - SqliteConnector (default): the standard-library sqlite3 driver, opened
    read-only. Query timeouts use a progress handler that interrupts the
    statement once its deadline passes.
  - DbApiConnector: any qmark-paramstyle DB-API module loaded by name from
    config (e.g. an ODBC driver for SQL Server). Timeouts use the
    connection's ``timeout`` attribute when the driver exposes one.

The active backend is controlled by config.DATABASE_BACKEND.
"""

import importlib
import logging
import sqlite3
import time
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path

from .errors import (
    DatabaseConnectionError,
    HistorianError,
    QueryTimeout,
    SchemaMismatch,
)

logger = logging.getLogger("trendview")

# Explicit datetime typing for bound parameters and DATETIME/TIMESTAMP columns.
# Replaces sqlite3's deprecated default adapters.
sqlite3.register_adapter(datetime, lambda dt: dt.isoformat(" "))
sqlite3.register_converter("DATETIME", lambda raw: datetime.fromisoformat(raw.decode()))
sqlite3.register_converter("TIMESTAMP", lambda raw: datetime.fromisoformat(raw.decode()))

# Progress handler granularity (sqlite VM instructions between deadline checks)
_PROGRESS_STEPS = 1000


class Connector(ABC):
    """Opens historian connections and runs statements with a timeout."""

    name = "base"

    @abstractmethod
    def _open(self):
        """Return a new raw DB-API connection (driver exceptions propagate)."""

    @abstractmethod
    def _apply_timeout(self, conn, timeout: float | None):
        """Arm a per-statement timeout on ``conn``; return a disarm callable."""

    @abstractmethod
    def _wrap(self, exc: Exception, sql: str, timeout: float | None) -> HistorianError:
        """Translate a driver exception into the historian taxonomy."""

    @abstractmethod
    def _driver_errors(self) -> tuple:
        """Exception classes raised by the underlying driver."""

    @abstractmethod
    def table_exists(self, conn, table_name: str, timeout: float | None = None) -> bool:
        """Check whether ``table_name`` exists in the connected database."""

    def connect(self):
        """Open a connection.

        Raises:
            DatabaseConnectionError: If the driver cannot open the database.
        """
        try:
            return self._open()
        except self._driver_errors() as e:
            raise DatabaseConnectionError(
                f"Cannot open {self.name} database: {e}"
            ) from e

    @contextmanager
    def connection(self):
        """Context manager yielding an open connection, closed on exit."""
        conn = self.connect()
        try:
            yield conn
        finally:
            try:
                conn.close()
            except self._driver_errors() as e:
                logger.debug(f"[DB] Ignoring error while closing connection: {e}")

    def execute(
        self,
        conn,
        sql: str,
        params: tuple = (),
        timeout: float | None = None,
    ) -> tuple[list[str], list[tuple]]:
        """Run one statement and return ``(column_names, rows)``.

        Args:
            conn: Connection from ``connect()``.
            sql: Statement with qmark placeholders.
            params: Bound parameters.
            timeout: Seconds before the statement is abandoned (None = no limit).

        Raises:
            QueryTimeout: The statement exceeded ``timeout``.
            SchemaMismatch: A table or column referenced by ``sql`` is missing.
            DatabaseConnectionError: Connectivity failed mid-statement.
        """
        disarm = self._apply_timeout(conn, timeout)
        t0 = time.monotonic()
        try:
            cursor = conn.cursor()
            try:
                cursor.execute(sql, params)
                columns = [d[0] for d in cursor.description or ()]
                rows = cursor.fetchall()
            finally:
                cursor.close()
        except self._driver_errors() as e:
            raise self._wrap(e, sql, timeout) from e
        finally:
            disarm()
        logger.debug(f"[DB] {len(rows)} rows in {time.monotonic() - t0:.3f}s: {sql}")
        return columns, rows

    def check_connectivity(self, timeout: float | None = None) -> bool:
        """Open a connection and run a trivial statement. Never raises."""
        try:
            with self.connection() as conn:
                self.execute(conn, "SELECT 1", timeout=timeout)
            return True
        except HistorianError as e:
            logger.warning(f"[DB] Connectivity check failed: {e}")
            return False


class SqliteConnector(Connector):
    """Read-only connector for a sqlite historian file."""

    name = "sqlite"

    def __init__(self, path, busy_timeout: float = 30.0, read_only: bool = True):
        self.path = Path(path)
        self.busy_timeout = busy_timeout
        self.read_only = read_only

    def _open(self):
        if self.read_only:
            target = self.path.resolve().as_uri() + "?mode=ro"
            uri = True
        else:
            target = str(self.path)
            uri = False
        return sqlite3.connect(
            target,
            timeout=self.busy_timeout,
            detect_types=sqlite3.PARSE_DECLTYPES,
            check_same_thread=False,
            uri=uri,
        )

    def _apply_timeout(self, conn, timeout):
        if not timeout:
            return lambda: None
        deadline = time.monotonic() + timeout
        conn.set_progress_handler(
            lambda: 1 if time.monotonic() > deadline else 0, _PROGRESS_STEPS
        )
        return lambda: conn.set_progress_handler(None, 0)

    def _driver_errors(self) -> tuple:
        return (sqlite3.Error,)

    def _wrap(self, exc, sql, timeout):
        msg = str(exc).lower()
        if "interrupted" in msg:
            return QueryTimeout(f"Query exceeded {timeout}s timeout: {sql}", timeout)
        if "no such table" in msg or "no such column" in msg:
            return SchemaMismatch(f"{exc} (query: {sql})")
        if isinstance(exc, (sqlite3.OperationalError, sqlite3.DatabaseError)):
            return DatabaseConnectionError(f"sqlite error: {exc}")
        return HistorianError(f"sqlite error: {exc}")

    def table_exists(self, conn, table_name, timeout=None):
        _, rows = self.execute(
            conn,
            "SELECT COUNT(*) FROM sqlite_master WHERE type = 'table' AND name = ?",
            (table_name,),
            timeout=timeout,
        )
        return bool(rows and rows[0][0])


# SQLSTATE codes / driver messages used to classify DB-API errors
_TIMEOUT_MARKERS = ("hyt00", "hyt01", "timeout expired", "timed out")
_SCHEMA_MARKERS = ("42s02", "42s22", "invalid object name", "invalid column name")


class DbApiConnector(Connector):
    """Connector for any qmark-paramstyle DB-API 2 module.

    Args:
        module: The imported driver module (must expose ``connect`` and ``Error``).
        connection_string: First positional argument to ``module.connect``.
        connect_kwargs: Extra keyword arguments for ``module.connect``.
    """

    name = "dbapi"

    def __init__(self, module, connection_string: str, **connect_kwargs):
        self.module = module
        self.connection_string = connection_string
        self.connect_kwargs = connect_kwargs

    def _open(self):
        return self.module.connect(self.connection_string, **self.connect_kwargs)

    def _apply_timeout(self, conn, timeout):
        if not timeout or not hasattr(conn, "timeout"):
            return lambda: None
        previous = conn.timeout
        conn.timeout = max(1, int(round(timeout)))

        def disarm():
            conn.timeout = previous
        return disarm

    def _driver_errors(self) -> tuple:
        return (self.module.Error,)

    def _wrap(self, exc, sql, timeout):
        msg = str(exc).lower()
        if any(marker in msg for marker in _TIMEOUT_MARKERS):
            return QueryTimeout(f"Query exceeded {timeout}s timeout: {sql}", timeout)
        if any(marker in msg for marker in _SCHEMA_MARKERS):
            return SchemaMismatch(f"{exc} (query: {sql})")
        connectivity = tuple(
            cls for cls in (getattr(self.module, "OperationalError", None),
                            getattr(self.module, "InterfaceError", None))
            if cls is not None
        )
        if connectivity and isinstance(exc, connectivity):
            return DatabaseConnectionError(f"{self.name} error: {exc}")
        return HistorianError(f"{self.name} error: {exc}")

    def table_exists(self, conn, table_name, timeout=None):
        _, rows = self.execute(
            conn,
            "SELECT CASE WHEN EXISTS (SELECT 1 FROM INFORMATION_SCHEMA.TABLES "
            "WHERE TABLE_NAME = ?) THEN 1 ELSE 0 END",
            (table_name,),
            timeout=timeout,
        )
        return bool(rows and rows[0][0])


def build_connector() -> Connector:
    """Build the connector selected by config.

    Raises:
        DatabaseConnectionError: If the dbapi backend is misconfigured.
        ValueError: If ``database.backend`` is unknown.
    """
    import config

    backend = config.DATABASE_BACKEND
    if backend == "sqlite":
        return SqliteConnector(
            config.get_database_path(), busy_timeout=config.CONNECTION_TIMEOUT
        )
    if backend == "dbapi":
        module_name = config.DATABASE_DRIVER_MODULE
        connection_string = config.get_connection_string()
        if not module_name or not connection_string:
            raise DatabaseConnectionError(
                "dbapi backend needs database.driver_module and a connection string "
                "(database.connection_string or TRENDVIEW_CONNECTION_STRING)"
            )
        try:
            module = importlib.import_module(module_name)
        except ImportError as e:
            raise DatabaseConnectionError(
                f"Database driver '{module_name}' is not installed: {e}"
            ) from e
        return DbApiConnector(module, connection_string)
    raise ValueError(f"Unknown database backend '{backend}'. Use 'sqlite' or 'dbapi'.")
