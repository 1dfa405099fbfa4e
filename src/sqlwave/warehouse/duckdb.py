"""DuckDB warehouse adapter.

Every connection is a cursor on one shared database handle, so an
in-memory database is visible to all workers. Cursors are not shared
between threads.
"""

from __future__ import annotations

import threading
from pathlib import Path
from typing import TYPE_CHECKING

import duckdb
import structlog

from sqlwave.errors import WarehouseConnectionError, WarehouseError
from sqlwave.warehouse.base import Connection, QueryResult, Warehouse

if TYPE_CHECKING:
    from sqlwave.profiles import DuckDBTarget

logger = structlog.get_logger(__name__)

MEMORY_PATH = ":memory:"


class DuckDBConnection(Connection):
    """One DuckDB cursor."""

    def __init__(self, cursor: duckdb.DuckDBPyConnection) -> None:
        self._cursor: duckdb.DuckDBPyConnection | None = cursor

    def execute(self, sql: str) -> QueryResult:
        if self._cursor is None:
            raise WarehouseConnectionError("DuckDB connection is closed")
        try:
            self._cursor.execute(sql)
            rows = self._cursor.fetchall() if self._cursor.description else []
        except duckdb.ConnectionException as e:
            raise WarehouseConnectionError(
                "DuckDB connection lost", internal_details=str(e)
            ) from e
        except duckdb.Error as e:
            raise WarehouseError(str(e).strip()) from e
        return QueryResult(rows=[tuple(r) for r in rows], rowcount=len(rows))

    def close(self) -> None:
        if self._cursor is not None:
            self._cursor.close()
            self._cursor = None

    @property
    def is_open(self) -> bool:
        return self._cursor is not None


class DuckDBWarehouse(Warehouse):
    """DuckDB database file or in-memory database.

    Example:
        >>> warehouse = DuckDBWarehouse(DuckDBTarget(path=":memory:"))
        >>> warehouse.connect().execute("select 42").scalar()
        42
    """

    type = "duckdb"

    def __init__(self, target: DuckDBTarget) -> None:
        super().__init__(
            threads=target.threads,
            database=target.database,
            schema_name=target.schema_name,
        )
        self.path = target.path
        self._root: duckdb.DuckDBPyConnection | None = None
        self._lock = threading.Lock()

    def connect(self) -> DuckDBConnection:
        with self._lock:
            if self._root is None:
                self._root = self._open()
            try:
                return DuckDBConnection(self._root.cursor())
            except duckdb.Error as e:
                raise WarehouseConnectionError(
                    "Cannot open DuckDB cursor", internal_details=str(e)
                ) from e

    def _open(self) -> duckdb.DuckDBPyConnection:
        if self.path != MEMORY_PATH:
            Path(self.path).parent.mkdir(parents=True, exist_ok=True)
        try:
            root = duckdb.connect(self.path)
        except duckdb.Error as e:
            raise WarehouseConnectionError(
                f"Cannot open DuckDB database '{self.path}'", internal_details=str(e)
            ) from e
        logger.debug("duckdb_opened", path=self.path)
        return root

    def close(self) -> None:
        with self._lock:
            if self._root is not None:
                self._root.close()
                self._root = None
