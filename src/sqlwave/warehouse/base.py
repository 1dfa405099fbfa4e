"""Warehouse adapter contract.

The warehouse is an opaque capability: submit SQL, get rows or a row count
back, or an error. Adapters translate driver exceptions into
WarehouseError / WarehouseConnectionError so callers never see driver types.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class QueryResult(BaseModel):
    """Result of one statement.

    Attributes:
        rows: Returned rows (empty for DDL).
        rowcount: Rows affected or returned, -1 when the driver does not know.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    rows: list[tuple[Any, ...]] = Field(default_factory=list)
    rowcount: int = -1

    def scalar(self) -> Any:
        """First column of the first row, or None for an empty result."""
        if not self.rows:
            return None
        return self.rows[0][0]


class Connection(ABC):
    """A single warehouse session, used by one worker at a time."""

    @abstractmethod
    def execute(self, sql: str) -> QueryResult:
        """Execute one statement.

        Raises:
            WarehouseError: If the warehouse rejects the statement.
            WarehouseConnectionError: If the session is lost.
        """

    @abstractmethod
    def close(self) -> None:
        """Close the session. Safe to call more than once."""

    @property
    @abstractmethod
    def is_open(self) -> bool:
        """Whether the session can still execute statements."""


class Warehouse(ABC):
    """Factory for connections to one target.

    Attributes:
        type: Warehouse type (e.g., "duckdb", "snowflake").
        threads: Connection slots configured for the target.
        database: Default database for relations, if any.
        schema_name: Default schema for models.
    """

    type: str = ""

    def __init__(self, *, threads: int, database: str | None, schema_name: str) -> None:
        self.threads = threads
        self.database = database
        self.schema_name = schema_name

    @abstractmethod
    def connect(self) -> Connection:
        """Open a new connection.

        Raises:
            WarehouseConnectionError: If the connection cannot be opened.
        """

    def close(self) -> None:  # noqa: B027
        """Release warehouse-wide resources."""
