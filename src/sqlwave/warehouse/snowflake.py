"""Snowflake warehouse adapter.

Requires the ``snowflake`` extra (snowflake-connector-python). The driver is
imported on first connect so DuckDB-only installs do not need it.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import structlog

from sqlwave.errors import WarehouseConnectionError, WarehouseError
from sqlwave.warehouse.base import Connection, QueryResult, Warehouse

if TYPE_CHECKING:
    from sqlwave.profiles import SnowflakeTarget

logger = structlog.get_logger(__name__)


class SnowflakeConnection(Connection):
    """One Snowflake session."""

    def __init__(self, connection: Any) -> None:
        self._connection = connection

    def execute(self, sql: str) -> QueryResult:
        from snowflake.connector.errors import Error, OperationalError

        if not self.is_open:
            raise WarehouseConnectionError("Snowflake session is closed")
        try:
            with self._connection.cursor() as cursor:
                cursor.execute(sql)
                rows = cursor.fetchall() if cursor.description else []
                rowcount = cursor.rowcount if cursor.rowcount is not None else len(rows)
        except OperationalError as e:
            raise WarehouseConnectionError(
                "Snowflake session lost", internal_details=str(e)
            ) from e
        except Error as e:
            raise WarehouseError(getattr(e, "msg", None) or str(e)) from e
        return QueryResult(rows=[tuple(r) for r in rows], rowcount=rowcount)

    def close(self) -> None:
        if self.is_open:
            self._connection.close()

    @property
    def is_open(self) -> bool:
        return not self._connection.is_closed()


class SnowflakeWarehouse(Warehouse):
    """Snowflake account, warehouse, database and role from a profile target."""

    type = "snowflake"

    def __init__(self, target: SnowflakeTarget) -> None:
        super().__init__(
            threads=target.threads,
            database=target.database,
            schema_name=target.schema_name,
        )
        self.target = target

    def _connect_kwargs(self) -> dict[str, Any]:
        kwargs: dict[str, Any] = {
            "account": self.target.account,
            "user": self.target.user,
            "password": self.target.password.get_secret_value(),
            "database": self.target.database,
            "schema": self.target.schema_name,
            "login_timeout": self.target.login_timeout,
        }
        if self.target.role:
            kwargs["role"] = self.target.role
        if self.target.warehouse:
            kwargs["warehouse"] = self.target.warehouse
        if self.target.query_tag:
            kwargs["session_parameters"] = {"QUERY_TAG": self.target.query_tag}
        return kwargs

    def connect(self) -> SnowflakeConnection:
        import snowflake.connector
        from snowflake.connector.errors import Error, OperationalError

        try:
            connection = snowflake.connector.connect(**self._connect_kwargs())
        except OperationalError as e:
            raise WarehouseConnectionError(
                f"Cannot reach Snowflake account '{self.target.account}'",
                internal_details=str(e),
            ) from e
        except Error as e:
            raise WarehouseError(
                f"Snowflake login failed for user '{self.target.user}'",
                internal_details=str(e),
            ) from e

        logger.debug("snowflake_connected", account=self.target.account)
        return SnowflakeConnection(connection)
