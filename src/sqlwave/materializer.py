"""Materializer: persist a model as a view or table.

Each model becomes exactly one statement::

    CREATE OR REPLACE VIEW|TABLE <relation> AS
    <rendered sql>

preceded, once per schema per run, by ``CREATE SCHEMA IF NOT EXISTS``.
"""

from __future__ import annotations

import threading
import time
from typing import TYPE_CHECKING

import structlog

from sqlwave.errors import MaterializationError, SqlwaveError, WarehouseError
from sqlwave.nodes import Materialization, Model, Relation
from sqlwave.observability import warehouse_operation
from sqlwave.renderer import render

if TYPE_CHECKING:
    from sqlwave.symbols import SymbolTable
    from sqlwave.warehouse.base import Connection
    from sqlwave.warehouse.pool import ConnectionPool

logger = structlog.get_logger(__name__)


def strip_sql(sql: str) -> str:
    """Trim whitespace and trailing semicolons so SQL can be wrapped."""
    return sql.strip().rstrip(";").rstrip()


def build_ddl(model: Model, sql: str) -> str:
    """Build the create statement for a model.

    Example:
        >>> build_ddl(model, "select 1 as id")
        'CREATE OR REPLACE VIEW main.stg_orders AS\\nselect 1 as id'
    """
    kind = "VIEW" if model.materialization is Materialization.VIEW else "TABLE"
    return f"CREATE OR REPLACE {kind} {model.relation.render()} AS\n{strip_sql(sql)}"


def build_create_schema(relation: Relation) -> str:
    """Build the statement creating a relation's schema."""
    return f"CREATE SCHEMA IF NOT EXISTS {relation.schema_relation}"


class Materializer:
    """Render and materialize models over pooled connections.

    One instance serves one run; it remembers which schemas it already
    created.

    Example:
        >>> materializer = Materializer(pool, symbols)
        >>> sql = materializer.materialize(manifest.get_model("stg_orders"))
    """

    def __init__(self, pool: ConnectionPool, symbols: SymbolTable) -> None:
        self.pool = pool
        self.symbols = symbols
        self._schemas: set[str] = set()
        self._schema_lock = threading.Lock()

    def compile(self, model: Model) -> str:
        """Render a model's SQL with ``this`` bound to its relation."""
        return render(model.raw_sql, self.symbols, name=model.path, this=model.relation)

    def ensure_schema(self, connection: Connection, relation: Relation) -> None:
        """Create the relation's schema unless this run already did."""
        key = relation.schema_relation
        with self._schema_lock:
            if key in self._schemas:
                return
            connection.execute(build_create_schema(relation))
            self._schemas.add(key)
            logger.debug("schema_ensured", schema=key)

    def materialize(self, model: Model, sql: str | None = None) -> str:
        """Materialize one model.

        Args:
            model: Model to materialize.
            sql: Pre-rendered SQL; rendered here when None.

        Returns:
            The executed DDL statement.

        Raises:
            MaterializationError: If rendering or any warehouse statement fails.
        """
        log = logger.bind(model=model.name, materialization=model.materialization.value)
        try:
            rendered = sql if sql is not None else self.compile(model)
        except SqlwaveError as e:
            raise MaterializationError(model.name, e.user_message) from e

        ddl = build_ddl(model, rendered)
        start = time.monotonic()
        try:
            with self.pool.checkout() as connection:
                self.ensure_schema(connection, model.relation)
                with warehouse_operation(
                    "materialize", warehouse=self.pool.warehouse.type, node=model.name
                ):
                    connection.execute(ddl)
        except WarehouseError as e:
            log.warning("materialization_failed", error=e.user_message)
            raise MaterializationError(model.name, e.user_message) from e

        log.info(
            "model_materialized",
            relation=model.relation.render(),
            duration_ms=int((time.monotonic() - start) * 1000),
        )
        return ddl
