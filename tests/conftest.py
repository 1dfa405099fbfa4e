"""Shared pytest fixtures for sqlwave tests.

Provides structlog configuration, a CliRunner, and an on-disk sample project
(the TPC-H ``orders`` pipeline) backed by a DuckDB database file.
"""

from __future__ import annotations

import sys
import threading
from collections.abc import Callable
from pathlib import Path
from textwrap import dedent

import duckdb
import pytest
import structlog
from click.testing import CliRunner

from sqlwave.nodes import (
    GenericTest,
    Manifest,
    Materialization,
    Model,
    Relation,
    SingularTest,
    SourceTable,
    source_id,
)
from sqlwave.parser import ProjectParser
from sqlwave.renderer import extract_macros
from sqlwave.warehouse.base import Connection, QueryResult, Warehouse

# Seed rows: (o_orderkey, o_orderstatus, o_totalprice, o_orderdate)
CLEAN_ORDERS = [
    (1, "P", 100.0, "1995-03-01"),
    (2, "O", 250.5, "1996-07-14"),
    (3, "F", 80.0, "1997-01-30"),
]
DIRTY_ORDERS = [*CLEAN_ORDERS, (4, "X", 42.0, "1998-11-02")]

SAMPLE_PROJECT_FILES: dict[str, str] = {
    "sqlwave_project.yml": """
        name: data_pipeline
        version: "1.0.0"
        profile: data_pipeline
        models:
          data_pipeline:
            staging:
              +materialized: view
            marts:
              +materialized: table
        vars:
          min_order_key: 0
    """,
    "models/staging/sources.yml": """
        sources:
          - name: tpch
            schema: raw
            tables:
              - name: orders
                columns:
                  - name: o_orderkey
                    tests:
                      - not_null
        models:
          - name: stg_orders
            description: Renamed TPC-H orders
            columns:
              - name: order_key
                data_tests:
                  - unique
    """,
    "models/staging/stg_orders.sql": """
        select
            o_orderkey as order_key,
            o_orderstatus as status_code,
            o_totalprice as price,
            o_orderdate as order_date
        from {{ source('tpch', 'orders') }}
        where o_orderkey > {{ var('min_order_key') }}
    """,
    "models/marts/fct_orders.sql": """
        {{ config(materialized='table') }}
        select
            order_key,
            status_code,
            order_date,
            {{ discounted_amount('price') }} as discounted_price
        from {{ ref('stg_orders') }}
    """,
    "models/marts/schema.yml": """
        models:
          - name: fct_orders
            columns:
              - name: order_key
                tests:
                  - unique
                  - not_null
                  - relationships:
                      to: ref('stg_orders')
                      field: order_key
              - name: status_code
                tests:
                  - accepted_values:
                      values: ['P', 'O', 'F']
    """,
    "macros/pricing.sql": """
        {% macro discounted_amount(column, discount=0.1) -%}
        round({{ column }} * (1 - {{ discount }}), 2)
        {%- endmacro %}
    """,
    "tests/fct_orders_date_valid.sql": """
        select *
        from {{ ref('fct_orders') }}
        where order_date > current_date
            or order_date < date '1990-01-01'
    """,
}


@pytest.fixture(autouse=True)
def configure_structlog_for_tests() -> None:
    """Configure structlog to output to stdout for test capture."""
    structlog.configure(
        processors=[
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.dev.ConsoleRenderer(colors=False),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stdout),
        cache_logger_on_first_use=False,  # Important for test isolation
    )


@pytest.fixture(autouse=True)
def isolate_profiles_dir(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep a developer's SQLWAVE_PROFILES_DIR out of the tests."""
    monkeypatch.delenv("SQLWAVE_PROFILES_DIR", raising=False)


@pytest.fixture
def cli_runner() -> CliRunner:
    """Create a Click test runner."""
    return CliRunner()


def write_files(root: Path, files: dict[str, str]) -> Path:
    """Write dedented files under ``root`` and return ``root``."""
    for relative, content in files.items():
        path = root / relative
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(dedent(content).lstrip("\n"))
    return root


def seed_orders(db_path: Path, rows: list[tuple[int, str, float, str]]) -> None:
    """Create ``raw.orders`` in a DuckDB file and load ``rows``."""
    connection = duckdb.connect(str(db_path))
    try:
        connection.execute("create schema if not exists raw")
        connection.execute(
            "create or replace table raw.orders ("
            "o_orderkey integer, o_orderstatus varchar, "
            "o_totalprice double, o_orderdate date)"
        )
        for row in rows:
            connection.execute("insert into raw.orders values (?, ?, ?, ?)", list(row))
    finally:
        connection.close()


def query(db_path: Path, sql: str) -> list[tuple[object, ...]]:
    """Run a query against a DuckDB file and return all rows."""
    connection = duckdb.connect(str(db_path))
    try:
        return connection.execute(sql).fetchall()
    finally:
        connection.close()


def profiles_yaml(db_path: Path, *, threads: int = 1) -> str:
    """profiles.yml with a single DuckDB target named ``dev``."""
    return f"""
        data_pipeline:
          target: dev
          outputs:
            dev:
              type: duckdb
              path: "{db_path.as_posix()}"
              schema: analytics
              threads: {threads}
    """


@pytest.fixture
def make_project(tmp_path: Path) -> Callable[..., Path]:
    """Factory writing a project directory.

    Args (of the returned callable):
        files: Project files relative to the root; defaults to the sample project.
        overrides: Files added to or replacing the defaults.
        threads: DuckDB target threads.
    """

    def factory(
        files: dict[str, str] | None = None,
        *,
        overrides: dict[str, str] | None = None,
        threads: int = 1,
        name: str = "project",
    ) -> Path:
        project_dir = tmp_path / name
        contents = dict(SAMPLE_PROJECT_FILES if files is None else files)
        contents.setdefault(
            "profiles.yml", profiles_yaml(tmp_path / "warehouse.duckdb", threads=threads)
        )
        contents.update(overrides or {})
        return write_files(project_dir, contents)

    return factory


@pytest.fixture
def db_path(tmp_path: Path) -> Path:
    """DuckDB file shared by make_project's profiles.yml."""
    return tmp_path / "warehouse.duckdb"


@pytest.fixture
def sample_project(make_project: Callable[..., Path], db_path: Path) -> Path:
    """Sample project over clean seed data: every model and test passes."""
    seed_orders(db_path, CLEAN_ORDERS)
    return make_project()


@pytest.fixture
def dirty_project(make_project: Callable[..., Path], db_path: Path) -> Path:
    """Sample project over seed data containing one order with status 'X'."""
    seed_orders(db_path, DIRTY_ORDERS)
    return make_project()


@pytest.fixture
def sample_manifest(make_project: Callable[..., Path]) -> Manifest:
    """Parsed sample project (no warehouse involved)."""
    return ProjectParser(make_project(), default_schema="analytics").parse()


class RecordingConnection(Connection):
    """Connection double that records statements instead of executing them."""

    def __init__(self, warehouse: RecordingWarehouse) -> None:
        self.warehouse = warehouse
        self._open = True

    def execute(self, sql: str) -> QueryResult:
        with self.warehouse.lock:
            self.warehouse.statements.append(sql)
        for needle, exc in self.warehouse.failures.items():
            if needle in sql:
                raise exc
        if sql.startswith("select count(*)"):
            for needle, count in self.warehouse.counts.items():
                if needle in sql:
                    return QueryResult(rows=[(count,)], rowcount=1)
            return QueryResult(rows=[(0,)], rowcount=1)
        return QueryResult()

    def close(self) -> None:
        self._open = False

    @property
    def is_open(self) -> bool:
        return self._open


class RecordingWarehouse(Warehouse):
    """Warehouse double.

    Attributes:
        statements: Every statement executed, in order.
        failures: Statement substring -> exception raised when it matches.
        counts: Test query substring -> violation count returned.
    """

    type = "recording"

    def __init__(self, *, threads: int = 4) -> None:
        super().__init__(threads=threads, database=None, schema_name="analytics")
        self.statements: list[str] = []
        self.failures: dict[str, Exception] = {}
        self.counts: dict[str, int] = {}
        self.lock = threading.Lock()
        self.connects = 0
        self.closed = False

    def connect(self) -> RecordingConnection:
        with self.lock:
            self.connects += 1
        return RecordingConnection(self)

    def close(self) -> None:
        self.closed = True

    def ddl_for(self, relation: str) -> list[str]:
        """CREATE OR REPLACE statements issued for a relation."""
        return [
            s
            for s in self.statements
            if s.startswith("CREATE OR REPLACE") and f" {relation} AS" in s
        ]


@pytest.fixture
def recording_warehouse() -> RecordingWarehouse:
    """Warehouse double with four connection slots."""
    return RecordingWarehouse()


def ref(name: str) -> str:
    """Template snippet referencing a model."""
    return "{{ ref('" + name + "') }}"


def build_manifest(
    models: dict[str, str],
    *,
    sources: list[tuple[str, str]] | None = None,
    tests: list[GenericTest | SingularTest] | None = None,
    folders: dict[str, str] | None = None,
    materialized: dict[str, Materialization] | None = None,
    macros: str = "",
) -> Manifest:
    """Build a manifest in memory.

    Args:
        models: Model name -> template text, in declaration order.
        sources: (source, table) pairs, relations ``raw.<table>``.
        tests: Tests to attach.
        folders: Model name -> folder under models/.
        materialized: Model name -> materialization (default view).
        macros: Text of a macro file, read as ``macros/macros.sql``.
    """
    folders = folders or {}
    materialized = materialized or {}
    return Manifest(
        project_name="branches",
        models=[
            Model(
                name=name,
                path="/".join(p for p in ("models", folders.get(name, ""), f"{name}.sql") if p),
                raw_sql=sql,
                materialization=materialized.get(name, Materialization.VIEW),
                relation=Relation(schema="analytics", identifier=name),
                declaration_index=index,
            )
            for index, (name, sql) in enumerate(models.items())
        ],
        sources={
            source_id(s, t): SourceTable(
                source_name=s,
                table_name=t,
                relation=Relation(schema="raw", identifier=t),
            )
            for s, t in sources or []
        },
        macros={m.name: m for m in extract_macros(macros, path="macros/macros.sql")},
        tests=list(tests or []),
    )
