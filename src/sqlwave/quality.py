"""Data-quality tests.

Generic tests compile to a query returning violating rows:

- unique: values of the column occurring more than once
- not_null: rows where the column is null
- relationships: child values with no matching parent value
- accepted_values: values outside the accepted list

Singular tests are rendered and used as-is. Every test query is wrapped as
``select count(*) from (<test sql>)``; a non-zero count is a violation.
"""

from __future__ import annotations

import time
from typing import TYPE_CHECKING, Any

import structlog

from sqlwave.errors import SqlwaveError, TestViolationError
from sqlwave.materializer import strip_sql
from sqlwave.nodes import (
    SOURCE_PREFIX,
    GenericTest,
    GenericTestKind,
    Relation,
    Severity,
    SingularTest,
)
from sqlwave.observability import warehouse_operation
from sqlwave.renderer import render, render_expression
from sqlwave.results import TestResult, TestStatus

if TYPE_CHECKING:
    from sqlwave.symbols import SymbolTable
    from sqlwave.warehouse.pool import ConnectionPool

logger = structlog.get_logger(__name__)


def _target_relation(test: GenericTest, symbols: SymbolTable) -> Relation:
    if test.attached_to.startswith(SOURCE_PREFIX):
        source_name, _, table_name = test.attached_to.removeprefix(SOURCE_PREFIX).partition(".")
        return symbols.resolve_source(source_name, table_name, template=test.declared_in).relation
    return symbols.resolve_ref(test.attached_to, template=test.declared_in).relation


def _literal(value: Any, quote: bool) -> str:
    if not quote:
        return str(value)
    return "'" + str(value).replace("'", "''") + "'"


def compile_generic_test(test: GenericTest, symbols: SymbolTable) -> str:
    """Compile a generic test to a query returning violating rows.

    Args:
        test: Generic test declaration.
        symbols: Symbol table resolving the tested node and ``to`` targets.

    Returns:
        SQL selecting one row per violation.

    Raises:
        UnresolvedReferenceError: If a referenced node is unknown.

    Example:
        >>> compile_generic_test(not_null_test, symbols)
        'select order_key\\nfrom main.fct_orders\\nwhere order_key is null'
    """
    relation = _target_relation(test, symbols).render()
    column = test.column

    if test.kind is GenericTestKind.UNIQUE:
        return (
            f"select {column} as unique_field, count(*) as n_records\n"
            f"from {relation}\n"
            f"where {column} is not null\n"
            f"group by {column}\n"
            f"having count(*) > 1"
        )

    if test.kind is GenericTestKind.NOT_NULL:
        return f"select {column}\nfrom {relation}\nwhere {column} is null"

    if test.kind is GenericTestKind.RELATIONSHIPS:
        parent = render_expression(str(test.arguments["to"]), symbols, name=test.declared_in)
        field = test.arguments["field"]
        return (
            f"with child as (\n"
            f"    select {column} as from_field\n"
            f"    from {relation}\n"
            f"    where {column} is not null\n"
            f"),\n"
            f"parent as (\n"
            f"    select {field} as to_field\n"
            f"    from {parent}\n"
            f")\n"
            f"select child.from_field\n"
            f"from child\n"
            f"left join parent on child.from_field = parent.to_field\n"
            f"where parent.to_field is null"
        )

    quote = bool(test.arguments.get("quote", True))
    values = ", ".join(_literal(v, quote) for v in test.arguments["values"])
    return (
        f"with all_values as (\n"
        f"    select {column} as value_field, count(*) as n_records\n"
        f"    from {relation}\n"
        f"    group by {column}\n"
        f")\n"
        f"select *\n"
        f"from all_values\n"
        f"where value_field not in ({values})"
    )


def compile_test(test: GenericTest | SingularTest, symbols: SymbolTable) -> str:
    """Compile any test to a query returning violating rows."""
    if isinstance(test, GenericTest):
        return compile_generic_test(test, symbols)
    return render(test.raw_sql, symbols, name=test.path)


def build_count_query(sql: str) -> str:
    """Wrap a test query so it returns the number of violations."""
    return f"select count(*) from (\n{strip_sql(sql)}\n) as test_query"


class TestRunner:
    """Execute data tests over pooled connections.

    Example:
        >>> runner = TestRunner(pool, symbols)
        >>> result = runner.run_test(test, models=["fct_orders"])
        >>> result.status
        <TestStatus.PASSED: 'passed'>
    """

    __test__ = False

    def __init__(self, pool: ConnectionPool, symbols: SymbolTable) -> None:
        self.pool = pool
        self.symbols = symbols

    def _count_violations(self, test: GenericTest | SingularTest, sql: str) -> int:
        with self.pool.checkout() as connection:
            with warehouse_operation(
                "test", warehouse=self.pool.warehouse.type, node=test.unique_id
            ):
                count = connection.execute(build_count_query(sql)).scalar()
        return int(count or 0)

    def run_test(
        self,
        test: GenericTest | SingularTest,
        *,
        models: list[str] | None = None,
        sql: str | None = None,
    ) -> TestResult:
        """Run one test.

        Args:
            test: Test to run.
            models: Models the test reads, recorded on the result.
            sql: Pre-compiled test query; compiled here when None.

        Returns:
            TestResult: passed, warned, failed or error. Never raises for
            warehouse or rendering problems.
        """
        log = logger.bind(test=test.unique_id, severity=test.severity.value)
        start = time.monotonic()

        def result(status: TestStatus, failures: int = 0, message: str = "") -> TestResult:
            return TestResult(
                unique_id=test.unique_id,
                status=status,
                severity=test.severity,
                failures=failures,
                message=message,
                models=models or [],
                duration_ms=int((time.monotonic() - start) * 1000),
            )

        try:
            query = sql if sql is not None else compile_test(test, self.symbols)
            failures = self._count_violations(test, query)
            if failures:
                raise TestViolationError(
                    test.unique_id, failures, severity=test.severity.value
                )
        except TestViolationError as e:
            if test.severity is Severity.WARN:
                log.warning("test_warned", failures=e.failures)
                return result(TestStatus.WARNED, e.failures, e.user_message)
            log.error("test_failed", failures=e.failures)
            return result(TestStatus.FAILED, e.failures, e.user_message)
        except SqlwaveError as e:
            log.error("test_errored", error=e.user_message)
            return result(TestStatus.ERROR, message=e.user_message)

        log.info("test_passed")
        return result(TestStatus.PASSED)

    @staticmethod
    def skipped(
        test: GenericTest | SingularTest, *, models: list[str], message: str
    ) -> TestResult:
        """Result for a test whose dependencies did not materialize."""
        logger.info("test_skipped", test=test.unique_id, reason=message)
        return TestResult(
            unique_id=test.unique_id,
            status=TestStatus.SKIPPED,
            severity=test.severity,
            message=message,
            models=models,
        )
