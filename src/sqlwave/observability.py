"""Structured logging and OpenTelemetry spans for sqlwave.

This module provides:
- Structured logging setup via structlog
- OpenTelemetry span helpers for warehouse operations

Without a configured OpenTelemetry SDK the tracer is a no-op, so spans cost
nothing in local runs.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from typing import TYPE_CHECKING, Any

import structlog
from opentelemetry import trace
from opentelemetry.trace import SpanKind, Status, StatusCode

if TYPE_CHECKING:
    from opentelemetry.trace import Span, Tracer

TRACER_NAME = "sqlwave"

_tracer: Tracer | None = None


def get_tracer() -> Tracer:
    """Get the OpenTelemetry tracer for sqlwave.

    Returns:
        OpenTelemetry Tracer instance.
    """
    global _tracer
    if _tracer is None:
        _tracer = trace.get_tracer(TRACER_NAME)
    return _tracer


def configure_logging(
    *,
    log_level: str = "INFO",
    json_format: bool = False,
    add_timestamp: bool = True,
) -> None:
    """Configure structured logging for sqlwave.

    Args:
        log_level: Minimum log level (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        json_format: If True, output JSON lines. If False, output human-readable.
        add_timestamp: If True, add ISO timestamp to log entries.

    Example:
        >>> configure_logging(log_level="DEBUG", json_format=True)
    """
    processors: list[Any] = [
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if add_timestamp:
        processors.insert(0, structlog.processors.TimeStamper(fmt="iso"))

    if json_format:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        level=getattr(logging, log_level.upper()),
    )


@contextmanager
def span(
    name: str,
    *,
    kind: SpanKind = SpanKind.INTERNAL,
    attributes: dict[str, Any] | None = None,
) -> Iterator[Span]:
    """Create an OpenTelemetry span that records errors.

    Args:
        name: Span name (e.g., "materialize", "run_test").
        kind: Span kind.
        attributes: Optional span attributes.

    Yields:
        OpenTelemetry Span instance.

    Example:
        >>> with span("materialize", attributes={"sqlwave.model": "fct_orders"}):
        ...     connection.execute(ddl)
    """
    tracer = get_tracer()
    with tracer.start_as_current_span(name, kind=kind, attributes=attributes or {}) as s:
        try:
            yield s
            s.set_status(Status(StatusCode.OK))
        except Exception as exc:
            s.set_status(Status(StatusCode.ERROR, str(exc)))
            s.record_exception(exc)
            raise


@contextmanager
def warehouse_operation(
    operation: str,
    *,
    warehouse: str,
    node: str | None = None,
) -> Iterator[Span]:
    """Create a client span for a warehouse statement.

    Args:
        operation: Operation name ("materialize", "test", "connect").
        warehouse: Warehouse type (duckdb, snowflake).
        node: Model or test the statement belongs to.

    Yields:
        OpenTelemetry Span instance.
    """
    attrs: dict[str, Any] = {"db.system": warehouse, "sqlwave.operation": operation}
    if node:
        attrs["sqlwave.node"] = node

    with span(f"sqlwave.{operation}", kind=SpanKind.CLIENT, attributes=attrs) as s:
        yield s


def log_retry_attempt(
    operation: str,
    attempt: int,
    max_attempts: int,
    wait_seconds: float,
    error: str,
) -> None:
    """Log a retry attempt.

    Args:
        operation: Operation being retried.
        attempt: Attempt number that just failed.
        max_attempts: Maximum attempts configured.
        wait_seconds: Time waiting before the next attempt.
        error: Error message that triggered the retry.

    Example:
        >>> log_retry_attempt("connect", 1, 3, 0.7, "Connection refused")
    """
    structlog.get_logger(__name__).warning(
        "operation_retry",
        operation=operation,
        attempt=attempt,
        max_attempts=max_attempts,
        wait_seconds=round(wait_seconds, 3),
        error=error,
    )
