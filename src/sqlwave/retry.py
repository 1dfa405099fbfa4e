"""Retry policies for warehouse connections, built on tenacity.

Only opening a connection is retried. Statements are never re-sent: a
``CREATE OR REPLACE`` that failed half-way is reported, not replayed.
"""

from __future__ import annotations

from collections.abc import Callable
from functools import wraps
from typing import ParamSpec, TypeVar

from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential_jitter,
)

from sqlwave.config import RetryConfig
from sqlwave.errors import WarehouseConnectionError
from sqlwave.observability import log_retry_attempt

P = ParamSpec("P")
R = TypeVar("R")

# Default exceptions that trigger retry
DEFAULT_RETRY_EXCEPTIONS: tuple[type[Exception], ...] = (
    WarehouseConnectionError,
    ConnectionError,
    TimeoutError,
)


def create_retry_decorator(
    config: RetryConfig,
    *,
    retry_exceptions: tuple[type[Exception], ...] | None = None,
    operation_name: str | None = None,
) -> Callable[[Callable[P, R]], Callable[P, R]]:
    """Create a retry decorator with exponential backoff and jitter.

    After the last attempt the original exception is re-raised.

    Args:
        config: RetryConfig with retry policy settings.
        retry_exceptions: Exception types that trigger retry.
            Defaults to connection-related exceptions.
        operation_name: Name for logging purposes.

    Returns:
        Decorator function that adds retry behavior.

    Example:
        >>> @create_retry_decorator(RetryConfig(max_attempts=5), operation_name="connect")
        ... def connect() -> Connection:
        ...     return warehouse.connect()
    """
    exceptions = retry_exceptions or DEFAULT_RETRY_EXCEPTIONS

    def decorator(func: Callable[P, R]) -> Callable[P, R]:
        op_name = operation_name or func.__name__

        def before_sleep(state: RetryCallState) -> None:
            exc = state.outcome.exception() if state.outcome is not None else None
            log_retry_attempt(
                operation=op_name,
                attempt=state.attempt_number,
                max_attempts=config.max_attempts,
                wait_seconds=state.next_action.sleep if state.next_action else 0.0,
                error=str(exc),
            )

        @wraps(func)
        def wrapper(*args: P.args, **kwargs: P.kwargs) -> R:
            retrying = Retrying(
                retry=retry_if_exception_type(exceptions),
                stop=stop_after_attempt(config.max_attempts),
                wait=wait_exponential_jitter(
                    initial=config.initial_wait_seconds,
                    max=config.max_wait_seconds,
                    jitter=config.jitter_seconds,
                ),
                before_sleep=before_sleep,
                reraise=True,
            )
            return retrying(func, *args, **kwargs)

        return wrapper

    return decorator

