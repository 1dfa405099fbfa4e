"""Bounded connection pool.

At most ``size`` connections exist at any time. A worker checks a
connection out for one model or test and returns it when done; a
connection that lost its session is closed and replaced on next demand.
"""

from __future__ import annotations

import queue
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from typing import TYPE_CHECKING, Any

import structlog

from sqlwave.config import RetryConfig
from sqlwave.errors import WarehouseConnectionError
from sqlwave.observability import warehouse_operation
from sqlwave.retry import create_retry_decorator

if TYPE_CHECKING:
    from sqlwave.warehouse.base import Connection, Warehouse

logger = structlog.get_logger(__name__)


class ConnectionPool:
    """Thread-safe pool of warehouse connections.

    Attributes:
        warehouse: Warehouse the connections belong to.
        size: Maximum number of open connections.

    Example:
        >>> pool = ConnectionPool(warehouse, size=4)
        >>> with pool.checkout() as connection:
        ...     connection.execute("select 1")
        >>> pool.close()
    """

    def __init__(
        self,
        warehouse: Warehouse,
        *,
        size: int | None = None,
        retry: RetryConfig | None = None,
    ) -> None:
        self.warehouse = warehouse
        self.size = size or warehouse.threads
        self._idle: queue.LifoQueue[Connection] = queue.LifoQueue()
        self._slots = threading.BoundedSemaphore(self.size)
        self._lock = threading.Lock()
        self._open: list[Connection] = []
        self._closed = False
        self._connect = create_retry_decorator(
            retry or RetryConfig(), operation_name=f"{warehouse.type}_connect"
        )(warehouse.connect)
        self._log = logger.bind(warehouse=warehouse.type, size=self.size)

    @property
    def open_count(self) -> int:
        """Number of connections currently open."""
        with self._lock:
            return len(self._open)

    def _acquire(self) -> Connection:
        while True:
            try:
                connection = self._idle.get_nowait()
            except queue.Empty:
                break
            if connection.is_open:
                return connection
            self._discard(connection)

        with warehouse_operation("connect", warehouse=self.warehouse.type):
            connection = self._connect()
        with self._lock:
            self._open.append(connection)
        self._log.debug("connection_opened", open=len(self._open))
        return connection

    def _discard(self, connection: Connection) -> None:
        with self._lock:
            if connection in self._open:
                self._open.remove(connection)
        try:
            connection.close()
        except Exception as e:
            self._log.warning("connection_close_failed", error=str(e))
        self._log.debug("connection_discarded")

    @contextmanager
    def checkout(self) -> Iterator[Connection]:
        """Borrow a connection for the duration of the block.

        Blocks while all ``size`` connections are in use.

        Yields:
            An open Connection, exclusive to the caller until the block exits.

        Raises:
            WarehouseConnectionError: If no connection can be opened after retries.
            RuntimeError: If the pool was closed.
        """
        if self._closed:
            raise RuntimeError("Connection pool is closed")

        self._slots.acquire()
        try:
            connection = self._acquire()
            broken = False
            try:
                yield connection
            except WarehouseConnectionError:
                broken = True
                raise
            finally:
                if broken or self._closed or not connection.is_open:
                    self._discard(connection)
                else:
                    self._idle.put(connection)
        finally:
            self._slots.release()

    def close(self) -> None:
        """Close every open connection and the warehouse."""
        self._closed = True
        with self._lock:
            connections = list(self._open)
        for connection in connections:
            self._discard(connection)
        while not self._idle.empty():
            self._idle.get_nowait()
        self.warehouse.close()
        self._log.debug("pool_closed")

    def __enter__(self) -> ConnectionPool:
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()
