"""Warehouse adapters and connection pooling."""

from __future__ import annotations

from sqlwave.warehouse.base import Connection, QueryResult, Warehouse
from sqlwave.warehouse.duckdb import DuckDBConnection, DuckDBWarehouse
from sqlwave.warehouse.factory import create_warehouse
from sqlwave.warehouse.pool import ConnectionPool
from sqlwave.warehouse.snowflake import SnowflakeConnection, SnowflakeWarehouse

__all__ = [
    "Connection",
    "ConnectionPool",
    "DuckDBConnection",
    "DuckDBWarehouse",
    "QueryResult",
    "SnowflakeConnection",
    "SnowflakeWarehouse",
    "Warehouse",
    "create_warehouse",
]
