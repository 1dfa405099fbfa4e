"""Warehouse factory.

This module provides the create_warehouse() factory function for creating
a Warehouse adapter from a profile target.
"""

from __future__ import annotations

import structlog

from sqlwave.profiles import DuckDBTarget, SnowflakeTarget
from sqlwave.warehouse.base import Warehouse
from sqlwave.warehouse.duckdb import DuckDBWarehouse
from sqlwave.warehouse.snowflake import SnowflakeWarehouse

logger = structlog.get_logger(__name__)


def create_warehouse(target: DuckDBTarget | SnowflakeTarget) -> Warehouse:
    """Create a warehouse adapter for a target.

    No connection is opened until the first checkout.

    Args:
        target: Resolved profile target.

    Returns:
        Warehouse adapter matching the target type.

    Raises:
        ValueError: If the target type is not supported.

    Example:
        >>> warehouse = create_warehouse(DuckDBTarget(path="dev.duckdb"))
        >>> warehouse.type
        'duckdb'
    """
    if isinstance(target, DuckDBTarget):
        warehouse: Warehouse = DuckDBWarehouse(target)
    elif isinstance(target, SnowflakeTarget):
        warehouse = SnowflakeWarehouse(target)
    else:
        msg = f"Unsupported target type: {type(target).__name__}"
        raise ValueError(msg)

    logger.info(
        "creating_warehouse",
        type=warehouse.type,
        threads=warehouse.threads,
        schema=warehouse.schema_name,
    )
    return warehouse
