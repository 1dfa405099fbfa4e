"""Command-line interface for sqlwave."""

from __future__ import annotations

from sqlwave.cli.main import cli

__all__ = ["cli"]
