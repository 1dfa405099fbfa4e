"""Rich console output utilities for the sqlwave CLI.

This module provides formatted console output with Rich: colored
success/error/warning messages, tables for plans, run results and
pre-flight reports, and respects the NO_COLOR environment variable.
"""

from __future__ import annotations

import json
import os
from typing import TYPE_CHECKING, Any

from rich.console import Console
from rich.table import Table
from rich.text import Text

if TYPE_CHECKING:
    from sqlwave.planner import ExecutionPlan
    from sqlwave.preflight import PreflightResult
    from sqlwave.results import RunResult

# Rich respects NO_COLOR itself; --no-color is handled through set_no_color()
_force_no_color = os.environ.get("NO_COLOR") is not None

_STATUS_COLORS = {
    "success": "green",
    "passed": "green",
    "warned": "yellow",
    "skipped": "dim",
    "failed": "red",
    "error": "red bold",
}


def create_console(no_color: bool = False) -> Console:
    """Create a Rich Console instance with appropriate color settings.

    Args:
        no_color: If True, disable colored output. Also respects NO_COLOR env var.

    Returns:
        Configured Console instance.
    """
    force_terminal = None
    if no_color or _force_no_color:
        force_terminal = False
    return Console(force_terminal=force_terminal, no_color=no_color or _force_no_color)


# Default console instance
console = create_console()


def success(message: str, **kwargs: Any) -> None:
    """Print a success message with green checkmark.

    Example:
        >>> success("Project valid")
        ✓ Project valid
    """
    console.print(f"[green]✓[/green] {message}", **kwargs)


def error(message: str, **kwargs: Any) -> None:
    """Print an error message with red X.

    Example:
        >>> error("Cyclic dependency detected: a -> b -> a")
        ✗ Cyclic dependency detected: a -> b -> a
    """
    console.print(f"[red]✗[/red] {message}", **kwargs)


def warning(message: str, **kwargs: Any) -> None:
    """Print a warning message with yellow triangle."""
    console.print(f"[yellow]⚠[/yellow] {message}", **kwargs)


def info(message: str, **kwargs: Any) -> None:
    """Print an informational message."""
    console.print(message, **kwargs)


def print_json(data: dict[str, Any], **kwargs: Any) -> None:
    """Print JSON data with syntax highlighting.

    Args:
        data: Dictionary to print as JSON.
        **kwargs: Additional arguments passed to console.print_json().
    """
    console.print_json(json.dumps(data, default=str), **kwargs)


def set_no_color(no_color: bool) -> None:
    """Update the global console to enable/disable colors.

    Args:
        no_color: If True, disable colored output.
    """
    global console
    console = create_console(no_color=no_color)


def _status_text(status: str) -> Text:
    return Text(status, style=_STATUS_COLORS.get(status, "white"))


def print_plan(plan: ExecutionPlan) -> None:
    """Print execution waves as a table."""
    table = Table(show_header=True, header_style="bold", title="Execution plan")
    table.add_column("Wave", justify="right", width=6)
    table.add_column("Models", min_width=30)
    for wave in plan.waves:
        table.add_row(str(wave.index), ", ".join(wave.models))
    console.print(table)


def print_run_result(result: RunResult) -> None:
    """Print per-model and per-test outcomes as tables."""
    if result.models:
        table = Table(show_header=True, header_style="bold", title="Models")
        table.add_column("Wave", justify="right", width=6)
        table.add_column("Model", min_width=20)
        table.add_column("Status", width=10)
        table.add_column("Message", min_width=30)
        table.add_column("Duration", justify="right", width=10)
        for model in result.models:
            table.add_row(
                str(model.wave),
                model.name,
                _status_text(model.status.value),
                model.message or "-",
                f"{model.duration_ms}ms" if model.duration_ms else "-",
            )
        console.print(table)

    if result.tests:
        table = Table(show_header=True, header_style="bold", title="Tests")
        table.add_column("Test", min_width=30)
        table.add_column("Severity", width=8)
        table.add_column("Status", width=10)
        table.add_column("Failures", justify="right", width=8)
        table.add_column("Message", min_width=30)
        for test in result.tests:
            table.add_row(
                test.unique_id,
                test.severity.value,
                _status_text(test.status.value),
                str(test.failures),
                test.message or "-",
            )
        console.print(table)


def print_preflight_result(result: PreflightResult) -> None:
    """Print pre-flight checks as a table."""
    table = Table(show_header=True, header_style="bold", title="Pre-flight checks")
    table.add_column("Check", min_width=12)
    table.add_column("Status", width=10)
    table.add_column("Message", min_width=30)
    table.add_column("Duration", justify="right", width=10)
    for check in result.checks:
        table.add_row(
            check.name,
            _status_text(check.status.value),
            check.message or "-",
            f"{check.duration_ms}ms" if check.duration_ms else "-",
        )
    console.print(table)
