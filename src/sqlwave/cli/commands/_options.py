"""Options shared by the project-level commands."""

from __future__ import annotations

from collections.abc import Callable
from typing import Any, TypeVar

import click

F = TypeVar("F", bound=Callable[..., Any])


def project_options(func: F) -> F:
    """Add --project-dir, --profiles-dir, --target and --select to a command."""
    func = click.option(
        "-s",
        "--select",
        "select",
        multiple=True,
        help="Node selector (name, +name, name+, path:models/marts). Repeatable.",
    )(func)
    func = click.option(
        "-t",
        "--target",
        "target_name",
        default=None,
        help="Target in profiles.yml [default: the profile's default target]",
    )(func)
    func = click.option(
        "--profiles-dir",
        type=click.Path(file_okay=False),
        default=None,
        help="Directory holding profiles.yml [default: $SQLWAVE_PROFILES_DIR, project dir]",
    )(func)
    func = click.option(
        "-p",
        "--project-dir",
        type=click.Path(file_okay=False),
        default=".",
        show_default=True,
        help="Project root containing sqlwave_project.yml",
    )(func)
    return func


def run_options(func: F) -> F:
    """Add --threads, --fail-fast and --timeout to a command."""
    func = click.option(
        "--timeout",
        "timeout_seconds",
        type=click.FloatRange(min=0, min_open=True),
        default=None,
        help="Cancel the run after this many seconds.",
    )(func)
    func = click.option(
        "--fail-fast",
        is_flag=True,
        default=False,
        help="Skip every model not yet started after the first failure.",
    )(func)
    func = click.option(
        "--threads",
        type=click.IntRange(1, 64),
        default=None,
        help="Worker pool size [default: the target's threads]",
    )(func)
    return func
