"""CLI error handling for sqlwave.

Maps sqlwave exceptions to user-friendly messages and exit codes.
"""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager

import click

from sqlwave.cli.output import error
from sqlwave.errors import SqlwaveError, WarehouseError

# Exit codes following sysexits.h convention
EXIT_SUCCESS = 0
EXIT_USER_ERROR = 1  # Invalid project, failed run
EXIT_SYSTEM_ERROR = 2  # Warehouse unreachable, permissions


class CLIError(click.ClickException):
    """CLI-specific exception with exit code support.

    Attributes:
        message: User-facing error message.
        exit_code: Exit code for the CLI (default: 1).
    """

    def __init__(self, message: str, exit_code: int = EXIT_USER_ERROR) -> None:
        super().__init__(message)
        self.exit_code = exit_code

    def show(self, file: object = None) -> None:
        """Display the error message using Rich formatting.

        Args:
            file: Output file (unused, for Click compatibility).
        """
        error(self.format_message())


@contextmanager
def handle_errors() -> Iterator[None]:
    """Translate sqlwave exceptions into CLIError.

    Warehouse problems exit with EXIT_SYSTEM_ERROR; everything the user can
    fix in the project or profile exits with EXIT_USER_ERROR.

    Example:
        >>> with handle_errors():
        ...     runner = PipelineRunner.from_project(project_dir)
    """
    try:
        yield
    except WarehouseError as e:
        raise CLIError(e.user_message, exit_code=EXIT_SYSTEM_ERROR) from e
    except SqlwaveError as e:
        raise CLIError(e.user_message) from e
    except PermissionError as e:
        raise CLIError(
            f"Permission denied: {e.filename or e}", exit_code=EXIT_SYSTEM_ERROR
        ) from e
