"""CLI entry point for sqlwave.

The root group imports its subcommands lazily; see LazyGroup.
"""

from __future__ import annotations

import importlib
from typing import Any

import click
import rich_click as rclick

from sqlwave import __version__
from sqlwave.cli.output import set_no_color
from sqlwave.observability import configure_logging

# Configure rich-click for better help formatting
rclick.rich_click.TEXT_MARKUP = "markdown"
rclick.rich_click.SHOW_ARGUMENTS = True
rclick.rich_click.GROUP_ARGUMENTS_OPTIONS = True


class LazyGroup(rclick.RichGroup):
    """Command group whose subcommands are imported on first lookup.

    A subcommand module is imported the first time click looks the command
    up, then the command is registered like a regular one. Importing
    ``sqlwave.cli.main`` stays cheap.

    Attributes:
        lazy_subcommands: Command name -> ``"module:attribute"`` import path.
    """

    def __init__(
        self,
        *args: Any,
        lazy_subcommands: dict[str, str] | None = None,
        **kwargs: Any,
    ) -> None:
        """Register the lazy subcommands next to any regular ones.

        Args:
            *args: Passed to ``RichGroup``.
            lazy_subcommands: Command name -> import path, e.g.
                ``{"run": "sqlwave.cli.commands.run:run"}``.
            **kwargs: Passed to ``RichGroup``.
        """
        super().__init__(*args, **kwargs)
        self.lazy_subcommands: dict[str, str] = lazy_subcommands or {}

    def list_commands(self, ctx: click.Context) -> list[str]:
        return sorted({*super().list_commands(ctx), *self.lazy_subcommands})

    def get_command(self, ctx: click.Context, cmd_name: str) -> click.Command | None:
        """Look up a registered command, else import the lazy one.

        Returns:
            The command, or None for an unknown name (click then exits 2).
        """
        command = super().get_command(ctx, cmd_name)  # type: ignore[arg-type]
        if command is None and cmd_name in self.lazy_subcommands:
            command = self._import(self.lazy_subcommands[cmd_name])
            self.add_command(command, cmd_name)
        return command

    @staticmethod
    def _import(path: str) -> click.Command:
        module_name, _, attr_name = path.partition(":")
        command = getattr(importlib.import_module(module_name), attr_name)
        if not isinstance(command, click.Command):
            raise TypeError(f"{path} is not a click command")
        return command


LAZY_COMMANDS = {
    "validate": "sqlwave.cli.commands.validate:validate",
    "compile": "sqlwave.cli.commands.compile:compile_cmd",
    "plan": "sqlwave.cli.commands.plan:plan_cmd",
    "run": "sqlwave.cli.commands.run:run",
    "test": "sqlwave.cli.commands.test:test",
}


@click.command(cls=LazyGroup, lazy_subcommands=LAZY_COMMANDS)
@click.version_option(version=__version__, prog_name="sqlwave")
@click.option(
    "--no-color",
    is_flag=True,
    default=False,
    help="Disable colored output.",
    is_eager=True,
    expose_value=False,
    callback=lambda ctx, param, value: set_no_color(value) if value else None,
)
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="WARNING",
    show_default=True,
    help="Minimum level of structured log output.",
)
@click.option("--log-json", is_flag=True, default=False, help="Emit logs as JSON lines.")
def cli(log_level: str, log_json: bool) -> None:
    """sqlwave - dependency-aware SQL transformation runner.

    Renders templated SQL models, orders them by their `ref()`/`source()`
    dependencies and materializes them wave by wave, then runs data tests.

    **Getting Started:**

    - `sqlwave validate` - Check the project without touching the warehouse
    - `sqlwave plan` - Show execution waves
    - `sqlwave compile` - Write rendered SQL to target/compiled
    - `sqlwave run` - Materialize models and run tests
    - `sqlwave test` - Run tests against existing relations
    """
    configure_logging(log_level=log_level, json_format=log_json)


if __name__ == "__main__":
    cli()
