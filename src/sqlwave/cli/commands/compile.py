"""sqlwave compile command - render models and tests to target/compiled."""

from __future__ import annotations

import click

from sqlwave.cli.commands._options import project_options
from sqlwave.cli.errors import handle_errors
from sqlwave.cli.output import success


@click.command("compile")
@project_options
def compile_cmd(
    project_dir: str,
    profiles_dir: str | None,
    target_name: str | None,
    select: tuple[str, ...],
) -> None:
    """Render every selected model and test to SQL files.

    Files are written under `<target-path>/compiled`, mirroring the project
    layout. No warehouse statement is executed.

    Examples:

        sqlwave compile

        sqlwave compile --select +fct_orders
    """
    from sqlwave.config import RunConfig
    from sqlwave.runner import PipelineRunner

    with handle_errors():
        runner = PipelineRunner.from_project(
            project_dir,
            profiles_dir=profiles_dir,
            target_name=target_name,
            config=RunConfig(select=list(select)),
        )
        compiled = runner.compile()
        if runner.target_path is not None:
            compiled.write(runner.target_path)

    success(
        f"Compiled {len(compiled.model_sql)} models and {len(compiled.tests)} tests "
        f"to {runner.target_path}"
    )
