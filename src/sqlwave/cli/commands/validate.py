"""sqlwave validate command - pre-flight checks without running models."""

from __future__ import annotations

import click

from sqlwave.cli.commands._options import project_options
from sqlwave.cli.errors import CLIError
from sqlwave.cli.output import print_json, print_preflight_result, success


@click.command()
@project_options
@click.option(
    "--check-connection",
    is_flag=True,
    default=False,
    help="Also open one warehouse connection and run a trivial query.",
)
@click.option("--json", "as_json", is_flag=True, default=False, help="Output as JSON.")
def validate(
    project_dir: str,
    profiles_dir: str | None,
    target_name: str | None,
    select: tuple[str, ...],
    check_connection: bool,
    as_json: bool,
) -> None:
    """Validate the project without materializing anything.

    Parses every file, resolves `ref()`/`source()` targets, detects cycles
    and renders every selected model and test.

    Examples:

        sqlwave validate

        sqlwave validate --target prod --check-connection
    """
    from sqlwave.preflight import PreflightRunner

    result = PreflightRunner(
        project_dir,
        profiles_dir=profiles_dir,
        target_name=target_name,
        select=list(select),
        check_connection=check_connection,
    ).run()

    if as_json:
        print_json({"passed": result.passed, **result.model_dump(mode="json")})
    else:
        print_preflight_result(result)

    if result.failed:
        failed = next(c for c in result.checks if c.failed)
        raise CLIError(f"Pre-flight check '{failed.name}' failed: {failed.message}")
    if not as_json:
        success("Project valid")
