"""Pre-flight validation report.

Runs the structural checks of a project one after another and reports each
as a CheckResult instead of stopping at the first exception:

- project: project file, profiles and every model/YAML/macro file parse
- graph: references resolve and the dependency graph is acyclic
- render: every selected model and test renders
- connection: the warehouse accepts a connection (optional)

A check that cannot run because an earlier one failed is skipped.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Any

import structlog
from pydantic import BaseModel, ConfigDict, Field

from sqlwave.config import RunConfig
from sqlwave.errors import SqlwaveError
from sqlwave.graph import build_graph
from sqlwave.runner import PipelineRunner, compile_project
from sqlwave.warehouse.pool import ConnectionPool

logger = structlog.get_logger(__name__)


class CheckStatus(str, Enum):
    """Status of a pre-flight check."""

    PASSED = "passed"
    FAILED = "failed"
    SKIPPED = "skipped"
    ERROR = "error"


class CheckResult(BaseModel):
    """Result of a single pre-flight check.

    Attributes:
        name: Check name (e.g., "graph").
        status: Check status.
        message: Human-readable result message.
        details: Additional details (counts, error type).
        duration_ms: Check duration in milliseconds.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str = Field(..., min_length=1, description="Check name")
    status: CheckStatus = Field(..., description="Check status")
    message: str = Field(default="", description="Result message")
    details: dict[str, Any] = Field(default_factory=dict, description="Additional details")
    duration_ms: int = Field(default=0, ge=0, description="Duration in milliseconds")

    @property
    def passed(self) -> bool:
        """Check if result indicates success."""
        return self.status in (CheckStatus.PASSED, CheckStatus.SKIPPED)

    @property
    def failed(self) -> bool:
        """Check if result indicates failure."""
        return self.status in (CheckStatus.FAILED, CheckStatus.ERROR)


class PreflightResult(BaseModel):
    """Aggregated result of all pre-flight checks."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    checks: list[CheckResult] = Field(default_factory=list, description="Check results")
    started_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    total_duration_ms: int = Field(default=0, ge=0, description="Total duration")

    @property
    def passed(self) -> bool:
        """Check if every check passed."""
        return not any(c.failed for c in self.checks)

    @property
    def failed(self) -> bool:
        """Check if any check failed."""
        return not self.passed

    def to_text(self) -> str:
        """Generate text report.

        Returns:
            Formatted text report for CLI output.
        """
        lines: list[str] = []
        lines.append("=" * 60)
        lines.append("SQLWAVE PRE-FLIGHT REPORT")
        lines.append("=" * 60)
        lines.append(f"Status: {'PASSED' if self.passed else 'FAILED'}")
        lines.append(f"Duration: {self.total_duration_ms}ms")
        lines.append("-" * 60)
        for check in self.checks:
            lines.append(f"  [{check.status.value.upper()}] {check.name}")
            if check.message:
                lines.append(f"     {check.message}")
        lines.append("=" * 60)
        return "\n".join(lines)


class PreflightRunner:
    """Run pre-flight checks for a project.

    Example:
        >>> result = PreflightRunner("data_pipeline").run()
        >>> result.passed
        True
    """

    def __init__(
        self,
        project_dir: str | Path,
        *,
        profiles_dir: str | Path | None = None,
        target_name: str | None = None,
        select: list[str] | None = None,
        check_connection: bool = False,
    ) -> None:
        self.project_dir = Path(project_dir)
        self.profiles_dir = profiles_dir
        self.target_name = target_name
        self.select = select or []
        self.check_connection = check_connection
        self._runner: PipelineRunner | None = None
        self._log = logger.bind(component="preflight_runner", project_dir=str(self.project_dir))

    def run(self) -> PreflightResult:
        """Run all checks in order.

        Returns:
            PreflightResult with one CheckResult per check.
        """
        start = time.monotonic()
        started_at = datetime.now(UTC)
        self._log.info("preflight_started")

        checks: list[tuple[str, Callable[[], tuple[str, dict[str, Any]]]]] = [
            ("project", self._check_project),
            ("graph", self._check_graph),
            ("render", self._check_render),
        ]
        if self.check_connection:
            checks.append(("connection", self._check_connection))

        results: list[CheckResult] = []
        blocked = False
        for name, check in checks:
            if blocked:
                results.append(
                    CheckResult(
                        name=name,
                        status=CheckStatus.SKIPPED,
                        message="Skipped after earlier failure",
                    )
                )
                continue
            result = self._run_check(name, check)
            results.append(result)
            blocked = result.failed

        preflight = PreflightResult(
            checks=results,
            started_at=started_at,
            total_duration_ms=int((time.monotonic() - start) * 1000),
        )
        self._log.info(
            "preflight_completed",
            passed=preflight.passed,
            total_duration_ms=preflight.total_duration_ms,
        )
        return preflight

    def _run_check(
        self, name: str, check: Callable[[], tuple[str, dict[str, Any]]]
    ) -> CheckResult:
        start = time.monotonic()
        log = self._log.bind(check=name)
        log.info("check_started")
        try:
            message, details = check()
            status = CheckStatus.PASSED
        except SqlwaveError as e:
            message = e.user_message
            details = {"error_type": type(e).__name__}
            status = CheckStatus.FAILED
        except Exception as e:
            log.error("check_error", error=str(e))
            message = f"Check failed with error: {type(e).__name__}"
            details = {"error": str(e), "error_type": type(e).__name__}
            status = CheckStatus.ERROR
        duration_ms = int((time.monotonic() - start) * 1000)
        log.info("check_completed", status=status.value, duration_ms=duration_ms)
        return CheckResult(
            name=name,
            status=status,
            message=message,
            details=details,
            duration_ms=duration_ms,
        )

    def _check_project(self) -> tuple[str, dict[str, Any]]:
        self._runner = PipelineRunner.from_project(
            self.project_dir,
            profiles_dir=self.profiles_dir,
            target_name=self.target_name,
            config=RunConfig(select=self.select),
        )
        manifest = self._runner.manifest
        details = {
            "models": len(manifest.models),
            "sources": len(manifest.sources),
            "macros": len(manifest.macros),
            "tests": len(manifest.tests),
        }
        return f"Parsed {details['models']} models and {details['tests']} tests", details

    def _check_graph(self) -> tuple[str, dict[str, Any]]:
        runner = self._require_runner()
        graph = build_graph(runner.manifest)
        return f"{len(graph)} models, {len(graph.edges)} dependencies, no cycles", {
            "edges": len(graph.edges)
        }

    def _check_render(self) -> tuple[str, dict[str, Any]]:
        runner = self._require_runner()
        compiled = compile_project(runner.manifest, select=self.select)
        return (
            f"Rendered {len(compiled.model_sql)} models and "
            f"{len(compiled.tests)} tests in {len(compiled.plan)} waves",
            {"waves": len(compiled.plan)},
        )

    def _check_connection(self) -> tuple[str, dict[str, Any]]:
        runner = self._require_runner()
        warehouse = runner.warehouse
        with ConnectionPool(warehouse, size=1, retry=runner.config.retry) as pool:
            with pool.checkout() as connection:
                connection.execute("select 1")
        return f"Connected to {warehouse.type}", {"warehouse": warehouse.type}

    def _require_runner(self) -> PipelineRunner:
        if self._runner is None:
            raise RuntimeError("project check has not run")
        return self._runner
