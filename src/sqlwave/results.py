"""Run result models.

Per-model and per-test outcomes, the aggregated run result, the
run_results.json artifact and a text report for the CLI.
"""

from __future__ import annotations

import json
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field

from sqlwave.nodes import Severity

RUN_RESULTS_FILE_NAME = "run_results.json"


class ModelStatus(str, Enum):
    """Terminal status of a model.

    Attributes:
        SUCCESS: Materialized.
        FAILED: Rendering or a warehouse statement failed.
        SKIPPED: Not attempted (see SkipReason).
    """

    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"


class ModelState(str, Enum):
    """Lifecycle of a model within a run."""

    PENDING = "pending"
    RENDERING = "rendering"
    MATERIALIZING = "materializing"
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"


class SkipReason(str, Enum):
    """Why a model or test was not attempted."""

    UPSTREAM_FAILURE = "upstream_failure"
    TEST_FAILURE = "test_failure"
    CANCELLED = "cancelled"
    FAIL_FAST = "fail_fast"


class TestStatus(str, Enum):
    """Outcome of a data test.

    Attributes:
        PASSED: No violating rows.
        WARNED: Violations found on a ``warn`` test.
        FAILED: Violations found on an ``error`` test.
        ERROR: The test query itself failed.
        SKIPPED: A dependency did not materialize.
    """

    __test__ = False

    PASSED = "passed"
    WARNED = "warned"
    FAILED = "failed"
    ERROR = "error"
    SKIPPED = "skipped"


class ModelResult(BaseModel):
    """Outcome of one model.

    Example:
        >>> ModelResult(name="stg_orders", status=ModelStatus.SUCCESS, wave=0)
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str = Field(..., min_length=1, description="Model name")
    status: ModelStatus = Field(..., description="Terminal status")
    wave: int = Field(default=0, ge=0, description="Wave index")
    relation: str = Field(default="", description="Materialized relation")
    message: str = Field(default="", description="Failure or skip message")
    skip_reason: SkipReason | None = Field(default=None, description="Why it was skipped")
    duration_ms: int = Field(default=0, ge=0, description="Duration in milliseconds")


class TestResult(BaseModel):
    """Outcome of one data test."""

    __test__ = False

    model_config = ConfigDict(frozen=True, extra="forbid")

    unique_id: str = Field(..., min_length=1, description="Test id")
    status: TestStatus = Field(..., description="Test outcome")
    severity: Severity = Field(default=Severity.ERROR, description="Configured severity")
    failures: int = Field(default=0, ge=0, description="Violating rows")
    message: str = Field(default="", description="Violation or error message")
    models: list[str] = Field(default_factory=list, description="Models the test reads")
    duration_ms: int = Field(default=0, ge=0, description="Duration in milliseconds")

    @property
    def fails_run(self) -> bool:
        """Whether this outcome fails the run."""
        return self.status in (TestStatus.FAILED, TestStatus.ERROR)


class RunResult(BaseModel):
    """Aggregated outcome of a run.

    A run succeeds when no model failed, no error-severity test failed, no
    test errored and the run was not cancelled.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    models: list[ModelResult] = Field(default_factory=list)
    tests: list[TestResult] = Field(default_factory=list)
    cancelled: bool = Field(default=False, description="Run was cancelled or timed out")
    started_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    finished_at: datetime | None = Field(default=None)
    total_duration_ms: int = Field(default=0, ge=0)

    @property
    def success(self) -> bool:
        """Whether the run succeeded."""
        if self.cancelled:
            return False
        if any(m.status is ModelStatus.FAILED for m in self.models):
            return False
        return not any(t.fails_run for t in self.tests)

    @property
    def exit_code(self) -> int:
        """Process exit status: 0 on success, 1 otherwise."""
        return 0 if self.success else 1

    def model_result(self, name: str) -> ModelResult:
        """Return the result of a model.

        Raises:
            KeyError: If the model was not part of the run.
        """
        for result in self.models:
            if result.name == name:
                return result
        raise KeyError(name)

    def test_result(self, unique_id: str) -> TestResult:
        """Return the result of a test.

        Raises:
            KeyError: If the test was not part of the run.
        """
        for result in self.tests:
            if result.unique_id == unique_id:
                return result
        raise KeyError(unique_id)

    def model_counts(self) -> dict[str, int]:
        """Number of models per status."""
        return {s.value: sum(1 for m in self.models if m.status is s) for s in ModelStatus}

    def test_counts(self) -> dict[str, int]:
        """Number of tests per status."""
        return {s.value: sum(1 for t in self.tests if t.status is s) for s in TestStatus}

    def write_json(self, target_dir: str | Path) -> Path:
        """Write run_results.json.

        Args:
            target_dir: Artifact directory (created if missing).

        Returns:
            Path of the written file.
        """
        target_dir = Path(target_dir)
        target_dir.mkdir(parents=True, exist_ok=True)
        path = target_dir / RUN_RESULTS_FILE_NAME
        payload = {
            "success": self.success,
            **self.model_dump(mode="json"),
        }
        path.write_text(json.dumps(payload, indent=2) + "\n")
        return path


class RunReport(BaseModel):
    """Human-readable run report."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    result: RunResult = Field(..., description="Run result")

    def to_text(self) -> str:
        """Generate text report.

        Returns:
            Formatted text report for CLI output.
        """
        result = self.result
        lines: list[str] = []
        lines.append("=" * 60)
        lines.append("SQLWAVE RUN REPORT")
        lines.append("=" * 60)
        lines.append("")

        status = "SUCCESS" if result.success else "FAILED"
        if result.cancelled:
            status = "CANCELLED"
        lines.append(f"Status: {status}")
        counts = result.model_counts()
        lines.append(
            f"Models: {counts['success']} success, {counts['failed']} failed, "
            f"{counts['skipped']} skipped"
        )
        if result.tests:
            tcounts = result.test_counts()
            lines.append(
                f"Tests: {tcounts['passed']} passed, {tcounts['warned']} warned, "
                f"{tcounts['failed']} failed, {tcounts['error']} error, "
                f"{tcounts['skipped']} skipped"
            )
        lines.append(f"Duration: {result.total_duration_ms}ms")

        if result.models:
            lines.append("")
            lines.append("-" * 60)
            lines.append("MODELS:")
            lines.append("-" * 60)
            for model in result.models:
                lines.append(f"  [{model.status.value.upper()}] {model.name} (wave {model.wave})")
                if model.message:
                    lines.append(f"     {model.message}")

        if result.tests:
            lines.append("")
            lines.append("-" * 60)
            lines.append("TESTS:")
            lines.append("-" * 60)
            for test in result.tests:
                lines.append(f"  [{test.status.value.upper()}] {test.unique_id}")
                if test.message:
                    lines.append(f"     {test.message}")

        lines.append("")
        lines.append("=" * 60)
        return "\n".join(lines)
