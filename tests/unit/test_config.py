"""Unit tests for configuration models."""

from __future__ import annotations

from pathlib import Path

import pytest
from pydantic import ValidationError

from sqlwave.config import ProjectConfig, RetryConfig, RunConfig, TestPolicy
from sqlwave.errors import ConfigurationError


class TestRetryConfig:
    """Tests for RetryConfig."""

    def test_defaults(self) -> None:
        """Test default retry policy."""
        config = RetryConfig()
        assert config.max_attempts == 3
        assert config.initial_wait_seconds == 0.5

    def test_max_wait_below_initial_rejected(self) -> None:
        """Test max wait must not be below the initial wait."""
        with pytest.raises(ValidationError, match="max_wait_seconds"):
            RetryConfig(initial_wait_seconds=5.0, max_wait_seconds=1.0)

    def test_frozen(self) -> None:
        """Test config is immutable."""
        config = RetryConfig()
        with pytest.raises(ValidationError):
            config.max_attempts = 5  # type: ignore[misc]


class TestRunConfig:
    """Tests for RunConfig."""

    def test_defaults(self) -> None:
        """Test tests run after all waves by default."""
        config = RunConfig()
        assert config.test_policy is TestPolicy.AFTER_ALL
        assert config.threads is None
        assert config.fail_fast is False
        assert config.select == []

    def test_policy_from_string(self) -> None:
        """Test the policy accepts its string value."""
        config = RunConfig(test_policy="after_each_wave")
        assert config.test_policy is TestPolicy.AFTER_EACH_WAVE

    @pytest.mark.parametrize("threads", [0, 65])
    def test_threads_bounds(self, threads: int) -> None:
        """Test thread count is bounded."""
        with pytest.raises(ValidationError):
            RunConfig(threads=threads)

    def test_rejects_unknown_fields(self) -> None:
        """Test extra fields are rejected."""
        with pytest.raises(ValidationError):
            RunConfig(thread=4)  # type: ignore[call-arg]


class TestProjectConfig:
    """Tests for ProjectConfig."""

    def test_from_yaml(self, tmp_path: Path) -> None:
        """Test loading a project file with dashed keys."""
        path = tmp_path / "sqlwave_project.yml"
        path.write_text(
            "name: data_pipeline\n"
            "profile: data_pipeline\n"
            "model-paths: [transform]\n"
            "target-path: build\n"
            "vars:\n  min_order_key: 10\n"
        )
        config = ProjectConfig.from_yaml(path)
        assert config.name == "data_pipeline"
        assert config.model_paths == ["transform"]
        assert config.macro_paths == ["macros"]
        assert config.target_path == "build"
        assert config.vars == {"min_order_key": 10}

    def test_missing_file(self, tmp_path: Path) -> None:
        """Test a missing project file is a configuration error."""
        with pytest.raises(ConfigurationError, match="Project file not found"):
            ProjectConfig.from_yaml(tmp_path / "sqlwave_project.yml")

    def test_invalid_yaml(self, tmp_path: Path) -> None:
        """Test malformed YAML is a configuration error."""
        path = tmp_path / "sqlwave_project.yml"
        path.write_text("name: [unclosed\n")
        with pytest.raises(ConfigurationError, match="Invalid YAML"):
            ProjectConfig.from_yaml(path)

    def test_invalid_name(self, tmp_path: Path) -> None:
        """Test project names must be identifiers."""
        path = tmp_path / "sqlwave_project.yml"
        path.write_text("name: data-pipeline\n")
        with pytest.raises(ConfigurationError) as exc_info:
            ProjectConfig.from_yaml(path)
        assert exc_info.value.field_path == "name"

    def test_folder_config_nested_under_project(self) -> None:
        """Test the most specific folder wins and '+' prefixes are stripped."""
        config = ProjectConfig(
            name="data_pipeline",
            models={
                "data_pipeline": {
                    "+materialized": "view",
                    "marts": {"+materialized": "table", "finance": {"+schema": "finance"}},
                }
            },
        )
        assert config.folder_config(()) == {"materialized": "view"}
        assert config.folder_config(("staging",)) == {"materialized": "view"}
        assert config.folder_config(("marts", "finance")) == {
            "materialized": "table",
            "schema": "finance",
        }

    def test_folder_config_without_project_key(self) -> None:
        """Test folder configs may omit the project name level."""
        config = ProjectConfig(name="p", models={"marts": {"materialized": "table"}})
        assert config.folder_config(("marts",)) == {"materialized": "table"}
