"""Pydantic configuration models for sqlwave.

This module provides:
- RetryConfig: Retry policy for opening warehouse connections
- TestPolicy: When data tests run relative to materialization waves
- RunConfig: Per-invocation run options (threads, policy, selection, timeout)
- ProjectConfig: sqlwave_project.yml with folder-scoped model configuration
"""

from __future__ import annotations

from enum import Enum
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from sqlwave.errors import ConfigurationError

PROJECT_FILE_NAME = "sqlwave_project.yml"

# Folder-level config keys that may be written without the "+" prefix
MODEL_CONFIG_KEYS = frozenset({"materialized", "schema", "database", "enabled", "tags"})


class RetryConfig(BaseModel):
    """Retry policy for transient warehouse connection failures.

    Attributes:
        max_attempts: Maximum connection attempts (1-10, default 3).
        initial_wait_seconds: Initial backoff wait (0-30s, default 0.5).
        max_wait_seconds: Maximum backoff cap (0-300s, default 10.0).
        jitter_seconds: Random jitter range (0-10s, default 0.5).

    Example:
        >>> config = RetryConfig(max_attempts=5)
        >>> config.max_attempts
        5
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    max_attempts: int = Field(default=3, ge=1, le=10, description="Maximum attempts")
    initial_wait_seconds: float = Field(
        default=0.5, ge=0.0, le=30.0, description="Initial backoff wait in seconds"
    )
    max_wait_seconds: float = Field(
        default=10.0, ge=0.0, le=300.0, description="Maximum backoff wait in seconds"
    )
    jitter_seconds: float = Field(
        default=0.5, ge=0.0, le=10.0, description="Random jitter range in seconds"
    )

    @field_validator("max_wait_seconds")
    @classmethod
    def max_wait_must_exceed_initial(cls, v: float, info: object) -> float:
        """Validate that max_wait_seconds >= initial_wait_seconds."""
        data = getattr(info, "data", {})
        initial = data.get("initial_wait_seconds", 0.5)
        if v < initial:
            msg = f"max_wait_seconds ({v}) must be >= initial_wait_seconds ({initial})"
            raise ValueError(msg)
        return v


class TestPolicy(str, Enum):
    """When data tests run.

    Attributes:
        AFTER_EACH_WAVE: Tests run as soon as their models are materialized,
            before the next wave starts. Error-severity failures skip the
            tested model's dependents.
        AFTER_ALL: All tests run once every wave has finished.
    """

    __test__ = False

    AFTER_EACH_WAVE = "after_each_wave"
    AFTER_ALL = "after_all"


class RunConfig(BaseModel):
    """Options for a single pipeline invocation.

    Attributes:
        threads: Worker pool size override. Defaults to the target's threads.
        test_policy: When tests run relative to waves.
        fail_fast: Skip every not-yet-started model after the first failure.
        timeout_seconds: Cancel the run once this much time has elapsed.
        select: Node selectors ("name", "+name", "name+", "path:models/marts").
        test_ids: Tests to run, by unique id. None picks the tests of the
            selected models.
        retry: Retry policy for opening connections.

    Example:
        >>> config = RunConfig(threads=8, test_policy=TestPolicy.AFTER_EACH_WAVE)
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    threads: int | None = Field(default=None, ge=1, le=64, description="Worker pool size")
    test_policy: TestPolicy = Field(
        default=TestPolicy.AFTER_ALL, description="When data tests run"
    )
    fail_fast: bool = Field(default=False, description="Stop scheduling after first failure")
    timeout_seconds: float | None = Field(
        default=None, gt=0, description="Cancel the run after this many seconds"
    )
    select: list[str] = Field(default_factory=list, description="Node selectors")
    test_ids: list[str] | None = Field(default=None, description="Tests to run, by id")
    retry: RetryConfig = Field(default_factory=RetryConfig, description="Connect retry policy")


class ProjectConfig(BaseModel):
    """Project definition loaded from sqlwave_project.yml.

    Attributes:
        name: Project name.
        version: Project version.
        profile: Profile name to look up in profiles.yml.
        model_paths: Directories holding model SQL and YAML files.
        macro_paths: Directories holding macro files.
        test_paths: Directories holding singular tests.
        target_path: Directory for compiled SQL and run results.
        vars: Project variables available through ``var()``.
        models: Folder-scoped model configuration (``+materialized``, ``+schema``).

    Example:
        >>> config = ProjectConfig.from_yaml("sqlwave_project.yml")
        >>> config.folder_config(("marts",))
        {'materialized': 'table'}
    """

    model_config = ConfigDict(frozen=True, extra="ignore", populate_by_name=True)

    name: str = Field(
        ...,
        pattern=r"^[a-zA-Z_][a-zA-Z0-9_]*$",
        description="Project name",
    )
    version: str = Field(default="1.0.0", description="Project version")
    profile: str | None = Field(default=None, description="Profile name in profiles.yml")
    model_paths: list[str] = Field(
        default_factory=lambda: ["models"], alias="model-paths", description="Model dirs"
    )
    macro_paths: list[str] = Field(
        default_factory=lambda: ["macros"], alias="macro-paths", description="Macro dirs"
    )
    test_paths: list[str] = Field(
        default_factory=lambda: ["tests"], alias="test-paths", description="Singular test dirs"
    )
    target_path: str = Field(default="target", alias="target-path", description="Output dir")
    vars: dict[str, Any] = Field(default_factory=dict, description="Project variables")
    models: dict[str, Any] = Field(default_factory=dict, description="Folder model configs")

    @classmethod
    def from_yaml(cls, path: str | Path) -> ProjectConfig:
        """Load and validate a project file.

        Args:
            path: Path to sqlwave_project.yml.

        Returns:
            Validated ProjectConfig.

        Raises:
            ConfigurationError: If the file is missing, not valid YAML, or
                fails schema validation.
        """
        path = Path(path)
        if not path.exists():
            raise ConfigurationError("Project file not found", file_path=str(path))

        try:
            data = yaml.safe_load(path.read_text()) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(
                "Invalid YAML in project file",
                file_path=str(path),
                internal_details=str(e),
            ) from e

        if not isinstance(data, dict):
            raise ConfigurationError("Project file must be a mapping", file_path=str(path))

        try:
            return cls.model_validate(data)
        except ValidationError as e:
            first = e.errors()[0]
            field_path = ".".join(str(x) for x in first["loc"])
            raise ConfigurationError(
                f"Invalid project configuration: {first['msg']}",
                file_path=str(path),
                field_path=field_path,
                internal_details=str(e),
            ) from e

    def folder_config(self, folder: tuple[str, ...]) -> dict[str, Any]:
        """Resolve model configuration for a folder, most specific wins.

        Args:
            folder: Directory parts relative to a model path
                (e.g., ``("marts", "core")``).

        Returns:
            Merged configuration with "+" prefixes stripped.
        """
        node: Any = self.models
        # dbt-style files nest folder configs under the project name
        if isinstance(node.get(self.name), dict):
            node = node[self.name]

        resolved = _config_keys(node)
        for part in folder:
            child = node.get(part) if isinstance(node, dict) else None
            if not isinstance(child, dict):
                break
            node = child
            resolved.update(_config_keys(node))
        return resolved


def _config_keys(node: dict[str, Any]) -> dict[str, Any]:
    config: dict[str, Any] = {}
    for key, value in node.items():
        if key.startswith("+"):
            config[key[1:]] = value
        elif key in MODEL_CONFIG_KEYS and not isinstance(value, dict):
            config[key] = value
    return config
