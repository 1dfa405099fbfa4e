"""Warehouse connection profiles (profiles.yml).

A profiles file maps profile names to a default target and a set of target
outputs, in the same shape dbt uses::

    data_pipeline:
      target: dev
      outputs:
        dev:
          type: snowflake
          account: xy12345.eu-west-1
          user: "{{ env_var('SNOWFLAKE_USER') }}"
          password: "{{ env_var('SNOWFLAKE_PASSWORD') }}"
          role: transform
          warehouse: dbt_wh
          database: dbt_db
          schema: dbt_schema
          threads: 4
        local:
          type: duckdb
          path: ":memory:"

Credentials are never stored in the file: string values may use
``{{ env_var('NAME') }}`` or ``{{ env_var('NAME', 'default') }}``, resolved at
load time.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Annotated, Any, Literal

import structlog
import yaml
from jinja2 import StrictUndefined
from jinja2.sandbox import SandboxedEnvironment
from pydantic import BaseModel, ConfigDict, Field, SecretStr, ValidationError

from sqlwave.errors import ConfigurationError, SecretResolutionError

logger = structlog.get_logger(__name__)

PROFILES_FILE_NAME = "profiles.yml"
PROFILES_DIR_ENV_VAR = "SQLWAVE_PROFILES_DIR"

_MISSING = object()


class DuckDBTarget(BaseModel):
    """DuckDB target, used for local development and tests.

    Attributes:
        type: Discriminator, always "duckdb".
        path: Database file path, or ":memory:".
        database: Catalog name used when qualifying relations (optional).
        schema_name: Default schema for models.
        threads: Worker pool size / connection slots.
    """

    model_config = ConfigDict(frozen=True, extra="forbid", populate_by_name=True)

    type: Literal["duckdb"] = "duckdb"
    path: str = Field(default=":memory:", description="Database file or :memory:")
    database: str | None = Field(default=None, description="Catalog for qualified names")
    schema_name: str = Field(default="main", alias="schema", description="Default schema")
    threads: int = Field(default=4, ge=1, le=64, description="Connection slots")


class SnowflakeTarget(BaseModel):
    """Snowflake target.

    Attributes:
        type: Discriminator, always "snowflake".
        account: Snowflake account identifier.
        user: Login name.
        password: Password (resolve through env_var()).
        role: Role to assume.
        warehouse: Virtual warehouse executing queries.
        database: Database for models.
        schema_name: Default schema for models.
        threads: Worker pool size / connection slots.
        login_timeout: Seconds to wait for login.
        query_tag: Optional QUERY_TAG session parameter.
    """

    model_config = ConfigDict(frozen=True, extra="forbid", populate_by_name=True)

    type: Literal["snowflake"] = "snowflake"
    account: str = Field(..., min_length=1, description="Account identifier")
    user: str = Field(..., min_length=1, description="Login name")
    password: SecretStr = Field(..., description="Password")
    role: str | None = Field(default=None, description="Role")
    warehouse: str | None = Field(default=None, description="Virtual warehouse")
    database: str = Field(..., min_length=1, description="Database")
    schema_name: str = Field(..., alias="schema", min_length=1, description="Default schema")
    threads: int = Field(default=4, ge=1, le=64, description="Connection slots")
    login_timeout: int = Field(default=60, ge=1, le=600, description="Login timeout")
    query_tag: str | None = Field(default=None, description="QUERY_TAG session parameter")


Target = Annotated[DuckDBTarget | SnowflakeTarget, Field(discriminator="type")]


class Profile(BaseModel):
    """One profile: a default target name and its outputs."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    target: str = Field(..., min_length=1, description="Default target name")
    outputs: dict[str, Target] = Field(..., description="Targets by name")


class ProfilesConfig(BaseModel):
    """All profiles from a profiles.yml file."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    profiles: dict[str, Profile] = Field(default_factory=dict)

    @classmethod
    def from_yaml(cls, path: str | Path) -> ProfilesConfig:
        """Load profiles.yml, resolving env_var() references.

        Args:
            path: Path to profiles.yml.

        Returns:
            Validated ProfilesConfig.

        Raises:
            ConfigurationError: If the file is missing or invalid.
            SecretResolutionError: If a referenced environment variable is unset.
        """
        path = Path(path)
        if not path.exists():
            raise ConfigurationError("Profiles file not found", file_path=str(path))

        try:
            raw = yaml.safe_load(path.read_text()) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(
                "Invalid YAML in profiles file",
                file_path=str(path),
                internal_details=str(e),
            ) from e

        if not isinstance(raw, dict):
            raise ConfigurationError("Profiles file must be a mapping", file_path=str(path))

        # Global "config:" block is accepted for compatibility and ignored
        raw.pop("config", None)
        resolved = resolve_env_vars(raw)

        try:
            return cls.model_validate({"profiles": resolved})
        except ValidationError as e:
            first = e.errors()[0]
            field_path = ".".join(str(x) for x in first["loc"][1:])
            raise ConfigurationError(
                f"Invalid profile: {first['msg']}",
                file_path=str(path),
                field_path=field_path,
                internal_details=str(e),
            ) from e

    def get_target(
        self, profile_name: str, target_name: str | None = None
    ) -> DuckDBTarget | SnowflakeTarget:
        """Look up a target.

        Args:
            profile_name: Profile name.
            target_name: Target name, or None for the profile's default.

        Returns:
            The resolved target.

        Raises:
            ConfigurationError: If the profile or target does not exist.
        """
        profile = self.profiles.get(profile_name)
        if profile is None:
            available = ", ".join(sorted(self.profiles)) or "none"
            raise ConfigurationError(
                f"Profile '{profile_name}' not found. Available: {available}"
            )

        name = target_name or profile.target
        target = profile.outputs.get(name)
        if target is None:
            available = ", ".join(sorted(profile.outputs)) or "none"
            raise ConfigurationError(
                f"Target '{name}' not found in profile '{profile_name}'. Available: {available}"
            )
        return target


def find_profiles_file(profiles_dir: str | Path | None, project_dir: str | Path) -> Path:
    """Locate profiles.yml.

    Search order: explicit directory, ``SQLWAVE_PROFILES_DIR``, the project
    directory, then ``~/.sqlwave``.

    Args:
        profiles_dir: Explicit directory (e.g., from --profiles-dir).
        project_dir: Project root directory.

    Returns:
        Path to the first profiles.yml found.

    Raises:
        ConfigurationError: If no profiles.yml exists in any location.
    """
    candidates: list[Path] = []
    if profiles_dir is not None:
        candidates.append(Path(profiles_dir))
    env_dir = os.environ.get(PROFILES_DIR_ENV_VAR)
    if env_dir:
        candidates.append(Path(env_dir))
    candidates.append(Path(project_dir))
    candidates.append(Path.home() / ".sqlwave")

    for directory in candidates:
        path = directory / PROFILES_FILE_NAME
        if path.exists():
            return path

    searched = ", ".join(str(c) for c in candidates)
    raise ConfigurationError(f"{PROFILES_FILE_NAME} not found (searched: {searched})")


def _env_var(name: str, default: Any = _MISSING) -> str:
    value = os.environ.get(name)
    if value is not None:
        return value
    if default is not _MISSING:
        return str(default)
    raise SecretResolutionError(name)


_env = SandboxedEnvironment(undefined=StrictUndefined)
_env.globals["env_var"] = _env_var


def resolve_env_vars(value: Any) -> Any:
    """Recursively render ``{{ env_var(...) }}`` expressions in string values.

    Args:
        value: Parsed YAML structure.

    Returns:
        The same structure with templated strings rendered.

    Raises:
        SecretResolutionError: If an environment variable is unset and has no default.

    Example:
        >>> os.environ["SNOWFLAKE_USER"] = "loader"
        >>> resolve_env_vars({"user": "{{ env_var('SNOWFLAKE_USER') }}"})
        {'user': 'loader'}
    """
    if isinstance(value, dict):
        return {k: resolve_env_vars(v) for k, v in value.items()}
    if isinstance(value, list):
        return [resolve_env_vars(v) for v in value]
    if isinstance(value, str) and "{{" in value:
        return _env.from_string(value).render()
    return value
