"""Custom exception hierarchy for sqlwave.

This module defines the exception classes used throughout sqlwave:
- SqlwaveError: Base exception for all sqlwave errors
- ParseError, ConfigurationError, SecretResolutionError: project loading
- UnresolvedReferenceError, MacroArityError: template rendering
- UnknownReferenceError, CyclicDependencyError: dependency graph building
- WarehouseError, MaterializationError, TestViolationError: run time

Structural errors (parse, reference, cycle) are raised during the pre-flight
pass, before any statement reaches the warehouse. Runtime errors are isolated
per model or test and aggregated into the run result.

User-facing messages are safe to display; technical details are logged
internally via structlog.
"""

from __future__ import annotations

import structlog

logger = structlog.get_logger(__name__)


class SqlwaveError(Exception):
    """Base exception for sqlwave.

    Args:
        user_message: Safe message to display to the user.
        internal_details: Optional technical details for logging. This is
            logged internally but never part of the user message.

    Example:
        >>> raise SqlwaveError(
        ...     "Project invalid",
        ...     internal_details="models/stg_orders.sql: unexpected end of template",
        ... )
    """

    def __init__(
        self,
        user_message: str,
        *,
        internal_details: str | None = None,
    ) -> None:
        super().__init__(user_message)
        self.user_message = user_message

        if internal_details:
            logger.error(
                "sqlwave_error",
                error_type=self.__class__.__name__,
                user_message=user_message,
                internal_details=internal_details,
            )


class ParseError(SqlwaveError):
    """Raised when a template or YAML declaration is malformed.

    Attributes:
        file_path: Path to the offending file (if known).
        line_number: Line number in the file (if available).

    Example:
        >>> raise ParseError(
        ...     "Unexpected end of template",
        ...     file_path="models/staging/stg_orders.sql",
        ...     line_number=12,
        ... )
        # User sees: "Unexpected end of template (in models/staging/stg_orders.sql, line 12)"
    """

    def __init__(
        self,
        user_message: str,
        *,
        file_path: str | None = None,
        line_number: int | None = None,
        internal_details: str | None = None,
    ) -> None:
        context_parts: list[str] = []
        if file_path:
            context_parts.append(f"in {file_path}")
        if line_number:
            context_parts.append(f"line {line_number}")

        if context_parts:
            full_message = f"{user_message} ({', '.join(context_parts)})"
        else:
            full_message = user_message

        super().__init__(full_message, internal_details=internal_details)

        self.file_path = file_path
        self.line_number = line_number


class ConfigurationError(SqlwaveError):
    """Raised when project or profile configuration is invalid.

    Attributes:
        file_path: Path to the configuration file (if known).
        field_path: Dot-separated path to the invalid field (e.g., "outputs.dev.type").

    Example:
        >>> raise ConfigurationError(
        ...     "Target 'prod' not found",
        ...     file_path="profiles.yml",
        ...     field_path="data_pipeline.outputs",
        ... )
    """

    def __init__(
        self,
        user_message: str,
        *,
        file_path: str | None = None,
        field_path: str | None = None,
        internal_details: str | None = None,
    ) -> None:
        context_parts: list[str] = []
        if file_path:
            context_parts.append(f"in {file_path}")
        if field_path:
            context_parts.append(f"field '{field_path}'")

        if context_parts:
            full_message = f"{user_message} ({', '.join(context_parts)})"
        else:
            full_message = user_message

        super().__init__(full_message, internal_details=internal_details)

        self.file_path = file_path
        self.field_path = field_path


class SecretResolutionError(SqlwaveError):
    """Raised when an ``env_var()`` reference in profiles.yml cannot be resolved.

    Example:
        >>> raise SecretResolutionError("SNOWFLAKE_PASSWORD")
        # User sees: "Environment variable 'SNOWFLAKE_PASSWORD' is not set and has no default"
    """

    def __init__(self, env_var: str, *, internal_details: str | None = None) -> None:
        super().__init__(
            f"Environment variable '{env_var}' is not set and has no default",
            internal_details=internal_details,
        )
        self.env_var = env_var


class UnresolvedReferenceError(SqlwaveError):
    """Raised when a template symbol is missing from the symbol table.

    Attributes:
        symbol: The unresolved symbol as written (e.g., "ref('stg_ordrs')").
        kind: Symbol kind ("ref", "source", "macro", "var", "name").
        template: Name of the template being rendered (if known).

    Example:
        >>> raise UnresolvedReferenceError("stg_ordrs", kind="ref", template="fct_orders")
        # User sees: "Unresolved ref 'stg_ordrs' in fct_orders"
    """

    def __init__(
        self,
        symbol: str,
        *,
        kind: str,
        template: str | None = None,
        internal_details: str | None = None,
    ) -> None:
        location = f" in {template}" if template else ""
        super().__init__(
            f"Unresolved {kind} '{symbol}'{location}",
            internal_details=internal_details,
        )
        self.symbol = symbol
        self.kind = kind
        self.template = template


class MacroArityError(SqlwaveError):
    """Raised when a macro is invoked with the wrong arguments.

    Attributes:
        macro: Macro name.
        min_args: Number of required parameters.
        max_args: Total number of parameters.
        given: Number of arguments supplied.

    Example:
        >>> raise MacroArityError("discounted_amount", min_args=2, max_args=3, given=1)
        # User sees: "Macro 'discounted_amount' takes 2 to 3 argument(s), got 1"
    """

    def __init__(
        self,
        macro: str,
        *,
        min_args: int,
        max_args: int,
        given: int,
        detail: str | None = None,
        internal_details: str | None = None,
    ) -> None:
        if min_args == max_args:
            expected = f"{min_args}"
        else:
            expected = f"{min_args} to {max_args}"
        message = f"Macro '{macro}' takes {expected} argument(s), got {given}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message, internal_details=internal_details)
        self.macro = macro
        self.min_args = min_args
        self.max_args = max_args
        self.given = given


class UnknownReferenceError(SqlwaveError):
    """Raised when a ``ref``/``source`` target does not exist in the project.

    Attributes:
        consumer: Node that holds the reference.
        target: The referenced name.
        kind: "ref" or "source".
        available: Known names of that kind, for actionable feedback.

    Example:
        >>> raise UnknownReferenceError("fct_orders", "stg_ordrs", kind="ref",
        ...                             available=["stg_orders"])
        # User sees: "fct_orders references unknown model 'stg_ordrs'. Available: stg_orders"
    """

    def __init__(
        self,
        consumer: str,
        target: str,
        *,
        kind: str,
        available: list[str] | None = None,
        internal_details: str | None = None,
    ) -> None:
        noun = "model" if kind == "ref" else "source"
        available = available or []
        available_str = ", ".join(available) if available else "none"
        super().__init__(
            f"{consumer} references unknown {noun} '{target}'. Available: {available_str}",
            internal_details=internal_details,
        )
        self.consumer = consumer
        self.target = target
        self.kind = kind
        self.available = available


class CyclicDependencyError(SqlwaveError):
    """Raised when model dependencies form a cycle.

    Attributes:
        cycle: Model names along the cycle, first name repeated at the end.

    Example:
        >>> raise CyclicDependencyError(["a", "b", "a"])
        # User sees: "Cyclic dependency detected: a -> b -> a"
    """

    def __init__(self, cycle: list[str], *, internal_details: str | None = None) -> None:
        super().__init__(
            f"Cyclic dependency detected: {' -> '.join(cycle)}",
            internal_details=internal_details,
        )
        self.cycle = cycle

    @property
    def members(self) -> set[str]:
        """Distinct model names taking part in the cycle."""
        return set(self.cycle)


class WarehouseError(SqlwaveError):
    """Raised when the warehouse rejects a statement."""


class WarehouseConnectionError(WarehouseError):
    """Raised when a warehouse connection cannot be opened or is lost."""


class MaterializationError(SqlwaveError):
    """Raised when a model cannot be materialized.

    The runner catches this per model; the model becomes ``failed`` and its
    dependents ``skipped``.

    Attributes:
        model: Model name.
        reason: Short failure reason.
    """

    def __init__(self, model: str, reason: str, *, internal_details: str | None = None) -> None:
        super().__init__(
            f"Failed to materialize '{model}': {reason}",
            internal_details=internal_details,
        )
        self.model = model
        self.reason = reason


class TestViolationError(SqlwaveError):
    """Raised when a data test returns violating rows.

    Attributes:
        test: Test unique id.
        failures: Number of violating rows.
        severity: "error" or "warn".
    """

    __test__ = False

    def __init__(
        self,
        test: str,
        failures: int,
        *,
        severity: str,
        internal_details: str | None = None,
    ) -> None:
        super().__init__(
            f"Test '{test}' found {failures} violating row(s) (severity: {severity})",
            internal_details=internal_details,
        )
        self.test = test
        self.failures = failures
        self.severity = severity


class RunFailedError(SqlwaveError):
    """Raised by scheduler tasks when the underlying run did not succeed."""
