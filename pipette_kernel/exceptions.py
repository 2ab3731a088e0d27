"""
Typed Exception Hierarchy for pipette.

Every error has a typed class, a ``code`` class attribute (machine-readable,
stable across message wording changes) and keeps its context as attributes
so the CLI and the structured log formatter can report it without parsing
message strings.

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

    PipetteError (base)
    |
    +-- ConfigurationError
    |   +-- IncompatibleStrategyError
    |   +-- MissingColumnsError
    |
    +-- UnsupportedAdapterError
    |   +-- UnsupportedBackendError
    |   +-- UnsupportedStorageStrategyError
    |   +-- UnsupportedIngestionStrategyError
    |
    +-- StreamError
    |   +-- DecodeError
    |   +-- FilterProcessError
    |
    +-- LifecycleError
    |
    +-- IngestionError
    |   +-- RecordShapeError
    |
    +-- IngestionFailedError

===============================================================================
ERROR CODES - QUICK REFERENCE
===============================================================================

Category      | Code                            | When Raised
--------------|---------------------------------|-------------------------------------
Configuration | CONFIGURATION_ERROR             | Bad or missing configuration value
              | INCOMPATIBLE_STRATEGY           | Simple storage combined with merge
              | MISSING_COLUMNS                 | Column list or pk column required
--------------|---------------------------------|-------------------------------------
Adapter       | UNSUPPORTED_BACKEND             | No adapter registered for backend
              | UNSUPPORTED_STORAGE_STRATEGY    | Adapter lacks storage layout
              | UNSUPPORTED_INGESTION_STRATEGY  | Adapter lacks ingestion mode
--------------|---------------------------------|-------------------------------------
Stream        | DECODE_ERROR                    | Input line is not valid JSON
              | FILTER_PROCESS_FAILED           | Reshaping filter failed or exited != 0
--------------|---------------------------------|-------------------------------------
Lifecycle     | LIFECYCLE_FAILED                | Backend failure while preparing target
--------------|---------------------------------|-------------------------------------
Ingestion     | INGESTION_ERROR                 | Backend write failure for one batch
              | RECORD_SHAPE_ERROR              | Record is not an object
              | INGESTION_FAILED                | Aggregate raised after the final join
"""

from __future__ import annotations

from typing import Any, Sequence


class PipetteError(Exception):
    """
    Base exception for all pipette errors.

    All subclasses must have a `code` class attribute for machine-readable
    error identification.
    """

    code: str = "PIPETTE_ERROR"


# Configuration exceptions


class ConfigurationError(PipetteError):
    """Configuration is missing, malformed or internally inconsistent."""

    code: str = "CONFIGURATION_ERROR"

    def __init__(self, message: str, *, destination: str | None = None):
        self.destination = destination
        if destination is not None:
            message = f"{destination}: {message}"
        super().__init__(message)


class IncompatibleStrategyError(ConfigurationError):
    """Storage strategy cannot be combined with the ingestion strategy."""

    code: str = "INCOMPATIBLE_STRATEGY"

    def __init__(
        self,
        destination: str,
        storage_strategy: str,
        ingestion_strategy: str,
    ):
        self.storage_strategy = storage_strategy
        self.ingestion_strategy = ingestion_strategy
        super().__init__(
            f"storage strategy '{storage_strategy}' is incompatible with "
            f"ingestion strategy '{ingestion_strategy}'",
            destination=destination,
        )


class MissingColumnsError(ConfigurationError):
    """A strategy requires columns (or primary-key columns) that are absent."""

    code: str = "MISSING_COLUMNS"

    def __init__(self, destination: str, strategy: str, requirement: str):
        self.strategy = strategy
        self.requirement = requirement
        super().__init__(
            f"strategy '{strategy}' requires {requirement}",
            destination=destination,
        )


# Adapter exceptions


class UnsupportedAdapterError(PipetteError):
    """Base for (backend, dimension) pairs with no registered implementation."""

    code: str = "UNSUPPORTED_ADAPTER"
    dimension: str = "adapter"

    def __init__(self, backend: str, value: str | None = None):
        self.backend = backend
        self.value = value
        if value is None:
            message = f"Unsupported {self.dimension}: '{backend}'"
        else:
            message = (
                f"Unsupported {self.dimension} '{value}' for backend '{backend}'"
            )
        super().__init__(message)


class UnsupportedBackendError(UnsupportedAdapterError):
    """No adapter registered for the backend identifier."""

    code: str = "UNSUPPORTED_BACKEND"
    dimension: str = "backend"


class UnsupportedStorageStrategyError(UnsupportedAdapterError):
    """Adapter has no table layout for the storage strategy."""

    code: str = "UNSUPPORTED_STORAGE_STRATEGY"
    dimension: str = "storage strategy"


class UnsupportedIngestionStrategyError(UnsupportedAdapterError):
    """Adapter cannot apply the ingestion strategy."""

    code: str = "UNSUPPORTED_INGESTION_STRATEGY"
    dimension: str = "ingestion strategy"


# Stream exceptions


class StreamError(PipetteError):
    """Base for failures reading the input stream. Always fatal."""

    code: str = "STREAM_ERROR"


class DecodeError(StreamError):
    """An input line could not be decoded as JSON."""

    code: str = "DECODE_ERROR"

    def __init__(self, line_number: int, reason: str, line: str = ""):
        self.line_number = line_number
        self.reason = reason
        self.line = line[:200]
        super().__init__(f"Invalid JSON on input line {line_number}: {reason}")


class FilterProcessError(StreamError):
    """The external reshaping filter could not run or exited non-zero."""

    code: str = "FILTER_PROCESS_FAILED"

    def __init__(
        self,
        command: Sequence[str],
        reason: str,
        returncode: int | None = None,
        stderr: str = "",
    ):
        self.command = list(command)
        self.reason = reason
        self.returncode = returncode
        self.stderr = stderr
        detail = f"Filter {' '.join(self.command)!r} failed: {reason}"
        if stderr:
            detail = f"{detail}: {stderr.strip()}"
        super().__init__(detail)


# Lifecycle exceptions


class LifecycleError(PipetteError):
    """A backend call failed while preparing a destination."""

    code: str = "LIFECYCLE_FAILED"

    def __init__(self, destination: str, target: str, stage: str, reason: str):
        self.destination = destination
        self.target = target
        self.stage = stage
        self.reason = reason
        super().__init__(
            f"{destination} ({target}): {stage} failed: {reason}"
        )


# Ingestion exceptions


class IngestionError(PipetteError):
    """A batch could not be written to a destination."""

    code: str = "INGESTION_ERROR"

    def __init__(
        self,
        destination: str,
        target: str,
        reason: str,
        batch_number: int | None = None,
    ):
        self.destination = destination
        self.target = target
        self.reason = reason
        self.batch_number = batch_number
        where = f"{destination} ({target})"
        if batch_number is not None:
            where = f"{where} batch {batch_number}"
        super().__init__(f"{where}: {reason}")


class RecordShapeError(IngestionError):
    """An explicit strategy received a record that is not a JSON object."""

    code: str = "RECORD_SHAPE_ERROR"

    def __init__(self, destination: str, target: str, record: Any):
        self.record_type = type(record).__name__
        super().__init__(
            destination,
            target,
            f"expected a JSON object, got {self.record_type}",
        )


class IngestionFailedError(PipetteError):
    """One or more tracked operations failed; raised after the final join."""

    code: str = "INGESTION_FAILED"

    def __init__(
        self,
        failures: Sequence[Any],
        operations: int,
        result: Any = None,
    ):
        self.failures = tuple(failures)
        self.operations = operations
        self.result = result
        lines = [f"{len(self.failures)} of {operations} operations failed"]
        lines.extend(f"  - {failure.describe()}" for failure in self.failures)
        super().__init__("\n".join(lines))
