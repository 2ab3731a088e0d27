"""
Configuration Validator (``pipette_config.validator``).

Responsibility
--------------
Checks the strategy invariants of each ``DestinationDef`` before any
backend is touched.

Invariants enforced
-------------------
* ``json``/``text``/``csv-array`` storage cannot be combined with ``merge``.
* ``merge`` requires at least one primary-key column.
* ``explicit`` requires a non-empty column list with a primary-key column.
* ``explicit-json-overflow`` requires a non-empty column list.
* Explicit layouts may not declare a column named like one the table
  always carries (``record_id``, ``record_number``, ``_etl_loaded_at``),
  nor ``data`` when overflow keeps the payload there.

Failure modes
-------------
* ``validate_destination`` raises the first violation as a typed
  ``ConfigurationError`` subclass.
* ``validate_destinations`` and ``validate_configuration`` collect every
  violation into a ``ConfigValidationResult`` without raising.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field

from pipette_config.schema import (
    LOADED_AT_COLUMN,
    PAYLOAD_COLUMN,
    RECORD_ID_COLUMN,
    RECORD_NUMBER_COLUMN,
    RESERVED_COLUMNS,
    DestinationDef,
    IngestionStrategy,
    LoaderConfiguration,
    StorageStrategy,
)
from pipette_kernel.exceptions import (
    ConfigurationError,
    IncompatibleStrategyError,
    MissingColumnsError,
)

_RESERVED_ROLES = {
    RECORD_ID_COLUMN: "the record identifier",
    RECORD_NUMBER_COLUMN: "the record number",
    PAYLOAD_COLUMN: "the overflow payload",
    LOADED_AT_COLUMN: "the load timestamp",
}


def _reserved_for(storage: StorageStrategy) -> frozenset[str]:
    """Names a configured column may not take under ``storage``."""
    if storage is StorageStrategy.EXPLICIT_JSON_OVERFLOW:
        return RESERVED_COLUMNS
    return RESERVED_COLUMNS - {PAYLOAD_COLUMN}


@dataclass
class ConfigValidationResult:
    """
    Result of configuration validation.

    ``is_valid`` returns ``True`` only when ``errors`` is empty.
    """

    errors: list[str] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return len(self.errors) == 0

    def add_error(self, msg: str) -> None:
        self.errors.append(msg)


def validate_destination(dest: DestinationDef) -> None:
    """
    Raise the first strategy violation found for ``dest``.

    Raises:
        IncompatibleStrategyError: simple storage combined with ``merge``.
        MissingColumnsError: required columns or primary keys are absent.
        ConfigurationError: a column name collides with a reserved column.
    """
    storage = dest.storage_strategy
    ingestion = dest.ingestion_strategy

    if storage.is_simple and ingestion is IngestionStrategy.MERGE:
        raise IncompatibleStrategyError(
            dest.qualified_name, storage.value, ingestion.value
        )

    if ingestion is IngestionStrategy.MERGE and not dest.pk_names:
        raise MissingColumnsError(
            dest.qualified_name, ingestion.value, "at least one primary-key column"
        )

    if storage is StorageStrategy.EXPLICIT:
        if not dest.columns:
            raise MissingColumnsError(
                dest.qualified_name, storage.value, "a non-empty column list"
            )
        if not dest.pk_names:
            raise MissingColumnsError(
                dest.qualified_name, storage.value, "at least one primary-key column"
            )

    if storage is StorageStrategy.EXPLICIT_JSON_OVERFLOW:
        if not dest.columns:
            raise MissingColumnsError(
                dest.qualified_name, storage.value, "a non-empty column list"
            )

    if not storage.is_simple:
        reserved = _reserved_for(storage)
        for name in dest.column_names:
            if name in reserved:
                raise ConfigurationError(
                    f"column '{name}' is reserved for {_RESERVED_ROLES[name]}",
                    destination=dest.qualified_name,
                )

    seen: set[str] = set()
    for name in dest.column_names:
        if name in seen:
            raise ConfigurationError(
                f"duplicate column '{name}'", destination=dest.qualified_name
            )
        seen.add(name)


def validate_destinations(
    destinations: Iterable[DestinationDef],
    result: ConfigValidationResult | None = None,
) -> ConfigValidationResult:
    """Validate each destination, collecting every violation into ``result``."""
    if result is None:
        result = ConfigValidationResult()
    for dest in destinations:
        try:
            validate_destination(dest)
        except ConfigurationError as exc:
            result.add_error(str(exc))
    return result


def validate_configuration(config: LoaderConfiguration) -> ConfigValidationResult:
    """Validate every destination of every namespace, collecting all errors."""
    result = ConfigValidationResult()
    for ns in config.targets:
        if not ns.destinations:
            result.add_error(f"namespace '{ns.name}' has no destinations")
        validate_destinations(ns.destinations, result)
    return result
