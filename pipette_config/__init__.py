"""
pipette_config -- YAML configuration for pipette runs.

Responsibility:
    Parses the configuration file into frozen dataclasses, checks the
    strategy invariants of every destination, and resolves ``${VAR}``
    placeholders in connection descriptors.

Architecture position:
    Configuration layer.  Depends only on ``pipette_kernel``; the ingestion
    engine consumes the parsed ``DestinationDef`` objects and never reads
    the YAML itself.
"""

from pipette_config.interpolation import interpolate_env_vars
from pipette_config.loader import (
    compute_checksum,
    load_configuration,
    parse_configuration,
    select_destinations,
)
from pipette_config.schema import (
    STRUCTURED_TYPES,
    ColumnDef,
    DestinationDef,
    IngestionStrategy,
    LoaderConfiguration,
    RuntimeDef,
    StorageStrategy,
    TargetNamespaceDef,
)
from pipette_config.validator import (
    ConfigValidationResult,
    validate_configuration,
    validate_destination,
    validate_destinations,
)

__all__ = [
    "STRUCTURED_TYPES",
    "ColumnDef",
    "ConfigValidationResult",
    "DestinationDef",
    "IngestionStrategy",
    "LoaderConfiguration",
    "RuntimeDef",
    "StorageStrategy",
    "TargetNamespaceDef",
    "compute_checksum",
    "interpolate_env_vars",
    "load_configuration",
    "parse_configuration",
    "select_destinations",
    "validate_configuration",
    "validate_destination",
    "validate_destinations",
]
