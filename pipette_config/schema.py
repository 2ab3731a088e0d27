"""
LoaderConfiguration schema.

Defines the human-authored configuration artifact for a pipette run. YAML
files are parsed into these types by the loader and checked by the
validator; the ingestion engine only ever sees the frozen result.

A configuration groups destinations under target namespaces::

    version: 1
    targets:
      events:                 # target namespace
        warehouse:            # destination name
          adapter: postgres
          connection: postgresql://loader:${PG_PASSWORD}@db/analytics
          schema: raw
          target: events
          storage-strategy: explicit-json-overflow
          ingestion-strategy: merge
          columns:
            - {name: id, pk: true}
            - {name: payload, type: jsonb}
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

# ---------------------------------------------------------------------------
# Strategies
# ---------------------------------------------------------------------------


class StorageStrategy(str, Enum):
    """How an incoming record maps onto the destination's columns."""

    JSON = "json"
    TEXT = "text"
    CSV_ARRAY = "csv-array"
    EXPLICIT = "explicit"
    EXPLICIT_JSON_OVERFLOW = "explicit-json-overflow"

    @property
    def is_simple(self) -> bool:
        """Fixed four-column layout with a single payload column."""
        return self in _SIMPLE_STORAGE


_SIMPLE_STORAGE = frozenset(
    {StorageStrategy.JSON, StorageStrategy.TEXT, StorageStrategy.CSV_ARRAY}
)


class IngestionStrategy(str, Enum):
    """How a batch of prepared records is applied to the destination."""

    INSERT = "insert"
    APPEND = "append"
    REFRESH = "refresh"
    MERGE = "merge"


# Column types bound as structured values rather than coerced to text.
STRUCTURED_TYPES = frozenset({"json", "jsonb"})

# Columns every table carries besides the configured ones. A configured
# column may not reuse these names.
RECORD_ID_COLUMN = "record_id"
RECORD_NUMBER_COLUMN = "record_number"
PAYLOAD_COLUMN = "data"
LOADED_AT_COLUMN = "_etl_loaded_at"

RESERVED_COLUMNS = frozenset(
    {RECORD_ID_COLUMN, RECORD_NUMBER_COLUMN, PAYLOAD_COLUMN, LOADED_AT_COLUMN}
)


# ---------------------------------------------------------------------------
# Destination definitions
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ColumnDef:
    """One configured column of an explicit layout."""

    name: str
    pk: bool = False
    type: str | None = None  # None means the backend's generic text type

    @property
    def is_structured(self) -> bool:
        return self.type is not None and self.type.lower() in STRUCTURED_TYPES


@dataclass(frozen=True)
class DestinationDef:
    """A single (namespace, destination) pairing that data is loaded into.

    ``connection`` may still contain ``${VAR}`` placeholders; they are
    resolved when the destination is opened, never at parse time.
    """

    name: str
    namespace: str
    adapter: str
    connection: str
    target: str
    storage_strategy: StorageStrategy
    ingestion_strategy: IngestionStrategy
    schema: str | None = None
    columns: tuple[ColumnDef, ...] = ()
    enforce_constraint: bool = False
    drop_empty_strings: bool = True

    @property
    def qualified_name(self) -> str:
        return f"{self.namespace}.{self.name}"

    @property
    def qualified_target(self) -> str:
        if self.schema:
            return f"{self.schema}.{self.target}"
        return self.target

    @property
    def column_names(self) -> tuple[str, ...]:
        return tuple(c.name for c in self.columns)

    @property
    def pk_names(self) -> tuple[str, ...]:
        return tuple(c.name for c in self.columns if c.pk)

    @property
    def non_pk_names(self) -> tuple[str, ...]:
        return tuple(c.name for c in self.columns if not c.pk)

    @property
    def structured_names(self) -> frozenset[str]:
        return frozenset(c.name for c in self.columns if c.is_structured)


@dataclass(frozen=True)
class TargetNamespaceDef:
    """A named group of destinations fed by the same input stream."""

    name: str
    destinations: tuple[DestinationDef, ...]

    def destination_names(self) -> tuple[str, ...]:
        return tuple(d.name for d in self.destinations)


# ---------------------------------------------------------------------------
# Runtime defaults
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RuntimeDef:
    """Defaults the CLI applies when no flag overrides them."""

    batch_size: int = 5000
    max_workers: int = 8
    preserve_order: bool = False
    # None leaves batch scheduling unbounded.
    max_in_flight: int | None = None


# ---------------------------------------------------------------------------
# Root
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class LoaderConfiguration:
    """Root configuration object. Immutable once parsed."""

    version: int
    targets: tuple[TargetNamespaceDef, ...]
    runtime: RuntimeDef = RuntimeDef()
    checksum: str = ""

    def namespace(self, name: str) -> TargetNamespaceDef | None:
        for ns in self.targets:
            if ns.name == name:
                return ns
        return None

    def namespace_names(self) -> tuple[str, ...]:
        return tuple(ns.name for ns in self.targets)
