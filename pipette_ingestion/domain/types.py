"""
pipette_ingestion.domain.types -- Pure dataclasses for the ingestion engine.

ZERO I/O.  Imports only from pipette_config.schema (strategy enums) and the
standard library.

Reuses:
    - StorageStrategy, IngestionStrategy and the reserved column names
      from pipette_config.schema
"""

from __future__ import annotations

from concurrent.futures import Future
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterator

from pipette_config.schema import (  # noqa: F401  re-exported
    LOADED_AT_COLUMN,
    PAYLOAD_COLUMN,
    RECORD_ID_COLUMN,
    RECORD_NUMBER_COLUMN,
    RESERVED_COLUMNS,
    IngestionStrategy,
    StorageStrategy,
)

# A storage-ready row: column name -> value, always carrying LOADED_AT_COLUMN.
# Built fresh per record, per destination, per batch.
PreparedRecord = dict[str, Any]


# =============================================================================
# Ingestion modes
# =============================================================================


class IngestMode(str, Enum):
    """The write an ingestion strategy resolves to."""

    INSERT = "insert"
    UPSERT = "upsert"


_INGEST_MODES: dict[IngestionStrategy, IngestMode] = {
    IngestionStrategy.INSERT: IngestMode.INSERT,
    IngestionStrategy.APPEND: IngestMode.INSERT,
    IngestionStrategy.REFRESH: IngestMode.INSERT,
    IngestionStrategy.MERGE: IngestMode.UPSERT,
}


def ingest_mode_for(strategy: IngestionStrategy) -> IngestMode:
    """Resolve ``append``/``refresh`` to insert and ``merge`` to upsert."""
    return _INGEST_MODES[strategy]


# =============================================================================
# Batches
# =============================================================================


@dataclass(frozen=True)
class Batch:
    """An immutable, numbered slice of the input stream.

    ``number`` is 1-based.  Every destination reads the same Batch, so
    transformers must never mutate ``records`` or the values inside it.
    """

    number: int
    records: tuple[Any, ...]

    def __len__(self) -> int:
        return len(self.records)

    def __iter__(self) -> Iterator[Any]:
        return iter(self.records)


# =============================================================================
# Tracked operations
# =============================================================================


class OperationStatus(str, Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass(frozen=True)
class TrackedOperation:
    """Handle to one (batch, destination) ingestion call.

    Retained by the dispatcher for the whole run and joined exactly once.
    """

    batch_number: int
    destination: str
    target: str
    storage_strategy: StorageStrategy
    ingestion_strategy: IngestionStrategy
    future: Future = field(compare=False, repr=False)

    @property
    def status(self) -> OperationStatus:
        if not self.future.done():
            return OperationStatus.PENDING
        if self.future.exception() is not None:
            return OperationStatus.FAILED
        return OperationStatus.SUCCEEDED


@dataclass(frozen=True)
class OperationFailure:
    """A tracked operation that raised, with enough context to diagnose it."""

    batch_number: int
    destination: str
    target: str
    storage_strategy: StorageStrategy
    ingestion_strategy: IngestionStrategy
    error: BaseException = field(compare=False)

    @classmethod
    def from_operation(
        cls, op: TrackedOperation, error: BaseException
    ) -> OperationFailure:
        return cls(
            batch_number=op.batch_number,
            destination=op.destination,
            target=op.target,
            storage_strategy=op.storage_strategy,
            ingestion_strategy=op.ingestion_strategy,
            error=error,
        )

    @property
    def error_code(self) -> str:
        return getattr(self.error, "code", type(self.error).__name__)

    def describe(self) -> str:
        return (
            f"{self.destination} -> {self.target} "
            f"[{self.storage_strategy.value}/{self.ingestion_strategy.value}] "
            f"batch {self.batch_number}: {self.error_code}: {self.error}"
        )


# =============================================================================
# Run result
# =============================================================================


@dataclass(frozen=True)
class StreamIngestResult:
    """Summary of a completed run, produced after every operation joined."""

    batches: int
    records: int
    operations: int
    rows_written: int
    failures: tuple[OperationFailure, ...] = ()

    @property
    def succeeded(self) -> bool:
        return not self.failures
