"""
Database adapter protocol and the shared SQLAlchemy Core implementation.

Contract:
    ``DatabaseAdapter`` is the capability set every backend implements:
    table lifecycle (exists / make / truncate / reset sequence), index
    lifecycle (check / make), batch preparation and record ingestion.
    Each operation receives the destination's ``Engine`` explicitly; the
    adapter holds no per-destination connection state.

    ``SqlAlchemyAdapter`` implements the parts that SQLAlchemy Core makes
    dialect-neutral (layout, inspection, grouped inserts) and leaves the
    dialect-specific DDL and upsert construct to subclasses.

Architecture: pipette_ingestion/adapters.  Imports pipette_config (frozen
destination definitions), pipette_ingestion.domain/transform and
SQLAlchemy.  No service imports.

Invariants enforced:
    - Every table carries ``record_id``, ``record_number`` and
      ``_etl_loaded_at`` whatever the storage strategy.
    - ``ingest_records`` prepares the batch itself; one load timestamp per
      call.
    - Rows are written in groups sharing one column set, so a column a
      record does not carry is never bound as NULL.
    - Upserts collapse rows sharing a primary key inside one batch, keeping
      the last occurrence.
    - Each ``ingest_records`` call runs in its own transaction.
"""

from __future__ import annotations

import contextlib
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, ContextManager, Iterable, Protocol, Sequence, runtime_checkable

from sqlalchemy import (
    Column,
    DateTime,
    MetaData,
    Table,
    Text,
    create_engine,
    inspect,
    select,
)
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.sql.expression import Executable
from sqlalchemy.types import TypeEngine, UserDefinedType

from pipette_config.schema import (
    ColumnDef,
    DestinationDef,
    IngestionStrategy,
    StorageStrategy,
)
from pipette_ingestion.domain.types import (
    LOADED_AT_COLUMN,
    PAYLOAD_COLUMN,
    RECORD_NUMBER_COLUMN,
    Batch,
    IngestMode,
    PreparedRecord,
    ingest_mode_for,
)
from pipette_ingestion.transform.records import prepare_records
from pipette_kernel.domain.clock import Clock, SystemClock
from pipette_kernel.logging_config import get_logger

logger = get_logger("ingestion.adapters")


# =============================================================================
# Protocol
# =============================================================================


@runtime_checkable
class DatabaseAdapter(Protocol):
    """Protocol every database backend implements.

    Contract:
        - ``backend``: identifier used in configuration (``adapter:``).
        - ``supports_storage`` / ``supports_ingestion``: capability checks
          made during lifecycle setup, before any DDL is issued.
        - Table and index operations are idempotent from the caller's
          point of view only through the lifecycle's exists/missing branch.

    Non-goals:
        - Does NOT retry failed writes.
        - Does NOT coordinate across destinations.
    """

    @property
    def backend(self) -> str: ...

    def supports_storage(self, strategy: StorageStrategy) -> bool: ...

    def supports_ingestion(self, strategy: IngestionStrategy) -> bool: ...

    def connect(self, url: str) -> Engine: ...

    def build_table(self, dest: DestinationDef) -> Table: ...

    def table_exists(self, engine: Engine, dest: DestinationDef) -> bool: ...

    def make_table(self, engine: Engine, dest: DestinationDef) -> Table: ...

    def truncate_table(self, engine: Engine, dest: DestinationDef) -> None: ...

    def reset_sequence(self, engine: Engine, dest: DestinationDef) -> None: ...

    def check_primary_index(self, engine: Engine, dest: DestinationDef) -> str | None: ...

    def make_index(self, engine: Engine, dest: DestinationDef) -> None: ...

    def prepare_record_batch(
        self,
        batch: Batch,
        dest: DestinationDef,
        loaded_at: datetime | None = None,
    ) -> list[PreparedRecord]: ...

    def ingest_records(
        self,
        engine: Engine,
        table: Table,
        batch: Batch,
        dest: DestinationDef,
    ) -> int: ...

    def read_table(
        self, engine: Engine, dest: DestinationDef, limit: int | None = None
    ) -> list[dict[str, Any]]: ...


# =============================================================================
# Column types
# =============================================================================


class RawColumnType(UserDefinedType):
    """A column type rendered verbatim from configuration (``numeric(12,2)``)."""

    cache_ok = True

    def __init__(self, spec: str):
        self.spec = spec

    def get_col_spec(self, **kw: Any) -> str:
        return self.spec


# =============================================================================
# Row helpers
# =============================================================================


def dedupe_by_key(
    rows: Sequence[PreparedRecord], key_names: Sequence[str]
) -> list[PreparedRecord]:
    """Keep the last row for each primary-key value, in first-seen order."""
    latest: dict[tuple[Any, ...], PreparedRecord] = {}
    for row in rows:
        key = tuple(_hashable(row.get(name)) for name in key_names)
        latest[key] = row
    return list(latest.values())


def _hashable(value: Any) -> Any:
    if isinstance(value, (dict, list)):
        return repr(value)
    return value


def group_by_columns(
    rows: Iterable[PreparedRecord],
) -> list[tuple[tuple[str, ...], list[PreparedRecord]]]:
    """Group rows by their column set, keeping the first-seen group order."""
    groups: dict[tuple[str, ...], list[PreparedRecord]] = {}
    for row in rows:
        groups.setdefault(tuple(sorted(row)), []).append(row)
    return list(groups.items())


# =============================================================================
# SQLAlchemy base
# =============================================================================


class SqlAlchemyAdapter(ABC):
    """Shared SQLAlchemy Core implementation of ``DatabaseAdapter``."""

    backend: str = ""
    storage_strategies: frozenset[StorageStrategy] = frozenset(StorageStrategy)
    ingestion_strategies: frozenset[IngestionStrategy] = frozenset(IngestionStrategy)

    def __init__(self, clock: Clock | None = None, echo: bool = False):
        self._clock = clock or SystemClock()
        self._echo = echo

    # -- capabilities ------------------------------------------------------

    def supports_storage(self, strategy: StorageStrategy) -> bool:
        return strategy in self.storage_strategies

    def supports_ingestion(self, strategy: IngestionStrategy) -> bool:
        return strategy in self.ingestion_strategies

    # -- connection --------------------------------------------------------

    def engine_options(self) -> dict[str, Any]:
        return {}

    def connect(self, url: str) -> Engine:
        engine = create_engine(url, echo=self._echo, **self.engine_options())
        logger.info(
            "engine_initialized",
            extra={"backend": self.backend, "dialect": engine.dialect.name},
        )
        return engine

    # -- layout ------------------------------------------------------------

    @abstractmethod
    def identity_columns(self) -> list[Column]:
        """``record_id`` and ``record_number`` columns for this dialect."""

    @abstractmethod
    def payload_type(self, strategy: StorageStrategy) -> TypeEngine:
        """Type of the ``data`` column for the simple storage strategies."""

    @abstractmethod
    def json_type(self, type_name: str = "json") -> TypeEngine:
        """Structured type for ``json``/``jsonb`` columns and overflow."""

    def table_options(self) -> dict[str, Any]:
        return {}

    def column_type(self, column: ColumnDef) -> TypeEngine:
        if column.type is None:
            return Text()
        if column.is_structured:
            return self.json_type(column.type.lower())
        return RawColumnType(column.type)

    def build_table(self, dest: DestinationDef) -> Table:
        """The SQLAlchemy ``Table`` for ``dest``'s storage layout."""
        metadata = MetaData(schema=dest.schema)
        columns = self.identity_columns()
        if dest.storage_strategy.is_simple:
            columns.append(Column(PAYLOAD_COLUMN, self.payload_type(dest.storage_strategy)))
        else:
            columns.extend(
                Column(c.name, self.column_type(c), nullable=True)
                for c in dest.columns
            )
            if dest.storage_strategy is StorageStrategy.EXPLICIT_JSON_OVERFLOW:
                columns.append(Column(PAYLOAD_COLUMN, self.json_type()))
        columns.append(Column(LOADED_AT_COLUMN, DateTime(timezone=True)))
        return Table(dest.target, metadata, *columns, **self.table_options())

    # -- table lifecycle ---------------------------------------------------

    def table_exists(self, engine: Engine, dest: DestinationDef) -> bool:
        return inspect(engine).has_table(dest.target, schema=dest.schema)

    def make_table(self, engine: Engine, dest: DestinationDef) -> Table:
        table = self.build_table(dest)
        with engine.begin() as conn:
            table.create(conn)
        logger.info(
            "table_created",
            extra={
                "target": dest.qualified_target,
                "storage_strategy": dest.storage_strategy.value,
                "columns": [c.name for c in table.columns],
            },
        )
        return table

    @abstractmethod
    def truncate_table(self, engine: Engine, dest: DestinationDef) -> None: ...

    @abstractmethod
    def reset_sequence(self, engine: Engine, dest: DestinationDef) -> None: ...

    # -- index lifecycle ---------------------------------------------------

    def check_primary_index(self, engine: Engine, dest: DestinationDef) -> str | None:
        """
        Name of a primary key, unique constraint or unique index whose
        columns are exactly the configured primary-key columns.
        """
        wanted = set(dest.pk_names)
        if not wanted:
            return None
        inspector = inspect(engine)

        pk = inspector.get_pk_constraint(dest.target, schema=dest.schema)
        if pk and set(pk.get("constrained_columns") or ()) == wanted:
            return pk.get("name") or "PRIMARY KEY"

        for uc in inspector.get_unique_constraints(dest.target, schema=dest.schema):
            if set(uc.get("column_names") or ()) == wanted:
                return uc.get("name") or "UNIQUE"

        for ix in inspector.get_indexes(dest.target, schema=dest.schema):
            if ix.get("unique") and set(ix.get("column_names") or ()) == wanted:
                return ix.get("name") or "UNIQUE INDEX"
        return None

    def make_index(self, engine: Engine, dest: DestinationDef) -> None:
        if not dest.pk_names:
            return
        with engine.begin() as conn:
            conn.execute(self.index_statement(conn, dest))
        logger.info(
            "index_created",
            extra={"target": dest.qualified_target, "columns": list(dest.pk_names)},
        )

    @abstractmethod
    def index_statement(self, conn: Connection, dest: DestinationDef) -> Executable:
        """DDL creating the primary key / unique index over the pk columns."""

    # -- ingestion ---------------------------------------------------------

    def prepare_record_batch(
        self,
        batch: Batch,
        dest: DestinationDef,
        loaded_at: datetime | None = None,
    ) -> list[PreparedRecord]:
        if loaded_at is None:
            loaded_at = self._clock.now()
        return prepare_records(batch.records, dest, loaded_at)

    @abstractmethod
    def insert_statement(
        self,
        table: Table,
        dest: DestinationDef,
        mode: IngestMode,
        columns: Sequence[str],
    ) -> Executable:
        """Insert (or upsert) statement for rows carrying ``columns``."""

    def write_guard(self, engine: Engine) -> ContextManager[Any]:
        """Held around each batch transaction."""
        return contextlib.nullcontext()

    def ingest_records(
        self,
        engine: Engine,
        table: Table,
        batch: Batch,
        dest: DestinationDef,
    ) -> int:
        """Prepare ``batch`` for ``dest`` and write it; returns rows written."""
        mode = ingest_mode_for(dest.ingestion_strategy)
        rows = self.prepare_record_batch(batch, dest)
        if mode is IngestMode.UPSERT:
            rows = dedupe_by_key(rows, dest.pk_names)
        if not rows:
            return 0

        with self.write_guard(engine), engine.begin() as conn:
            for columns, group in group_by_columns(rows):
                conn.execute(self.insert_statement(table, dest, mode, columns), group)

        logger.debug(
            "batch_written",
            extra={
                "target": dest.qualified_target,
                "batch_number": batch.number,
                "rows": len(rows),
                "mode": mode.value,
            },
        )
        return len(rows)

    # -- reads -------------------------------------------------------------

    def read_table(
        self, engine: Engine, dest: DestinationDef, limit: int | None = None
    ) -> list[dict[str, Any]]:
        """Rows of ``dest``'s table in record-number order."""
        table = self.build_table(dest)
        stmt = select(table).order_by(table.c[RECORD_NUMBER_COLUMN])
        if limit is not None:
            stmt = stmt.limit(limit)
        with engine.connect() as conn:
            return [dict(row._mapping) for row in conn.execute(stmt)]
