"""
PostgreSQL adapter (psycopg2 via SQLAlchemy Core).

Layout:
    record_id      uuid         default gen_random_uuid()
    record_number  bigint       generated by default as identity
    data           jsonb | text | text[]   (simple strategies)
    <columns>      configured type, text when unset (explicit strategies)
    data           jsonb        (explicit-json-overflow only)
    _etl_loaded_at timestamptz

Primary keys are added with ``ALTER TABLE ... ADD PRIMARY KEY`` so an
existing table can be upgraded to ``merge`` in place.  Upserts use
``INSERT ... ON CONFLICT (pks) DO UPDATE`` setting every non-key column
the rows carry.
"""

from __future__ import annotations

from typing import Any, Sequence

from sqlalchemy import BigInteger, Column, Identity, Table, Text, text
from sqlalchemy.dialects.postgresql import ARRAY, JSON, JSONB, UUID
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.engine import Connection, Dialect, Engine
from sqlalchemy.pool import QueuePool
from sqlalchemy.sql.expression import Executable
from sqlalchemy.types import TypeEngine

from pipette_config.schema import DestinationDef, StorageStrategy
from pipette_ingestion.adapters.base import SqlAlchemyAdapter
from pipette_ingestion.domain.types import (
    RECORD_ID_COLUMN,
    RECORD_NUMBER_COLUMN,
    IngestMode,
)
from pipette_kernel.domain.clock import Clock
from pipette_kernel.logging_config import get_logger

logger = get_logger("ingestion.adapters.postgres")


def qualified_table_sql(dialect: Dialect, dest: DestinationDef) -> str:
    """Quoted ``schema.table`` for use in raw DDL."""
    preparer = dialect.identifier_preparer
    name = preparer.quote(dest.target)
    if dest.schema:
        return f"{preparer.quote_schema(dest.schema)}.{name}"
    return name


def add_primary_key_sql(dialect: Dialect, dest: DestinationDef) -> str:
    preparer = dialect.identifier_preparer
    columns = ", ".join(preparer.quote(name) for name in dest.pk_names)
    return (
        f"ALTER TABLE {qualified_table_sql(dialect, dest)} "
        f"ADD PRIMARY KEY ({columns})"
    )


class PostgresAdapter(SqlAlchemyAdapter):
    """``adapter: postgres``."""

    backend = "postgres"

    def __init__(
        self,
        clock: Clock | None = None,
        echo: bool = False,
        pool_size: int = 5,
        max_overflow: int = 10,
        pool_pre_ping: bool = True,
        pool_recycle: int = 1800,
    ):
        super().__init__(clock=clock, echo=echo)
        self._pool_size = pool_size
        self._max_overflow = max_overflow
        self._pool_pre_ping = pool_pre_ping
        self._pool_recycle = pool_recycle

    def engine_options(self) -> dict[str, Any]:
        return {
            "poolclass": QueuePool,
            "pool_size": self._pool_size,
            "max_overflow": self._max_overflow,
            "pool_pre_ping": self._pool_pre_ping,
            "pool_recycle": self._pool_recycle,
        }

    # -- layout ------------------------------------------------------------

    def identity_columns(self) -> list[Column]:
        return [
            Column(
                RECORD_ID_COLUMN,
                UUID(as_uuid=True),
                server_default=text("gen_random_uuid()"),
                nullable=False,
            ),
            Column(
                RECORD_NUMBER_COLUMN,
                BigInteger,
                Identity(start=1),
                nullable=False,
            ),
        ]

    def payload_type(self, strategy: StorageStrategy) -> TypeEngine:
        if strategy is StorageStrategy.TEXT:
            return Text()
        if strategy is StorageStrategy.CSV_ARRAY:
            return ARRAY(Text)
        return JSONB()

    def json_type(self, type_name: str = "jsonb") -> TypeEngine:
        if type_name == "json":
            return JSON()
        return JSONB()

    # -- table lifecycle ---------------------------------------------------

    def truncate_table(self, engine: Engine, dest: DestinationDef) -> None:
        with engine.begin() as conn:
            conn.execute(text(f"TRUNCATE TABLE {qualified_table_sql(conn.dialect, dest)}"))
        logger.info("table_truncated", extra={"target": dest.qualified_target})

    def reset_sequence(self, engine: Engine, dest: DestinationDef) -> None:
        with engine.begin() as conn:
            sequence = conn.execute(
                text("SELECT pg_get_serial_sequence(:table, :column)"),
                {
                    "table": qualified_table_sql(conn.dialect, dest),
                    "column": RECORD_NUMBER_COLUMN,
                },
            ).scalar()
            if sequence is None:
                logger.warning(
                    "sequence_not_found", extra={"target": dest.qualified_target}
                )
                return
            conn.execute(text(f"ALTER SEQUENCE {sequence} RESTART WITH 1"))
        logger.info(
            "sequence_reset",
            extra={"target": dest.qualified_target, "sequence": sequence},
        )

    def index_statement(self, conn: Connection, dest: DestinationDef) -> Executable:
        return text(add_primary_key_sql(conn.dialect, dest))

    # -- ingestion ---------------------------------------------------------

    def insert_statement(
        self,
        table: Table,
        dest: DestinationDef,
        mode: IngestMode,
        columns: Sequence[str],
    ) -> Executable:
        stmt = pg_insert(table)
        if mode is IngestMode.INSERT:
            return stmt
        keys = set(dest.pk_names)
        return stmt.on_conflict_do_update(
            index_elements=[table.c[name] for name in dest.pk_names],
            set_={name: stmt.excluded[name] for name in columns if name not in keys},
        )
