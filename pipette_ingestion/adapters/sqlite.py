"""
SQLite adapter (stdlib sqlite3 via SQLAlchemy Core).

Used for local runs and single-file targets.  SQLite has no array or
jsonb types and no ``TRUNCATE``, so:

    - ``csv-array`` and ``json`` payloads are stored as JSON text;
    - truncation is ``DELETE FROM``;
    - the record-number sequence is the table's ``sqlite_sequence`` row;
    - primary keys are enforced by a unique index, which SQLite accepts as
      an ``ON CONFLICT`` target.

SQLite allows a single writer per database file, so batch transactions on
one engine are serialized by a lock.
"""

from __future__ import annotations

import threading
from typing import Any, ContextManager, Sequence
from uuid import uuid4

from sqlalchemy import JSON, Column, Index, Integer, String, Table, Text, delete, text
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.schema import CreateIndex
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

logger = get_logger("ingestion.adapters.sqlite")


def _new_record_id() -> str:
    return str(uuid4())


def primary_index_name(dest: DestinationDef) -> str:
    return f"{dest.target}_pk_idx"


class SqliteAdapter(SqlAlchemyAdapter):
    """``adapter: sqlite``."""

    backend = "sqlite"

    def __init__(
        self,
        clock: Clock | None = None,
        echo: bool = False,
        busy_timeout: float = 30.0,
    ):
        super().__init__(clock=clock, echo=echo)
        self._busy_timeout = busy_timeout
        self._locks: dict[int, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def engine_options(self) -> dict[str, Any]:
        return {
            "connect_args": {
                "check_same_thread": False,
                "timeout": self._busy_timeout,
            },
        }

    # -- layout ------------------------------------------------------------

    def identity_columns(self) -> list[Column]:
        return [
            Column(
                RECORD_ID_COLUMN,
                String(36),
                default=_new_record_id,
                nullable=False,
            ),
            Column(
                RECORD_NUMBER_COLUMN,
                Integer,
                primary_key=True,
                autoincrement=True,
            ),
        ]

    def table_options(self) -> dict[str, Any]:
        return {"sqlite_autoincrement": True}

    def payload_type(self, strategy: StorageStrategy) -> TypeEngine:
        if strategy is StorageStrategy.TEXT:
            return Text()
        return JSON()

    def json_type(self, type_name: str = "json") -> TypeEngine:
        return JSON()

    # -- table lifecycle ---------------------------------------------------

    def truncate_table(self, engine: Engine, dest: DestinationDef) -> None:
        table = self.build_table(dest)
        with engine.begin() as conn:
            conn.execute(delete(table))
        logger.info("table_truncated", extra={"target": dest.qualified_target})

    def reset_sequence(self, engine: Engine, dest: DestinationDef) -> None:
        with engine.begin() as conn:
            conn.execute(
                text("DELETE FROM sqlite_sequence WHERE name = :name"),
                {"name": dest.target},
            )
        logger.info("sequence_reset", extra={"target": dest.qualified_target})

    def index_statement(self, conn: Connection, dest: DestinationDef) -> Executable:
        table = self.build_table(dest)
        index = Index(
            primary_index_name(dest),
            *(table.c[name] for name in dest.pk_names),
            unique=True,
        )
        return CreateIndex(index)

    # -- ingestion ---------------------------------------------------------

    def write_guard(self, engine: Engine) -> ContextManager[Any]:
        with self._locks_guard:
            lock = self._locks.setdefault(id(engine), threading.Lock())
        return lock

    def insert_statement(
        self,
        table: Table,
        dest: DestinationDef,
        mode: IngestMode,
        columns: Sequence[str],
    ) -> Executable:
        stmt = sqlite_insert(table)
        if mode is IngestMode.INSERT:
            return stmt
        keys = set(dest.pk_names)
        return stmt.on_conflict_do_update(
            index_elements=[table.c[name] for name in dest.pk_names],
            set_={name: stmt.excluded[name] for name in columns if name not in keys},
        )
