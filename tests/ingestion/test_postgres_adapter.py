"""
PostgreSQL adapter.

DDL and upsert statements are compiled against the postgresql dialect
without a server.  Tests marked ``postgres`` run against DATABASE_URL.
"""

import dataclasses
import re

import pytest
from sqlalchemy import text
from sqlalchemy.dialects import postgresql
from sqlalchemy.pool import QueuePool
from sqlalchemy.schema import CreateTable

from pipette_ingestion.adapters.postgres import (
    PostgresAdapter,
    add_primary_key_sql,
    qualified_table_sql,
)
from pipette_ingestion.domain.types import Batch, IngestMode

DIALECT = postgresql.dialect()

COLUMNS = [
    {"name": "id", "pk": True},
    {"name": "val"},
    {"name": "attrs", "type": "jsonb"},
    {"name": "amount", "type": "numeric(12,2)"},
]


@pytest.fixture
def adapter(clock):
    return PostgresAdapter(clock=clock)


def _ddl(adapter, dest) -> str:
    return str(CreateTable(adapter.build_table(dest)).compile(dialect=DIALECT))


def _pg_destination(make_destination, **kwargs):
    return make_destination(
        adapter="postgres", connection="postgresql://localhost/pipette", **kwargs
    )


class TestLayout:
    def test_identity_columns(self, adapter, make_destination):
        ddl = _ddl(adapter, _pg_destination(make_destination))
        assert "record_id UUID DEFAULT gen_random_uuid() NOT NULL" in ddl
        assert "record_number BIGINT GENERATED BY DEFAULT AS IDENTITY" in ddl
        assert "_etl_loaded_at TIMESTAMP WITH TIME ZONE" in ddl

    @pytest.mark.parametrize(
        "storage, payload",
        [("json", "data JSONB"), ("text", "data TEXT"), ("csv-array", "data TEXT[]")],
    )
    def test_payload_type(self, adapter, make_destination, storage, payload):
        assert payload in _ddl(adapter, _pg_destination(make_destination, storage=storage))

    def test_explicit_columns_use_configured_types(self, adapter, make_destination):
        dest = _pg_destination(make_destination, storage="explicit", columns=COLUMNS)
        ddl = _ddl(adapter, dest)
        assert "id TEXT" in ddl
        assert "val TEXT" in ddl
        assert "attrs JSONB" in ddl
        assert "amount numeric(12,2)" in ddl
        assert "data" not in ddl

    def test_overflow_column_is_jsonb(self, adapter, make_destination):
        dest = _pg_destination(
            make_destination, storage="explicit-json-overflow", columns=COLUMNS
        )
        assert "data JSONB" in _ddl(adapter, dest)

    def test_json_column_type(self, adapter, make_destination):
        dest = _pg_destination(
            make_destination,
            storage="explicit",
            columns=[{"name": "id", "pk": True}, {"name": "doc", "type": "json"}],
        )
        assert "doc JSON" in _ddl(adapter, dest)
        assert "doc JSONB" not in _ddl(adapter, dest)

    def test_schema_qualified_table(self, adapter, make_destination):
        dest = _pg_destination(make_destination)
        dest = dataclasses.replace(dest, schema="raw")
        assert "CREATE TABLE raw.d_records" in _ddl(adapter, dest)


class TestSql:
    def test_qualified_table_sql(self, make_destination):
        dest = _pg_destination(make_destination, target="Events")
        assert qualified_table_sql(DIALECT, dest) == '"Events"'

    def test_add_primary_key_sql(self, make_destination):
        dest = _pg_destination(
            make_destination,
            storage="explicit",
            columns=[{"name": "tenant", "pk": True}, {"name": "id", "pk": True}],
        )
        assert add_primary_key_sql(DIALECT, dest) == (
            "ALTER TABLE d_records ADD PRIMARY KEY (tenant, id)"
        )

    def test_upsert_sets_only_non_key_columns(self, adapter, make_destination):
        dest = _pg_destination(
            make_destination, storage="explicit", ingestion="merge", columns=COLUMNS
        )
        table = adapter.build_table(dest)
        stmt = adapter.insert_statement(
            table, dest, IngestMode.UPSERT, ("_etl_loaded_at", "id", "val")
        )
        sql = str(stmt.compile(dialect=DIALECT))

        assert "ON CONFLICT (id) DO UPDATE SET" in sql
        assert "val = excluded.val" in sql
        assert "_etl_loaded_at = excluded._etl_loaded_at" in sql
        assert not re.search(r"\bid = excluded\.id", sql)
        assert "amount = excluded" not in sql

    def test_insert_has_no_conflict_clause(self, adapter, make_destination):
        dest = _pg_destination(make_destination)
        stmt = adapter.insert_statement(
            adapter.build_table(dest), dest, IngestMode.INSERT, ("data", "_etl_loaded_at")
        )
        assert "ON CONFLICT" not in str(stmt.compile(dialect=DIALECT))


def test_engine_options_use_queue_pool():
    options = PostgresAdapter(pool_size=3, max_overflow=1).engine_options()
    assert options["poolclass"] is QueuePool
    assert options["pool_size"] == 3
    assert options["max_overflow"] == 1
    assert options["pool_pre_ping"] is True


@pytest.mark.postgres
class TestLivePostgres:
    """Round trips against a real server (DATABASE_URL)."""

    @pytest.fixture
    def engine(self, adapter, postgres_url):
        engine = adapter.connect(postgres_url)
        yield engine
        engine.dispose()

    @pytest.fixture
    def dest(self, make_destination, postgres_url):
        dest = make_destination(
            "pg_merge",
            adapter="postgres",
            connection=postgres_url,
            storage="explicit-json-overflow",
            ingestion="merge",
            columns=COLUMNS,
        )
        yield dest
        engine = PostgresAdapter().connect(postgres_url)
        with engine.begin() as conn:
            conn.execute(text(f"DROP TABLE IF EXISTS {dest.target}"))
        engine.dispose()

    def test_merge_round_trip(self, adapter, engine, dest):
        adapter.make_table(engine, dest)
        adapter.make_index(engine, dest)
        assert adapter.check_primary_index(engine, dest) is not None

        table = adapter.build_table(dest)
        adapter.ingest_records(
            engine,
            table,
            Batch(1, ({"id": 1, "val": "a", "attrs": {"x": 1}, "extra": 2},)),
            dest,
        )
        adapter.ingest_records(engine, table, Batch(2, ({"id": 1, "val": "b"},)), dest)

        rows = adapter.read_table(engine, dest)
        assert len(rows) == 1
        assert rows[0]["val"] == "b"
        assert rows[0]["attrs"] == {"x": 1}
        assert rows[0]["data"] == {}

    def test_truncate_and_reset_sequence(self, adapter, engine, dest):
        adapter.make_table(engine, dest)
        adapter.make_index(engine, dest)
        table = adapter.build_table(dest)
        adapter.ingest_records(engine, table, Batch(1, ({"id": 1}, {"id": 2})), dest)

        adapter.truncate_table(engine, dest)
        adapter.reset_sequence(engine, dest)
        adapter.ingest_records(engine, table, Batch(2, ({"id": 3},)), dest)

        assert [r["record_number"] for r in adapter.read_table(engine, dest)] == [1]
