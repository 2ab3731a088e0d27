"""
SQLite adapter against a real database file.

Covers the table and index lifecycle operations and batch ingestion for
every storage strategy.
"""

import threading
from datetime import datetime

import pytest
from sqlalchemy import inspect

from pipette_ingestion.adapters.base import DatabaseAdapter, dedupe_by_key, group_by_columns
from pipette_ingestion.adapters.sqlite import SqliteAdapter, primary_index_name
from pipette_ingestion.domain.types import Batch

EXPLICIT_COLUMNS = [
    {"name": "id", "pk": True},
    {"name": "val"},
    {"name": "attrs", "type": "json"},
    {"name": "amount", "type": "integer"},
]


@pytest.fixture
def adapter(clock):
    return SqliteAdapter(clock=clock)


@pytest.fixture
def engine(adapter, sqlite_url):
    engine = adapter.connect(sqlite_url)
    yield engine
    engine.dispose()


def _ingest(adapter, engine, dest, records, number=1):
    table = adapter.build_table(dest)
    return adapter.ingest_records(engine, table, Batch(number=number, records=tuple(records)), dest)


def test_satisfies_protocol(adapter):
    assert isinstance(adapter, DatabaseAdapter)
    assert adapter.backend == "sqlite"


class TestLayout:
    @pytest.mark.parametrize("storage", ["json", "text", "csv-array"])
    def test_simple_layout(self, adapter, make_destination, storage):
        table = adapter.build_table(make_destination(storage=storage))
        assert [c.name for c in table.columns] == [
            "record_id",
            "record_number",
            "data",
            "_etl_loaded_at",
        ]

    def test_explicit_layout(self, adapter, make_destination):
        dest = make_destination(storage="explicit", columns=EXPLICIT_COLUMNS)
        table = adapter.build_table(dest)
        assert [c.name for c in table.columns] == [
            "record_id",
            "record_number",
            "id",
            "val",
            "attrs",
            "amount",
            "_etl_loaded_at",
        ]

    def test_overflow_layout_appends_data(self, adapter, make_destination):
        dest = make_destination(storage="explicit-json-overflow", columns=EXPLICIT_COLUMNS)
        names = [c.name for c in adapter.build_table(dest).columns]
        assert names[-2:] == ["data", "_etl_loaded_at"]


class TestTableLifecycle:
    def test_make_table_then_exists(self, adapter, engine, make_destination):
        dest = make_destination()
        assert adapter.table_exists(engine, dest) is False
        adapter.make_table(engine, dest)
        assert adapter.table_exists(engine, dest) is True

    def test_truncate_removes_rows(self, adapter, engine, make_destination):
        dest = make_destination(ingestion="refresh")
        adapter.make_table(engine, dest)
        _ingest(adapter, engine, dest, [{"a": 1}, {"a": 2}])

        adapter.truncate_table(engine, dest)

        assert adapter.read_table(engine, dest) == []

    def test_reset_sequence_restarts_record_numbers(self, adapter, engine, make_destination):
        dest = make_destination(ingestion="refresh")
        adapter.make_table(engine, dest)
        _ingest(adapter, engine, dest, [{"a": 1}, {"a": 2}, {"a": 3}])

        adapter.truncate_table(engine, dest)
        adapter.reset_sequence(engine, dest)
        _ingest(adapter, engine, dest, [{"a": 4}])

        rows = adapter.read_table(engine, dest)
        assert [r["record_number"] for r in rows] == [1]

    def test_without_reset_record_numbers_continue(self, adapter, engine, make_destination):
        dest = make_destination(ingestion="refresh")
        adapter.make_table(engine, dest)
        _ingest(adapter, engine, dest, [{"a": 1}, {"a": 2}])

        adapter.truncate_table(engine, dest)
        _ingest(adapter, engine, dest, [{"a": 3}])

        assert [r["record_number"] for r in adapter.read_table(engine, dest)] == [3]


class TestIndexLifecycle:
    def test_make_index_then_check(self, adapter, engine, make_destination):
        dest = make_destination(
            storage="explicit", ingestion="merge", columns=EXPLICIT_COLUMNS
        )
        adapter.make_table(engine, dest)
        assert adapter.check_primary_index(engine, dest) is None

        adapter.make_index(engine, dest)

        assert adapter.check_primary_index(engine, dest) == primary_index_name(dest)
        indexes = inspect(engine).get_indexes(dest.target)
        assert [ix["column_names"] for ix in indexes] == [["id"]]

    def test_no_pk_means_no_index(self, adapter, engine, make_destination):
        dest = make_destination()
        adapter.make_table(engine, dest)
        adapter.make_index(engine, dest)
        assert adapter.check_primary_index(engine, dest) is None
        assert inspect(engine).get_indexes(dest.target) == []


class TestIngestRecords:
    def test_json_round_trip(self, adapter, engine, make_destination):
        dest = make_destination(storage="json")
        adapter.make_table(engine, dest)

        written = _ingest(adapter, engine, dest, [{"a": {"b": 1}}, [1, 2]])

        assert written == 2
        rows = adapter.read_table(engine, dest)
        assert [r["data"] for r in rows] == [{"a": {"b": 1}}, [1, 2]]
        assert [r["record_number"] for r in rows] == [1, 2]
        assert all(len(r["record_id"]) == 36 for r in rows)
        assert rows[0]["record_id"] != rows[1]["record_id"]
        assert rows[0]["_etl_loaded_at"].replace(tzinfo=None) == datetime(2024, 1, 1, 12, 0)

    def test_text_storage(self, adapter, engine, make_destination):
        dest = make_destination(storage="text")
        adapter.make_table(engine, dest)
        _ingest(adapter, engine, dest, [{"a": 1}])
        assert adapter.read_table(engine, dest)[0]["data"] == '{"a":1}'

    def test_csv_array_storage(self, adapter, engine, make_destination):
        dest = make_destination(storage="csv-array")
        adapter.make_table(engine, dest)
        _ingest(adapter, engine, dest, [{"a": 1, "b": 2}])
        assert adapter.read_table(engine, dest)[0]["data"] == ['{"a":1', '"b":2}']

    def test_explicit_rows_with_different_column_sets(self, adapter, engine, make_destination):
        dest = make_destination(storage="explicit", columns=EXPLICIT_COLUMNS)
        adapter.make_table(engine, dest)

        _ingest(
            adapter,
            engine,
            dest,
            [
                {"id": 1, "val": "x", "amount": 5},
                {"id": 2, "attrs": {"k": [1]}},
                {"id": 3, "val": "z", "amount": 7},
            ],
        )

        rows = adapter.read_table(engine, dest)
        assert [r["id"] for r in rows] == ["1", "2", "3"]
        assert [r["val"] for r in rows] == ["x", None, "z"]
        assert [r["amount"] for r in rows] == [5, None, 7]
        assert rows[1]["attrs"] == {"k": [1]}

    def test_overflow_payload(self, adapter, engine, make_destination):
        dest = make_destination(storage="explicit-json-overflow", columns=EXPLICIT_COLUMNS)
        adapter.make_table(engine, dest)
        _ingest(adapter, engine, dest, [{"id": 1, "val": "v", "extra": True}])

        row = adapter.read_table(engine, dest)[0]
        assert row["id"] == "1"
        assert row["data"] == {"extra": True}

    def test_merge_upserts_and_dedupes(self, adapter, engine, make_destination):
        dest = make_destination(
            storage="explicit", ingestion="merge", columns=EXPLICIT_COLUMNS
        )
        adapter.make_table(engine, dest)
        adapter.make_index(engine, dest)

        written = _ingest(
            adapter,
            engine,
            dest,
            [{"id": 1, "val": "a"}, {"id": 2, "val": "b"}, {"id": 1, "val": "c"}],
        )
        assert written == 2

        _ingest(adapter, engine, dest, [{"id": 2, "val": "d"}], number=2)

        rows = adapter.read_table(engine, dest)
        assert [(r["id"], r["val"]) for r in rows] == [("1", "c"), ("2", "d")]

    def test_empty_batch_after_filtering_writes_nothing(self, adapter, engine, make_destination):
        dest = make_destination(
            storage="explicit", columns=EXPLICIT_COLUMNS, enforce_constraint=True
        )
        adapter.make_table(engine, dest)
        assert _ingest(adapter, engine, dest, [{"val": "no id"}]) == 0
        assert adapter.read_table(engine, dest) == []

    def test_read_table_limit(self, adapter, engine, make_destination):
        dest = make_destination()
        adapter.make_table(engine, dest)
        _ingest(adapter, engine, dest, [{"n": i} for i in range(5)])
        assert [r["data"] for r in adapter.read_table(engine, dest, limit=2)] == [
            {"n": 0},
            {"n": 1},
        ]

    def test_concurrent_batches_on_one_engine(self, adapter, engine, make_destination):
        dest = make_destination()
        adapter.make_table(engine, dest)

        threads = [
            threading.Thread(
                target=_ingest,
                args=(adapter, engine, dest, [{"t": t, "i": i} for i in range(20)], t),
            )
            for t in range(1, 5)
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(adapter.read_table(engine, dest)) == 80

    def test_write_guard_is_per_engine(self, adapter, sqlite_url, tmp_path):
        first = adapter.connect(sqlite_url)
        second = adapter.connect(f"sqlite:///{tmp_path / 'other.db'}")
        try:
            assert adapter.write_guard(first) is adapter.write_guard(first)
            assert adapter.write_guard(first) is not adapter.write_guard(second)
        finally:
            first.dispose()
            second.dispose()


class TestRowHelpers:
    def test_dedupe_keeps_last_in_first_seen_order(self):
        rows = [{"id": 1, "v": "a"}, {"id": 2, "v": "b"}, {"id": 1, "v": "c"}]
        assert dedupe_by_key(rows, ["id"]) == [{"id": 1, "v": "c"}, {"id": 2, "v": "b"}]

    def test_dedupe_composite_key(self):
        rows = [{"a": 1, "b": 1}, {"a": 1, "b": 2}, {"a": 1, "b": 1, "v": 9}]
        assert dedupe_by_key(rows, ["a", "b"]) == [{"a": 1, "b": 1, "v": 9}, {"a": 1, "b": 2}]

    def test_group_by_columns(self):
        rows = [{"a": 1, "b": 2}, {"a": 3}, {"b": 4, "a": 5}]
        groups = group_by_columns(rows)
        assert groups == [
            (("a", "b"), [{"a": 1, "b": 2}, {"b": 4, "a": 5}]),
            (("a",), [{"a": 3}]),
        ]
