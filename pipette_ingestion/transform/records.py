"""
Record transformers: raw decoded JSON -> storage-ready rows.

Contract:
    ``prepare_records(records, dest, loaded_at)`` dispatches on
    ``dest.storage_strategy`` and returns a new list of ``PreparedRecord``
    dicts, one per surviving input record, in input order.  Every row
    carries ``_etl_loaded_at = loaded_at``.

Architecture:
    pipette_ingestion/transform.  Pure functions, no I/O, no database
    imports.  Backends bind the returned values; they never reshape them.

Invariants enforced:
    - Input records are never mutated; structured values are copied into
      fresh containers before they leave this module.
    - ``explicit`` rows omit configured columns that are absent from the
      record (never defaulted to NULL).
    - With ``enforce_constraint`` set, records with a null or missing
      primary-key value are dropped before projection.
    - ``explicit-json-overflow``: the keys of the projected columns and of
      the overflow payload are disjoint and together equal the record's
      key set.
"""

from __future__ import annotations

import copy
import json
from datetime import datetime
from typing import Any, Callable, Iterable, Sequence

from pipette_config.schema import ColumnDef, DestinationDef, StorageStrategy
from pipette_ingestion.domain.types import (
    LOADED_AT_COLUMN,
    PAYLOAD_COLUMN,
    PreparedRecord,
)
from pipette_kernel.exceptions import RecordShapeError

Transformer = Callable[[Sequence[Any], DestinationDef, datetime], list[PreparedRecord]]

# Column types that already hold free text; values bound to them are
# rendered as strings.
_TEXT_TYPES = frozenset({"text", "varchar", "character varying", "string", "clob"})


def to_text(record: Any) -> str:
    """Compact JSON text of a record."""
    return json.dumps(record, separators=(",", ":"), ensure_ascii=False)


# ---------------------------------------------------------------------------
# Record helpers
# ---------------------------------------------------------------------------


def strip_null_pks(
    records: Iterable[dict[str, Any]], pk_names: Sequence[str]
) -> list[dict[str, Any]]:
    """Drop records with a null or missing value in any primary-key column."""
    return [
        rec for rec in records
        if all(rec.get(pk) is not None for pk in pk_names)
    ]


def drop_empty_strings(record: dict[str, Any]) -> dict[str, Any]:
    """New dict without entries whose value is the empty string."""
    return {k: v for k, v in record.items() if v != ""}


def _is_text_column(column: ColumnDef) -> bool:
    if column.type is None:
        return True
    base = column.type.lower().split("(", 1)[0].strip()
    return base in _TEXT_TYPES


def column_value(column: ColumnDef, value: Any) -> Any:
    """Convert a raw JSON value for binding to ``column``."""
    if value is None:
        return None
    if column.is_structured:
        return copy.deepcopy(value)
    if isinstance(value, (dict, list)):
        return to_text(value)
    if _is_text_column(column) and not isinstance(value, str):
        return to_text(value)
    return value


def _require_objects(
    records: Sequence[Any], dest: DestinationDef
) -> Sequence[dict[str, Any]]:
    for rec in records:
        if not isinstance(rec, dict):
            raise RecordShapeError(dest.qualified_name, dest.qualified_target, rec)
    return records


def project(
    record: dict[str, Any], dest: DestinationDef
) -> tuple[PreparedRecord, frozenset[str]]:
    """
    Project ``record`` onto the configured columns.

    Returns the projected row (without the load timestamp) and the set of
    record keys that were written to a projected column.
    """
    source = drop_empty_strings(record) if dest.drop_empty_strings else record
    row: PreparedRecord = {}
    for column in dest.columns:
        if column.name in source:
            row[column.name] = column_value(column, source[column.name])
    return row, frozenset(row)


# ---------------------------------------------------------------------------
# Strategy transformers
# ---------------------------------------------------------------------------


def prepare_json(
    records: Sequence[Any], dest: DestinationDef, loaded_at: datetime
) -> list[PreparedRecord]:
    return [
        {PAYLOAD_COLUMN: copy.deepcopy(rec), LOADED_AT_COLUMN: loaded_at}
        for rec in records
    ]


def prepare_text(
    records: Sequence[Any], dest: DestinationDef, loaded_at: datetime
) -> list[PreparedRecord]:
    return [
        {PAYLOAD_COLUMN: to_text(rec), LOADED_AT_COLUMN: loaded_at}
        for rec in records
    ]


def prepare_csv_array(
    records: Sequence[Any], dest: DestinationDef, loaded_at: datetime
) -> list[PreparedRecord]:
    # Plain comma split of the JSON text; quoting is not interpreted.
    return [
        {PAYLOAD_COLUMN: to_text(rec).split(","), LOADED_AT_COLUMN: loaded_at}
        for rec in records
    ]


def _filtered(records: Sequence[Any], dest: DestinationDef) -> Sequence[dict[str, Any]]:
    records = _require_objects(records, dest)
    if dest.enforce_constraint and dest.pk_names:
        return strip_null_pks(records, dest.pk_names)
    return records


def prepare_explicit(
    records: Sequence[Any], dest: DestinationDef, loaded_at: datetime
) -> list[PreparedRecord]:
    prepared = []
    for rec in _filtered(records, dest):
        row, _ = project(rec, dest)
        row[LOADED_AT_COLUMN] = loaded_at
        prepared.append(row)
    return prepared


def prepare_explicit_overflow(
    records: Sequence[Any], dest: DestinationDef, loaded_at: datetime
) -> list[PreparedRecord]:
    prepared = []
    for rec in _filtered(records, dest):
        row, written = project(rec, dest)
        row[PAYLOAD_COLUMN] = {
            k: copy.deepcopy(v) for k, v in rec.items() if k not in written
        }
        row[LOADED_AT_COLUMN] = loaded_at
        prepared.append(row)
    return prepared


TRANSFORMERS: dict[StorageStrategy, Transformer] = {
    StorageStrategy.JSON: prepare_json,
    StorageStrategy.TEXT: prepare_text,
    StorageStrategy.CSV_ARRAY: prepare_csv_array,
    StorageStrategy.EXPLICIT: prepare_explicit,
    StorageStrategy.EXPLICIT_JSON_OVERFLOW: prepare_explicit_overflow,
}


def prepare_records(
    records: Sequence[Any], dest: DestinationDef, loaded_at: datetime
) -> list[PreparedRecord]:
    """Transform ``records`` with the transformer for ``dest.storage_strategy``."""
    return TRANSFORMERS[dest.storage_strategy](records, dest, loaded_at)
