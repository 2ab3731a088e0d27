"""
Stream chunker: NDJSON lines -> numbered, immutable batches.

Contract:
    ``read_batches(lines, batch_size)`` lazily decodes one JSON value per
    line and yields ``Batch`` objects of ``batch_size`` records in arrival
    order.  The final batch may be short; it is never empty and there is no
    empty trailing batch.  Single-pass: the generator pulls lines only as
    the caller asks for the next batch.

Failure modes:
    - A line that is not valid JSON raises ``DecodeError`` carrying its
      1-based line number.  The run fails; nothing is skipped.
    - A batch size that is not a positive integer raises
      ``ConfigurationError`` before any line is read.

Whitespace-only lines are not records and are ignored.
"""

from __future__ import annotations

import json
from itertools import islice
from typing import Any, Iterable, Iterator

from pipette_ingestion.domain.types import Batch
from pipette_kernel.exceptions import ConfigurationError, DecodeError


def decode_lines(lines: Iterable[str | bytes]) -> Iterator[Any]:
    """Yield the decoded JSON value of every non-blank line."""
    for line_number, line in enumerate(lines, start=1):
        if not line.strip():
            continue
        try:
            yield json.loads(line)
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            text = line.decode("utf-8", "replace") if isinstance(line, bytes) else line
            raise DecodeError(line_number, str(exc), text.rstrip("\r\n")) from exc


def check_batch_size(batch_size: Any) -> int:
    if isinstance(batch_size, bool) or not isinstance(batch_size, int) or batch_size <= 0:
        raise ConfigurationError(
            f"batch size must be a positive integer, got {batch_size!r}"
        )
    return batch_size


def chunk(values: Iterable[Any], batch_size: int) -> Iterator[Batch]:
    """Partition ``values`` into batches of ``batch_size``, numbered from 1."""
    check_batch_size(batch_size)
    return _chunk(iter(values), batch_size)


def _chunk(it: Iterator[Any], batch_size: int) -> Iterator[Batch]:
    number = 0
    while True:
        records = tuple(islice(it, batch_size))
        if not records:
            return
        number += 1
        yield Batch(number=number, records=records)


def read_batches(lines: Iterable[str | bytes], batch_size: int) -> Iterator[Batch]:
    """Decode NDJSON ``lines`` and partition them into batches."""
    return chunk(decode_lines(lines), batch_size)
