"""
Stream-ingest entry points.

Contract:
    ``ingest_stream(records, batch_size, destinations)`` partitions the
    decoded ``records`` into batches, dispatches every batch to every ready
    destination and joins all tracked operations once the stream ends.
    It returns a ``StreamIngestResult`` when every operation succeeded and
    raises ``IngestionFailedError`` (carrying all failures and the result)
    otherwise.

    ``run_pipeline(...)`` is the full run used by the CLI: prepare every
    destination through the ``LifecycleOrchestrator``, ingest the stream,
    and dispose the destinations' engines.

Invariants enforced:
    - Every tracked operation is joined before this module returns or
      raises, including when the input stream itself fails (a
      ``StreamError`` propagates only after the join).
    - Failures are aggregated, never only the last one.
"""

from __future__ import annotations

from typing import Any, Iterable, Sequence
from uuid import uuid4

from pipette_config.schema import DestinationDef
from pipette_ingestion.adapters.registry import AdapterRegistry
from pipette_ingestion.domain.types import OperationFailure, StreamIngestResult
from pipette_ingestion.services.dispatcher import (
    DEFAULT_MAX_WORKERS,
    DispatchCoordinator,
)
from pipette_ingestion.services.lifecycle import (
    LifecycleOrchestrator,
    ReadyDestination,
    close_all,
)
from pipette_ingestion.stream.chunker import chunk
from pipette_kernel.exceptions import IngestionFailedError
from pipette_kernel.logging_config import LogContext, get_logger

logger = get_logger("ingestion.stream")


def ingest_stream(
    records: Iterable[Any],
    batch_size: int,
    destinations: Sequence[ReadyDestination],
    *,
    max_workers: int = DEFAULT_MAX_WORKERS,
    preserve_order: bool = False,
    max_in_flight: int | None = None,
) -> StreamIngestResult:
    """Ingest ``records`` into every ready destination; see module docstring."""
    batches = chunk(records, batch_size)
    batch_count = 0
    record_count = 0
    rows = 0
    failures: list[OperationFailure] = []

    with DispatchCoordinator(
        destinations,
        max_workers=max_workers,
        preserve_order=preserve_order,
        max_in_flight=max_in_flight,
    ) as dispatcher:
        try:
            for batch in batches:
                batch_count += 1
                record_count += len(batch)
                dispatcher.submit(batch)
        finally:
            rows, failures = dispatcher.join()
            for failure in failures:
                logger.error(
                    "operation_failed",
                    extra={
                        "failed_destination": failure.destination,
                        "target": failure.target,
                        "failed_batch": failure.batch_number,
                        "error_code": failure.error_code,
                        "error": str(failure.error),
                    },
                )

        operations = len(dispatcher.operations)

    result = StreamIngestResult(
        batches=batch_count,
        records=record_count,
        operations=operations,
        rows_written=rows,
        failures=tuple(failures),
    )
    logger.info(
        "stream_consumed",
        extra={
            "batches": result.batches,
            "records": result.records,
            "operations": result.operations,
            "rows_written": result.rows_written,
            "failed": len(result.failures),
        },
    )
    if failures:
        raise IngestionFailedError(failures, operations, result)
    return result


def run_pipeline(
    records: Iterable[Any],
    destinations: Sequence[DestinationDef],
    registry: AdapterRegistry,
    *,
    batch_size: int,
    max_workers: int = DEFAULT_MAX_WORKERS,
    preserve_order: bool = False,
    max_in_flight: int | None = None,
    run_id: str | None = None,
    namespace: str | None = None,
    config_checksum: str | None = None,
) -> StreamIngestResult:
    """
    Prepare ``destinations``, ingest ``records`` and release the engines.

    ``config_checksum`` identifies the configuration the run was started
    from; it is logged with ``run_started`` so loads can be traced back to
    the exact file content.
    """
    run_id = run_id or str(uuid4())
    with LogContext.bind(run_id=run_id, namespace=namespace):
        logger.info(
            "run_started",
            extra={
                "config_checksum": config_checksum,
                "destinations": [d.qualified_name for d in destinations],
                "batch_size": batch_size,
                "max_workers": max_workers,
                "preserve_order": preserve_order,
                "max_in_flight": max_in_flight,
            },
        )
        orchestrator = LifecycleOrchestrator(registry)
        ready = orchestrator.prepare_all(destinations)
        try:
            return ingest_stream(
                records,
                batch_size,
                ready,
                max_workers=max_workers,
                preserve_order=preserve_order,
                max_in_flight=max_in_flight,
            )
        finally:
            close_all(ready)
