"""
DispatchCoordinator -- fans each batch out to every ready destination.

Contract:
    ``submit(batch)`` schedules one ingestion operation per ready
    destination and returns the ``TrackedOperation`` handles.  Every handle
    is retained until ``join()``, which waits for all of them and returns
    the rows written plus one ``OperationFailure`` per failed operation.
    A failure never cancels sibling operations.

Concurrency:
    Default: one shared, bounded ``ThreadPoolExecutor``.  Operations for
    the same destination may complete out of batch order.

    ``preserve_order=True``: one single-worker executor per destination,
    so each destination applies its batches strictly in arrival order.

    ``max_in_flight`` bounds the number of submitted but unfinished
    operations; ``submit`` blocks once the bound is reached.

Architecture: pipette_ingestion/services.  The coordinator never touches
configuration or the input stream; it receives ready destinations and
batches.
"""

from __future__ import annotations

import contextvars
import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from typing import Sequence

from sqlalchemy.exc import SQLAlchemyError

from pipette_ingestion.domain.types import Batch, OperationFailure, TrackedOperation
from pipette_ingestion.services.lifecycle import ReadyDestination
from pipette_kernel.exceptions import IngestionError, PipetteError
from pipette_kernel.logging_config import LogContext, get_logger

logger = get_logger("ingestion.dispatcher")

DEFAULT_MAX_WORKERS = 8


def ingest_batch(rd: ReadyDestination, batch: Batch) -> int:
    """Transform and write ``batch`` to one destination."""
    with LogContext.bind(destination=rd.name, batch_number=str(batch.number)):
        try:
            rows = rd.adapter.ingest_records(rd.engine, rd.table, batch, rd.dest)
        except PipetteError:
            logger.exception("batch_failed", extra={"target": rd.dest.qualified_target})
            raise
        except SQLAlchemyError as exc:
            logger.exception("batch_failed", extra={"target": rd.dest.qualified_target})
            raise IngestionError(
                rd.name, rd.dest.qualified_target, str(exc), batch.number
            ) from exc
        logger.info(
            "batch_ingested",
            extra={
                "target": rd.dest.qualified_target,
                "records": len(batch),
                "rows": rows,
            },
        )
        return rows


class DispatchCoordinator:
    """Schedules and tracks (batch, destination) ingestion operations."""

    def __init__(
        self,
        destinations: Sequence[ReadyDestination],
        max_workers: int = DEFAULT_MAX_WORKERS,
        preserve_order: bool = False,
        max_in_flight: int | None = None,
    ):
        if max_workers <= 0:
            raise ValueError("max_workers must be positive")
        self._destinations = tuple(destinations)
        if preserve_order:
            self._executors = {
                rd.name: ThreadPoolExecutor(
                    max_workers=1, thread_name_prefix=f"pipette-{rd.dest.name}"
                )
                for rd in self._destinations
            }
            self._shared = None
        else:
            self._executors = {}
            self._shared = ThreadPoolExecutor(
                max_workers=max_workers, thread_name_prefix="pipette-ingest"
            )
        self._slots = (
            threading.BoundedSemaphore(max_in_flight) if max_in_flight else None
        )
        self._operations: list[TrackedOperation] = []
        self._joined = False

    # -- context management ------------------------------------------------

    def __enter__(self) -> DispatchCoordinator:
        return self

    def __exit__(self, *exc: object) -> None:
        self.shutdown()

    def shutdown(self) -> None:
        """Wait for running operations and release the worker threads."""
        for executor in self._all_executors():
            executor.shutdown(wait=True)

    def _all_executors(self) -> list[ThreadPoolExecutor]:
        if self._shared is not None:
            return [self._shared]
        return list(self._executors.values())

    def _executor_for(self, rd: ReadyDestination) -> ThreadPoolExecutor:
        if self._shared is not None:
            return self._shared
        return self._executors[rd.name]

    # -- dispatch ----------------------------------------------------------

    @property
    def operations(self) -> tuple[TrackedOperation, ...]:
        return tuple(self._operations)

    def submit(self, batch: Batch) -> list[TrackedOperation]:
        """Schedule ``batch`` for every destination."""
        if self._joined:
            raise RuntimeError("DispatchCoordinator already joined")
        issued = []
        for rd in self._destinations:
            if self._slots is not None:
                self._slots.acquire()
            ctx = contextvars.copy_context()
            future: Future[int] = self._executor_for(rd).submit(
                ctx.run, ingest_batch, rd, batch
            )
            if self._slots is not None:
                future.add_done_callback(self._release_slot)
            op = TrackedOperation(
                batch_number=batch.number,
                destination=rd.name,
                target=rd.dest.qualified_target,
                storage_strategy=rd.dest.storage_strategy,
                ingestion_strategy=rd.dest.ingestion_strategy,
                future=future,
            )
            self._operations.append(op)
            issued.append(op)
        return issued

    def _release_slot(self, _future: Future) -> None:
        assert self._slots is not None
        self._slots.release()

    def join(self) -> tuple[int, list[OperationFailure]]:
        """
        Wait for every tracked operation.

        Returns:
            Total rows written by successful operations, and the failures in
            submission order.
        """
        self._joined = True
        wait([op.future for op in self._operations])

        rows = 0
        failures: list[OperationFailure] = []
        for op in self._operations:
            error = op.future.exception()
            if error is None:
                rows += op.future.result()
            else:
                failures.append(OperationFailure.from_operation(op, error))

        logger.info(
            "operations_joined",
            extra={
                "operations": len(self._operations),
                "failed": len(failures),
                "rows": rows,
            },
        )
        return rows, failures
