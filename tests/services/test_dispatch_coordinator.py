"""
DispatchCoordinator with an in-memory adapter.

Every (batch, destination) operation is tracked and joined; a failure never
cancels its siblings.
"""

import threading
import time

import pytest
from sqlalchemy.exc import OperationalError

from pipette_ingestion.domain.types import Batch, OperationStatus
from pipette_ingestion.services.dispatcher import DispatchCoordinator
from pipette_ingestion.services.lifecycle import ReadyDestination
from pipette_kernel.exceptions import IngestionError, RecordShapeError
from pipette_kernel.logging_config import LogContext


class RecordingAdapter:
    """Stands in for a database adapter; remembers what it was asked to write."""

    backend = "memory"

    def __init__(self, fail_batches=(), delay=None):
        self.fail_batches = set(fail_batches)
        self.delay = delay
        self.calls: list[int] = []
        self.contexts: list[dict] = []
        self.active = 0
        self.max_active = 0
        self._lock = threading.Lock()

    def ingest_records(self, engine, table, batch, dest):
        with self._lock:
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        try:
            if self.delay is not None:
                time.sleep(self.delay(batch.number))
            with self._lock:
                self.calls.append(batch.number)
                self.contexts.append(LogContext.get_all())
            if batch.number in self.fail_batches:
                raise OperationalError("INSERT", {}, Exception("disk I/O error"))
            return len(batch)
        finally:
            with self._lock:
                self.active -= 1


def _ready(make_destination, name, adapter) -> ReadyDestination:
    return ReadyDestination(
        dest=make_destination(name), adapter=adapter, engine=None, table=None
    )


def _batches(count, size=2):
    return [
        Batch(number=n, records=tuple({"n": n, "i": i} for i in range(size)))
        for n in range(1, count + 1)
    ]


class TestTracking:
    def test_one_operation_per_batch_and_destination(self, make_destination):
        first, second = RecordingAdapter(), RecordingAdapter()
        ready = [
            _ready(make_destination, "first", first),
            _ready(make_destination, "second", second),
        ]
        with DispatchCoordinator(ready, max_workers=4) as dispatcher:
            for batch in _batches(3):
                issued = dispatcher.submit(batch)
                assert [op.destination for op in issued] == ["test.first", "test.second"]
            rows, failures = dispatcher.join()

        assert len(dispatcher.operations) == 6
        assert all(op.status is OperationStatus.SUCCEEDED for op in dispatcher.operations)
        assert rows == 12
        assert failures == []
        assert sorted(first.calls) == [1, 2, 3]
        assert sorted(second.calls) == [1, 2, 3]

    def test_failure_does_not_cancel_siblings(self, make_destination):
        healthy = RecordingAdapter()
        flaky = RecordingAdapter(fail_batches={2})
        ready = [
            _ready(make_destination, "healthy", healthy),
            _ready(make_destination, "flaky", flaky),
        ]
        with DispatchCoordinator(ready, max_workers=2) as dispatcher:
            for batch in _batches(4):
                dispatcher.submit(batch)
            rows, failures = dispatcher.join()

        assert sorted(healthy.calls) == [1, 2, 3, 4]
        assert sorted(flaky.calls) == [1, 2, 3, 4]
        assert rows == 14
        assert len(failures) == 1
        failure = failures[0]
        assert failure.destination == "test.flaky"
        assert failure.batch_number == 2
        assert isinstance(failure.error, IngestionError)
        assert failure.error.batch_number == 2
        assert "disk I/O error" in str(failure.error)

    def test_every_failure_is_reported(self, make_destination):
        adapter = RecordingAdapter(fail_batches={1, 3})
        with DispatchCoordinator([_ready(make_destination, "d", adapter)]) as dispatcher:
            for batch in _batches(3):
                dispatcher.submit(batch)
            _, failures = dispatcher.join()
        assert [f.batch_number for f in failures] == [1, 3]

    def test_pipette_errors_are_not_rewrapped(self, make_destination):
        class ShapeRejectingAdapter(RecordingAdapter):
            def ingest_records(self, engine, table, batch, dest):
                raise RecordShapeError(dest.qualified_name, dest.target, [1])

        with DispatchCoordinator(
            [_ready(make_destination, "d", ShapeRejectingAdapter())]
        ) as dispatcher:
            dispatcher.submit(_batches(1)[0])
            _, failures = dispatcher.join()
        assert type(failures[0].error) is RecordShapeError

    def test_submit_after_join_is_rejected(self, make_destination):
        with DispatchCoordinator([_ready(make_destination, "d", RecordingAdapter())]) as dispatcher:
            dispatcher.join()
            with pytest.raises(RuntimeError, match="already joined"):
                dispatcher.submit(_batches(1)[0])

    def test_max_workers_must_be_positive(self):
        with pytest.raises(ValueError):
            DispatchCoordinator([], max_workers=0)


class TestConcurrency:
    def test_preserve_order_applies_batches_in_arrival_order(self, make_destination):
        # Earlier batches sleep longer, so a shared pool would finish them last.
        adapters = [RecordingAdapter(delay=lambda n: 0.05 / n) for _ in range(2)]
        ready = [_ready(make_destination, f"d{i}", a) for i, a in enumerate(adapters)]
        with DispatchCoordinator(ready, max_workers=8, preserve_order=True) as dispatcher:
            for batch in _batches(5):
                dispatcher.submit(batch)
            dispatcher.join()

        for adapter in adapters:
            assert adapter.calls == [1, 2, 3, 4, 5]
            assert adapter.max_active == 1

    def test_max_in_flight_bounds_outstanding_operations(self, make_destination):
        adapter = RecordingAdapter(delay=lambda n: 0.01)
        with DispatchCoordinator(
            [_ready(make_destination, "d", adapter)], max_workers=8, max_in_flight=2
        ) as dispatcher:
            for batch in _batches(10):
                dispatcher.submit(batch)
            rows, _ = dispatcher.join()

        assert rows == 20
        assert adapter.max_active <= 2

    def test_log_context_reaches_workers(self, make_destination):
        adapter = RecordingAdapter()
        with LogContext.bind(run_id="run-42"):
            with DispatchCoordinator([_ready(make_destination, "d", adapter)]) as dispatcher:
                dispatcher.submit(_batches(1)[0])
                dispatcher.join()

        assert adapter.contexts == [
            {"run_id": "run-42", "destination": "test.d", "batch_number": "1"}
        ]

    def test_join_logs_summary(self, make_destination, captured_logs):
        with DispatchCoordinator(
            [_ready(make_destination, "d", RecordingAdapter(fail_batches={1}))]
        ) as dispatcher:
            for batch in _batches(2):
                dispatcher.submit(batch)
            dispatcher.join()

        summary = [r for r in captured_logs() if r["message"] == "operations_joined"]
        assert summary[0]["operations"] == 2
        assert summary[0]["failed"] == 1
        assert summary[0]["rows"] == 2
        failed = [r for r in captured_logs() if r["message"] == "batch_failed"]
        assert failed[0]["level"] == "ERROR"
        assert failed[0]["batch_number"] == "1"
