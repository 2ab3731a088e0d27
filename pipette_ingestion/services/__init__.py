"""Ingestion services: lifecycle setup, dispatch and the stream entry points."""

from pipette_ingestion.services.dispatcher import DispatchCoordinator
from pipette_ingestion.services.lifecycle import (
    LifecycleOrchestrator,
    ReadyDestination,
    close_all,
)
from pipette_ingestion.services.stream_ingest import ingest_stream, run_pipeline

__all__ = [
    "DispatchCoordinator",
    "LifecycleOrchestrator",
    "ReadyDestination",
    "close_all",
    "ingest_stream",
    "run_pipeline",
]
