"""
LifecycleOrchestrator -- brings every destination to a ready state.

Contract:
    ``prepare_all(destinations)`` validates every destination (strategy
    invariants and adapter support) before connecting to any of them, then
    opens each destination's engine and ensures its target table:

        table exists:
            refresh                   -> truncate
            merge without pk index    -> make index
            simple storage + refresh  -> reset record-number sequence
        table missing:
            make table; merge         -> make index

    The result is one ``ReadyDestination`` per destination, owning that
    destination's engine.  Running the sequence twice reaches the same
    state without error.

Architecture: pipette_ingestion/services.  Imports adapters, config and
kernel.  Connection descriptors are interpolated here, immediately before
the engine is opened.

Failure modes:
    - ConfigurationError / UnsupportedAdapterError: raised before any
      connection is opened.
    - LifecycleError: a backend call failed; names the stage.  Engines
      already opened by this call are disposed before the error propagates.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Mapping, Sequence

from sqlalchemy import Table
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from pipette_config.interpolation import interpolate_env_vars, unresolved_placeholders
from pipette_config.schema import DestinationDef, IngestionStrategy
from pipette_config.validator import validate_destination
from pipette_ingestion.adapters.base import DatabaseAdapter
from pipette_ingestion.adapters.registry import AdapterRegistry
from pipette_kernel.exceptions import ConfigurationError, LifecycleError
from pipette_kernel.logging_config import LogContext, get_logger

logger = get_logger("ingestion.lifecycle")

# Read-only stages, not reported as actions taken.
_PROBE_STAGES = frozenset({"table_exists", "check_primary_index"})


@dataclass(frozen=True)
class ReadyDestination:
    """A destination that passed setup, with the engine it owns."""

    dest: DestinationDef
    adapter: DatabaseAdapter
    engine: Engine
    table: Table

    @property
    def name(self) -> str:
        return self.dest.qualified_name

    def dispose(self) -> None:
        self.engine.dispose()


class LifecycleOrchestrator:
    """Validates, connects and prepares destinations before the first batch."""

    def __init__(
        self,
        registry: AdapterRegistry,
        environ: Mapping[str, str] | None = None,
    ):
        self._registry = registry
        self._environ = environ

    # -- validation --------------------------------------------------------

    def validate(self, dest: DestinationDef) -> DatabaseAdapter:
        """Check ``dest`` without touching the backend; return its adapter."""
        validate_destination(dest)
        return self._registry.resolve(dest)

    def resolve_connection(self, dest: DestinationDef) -> str:
        url = interpolate_env_vars(dest.connection, self._environ)
        missing = unresolved_placeholders(url)
        if missing:
            raise ConfigurationError(
                f"connection references unset environment variables: {sorted(set(missing))}",
                destination=dest.qualified_name,
            )
        return url

    # -- setup -------------------------------------------------------------

    def prepare(
        self,
        dest: DestinationDef,
        adapter: DatabaseAdapter | None = None,
    ) -> ReadyDestination:
        """Connect to ``dest`` and ensure its target; see module docstring."""
        if adapter is None:
            adapter = self.validate(dest)
        url = self.resolve_connection(dest)

        with LogContext.bind(destination=dest.qualified_name):
            try:
                engine = adapter.connect(url)
            except SQLAlchemyError as exc:
                raise LifecycleError(
                    dest.qualified_name, dest.qualified_target, "connect", str(exc)
                ) from exc
            try:
                actions = self._ensure_target(adapter, engine, dest)
            except BaseException:
                engine.dispose()
                raise
            logger.info(
                "destination_prepared",
                extra={
                    "target": dest.qualified_target,
                    "backend": adapter.backend,
                    "storage_strategy": dest.storage_strategy.value,
                    "ingestion_strategy": dest.ingestion_strategy.value,
                    "actions": actions,
                },
            )
        return ReadyDestination(
            dest=dest,
            adapter=adapter,
            engine=engine,
            table=adapter.build_table(dest),
        )

    def prepare_all(
        self, destinations: Sequence[DestinationDef]
    ) -> tuple[ReadyDestination, ...]:
        """Validate every destination, then prepare each in order."""
        adapters = [self.validate(dest) for dest in destinations]
        for dest in destinations:
            self.resolve_connection(dest)

        ready: list[ReadyDestination] = []
        try:
            for dest, adapter in zip(destinations, adapters):
                ready.append(self.prepare(dest, adapter))
        except BaseException:
            close_all(ready)
            raise
        return tuple(ready)

    def _ensure_target(
        self, adapter: DatabaseAdapter, engine: Engine, dest: DestinationDef
    ) -> list[str]:
        actions: list[str] = []

        def step(stage: str, fn: Callable[..., Any]) -> Any:
            try:
                result = fn(engine, dest)
            except SQLAlchemyError as exc:
                raise LifecycleError(
                    dest.qualified_name, dest.qualified_target, stage, str(exc)
                ) from exc
            if stage not in _PROBE_STAGES:
                actions.append(stage)
            return result

        ingestion = dest.ingestion_strategy
        if step("table_exists", adapter.table_exists):
            if ingestion is IngestionStrategy.REFRESH:
                step("truncate_table", adapter.truncate_table)
            if ingestion is IngestionStrategy.MERGE:
                if step("check_primary_index", adapter.check_primary_index) is None:
                    step("make_index", adapter.make_index)
            if dest.storage_strategy.is_simple and ingestion is IngestionStrategy.REFRESH:
                step("reset_sequence", adapter.reset_sequence)
        else:
            step("make_table", adapter.make_table)
            if ingestion is IngestionStrategy.MERGE:
                step("make_index", adapter.make_index)
        return actions


def close_all(ready: Sequence[ReadyDestination]) -> None:
    """Dispose every destination's engine."""
    for rd in ready:
        rd.dispose()
