"""
AdapterRegistry: backend identifier -> DatabaseAdapter.

Contract:
    - ``register()`` adds an adapter; raises ValueError on duplicate backend.
    - ``get()`` retrieves by backend; raises ``UnsupportedBackendError``.
    - ``resolve(dest)`` returns the adapter for ``dest`` after checking it
      supports the destination's storage and ingestion strategies, raising
      ``UnsupportedStorageStrategyError`` or
      ``UnsupportedIngestionStrategyError`` otherwise.
    - ``default_adapter_registry()`` returns a registry holding the
      PostgreSQL and SQLite adapters.
"""

from __future__ import annotations

from pipette_config.schema import DestinationDef
from pipette_ingestion.adapters.base import DatabaseAdapter
from pipette_ingestion.adapters.postgres import PostgresAdapter
from pipette_ingestion.adapters.sqlite import SqliteAdapter
from pipette_kernel.domain.clock import Clock
from pipette_kernel.exceptions import (
    UnsupportedBackendError,
    UnsupportedIngestionStrategyError,
    UnsupportedStorageStrategyError,
)


class AdapterRegistry:
    """Registry mapping backend identifiers to adapter implementations."""

    def __init__(self) -> None:
        self._adapters: dict[str, DatabaseAdapter] = {}

    def register(self, adapter: DatabaseAdapter) -> None:
        """Register an adapter under its ``backend`` identifier.

        Raises:
            ValueError: If an adapter for the same backend is already registered.
        """
        if adapter.backend in self._adapters:
            raise ValueError(
                f"Backend '{adapter.backend}' is already registered"
            )
        self._adapters[adapter.backend] = adapter

    def get(self, backend: str) -> DatabaseAdapter:
        """Retrieve the adapter for ``backend``.

        Raises:
            UnsupportedBackendError: If no adapter is registered for it.
        """
        try:
            return self._adapters[backend]
        except KeyError:
            raise UnsupportedBackendError(backend) from None

    def resolve(self, dest: DestinationDef) -> DatabaseAdapter:
        """Adapter for ``dest``, checked against its strategies."""
        adapter = self.get(dest.adapter)
        if not adapter.supports_storage(dest.storage_strategy):
            raise UnsupportedStorageStrategyError(
                adapter.backend, dest.storage_strategy.value
            )
        if not adapter.supports_ingestion(dest.ingestion_strategy):
            raise UnsupportedIngestionStrategyError(
                adapter.backend, dest.ingestion_strategy.value
            )
        return adapter

    def list_backends(self) -> tuple[str, ...]:
        """Return all registered backend identifiers, sorted."""
        return tuple(sorted(self._adapters.keys()))

    def __len__(self) -> int:
        return len(self._adapters)

    def __contains__(self, backend: str) -> bool:
        return backend in self._adapters


def default_adapter_registry(clock: Clock | None = None) -> AdapterRegistry:
    """Create a registry with the built-in PostgreSQL and SQLite adapters."""
    registry = AdapterRegistry()
    registry.register(PostgresAdapter(clock=clock))
    registry.register(SqliteAdapter(clock=clock))
    return registry
