"""Database adapters: protocol, SQLAlchemy backends and registry."""

from pipette_ingestion.adapters.base import DatabaseAdapter, SqlAlchemyAdapter
from pipette_ingestion.adapters.postgres import PostgresAdapter
from pipette_ingestion.adapters.registry import AdapterRegistry, default_adapter_registry
from pipette_ingestion.adapters.sqlite import SqliteAdapter

__all__ = [
    "AdapterRegistry",
    "DatabaseAdapter",
    "PostgresAdapter",
    "SqlAlchemyAdapter",
    "SqliteAdapter",
    "default_adapter_registry",
]
