"""Pure ingestion DTOs: batches, prepared records, tracked operations."""
