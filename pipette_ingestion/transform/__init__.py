"""Storage-strategy record transformers."""

from pipette_ingestion.transform.records import TRANSFORMERS, prepare_records

__all__ = ["TRANSFORMERS", "prepare_records"]
