"""
pipette_ingestion -- streaming NDJSON batch ingestion.

Reads decoded JSON records in fixed-size batches, prepares them per each
destination's storage strategy, and writes them concurrently to every
configured destination through a backend adapter.

Architecture:
    pipette_ingestion/ is a top-level package above pipette_config and
    pipette_kernel.  Nothing in those packages imports from ingestion.
"""
