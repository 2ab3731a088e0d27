"""Input side: NDJSON decoding, batching and the external reshaping filter."""

from pipette_ingestion.stream.chunker import chunk, decode_lines, read_batches
from pipette_ingestion.stream.filter_process import FilterProcess, jq_command

__all__ = ["FilterProcess", "chunk", "decode_lines", "jq_command", "read_batches"]
