#!/usr/bin/env python3
"""
Load newline-delimited JSON from stdin (or a file) into configured destinations.

Every destination of the target namespace is loaded unless destination names
are given.  Each destination is validated before any connection is opened,
prepared (created / truncated / indexed), then fed every batch concurrently.

Usage:
    python3 scripts/run_pipette.py -c <config.yaml> -t <namespace> [destination ...] [options]

Examples:
    # Load every destination of the "events" namespace from stdin
    some-extractor | python3 scripts/run_pipette.py -c pipette.yaml -t events

    # Only the warehouse destination, 1000 records per batch
    python3 scripts/run_pipette.py -c pipette.yaml -t events warehouse -b 1000 -i events.ndjson

    # Reshape a JSON array into one record per line with jq first
    curl -s https://example.com/api/items | \\
        python3 scripts/run_pipette.py -c pipette.yaml -t items -q '.items[]'

Exit status:
    0  input fully consumed and every write succeeded
    1  a destination could not be prepared, the input could not be read,
       or at least one batch write failed
    2  usage or configuration error
"""

from __future__ import annotations

import argparse
import contextlib
import shlex
import sys
from pathlib import Path
from typing import BinaryIO, Iterator, Sequence

# Project root on sys.path
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_USAGE = 2


def _parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Stream NDJSON records into configured database destinations.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "-c",
        "--config-path",
        required=True,
        type=Path,
        help="Path to the YAML configuration file.",
    )
    parser.add_argument(
        "-t",
        "--target",
        required=True,
        help="Target namespace whose destinations receive the stream.",
    )
    parser.add_argument(
        "destinations",
        nargs="*",
        help="Destination names within the namespace (default: all).",
    )
    parser.add_argument(
        "-b",
        "--batch-size",
        type=int,
        default=None,
        help="Records per batch (default: runtime.batch-size or 5000).",
    )
    filters = parser.add_mutually_exclusive_group()
    filters.add_argument(
        "-q",
        "--jq",
        default=None,
        help="jq query used to reshape the input into one record per line.",
    )
    filters.add_argument(
        "--filter",
        default=None,
        help="Arbitrary reshaping command (stdin bytes -> NDJSON stdout).",
    )
    parser.add_argument(
        "-i",
        "--input",
        type=Path,
        default=None,
        help="Read records from this file instead of stdin.",
    )
    parser.add_argument(
        "--max-workers",
        type=int,
        default=None,
        help="Concurrent write workers (default: runtime.max-workers or 8).",
    )
    parser.add_argument(
        "--preserve-order",
        action="store_true",
        default=None,
        help="Apply batches to each destination strictly in arrival order.",
    )
    parser.add_argument(
        "--max-in-flight",
        type=int,
        default=None,
        help="Batches allowed to wait for a write before reading more input "
        "(default: runtime.max-in-flight or unbounded).",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="Increase log verbosity (-v info, -vv debug).",
    )
    return parser.parse_args(argv)


@contextlib.contextmanager
def _open_source(path: Path | None) -> Iterator[BinaryIO]:
    if path is None:
        yield sys.stdin.buffer
        return
    with open(path, "rb") as f:
        yield f


def main(argv: Sequence[str] | None = None) -> int:
    args = _parse_args(argv)

    # Lazy imports so we fail fast on args first
    from pipette_config import (
        load_configuration,
        select_destinations,
        validate_destinations,
    )
    from pipette_ingestion.adapters.registry import default_adapter_registry
    from pipette_ingestion.services.stream_ingest import run_pipeline
    from pipette_ingestion.stream.chunker import check_batch_size, decode_lines
    from pipette_ingestion.stream.filter_process import FilterProcess, jq_command
    from pipette_kernel.domain.clock import SystemClock
    from pipette_kernel.exceptions import (
        ConfigurationError,
        IngestionFailedError,
        PipetteError,
    )
    from pipette_kernel.logging_config import configure_logging, level_for_verbosity

    configure_logging(level=level_for_verbosity(args.verbose))

    try:
        config = load_configuration(args.config_path)
        destinations = select_destinations(config, args.target, args.destinations)
        runtime = config.runtime
        batch_size = check_batch_size(
            args.batch_size if args.batch_size is not None else runtime.batch_size
        )
        max_workers = args.max_workers if args.max_workers is not None else runtime.max_workers
        if max_workers <= 0:
            raise ConfigurationError("--max-workers must be a positive integer")
        preserve_order = (
            args.preserve_order if args.preserve_order is not None else runtime.preserve_order
        )
        max_in_flight = (
            args.max_in_flight if args.max_in_flight is not None else runtime.max_in_flight
        )
        if max_in_flight is not None and max_in_flight <= 0:
            raise ConfigurationError("--max-in-flight must be a positive integer")
    except ConfigurationError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return EXIT_USAGE

    validation = validate_destinations(destinations)
    if not validation.is_valid:
        for error in validation.errors:
            print(f"ERROR: {error}", file=sys.stderr)
        return EXIT_USAGE

    if args.input is not None and not args.input.is_file():
        print(f"ERROR: File not found: {args.input}", file=sys.stderr)
        return EXIT_USAGE

    command = None
    if args.jq is not None:
        command = jq_command(args.jq)
    elif args.filter is not None:
        command = shlex.split(args.filter)

    registry = default_adapter_registry(clock=SystemClock())
    try:
        with _open_source(args.input) as source, contextlib.ExitStack() as stack:
            if command is None:
                lines = source
            else:
                lines = stack.enter_context(FilterProcess(command, source)).lines()
            result = run_pipeline(
                decode_lines(lines),
                destinations,
                registry,
                batch_size=batch_size,
                max_workers=max_workers,
                preserve_order=preserve_order,
                max_in_flight=max_in_flight,
                namespace=args.target,
                config_checksum=config.checksum,
            )
    except ConfigurationError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return EXIT_USAGE
    except IngestionFailedError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return EXIT_FAILED
    except PipetteError as e:
        print(f"ERROR [{e.code}]: {e}", file=sys.stderr)
        return EXIT_FAILED

    print(
        f"Complete: {result.records} records in {result.batches} batches "
        f"-> {len(destinations)} destination(s), {result.rows_written} rows written"
    )
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
