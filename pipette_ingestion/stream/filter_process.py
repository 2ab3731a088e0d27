"""
External reshaping filter: raw input bytes -> NDJSON lines.

Contract:
    ``FilterProcess(command, source)`` spawns ``command``, copies ``source``
    into its stdin on a writer thread, and exposes its stdout through
    ``lines()``.  Used as a context manager so the child is always reaped.

    Any command that reads bytes on stdin and writes one JSON value per
    line on stdout works.  ``jq_command(query)`` builds the usual
    ``jq -c --unbuffered <query>`` invocation.

Failure modes (all fatal to the run, raised as ``FilterProcessError``):
    - The command cannot be started.
    - The child exits with a non-zero status.  Its stderr tail is attached.
    - Feeding stdin fails (for example a broken pipe) and the child did not
      already report a failure of its own.

An idle ``source`` never holds up ``close()`` or the end of ``lines()``: once
the child is reaped the writer thread gets a bounded join and, being a
daemon, is left behind if it is still blocked reading.
"""

from __future__ import annotations

import shutil
import subprocess
import threading
from collections import deque
from typing import BinaryIO, Iterator, Sequence

from pipette_kernel.exceptions import FilterProcessError
from pipette_kernel.logging_config import get_logger

logger = get_logger("ingestion.filter")

_COPY_CHUNK = 1 << 16
_STDERR_TAIL_LINES = 50
# Once the child is reaped its pipes are closed, so the helper threads only
# outlive it while blocked on an idle ``source``.
_THREAD_JOIN_TIMEOUT = 2.0


def jq_command(query: str, executable: str = "jq") -> list[str]:
    """Command line that runs jq in compact, unbuffered mode."""
    return [executable, "-c", "--unbuffered", query]


class FilterProcess:
    """A running reshaping filter fed from ``source``."""

    def __init__(self, command: Sequence[str], source: BinaryIO):
        if not command:
            raise FilterProcessError(command, "empty filter command")
        self.command = list(command)
        self._source = source
        self._proc: subprocess.Popen[bytes] | None = None
        self._writer: threading.Thread | None = None
        self._stderr_reader: threading.Thread | None = None
        self._writer_error: BaseException | None = None
        self._stderr_tail: deque[str] = deque(maxlen=_STDERR_TAIL_LINES)

    # -- lifecycle ---------------------------------------------------------

    def start(self) -> FilterProcess:
        if shutil.which(self.command[0]) is None:
            raise FilterProcessError(self.command, "executable not found")
        try:
            self._proc = subprocess.Popen(
                self.command,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
            )
        except OSError as exc:
            raise FilterProcessError(self.command, f"could not start: {exc}") from exc

        self._writer = threading.Thread(
            target=self._feed, name="pipette-filter-writer", daemon=True
        )
        self._stderr_reader = threading.Thread(
            target=self._drain_stderr, name="pipette-filter-stderr", daemon=True
        )
        self._writer.start()
        self._stderr_reader.start()
        logger.info("filter_started", extra={"command": self.command, "pid": self._proc.pid})
        return self

    def __enter__(self) -> FilterProcess:
        return self.start()

    def __exit__(self, *exc: object) -> None:
        self.close()

    def close(self) -> None:
        """Terminate the child if it is still running and reap it."""
        proc = self._proc
        if proc is None:
            return
        if proc.poll() is None:
            proc.kill()
        proc.wait()
        self._join_threads()
        for pipe in (proc.stdout, proc.stderr):
            if pipe is not None:
                pipe.close()

    # -- threads -----------------------------------------------------------

    def _feed(self) -> None:
        assert self._proc is not None and self._proc.stdin is not None
        stdin = self._proc.stdin
        # read1 hands over whatever a slow pipe has rather than waiting for a full chunk.
        read = getattr(self._source, "read1", self._source.read)
        try:
            for block in iter(lambda: read(_COPY_CHUNK), b""):
                stdin.write(block)
                stdin.flush()
        except (BrokenPipeError, OSError, ValueError) as exc:
            self._writer_error = exc
        finally:
            try:
                stdin.close()
            except (BrokenPipeError, OSError) as exc:
                if self._writer_error is None:
                    self._writer_error = exc

    def _drain_stderr(self) -> None:
        assert self._proc is not None and self._proc.stderr is not None
        for raw in self._proc.stderr:
            self._stderr_tail.append(raw.decode("utf-8", "replace").rstrip())

    def _join_threads(self, timeout: float = _THREAD_JOIN_TIMEOUT) -> None:
        """Join the helper threads; call only after the child has been reaped."""
        for thread in (self._writer, self._stderr_reader):
            if thread is None:
                continue
            thread.join(timeout)
            if thread.is_alive():
                logger.warning(
                    "filter_thread_abandoned",
                    extra={"command": self.command, "thread": thread.name},
                )

    # -- output ------------------------------------------------------------

    def lines(self) -> Iterator[bytes]:
        """
        Yield the child's stdout line by line.

        After the last line, waits for the child and raises
        ``FilterProcessError`` if it failed or could not be fed.
        """
        if self._proc is None:
            raise FilterProcessError(self.command, "filter not started")
        assert self._proc.stdout is not None
        for line in self._proc.stdout:
            yield line

        returncode = self._proc.wait()
        self._join_threads()
        stderr = "\n".join(self._stderr_tail)
        if returncode != 0:
            raise FilterProcessError(
                self.command, f"exited with status {returncode}", returncode, stderr
            )
        if self._writer_error is not None:
            raise FilterProcessError(
                self.command,
                f"could not feed input: {self._writer_error}",
                returncode,
                stderr,
            )
        logger.info("filter_finished", extra={"command": self.command})
