"""
Structured JSON logging for pipette.

Every record is one JSON object per line on stderr, so a run's log can be
piped next to its NDJSON input without mixing the two.

Context:
    ``LogContext`` carries the run-scoped fields (``run_id``, ``namespace``,
    ``destination``, ``batch_number``) in context variables.  The
    dispatcher copies the submitting context into each worker, so a batch
    write logs under the run and destination that scheduled it.

Exceptions:
    Public attributes of a logged exception (``DecodeError.line_number``,
    ``IngestionError.target`` ...) are flattened into ``exc_<name>`` fields.
    Long string attributes, such as the stderr tail of a failed filter, are
    clipped to ``MAX_EXC_FIELD_CHARS``.
"""

__all__ = [
    "MAX_EXC_FIELD_CHARS",
    "StructuredFormatter",
    "LogContext",
    "get_logger",
    "level_for_verbosity",
    "configure_logging",
    "reset_logging",
]

import json
import logging
import sys
import threading
from contextvars import ContextVar, Token
from datetime import UTC, datetime
from decimal import Decimal
from enum import Enum
from pathlib import PurePath
from typing import Any, ClassVar
from uuid import UUID

MAX_EXC_FIELD_CHARS = 512

# ---------------------------------------------------------------------------
# Context propagation
# ---------------------------------------------------------------------------


class LogContext:
    """Run-scoped log fields, one context variable per field."""

    FIELDS: ClassVar[tuple[str, ...]] = (
        "run_id",
        "namespace",
        "destination",
        "batch_number",
    )
    _vars: ClassVar[dict[str, ContextVar[str | None]]] = {
        name: ContextVar(f"pipette_log_{name}", default=None) for name in FIELDS
    }

    @classmethod
    def var(cls, name: str) -> ContextVar[str | None]:
        try:
            return cls._vars[name]
        except KeyError:
            raise TypeError(
                f"unknown log context field {name!r}; expected one of {cls.FIELDS}"
            ) from None

    @classmethod
    def set(cls, **fields: object) -> None:
        """Set context fields. ``None`` values leave a field untouched."""
        for name, value in fields.items():
            var = cls.var(name)
            if value is not None:
                var.set(str(value))

    @classmethod
    def get_all(cls) -> dict[str, str]:
        """Return all non-None context fields as a dict, in field order."""
        ctx: dict[str, str] = {}
        for name, var in cls._vars.items():
            value = var.get()
            if value is not None:
                ctx[name] = value
        return ctx

    @classmethod
    def clear(cls) -> None:
        for var in cls._vars.values():
            var.set(None)

    @classmethod
    def bind(cls, **fields: object) -> "_Binding":
        """Set fields for the duration of a ``with`` block.

        Unknown field names raise ``TypeError`` immediately rather than on
        entry.
        """
        for name in fields:
            cls.var(name)
        return _Binding(fields)


class _Binding:
    """Context manager returned by ``LogContext.bind``."""

    def __init__(self, fields: dict[str, object]):
        self._fields = fields
        self._tokens: list[tuple[ContextVar[str | None], Token[str | None]]] = []

    def __enter__(self) -> type[LogContext]:
        for name, value in self._fields.items():
            if value is not None:
                var = LogContext.var(name)
                self._tokens.append((var, var.set(str(value))))
        return LogContext

    def __exit__(self, *exc: Any) -> None:
        while self._tokens:
            var, token = self._tokens.pop()
            var.reset(token)


# ---------------------------------------------------------------------------
# JSON Formatter
# ---------------------------------------------------------------------------

_STDLIB_KEYS: frozenset[str] = frozenset(
    vars(logging.LogRecord("", 0, "", 0, "", (), None)).keys()
) | {"message", "taskName"}

_EXC_SKIPPED = frozenset({"args", "code"})


class _JSONEncoder(json.JSONEncoder):
    """Handle the non-JSON values pipette puts in log payloads."""

    def default(self, obj: Any) -> Any:
        if isinstance(obj, Enum):
            return obj.value
        if isinstance(obj, (UUID, Decimal, PurePath)):
            return str(obj)
        if isinstance(obj, datetime):
            return obj.isoformat()
        if isinstance(obj, bytes):
            return obj.decode("utf-8", "replace")
        if isinstance(obj, (set, frozenset)):
            return sorted(obj, key=str)
        return super().default(obj)


def _clip(value: Any) -> Any:
    if isinstance(value, str) and len(value) > MAX_EXC_FIELD_CHARS:
        return f"{value[:MAX_EXC_FIELD_CHARS]}... ({len(value)} chars)"
    return value


class StructuredFormatter(logging.Formatter):
    """Formats each log record as a single JSON line."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        payload.update(LogContext.get_all())

        for key, val in vars(record).items():
            if key not in _STDLIB_KEYS and key not in payload:
                payload[key] = val

        if record.exc_info and record.exc_info[1] is not None:
            payload.update(self._exception_fields(record.exc_info[1]))
            payload["traceback"] = self.formatException(record.exc_info)

        return json.dumps(payload, cls=_JSONEncoder, default=str)

    @staticmethod
    def _exception_fields(exc: BaseException) -> dict[str, Any]:
        fields: dict[str, Any] = {
            "exc_type": type(exc).__name__,
            "exc_message": _clip(str(exc)),
        }
        code = getattr(exc, "code", None)
        if code is not None:
            fields["exc_code"] = code
        for key, val in vars(exc).items():
            if not key.startswith("_") and key not in _EXC_SKIPPED:
                fields[f"exc_{key}"] = _clip(val)
        return fields


# ---------------------------------------------------------------------------
# Logger factory
# ---------------------------------------------------------------------------

_LOGGER_PREFIX = "pipette"


def get_logger(name: str) -> logging.Logger:
    """Get a logger under the pipette namespace."""
    return logging.getLogger(f"{_LOGGER_PREFIX}.{name}")


# ---------------------------------------------------------------------------
# Initialization
# ---------------------------------------------------------------------------

_configured = False
_lock = threading.Lock()


def level_for_verbosity(verbosity: int) -> int:
    """Map a count of ``-v`` flags to a level: warnings, then info, then debug."""
    if verbosity >= 2:
        return logging.DEBUG
    if verbosity == 1:
        return logging.INFO
    return logging.WARNING


def configure_logging(
    *,
    level: int | str = logging.INFO,
    stream: Any = None,
    handler: logging.Handler | None = None,
) -> None:
    """Configure the pipette logger hierarchy (idempotent).

    ``level`` is a logging level number or name (``"debug"``, ``"INFO"``).
    Records stop at the ``pipette`` logger so embedding applications keep
    their own root handlers untouched.
    """
    global _configured
    if isinstance(level, str):
        resolved = logging.getLevelName(level.upper())
        if not isinstance(resolved, int):
            raise ValueError(f"unknown log level {level!r}")
        level = resolved

    with _lock:
        if _configured:
            return
        _configured = True

    root_logger = logging.getLogger(_LOGGER_PREFIX)
    root_logger.setLevel(level)
    root_logger.propagate = False

    h = handler if handler is not None else logging.StreamHandler(stream or sys.stderr)
    h.setFormatter(StructuredFormatter())
    root_logger.addHandler(h)


def reset_logging() -> None:
    """Reset logging configuration. FOR TESTING ONLY."""
    global _configured
    with _lock:
        _configured = False
    logger = logging.getLogger(_LOGGER_PREFIX)
    for h in list(logger.handlers):
        logger.removeHandler(h)
    logger.setLevel(logging.WARNING)
    logger.propagate = True
