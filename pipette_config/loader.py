"""
Configuration Loader (``pipette_config.loader``).

Responsibility
--------------
Loads the YAML configuration file and parses it into the frozen
``pipette_config.schema`` dataclasses.

Invariants enforced
-------------------
* Every parse error raises ``ConfigurationError`` naming the offending
  path (``targets.events.warehouse.storage-strategy``); no silent
  defaults for required fields.
* Keys may be spelled with dashes or underscores.
* Connection descriptors are kept verbatim; ``${VAR}`` placeholders are
  resolved later by the lifecycle orchestrator.
* ``compute_checksum`` produces a deterministic SHA-256 hash of the raw
  document for run identification in logs.

Failure modes
-------------
* Missing file  -> ``ConfigurationError``.
* Malformed YAML  -> ``ConfigurationError`` wrapping ``yaml.YAMLError``.
"""

from __future__ import annotations

import hashlib
import json
from pathlib import Path
from typing import Any, Iterable

import yaml

from pipette_config.schema import (
    ColumnDef,
    DestinationDef,
    IngestionStrategy,
    LoaderConfiguration,
    RuntimeDef,
    StorageStrategy,
    TargetNamespaceDef,
)
from pipette_kernel.exceptions import ConfigurationError

_CONNECTION_KEYS = ("connection", "url", "jdbc")


def load_yaml_file(path: Path) -> dict[str, Any]:
    """
    Load a single YAML file and return its contents as a dict.

    Raises:
        ConfigurationError: if the file is missing, unreadable, invalid
            YAML, or does not contain a mapping.
    """
    path = Path(path)
    if not path.is_file():
        raise ConfigurationError(f"No config found at {path}")
    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"Invalid YAML in {path}: {exc}") from exc
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigurationError(f"Expected a mapping at the top of {path}")
    return data


def _get(data: dict[str, Any], key: str, default: Any = None) -> Any:
    """Look up ``key`` accepting either ``a_b`` or ``a-b`` spelling."""
    if key in data:
        return data[key]
    dashed = key.replace("_", "-")
    if dashed in data:
        return data[dashed]
    return default


def _require(data: dict[str, Any], key: str, path: str) -> Any:
    value = _get(data, key)
    if value is None:
        raise ConfigurationError(f"{path}: missing required key '{key.replace('_', '-')}'")
    return value


def _require_str(data: dict[str, Any], key: str, path: str) -> str:
    value = _require(data, key, path)
    if not isinstance(value, str) or not value:
        raise ConfigurationError(f"{path}.{key.replace('_', '-')}: expected a non-empty string")
    return value


def _parse_bool(value: Any, path: str) -> bool:
    if not isinstance(value, bool):
        raise ConfigurationError(f"{path}: expected true or false, got {value!r}")
    return value


def _parse_enum(enum_cls: Any, value: Any, path: str) -> Any:
    try:
        return enum_cls(value)
    except ValueError:
        allowed = ", ".join(member.value for member in enum_cls)
        raise ConfigurationError(
            f"{path}: unknown value {value!r} (expected one of: {allowed})"
        ) from None


def _positive_int(value: Any, path: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ConfigurationError(f"{path}: expected a positive integer, got {value!r}")
    return value


def _optional_positive_int(value: Any, path: str) -> int | None:
    if value is None:
        return None
    return _positive_int(value, path)


def parse_column(data: Any, path: str) -> ColumnDef:
    """Parse one column mapping."""
    if not isinstance(data, dict):
        raise ConfigurationError(f"{path}: expected a mapping")
    col_type = _get(data, "type")
    if col_type is not None and not isinstance(col_type, str):
        raise ConfigurationError(f"{path}.type: expected a string")
    return ColumnDef(
        name=_require_str(data, "name", path),
        pk=_parse_bool(_get(data, "pk", False), f"{path}.pk"),
        type=col_type,
    )


def parse_destination(
    namespace: str,
    name: str,
    data: Any,
) -> DestinationDef:
    """Parse one destination mapping under ``targets.<namespace>.<name>``."""
    path = f"targets.{namespace}.{name}"
    if not isinstance(data, dict):
        raise ConfigurationError(f"{path}: expected a mapping")

    connection = None
    for key in _CONNECTION_KEYS:
        if data.get(key) is not None:
            connection = data[key]
            break
    if not isinstance(connection, str) or not connection:
        raise ConfigurationError(
            f"{path}: missing required key 'connection'"
        )

    raw_columns = _get(data, "columns", [])
    if raw_columns is None:
        raw_columns = []
    if not isinstance(raw_columns, list):
        raise ConfigurationError(f"{path}.columns: expected a list")
    columns = tuple(
        parse_column(col, f"{path}.columns[{i}]")
        for i, col in enumerate(raw_columns)
    )

    schema = _get(data, "schema")
    if schema is not None and not isinstance(schema, str):
        raise ConfigurationError(f"{path}.schema: expected a string")

    return DestinationDef(
        name=name,
        namespace=namespace,
        adapter=_require_str(data, "adapter", path).lower(),
        connection=connection,
        schema=schema or None,
        target=_require_str(data, "target", path),
        storage_strategy=_parse_enum(
            StorageStrategy,
            _require(data, "storage_strategy", path),
            f"{path}.storage-strategy",
        ),
        ingestion_strategy=_parse_enum(
            IngestionStrategy,
            _require(data, "ingestion_strategy", path),
            f"{path}.ingestion-strategy",
        ),
        columns=columns,
        enforce_constraint=_parse_bool(
            _get(data, "enforce_constraint", False), f"{path}.enforce-constraint"
        ),
        drop_empty_strings=_parse_bool(
            _get(data, "drop_empty_strings", True), f"{path}.drop-empty-strings"
        ),
    )


def parse_runtime(data: Any) -> RuntimeDef:
    """Parse the optional ``runtime`` mapping."""
    if data is None:
        return RuntimeDef()
    if not isinstance(data, dict):
        raise ConfigurationError("runtime: expected a mapping")
    defaults = RuntimeDef()
    return RuntimeDef(
        batch_size=_positive_int(
            _get(data, "batch_size", defaults.batch_size), "runtime.batch-size"
        ),
        max_workers=_positive_int(
            _get(data, "max_workers", defaults.max_workers), "runtime.max-workers"
        ),
        preserve_order=_parse_bool(
            _get(data, "preserve_order", defaults.preserve_order),
            "runtime.preserve-order",
        ),
        max_in_flight=_optional_positive_int(
            _get(data, "max_in_flight"), "runtime.max-in-flight"
        ),
    )


def parse_configuration(data: dict[str, Any]) -> LoaderConfiguration:
    """Parse a raw configuration document."""
    version = data.get("version")
    if isinstance(version, bool) or not isinstance(version, int):
        raise ConfigurationError("version: expected an integer")

    raw_targets = data.get("targets")
    if not isinstance(raw_targets, dict) or not raw_targets:
        raise ConfigurationError("targets: expected a non-empty mapping")

    namespaces = []
    for ns_name, raw_destinations in raw_targets.items():
        ns_name = str(ns_name)
        if not isinstance(raw_destinations, dict) or not raw_destinations:
            raise ConfigurationError(
                f"targets.{ns_name}: expected a non-empty mapping of destinations"
            )
        destinations = tuple(
            parse_destination(ns_name, str(dest_name), dest_data)
            for dest_name, dest_data in raw_destinations.items()
        )
        namespaces.append(TargetNamespaceDef(name=ns_name, destinations=destinations))

    return LoaderConfiguration(
        version=version,
        targets=tuple(namespaces),
        runtime=parse_runtime(data.get("runtime")),
        checksum=compute_checksum(data),
    )


def load_configuration(path: Path) -> LoaderConfiguration:
    """Load and parse the configuration file at ``path``."""
    return parse_configuration(load_yaml_file(path))


def select_destinations(
    config: LoaderConfiguration,
    namespace: str,
    names: Iterable[str] = (),
) -> tuple[DestinationDef, ...]:
    """
    Pick the destinations of ``namespace`` to load.

    With no ``names`` every destination of the namespace is returned, in
    configuration order.  Otherwise the named destinations are returned in
    the order given.

    Raises:
        ConfigurationError: unknown namespace or destination name.
    """
    ns = config.namespace(namespace)
    if ns is None:
        raise ConfigurationError(
            f"Unknown target namespace '{namespace}'. "
            f"Available: {sorted(config.namespace_names())}"
        )
    names = tuple(names)
    if not names:
        return ns.destinations

    by_name = {d.name: d for d in ns.destinations}
    selected = []
    for name in names:
        if name not in by_name:
            raise ConfigurationError(
                f"Unknown destination '{name}' in namespace '{namespace}'. "
                f"Available: {sorted(by_name)}"
            )
        selected.append(by_name[name])
    return tuple(dict.fromkeys(selected))


def compute_checksum(data: dict[str, Any]) -> str:
    """
    Compute SHA-256 checksum of canonical JSON serialization.

    Identical ``data`` always produces identical checksums.
    """
    canonical = json.dumps(data, sort_keys=True, default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()
