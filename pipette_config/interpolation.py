"""
Environment-variable interpolation for connection descriptors.

``${NAME}`` placeholders are replaced with the URL-encoded value of the
environment variable ``NAME`` so that passwords containing reserved
characters survive inside a database URL.  Spaces encode as ``%20``.
Placeholders naming an unset variable are left untouched.
"""

from __future__ import annotations

import os
import re
from typing import Mapping
from urllib.parse import quote_plus

_PLACEHOLDER = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")


def encode_value(value: str) -> str:
    """URL-encode an environment value for use inside a connection URL."""
    return quote_plus(value, safe="*").replace("+", "%20")


def interpolate_env_vars(
    value: str,
    environ: Mapping[str, str] | None = None,
) -> str:
    """Return ``value`` with every known ``${VAR}`` placeholder substituted."""
    env = os.environ if environ is None else environ

    def _replace(match: re.Match[str]) -> str:
        name = match.group(1)
        if name not in env:
            return match.group(0)
        return encode_value(env[name])

    return _PLACEHOLDER.sub(_replace, value)


def unresolved_placeholders(value: str) -> tuple[str, ...]:
    """Names of placeholders still present in ``value``."""
    return tuple(_PLACEHOLDER.findall(value))
