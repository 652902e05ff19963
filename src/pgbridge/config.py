"""Runtime configuration read from the environment."""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING

from pgbridge.errors import ConfigError

if TYPE_CHECKING:
    from collections.abc import Mapping

DEFAULT_VERSION = 17
DEFAULT_RETAIN_CACHE_SIZE = 256

_LIBRARY_VAR = re.compile(r"^PGBRIDGE_LIBPG_QUERY_(\d+)$")
_SCHEMA_VAR = re.compile(r"^PGBRIDGE_SCHEMA_(\d+)$")


@dataclass(frozen=True)
class BridgeConfig:
    """Where to find engines and schemas, and how to run them.

    Attributes:
        default_version: PostgreSQL major version used when none is requested.
        library_paths: Explicit libpg_query shared library per major version.
        schema_paths: Explicit protobuf descriptor set per major version.
        retain_cache_size: Maximum number of trees whose protobuf bytes a retaining :class:`~pgbridge.Parser` keeps.
    """

    default_version: int = DEFAULT_VERSION
    library_paths: Mapping[int, Path] = field(default_factory=dict)
    schema_paths: Mapping[int, Path] = field(default_factory=dict)
    retain_cache_size: int = DEFAULT_RETAIN_CACHE_SIZE

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> BridgeConfig:
        """Build a config from ``PGBRIDGE_*`` environment variables.

        Recognised variables:

        - ``PGBRIDGE_DEFAULT_VERSION``: default major version (``17``).
        - ``PGBRIDGE_LIBPG_QUERY_<major>``: path of the libpg_query build for that version.
        - ``PGBRIDGE_SCHEMA_<major>``: path of the ``pg_query.proto`` descriptor set for that version.
        - ``PGBRIDGE_RETAIN_CACHE_SIZE``: retained-tree cache bound (``256``).

        Raises:
            ConfigError: If a numeric variable does not hold a positive integer.
        """
        env = os.environ if environ is None else environ

        libraries: dict[int, Path] = {}
        schemas: dict[int, Path] = {}
        for key, value in env.items():
            if m := _LIBRARY_VAR.match(key):
                libraries[int(m.group(1))] = Path(value)
            elif m := _SCHEMA_VAR.match(key):
                schemas[int(m.group(1))] = Path(value)

        return cls(
            default_version=_positive_int(env, "PGBRIDGE_DEFAULT_VERSION", DEFAULT_VERSION),
            library_paths=libraries,
            schema_paths=schemas,
            retain_cache_size=_positive_int(env, "PGBRIDGE_RETAIN_CACHE_SIZE", DEFAULT_RETAIN_CACHE_SIZE),
        )


def _positive_int(env: Mapping[str, str], key: str, default: int) -> int:
    raw = env.get(key)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ConfigError(f"{key} must be an integer, got {raw!r}") from None
    if value <= 0:
        raise ConfigError(f"{key} must be positive, got {value}")
    return value
