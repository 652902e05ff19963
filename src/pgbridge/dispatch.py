"""Routing requests to the engine of a PostgreSQL major version.

Each supported version is a :class:`PgVersion` member with a declared capability set. A :class:`Dispatcher` holds
one :class:`~pgbridge.lifecycle.EngineLifecycle` per version, starts engines on first use, and refuses operations a
version does not provide before any engine memory is touched.
"""

from __future__ import annotations

import enum
import functools
import logging
from typing import TYPE_CHECKING, Any

from pgbridge.config import DEFAULT_RETAIN_CACHE_SIZE, DEFAULT_VERSION, BridgeConfig
from pgbridge.deparse import deparse_tree
from pgbridge.engine import Entry
from pgbridge.errors import UnsupportedOperationError, UnsupportedVersionError
from pgbridge.fingerprint import fingerprint_query
from pgbridge.lifecycle import EngineContext, EngineLifecycle
from pgbridge.normalize import normalize_query
from pgbridge.parse import parse_protobuf_query, parse_query
from pgbridge.plpgsql import parse_plpgsql_query
from pgbridge.scan import scan_query
from pgbridge.split import split_query

if TYPE_CHECKING:
    from collections.abc import Callable, Mapping

    from pgbridge.engine import EngineHandle
    from pgbridge.schema import Schema

logger = logging.getLogger(__name__)


class Operation(enum.Enum):
    PARSE = "parse"
    PARSE_PROTOBUF = "parse_protobuf"
    DEPARSE = "deparse"
    FINGERPRINT = "fingerprint"
    NORMALIZE = "normalize"
    SCAN = "scan"
    PARSE_PLPGSQL = "parse_plpgsql"
    SPLIT = "split"


class PgVersion(enum.IntEnum):
    """Supported PostgreSQL grammar versions."""

    PG15 = 15
    PG16 = 16
    PG17 = 17


_BASE = frozenset(
    {
        Operation.PARSE,
        Operation.PARSE_PROTOBUF,
        Operation.FINGERPRINT,
        Operation.NORMALIZE,
        Operation.PARSE_PLPGSQL,
        Operation.SPLIT,
    }
)

#: Operations each version's engine build declares. Deparse arrived with 16, scan with 17.
VERSION_CAPABILITIES: dict[PgVersion, frozenset[Operation]] = {
    PgVersion.PG15: _BASE,
    PgVersion.PG16: _BASE | {Operation.DEPARSE},
    PgVersion.PG17: _BASE | {Operation.DEPARSE, Operation.SCAN},
}

# Operation -> (entry point it needs, implementation).
_OPERATIONS: dict[Operation, tuple[Entry, Callable[..., Any]]] = {
    Operation.PARSE: (Entry.PARSE, parse_query),
    Operation.PARSE_PROTOBUF: (Entry.PARSE_PROTOBUF, parse_protobuf_query),
    Operation.DEPARSE: (Entry.DEPARSE, deparse_tree),
    Operation.FINGERPRINT: (Entry.FINGERPRINT, fingerprint_query),
    Operation.NORMALIZE: (Entry.NORMALIZE, normalize_query),
    Operation.SCAN: (Entry.SCAN, scan_query),
    Operation.PARSE_PLPGSQL: (Entry.PARSE_PLPGSQL, parse_plpgsql_query),
    Operation.SPLIT: (Entry.SPLIT, split_query),
}


def resolve_version(version: object) -> PgVersion:
    """Map a version identifier (``17``, ``"17"``, ``PgVersion.PG17``) to a :class:`PgVersion`.

    Raises:
        UnsupportedVersionError: If the version is not supported.
    """
    try:
        return PgVersion(int(version))  # type: ignore[call-overload]
    except (TypeError, ValueError):
        supported = ", ".join(str(int(v)) for v in PgVersion)
        raise UnsupportedVersionError(
            f"Unsupported PostgreSQL version: {version!r}. Supported versions: {supported}"
        ) from None


def build_context(version: PgVersion, handle: EngineHandle, schema: Schema | None = None) -> EngineContext:
    """Wrap a started engine, narrowing the declared capabilities to what the engine actually provides.

    Without a schema, deparse stays available for protobuf bytes and ``ParseResult`` messages; JSON-shaped trees are
    refused by :func:`~pgbridge.deparse.deparse_tree`.
    """
    capabilities = set()
    for op in VERSION_CAPABILITIES[version]:
        entry, _ = _OPERATIONS[op]
        if entry not in handle.entries:
            logger.warning(
                "libpg_query %d engine lacks the %s entry point; %s disabled", version, entry.value, op.value
            )
            continue
        if op is Operation.DEPARSE and schema is None:
            logger.warning("No pg_query %d schema installed; deparse accepts protobuf input only", version)
        capabilities.add(op)
    return EngineContext(version=int(version), handle=handle, capabilities=frozenset(capabilities), schema=schema)


def native_loader(version: PgVersion, config: BridgeConfig) -> Callable[[], EngineContext]:
    """Startup sequence for the libpg_query engine of ``version``."""

    def load() -> EngineContext:
        # Imported lazily: nothing touches ctypes until an engine is actually started.
        from pgbridge.native import open_engine

        engine = open_engine(int(version), config)
        return build_context(version, engine, engine.schema)

    return load


class Dispatcher:
    """Version-keyed access to engines.

    Args:
        lifecycles: One lifecycle per supported version. Use :meth:`from_config` for the libpg_query engines.
        default_version: Version used when callers do not name one.
        retain_cache_size: Default bound of the retained-bytes cache of a retaining :class:`~pgbridge.Parser`.
    """

    def __init__(
        self,
        lifecycles: Mapping[PgVersion, EngineLifecycle],
        default_version: int = DEFAULT_VERSION,
        retain_cache_size: int = DEFAULT_RETAIN_CACHE_SIZE,
    ) -> None:
        self._lifecycles = dict(lifecycles)
        self.default_version = resolve_version(default_version)
        self.retain_cache_size = retain_cache_size

    @classmethod
    def from_config(cls, config: BridgeConfig) -> Dispatcher:
        lifecycles = {v: EngineLifecycle(int(v), native_loader(v, config)) for v in PgVersion}
        return cls(lifecycles, default_version=config.default_version, retain_cache_size=config.retain_cache_size)

    @property
    def versions(self) -> list[PgVersion]:
        return sorted(self._lifecycles)

    def resolve(self, version: object = None) -> PgVersion:
        """Return the version a request for ``version`` runs on (the default version when ``None``).

        Raises:
            UnsupportedVersionError: If no engine exists for ``version``.
        """
        resolved = self.default_version if version is None else resolve_version(version)
        if resolved not in self._lifecycles:
            raise UnsupportedVersionError(f"No engine configured for PostgreSQL {int(resolved)}")
        return resolved

    def for_version(self, version: object = None) -> EngineLifecycle:
        return self._lifecycles[self.resolve(version)]

    async def ready(self, version: object = None) -> EngineContext:
        return await self.for_version(version).ensure_ready()

    async def invoke(self, version: object, operation: Operation, *args: Any) -> Any:
        """Run ``operation`` on the engine of ``version``, starting the engine if needed.

        Raises:
            UnsupportedVersionError: If ``version`` is unknown.
            UnsupportedOperationError: If the engine of ``version`` does not provide ``operation``.
        """
        ctx = await self.for_version(version).ensure_ready()
        return self._run(ctx, operation, args)

    def invoke_sync(self, version: object, operation: Operation, *args: Any) -> Any:
        """Run ``operation`` without suspending.

        Raises:
            NotInitializedError: If the engine of ``version`` has not been loaded.
        """
        ctx = self.for_version(version).require_ready()
        return self._run(ctx, operation, args)

    @staticmethod
    def _run(ctx: EngineContext, operation: Operation, args: tuple[Any, ...]) -> Any:
        if operation not in ctx.capabilities:
            raise UnsupportedOperationError(operation.value, ctx.version)
        _, func = _OPERATIONS[operation]
        return func(ctx, *args)


@functools.lru_cache(maxsize=1)
def default_dispatcher() -> Dispatcher:
    """The process-wide dispatcher over the libpg_query engines, configured from the environment."""
    return Dispatcher.from_config(BridgeConfig.from_env())
