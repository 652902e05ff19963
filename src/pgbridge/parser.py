"""A per-version handle on the parsing operations.

Example:
    >>> import asyncio
    >>> from pgbridge import Parser
    >>> parser = Parser(16)
    >>> tree = asyncio.run(parser.parse("SELECT 1"))
    >>> asyncio.run(parser.deparse(tree))
    'SELECT 1'
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from pgbridge.codec import TreeCache
from pgbridge.dispatch import Operation, default_dispatcher
from pgbridge.lifecycle import EngineState

if TYPE_CHECKING:
    from pgbridge.dispatch import Dispatcher, PgVersion
    from pgbridge.scan import ScanResult
    from pgbridge.split import SplitStatement


class Parser:
    """Parse, deparse, fingerprint, normalize, scan and split SQL with one PostgreSQL grammar version.

    Every operation exists twice: a coroutine that loads the engine on first use, and a ``*_sync`` twin that never
    waits and raises :class:`~pgbridge.NotInitializedError` until the engine is loaded (see :meth:`load`).

    Args:
        version: PostgreSQL major version (``15``, ``16`` or ``17``). Defaults to the dispatcher's default version.
        dispatcher: Engines to run on. Defaults to the process-wide libpg_query dispatcher.
        retain_protobuf: Keep the protobuf bytes of every tree this parser produces, so deparsing an unchanged
            tree skips re-encoding it.
        cache_size: Bound of the retained-bytes cache. Defaults to the dispatcher's ``retain_cache_size``.

    Raises:
        UnsupportedVersionError: If ``version`` is not supported.
    """

    def __init__(
        self,
        version: int | None = None,
        *,
        dispatcher: Dispatcher | None = None,
        retain_protobuf: bool = False,
        cache_size: int | None = None,
    ) -> None:
        self._dispatcher = dispatcher if dispatcher is not None else default_dispatcher()
        self.version: PgVersion = self._dispatcher.resolve(version)
        self._lifecycle = self._dispatcher.for_version(self.version)
        self.cache: TreeCache | None = None
        if retain_protobuf:
            self.cache = TreeCache(cache_size or self._dispatcher.retain_cache_size)

    def __repr__(self) -> str:
        return f"Parser(version={int(self.version)}, state={self._lifecycle.state.value})"

    # -- Lifecycle ------------------------------------------------------------

    @property
    def ready(self) -> bool:
        return self._lifecycle.state is EngineState.READY

    async def load(self) -> None:
        """Load the engine. Idempotent; concurrent callers share one startup."""
        await self._lifecycle.ensure_ready()

    def load_sync(self, timeout: float | None = None) -> None:
        """Load the engine, blocking the calling thread."""
        self._lifecycle.wait_ready(timeout)

    async def supports(self, operation: Operation | str) -> bool:
        """Whether this version's engine provides ``operation``."""
        ctx = await self._lifecycle.ensure_ready()
        return Operation(operation) in ctx.capabilities

    # -- Operations -----------------------------------------------------------

    async def parse(self, query: str) -> dict[str, Any]:
        """Parse SQL into a JSON-shaped tree. See :func:`pgbridge.parse.parse_query`."""
        tree = await self._dispatcher.invoke(self.version, Operation.PARSE, query)
        if self.cache is not None:
            self.cache.put(tree, await self._dispatcher.invoke(self.version, Operation.PARSE_PROTOBUF, query))
        return tree

    def parse_sync(self, query: str) -> dict[str, Any]:
        tree = self._dispatcher.invoke_sync(self.version, Operation.PARSE, query)
        if self.cache is not None:
            self.cache.put(tree, self._dispatcher.invoke_sync(self.version, Operation.PARSE_PROTOBUF, query))
        return tree

    async def parse_protobuf(self, query: str) -> bytes:
        """Parse SQL into ``ParseResult`` protobuf bytes."""
        return await self._dispatcher.invoke(self.version, Operation.PARSE_PROTOBUF, query)

    def parse_protobuf_sync(self, query: str) -> bytes:
        return self._dispatcher.invoke_sync(self.version, Operation.PARSE_PROTOBUF, query)

    async def deparse(self, tree: Any) -> str:
        """Convert a tree back into SQL. See :func:`pgbridge.deparse.deparse_tree`."""
        return await self._dispatcher.invoke(self.version, Operation.DEPARSE, self._retained(tree))

    def deparse_sync(self, tree: Any) -> str:
        return self._dispatcher.invoke_sync(self.version, Operation.DEPARSE, self._retained(tree))

    async def fingerprint(self, query: str) -> str:
        """Hex fingerprint shared by structurally equivalent queries."""
        return await self._dispatcher.invoke(self.version, Operation.FINGERPRINT, query)

    def fingerprint_sync(self, query: str) -> str:
        return self._dispatcher.invoke_sync(self.version, Operation.FINGERPRINT, query)

    async def normalize(self, query: str) -> str:
        """Replace constant literals with ``$1``, ``$2``, ... placeholders."""
        return await self._dispatcher.invoke(self.version, Operation.NORMALIZE, query)

    def normalize_sync(self, query: str) -> str:
        return self._dispatcher.invoke_sync(self.version, Operation.NORMALIZE, query)

    async def scan(self, sql: str) -> ScanResult:
        """Tokenize SQL. Only PostgreSQL 17 engines provide this."""
        return await self._dispatcher.invoke(self.version, Operation.SCAN, sql)

    def scan_sync(self, sql: str) -> ScanResult:
        return self._dispatcher.invoke_sync(self.version, Operation.SCAN, sql)

    async def parse_plpgsql(self, sql: str) -> list[dict[str, Any]]:
        """Parse a PL/pgSQL ``CREATE FUNCTION`` statement."""
        return await self._dispatcher.invoke(self.version, Operation.PARSE_PLPGSQL, sql)

    def parse_plpgsql_sync(self, sql: str) -> list[dict[str, Any]]:
        return self._dispatcher.invoke_sync(self.version, Operation.PARSE_PLPGSQL, sql)

    async def split(self, sql: str) -> list[SplitStatement]:
        """Split a multi-statement string into statement spans."""
        return await self._dispatcher.invoke(self.version, Operation.SPLIT, sql)

    def split_sync(self, sql: str) -> list[SplitStatement]:
        return self._dispatcher.invoke_sync(self.version, Operation.SPLIT, sql)

    def _retained(self, tree: Any) -> Any:
        if self.cache is None:
            return tree
        data = self.cache.get(tree)
        return tree if data is None else data
