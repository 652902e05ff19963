"""Module-level operations on the default PostgreSQL version.

These mirror :class:`~pgbridge.Parser` for callers that only ever need one grammar version (selected with
``PGBRIDGE_DEFAULT_VERSION``, 17 unless configured otherwise).

Example:
    >>> import asyncio
    >>> from pgbridge import load_module, normalize_sync
    >>> asyncio.run(load_module())
    >>> normalize_sync("SELECT * FROM users WHERE id = 42")
    'SELECT * FROM users WHERE id = $1'
"""

from __future__ import annotations

import functools
from typing import TYPE_CHECKING, Any

from pgbridge.parser import Parser

if TYPE_CHECKING:
    from pgbridge.scan import ScanResult
    from pgbridge.split import SplitStatement


@functools.lru_cache(maxsize=1)
def default_parser() -> Parser:
    return Parser()


async def load_module() -> None:
    """Load the default engine. Idempotent and shared by concurrent callers.

    Raises:
        OSError: If the libpg_query library cannot be found or loaded.
    """
    await default_parser().load()


async def parse(query: str) -> dict[str, Any]:
    """Parse a SQL query into a JSON-shaped tree.

    Raises:
        TypeValidationError: If ``query`` is not a non-empty string.
        SqlError: If the query contains a syntax error; ``sql_details`` holds the cursor position.
    """
    return await default_parser().parse(query)


def parse_sync(query: str) -> dict[str, Any]:
    """Non-suspending :func:`parse`.

    Raises:
        NotInitializedError: If :func:`load_module` has not completed.
    """
    return default_parser().parse_sync(query)


async def parse_protobuf(query: str) -> bytes:
    return await default_parser().parse_protobuf(query)


def parse_protobuf_sync(query: str) -> bytes:
    return default_parser().parse_protobuf_sync(query)


async def deparse(tree: Any) -> str:
    """Convert a parse tree back into SQL.

    Raises:
        ValidationError: If the tree is missing or has no statements.
    """
    return await default_parser().deparse(tree)


def deparse_sync(tree: Any) -> str:
    return default_parser().deparse_sync(tree)


async def fingerprint(query: str) -> str:
    return await default_parser().fingerprint(query)


def fingerprint_sync(query: str) -> str:
    return default_parser().fingerprint_sync(query)


async def normalize(query: str) -> str:
    return await default_parser().normalize(query)


def normalize_sync(query: str) -> str:
    return default_parser().normalize_sync(query)


async def scan(sql: str) -> ScanResult:
    return await default_parser().scan(sql)


def scan_sync(sql: str) -> ScanResult:
    return default_parser().scan_sync(sql)


async def parse_plpgsql(sql: str) -> list[dict[str, Any]]:
    return await default_parser().parse_plpgsql(sql)


def parse_plpgsql_sync(sql: str) -> list[dict[str, Any]]:
    return default_parser().parse_plpgsql_sync(sql)


async def split(sql: str) -> list[SplitStatement]:
    return await default_parser().split(sql)


def split_sync(sql: str) -> list[SplitStatement]:
    return default_parser().split_sync(sql)
