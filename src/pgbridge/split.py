"""SQL statement splitting via libpg_query."""

from __future__ import annotations

from typing import TYPE_CHECKING, NamedTuple

from pgbridge.decode import decode_json, read_text_result
from pgbridge.engine import Entry
from pgbridge.errors import MalformedResultError
from pgbridge.parse import check_query

if TYPE_CHECKING:
    from pgbridge.lifecycle import EngineContext


class SplitStatement(NamedTuple):
    """One statement of a multi-statement string.

    Attributes:
        stmt_location: Byte offset of the statement in the UTF-8 input.
        stmt_len: Length of the statement in bytes, excluding the terminating semicolon.
        text: The statement's source text.
    """

    stmt_location: int
    stmt_len: int
    text: str


def split_query(ctx: EngineContext, sql: str) -> list[SplitStatement]:
    """Split a SQL string into its statements using the PostgreSQL parser.

    Empty and whitespace-only input yields no statements.

    Example:
        >>> from pgbridge import split_sync
        >>> [s.text for s in split_sync("SELECT 1; SELECT 2")]
        ['SELECT 1', 'SELECT 2']

    Raises:
        TypeValidationError: If ``sql`` is not a string.
        SqlError: If the input does not parse (no ``sql_details``).
    """
    check_query(sql)
    bridge = ctx.bridge
    with ctx.lock, bridge.string_argument(sql) as buf, bridge.result(Entry.SPLIT, buf.address) as result:
        text = read_text_result(bridge, result)

    payload = decode_json(text)
    source = sql.encode("utf-8")
    try:
        statements = []
        for stmt in payload["stmts"]:
            location, length = int(stmt.get("stmt_location", 0)), int(stmt["stmt_len"])
            if location < 0 or length < 0 or location + length > len(source):
                raise MalformedResultError(f"statement span {location}+{length} is outside the input")
            statements.append(
                SplitStatement(location, length, source[location : location + length].decode("utf-8", errors="replace"))
            )
        return statements
    except (KeyError, TypeError, ValueError, AttributeError) as e:
        raise MalformedResultError(f"engine returned a malformed split result: {e!r}") from e
