"""SQL query parsing via libpg_query."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from pgbridge.decode import decode_parse_result, read_text_result
from pgbridge.engine import Entry
from pgbridge.errors import LogicError, TypeValidationError

if TYPE_CHECKING:
    from pgbridge.lifecycle import EngineContext


def check_query(query: object, *, allow_empty: bool = True) -> str:
    """Reject non-string queries (and, for parsing, empty ones) before any engine memory is touched.

    Raises:
        TypeValidationError: If ``query`` is ``None``, not a ``str``, or empty when ``allow_empty`` is false.
    """
    if query is None:
        raise TypeValidationError("Query cannot be None")
    if not isinstance(query, str):
        raise TypeValidationError(f"Expected a string, got {type(query).__name__}")
    if not allow_empty and query == "":
        raise TypeValidationError("Query cannot be empty")
    return query


def parse_query(ctx: EngineContext, query: str) -> dict[str, Any]:
    """Parse a SQL query into a JSON-shaped tree.

    Calls the engine's parse entry point, which returns a ``PgQueryParseResult`` struct, and decodes it field by
    field. Grammar errors arrive through the struct's error pointer and keep their cursor position.

    Args:
        ctx: A ready engine.
        query: A non-empty SQL string.

    Returns:
        The parse tree: a dict with ``version`` (int) and ``stmts`` (list of ``{"stmt": ..., ...}``) keys.

    Raises:
        TypeValidationError: If ``query`` is not a non-empty string.
        SqlError: If the query contains a syntax error; ``sql_details`` is set.
    """
    check_query(query, allow_empty=False)
    bridge = ctx.bridge
    with ctx.lock, bridge.string_argument(query) as buf, bridge.result(Entry.PARSE, buf.address) as result:
        return decode_parse_result(bridge, result)


def parse_protobuf_query(ctx: EngineContext, query: str) -> bytes:
    """Parse a SQL query into ``ParseResult`` protobuf bytes.

    The engine reports the payload length through an int32 out-parameter; a length of ``0`` means the returned
    buffer holds an error message instead. The bytes are copied out before the engine buffer is freed.

    Raises:
        TypeValidationError: If ``query`` is not a non-empty string.
        SqlError: If the query contains a syntax error (no ``sql_details``).
    """
    check_query(query, allow_empty=False)
    bridge = ctx.bridge
    with (
        ctx.lock,
        bridge.string_argument(query) as buf,
        bridge.int_cell() as out_len,
        bridge.result(Entry.PARSE_PROTOBUF, buf.address, out_len.address) as result,
    ):
        length = bridge.read_int(out_len.address)
        if length > 0:
            return bridge.read_bytes(result, length)
        read_text_result(bridge, result)
        raise LogicError("engine returned an empty protobuf parse tree without an error")
