"""PL/pgSQL function parsing via libpg_query."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from pgbridge.decode import decode_json, read_text_result
from pgbridge.engine import Entry
from pgbridge.errors import MalformedResultError
from pgbridge.parse import check_query

if TYPE_CHECKING:
    from pgbridge.lifecycle import EngineContext


def parse_plpgsql_query(ctx: EngineContext, sql: str) -> list[dict[str, Any]]:
    """Parse a ``CREATE FUNCTION ... LANGUAGE plpgsql`` statement.

    Returns:
        A list of dictionaries, one per function, each keyed by ``"PLpgSQL_function"`` with nested declarations,
        statements and control flow.

    Raises:
        TypeValidationError: If ``sql`` is not a string.
        SqlError: If the function body contains a syntax error (no ``sql_details``).
    """
    check_query(sql)
    bridge = ctx.bridge
    with ctx.lock, bridge.string_argument(sql) as buf, bridge.result(Entry.PARSE_PLPGSQL, buf.address) as result:
        text = read_text_result(bridge, result)

    funcs = decode_json(text)
    # Some engine builds wrap the list as {"plpgsql_funcs": [...]}.
    if isinstance(funcs, dict) and "plpgsql_funcs" in funcs:
        funcs = funcs["plpgsql_funcs"]
    if not isinstance(funcs, list):
        raise MalformedResultError(f"expected a list of PL/pgSQL functions, got {type(funcs).__name__}")
    return funcs
