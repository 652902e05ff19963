"""SQL query fingerprinting via libpg_query."""

from __future__ import annotations

from typing import TYPE_CHECKING

from pgbridge.decode import read_text_result
from pgbridge.engine import Entry
from pgbridge.parse import check_query

if TYPE_CHECKING:
    from pgbridge.lifecycle import EngineContext


def fingerprint_query(ctx: EngineContext, query: str) -> str:
    """Compute a structural fingerprint of a SQL query.

    The fingerprint is a fixed-length hex digest that identifies structurally equivalent queries regardless of
    literal values, whitespace, or keyword case.

    Raises:
        TypeValidationError: If ``query`` is not a string.
        SqlError: If the query cannot be parsed (no ``sql_details``).

    Example:
        >>> from pgbridge import fingerprint_sync
        >>> fingerprint_sync("SELECT * FROM users WHERE id = 1") == fingerprint_sync("select * from users where id = 2")
        True
    """
    check_query(query)
    bridge = ctx.bridge
    with ctx.lock, bridge.string_argument(query) as buf, bridge.result(Entry.FINGERPRINT, buf.address) as result:
        return read_text_result(bridge, result)
