"""SQL query normalization via libpg_query."""

from __future__ import annotations

from typing import TYPE_CHECKING

from pgbridge.decode import read_text_result
from pgbridge.engine import Entry
from pgbridge.parse import check_query

if TYPE_CHECKING:
    from pgbridge.lifecycle import EngineContext


def normalize_query(ctx: EngineContext, query: str) -> str:
    """Replace literal constants with positional placeholders (``$1``, ``$2``, ...).

    Example:
        >>> from pgbridge import normalize_sync
        >>> normalize_sync("SELECT * FROM users WHERE id = 42 AND name = 'Alice'")
        'SELECT * FROM users WHERE id = $1 AND name = $2'
    """
    check_query(query)
    bridge = ctx.bridge
    with ctx.lock, bridge.string_argument(query) as buf, bridge.result(Entry.NORMALIZE, buf.address) as result:
        return read_text_result(bridge, result)
