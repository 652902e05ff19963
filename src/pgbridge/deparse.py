"""SQL query deparsing via libpg_query."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from google.protobuf.message import Message

from pgbridge.codec import serialize, validate_tree
from pgbridge.decode import read_text_result
from pgbridge.engine import Entry
from pgbridge.errors import UnsupportedOperationError, ValidationError

if TYPE_CHECKING:
    from pgbridge.lifecycle import EngineContext


def encode_tree(ctx: EngineContext, tree: Any) -> bytes:
    """Produce the protobuf payload the deparse entry point consumes."""
    if isinstance(tree, (bytes, bytearray)):
        if not tree:
            raise ValidationError("No parse tree provided")
        return bytes(tree)
    validate_tree(tree)
    if isinstance(tree, Message):
        return tree.SerializeToString()
    if ctx.schema is None:
        raise UnsupportedOperationError("deparse", ctx.version, "no pg_query schema is installed for JSON trees")
    return serialize(tree, ctx.schema)


def deparse_tree(ctx: EngineContext, tree: Any) -> str:
    """Convert a parse tree back into a SQL string.

    The tree is encoded with the version's ``pg_query.proto`` schema, copied into engine memory, and handed to
    the deparse entry point together with its length. This is the inverse of :func:`pgbridge.parse`.

    Note:
        The deparsed SQL is canonicalized by libpg_query and may differ from the original query in whitespace,
        casing, or parenthesization while remaining semantically equivalent.

    Args:
        ctx: A ready engine.
        tree: A JSON-shaped tree (as returned by :func:`pgbridge.parse`), a ``ParseResult`` message, or raw
            ``ParseResult`` protobuf bytes.

    Returns:
        The deparsed SQL string.

    Raises:
        ValidationError: If the tree is missing, has no statements, or does not fit the schema.
        SqlError: If libpg_query cannot deparse the tree.
    """
    data = encode_tree(ctx, tree)
    bridge = ctx.bridge
    with (
        ctx.lock,
        bridge.bytes_argument(data) as buf,
        bridge.result(Entry.DEPARSE, buf.address, buf.length) as result,
    ):
        return read_text_result(bridge, result)
