"""Binary encoding of parse trees for the deparse round trip.

libpg_query only reconstructs SQL from the protobuf form of a tree, so every deparse of a JSON-shaped tree pays a
full encode through the version's ``ParseResult`` message. A retaining :class:`~pgbridge.Parser` can skip that
step for unmodified trees it produced itself: :class:`TreeCache` remembers the protobuf bytes copied out of the
engine at parse time.
"""

from __future__ import annotations

import collections
import json
import threading
from typing import TYPE_CHECKING, Any

from google.protobuf import json_format
from google.protobuf.message import Message

from pgbridge.errors import ValidationError

if TYPE_CHECKING:
    from pgbridge.schema import Schema


def validate_tree(tree: Any) -> None:
    """Reject anything that is not a tree with at least one statement.

    Raises:
        ValidationError: ``"No parse tree provided"`` when ``tree`` is not a mapping (or ``ParseResult``) with a
            non-empty ``stmts`` list.
    """
    if isinstance(tree, Message):
        stmts = getattr(tree, "stmts", None)
        if stmts is not None and len(stmts) > 0:
            return
    elif isinstance(tree, dict):
        stmts = tree.get("stmts")
        if isinstance(stmts, list) and stmts:
            return
    raise ValidationError("No parse tree provided")


def serialize(tree: Any, schema: Schema) -> bytes:
    """Encode a tree as ``ParseResult`` protobuf bytes.

    Args:
        tree: A JSON-shaped tree as returned by :func:`pgbridge.parse`, or a ``ParseResult`` message of the
            same schema.
        schema: The schema of the engine version that will deparse the bytes.

    Raises:
        ValidationError: If the tree is missing, empty, or does not fit the schema.
    """
    validate_tree(tree)
    if isinstance(tree, Message):
        return tree.SerializeToString()
    try:
        message = json_format.ParseDict(tree, schema.parse_result())
    except json_format.ParseError as e:
        raise ValidationError(f"Parse tree does not match the pg_query {schema.version} schema: {e}") from e
    return message.SerializeToString()


def _snapshot(tree: Any) -> str | None:
    try:
        return json.dumps(tree, sort_keys=True)
    except (TypeError, ValueError):
        return None


class TreeCache:
    """Identity-keyed side table from parse trees to their protobuf bytes.

    Entries hold a reference to their tree, so an ``id()`` is never reused while cached. The table is bounded and
    evicts the least recently used tree. Each entry also keeps a canonical JSON snapshot of its tree taken at
    :meth:`put` time; :meth:`get` only returns the bytes while the tree still matches that snapshot, so a tree
    edited after parsing is re-encoded instead of deparsing stale bytes.
    """

    def __init__(self, maxsize: int = 256) -> None:
        self.maxsize = maxsize
        self._entries: collections.OrderedDict[int, tuple[Any, str, bytes]] = collections.OrderedDict()
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._entries)

    def put(self, tree: Any, data: bytes) -> None:
        snapshot = _snapshot(tree)
        if snapshot is None:
            return
        with self._lock:
            self._entries[id(tree)] = (tree, snapshot, bytes(data))
            self._entries.move_to_end(id(tree))
            while len(self._entries) > self.maxsize:
                self._entries.popitem(last=False)

    def get(self, tree: Any) -> bytes | None:
        """Return the bytes retained for ``tree``, or ``None`` if it is unknown or was modified since :meth:`put`."""
        with self._lock:
            entry = self._entries.get(id(tree))
            if entry is None or entry[0] is not tree:
                return None
            if _snapshot(tree) != entry[1]:
                del self._entries[id(tree)]
                return None
            self._entries.move_to_end(id(tree))
            return entry[2]

    def discard(self, tree: Any) -> None:
        with self._lock:
            entry = self._entries.get(id(tree))
            if entry is not None and entry[0] is tree:
                del self._entries[id(tree)]

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
