"""Turning raw engine results into trees, text, or typed errors.

libpg_query speaks two error dialects. The parse entry point returns a struct whose error sub-struct carries the
message, the cursor position and the C source location. The text-returning entry points (fingerprint, normalize,
scan, PL/pgSQL, deparse) only hand back a string, and an error is recognised by its prefix. The second dialect
loses the cursor position; :func:`classify_text_result` is used only where no structured channel exists.
"""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any, cast

from pgbridge.errors import AllocationError, ErrorDetails, LogicError, MalformedResultError, SqlError
from pgbridge.layout import decode_struct, error_layout, parse_result_layout

if TYPE_CHECKING:
    from pgbridge.memory import MemoryBridge

_ERROR_PREFIXES = ("syntax error", "deparse error")
_ERROR_MARKER = "ERROR"


def decode_error(bridge: MemoryBridge, address: int) -> ErrorDetails:
    """Decode the ``PgQueryError`` struct at ``address``.

    Null string fields become ``None``, except ``message`` which falls back to ``"Unknown error"``. The engine's
    1-based ``cursorpos`` becomes a 0-based ``cursor_position``; a line number of ``0`` means unknown.
    """
    fields = decode_struct(bridge, error_layout(bridge.engine.pointer_size), address)
    cursorpos = cast(int, fields["cursorpos"])
    lineno = cast(int, fields["lineno"])
    return ErrorDetails(
        message=cast("str | None", fields["message"]) or "Unknown error",
        cursor_position=cursorpos - 1 if cursorpos > 0 else 0,
        file_name=cast("str | None", fields["filename"]),
        function_name=cast("str | None", fields["funcname"]),
        line_number=lineno if lineno > 0 else None,
        context=cast("str | None", fields["context"]),
    )


def decode_parse_result(bridge: MemoryBridge, address: int) -> Any:
    """Decode the ``PgQueryParseResult`` struct at ``address`` into a JSON-shaped tree.

    The caller still owns the result and must release it (see :meth:`MemoryBridge.result`).

    Raises:
        SqlError: The engine reported a grammar error; ``sql_details`` is populated.
        AllocationError: The engine returned a null result.
        LogicError: The engine returned neither a tree nor an error.
        MalformedResultError: The tree text is not valid JSON.
    """
    if not address:
        raise AllocationError("engine could not allocate a parse result")
    fields = decode_struct(bridge, parse_result_layout(bridge.engine.pointer_size), address)

    error_ptr = cast(int, fields["error"])
    if error_ptr:
        details = decode_error(bridge, error_ptr)
        raise SqlError(details.message, details)

    tree_ptr = cast(int, fields["parse_tree"])
    if not tree_ptr:
        raise LogicError("engine returned neither a tree nor an error")
    return decode_json(bridge.read_string(tree_ptr))


def decode_json(text: str) -> Any:
    try:
        return json.loads(text)
    except json.JSONDecodeError as e:
        raise MalformedResultError(f"engine returned malformed JSON: {e}") from e


def is_error_text(text: str) -> bool:
    """Whether a text result follows the engine's plain-text error convention."""
    return text.startswith(_ERROR_PREFIXES) or _ERROR_MARKER in text


def classify_text_result(text: str) -> str:
    """Return ``text`` unchanged, or raise it as a :class:`SqlError` when it is an engine error.

    The error carries the engine text verbatim and no ``sql_details``: this channel has no cursor position.
    """
    if is_error_text(text):
        raise SqlError(text)
    return text


def read_text_result(bridge: MemoryBridge, address: int) -> str:
    """Read the string an entry point returned and classify it."""
    if not address:
        raise AllocationError("engine could not allocate a result string")
    return classify_text_result(bridge.read_string(address))
