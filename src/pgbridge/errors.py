"""Error taxonomy for pgbridge.

Every failure raised by pgbridge derives from :class:`PgBridgeError`. Grammar-level problems reported by libpg_query
surface as :class:`SqlError`; everything else (bad input, an engine that is not loaded yet, an operation a version
does not support, a broken engine contract) has its own class so callers never need to parse messages.
"""

from __future__ import annotations

from dataclasses import dataclass


class PgBridgeError(Exception):
    """Base class for all pgbridge errors."""

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class TypeValidationError(PgBridgeError, TypeError):
    """An argument had the wrong type, or was an empty query. Raised before touching engine memory."""


class ValidationError(PgBridgeError, ValueError):
    """A parse tree handed to deparse is missing or does not match the binary schema."""


class ConfigError(PgBridgeError, ValueError):
    """An environment variable or config value could not be interpreted."""


class NotInitializedError(PgBridgeError, RuntimeError):
    """A non-suspending entry point was called before the engine finished loading."""


class UnsupportedVersionError(PgBridgeError, ValueError):
    """The requested PostgreSQL major version has no engine."""


class UnsupportedOperationError(PgBridgeError, RuntimeError):
    """The engine for a version does not provide the requested operation."""

    def __init__(self, operation: str, version: int, reason: str | None = None) -> None:
        message = f"{operation} is not available for PostgreSQL {version}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)
        self.operation = operation
        self.version = version


class MalformedResultError(PgBridgeError, RuntimeError):
    """The engine returned data that could not be decoded."""


class LogicError(PgBridgeError, RuntimeError):
    """The engine violated its own contract (e.g. returned neither a tree nor an error)."""


class AllocationError(PgBridgeError, MemoryError):
    """Allocating engine memory returned a null address."""


@dataclass(frozen=True)
class ErrorDetails:
    """Structured position and provenance of a grammar error.

    ``cursor_position`` is a **0-based byte offset** into the UTF-8 encoding of the query. libpg_query reports
    1-based positions; they are converted on decode (``0`` when the engine gave no position).

    ``file_name``, ``function_name`` and ``line_number`` refer to the PostgreSQL C sources that raised the error,
    not to the caller's code.
    """

    message: str
    cursor_position: int = 0
    file_name: str | None = None
    function_name: str | None = None
    line_number: int | None = None
    context: str | None = None


class SqlError(PgBridgeError):
    """Raised when libpg_query rejects a statement.

    Errors from :func:`~pgbridge.parse` carry :attr:`sql_details`. The text-returning operations
    (fingerprint, normalize, scan, PL/pgSQL parse, deparse) only receive a message from the engine, so for those
    ``sql_details`` is ``None``.

    Examples:
        >>> from pgbridge import SqlError, parse_sync
        >>> try:
        ...     parse_sync("SELECT * FROM users WHERE id = @")
        ... except SqlError as e:
        ...     print(e.sql_details.cursor_position)
        32
    """

    def __init__(self, message: str, details: ErrorDetails | None = None) -> None:
        super().__init__(message)
        self.sql_details = details


def has_sql_details(error: BaseException) -> bool:
    """Return ``True`` when ``error`` is a :class:`SqlError` with structured details."""
    return isinstance(error, SqlError) and error.sql_details is not None


_RED = "\x1b[31m"
_YELLOW = "\x1b[33m"
_RESET = "\x1b[0m"


def format_sql_error(
    error: BaseException,
    query: str,
    *,
    show_position: bool = True,
    show_query: bool = True,
    color: bool = False,
    max_query_length: int | None = None,
) -> str:
    """Render an error as a multi-line report with a caret under the failing position.

    Args:
        error: The exception to render, typically a :class:`SqlError`.
        query: The query that produced the error.
        show_position: Draw the caret line under the query.
        show_query: Include the query text at all.
        color: Emit ANSI color codes for the message and caret.
        max_query_length: Truncate the displayed query to a window of this many characters centered on the
            cursor, marking cut ends with ``...``.

    Returns:
        The formatted report.

    Example:
        >>> err = SqlError("syntax error at end of input", ErrorDetails("syntax error at end of input", 25))
        >>> print(format_sql_error(err, "SELECT * FROM users WHERE"))
        Error: syntax error at end of input
        Position: 25
        SELECT * FROM users WHERE
                                 ^
    """
    red, yellow, reset = (_RED, _YELLOW, _RESET) if color else ("", "", "")
    lines = [f"{red}Error: {error}{reset}"]

    details = error.sql_details if isinstance(error, SqlError) else None
    if details is None:
        if show_query:
            display = query
            if max_query_length and len(query) > max_query_length:
                display = query[:max_query_length] + "..."
            lines.append(f"Query: {display}")
        return "\n".join(lines)

    position = details.cursor_position
    lines.append(f"Position: {position}")

    source = []
    if details.file_name:
        source.append(f"file: {details.file_name}")
    if details.function_name:
        source.append(f"function: {details.function_name}")
    if details.line_number:
        source.append(f"line: {details.line_number}")
    if source:
        lines.append(f"Source: {', '.join(source)}")

    if show_query and show_position:
        # cursor_position counts UTF-8 bytes; the caret is drawn in characters.
        column = len(query.encode("utf-8")[:position].decode("utf-8", errors="ignore"))
        display = query
        caret_at = column
        if max_query_length and len(query) > max_query_length:
            start = max(0, column - max_query_length // 2)
            end = min(len(query), start + max_query_length)
            display = ("..." if start > 0 else "") + query[start:end] + ("..." if end < len(query) else "")
            caret_at = column - start + (3 if start > 0 else 0)
        lines.append(display)
        lines.append(" " * caret_at + f"{yellow}^{reset}")

    return "\n".join(lines)
