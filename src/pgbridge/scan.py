"""SQL scanning/tokenization via libpg_query."""

from __future__ import annotations

from typing import TYPE_CHECKING, NamedTuple

from pgbridge.decode import decode_json, read_text_result
from pgbridge.engine import Entry
from pgbridge.errors import MalformedResultError
from pgbridge.parse import check_query

if TYPE_CHECKING:
    from pgbridge.lifecycle import EngineContext


class ScanToken(NamedTuple):
    """One token of a scanned query.

    Attributes:
        start: Byte offset of the first byte of the token in the UTF-8 query.
        end: Byte offset one past the last byte (exclusive).
        text: The token's source text.
        token_type: Numeric ``pg_query.Token`` value.
        token_name: Name of the token type (e.g. ``"ICONST"``, ``"SELECT"``).
        keyword_kind: Numeric ``pg_query.KeywordKind`` value.
        keyword_name: Name of the keyword kind (e.g. ``"RESERVED_KEYWORD"``, ``"NO_KEYWORD"``).
    """

    start: int
    end: int
    text: str
    token_type: int
    token_name: str
    keyword_kind: int
    keyword_name: str


class ScanResult(NamedTuple):
    version: int
    tokens: list[ScanToken]


def scan_query(ctx: EngineContext, sql: str) -> ScanResult:
    """Tokenize a SQL string.

    Empty and whitespace-only input yields no tokens.

    Raises:
        TypeValidationError: If ``sql`` is not a string.
        SqlError: If the input contains a scan error, e.g. an unterminated string literal (no ``sql_details``).
    """
    check_query(sql)
    bridge = ctx.bridge
    with ctx.lock, bridge.string_argument(sql) as buf, bridge.result(Entry.SCAN, buf.address) as result:
        text = read_text_result(bridge, result)

    payload = decode_json(text)
    try:
        tokens = [
            ScanToken(
                start=tok["start"],
                end=tok["end"],
                text=tok["text"],
                token_type=tok.get("tokenType", 0),
                token_name=tok.get("tokenName", "UNKNOWN"),
                keyword_kind=tok.get("keywordKind", 0),
                keyword_name=tok.get("keywordName", "NO_KEYWORD"),
            )
            for tok in payload["tokens"]
        ]
        return ScanResult(version=payload["version"], tokens=tokens)
    except (KeyError, TypeError) as e:
        raise MalformedResultError(f"engine returned a malformed scan result: {e!r}") from e
