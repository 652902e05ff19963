from __future__ import annotations

import hashlib
import json
import re
import threading
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import pytest
from google.protobuf import descriptor_pb2

from pgbridge.config import BridgeConfig
from pgbridge.dispatch import Dispatcher, PgVersion, build_context, resolve_version
from pgbridge.engine import EngineStats, Entry
from pgbridge.errors import ConfigError, SqlError
from pgbridge.lifecycle import EngineLifecycle
from pgbridge.native import open_engine
from pgbridge.schema import schema_from_files

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable

    from pgbridge.lifecycle import EngineContext
    from pgbridge.schema import Schema

# -- Fake engine ---------------------------------------------------------------


@dataclass
class FakeError:
    """What a scripted parse handler returns to report a grammar error."""

    message: str | None
    cursorpos: int = 0
    funcname: str | None = "scanner_yyerror"
    filename: str | None = "scan.l"
    lineno: int = 1242
    context: str | None = None


NEITHER = object()
"""Parse handler result: the engine returns a struct with neither a tree nor an error."""


_STATEMENT_KEYWORDS = frozenset({"SELECT", "INSERT", "UPDATE", "DELETE", "CREATE", "ALTER", "DROP", "WITH", "VALUES"})


def default_parse(query: str) -> Any:
    """Reproduce the error positions PostgreSQL reports for a few inputs; otherwise return a one-statement tree."""
    if query.startswith("@"):
        return FakeError('syntax error at or near "@"', cursorpos=1)
    first = query.split(maxsplit=1)[0] if query.strip() else ""
    if first.isalpha() and first.upper() not in _STATEMENT_KEYWORDS:
        return FakeError(f'syntax error at or near "{first}"', cursorpos=query.index(first) + 1)
    if query.rstrip().endswith(("WHERE", "=", "@")):
        return FakeError("syntax error at end of input", cursorpos=len(query.encode("utf-8")) + 1)
    return {"version": 170004, "stmts": [{"stmt_location": 0, "stmt_len": len(query.encode("utf-8"))}]}


def _text_error(query: str) -> str | None:
    if query.startswith("@"):
        return 'syntax error at or near "@"'
    return None


def default_scan(query: str) -> str:
    error = _text_error(query)
    if error:
        return error
    data = query.encode("utf-8")
    tokens = [
        {
            "start": m.start(),
            "end": m.end(),
            "text": m.group().decode("utf-8"),
            "tokenType": 258,
            "tokenName": "IDENT",
            "keywordKind": 0,
            "keywordName": "NO_KEYWORD",
        }
        for m in re.finditer(rb"\S+", data)
    ]
    return json.dumps({"version": 170004, "tokens": tokens})


def default_split(query: str) -> str:
    """Split on semicolons, trimming whitespace around each statement like the parser-backed splitter."""
    if not query.strip():
        return '{"stmts": []}'
    error = _text_error(query)
    outcome = default_parse(query.lstrip("; "))
    if error is None and isinstance(outcome, FakeError):
        error = outcome.message
    if error:
        return error
    stmts = []
    for m in re.finditer(rb"[^;]+", query.encode("utf-8")):
        body = m.group().strip()
        if body:
            stmts.append({"stmt_location": m.start() + m.group().index(body), "stmt_len": len(body)})
    return json.dumps({"stmts": stmts})


class FakeEngine:
    """In-memory :class:`~pgbridge.engine.EngineHandle` with a 32-bit layout by default.

    Memory is a ``bytearray`` heap whose blocks are never reused, so reads of freed or foreign memory are caught.
    Entry points are Python callables over decoded arguments; replace them through :attr:`handlers`.
    """

    byteorder = "little"

    def __init__(self, pointer_size: int = 4, entries: Iterable[Entry] | None = None) -> None:
        self.pointer_size = pointer_size
        self.stats = EngineStats()
        self.heap = bytearray(16)
        self.blocks: dict[int, tuple[int, str]] = {}
        self.children: dict[int, list[int]] = {}
        self.calls: list[tuple[Entry, tuple[int, ...]]] = []
        self.fail_allocations = False
        self.fail_writes = False
        self.null_results: set[Entry] = set()
        self.interleavings = 0
        self._owner: int | None = None
        self._guard = threading.Lock()
        self.handlers: dict[Entry, Callable[..., Any]] = {
            Entry.PARSE: default_parse,
            Entry.PARSE_PROTOBUF: lambda q: _text_error(q) or b"\x08\x01\x12\x02\x18" + bytes([len(q) % 128]),
            Entry.DEPARSE: lambda data: "SELECT 1",
            Entry.FINGERPRINT: lambda q: _text_error(q) or hashlib.sha1(q.lower().encode()).hexdigest()[:16],
            Entry.NORMALIZE: lambda q: _text_error(q) or re.sub(r"\b\d+\b", "$1", q),
            Entry.SCAN: default_scan,
            Entry.PARSE_PLPGSQL: lambda q: _text_error(q) or '[{"PLpgSQL_function": {"datums": []}}]',
            Entry.SPLIT: default_split,
        }
        if entries is not None:
            keep = set(entries)
            self.handlers = {e: h for e, h in self.handlers.items() if e in keep}

    @property
    def entries(self) -> frozenset[Entry]:
        return frozenset(self.handlers) | {Entry.FREE_RESULT, Entry.FREE_STRING}

    # -- Heap -------------------------------------------------------------------

    def _claim(self, size: int, kind: str) -> int:
        with self._guard:
            me = threading.get_ident()
            if self.blocks and self._owner not in (None, me):
                self.interleavings += 1
            self._owner = me
            address = len(self.heap)
            self.heap.extend(bytes(-(-max(size, 1) // 8) * 8))
            self.blocks[address] = (size, kind)
            return address

    def _drop(self, address: int, kind: str) -> None:
        with self._guard:
            block = self.blocks.get(address)
            if block is None or block[1] != kind:
                raise AssertionError(f"free of unknown {kind} block {address}")
            del self.blocks[address]
            if not self.blocks:
                self._owner = None

    def _check(self, address: int, length: int) -> None:
        for start, (size, _) in self.blocks.items():
            if start <= address and address + length <= start + max(size, 1):
                return
        raise AssertionError(f"access outside live memory: {address}+{length}")

    def allocate(self, size: int) -> int:
        if self.fail_allocations:
            return 0
        self.stats.allocations += 1
        return self._claim(size, "host")

    def free(self, address: int) -> None:
        self._drop(address, "host")
        self.stats.frees += 1

    def read_bytes(self, address: int, length: int) -> bytes:
        if length:
            self._check(address, length)
        return bytes(self.heap[address : address + length])

    def write_bytes(self, address: int, data: bytes) -> None:
        if self.fail_writes:
            raise OSError("simulated write failure")
        self._check(address, len(data))
        self.heap[address : address + len(data)] = data

    def string_length(self, address: int) -> int:
        self._check(address, 1)
        return self.heap.index(0, address) - address

    # -- Engine-side helpers ----------------------------------------------------

    def _poke(self, address: int, value: int, width: int) -> None:
        self.heap[address : address + width] = value.to_bytes(width, self.byteorder, signed=width == 4)

    def _cstring(self, text: str | None, owner: list[int]) -> int:
        if text is None:
            return 0
        data = text.encode("utf-8") + b"\x00"
        address = self._claim(len(data), "engine")
        self.heap[address : address + len(data)] = data
        owner.append(address)
        return address

    def _issue(self, data: bytes) -> int:
        address = self._claim(len(data), "result")
        self.heap[address : address + len(data)] = data
        self.stats.results += 1
        return address

    def _read_arg(self, address: int) -> str:
        return bytes(self.heap[address : self.heap.index(0, address)]).decode("utf-8")

    def _parse_struct(self, outcome: Any) -> int:
        p = self.pointer_size
        address = self._claim(3 * p, "result")
        owned: list[int] = []
        if isinstance(outcome, FakeError):
            context_at = -(-(3 * p + 8) // p) * p
            err = self._claim(context_at + p, "engine")
            owned.append(err)
            self._poke(err, self._cstring(outcome.message, owned), p)
            self._poke(err + p, self._cstring(outcome.funcname, owned), p)
            self._poke(err + 2 * p, self._cstring(outcome.filename, owned), p)
            self._poke(err + 3 * p, outcome.lineno, 4)
            self._poke(err + 3 * p + 4, outcome.cursorpos, 4)
            self._poke(err + context_at, self._cstring(outcome.context, owned), p)
            self._poke(address + 2 * p, err, p)
        elif outcome is not NEITHER:
            tree = outcome if isinstance(outcome, str) else json.dumps(outcome)
            self._poke(address, self._cstring(tree, owned), p)
        self.children[address] = owned
        self.stats.results += 1
        return address

    # -- Entry points -----------------------------------------------------------

    def invoke(self, entry: Entry, *args: int) -> int:
        self.calls.append((entry, args))
        if entry is Entry.FREE_RESULT:
            for child in self.children.pop(args[0]):
                self._drop(child, "engine")
            self._drop(args[0], "result")
            self.stats.released += 1
            return 0
        if entry is Entry.FREE_STRING:
            self._drop(args[0], "result")
            self.stats.released += 1
            return 0
        if entry not in self.handlers:
            raise AssertionError(f"{entry} not provided")
        if entry in self.null_results:
            return 0

        handler = self.handlers[entry]
        if entry is Entry.PARSE:
            return self._parse_struct(handler(self._read_arg(args[0])))
        if entry is Entry.DEPARSE:
            data, length = args
            return self._issue(handler(bytes(self.heap[data : data + length])).encode("utf-8") + b"\x00")
        if entry is Entry.PARSE_PROTOBUF:
            query, out_len = args
            outcome = handler(self._read_arg(query))
            if isinstance(outcome, bytes):
                self._poke(out_len, len(outcome), 4)
                return self._issue(outcome)
            self._poke(out_len, 0, 4)
            return self._issue(outcome.encode("utf-8") + b"\x00")
        return self._issue(handler(self._read_arg(args[0])).encode("utf-8") + b"\x00")

    @property
    def live_blocks(self) -> int:
        return len(self.blocks)


# -- Mini pg_query schema ------------------------------------------------------

_F = descriptor_pb2.FieldDescriptorProto


def _field(message: Any, name: str, number: int, ftype: int, *, repeated: bool = False, type_name: str = "") -> None:
    camel = re.sub(r"_([a-z])", lambda m: m.group(1).upper(), name)
    field = message.field.add(
        name=name,
        number=number,
        type=ftype,
        label=_F.LABEL_REPEATED if repeated else _F.LABEL_OPTIONAL,
        json_name=camel,
    )
    # Scalar fields must leave type_name unset; the upb backend rejects an explicit "".
    if type_name:
        field.type_name = type_name


def mini_descriptor_set() -> descriptor_pb2.FileDescriptorSet:
    """A cut-down ``pg_query.proto`` with the messages and enums pgbridge looks up."""
    fdp = descriptor_pb2.FileDescriptorProto(name="pg_query.proto", package="pg_query", syntax="proto3")

    raw = fdp.message_type.add(name="RawStmt")
    _field(raw, "stmt_location", 2, _F.TYPE_INT32)
    _field(raw, "stmt_len", 3, _F.TYPE_INT32)

    result = fdp.message_type.add(name="ParseResult")
    _field(result, "version", 1, _F.TYPE_INT32)
    _field(result, "stmts", 2, _F.TYPE_MESSAGE, repeated=True, type_name=".pg_query.RawStmt")

    token = fdp.message_type.add(name="ScanToken")
    _field(token, "start", 1, _F.TYPE_INT32)
    _field(token, "end", 2, _F.TYPE_INT32)
    _field(token, "token", 4, _F.TYPE_ENUM, type_name=".pg_query.Token")
    _field(token, "keyword_kind", 5, _F.TYPE_ENUM, type_name=".pg_query.KeywordKind")

    scan = fdp.message_type.add(name="ScanResult")
    _field(scan, "version", 1, _F.TYPE_INT32)
    _field(scan, "tokens", 2, _F.TYPE_MESSAGE, repeated=True, type_name=".pg_query.ScanToken")

    tok_enum = fdp.enum_type.add(name="Token")
    for name, number in [("NUL", 0), ("ASCII_42", 42), ("IDENT", 258), ("FROM", 408), ("SELECT", 634)]:
        tok_enum.value.add(name=name, number=number)
    kw_enum = fdp.enum_type.add(name="KeywordKind")
    for number, name in enumerate(
        ["NO_KEYWORD", "UNRESERVED_KEYWORD", "COL_NAME_KEYWORD", "TYPE_FUNC_NAME_KEYWORD", "RESERVED_KEYWORD"]
    ):
        kw_enum.value.add(name=name, number=number)

    return descriptor_pb2.FileDescriptorSet(file=[fdp])


# -- Fixtures ------------------------------------------------------------------


@pytest.fixture(scope="session")
def mini_schema() -> Schema:
    return schema_from_files(mini_descriptor_set(), 17)


@pytest.fixture
def engine() -> FakeEngine:
    return FakeEngine()


@pytest.fixture
def ctx(engine: FakeEngine, mini_schema: Schema) -> EngineContext:
    return build_context(PgVersion.PG17, engine, mini_schema)


def make_dispatcher(contexts: dict[PgVersion, Callable[[], EngineContext]], default_version: int = 17) -> Dispatcher:
    """A dispatcher whose engines start by calling the given loaders."""
    return Dispatcher({v: EngineLifecycle(int(v), loader) for v, loader in contexts.items()}, default_version)


@pytest.fixture
def fake_dispatcher(mini_schema: Schema) -> Dispatcher:
    """PostgreSQL 15/16/17 backed by fake engines."""
    return make_dispatcher(
        {v: (lambda v=v: build_context(v, FakeEngine(), mini_schema)) for v in PgVersion},
    )


@pytest.fixture(scope="session")
def native_ctx() -> EngineContext:
    """The real libpg_query engine for the configured default version; skips when none is installed."""
    config = BridgeConfig.from_env()
    try:
        engine = open_engine(config.default_version, config)
    except (OSError, ConfigError) as e:
        pytest.skip(f"libpg_query unavailable: {e}")
    return build_context(resolve_version(config.default_version), engine, engine.schema)


# -- Assertion helpers ---------------------------------------------------------


def assert_sql_error(fn: Callable[..., Any], *args: Any, cursor_position: int | None = None) -> SqlError:
    """Assert that ``fn(*args)`` raises :class:`SqlError`; with ``cursor_position``, also check its details."""
    with pytest.raises(SqlError) as exc_info:
        fn(*args)
    assert exc_info.value.message
    if cursor_position is not None:
        assert exc_info.value.sql_details is not None
        assert exc_info.value.sql_details.cursor_position == cursor_position
    return exc_info.value


def assert_no_leaks(engine: Any) -> None:
    assert engine.stats.balanced, engine.stats
    if isinstance(engine, FakeEngine):
        assert engine.live_blocks == 0
