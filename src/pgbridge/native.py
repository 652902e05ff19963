"""ctypes engine over libpg_query.

This module locates and loads one libpg_query shared library per PostgreSQL major version, defines C struct
bindings for its result types, declares function signatures, and wraps the library in :class:`NativeEngine`, the
:class:`~pgbridge.engine.EngineHandle` the marshaling layer talks to. It is an internal module: use the public
pgbridge API instead.

Nothing is loaded at import time. :func:`open_engine` runs the whole startup sequence and is called once per
version by :class:`~pgbridge.lifecycle.EngineLifecycle`.
"""

from __future__ import annotations

import ctypes
import ctypes.util
import json
import logging
import platform
import sys
from ctypes import POINTER, Structure, c_char_p, c_int, c_size_t, c_uint64, c_void_p
from pathlib import Path
from typing import TYPE_CHECKING, Any

from pgbridge.config import DEFAULT_VERSION
from pgbridge.decode import is_error_text
from pgbridge.engine import EngineStats, Entry
from pgbridge.errors import AllocationError, ConfigError, LogicError
from pgbridge.schema import find_schema, load_schema

if TYPE_CHECKING:
    from collections.abc import Callable, Set

    from pgbridge.config import BridgeConfig
    from pgbridge.schema import Schema

logger = logging.getLogger(__name__)

_VENDORED_LIB_NAMES = {
    "Linux": "libpg_query-{version}.so",
    "Darwin": "libpg_query-{version}.dylib",
    "Windows": "pg_query-{version}.dll",
}


def load_library(version: int, config: BridgeConfig | None = None) -> ctypes.CDLL:
    """Load the libpg_query shared library for a PostgreSQL major version.

    Looks for an explicit path in ``config`` first, then a vendored copy bundled alongside this module, then falls
    back to ``ctypes.util.find_library`` for a system-installed library (whose version is checked by
    :func:`open_engine`).

    Returns:
        The loaded CDLL instance.

    Raises:
        OSError: If libpg_query cannot be found via any method.
    """
    # 1. Explicit override.
    if config is not None and version in config.library_paths:
        path = config.library_paths[version]
        logger.debug("Loading libpg_query %d from configured path %s", version, path)
        return ctypes.CDLL(str(path))

    # 2. Vendored library adjacent to this file.
    lib_name = _VENDORED_LIB_NAMES.get(platform.system())
    if lib_name is not None:
        vendored = Path(__file__).parent / lib_name.format(version=version)
        if vendored.is_file():
            logger.debug("Loading vendored libpg_query %d from %s", version, vendored)
            return ctypes.CDLL(str(vendored))
        # An unversioned vendored build serves the default version.
        if version == DEFAULT_VERSION:
            unversioned = Path(__file__).parent / lib_name.replace("-{version}", "")
            if unversioned.is_file():
                logger.debug("Loading vendored libpg_query from %s for version %d", unversioned, version)
                return ctypes.CDLL(str(unversioned))

    # 3. Fall back to system library search.
    path_name = ctypes.util.find_library("pg_query")
    if path_name is not None:
        logger.debug("Loading system libpg_query from %s for version %d", path_name, version)
        return ctypes.CDLL(path_name)

    raise OSError(
        f"libpg_query shared library for PostgreSQL {version} not found. "
        "Install pgbridge from a pre-built wheel, point PGBRIDGE_LIBPG_QUERY_"
        f"{version} at a libpg_query build, or install libpg_query on your library search path "
        "(e.g. LD_LIBRARY_PATH on Linux, DYLD_LIBRARY_PATH on macOS)."
    )


def _load_libc() -> ctypes.CDLL:
    if platform.system() == "Windows":
        libc = ctypes.cdll.msvcrt
    else:
        libc = ctypes.CDLL(ctypes.util.find_library("c"))
    libc.malloc.argtypes = [c_size_t]
    libc.malloc.restype = c_void_p
    libc.free.argtypes = [c_void_p]
    libc.free.restype = None
    libc.strlen.argtypes = [c_void_p]
    libc.strlen.restype = c_size_t
    return libc


# ---------------------------------------------------------------------------
# Struct definitions
# ---------------------------------------------------------------------------


class PgQueryError(Structure):
    """Mirrors the C PgQueryError struct."""

    _fields_ = [
        ("message", c_char_p),
        ("funcname", c_char_p),
        ("filename", c_char_p),
        ("lineno", c_int),
        ("cursorpos", c_int),
        ("context", c_char_p),
    ]


class PgQueryProtobuf(Structure):
    """Mirrors the C PgQueryProtobuf struct (len + data).

    ``data`` is ``c_void_p`` rather than ``c_char_p``: protobuf payloads contain null bytes that ``c_char_p``
    would truncate at.
    """

    _fields_ = [
        ("len", c_size_t),
        ("data", c_void_p),
    ]


class PgQueryParseResult(Structure):
    """Result from pg_query_parse (JSON parse tree)."""

    _fields_ = [
        ("parse_tree", c_char_p),
        ("stderr_buffer", c_char_p),
        ("error", POINTER(PgQueryError)),
    ]


class PgQueryProtobufParseResult(Structure):
    """Result from pg_query_parse_protobuf (binary protobuf parse tree)."""

    _fields_ = [
        ("parse_tree", PgQueryProtobuf),
        ("stderr_buffer", c_char_p),
        ("error", POINTER(PgQueryError)),
    ]


class PgQueryPlpgsqlParseResult(Structure):
    """Result from pg_query_parse_plpgsql (JSON function list)."""

    _fields_ = [
        ("plpgsql_funcs", c_char_p),
        ("error", POINTER(PgQueryError)),
    ]


class PgQueryNormalizeResult(Structure):
    """Result from pg_query_normalize."""

    _fields_ = [
        ("normalized_query", c_char_p),
        ("error", POINTER(PgQueryError)),
    ]


class PgQueryFingerprintResult(Structure):
    """Result from pg_query_fingerprint."""

    _fields_ = [
        ("fingerprint", c_uint64),
        ("fingerprint_str", c_char_p),
        ("stderr_buffer", c_char_p),
        ("error", POINTER(PgQueryError)),
    ]


class PgQueryScanResult(Structure):
    """Result from pg_query_scan (binary protobuf scan tokens)."""

    _fields_ = [
        ("pbuf", PgQueryProtobuf),
        ("stderr_buffer", c_char_p),
        ("error", POINTER(PgQueryError)),
    ]


class PgQueryDeparseResult(Structure):
    """Result from pg_query_deparse_protobuf."""

    _fields_ = [
        ("query", c_char_p),
        ("error", POINTER(PgQueryError)),
    ]


class PgQuerySplitStmt(Structure):
    """One statement span: byte offset and byte length."""

    _fields_ = [
        ("stmt_location", c_int),
        ("stmt_len", c_int),
    ]


class PgQuerySplitResult(Structure):
    """Result from pg_query_split_with_parser."""

    _fields_ = [
        ("stmts", POINTER(POINTER(PgQuerySplitStmt))),
        ("n_stmts", c_int),
        ("stderr_buffer", c_char_p),
        ("error", POINTER(PgQueryError)),
    ]


# ---------------------------------------------------------------------------
# Function signatures
# ---------------------------------------------------------------------------

_SIGNATURES: dict[str, tuple[list[Any], Any]] = {
    "pg_query_parse": ([c_char_p], PgQueryParseResult),
    "pg_query_parse_protobuf": ([c_char_p], PgQueryProtobufParseResult),
    "pg_query_parse_plpgsql": ([c_char_p], PgQueryPlpgsqlParseResult),
    "pg_query_normalize": ([c_char_p], PgQueryNormalizeResult),
    "pg_query_fingerprint": ([c_char_p], PgQueryFingerprintResult),
    "pg_query_scan": ([c_char_p], PgQueryScanResult),
    "pg_query_deparse_protobuf": ([PgQueryProtobuf], PgQueryDeparseResult),
    "pg_query_split_with_parser": ([c_char_p], PgQuerySplitResult),
    "pg_query_free_parse_result": ([PgQueryParseResult], None),
    "pg_query_free_protobuf_parse_result": ([PgQueryProtobufParseResult], None),
    "pg_query_free_plpgsql_parse_result": ([PgQueryPlpgsqlParseResult], None),
    "pg_query_free_normalize_result": ([PgQueryNormalizeResult], None),
    "pg_query_free_fingerprint_result": ([PgQueryFingerprintResult], None),
    "pg_query_free_scan_result": ([PgQueryScanResult], None),
    "pg_query_free_deparse_result": ([PgQueryDeparseResult], None),
    "pg_query_free_split_result": ([PgQuerySplitResult], None),
}


def bind(lib: ctypes.CDLL) -> frozenset[str]:
    """Declare argtypes/restype for every known libpg_query function the library exports.

    Older libpg_query releases lack some functions (deparse, scan); those are skipped.

    Returns:
        The names of the functions that were bound.
    """
    bound = set()
    for name, (argtypes, restype) in _SIGNATURES.items():
        try:
            func = getattr(lib, name)
        except AttributeError:
            continue
        func.argtypes = argtypes
        func.restype = restype
        bound.add(name)
    return frozenset(bound)


# Entry point -> libpg_query functions it needs.
_ENTRY_SYMBOLS: dict[Entry, tuple[str, ...]] = {
    Entry.PARSE: ("pg_query_parse", "pg_query_free_parse_result"),
    Entry.FREE_RESULT: ("pg_query_free_parse_result",),
    Entry.FREE_STRING: (),
    Entry.PARSE_PROTOBUF: ("pg_query_parse_protobuf", "pg_query_free_protobuf_parse_result"),
    Entry.DEPARSE: ("pg_query_deparse_protobuf", "pg_query_free_deparse_result"),
    Entry.FINGERPRINT: ("pg_query_fingerprint", "pg_query_free_fingerprint_result"),
    Entry.NORMALIZE: ("pg_query_normalize", "pg_query_free_normalize_result"),
    Entry.SCAN: ("pg_query_scan", "pg_query_free_scan_result"),
    Entry.PARSE_PLPGSQL: ("pg_query_parse_plpgsql", "pg_query_free_plpgsql_parse_result"),
    Entry.SPLIT: ("pg_query_split_with_parser", "pg_query_free_split_result"),
}


def _cstring(address: int) -> c_char_p:
    return ctypes.cast(address, c_char_p)


def _error_text(err: Any, prefix: str) -> str:
    message = err.contents.message
    text = message.decode("utf-8") if message else "Unknown error"
    return text if is_error_text(text) else prefix + text


class NativeEngine:
    """:class:`~pgbridge.engine.EngineHandle` backed by a loaded libpg_query.

    Host buffers come from the C runtime's ``malloc``. Parse results are copied into a ``malloc``-ed cell so the
    marshaling layer can address them like any other engine memory; ``FREE_RESULT`` hands the struct back to
    ``pg_query_free_parse_result`` and frees the cell. Text-returning entry points render libpg_query's error
    struct into the plain-text error convention.
    """

    pointer_size = ctypes.sizeof(c_void_p)
    byteorder = sys.byteorder

    def __init__(
        self,
        lib: ctypes.CDLL,
        *,
        version: int,
        symbols: Set[str],
        schema: Schema | None = None,
        libc: ctypes.CDLL | None = None,
    ) -> None:
        self.lib = lib
        self.version = version
        self.schema = schema
        self.libc = libc if libc is not None else _load_libc()
        self.stats = EngineStats()

        handlers: dict[Entry, Callable[..., int]] = {
            Entry.PARSE: self._parse,
            Entry.FREE_RESULT: self._free_result,
            Entry.FREE_STRING: self._free_string,
            Entry.PARSE_PROTOBUF: self._parse_protobuf,
            Entry.DEPARSE: self._deparse,
            Entry.FINGERPRINT: self._fingerprint,
            Entry.NORMALIZE: self._normalize,
            Entry.SCAN: self._scan,
            Entry.PARSE_PLPGSQL: self._parse_plpgsql,
            Entry.SPLIT: self._split,
        }
        self._handlers = {
            entry: handler
            for entry, handler in handlers.items()
            if all(name in symbols for name in _ENTRY_SYMBOLS[entry])
        }
        if schema is None:
            # Scan tokens are decoded through the ScanResult message.
            self._handlers.pop(Entry.SCAN, None)

    @property
    def entries(self) -> frozenset[Entry]:
        return frozenset(self._handlers)

    # -- Memory primitives ----------------------------------------------------

    def allocate(self, size: int) -> int:
        address = self.libc.malloc(size) or 0
        if address:
            self.stats.allocations += 1
        return address

    def free(self, address: int) -> None:
        self.libc.free(address)
        self.stats.frees += 1

    def read_bytes(self, address: int, length: int) -> bytes:
        if length == 0:
            return b""
        return ctypes.string_at(address, length)

    def write_bytes(self, address: int, data: bytes) -> None:
        ctypes.memmove(address, data, len(data))

    def string_length(self, address: int) -> int:
        return self.libc.strlen(address)

    def invoke(self, entry: Entry, *args: int) -> int:
        handler = self._handlers.get(entry)
        if handler is None:
            raise LogicError(f"libpg_query {self.version} does not provide the {entry.value} entry point")
        return handler(*args)

    # -- Result cells ---------------------------------------------------------

    def _issue(self, data: bytes) -> int:
        address = self.libc.malloc(max(len(data), 1)) or 0
        if not address:
            raise AllocationError(f"Engine could not allocate a {len(data)}-byte result")
        ctypes.memmove(address, data, len(data))
        self.stats.results += 1
        return address

    def _issue_text(self, text: str) -> int:
        return self._issue(text.encode("utf-8") + b"\x00")

    def _free_string(self, address: int) -> int:
        self.libc.free(address)
        self.stats.released += 1
        return 0

    # -- Entry points ---------------------------------------------------------

    def _parse(self, query: int) -> int:
        result = self.lib.pg_query_parse(_cstring(query))
        try:
            return self._issue(ctypes.string_at(ctypes.addressof(result), ctypes.sizeof(result)))
        except BaseException:
            self.lib.pg_query_free_parse_result(result)
            raise

    def _free_result(self, address: int) -> int:
        self.lib.pg_query_free_parse_result(PgQueryParseResult.from_address(address))
        return self._free_string(address)

    def _parse_protobuf(self, query: int, out_len: int) -> int:
        result = self.lib.pg_query_parse_protobuf(_cstring(query))
        try:
            if result.error:
                length = 0
                payload = _error_text(result.error, "ERROR: ").encode("utf-8") + b"\x00"
            else:
                pbuf = result.parse_tree
                payload = self.read_bytes(pbuf.data, pbuf.len)
                length = len(payload)
        finally:
            self.lib.pg_query_free_protobuf_parse_result(result)
        ctypes.c_int32.from_address(out_len).value = length
        return self._issue(payload)

    def _deparse(self, data: int, length: int) -> int:
        result = self.lib.pg_query_deparse_protobuf(PgQueryProtobuf(len=length, data=data))
        try:
            if result.error:
                text = _error_text(result.error, "deparse error: ")
            else:
                text = result.query.decode("utf-8")
        finally:
            self.lib.pg_query_free_deparse_result(result)
        return self._issue_text(text)

    def _fingerprint(self, query: int) -> int:
        result = self.lib.pg_query_fingerprint(_cstring(query))
        try:
            text = _error_text(result.error, "ERROR: ") if result.error else result.fingerprint_str.decode("utf-8")
        finally:
            self.lib.pg_query_free_fingerprint_result(result)
        return self._issue_text(text)

    def _normalize(self, query: int) -> int:
        result = self.lib.pg_query_normalize(_cstring(query))
        try:
            text = _error_text(result.error, "ERROR: ") if result.error else result.normalized_query.decode("utf-8")
        finally:
            self.lib.pg_query_free_normalize_result(result)
        return self._issue_text(text)

    def _parse_plpgsql(self, query: int) -> int:
        result = self.lib.pg_query_parse_plpgsql(_cstring(query))
        try:
            if result.error:
                text = _error_text(result.error, "ERROR: ")
            else:
                text = result.plpgsql_funcs.decode("utf-8") if result.plpgsql_funcs else "[]"
        finally:
            self.lib.pg_query_free_plpgsql_parse_result(result)
        return self._issue_text(text)

    def _split(self, query: int) -> int:
        result = self.lib.pg_query_split_with_parser(_cstring(query))
        try:
            if result.error:
                text = _error_text(result.error, "ERROR: ")
            else:
                spans = (result.stmts[i].contents for i in range(result.n_stmts))
                stmts = [{"stmt_location": s.stmt_location, "stmt_len": s.stmt_len} for s in spans]
                text = json.dumps({"stmts": stmts})
        finally:
            self.lib.pg_query_free_split_result(result)
        return self._issue_text(text)

    def _scan(self, query: int) -> int:
        self._require_schema()
        result = self.lib.pg_query_scan(_cstring(query))
        try:
            if result.error:
                text = _error_text(result.error, "ERROR: ")
            else:
                text = self._scan_json(self.read_bytes(result.pbuf.data, result.pbuf.len), ctypes.string_at(query))
        finally:
            self.lib.pg_query_free_scan_result(result)
        return self._issue_text(text)

    def _require_schema(self) -> Schema:
        if self.schema is None:
            raise LogicError(f"libpg_query {self.version} scan needs the pg_query schema to decode tokens")
        return self.schema

    def _scan_json(self, data: bytes, source: bytes) -> str:
        schema = self._require_schema()
        message: Any = schema.scan_result.FromString(data)
        tokens = [
            {
                "start": tok.start,
                "end": tok.end,
                "text": source[tok.start : tok.end].decode("utf-8", errors="replace"),
                "tokenType": tok.token,
                "tokenName": schema.token_name(tok.token),
                "keywordKind": tok.keyword_kind,
                "keywordName": schema.keyword_name(tok.keyword_kind),
            }
            for tok in message.tokens
        ]
        return json.dumps({"version": message.version, "tokens": tokens})


# ---------------------------------------------------------------------------
# Startup
# ---------------------------------------------------------------------------


def read_version(lib: ctypes.CDLL) -> int:
    """Return the ``PG_VERSION_NUM`` a loaded libpg_query reports (e.g. ``170004``)."""
    result = lib.pg_query_parse(b"SELECT 1")
    try:
        if result.error:
            raise OSError(f"libpg_query failed its startup check: {result.error.contents.message!r}")
        return int(json.loads(result.parse_tree.decode("utf-8"))["version"])
    finally:
        lib.pg_query_free_parse_result(result)


def open_engine(version: int, config: BridgeConfig | None = None) -> NativeEngine:
    """Load, bind and verify the libpg_query engine for a PostgreSQL major version.

    Raises:
        OSError: If the library cannot be loaded.
        ConfigError: If the loaded library was built for a different major version.
    """
    lib = load_library(version, config)
    symbols = bind(lib)
    if "pg_query_parse" not in symbols:
        raise OSError(f"{lib._name} does not export pg_query_parse; is it libpg_query?")

    reported = read_version(lib)
    if reported // 10000 != version:
        raise ConfigError(
            f"{lib._name} reports PostgreSQL {reported // 10000} (version {reported}), expected {version}"
        )

    schema = None
    schema_path = find_schema(version, config)
    if schema_path is not None:
        schema = load_schema(schema_path, version)
    else:
        logger.debug("No pg_query %d schema found; deparse of JSON trees and scan are unavailable", version)

    return NativeEngine(lib, version=version, symbols=symbols, schema=schema)
