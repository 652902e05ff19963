"""Versioned Python bindings to libpg_query via ctypes."""

from pgbridge.api import (
    deparse,
    deparse_sync,
    fingerprint,
    fingerprint_sync,
    load_module,
    normalize,
    normalize_sync,
    parse,
    parse_plpgsql,
    parse_plpgsql_sync,
    parse_protobuf,
    parse_protobuf_sync,
    parse_sync,
    scan,
    scan_sync,
    split,
    split_sync,
)
from pgbridge.config import BridgeConfig
from pgbridge.dispatch import VERSION_CAPABILITIES, Dispatcher, Operation, PgVersion, default_dispatcher
from pgbridge.errors import (
    AllocationError,
    ConfigError,
    ErrorDetails,
    LogicError,
    MalformedResultError,
    NotInitializedError,
    PgBridgeError,
    SqlError,
    TypeValidationError,
    UnsupportedOperationError,
    UnsupportedVersionError,
    ValidationError,
    format_sql_error,
    has_sql_details,
)
from pgbridge.parser import Parser
from pgbridge.scan import ScanResult, ScanToken
from pgbridge.split import SplitStatement

__all__ = [
    "AllocationError",
    "BridgeConfig",
    "ConfigError",
    "default_dispatcher",
    "deparse_sync",
    "deparse",
    "Dispatcher",
    "ErrorDetails",
    "fingerprint_sync",
    "fingerprint",
    "format_sql_error",
    "has_sql_details",
    "load_module",
    "LogicError",
    "MalformedResultError",
    "normalize_sync",
    "normalize",
    "NotInitializedError",
    "Operation",
    "parse_plpgsql_sync",
    "parse_plpgsql",
    "parse_protobuf_sync",
    "parse_protobuf",
    "parse_sync",
    "parse",
    "Parser",
    "PgBridgeError",
    "PgVersion",
    "scan_sync",
    "scan",
    "ScanResult",
    "ScanToken",
    "split_sync",
    "split",
    "SplitStatement",
    "SqlError",
    "TypeValidationError",
    "UnsupportedOperationError",
    "UnsupportedVersionError",
    "ValidationError",
    "VERSION_CAPABILITIES",
]
