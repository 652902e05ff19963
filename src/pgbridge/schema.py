"""Versioned ``pg_query.proto`` schemas.

Each PostgreSQL major version has its own ``pg_query.proto``. The build compiles each one into a serialized
``FileDescriptorSet`` shipped as ``pgbridge/schemas/pg_query_<major>.binpb``. Every version is loaded into a
private :class:`~google.protobuf.descriptor_pool.DescriptorPool`, so the identically named ``pg_query.*``
messages of different versions can live in one process.
"""

from __future__ import annotations

import functools
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

from google.protobuf import descriptor_pb2, descriptor_pool, message_factory

if TYPE_CHECKING:
    from google.protobuf.descriptor import EnumDescriptor
    from google.protobuf.message import Message

    from pgbridge.config import BridgeConfig

logger = logging.getLogger(__name__)

SCHEMA_DIR = Path(__file__).parent / "schemas"
_PACKAGE = "pg_query"


@dataclass(frozen=True)
class Schema:
    """Message classes and enums of one ``pg_query.proto`` version."""

    version: int
    parse_result: type[Message]
    scan_result: type[Message]
    token: EnumDescriptor
    keyword_kind: EnumDescriptor

    def token_name(self, number: int) -> str:
        value = self.token.values_by_number.get(number)
        return value.name if value is not None else "UNKNOWN"

    def keyword_name(self, number: int) -> str:
        value = self.keyword_kind.values_by_number.get(number)
        return value.name if value is not None else "NO_KEYWORD"


def find_schema(version: int, config: BridgeConfig | None = None) -> Path | None:
    """Locate the descriptor set for ``version``: config override first, then the bundled copy."""
    if config is not None and version in config.schema_paths:
        return config.schema_paths[version]
    bundled = SCHEMA_DIR / f"pg_query_{version}.binpb"
    if bundled.is_file():
        return bundled
    return None


@functools.lru_cache(maxsize=None)
def load_schema(path: Path, version: int) -> Schema:
    """Load a serialized ``FileDescriptorSet`` into a private pool.

    Raises:
        OSError: If the file cannot be read.
        KeyError: If the descriptor set does not define the ``pg_query`` messages.
    """
    logger.debug("Loading pg_query %d schema from %s", version, path)
    fds = descriptor_pb2.FileDescriptorSet.FromString(path.read_bytes())
    return schema_from_files(fds, version)


def schema_from_files(fds: descriptor_pb2.FileDescriptorSet, version: int) -> Schema:
    pool = descriptor_pool.DescriptorPool()
    for file_proto in fds.file:
        pool.AddSerializedFile(file_proto.SerializeToString())
    return Schema(
        version=version,
        parse_result=message_factory.GetMessageClass(pool.FindMessageTypeByName(f"{_PACKAGE}.ParseResult")),
        scan_result=message_factory.GetMessageClass(pool.FindMessageTypeByName(f"{_PACKAGE}.ScanResult")),
        token=pool.FindEnumTypeByName(f"{_PACKAGE}.Token"),
        keyword_kind=pool.FindEnumTypeByName(f"{_PACKAGE}.KeywordKind"),
    )
