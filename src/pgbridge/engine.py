"""The primitive surface every parsing engine exposes to the marshaling layer.

An engine owns a private memory space. Callers never see Python objects cross the boundary: they allocate
engine memory, write bytes into it, invoke an :class:`Entry` with integer arguments (addresses and lengths), read
bytes back, and free what they allocated. :class:`~pgbridge.native.NativeEngine` implements this over libpg_query;
the test suite implements it over a ``bytearray``.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from collections.abc import Set


class Entry(enum.Enum):
    """Engine entry points.

    ``PARSE`` returns the address of a parse-result struct that must be released with ``FREE_RESULT``. Every other
    producing entry returns the address of a text or byte buffer released with ``FREE_STRING``.
    """

    PARSE = "parse"
    PARSE_PROTOBUF = "parse_protobuf"
    DEPARSE = "deparse"
    FINGERPRINT = "fingerprint"
    NORMALIZE = "normalize"
    SCAN = "scan"
    PARSE_PLPGSQL = "parse_plpgsql"
    SPLIT = "split"
    FREE_RESULT = "free_result"
    FREE_STRING = "free_string"


@dataclass
class EngineStats:
    """Allocation ledger of one engine.

    ``allocations``/``frees`` count host buffers requested through :meth:`EngineHandle.allocate`;
    ``results``/``released`` count engine-owned results handed out by producing entry points and returned through
    the free entries.
    """

    allocations: int = 0
    frees: int = 0
    results: int = 0
    released: int = 0

    @property
    def balanced(self) -> bool:
        return self.allocations == self.frees and self.results == self.released


class EngineHandle(Protocol):
    """Raw capability set of one loaded engine."""

    #: Width of a pointer inside engine memory, in bytes.
    pointer_size: int
    #: Byte order of integers inside engine memory (``"little"`` or ``"big"``).
    byteorder: str
    stats: EngineStats

    @property
    def entries(self) -> Set[Entry]:
        """Entry points this engine provides."""
        ...

    def allocate(self, size: int) -> int:
        """Reserve ``size`` bytes and return their address, or ``0`` when out of memory."""
        ...

    def free(self, address: int) -> None: ...

    def read_bytes(self, address: int, length: int) -> bytes: ...

    def write_bytes(self, address: int, data: bytes) -> None: ...

    def string_length(self, address: int) -> int:
        """Return the number of bytes before the NUL terminator at ``address``."""
        ...

    def invoke(self, entry: Entry, *args: int) -> int:
        """Call an entry point and return the address it produced (``0`` for the free entries)."""
        ...
