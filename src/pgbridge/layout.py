"""Declared layouts of the fixed structs libpg_query returns.

Offsets depend only on the engine's pointer width: a 32-bit engine places the parse-result fields at 0/4/8 and the
error fields at 0/4/8/12/16/20, a 64-bit engine at 0/8/16 and 0/8/16/24/28/32. :func:`decode_struct` is the single
reader for all of them.
"""

from __future__ import annotations

import enum
import functools
from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from pgbridge.memory import MemoryBridge

_INT32 = 4

FieldValue = int | str | None


class FieldKind(enum.Enum):
    POINTER = "pointer"
    """An address, decoded as an ``int`` (``0`` when null)."""
    CSTRING = "cstring"
    """A pointer to a NUL-terminated UTF-8 string, decoded as ``str`` or ``None`` when null."""
    INT32 = "int32"


@dataclass(frozen=True)
class Field:
    name: str
    offset: int
    width: int
    kind: FieldKind


@dataclass(frozen=True)
class StructLayout:
    name: str
    fields: tuple[Field, ...]

    @property
    def size(self) -> int:
        last = max(self.fields, key=lambda f: f.offset)
        return last.offset + last.width

    def field(self, name: str) -> Field:
        for f in self.fields:
            if f.name == name:
                return f
        raise KeyError(name)


def _build(name: str, pointer_size: int, members: list[tuple[str, FieldKind]]) -> StructLayout:
    fields = []
    offset = 0
    for field_name, kind in members:
        width = _INT32 if kind is FieldKind.INT32 else pointer_size
        # Natural alignment, as the C compiler lays the struct out.
        offset = (offset + width - 1) // width * width
        fields.append(Field(field_name, offset, width, kind))
        offset += width
    return StructLayout(name, tuple(fields))


@functools.lru_cache(maxsize=None)
def parse_result_layout(pointer_size: int) -> StructLayout:
    """``PgQueryParseResult``: ``[parse_tree][stderr_buffer][error]``."""
    return _build(
        "PgQueryParseResult",
        pointer_size,
        [
            ("parse_tree", FieldKind.POINTER),
            ("stderr_buffer", FieldKind.POINTER),
            ("error", FieldKind.POINTER),
        ],
    )


@functools.lru_cache(maxsize=None)
def error_layout(pointer_size: int) -> StructLayout:
    """``PgQueryError``: ``[message][funcname][filename][lineno][cursorpos][context]``."""
    return _build(
        "PgQueryError",
        pointer_size,
        [
            ("message", FieldKind.CSTRING),
            ("funcname", FieldKind.CSTRING),
            ("filename", FieldKind.CSTRING),
            ("lineno", FieldKind.INT32),
            ("cursorpos", FieldKind.INT32),
            ("context", FieldKind.CSTRING),
        ],
    )


def decode_struct(bridge: MemoryBridge, layout: StructLayout, address: int) -> dict[str, FieldValue]:
    """Read every field of ``layout`` from the struct at ``address``."""
    values: dict[str, FieldValue] = {}
    for f in layout.fields:
        at = address + f.offset
        if f.kind is FieldKind.INT32:
            values[f.name] = bridge.read_int(at, f.width)
            continue
        pointer = bridge.read_pointer(at)
        if f.kind is FieldKind.POINTER:
            values[f.name] = pointer
        else:
            values[f.name] = bridge.read_string(pointer) if pointer else None
    return values
