"""Moving strings and byte payloads in and out of engine memory.

:class:`MemoryBridge` is the only component that allocates or frees inside an engine. Its context managers pair
every allocation with its release so that an early return or a raised exception cannot leak engine memory.
"""

from __future__ import annotations

import contextlib
from dataclasses import dataclass
from typing import TYPE_CHECKING

from pgbridge.engine import Entry
from pgbridge.errors import AllocationError, TypeValidationError

if TYPE_CHECKING:
    from collections.abc import Iterator

    from pgbridge.engine import EngineHandle

_INT32_SIZE = 4


@dataclass(frozen=True)
class NativeBuffer:
    """An ``(address, length)`` range of engine memory owned by the bridge until released."""

    address: int
    length: int


def _check_address(address: object) -> int:
    if isinstance(address, bool) or not isinstance(address, int):
        raise TypeValidationError(f"Expected an engine address, got {type(address).__name__}")
    if address <= 0:
        raise TypeValidationError(f"Invalid engine address: {address}")
    return address


class MemoryBridge:
    """Encode host values into an engine and decode them back out."""

    def __init__(self, engine: EngineHandle) -> None:
        self.engine = engine

    # -- Raw transfers --------------------------------------------------------

    def allocate(self, size: int) -> NativeBuffer:
        """Reserve ``size`` bytes of engine memory.

        Raises:
            AllocationError: If the engine returns a null address. Nothing was allocated, so nothing is freed.
        """
        address = self.engine.allocate(size)
        if not address:
            raise AllocationError(f"Engine could not allocate {size} bytes")
        return NativeBuffer(address, size)

    def release(self, buffer: NativeBuffer) -> None:
        self.engine.free(buffer.address)

    def write_string(self, value: str) -> NativeBuffer:
        """Copy ``value`` into engine memory as a NUL-terminated UTF-8 string.

        The buffer is ``len(value.encode("utf-8")) + 1`` bytes long. If the write fails the allocation is released
        before the error propagates.

        Raises:
            TypeValidationError: If ``value`` is not a ``str``, is not encodable as UTF-8 (lone surrogates), or
                contains a NUL character the engine would read as the end of the string.
        """
        if not isinstance(value, str):
            raise TypeValidationError(f"Expected a string, got {type(value).__name__}")
        if "\x00" in value:
            raise TypeValidationError(f"String contains a NUL character at index {value.index(chr(0))}")
        try:
            encoded = value.encode("utf-8")
        except UnicodeEncodeError as e:
            raise TypeValidationError(f"String is not valid UTF-8: {e.reason} at index {e.start}") from e
        return self._write(encoded + b"\x00")

    def write_bytes(self, data: bytes) -> NativeBuffer:
        """Copy ``data`` into engine memory verbatim (no terminator)."""
        if not isinstance(data, (bytes, bytearray, memoryview)):
            raise TypeValidationError(f"Expected bytes, got {type(data).__name__}")
        return self._write(bytes(data))

    def _write(self, data: bytes) -> NativeBuffer:
        # malloc(0) may legally return NULL; always ask for at least one byte.
        buffer = self.allocate(max(len(data), 1))
        try:
            self.engine.write_bytes(buffer.address, data)
        except BaseException:
            self.release(buffer)
            raise
        return NativeBuffer(buffer.address, len(data))

    def read_string(self, address: int) -> str:
        """Decode the NUL-terminated UTF-8 string at ``address``.

        Raises:
            TypeValidationError: If ``address`` is not a non-null integer address.
        """
        address = _check_address(address)
        length = self.engine.string_length(address)
        return self.engine.read_bytes(address, length).decode("utf-8")

    def read_bytes(self, address: int, length: int) -> bytes:
        """Copy ``length`` bytes starting at ``address`` out of engine memory."""
        address = _check_address(address)
        if length < 0:
            raise TypeValidationError(f"Invalid length: {length}")
        return self.engine.read_bytes(address, length)

    def read_int(self, address: int, width: int = _INT32_SIZE, *, signed: bool = True) -> int:
        """Decode an integer of ``width`` bytes stored in engine byte order."""
        raw = self.engine.read_bytes(address, width)
        return int.from_bytes(raw, self.engine.byteorder, signed=signed)

    def read_pointer(self, address: int) -> int:
        return self.read_int(address, self.engine.pointer_size, signed=False)

    # -- Scoped acquisition ---------------------------------------------------

    @contextlib.contextmanager
    def string_argument(self, value: str) -> Iterator[NativeBuffer]:
        """Yield ``value`` written into engine memory; free it on exit."""
        buffer = self.write_string(value)
        try:
            yield buffer
        finally:
            self.release(buffer)

    @contextlib.contextmanager
    def bytes_argument(self, data: bytes) -> Iterator[NativeBuffer]:
        """Yield ``data`` written into engine memory; free it on exit."""
        buffer = self.write_bytes(data)
        try:
            yield buffer
        finally:
            self.release(buffer)

    @contextlib.contextmanager
    def int_cell(self) -> Iterator[NativeBuffer]:
        """Yield a zeroed int32 out-parameter; free it on exit."""
        buffer = self._write(bytes(_INT32_SIZE))
        try:
            yield buffer
        finally:
            self.release(buffer)

    @contextlib.contextmanager
    def result(self, entry: Entry, *args: int) -> Iterator[int]:
        """Invoke a producing entry point and yield the address it returned.

        On exit the result goes back to the engine through the matching free entry (``FREE_RESULT`` for parse
        structs, ``FREE_STRING`` otherwise). A null result is yielded as ``0`` and nothing is freed.
        """
        address = self.engine.invoke(entry, *args)
        free_entry = Entry.FREE_RESULT if entry is Entry.PARSE else Entry.FREE_STRING
        try:
            yield address
        finally:
            if address:
                self.engine.invoke(free_entry, address)
