"""Struct layouts must agree with the C compiler's, for both pointer widths."""

from __future__ import annotations

import ctypes

import pytest

from pgbridge.layout import FieldKind, decode_struct, error_layout, parse_result_layout
from pgbridge.memory import MemoryBridge
from pgbridge.native import PgQueryError, PgQueryParseResult

from .conftest import FakeEngine


class TestOffsets:
    def test_parse_result_32bit(self):
        layout = parse_result_layout(4)
        assert [(f.name, f.offset) for f in layout.fields] == [("parse_tree", 0), ("stderr_buffer", 4), ("error", 8)]
        assert layout.size == 12

    def test_parse_result_64bit(self):
        layout = parse_result_layout(8)
        assert [f.offset for f in layout.fields] == [0, 8, 16]
        assert layout.size == 24

    def test_error_32bit(self):
        layout = error_layout(4)
        assert [f.offset for f in layout.fields] == [0, 4, 8, 12, 16, 20]
        assert layout.size == 24

    def test_error_64bit(self):
        layout = error_layout(8)
        assert [f.offset for f in layout.fields] == [0, 8, 16, 24, 28, 32]
        assert layout.size == 40

    def test_int_fields_are_four_bytes(self):
        layout = error_layout(8)
        assert layout.field("lineno").width == 4
        assert layout.field("cursorpos").kind is FieldKind.INT32
        assert layout.field("context").kind is FieldKind.CSTRING

    def test_unknown_field(self):
        with pytest.raises(KeyError):
            error_layout(4).field("hint")


class TestMatchesCtypes:
    """The host layouts agree with ctypes' view of the C structs."""

    @pytest.mark.parametrize(
        ("layout", "struct"),
        [(error_layout, PgQueryError), (parse_result_layout, PgQueryParseResult)],
        ids=["PgQueryError", "PgQueryParseResult"],
    )
    def test_offsets(self, layout, struct):
        host = layout(ctypes.sizeof(ctypes.c_void_p))
        for field in host.fields:
            assert getattr(struct, field.name).offset == field.offset, field.name
        assert host.size == ctypes.sizeof(struct)


class TestDecodeStruct:
    @pytest.mark.parametrize("pointer_size", [4, 8])
    def test_decodes_every_kind(self, pointer_size: int):
        engine = FakeEngine(pointer_size=pointer_size)
        bridge = MemoryBridge(engine)
        layout = error_layout(pointer_size)
        message = bridge.write_string("boom")
        funcname = bridge.write_string("scanner_yyerror")

        raw = bytearray(layout.size)
        for name, value in [("message", message.address), ("funcname", funcname.address), ("filename", 0)]:
            f = layout.field(name)
            raw[f.offset : f.offset + f.width] = value.to_bytes(f.width, "little")
        for name, value in [("lineno", 7), ("cursorpos", -1)]:
            f = layout.field(name)
            raw[f.offset : f.offset + f.width] = value.to_bytes(f.width, "little", signed=True)
        struct = bridge.write_bytes(bytes(raw))

        assert decode_struct(bridge, layout, struct.address) == {
            "message": "boom",
            "funcname": "scanner_yyerror",
            "filename": None,
            "lineno": 7,
            "cursorpos": -1,
            "context": None,
        }
        for buf in (struct, funcname, message):
            bridge.release(buf)

    def test_pointer_fields_stay_addresses(self):
        engine = FakeEngine()
        bridge = MemoryBridge(engine)
        struct = bridge.write_bytes((1234).to_bytes(4, "little") + bytes(8))
        assert decode_struct(bridge, parse_result_layout(4), struct.address) == {
            "parse_tree": 1234,
            "stderr_buffer": 0,
            "error": 0,
        }
        bridge.release(struct)
