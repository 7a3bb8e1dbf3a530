"""
Guest ABI

The binary contract shared by the host and every guest module. Changing any
value here breaks compatibility with already-built guests.

Memory layout at invocation time:
- [0, 4)   result offset  (u32, little-endian), written by the guest
- [4, 8)   result length  (u32, little-endian), written by the guest
- [8, ...) inbound request body, written by the host before `entry`
- tail     scratch area for host-produced results; a result of N bytes is
           written at `memory_size - N` and located through an 8-byte header
           at an offset chosen by the guest.
           The header must not overlap the tail payload; a header that would
           is rejected as a boundary violation.
"""
import struct

from wasmtime import FuncType, ValType

RESULT_HEADER_OFFSET = 0
BODY_OFFSET = 8
HEADER_SIZE = 8
HEADER_FORMAT = "<II"

U32_MASK = 0xFFFFFFFF

IMPORT_MODULE = "env"
WRITE_KEY = "write_key"
READ_KEY = "read_key"

MEMORY_EXPORT = "memory"
ENTRY_EXPORT = "entry"


def pack_header(offset: int, length: int) -> bytes:
    return struct.pack(HEADER_FORMAT, offset, length)


def unpack_header(raw: bytes) -> tuple:
    return struct.unpack(HEADER_FORMAT, raw)


def to_u32(value: int) -> int:
    """Reinterpret a wasm i32 (delivered signed by wasmtime) as u32."""
    return value & U32_MASK


def write_key_type() -> FuncType:
    # (key_base, key_len, value_base, value_len) -> ()
    return FuncType([ValType.i32()] * 4, [])


def read_key_type() -> FuncType:
    # (result_header_offset, key_base, key_len) -> ()
    return FuncType([ValType.i32()] * 3, [])


def entry_type() -> FuncType:
    # (result_header_offset, body_offset, body_length) -> ()
    return FuncType([ValType.i32()] * 3, [])
