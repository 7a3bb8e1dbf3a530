"""
Guest Memory Marshaling

Bounds-checked access into a guest's linear memory plus the header/tail
convention used to hand variable-length results back to the guest.

A BufferHandle is an (offset, length) pair relative to ONE guest memory. It
is never a host pointer and must not be kept past the execution that issued
it.
"""
from dataclasses import dataclass
from typing import Protocol, Union

from wasmtime import Caller, Memory, Store

from .abi import HEADER_SIZE, pack_header, to_u32, unpack_header
from .errors import BoundaryViolation


@dataclass(frozen=True)
class BufferHandle:
    """A byte range inside a guest memory region."""
    base: int
    length: int

    @classmethod
    def from_abi(cls, base: int, length: int) -> "BufferHandle":
        return cls(base=to_u32(base), length=to_u32(length))

    @property
    def end(self) -> int:
        return self.base + self.length

    def to_dict(self) -> dict:
        return {"base": self.base, "length": self.length}


BufferHandle.EMPTY = BufferHandle(0, 0)


class MemoryRegion(Protocol):
    """Raw, unchecked view of a linear memory."""

    def size(self) -> int: ...

    def read(self, start: int, stop: int) -> bytes: ...

    def write(self, data: bytes, start: int) -> None: ...


class WasmtimeRegion:
    """A wasmtime Memory bound to the store (or caller) that owns it."""

    def __init__(self, memory: Memory, context: Union[Store, Caller]):
        self._memory = memory
        self._context = context

    def size(self) -> int:
        return self._memory.data_len(self._context)

    def read(self, start: int, stop: int) -> bytes:
        return bytes(self._memory.read(self._context, start, stop))

    def write(self, data: bytes, start: int) -> None:
        self._memory.write(self._context, data, start)


class BytearrayRegion:
    """Host-side region used to simulate a guest without a wasm runtime."""

    def __init__(self, buffer: Union[bytearray, int]):
        self.buffer = bytearray(buffer) if isinstance(buffer, int) else buffer

    def size(self) -> int:
        return len(self.buffer)

    def read(self, start: int, stop: int) -> bytes:
        return bytes(self.buffer[start:stop])

    def write(self, data: bytes, start: int) -> None:
        self.buffer[start:start + len(data)] = data

    def grow(self, nbytes: int) -> None:
        self.buffer.extend(bytes(nbytes))


class GuestMemory:
    """
    Bounds-checked accessor over one guest memory region.

    Every access performs a single check against the region's CURRENT size
    and either succeeds completely or raises BoundaryViolation. Reads and
    writes are never clamped, truncated or wrapped.
    """

    def __init__(self, region: MemoryRegion):
        self.region = region

    @classmethod
    def from_wasmtime(cls, memory: Memory, context: Union[Store, Caller]) -> "GuestMemory":
        return cls(WasmtimeRegion(memory, context))

    @property
    def size(self) -> int:
        return self.region.size()

    def check(self, handle: BufferHandle) -> BufferHandle:
        size = self.region.size()
        if handle.base < 0 or handle.length < 0:
            raise BoundaryViolation(handle.base, handle.length, size, "negative offset or length")
        # compare before adding so base + length never overflows the check
        if handle.base > size or handle.length > size - handle.base:
            raise BoundaryViolation(handle.base, handle.length, size)
        return handle

    def read(self, handle: BufferHandle) -> bytes:
        self.check(handle)
        if handle.length == 0:
            return b""
        return self.region.read(handle.base, handle.end)

    def write(self, base: int, data: bytes) -> BufferHandle:
        handle = self.check(BufferHandle(base, len(data)))
        if data:
            self.region.write(bytes(data), base)
        return handle

    def read_u32(self, offset: int) -> int:
        return int.from_bytes(self.read(BufferHandle(offset, 4)), "little")

    def read_header(self, offset: int) -> BufferHandle:
        base, length = unpack_header(self.read(BufferHandle(offset, HEADER_SIZE)))
        return BufferHandle(base, length)

    def write_header(self, offset: int, handle: BufferHandle) -> None:
        self.write(offset, pack_header(handle.base, handle.length))

    def write_tail(self, data: bytes) -> BufferHandle:
        """Write `data` so that it ends exactly at the end of memory."""
        # size is read here, right before the write, so growth earlier in
        # the call cannot leave a stale tail offset behind
        size = self.region.size()
        if len(data) > size:
            raise BoundaryViolation(size - len(data), len(data), size, "result larger than guest memory")
        return self.write(size - len(data), data)

    def write_result(self, header_offset: int, data: bytes) -> BufferHandle:
        """
        Single-shot result transfer: payload into the tail, then the
        (offset, length) header at `header_offset`.

        The header location is validated before the payload is written so a
        bad header offset leaves memory untouched. A header that would land
        inside the tail payload is rejected rather than overwriting it.
        """
        self.check(BufferHandle(header_offset, HEADER_SIZE))
        size = self.region.size()
        if data and len(data) <= size and header_offset + HEADER_SIZE > size - len(data):
            raise BoundaryViolation(
                header_offset, HEADER_SIZE, size,
                f"result header at {header_offset} overlaps the {len(data)}-byte result tail"
            )
        handle = self.write_tail(data)
        self.write_header(header_offset, handle)
        return handle

    def read_result(self, header_offset: int) -> bytes:
        return self.read(self.read_header(header_offset))
