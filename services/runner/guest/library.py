"""
Guest Library (Python)

The guest's side of the calling convention, for guests simulated on the host
against a GuestMemory. Arguments are staged in a scratch area, passed to the
imports as (offset, length) pairs, and results are located through the
8-byte header the host writes.
"""
from typing import Callable, Optional, TypeVar, Union

from sandbox.abi import HEADER_SIZE, RESULT_HEADER_OFFSET
from sandbox.memory import BufferHandle, GuestMemory

R = TypeVar("R")

Bytes = Union[bytes, BufferHandle]

WriteKey = Callable[[int, int, int, int], None]
ReadKey = Callable[[int, int, int], None]


class GuestLibrary:
    """
    Typed wrappers over `write_key`/`read_key`.

    Usage:
        guest = GuestLibrary(memory, write_key, read_key)
        guest.store_put(b"world", b"hello")
        length = guest.store_get(b"world", len)
    """

    def __init__(
        self,
        memory: GuestMemory,
        write_key: WriteKey,
        read_key: ReadKey,
        scratch_base: int = 32768,
        scratch_size: int = 16384
    ):
        self.memory = memory
        self._write_key = write_key
        self._read_key = read_key
        self.scratch_base = scratch_base
        self.scratch_size = scratch_size

    def _stage(self, *values: Bytes) -> list:
        """Copy byte arguments into scratch; handles pass through untouched."""
        cursor = self.scratch_base + HEADER_SIZE
        limit = self.scratch_base + self.scratch_size
        handles = []
        for value in values:
            if isinstance(value, BufferHandle):
                handles.append(value)
                continue
            if cursor + len(value) > limit:
                raise ValueError(f"{len(value)} bytes do not fit in guest scratch space")
            handles.append(self.memory.write(cursor, value))
            cursor += len(value)
        return handles

    def store_put(self, key: Bytes, value: Bytes) -> None:
        key_handle, value_handle = self._stage(key, value)
        self._write_key(key_handle.base, key_handle.length, value_handle.base, value_handle.length)

    def store_get_handle(self, key: Bytes) -> BufferHandle:
        """
        Look up `key` and return where the host put the value.

        The handle is only good until the next capability call or memory
        growth.
        """
        (key_handle,) = self._stage(key)
        header = self.scratch_base
        self._read_key(header, key_handle.base, key_handle.length)
        return self.memory.read_header(header)

    def store_get(self, key: Bytes, consume: Callable[[bytes], R]) -> R:
        """Look up `key` and pass the value (b"" when absent) to `consume`."""
        return consume(self.memory.read(self.store_get_handle(key)))

    def set_result(self, handle: BufferHandle, header_offset: int = RESULT_HEADER_OFFSET) -> None:
        self.memory.write_header(header_offset, handle)


def example_entry(guest: GuestLibrary, result_header_offset: int,
                  body_offset: int, body_length: int) -> Optional[BufferHandle]:
    """The illustrative guest program, in Python."""
    guest.store_put(b"world", BufferHandle(body_offset, body_length))
    value = guest.store_get_handle(b"foo")
    guest.store_put(b"world", value)
    guest.set_result(value, result_header_offset)
    return value
