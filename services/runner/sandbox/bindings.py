"""
Host Capability Bindings

The only functions a guest may import: `env.write_key` and `env.read_key`.
Both copy their inputs out of guest memory through GuestMemory, call the
request's Datastore, and (for reads) hand the result back with the
tail/header convention.

Guests run on a worker thread. Datastore operations are coroutines, so each
binding submits the coroutine to the request's event loop and blocks until
it finishes. The guest therefore never has more than one capability call in
flight.
"""
import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional, TypeVar

from wasmtime import Caller, Linker, Memory

from datastore import Datastore
from metrics import track_capability_call

from .abi import IMPORT_MODULE, MEMORY_EXPORT, READ_KEY, WRITE_KEY, read_key_type, to_u32, write_key_type
from .errors import InstantiationError
from .memory import BufferHandle, GuestMemory

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _lossy(data: bytes) -> str:
    return data.decode("utf-8", errors="replace")


class HostBindings:
    """
    Capability functions bound to one Datastore for one execution.

    Usage:
        bindings = HostBindings(datastore, loop=asyncio.get_running_loop())
        bindings.define(linker)
    """

    def __init__(self, datastore: Datastore, loop: Optional[asyncio.AbstractEventLoop] = None):
        self.datastore = datastore
        self._loop = loop
        self.backend = getattr(datastore, "backend", type(datastore).__name__)
        self.put_calls = 0
        self.get_calls = 0
        # First exception raised by a host function during this execution
        self.error: Optional[Exception] = None

    @property
    def capability_calls(self) -> int:
        return self.put_calls + self.get_calls

    def _await(self, coro: Awaitable[T]) -> T:
        """Drive a datastore coroutine to completion from the guest thread."""
        if self._loop is None:
            return asyncio.run(coro)
        return asyncio.run_coroutine_threadsafe(coro, self._loop).result()

    def _guarded(self, call: Callable[..., None], caller: Caller, *args: Any) -> None:
        """
        Run a capability call and remember what it raised.

        wasmtime hands host exceptions back through one process-wide slot,
        which concurrent executions on other threads can consume. The copy
        kept here is what the execution reports.
        """
        try:
            call(self.caller_memory(caller), *args)
        except Exception as e:
            if self.error is None:
                self.error = e
            raise

    # =========================================================================
    # Capability functions
    # =========================================================================

    def write_key(self, memory: GuestMemory, key_base: int, key_len: int,
                  value_base: int, value_len: int) -> None:
        key = memory.read(BufferHandle.from_abi(key_base, key_len))
        value = memory.read(BufferHandle.from_abi(value_base, value_len))

        logger.debug(f"writing {_lossy(key)!r} {_lossy(value)!r}")
        self._await(self.datastore.put(key, value))
        self.put_calls += 1
        track_capability_call(WRITE_KEY, self.backend)

    def read_key(self, memory: GuestMemory, result_header_offset: int,
                 key_base: int, key_len: int) -> None:
        key = memory.read(BufferHandle.from_abi(key_base, key_len))

        result = self._await(self.datastore.get(key))
        if result is None:
            result = b""

        # the tail offset is computed inside write_result, after the await
        memory.write_result(to_u32(result_header_offset), result)
        logger.debug(f"reading {_lossy(key)!r} {_lossy(result)!r}")
        self.get_calls += 1
        track_capability_call(READ_KEY, self.backend)

    # =========================================================================
    # wasmtime wiring
    # =========================================================================

    @staticmethod
    def caller_memory(caller: Caller) -> GuestMemory:
        memory = caller.get(MEMORY_EXPORT)
        if not isinstance(memory, Memory):
            raise InstantiationError(f"guest does not export a '{MEMORY_EXPORT}' memory")
        return GuestMemory.from_wasmtime(memory, caller)

    def define(self, linker: Linker) -> None:
        """Register both capability functions as `env` imports."""

        def write_key(caller: Caller, key_base: int, key_len: int, value_base: int, value_len: int):
            self._guarded(self.write_key, caller, key_base, key_len, value_base, value_len)

        def read_key(caller: Caller, result_header_offset: int, key_base: int, key_len: int):
            self._guarded(self.read_key, caller, result_header_offset, key_base, key_len)

        linker.define_func(IMPORT_MODULE, WRITE_KEY, write_key_type(), write_key, access_caller=True)
        linker.define_func(IMPORT_MODULE, READ_KEY, read_key_type(), read_key, access_caller=True)
