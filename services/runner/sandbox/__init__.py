"""
Sandbox Package - Guest Module Execution

Runs precompiled WASM guests per request with a key-value capability.
"""

from .abi import BODY_OFFSET, HEADER_SIZE, IMPORT_MODULE, RESULT_HEADER_OFFSET
from .bindings import HostBindings
from .errors import (
    SandboxError,
    BoundaryViolation,
    CompilationError,
    InstantiationError,
    GuestTrapError,
    InvalidStateError
)
from .memory import BufferHandle, BytearrayRegion, GuestMemory, MemoryRegion, WasmtimeRegion
from .wasm_runner import (
    ExecutionState,
    ExecutionStatus,
    ExecutionResult,
    Execution,
    WasmRunner,
    get_runner,
    execute_in_sandbox
)


__all__ = [
    "BODY_OFFSET",
    "HEADER_SIZE",
    "IMPORT_MODULE",
    "RESULT_HEADER_OFFSET",
    "HostBindings",
    "SandboxError",
    "BoundaryViolation",
    "CompilationError",
    "InstantiationError",
    "GuestTrapError",
    "InvalidStateError",
    "BufferHandle",
    "BytearrayRegion",
    "GuestMemory",
    "MemoryRegion",
    "WasmtimeRegion",
    "ExecutionState",
    "ExecutionStatus",
    "ExecutionResult",
    "Execution",
    "WasmRunner",
    "get_runner",
    "execute_in_sandbox"
]
