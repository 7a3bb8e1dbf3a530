"""
WASM Execution Orchestrator

Runs one request through a precompiled guest module with wasmtime.

Per request:
    idle -> compiled -> instantiated -> body_written -> invoked -> result_extracted

- compiled:       the module artifact is loaded once per runner and shared
                  read-only by every execution
- instantiated:   fresh Store + Linker, host bindings bound to a fresh
                  Datastore, `memory` and `entry` exports resolved
- body_written:   request body copied to BODY_OFFSET
- invoked:        entry(RESULT_HEADER_OFFSET, BODY_OFFSET, len(body)); the
                  guest may call back into the bindings any number of times
- result_extracted: (offset, length) header read from offset 0 and the
                  result sliced out of the (possibly grown) memory

Any failure moves the execution to `failed`. Store and instance are released
when the execution is closed, whichever state it ended in.
"""
import asyncio
import logging
import threading
import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, Optional

from wasmtime import Config, Engine, Func, Instance, Linker, Memory, Module, Store, Trap, WasmtimeError

from config import RunnerConfig
from datastore import Datastore, DatastoreError, create_datastore
from metrics import track_compilation, track_invocation

from .abi import BODY_OFFSET, ENTRY_EXPORT, MEMORY_EXPORT, RESULT_HEADER_OFFSET, entry_type
from .bindings import HostBindings
from .errors import (
    BoundaryViolation,
    CompilationError,
    GuestTrapError,
    InstantiationError,
    InvalidStateError,
    SandboxError,
)
from .memory import GuestMemory

logger = logging.getLogger(__name__)


class ExecutionState(str, Enum):
    """Lifecycle of one execution."""
    IDLE = "idle"
    COMPILED = "compiled"
    INSTANTIATED = "instantiated"
    BODY_WRITTEN = "body_written"
    INVOKED = "invoked"
    RESULT_EXTRACTED = "result_extracted"
    FAILED = "failed"


class ExecutionStatus(str, Enum):
    """Outcome reported for an execution."""
    SUCCESS = "success"
    BOUNDARY_VIOLATION = "boundary_violation"
    INSTANTIATION_ERROR = "instantiation_error"
    TRAP = "trap"
    DATASTORE_ERROR = "datastore_error"
    ERROR = "error"


def status_for(error: BaseException) -> ExecutionStatus:
    if isinstance(error, BoundaryViolation):
        return ExecutionStatus.BOUNDARY_VIOLATION
    if isinstance(error, InstantiationError):
        return ExecutionStatus.INSTANTIATION_ERROR
    if isinstance(error, GuestTrapError):
        return ExecutionStatus.TRAP
    if isinstance(error, DatastoreError):
        return ExecutionStatus.DATASTORE_ERROR
    return ExecutionStatus.ERROR


@dataclass
class ExecutionResult:
    """Result from one guest invocation."""
    output: bytes
    status: ExecutionStatus = ExecutionStatus.SUCCESS
    execution_time_ms: float = 0.0
    memory_size: int = 0
    capability_calls: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "output_length": len(self.output),
            "execution_time_ms": round(self.execution_time_ms, 2),
            "memory_size": self.memory_size,
            "capability_calls": self.capability_calls
        }


# Legal predecessor for each forward transition
_TRANSITIONS = {
    ExecutionState.INSTANTIATED: ExecutionState.COMPILED,
    ExecutionState.BODY_WRITTEN: ExecutionState.INSTANTIATED,
    ExecutionState.INVOKED: ExecutionState.BODY_WRITTEN,
    ExecutionState.RESULT_EXTRACTED: ExecutionState.INVOKED,
}


class Execution:
    """
    One request-scoped instantiation of a compiled module.

    Usage:
        with runner.open_execution(datastore) as execution:
            execution.instantiate()
            execution.write_body(b"hello")
            execution.invoke()
            output = execution.extract_result()
    """

    def __init__(
        self,
        engine: Engine,
        module: Module,
        datastore: Datastore,
        loop: Optional[asyncio.AbstractEventLoop] = None,
        fuel_limit: Optional[int] = None
    ):
        self._engine = engine
        self._module = module
        self.bindings = HostBindings(datastore, loop=loop)
        self._fuel_limit = fuel_limit
        self.state = ExecutionState.COMPILED
        self.body_length = 0

        self._store: Optional[Store] = None
        self._instance: Optional[Instance] = None
        self._memory: Optional[Memory] = None
        self._entry: Optional[Func] = None

    def __enter__(self) -> "Execution":
        return self

    def __exit__(self, exc_type, exc, tb):
        if exc is not None:
            self.state = ExecutionState.FAILED
        self.close()
        return False

    def _advance(self, target: ExecutionState) -> None:
        expected = _TRANSITIONS[target]
        if self.state != expected:
            raise InvalidStateError(
                f"cannot move to {target.value} from {self.state.value} (expected {expected.value})"
            )
        self.state = target

    def _fail(self) -> None:
        self.state = ExecutionState.FAILED

    @property
    def memory(self) -> GuestMemory:
        if self._memory is None or self._store is None:
            raise InvalidStateError("execution is not instantiated")
        return GuestMemory.from_wasmtime(self._memory, self._store)

    # =========================================================================
    # Steps
    # =========================================================================

    def instantiate(self) -> None:
        if self.state != ExecutionState.COMPILED:
            raise InvalidStateError(f"cannot instantiate from {self.state.value}")

        store = Store(self._engine)
        if self._fuel_limit is not None:
            store.set_fuel(self._fuel_limit)

        linker = Linker(self._engine)
        self.bindings.define(linker)

        try:
            instance = linker.instantiate(store, self._module)
        except (WasmtimeError, Trap) as e:
            self._fail()
            raise InstantiationError(f"failed to instantiate guest module: {e}") from e

        exports = instance.exports(store)
        memory = exports.get(MEMORY_EXPORT)
        entry = exports.get(ENTRY_EXPORT)
        if not isinstance(memory, Memory):
            self._fail()
            raise InstantiationError(f"guest module does not export a '{MEMORY_EXPORT}' memory")
        if not isinstance(entry, Func):
            self._fail()
            raise InstantiationError(f"guest module does not export an '{ENTRY_EXPORT}' function")

        expected = entry_type()
        actual = entry.type(store)
        if [str(t) for t in actual.params] != [str(t) for t in expected.params] or actual.results:
            self._fail()
            raise InstantiationError(
                f"'{ENTRY_EXPORT}' has signature {[str(t) for t in actual.params]} -> "
                f"{[str(t) for t in actual.results]}, expected (i32, i32, i32) -> ()"
            )

        self._store = store
        self._instance = instance
        self._memory = memory
        self._entry = entry
        self._advance(ExecutionState.INSTANTIATED)

    def write_body(self, body: bytes) -> None:
        if self.state != ExecutionState.INSTANTIATED:
            raise InvalidStateError(f"cannot write body from {self.state.value}")
        try:
            self.memory.write(BODY_OFFSET, body)
        except BoundaryViolation:
            self._fail()
            raise
        self.body_length = len(body)
        self._advance(ExecutionState.BODY_WRITTEN)

    def invoke(self) -> None:
        if self.state != ExecutionState.BODY_WRITTEN:
            raise InvalidStateError(f"cannot invoke from {self.state.value}")
        try:
            self._entry(self._store, RESULT_HEADER_OFFSET, BODY_OFFSET, self.body_length)
        except Exception as e:
            self._fail()
            # Only this execution's own host exception is reported; anything
            # else that surfaced here is a trap from this guest's point of view
            own = self.bindings.error
            if own is not None:
                raise own from None
            raise GuestTrapError(f"guest trapped in '{ENTRY_EXPORT}': {e}") from e
        self._advance(ExecutionState.INVOKED)

    def extract_result(self) -> bytes:
        if self.state != ExecutionState.INVOKED:
            raise InvalidStateError(f"cannot extract result from {self.state.value}")
        try:
            output = self.memory.read_result(RESULT_HEADER_OFFSET)
        except BoundaryViolation:
            self._fail()
            raise
        self._advance(ExecutionState.RESULT_EXTRACTED)
        return output

    def close(self) -> None:
        """Drop the store, instance and memory. Safe to call more than once."""
        self._entry = None
        self._memory = None
        self._instance = None
        self._store = None


class WasmRunner:
    """
    Compiles a guest module once and runs requests through fresh instances.

    The compiled Module is the only state shared between requests.
    """

    def __init__(self, config: Optional[RunnerConfig] = None,
                 datastore_factory: Optional[Callable[[], Datastore]] = None):
        self.config = config or RunnerConfig()
        self._datastore_factory = datastore_factory or (lambda: create_datastore(self.config))

        engine_config = Config()
        if self.config.fuel_limit is not None:
            engine_config.consume_fuel = True
        self.engine = Engine(engine_config)

        self._module: Optional[Module] = None
        self._lock = threading.Lock()

    @property
    def module(self) -> Module:
        return self.compile()

    @property
    def is_compiled(self) -> bool:
        return self._module is not None

    def compile(self) -> Module:
        """Load and compile the module artifact; cached after the first call."""
        if self._module is not None:
            return self._module
        with self._lock:
            if self._module is None:
                path = Path(self.config.module_path)
                try:
                    self._module = Module.from_file(self.engine, str(path))
                except (OSError, WasmtimeError) as e:
                    track_compilation("error")
                    raise CompilationError(f"failed to load guest module {path}: {e}") from e
                track_compilation("success")
                logger.info(f"Compiled guest module {path}")
        return self._module

    def open_execution(self, datastore: Datastore,
                       loop: Optional[asyncio.AbstractEventLoop] = None) -> Execution:
        return Execution(
            self.engine,
            self.compile(),
            datastore,
            loop=loop,
            fuel_limit=self.config.fuel_limit
        )

    def run(self, body: bytes, datastore: Optional[Datastore] = None,
            loop: Optional[asyncio.AbstractEventLoop] = None) -> ExecutionResult:
        """
        Drive one request to completion on the current thread.

        Must not be called from the thread running `loop`; use `execute`
        from async code.
        """
        datastore = datastore if datastore is not None else self._datastore_factory()
        start_time = time.time()
        calls = 0
        try:
            with self.open_execution(datastore, loop=loop) as execution:
                execution.instantiate()
                execution.write_body(body)
                execution.invoke()
                output = execution.extract_result()
                memory_size = execution.memory.size
                calls = execution.bindings.capability_calls
        except (SandboxError, DatastoreError) as e:
            duration = time.time() - start_time
            track_invocation(status_for(e).value, duration)
            logger.error(f"Guest execution failed after {calls} capability calls: {e}")
            raise
        except Exception as e:
            duration = time.time() - start_time
            track_invocation(ExecutionStatus.ERROR.value, duration)
            logger.exception(f"Unexpected error during guest execution: {e}")
            raise

        duration = time.time() - start_time
        track_invocation(ExecutionStatus.SUCCESS.value, duration, len(output))
        return ExecutionResult(
            output=output,
            execution_time_ms=duration * 1000,
            memory_size=memory_size,
            capability_calls=calls
        )

    async def execute(self, body: bytes, datastore: Optional[Datastore] = None) -> ExecutionResult:
        """Run one request on a worker thread; capability calls come back to this loop."""
        loop = asyncio.get_running_loop()
        return await asyncio.to_thread(self.run, bytes(body), datastore, loop)

    async def health_check(self) -> bool:
        """Check that the guest module can be compiled."""
        try:
            await asyncio.to_thread(self.compile)
            return True
        except CompilationError:
            return False


# Global runner instance
_runner: Optional[WasmRunner] = None


def get_runner(config: Optional[RunnerConfig] = None) -> WasmRunner:
    """Get the global runner instance."""
    global _runner
    if _runner is None:
        _runner = WasmRunner(config or RunnerConfig.from_env())
    return _runner


async def execute_in_sandbox(body: bytes, datastore: Optional[Datastore] = None) -> ExecutionResult:
    """
    Convenience function to run one request through the global runner.

    Args:
        body: Raw request body
        datastore: Capability store for this request; a fresh one from the
            runner's configuration when omitted

    Returns:
        ExecutionResult with the guest's output bytes
    """
    return await get_runner().execute(body, datastore)
