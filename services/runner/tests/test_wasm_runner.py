"""
Tests for the WASM execution orchestrator

Guests are written in WAT against the guest library and compiled with
wasmtime in fixtures.
"""
import asyncio
from concurrent.futures import ThreadPoolExecutor

import pytest
from wasmtime import Trap

from datastore import DatastoreError, InMemoryDatastore
from metrics import REGISTRY
from sandbox import (
    BoundaryViolation,
    CompilationError,
    ExecutionState,
    ExecutionStatus,
    GuestTrapError,
    InstantiationError,
    InvalidStateError,
    SandboxError,
)

PAGE = 65536

ECHO_32_WAT = """
  (func (export "entry") (param $result i32) (param $body i32) (param $body_len i32)
    (call $set_result (local.get $result) (local.get $body) (i32.const 32)))
"""

GROW_THEN_GET_WAT = """
  (func (export "entry") (param $result i32) (param $body i32) (param $body_len i32)
    (drop (memory.grow (i32.const 1)))
    (call $store_get (local.get $result) (local.get $body) (local.get $body_len)))
"""

OUT_OF_BOUNDS_PUT_WAT = """
  (func (export "entry") (param i32 i32 i32)
    (call $store_put (i32.const 65530) (i32.const 100) (i32.const 0) (i32.const 0)))
"""

BAD_RESULT_HEADER_WAT = """
  (func (export "entry") (param $result i32) (param i32 i32)
    (call $set_result (local.get $result) (i32.const 65000) (i32.const 1000)))
"""

TRAP_WAT = """
  (func (export "entry") (param i32 i32 i32)
    unreachable)
"""

SPIN_WAT = """
  (func (export "entry") (param i32 i32 i32)
    (loop $spin (br $spin)))
"""

PUT_BODY_WAT = """
  (func (export "entry") (param $result i32) (param $body i32) (param $body_len i32)
    (call $store_put (local.get $body) (local.get $body_len) (local.get $body) (local.get $body_len)))
"""


class FailingDatastore:
    backend = "failing"

    async def put(self, key, value):
        raise DatastoreError("put", self.backend, "throttled")

    async def get(self, key):
        raise DatastoreError("get", self.backend, "throttled")


class ExplodingDatastore:
    backend = "exploding"

    async def put(self, key, value):
        raise RuntimeError("connection pool closed")

    async def get(self, key):
        raise RuntimeError("connection pool closed")


class TestEndToEnd:

    def test_example_guest(self, example_runner, seeded_store):
        result = example_runner.run(b"hello", seeded_store)

        assert result.output == b"bar"
        assert result.status == ExecutionStatus.SUCCESS
        assert result.capability_calls == 3
        assert result.memory_size == PAGE
        assert seeded_store.snapshot() == {b"foo": b"bar", b"world": b"bar"}

    @pytest.mark.asyncio
    async def test_execute_async(self, example_runner, seeded_store):
        result = await example_runner.execute(b"hello", seeded_store)
        assert result.output == b"bar"
        assert seeded_store.snapshot()[b"world"] == b"bar"

    def test_missing_key_returns_empty_result(self, example_runner):
        store = InMemoryDatastore()
        result = example_runner.run(b"hello", store)
        assert result.output == b""
        assert store.snapshot() == {b"world": b""}

    def test_default_datastore_uses_configured_seed(self, example_module_path, make_runner):
        runner = make_runner(example_module_path, memory_seed={b"foo": b"configured"})
        assert runner.run(b"hello").output == b"configured"

    def test_empty_body(self, write_module, make_runner):
        store = InMemoryDatastore()
        runner = make_runner(write_module(PUT_BODY_WAT))
        runner.run(b"", store)
        assert store.snapshot() == {b"": b""}

    def test_result_after_memory_growth(self, write_module, make_runner, seeded_store):
        runner = make_runner(write_module(GROW_THEN_GET_WAT))
        result = runner.run(b"foo", seeded_store)
        assert result.output == b"bar"
        assert result.memory_size == 2 * PAGE

    def test_to_dict(self, example_runner, seeded_store):
        data = example_runner.run(b"hello", seeded_store).to_dict()
        assert data["status"] == "success"
        assert data["output_length"] == 3


class TestIsolation:

    def test_module_is_compiled_once(self, example_runner):
        assert not example_runner.is_compiled
        first = example_runner.compile()
        assert example_runner.compile() is first
        assert example_runner.module is first

    def test_instances_do_not_share_memory(self, write_module, make_runner):
        runner = make_runner(write_module(ECHO_32_WAT))
        first = runner.run(b"x" * 32, InMemoryDatastore())
        second = runner.run(b"y", InMemoryDatastore())

        assert first.output == b"x" * 32
        assert second.output == b"y" + bytes(31)

    def test_requests_do_not_share_stores(self, example_runner):
        first, second = InMemoryDatastore({b"foo": b"1"}), InMemoryDatastore({b"foo": b"2"})
        assert example_runner.run(b"a", first).output == b"1"
        assert example_runner.run(b"b", second).output == b"2"
        assert first.snapshot()[b"world"] == b"1"
        assert second.snapshot()[b"world"] == b"2"


class TestFatalErrors:

    def test_guest_out_of_bounds_buffer(self, write_module, make_runner):
        store = InMemoryDatastore()
        runner = make_runner(write_module(OUT_OF_BOUNDS_PUT_WAT))
        with pytest.raises(BoundaryViolation):
            runner.run(b"", store)
        assert len(store) == 0

    def test_result_header_out_of_bounds(self, write_module, make_runner):
        runner = make_runner(write_module(BAD_RESULT_HEADER_WAT))
        with pytest.raises(BoundaryViolation):
            runner.run(b"", InMemoryDatastore())

    def test_body_larger_than_memory(self, example_runner, seeded_store):
        with pytest.raises(BoundaryViolation):
            example_runner.run(b"x" * PAGE, seeded_store)
        assert b"world" not in seeded_store.snapshot()

    def test_trap(self, write_module, make_runner):
        runner = make_runner(write_module(TRAP_WAT))
        with pytest.raises(GuestTrapError):
            runner.run(b"", InMemoryDatastore())

    def test_fuel_exhaustion(self, write_module, make_runner):
        runner = make_runner(write_module(SPIN_WAT), fuel_limit=10_000)
        with pytest.raises(GuestTrapError):
            runner.run(b"", InMemoryDatastore())

    def test_datastore_failure(self, example_runner):
        with pytest.raises(DatastoreError):
            example_runner.run(b"hello", FailingDatastore())

    @pytest.mark.asyncio
    async def test_datastore_failure_async(self, example_runner):
        with pytest.raises(DatastoreError):
            await example_runner.execute(b"hello", FailingDatastore())

    def test_missing_module_file(self, tmp_path, make_runner):
        runner = make_runner(str(tmp_path / "missing.wasm"))
        with pytest.raises(CompilationError):
            runner.run(b"", InMemoryDatastore())

    def test_invalid_module_file(self, tmp_path, make_runner):
        path = tmp_path / "garbage.wasm"
        path.write_bytes(b"not wasm at all")
        with pytest.raises(CompilationError):
            make_runner(str(path)).compile()

    @pytest.mark.asyncio
    async def test_health_check(self, example_runner, tmp_path, make_runner):
        assert await example_runner.health_check()
        assert not await make_runner(str(tmp_path / "missing.wasm")).health_check()

    def test_unexpected_host_error_is_counted(self, example_runner):
        before = REGISTRY.get_sample_value("runner_invocations_total", {"status": "error"}) or 0
        with pytest.raises(RuntimeError):
            example_runner.run(b"hello", ExplodingDatastore())
        assert REGISTRY.get_sample_value("runner_invocations_total", {"status": "error"}) == before + 1

    def test_host_error_is_kept_on_the_bindings(self, write_module, make_runner):
        runner = make_runner(write_module(OUT_OF_BOUNDS_PUT_WAT))
        execution = runner.open_execution(InMemoryDatastore())
        with pytest.raises(BoundaryViolation) as exc_info:
            with execution:
                execution.instantiate()
                execution.write_body(b"")
                execution.invoke()
        assert execution.bindings.error is exc_info.value


class TestConcurrentExecutions:
    """Requests running at the same time never see each other's outcome."""

    def test_recorded_host_error_wins_over_surfaced_exception(self, example_runner, seeded_store):
        own = DatastoreError("get", "memory", "throttled")
        with example_runner.open_execution(seeded_store) as execution:
            execution.instantiate()
            execution.write_body(b"hello")
            execution.bindings.error = own

            def entry(*args):
                raise Trap("python exception")

            execution._entry = entry
            with pytest.raises(DatastoreError) as exc_info:
                execution.invoke()
        assert exc_info.value is own

    def test_foreign_host_error_is_reported_as_trap(self, example_runner, seeded_store):
        with example_runner.open_execution(seeded_store) as execution:
            execution.instantiate()
            execution.write_body(b"hello")

            def entry(*args):
                raise BoundaryViolation(0, 100, 16)

            execution._entry = entry
            with pytest.raises(GuestTrapError):
                execution.invoke()
            assert execution.state == ExecutionState.FAILED

    def test_errors_stay_with_their_own_thread(self, write_module, make_runner):
        trap_runner = make_runner(write_module(TRAP_WAT))
        oob_runner = make_runner(write_module(OUT_OF_BOUNDS_PUT_WAT))

        def collect(runner, rounds):
            seen = set()
            for _ in range(rounds):
                try:
                    runner.run(b"", InMemoryDatastore())
                except SandboxError as e:
                    seen.add(type(e))
            return seen

        with ThreadPoolExecutor(max_workers=2) as pool:
            traps = pool.submit(collect, trap_runner, 300)
            violations = pool.submit(collect, oob_runner, 300)
            assert traps.result() == {GuestTrapError}
            assert violations.result() == {BoundaryViolation}

    @pytest.mark.asyncio
    async def test_gathered_requests_keep_their_own_stores(self, example_runner):
        stores = [InMemoryDatastore({b"foo": b"%d" % i}) for i in range(8)]
        results = await asyncio.gather(*(example_runner.execute(b"hello", store) for store in stores))

        assert [result.output for result in results] == [b"%d" % i for i in range(8)]
        for i, store in enumerate(stores):
            assert store.snapshot() == {b"foo": b"%d" % i, b"world": b"%d" % i}

    @pytest.mark.asyncio
    async def test_gathered_failures_keep_their_own_errors(self, example_runner, write_module, make_runner):
        trap_runner = make_runner(write_module(TRAP_WAT))
        oob_runner = make_runner(write_module(OUT_OF_BOUNDS_PUT_WAT))

        requests = []
        for i in range(10):
            requests += [
                example_runner.execute(b"hello", InMemoryDatastore({b"foo": b"%d" % i})),
                example_runner.execute(b"hello", FailingDatastore()),
                trap_runner.execute(b"", InMemoryDatastore()),
                oob_runner.execute(b"", InMemoryDatastore()),
            ]
        outcomes = await asyncio.gather(*requests, return_exceptions=True)

        for i in range(10):
            ok, failing, trapped, violated = outcomes[4 * i:4 * i + 4]
            assert ok.output == b"%d" % i
            assert isinstance(failing, DatastoreError)
            assert isinstance(trapped, GuestTrapError)
            assert isinstance(violated, BoundaryViolation)


class TestInstantiation:

    def test_missing_entry_export(self, write_module, make_runner):
        runner = make_runner(write_module(""))
        with pytest.raises(InstantiationError):
            runner.run(b"", InMemoryDatastore())

    def test_missing_memory_export(self, write_module, make_runner):
        runner = make_runner(write_module(TRAP_WAT, export_memory=False))
        with pytest.raises(InstantiationError):
            runner.run(b"", InMemoryDatastore())

    def test_entry_signature_mismatch(self, write_module, make_runner):
        runner = make_runner(write_module('(func (export "entry") (param i32 i32))'))
        with pytest.raises(InstantiationError):
            runner.run(b"", InMemoryDatastore())

    def test_unknown_import(self, write_module, make_runner):
        wat = """
        (module
          (import "env" "delete_key" (func (param i32 i32)))
          (memory (export "memory") 1)
          (func (export "entry") (param i32 i32 i32)))
        """
        runner = make_runner(write_module(wat, raw=True))
        with pytest.raises(InstantiationError):
            runner.run(b"", InMemoryDatastore())

    def test_import_signature_mismatch(self, write_module, make_runner):
        wat = """
        (module
          (import "env" "write_key" (func (param i32)))
          (memory (export "memory") 1)
          (func (export "entry") (param i32 i32 i32)))
        """
        runner = make_runner(write_module(wat, raw=True))
        with pytest.raises(InstantiationError):
            runner.run(b"", InMemoryDatastore())


class TestExecutionStates:

    def test_full_walk(self, example_runner, seeded_store):
        with example_runner.open_execution(seeded_store) as execution:
            assert execution.state == ExecutionState.COMPILED
            execution.instantiate()
            assert execution.state == ExecutionState.INSTANTIATED
            execution.write_body(b"hello")
            assert execution.state == ExecutionState.BODY_WRITTEN
            execution.invoke()
            assert execution.state == ExecutionState.INVOKED
            assert execution.extract_result() == b"bar"
            assert execution.state == ExecutionState.RESULT_EXTRACTED

    def test_out_of_order_step(self, example_runner, seeded_store):
        with example_runner.open_execution(seeded_store) as execution:
            execution.instantiate()
            with pytest.raises(InvalidStateError):
                execution.invoke()

    def test_resources_released_on_failure(self, write_module, make_runner):
        runner = make_runner(write_module(TRAP_WAT))
        execution = runner.open_execution(InMemoryDatastore())
        with pytest.raises(SandboxError):
            with execution:
                execution.instantiate()
                execution.write_body(b"")
                execution.invoke()
        assert execution.state == ExecutionState.FAILED
        with pytest.raises(InvalidStateError):
            execution.memory
