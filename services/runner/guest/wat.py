"""
Guest Library (WebAssembly text)

Guest-side helpers for modules written directly in WAT, plus the
illustrative entry point. Production guests are built elsewhere and loaded
as precompiled binaries; these sources are used for examples and tests.

Library functions available to an entry point:
- $store_put (key, key_len, value, value_len)
- $store_get (header, key, key_len)   result (offset, length) at header/header+4
- $set_result (header, offset, length)
"""
from typing import Iterable, Tuple

from wasmtime import wat2wasm

from sandbox.abi import ENTRY_EXPORT, IMPORT_MODULE, MEMORY_EXPORT, READ_KEY, WRITE_KEY

# Constants and scratch live well above the request body at offset 8 and
# well below the result tail at the end of the first page.
DATA_BASE = 32768
GET_HEADER = DATA_BASE + 256

GUEST_IMPORTS_WAT = f"""
  (import "{IMPORT_MODULE}" "{WRITE_KEY}" (func $write_key (param i32 i32 i32 i32)))
  (import "{IMPORT_MODULE}" "{READ_KEY}" (func $read_key (param i32 i32 i32)))
"""

GUEST_LIBRARY_WAT = """
  (func $store_put (param $key i32) (param $key_len i32) (param $value i32) (param $value_len i32)
    (call $write_key (local.get $key) (local.get $key_len) (local.get $value) (local.get $value_len)))

  (func $store_get (param $header i32) (param $key i32) (param $key_len i32)
    (call $read_key (local.get $header) (local.get $key) (local.get $key_len)))

  (func $set_result (param $header i32) (param $offset i32) (param $length i32)
    (i32.store (local.get $header) (local.get $offset))
    (i32.store offset=4 (local.get $header) (local.get $length)))
"""

# body -> put("world", body); get("foo"); put("world", value); return value
EXAMPLE_DATA = ((DATA_BASE, b"world"), (DATA_BASE + 16, b"foo"))

EXAMPLE_ENTRY_WAT = f"""
  (func (export "{ENTRY_EXPORT}") (param $result i32) (param $body i32) (param $body_len i32)
    (call $store_put (i32.const {DATA_BASE}) (i32.const 5) (local.get $body) (local.get $body_len))
    (call $store_get (i32.const {GET_HEADER}) (i32.const {DATA_BASE + 16}) (i32.const 3))
    (call $store_put
      (i32.const {DATA_BASE}) (i32.const 5)
      (i32.load (i32.const {GET_HEADER})) (i32.load (i32.const {GET_HEADER + 4})))
    (call $set_result
      (local.get $result)
      (i32.load (i32.const {GET_HEADER})) (i32.load (i32.const {GET_HEADER + 4}))))
"""


def wat_bytes(data: bytes) -> str:
    """Escape arbitrary bytes for a WAT string literal."""
    return "".join(f"\\{b:02x}" for b in data)


def build_module_wat(
    entry_wat: str,
    data: Iterable[Tuple[int, bytes]] = (),
    memory_pages: int = 1,
    imports: bool = True,
    export_memory: bool = True
) -> str:
    """
    Assemble a complete guest module.

    Args:
        entry_wat: function definitions, normally including the `entry` export
        data: (offset, bytes) pairs placed as active data segments
        memory_pages: initial memory size in 64KiB pages
        imports: include the capability imports and library
        export_memory: export the memory as `memory`
    """
    export = f'(export "{MEMORY_EXPORT}") ' if export_memory else ""
    segments = "\n".join(
        f'  (data (i32.const {offset}) "{wat_bytes(payload)}")' for offset, payload in data
    )
    parts = [
        "(module",
        GUEST_IMPORTS_WAT if imports else "",
        f"  (memory {export}{memory_pages})",
        GUEST_LIBRARY_WAT if imports else "",
        segments,
        entry_wat,
        ")"
    ]
    return "\n".join(part for part in parts if part)


def compile_guest(wat: str) -> bytes:
    """Translate WAT into a wasm binary."""
    return wat2wasm(wat)


def example_module() -> bytes:
    return compile_guest(build_module_wat(EXAMPLE_ENTRY_WAT, EXAMPLE_DATA))
