"""
Guest Package - Guest-side view of the capability ABI.
"""
from .library import GuestLibrary, example_entry
from .wat import (
    GUEST_LIBRARY_WAT,
    EXAMPLE_ENTRY_WAT,
    EXAMPLE_DATA,
    build_module_wat,
    compile_guest,
    example_module,
    wat_bytes
)

__all__ = [
    "GuestLibrary",
    "example_entry",
    "GUEST_LIBRARY_WAT",
    "EXAMPLE_ENTRY_WAT",
    "EXAMPLE_DATA",
    "build_module_wat",
    "compile_guest",
    "example_module",
    "wat_bytes"
]
