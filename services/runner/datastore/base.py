"""
Capability Store Contract

The key-value capability granted to guest modules. Backends are selected at
construction time and injected; nothing downstream knows which one it has.
"""
from typing import Optional, Protocol, runtime_checkable


class DatastoreError(Exception):
    """Backend failure during put/get. Fatal to the current request."""

    def __init__(self, operation: str, backend: str, message: str):
        self.operation = operation
        self.backend = backend
        super().__init__(f"{backend} {operation} failed: {message}")


@runtime_checkable
class Datastore(Protocol):
    """
    Byte-keyed, byte-valued store.

    Both operations may suspend on I/O. A single execution never has more
    than one call in flight. `get` returns None for an absent key; absence
    is not an error.
    """

    backend: str

    async def put(self, key: bytes, value: bytes) -> None: ...

    async def get(self, key: bytes) -> Optional[bytes]: ...
