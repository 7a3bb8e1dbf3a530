"""
In-memory Capability Store

Ephemeral dict-backed store. One is built per request; its contents never
outlive that request.
"""
from typing import Dict, Mapping, Optional


class InMemoryDatastore:
    """Dict-backed datastore for tests and local runs."""

    backend = "memory"

    def __init__(self, seed: Optional[Mapping[bytes, bytes]] = None):
        self._items: Dict[bytes, bytes] = {}
        if seed:
            for key, value in seed.items():
                self._items[bytes(key)] = bytes(value)

    async def put(self, key: bytes, value: bytes) -> None:
        self._items[bytes(key)] = bytes(value)

    async def get(self, key: bytes) -> Optional[bytes]:
        return self._items.get(bytes(key))

    def snapshot(self) -> Dict[bytes, bytes]:
        return dict(self._items)

    def __len__(self) -> int:
        return len(self._items)

    def __repr__(self) -> str:
        return f"InMemoryDatastore(items={len(self._items)})"
