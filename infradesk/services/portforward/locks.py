"""
Keyed asyncio lock.

One asyncio.Lock per key, created on first use and dropped once nobody holds
or waits for it. Different keys never block each other.
"""

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Hashable


class _Entry:
    __slots__ = ("lock", "users")

    def __init__(self):
        self.lock = asyncio.Lock()
        self.users = 0


class KeyedLock:
    """Mutual exclusion per key."""

    def __init__(self):
        self._entries: Dict[Hashable, _Entry] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def locked(self, key: Hashable) -> bool:
        entry = self._entries.get(key)
        return entry is not None and entry.lock.locked()

    @asynccontextmanager
    async def __call__(self, key: Hashable) -> AsyncIterator[None]:
        # Lookup and registration happen without an await in between, so
        # concurrent first use of a key always lands on the same entry
        entry = self._entries.get(key)
        if entry is None:
            entry = self._entries[key] = _Entry()
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0 and self._entries.get(key) is entry:
                del self._entries[key]
