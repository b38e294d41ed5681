"""
Keyed asyncio locks

Serializes work that shares a key (a user's balance, a user's default
address of one type) within this process. Cross-process safety comes
from the conditional UPDATE statements that run under these locks.
"""
import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Hashable


class KeyedLockManager:
    """
    Manages per-key locks.

    Only ONE holder per key at a time; different keys never block each other.
    A key's lock lives only while someone holds or waits for it.
    """
    def __init__(self):
        self._locks: Dict[Hashable, asyncio.Lock] = {}
        self._holders: Dict[Hashable, int] = {}

    @asynccontextmanager
    async def hold(self, key: Hashable) -> AsyncIterator[None]:
        """Acquire the lock for key for the duration of the block."""
        # No await between lookup and count, so the maps need no lock of their own
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._holders[key] = self._holders.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._holders[key] -= 1
            if self._holders[key] == 0:
                del self._holders[key]
                del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)


# Process-wide managers shared by all service instances
user_locks = KeyedLockManager()
default_flag_locks = KeyedLockManager()
