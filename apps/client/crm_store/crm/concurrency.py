from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Hashable
from contextlib import asynccontextmanager
from dataclasses import dataclass


@dataclass
class CancelToken:
    """Abandonment flag captured when a fetch starts and checked before each cache write."""

    cancelled: bool = False

    def cancel(self) -> None:
        self.cancelled = True


class KeyedMutationQueue:
    """Serializes coroutines per key so mutations apply in issuance order.

    asyncio.Lock wakes waiters first-in first-out, so callers that enter
    ``slot`` in order run their critical sections in the same order.
    """

    def __init__(self) -> None:
        self._locks: dict[Hashable, asyncio.Lock] = {}
        self._waiters: dict[Hashable, int] = {}

    @asynccontextmanager
    async def slot(self, key: Hashable) -> AsyncIterator[None]:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        self._waiters[key] = self._waiters.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._waiters[key] -= 1
            if self._waiters[key] == 0:
                del self._waiters[key]
                del self._locks[key]

    def pending(self, key: Hashable) -> int:
        return self._waiters.get(key, 0)
