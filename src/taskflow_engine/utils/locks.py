import asyncio
from collections import defaultdict
from contextlib import asynccontextmanager
from typing import Dict


class KeyedLocks:
    """One asyncio.Lock per key (flow id, run id, node id...)."""

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._waiters: Dict[str, int] = defaultdict(int)

    @asynccontextmanager
    async def hold(self, key: str):
        self._waiters[key] += 1
        try:
            async with self._locks[key]:
                yield
        finally:
            self._waiters[key] -= 1
            if self._waiters[key] == 0:
                # Nobody else holds or waits on it
                del self._waiters[key]
                self._locks.pop(key, None)

    def locked(self, key: str) -> bool:
        return key in self._locks and self._locks[key].locked()
