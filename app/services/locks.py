import asyncio
import logging
from contextlib import asynccontextmanager

logger = logging.getLogger(__name__)


class KeyedLock:
    """Per-key asyncio locks.

    Work on different keys proceeds in parallel; a lock entry is dropped once
    no coroutine holds or waits for it.
    """

    def __init__(self, name: str) -> None:
        self.name = name
        self._locks: dict[str, asyncio.Lock] = {}
        self._waiters: dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str):
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

    def __len__(self) -> int:
        return len(self._locks)


# Acquisition order when more than one is needed: patient or paramedic first,
# then the request.
request_locks = KeyedLock("request")
patient_locks = KeyedLock("patient")
paramedic_locks = KeyedLock("paramedic")
