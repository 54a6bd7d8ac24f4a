"""
Per-customer critical sections.

One asyncio.Lock per customer id; unrelated customers never contend.
Entries are dropped once nobody holds or waits on them.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict

log = logging.getLogger("loyalty.locks")


class CustomerLockRegistry:
    def __init__(self) -> None:
        self._locks: Dict[str, asyncio.Lock] = {}
        self._waiters: Dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, customer_id: str) -> AsyncIterator[None]:
        lock = self._locks.get(customer_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[customer_id] = lock
        self._waiters[customer_id] = self._waiters.get(customer_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._waiters[customer_id] -= 1
            if self._waiters[customer_id] == 0:
                del self._waiters[customer_id]
                del self._locks[customer_id]

    def __len__(self) -> int:
        return len(self._locks)
