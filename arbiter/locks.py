"""
Module: arbiter/locks.py
Description: Per-dispute asyncio locks

Mutations of one dispute are serialized; different disputes proceed in
parallel. Idle locks are dropped so the registry does not grow with the
number of disputes ever touched.
"""

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict


class DisputeLocks:
    """Single-writer discipline keyed by dispute id."""

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._waiters: Dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, dispute_id: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(dispute_id, asyncio.Lock())
        self._waiters[dispute_id] = self._waiters.get(dispute_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._waiters[dispute_id] -= 1
            if self._waiters[dispute_id] == 0:
                del self._waiters[dispute_id]
                del self._locks[dispute_id]

    def is_locked(self, dispute_id: str) -> bool:
        lock = self._locks.get(dispute_id)
        return lock is not None and lock.locked()

    def __len__(self) -> int:
        return len(self._locks)
