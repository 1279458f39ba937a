# src/common/locks.py
"""
Блокировки по ключу для сериализации операций над одной сущностью.
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncGenerator


class KeyedLock:
    """
    Набор asyncio.Lock, по одному на ключ.

    Гарантирует одного писателя на ключ внутри процесса. Замок удаляется,
    когда его больше никто не держит и не ждёт, поэтому словарь не растёт
    с количеством обработанных ключей.

    Example:
        async with locks.hold(escrow_id):
            ...
    """

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._waiters: dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncGenerator[None, None]:
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

    def is_locked(self, key: str) -> bool:
        """Занят ли ключ."""
        lock = self._locks.get(key)
        return lock is not None and lock.locked()

    def __len__(self) -> int:
        return len(self._locks)
