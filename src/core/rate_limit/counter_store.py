# src/core/rate_limit/counter_store.py
"""
Хранилища счётчиков фиксированного окна.

CounterStore задаёт интерфейс. RedisCounterStore общий для всех процессов
сервиса, InMemoryCounterStore живёт внутри процесса (резерв при
недоступном Redis и тесты).
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Protocol, runtime_checkable

from src.common.constants import TypeMsg
from src.common.logger import log_info, log_warning
from src.infra.redis_client import RedisClient

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class CounterSnapshot:
    """Состояние счётчика после инкремента."""
    count: int
    reset_at: datetime


@runtime_checkable
class CounterStore(Protocol):
    """Атомарный счётчик запросов в фиксированном окне."""

    async def check_and_increment(self, key: str, window_seconds: int) -> CounterSnapshot:
        """
        Увеличивает счётчик ключа на 1.
        Первый инкремент окна задаёт reset_at = now + window.
        """
        ...

    async def reset(self, key: str) -> None:
        """Сбрасывает счётчик ключа."""
        ...


class InMemoryCounterStore:
    """
    Счётчики в словаре процесса.

    Истёкшие окна удаляются лениво: при обращении к ключу и полным
    проходом раз в purge_every инкрементов.
    """

    def __init__(self, clock: Clock = utc_now, purge_every: int = 1000) -> None:
        self._clock = clock
        self._purge_every = purge_every
        self._counters: dict[str, CounterSnapshot] = {}
        self._ops_since_purge = 0

    async def check_and_increment(self, key: str, window_seconds: int) -> CounterSnapshot:
        now = self._clock()
        self._maybe_purge(now)

        current = self._counters.get(key)
        if current is None or current.reset_at <= now:
            snapshot = CounterSnapshot(count=1, reset_at=now + timedelta(seconds=window_seconds))
        else:
            snapshot = CounterSnapshot(count=current.count + 1, reset_at=current.reset_at)

        self._counters[key] = snapshot
        return snapshot

    async def reset(self, key: str) -> None:
        self._counters.pop(key, None)

    def _maybe_purge(self, now: datetime) -> None:
        self._ops_since_purge += 1
        if self._ops_since_purge < self._purge_every:
            return
        self._ops_since_purge = 0
        expired = [k for k, v in self._counters.items() if v.reset_at <= now]
        for k in expired:
            del self._counters[k]

    def __len__(self) -> int:
        return len(self._counters)


class RedisCounterStore:
    """
    Счётчики в Redis.

    Инкремент выполняется одной транзакцией MULTI/EXEC
    (SET key 0 NX PX window, INCR, PTTL), поэтому окно создаётся
    ровно один раз, сколько бы процессов ни обращались к ключу.
    """

    def __init__(self, redis: RedisClient, prefix: str = "rl", clock: Clock = utc_now) -> None:
        self._redis = redis
        self._prefix = prefix
        self._clock = clock

    def _key(self, key: str) -> str:
        return f"{self._prefix}:{key}"

    async def check_and_increment(self, key: str, window_seconds: int) -> CounterSnapshot:
        window_ms = window_seconds * 1000
        count, ttl_ms = await self._redis.incr_window(self._key(key), window_ms)
        now = self._clock()
        # PTTL < 0: у ключа нет TTL, считаем окно только что начатым
        if ttl_ms < 0:
            ttl_ms = window_ms
        return CounterSnapshot(count=count, reset_at=now + timedelta(milliseconds=ttl_ms))

    async def reset(self, key: str) -> None:
        await self._redis.delete(self._key(key))


async def build_counter_store(
    backend: str,
    redis: RedisClient | None,
    prefix: str = "rl",
) -> CounterStore:
    """
    Выбирает хранилище счётчиков при старте сервиса.

    Args:
        backend: "redis" или "memory"
        redis: Подключённый RedisClient или None, если подключиться не удалось
        prefix: Префикс ключей счётчиков
    """
    if backend == "redis":
        if redis is not None and redis.is_connected:
            await log_info("Rate limit: счётчики в Redis", type_msg=TypeMsg.INFO)
            return RedisCounterStore(redis, prefix=prefix)
        await log_warning("Rate limit: Redis недоступен, счётчики переведены в память процесса")

    await log_info("Rate limit: счётчики в памяти процесса", type_msg=TypeMsg.INFO)
    return InMemoryCounterStore()
