# src/core/rate_limit/limiter.py
"""
Ограничитель частоты запросов.

Лимит выбирается по таблице эндпоинтов (точное совпадение или префикс,
побеждает самый длинный шаблон), иначе по роли пользователя.
Алгоритм: фиксированное окно, на стыке двух окон возможен всплеск до
2×limit запросов, это известное ограничение.
"""

from __future__ import annotations

import asyncio
import math
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Mapping

from redis.exceptions import RedisError

from src.common.constants import UserRole
from src.common.logger import log_warning
from src.core.rate_limit.counter_store import Clock, CounterStore, utc_now

if TYPE_CHECKING:
    from src.config.loader import RateLimitSettings


@dataclass(frozen=True)
class RateLimitRule:
    """Не более max_requests запросов за window_seconds."""
    max_requests: int
    window_seconds: int


GUEST_FALLBACK_RULE = RateLimitRule(max_requests=20, window_seconds=60)


@dataclass(frozen=True)
class RequestIdentity:
    """Кто делает запрос: id пользователя или адрес клиента и роль."""
    identity: str
    role: UserRole = UserRole.GUEST


@dataclass(frozen=True)
class RateLimitDecision:
    """Результат проверки лимита."""
    allowed: bool
    limit: int
    remaining: int
    reset_at: datetime | None
    key: str
    fail_open: bool = False

    def headers(self) -> dict[str, str]:
        """Заголовки X-RateLimit-*; пусто, если счётчик не получен."""
        if self.reset_at is None:
            return {}
        return {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": format_reset(self.reset_at),
        }

    def retry_after_seconds(self, now: datetime) -> int:
        """Сколько секунд ждать до конца окна (не меньше 1)."""
        if self.reset_at is None:
            return 1
        return max(1, math.ceil((self.reset_at - now).total_seconds()))


def format_reset(moment: datetime) -> str:
    """ISO-8601 в UTC с миллисекундами и суффиксом Z."""
    return moment.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def match_endpoint(path: str, patterns: Mapping[str, RateLimitRule]) -> str | None:
    """
    Самый длинный шаблон, совпадающий с путём точно или как префикс
    по границе сегмента: /api/auth/login не задевает /api/auth/login-history.
    """
    best: str | None = None
    for pattern in patterns:
        if path == pattern or path.startswith(pattern.rstrip("/") + "/"):
            if best is None or len(pattern) > len(best):
                best = pattern
    return best


class RateLimiter:
    """
    Проверка и учёт запросов.

    При недоступном хранилище или превышении таймаута запрос
    пропускается (fail open), в лог пишется предупреждение.
    """

    def __init__(
        self,
        store: CounterStore,
        role_limits: Mapping[UserRole, RateLimitRule],
        endpoint_limits: Mapping[str, RateLimitRule] | None = None,
        store_timeout: float = 2.0,
        clock: Clock = utc_now,
    ) -> None:
        self.store = store
        self.role_limits = dict(role_limits)
        self.endpoint_limits = dict(endpoint_limits or {})
        self.store_timeout = store_timeout
        self._clock = clock

    @classmethod
    def from_settings(cls, store: CounterStore, config: "RateLimitSettings") -> "RateLimiter":
        """Собирает лимитер из секции rate_limit конфигурации."""
        role_limits = {
            UserRole.parse(role): RateLimitRule(rule.max_requests, rule.window_seconds)
            for role, rule in config.RATE_LIMIT_ROLE_LIMITS.items()
        }
        endpoint_limits = {
            pattern: RateLimitRule(rule.max_requests, rule.window_seconds)
            for pattern, rule in config.RATE_LIMIT_ENDPOINT_LIMITS.items()
        }
        return cls(
            store,
            role_limits=role_limits,
            endpoint_limits=endpoint_limits,
            store_timeout=config.RATE_LIMIT_STORE_TIMEOUT,
        )

    def select_rule(self, role: UserRole, path: str) -> tuple[RateLimitRule, str | None]:
        """
        Выбирает правило для запроса.

        Returns:
            (правило, совпавший шаблон эндпоинта или None для лимита роли)
        """
        pattern = match_endpoint(path, self.endpoint_limits)
        if pattern is not None:
            return self.endpoint_limits[pattern], pattern

        rule = self.role_limits.get(role) or self.role_limits.get(UserRole.GUEST) or GUEST_FALLBACK_RULE
        return rule, None

    @staticmethod
    def build_key(requester: RequestIdentity, endpoint: str) -> str:
        return f"{requester.identity}:{requester.role.value}:{endpoint}"

    async def check(self, requester: RequestIdentity, path: str) -> RateLimitDecision:
        """
        Учитывает запрос и решает, пропускать ли его.

        Args:
            requester: Идентификатор и роль
            path: Путь запроса
        """
        rule, pattern = self.select_rule(requester.role, path)
        key = self.build_key(requester, pattern or path)

        try:
            snapshot = await asyncio.wait_for(
                self.store.check_and_increment(key, rule.window_seconds),
                timeout=self.store_timeout,
            )
        except asyncio.TimeoutError:
            await log_warning(
                f"Rate limit: хранилище счётчиков не ответило за {self.store_timeout} с, запрос пропущен ({key})"
            )
            return self._fail_open(rule, key)
        except (RedisError, ConnectionError, OSError) as e:
            await log_warning(f"Rate limit: хранилище счётчиков недоступно ({e!r}), запрос пропущен ({key})")
            return self._fail_open(rule, key)
        except Exception as e:
            await log_warning(f"Rate limit: ошибка хранилища счётчиков ({e!r}), запрос пропущен ({key})")
            return self._fail_open(rule, key)

        if snapshot.count > rule.max_requests:
            return RateLimitDecision(
                allowed=False,
                limit=rule.max_requests,
                remaining=0,
                reset_at=snapshot.reset_at,
                key=key,
            )

        return RateLimitDecision(
            allowed=True,
            limit=rule.max_requests,
            remaining=max(0, rule.max_requests - snapshot.count),
            reset_at=snapshot.reset_at,
            key=key,
        )

    async def reset(self, key: str) -> None:
        await self.store.reset(key)

    def now(self) -> datetime:
        return self._clock()

    @staticmethod
    def _fail_open(rule: RateLimitRule, key: str) -> RateLimitDecision:
        return RateLimitDecision(
            allowed=True,
            limit=rule.max_requests,
            remaining=rule.max_requests,
            reset_at=None,
            key=key,
            fail_open=True,
        )
