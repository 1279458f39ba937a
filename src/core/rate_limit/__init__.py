# src/core/rate_limit/__init__.py
"""
Ограничение частоты запросов по пользователю, роли и эндпоинту.
"""

from src.core.rate_limit.counter_store import (
    CounterSnapshot,
    CounterStore,
    InMemoryCounterStore,
    RedisCounterStore,
    build_counter_store,
)
from src.core.rate_limit.limiter import RateLimitDecision, RateLimiter, RateLimitRule, RequestIdentity

__all__ = [
    "CounterSnapshot",
    "CounterStore",
    "InMemoryCounterStore",
    "RedisCounterStore",
    "build_counter_store",
    "RateLimitDecision",
    "RateLimiter",
    "RateLimitRule",
    "RequestIdentity",
]
