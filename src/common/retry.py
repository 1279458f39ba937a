# src/common/retry.py
"""
Повтор асинхронных операций с экспоненциальной задержкой.
"""

from __future__ import annotations

import asyncio
from functools import wraps
from typing import Any, Awaitable, Callable, TypeVar

from src.common.logger import log_error, log_warning

T = TypeVar("T")


def backoff_delay(attempt: int, base_delay: float, max_delay: float) -> float:
    """
    Задержка перед следующей попыткой.

    Args:
        attempt: Номер неудавшейся попытки (с 1)
        base_delay: Базовая задержка (секунды)
        max_delay: Верхняя граница задержки (секунды)
    """
    return min(max_delay, base_delay * (2 ** (attempt - 1)))


def retry_async(
    exceptions: tuple[type[BaseException], ...],
    max_attempts: int = 3,
    base_delay: float = 0.5,
    max_delay: float = 10.0,
    timeout: float | None = None,
) -> Callable[[Callable[..., Awaitable[T]]], Callable[..., Awaitable[T]]]:
    """
    Декоратор повторов для корутин.

    Повторяет вызов при исключениях из `exceptions`, между попытками
    ждёт base_delay * 2^(n-1), но не больше max_delay. Если задан timeout,
    каждая попытка ограничена им, а asyncio.TimeoutError считается
    повторяемой ошибкой. После исчерпания попыток пробрасывает последнее
    исключение.
    """
    retryable = exceptions + ((asyncio.TimeoutError,) if timeout is not None else ())

    def decorator(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        @wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> T:
            last_error: BaseException | None = None

            for attempt in range(1, max_attempts + 1):
                try:
                    if timeout is not None:
                        return await asyncio.wait_for(func(*args, **kwargs), timeout=timeout)
                    return await func(*args, **kwargs)
                except retryable as e:
                    last_error = e
                    if attempt < max_attempts:
                        delay = backoff_delay(attempt, base_delay, max_delay)
                        await log_warning(
                            f"{func.__name__}: попытка {attempt}/{max_attempts} не удалась ({e!r}), "
                            f"повтор через {delay:.2f} с",
                        )
                        await asyncio.sleep(delay)
                    else:
                        await log_error(
                            f"{func.__name__}: все {max_attempts} попытки исчерпаны: {e!r}",
                        )

            assert last_error is not None
            raise last_error

        return wrapper

    return decorator
