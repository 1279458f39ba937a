# src/core/rate_limit/middleware.py
"""
HTTP middleware ограничения частоты запросов.

Пользователя кладёт в request.state.user middleware аутентификации,
которое стоит перед этим. Без пользователя запрос считается гостевым
и идентифицируется адресом клиента.
"""

from __future__ import annotations

from typing import Any, Callable, Sequence

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.types import ASGIApp

from src.common.constants import UserRole
from src.common.logger import log_warning
from src.core.rate_limit.limiter import RateLimitDecision, RateLimiter, RequestIdentity, format_reset

IdentityResolver = Callable[[Request], RequestIdentity]

RATE_LIMIT_MESSAGE = "Too many requests. Please try again later."


def _user_attr(user: Any, name: str) -> Any:
    if isinstance(user, dict):
        return user.get(name)
    return getattr(user, name, None)


def resolve_identity(request: Request) -> RequestIdentity:
    """
    Идентификатор запроса: id пользователя, иначе адрес клиента.
    Роль берётся у пользователя, неизвестная роль считается GUEST.
    """
    user = getattr(request.state, "user", None)
    user_id = _user_attr(user, "id") if user is not None else None
    if user_id is not None:
        return RequestIdentity(identity=str(user_id), role=UserRole.parse(_user_attr(user, "role")))

    host = request.client.host if request.client else "unknown"
    return RequestIdentity(identity=host, role=UserRole.GUEST)


def rate_limit_exceeded_response(decision: RateLimitDecision, limiter: RateLimiter) -> JSONResponse:
    """Ответ 429 с заголовками лимита и Retry-After."""
    retry_after = limiter.now() if decision.reset_at is None else decision.reset_at
    headers = decision.headers()
    headers["Retry-After"] = str(decision.retry_after_seconds(limiter.now()))
    return JSONResponse(
        status_code=429,
        content={
            "success": False,
            "code": "RATE_LIMIT_EXCEEDED",
            "message": RATE_LIMIT_MESSAGE,
            "retryAfter": format_reset(retry_after),
        },
        headers=headers,
    )


class RateLimitMiddleware(BaseHTTPMiddleware):
    """
    Проверяет лимит до вызова обработчика.

    Лимитер берётся из аргумента или из app.state.rate_limiter, который
    заполняется в lifespan сервиса. Пока лимитера нет, запросы проходят.
    """

    def __init__(
        self,
        app: ASGIApp,
        limiter: RateLimiter | None = None,
        exempt_paths: Sequence[str] = ("/health",),
        identity_resolver: IdentityResolver = resolve_identity,
        enabled: bool = True,
    ) -> None:
        super().__init__(app)
        self._limiter = limiter
        self.exempt_paths = tuple(exempt_paths)
        self.identity_resolver = identity_resolver
        self.enabled = enabled

    def is_exempt(self, path: str) -> bool:
        return any(path == p or path.startswith(p.rstrip("/") + "/") for p in self.exempt_paths)

    def _get_limiter(self, request: Request) -> RateLimiter | None:
        if self._limiter is not None:
            return self._limiter
        return getattr(request.app.state, "rate_limiter", None)

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        path = request.url.path
        limiter = self._get_limiter(request)
        if not self.enabled or limiter is None or self.is_exempt(path):
            return await call_next(request)

        decision = await limiter.check(self.identity_resolver(request), path)
        if not decision.allowed:
            await log_warning(f"Rate limit превышен: {decision.key} ({decision.limit} за окно)")
            return rate_limit_exceeded_response(decision, limiter)

        response = await call_next(request)
        for name, value in decision.headers().items():
            response.headers[name] = value
        return response

