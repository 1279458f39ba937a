# src/services/payments/app.py
"""
FastAPI приложение для Payments Service.

Endpoints:
- POST /api/v1/escrow - создать эскроу и инициализировать платёж
- GET /api/v1/escrow/{id} - получить эскроу
- GET /api/v1/escrow/{id}/history - журнал переходов
- GET /api/v1/escrow/order/{order_id} - эскроу заказа
- GET /api/v1/escrow/reference/{reference} - эскроу по референсу платежа
- GET /api/v1/escrow/user/{user_id} - эскроу пользователя
- POST /api/v1/escrow/{id}/confirm-delivery - подтверждение доставки покупателем
- POST /api/v1/escrow/{id}/release - выплата администратором
- POST /api/v1/escrow/{id}/cancel - отмена администратором
- POST /api/v1/escrow/{id}/disputes - открыть спор
- GET /api/v1/disputes/{id} - получить спор
- POST /api/v1/disputes/{id}/investigate - начать расследование
- POST /api/v1/disputes/{id}/resolve - решение по спору
- GET /api/v1/wallet/{user_id} - баланс кошелька
- POST /api/v1/webhooks/paystack - вебхук Paystack
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Annotated, Any
from uuid import UUID

from aio_pika.exceptions import AMQPConnectionError
from fastapi import Depends, FastAPI, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from redis.exceptions import RedisError

from src.common.constants import TypeMsg
from src.common.logger import log_error, log_info, log_warning, setup_logging
from src.core.escrow.exceptions import (
    DisputeNotFoundError,
    EscrowConcurrencyError,
    EscrowError,
    EscrowInconsistencyError,
    EscrowNotFoundError,
    EscrowPermissionError,
    EscrowValidationError,
    InvalidTransitionError,
)
from src.core.escrow.gateway import GatewayError
from src.core.escrow.models import (
    Dispute,
    EscrowTransaction,
    FileDisputeRequest,
    InitiatePaymentRequest,
    ResolveDisputeRequest,
    StatusHistoryEntry,
    TransitionResult,
    WalletBalance,
)
from src.core.escrow.service import EscrowService
from src.core.rate_limit.middleware import RateLimitMiddleware
from src.services.payments.dependencies import (
    cleanup_dependencies,
    get_escrow_service,
    get_webhook_processor,
    init_dependencies,
)
from src.services.payments.webhooks import (
    SIGNATURE_HEADER,
    WebhookPayloadError,
    WebhookProcessor,
    WebhookSignatureError,
)

SERVICE_NAME = "payments_service"
SERVICE_VERSION = "1.0.0"


# === REQUEST/RESPONSE MODELS ===

class HealthStatus(BaseModel):
    """Статус здоровья сервиса."""
    service: str
    status: str = "healthy"  # healthy, degraded
    version: str | None = None
    dependencies: dict[str, str] = Field(default_factory=dict)


class ErrorResponse(BaseModel):
    """Ответ с ошибкой."""
    error_code: str
    message: str


class InitiatePaymentResponse(BaseModel):
    """Созданное эскроу и ссылка на оплату."""
    escrow: EscrowTransaction
    authorization_url: str | None = None
    access_code: str | None = None


class ConfirmDeliveryRequest(BaseModel):
    """Подтверждение доставки."""
    customer_id: int


class AdminRequest(BaseModel):
    """Действие администратора."""
    admin_id: int
    reason: str | None = None


class DisputeCreateRequest(FileDisputeRequest):
    """Открытие спора стороной сделки."""
    filed_by: int


class DisputeResolveRequest(ResolveDisputeRequest):
    admin_id: int


# Код ответа по классу доменной ошибки (первое совпадение)
_ERROR_STATUS: tuple[tuple[type[Exception], int, str], ...] = (
    (EscrowNotFoundError, 404, "ESCROW_NOT_FOUND"),
    (DisputeNotFoundError, 404, "DISPUTE_NOT_FOUND"),
    (EscrowPermissionError, 403, "FORBIDDEN"),
    (EscrowValidationError, 400, "VALIDATION_ERROR"),
    (InvalidTransitionError, 409, "INVALID_TRANSITION"),
    (EscrowConcurrencyError, 409, "CONCURRENT_UPDATE"),
    (EscrowInconsistencyError, 500, "ESCROW_INCONSISTENCY"),
)


# === LIFESPAN ===

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Жизненный цикл приложения."""
    # Startup
    from src.config import settings
    from src.core.rate_limit.counter_store import build_counter_store
    from src.core.rate_limit.limiter import RateLimiter
    from src.infra.database import close_db, get_db, init_db
    from src.infra.event_bus import close_event_bus, get_event_bus, init_event_bus
    from src.infra.redis_client import close_redis, get_redis, init_redis
    from src.services.payments.gateway import PaystackClient

    setup_logging()
    await init_db()

    redis = get_redis()
    if settings.rate_limit.RATE_LIMIT_BACKEND == "redis":
        try:
            await init_redis()
        except (RedisError, ConnectionError, OSError) as e:
            await log_warning(f"Redis недоступен при старте: {e}")

    try:
        await init_event_bus()
    except (AMQPConnectionError, ConnectionError, OSError) as e:
        await log_warning(f"RabbitMQ недоступен при старте, уведомления не будут доставлены: {e}")

    store = await build_counter_store(
        settings.rate_limit.RATE_LIMIT_BACKEND,
        redis if redis.is_connected else None,
        prefix=settings.rate_limit.RATE_LIMIT_KEY_PREFIX,
    )
    rate_limiter = RateLimiter.from_settings(store, settings.rate_limit)
    app.state.rate_limiter = rate_limiter

    paystack = PaystackClient(
        secret_key=settings.paystack.PAYSTACK_SECRET_KEY,
        base_url=settings.paystack.PAYSTACK_BASE_URL,
        timeout=settings.paystack.PAYSTACK_TIMEOUT,
        callback_url=settings.paystack.PAYSTACK_CALLBACK_URL,
    )
    if not paystack.is_configured:
        await log_warning("PAYSTACK_SECRET_KEY не задан: возвраты идут на кошелёк, вебхуки отклоняются")

    await init_dependencies(
        db=get_db(),
        event_bus=get_event_bus(),
        gateway=paystack if paystack.is_configured else None,
    )
    await log_info(f"{SERVICE_NAME} запущен", type_msg=TypeMsg.INFO)

    yield

    # Shutdown
    await cleanup_dependencies()
    await paystack.close()
    await close_event_bus()
    await close_redis()
    await close_db()


# === APP ===

app = FastAPI(
    title="Payments Service",
    description="Эскроу оплаты заказов, споры и кошельки продавцов. Шлюз Paystack (NGN).",
    version=SERVICE_VERSION,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
)


def _configure_rate_limit(application: FastAPI) -> None:
    from src.config import settings

    application.add_middleware(
        RateLimitMiddleware,
        exempt_paths=settings.rate_limit.RATE_LIMIT_EXEMPT_PATHS,
        enabled=settings.rate_limit.RATE_LIMIT_ENABLED,
    )


_configure_rate_limit(app)


@app.exception_handler(EscrowError)
async def escrow_error_handler(request: Request, exc: EscrowError) -> JSONResponse:
    for error_type, status_code, code in _ERROR_STATUS:
        if isinstance(exc, error_type):
            break
    else:
        status_code, code = 400, "ESCROW_ERROR"

    if status_code >= 500:
        await log_error(f"{request.method} {request.url.path}: {exc}")
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error_code=code, message=str(exc)).model_dump(),
    )


@app.exception_handler(GatewayError)
async def gateway_error_handler(request: Request, exc: GatewayError) -> JSONResponse:
    await log_error(f"{request.method} {request.url.path}: ошибка шлюза {exc}")
    return JSONResponse(
        status_code=502,
        content=ErrorResponse(error_code="PAYMENT_GATEWAY_ERROR", message=str(exc)).model_dump(),
    )


# === HEALTH CHECK ===

@app.get("/health", response_model=HealthStatus, tags=["Health"])
async def health_check() -> HealthStatus:
    """Проверка здоровья сервиса."""
    from src.infra.database import get_db
    from src.infra.event_bus import get_event_bus
    from src.infra.redis_client import get_redis

    checks = {
        "postgres": await get_db().health_check(),
        "redis": get_redis().is_connected and await get_redis().health_check(),
        "rabbitmq": await get_event_bus().health_check(),
    }
    return HealthStatus(
        service=SERVICE_NAME,
        status="healthy" if checks["postgres"] else "degraded",
        version=SERVICE_VERSION,
        dependencies={name: "healthy" if ok else "unavailable" for name, ok in checks.items()},
    )


# === ESCROW ENDPOINTS ===

@app.post(
    "/api/v1/escrow",
    response_model=InitiatePaymentResponse,
    status_code=201,
    responses={400: {"model": ErrorResponse}, 502: {"model": ErrorResponse}},
    tags=["Escrow"],
    summary="Создать эскроу",
)
async def initiate_payment(
    request: InitiatePaymentRequest,
    service: Annotated[EscrowService, Depends(get_escrow_service)],
) -> InitiatePaymentResponse:
    """
    Создать эскроу PENDING под заказ.

    Если шлюз настроен и передан `customer_email`, возвращает
    `authorization_url` для оплаты.
    """
    escrow, checkout = await service.initiate_payment(request)
    return InitiatePaymentResponse(
        escrow=escrow,
        authorization_url=checkout.authorization_url if checkout else None,
        access_code=checkout.access_code if checkout else None,
    )


@app.get(
    "/api/v1/escrow/order/{order_id}",
    response_model=EscrowTransaction,
    responses={404: {"model": ErrorResponse}},
    tags=["Escrow"],
    summary="Эскроу заказа",
)
async def get_escrow_by_order(
    order_id: str,
    service: Annotated[EscrowService, Depends(get_escrow_service)],
) -> EscrowTransaction:
    return await service.get_by_order(order_id)


@app.get(
    "/api/v1/escrow/reference/{reference}",
    response_model=EscrowTransaction,
    responses={404: {"model": ErrorResponse}},
    tags=["Escrow"],
    summary="Эскроу по референсу платежа",
)
async def get_escrow_by_reference(
    reference: str,
    service: Annotated[EscrowService, Depends(get_escrow_service)],
) -> EscrowTransaction:
    return await service.get_by_reference(reference)


@app.get(
    "/api/v1/escrow/user/{user_id}",
    response_model=list[EscrowTransaction],
    tags=["Escrow"],
    summary="Эскроу пользователя",
)
async def get_user_escrows(
    user_id: int,
    service: Annotated[EscrowService, Depends(get_escrow_service)],
    limit: int = Query(default=50, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
) -> list[EscrowTransaction]:
    """Эскроу, где пользователь покупатель или продавец."""
    return await service.list_user_escrows(user_id, limit, offset)


@app.get(
    "/api/v1/escrow/{escrow_id}",
    response_model=EscrowTransaction,
    responses={404: {"model": ErrorResponse}},
    tags=["Escrow"],
    summary="Получить эскроу",
)
async def get_escrow(
    escrow_id: UUID,
    service: Annotated[EscrowService, Depends(get_escrow_service)],
) -> EscrowTransaction:
    return await service.get_escrow(escrow_id)


@app.get(
    "/api/v1/escrow/{escrow_id}/history",
    response_model=list[StatusHistoryEntry],
    responses={404: {"model": ErrorResponse}},
    tags=["Escrow"],
    summary="Журнал переходов",
)
async def get_escrow_history(
    escrow_id: UUID,
    service: Annotated[EscrowService, Depends(get_escrow_service)],
) -> list[StatusHistoryEntry]:
    return await service.get_history(escrow_id)


@app.post(
    "/api/v1/escrow/{escrow_id}/confirm-delivery",
    response_model=TransitionResult,
    responses={403: {"model": ErrorResponse}, 404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
    tags=["Escrow"],
    summary="Подтвердить доставку",
)
async def confirm_delivery(
    escrow_id: UUID,
    request: ConfirmDeliveryRequest,
    service: Annotated[EscrowService, Depends(get_escrow_service)],
) -> TransitionResult:
    """
    Покупатель подтверждает получение заказа.

    Средства за вычетом комиссии зачисляются продавцу. Повторное
    подтверждение возвращает `applied=false`.
    """
    return await service.confirm_delivery(escrow_id, request.customer_id)


@app.post(
    "/api/v1/escrow/{escrow_id}/release",
    response_model=TransitionResult,
    responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
    tags=["Admin"],
    summary="Выплата администратором",
)
async def admin_release(
    escrow_id: UUID,
    request: AdminRequest,
    service: Annotated[EscrowService, Depends(get_escrow_service)],
) -> TransitionResult:
    return await service.admin_release(escrow_id, request.admin_id, request.reason)


@app.post(
    "/api/v1/escrow/{escrow_id}/cancel",
    response_model=TransitionResult,
    responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
    tags=["Admin"],
    summary="Отмена администратором",
)
async def admin_cancel(
    escrow_id: UUID,
    request: AdminRequest,
    service: Annotated[EscrowService, Depends(get_escrow_service)],
) -> TransitionResult:
    """Отменить эскроу. Списанные средства возвращаются покупателю."""
    return await service.admin_cancel(escrow_id, request.admin_id, request.reason)


# === DISPUTES ENDPOINTS ===

@app.post(
    "/api/v1/escrow/{escrow_id}/disputes",
    response_model=Dispute,
    status_code=201,
    responses={403: {"model": ErrorResponse}, 404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
    tags=["Disputes"],
    summary="Открыть спор",
)
async def file_dispute(
    escrow_id: UUID,
    request: DisputeCreateRequest,
    service: Annotated[EscrowService, Depends(get_escrow_service)],
) -> Dispute:
    """
    Открыть спор по оплаченному эскроу.

    Автовыплата останавливается до решения администратора.
    """
    return await service.file_dispute(
        escrow_id,
        request.filed_by,
        FileDisputeRequest(
            dispute_type=request.dispute_type,
            description=request.description,
            evidence=request.evidence,
        ),
    )


@app.get(
    "/api/v1/disputes/{dispute_id}",
    response_model=Dispute,
    responses={404: {"model": ErrorResponse}},
    tags=["Disputes"],
    summary="Получить спор",
)
async def get_dispute(
    dispute_id: UUID,
    service: Annotated[EscrowService, Depends(get_escrow_service)],
) -> Dispute:
    return await service.get_dispute(dispute_id)


@app.post(
    "/api/v1/disputes/{dispute_id}/investigate",
    response_model=Dispute,
    responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
    tags=["Disputes"],
    summary="Начать расследование",
)
async def start_investigation(
    dispute_id: UUID,
    request: AdminRequest,
    service: Annotated[EscrowService, Depends(get_escrow_service)],
) -> Dispute:
    return await service.start_investigation(dispute_id, request.admin_id)


@app.post(
    "/api/v1/disputes/{dispute_id}/resolve",
    response_model=Dispute,
    responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
    tags=["Disputes"],
    summary="Решение по спору",
)
async def resolve_dispute(
    dispute_id: UUID,
    request: DisputeResolveRequest,
    service: Annotated[EscrowService, Depends(get_escrow_service)],
) -> Dispute:
    """
    Решение администратора.

    - `RELEASE`: выплата продавцу
    - `REFUND`: возврат покупателю
    """
    return await service.resolve_dispute(
        dispute_id,
        request.admin_id,
        ResolveDisputeRequest(resolution=request.resolution, notes=request.notes),
    )


# === WALLET ENDPOINTS ===

@app.get(
    "/api/v1/wallet/{user_id}",
    response_model=WalletBalance,
    tags=["Wallet"],
    summary="Баланс кошелька",
)
async def get_wallet_balance(
    user_id: int,
    service: Annotated[EscrowService, Depends(get_escrow_service)],
) -> WalletBalance:
    return await service.get_wallet_balance(user_id)


# === WEBHOOKS ===

@app.post("/api/v1/webhooks/paystack", tags=["Webhooks"], summary="Вебхук Paystack")
async def paystack_webhook(
    request: Request,
    processor: Annotated[WebhookProcessor, Depends(get_webhook_processor)],
) -> Any:
    """
    Принять событие Paystack.

    Неверная подпись даёт 401, нечитаемое тело 400. Остальные события
    подтверждаются 200, чтобы шлюз не повторял доставку; 500 только
    при сбое, который стоит повторить.
    """
    body = await request.body()
    try:
        outcome = await processor.process(body, request.headers.get(SIGNATURE_HEADER))
    except WebhookSignatureError as e:
        await log_warning(f"Вебхук Paystack отклонён: {e}")
        return JSONResponse(status_code=401, content={"status": "unauthorized", "message": str(e)})
    except WebhookPayloadError as e:
        await log_warning(str(e))
        return JSONResponse(status_code=400, content={"status": "invalid", "message": str(e)})
    return {"status": outcome.value}


# === STARTUP ===

if __name__ == "__main__":
    import uvicorn
    from src.config import settings
    uvicorn.run(app, host=settings.service.API_HOST, port=settings.service.API_PORT)
