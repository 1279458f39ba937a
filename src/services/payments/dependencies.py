# src/services/payments/dependencies.py
"""
Dependency Injection для Payments Service.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from src.core.escrow.gateway import PaymentGateway
    from src.core.escrow.service import EscrowService
    from src.core.escrow.wallet import WalletService
    from src.infra.database import DatabaseManager
    from src.infra.event_bus import EventBus
    from src.services.payments.webhooks import WebhookProcessor


# Синглтоны для инфраструктуры
_db: "DatabaseManager | None" = None
_event_bus: "EventBus | None" = None
_gateway: "PaymentGateway | None" = None

# Синглтоны для сервисов
_wallet_service: "WalletService | None" = None
_escrow_service: "EscrowService | None" = None
_webhook_processor: "WebhookProcessor | None" = None


async def init_dependencies(
    db: "DatabaseManager",
    event_bus: "EventBus",
    gateway: "PaymentGateway | None" = None,
) -> None:
    """Инициализировать зависимости при старте приложения."""
    global _db, _event_bus, _gateway
    _db = db
    _event_bus = event_bus
    _gateway = gateway


def get_db() -> "DatabaseManager":
    """Получить менеджер базы данных."""
    if _db is None:
        raise RuntimeError("База данных не инициализирована. Вызовите init_dependencies()")
    return _db


def get_event_bus() -> "EventBus":
    """Получить шину событий."""
    if _event_bus is None:
        raise RuntimeError("EventBus не инициализирован. Вызовите init_dependencies()")
    return _event_bus


def get_gateway() -> "PaymentGateway | None":
    """Платёжный шлюз; None, если ключ Paystack не задан."""
    return _gateway


def get_wallet_service() -> "WalletService":
    """Получить сервис кошельков."""
    global _wallet_service

    if _wallet_service is None:
        from src.config import settings
        from src.core.escrow.wallet import WalletRepository, WalletService
        _wallet_service = WalletService(
            WalletRepository(get_db()),
            currency=settings.escrow.CURRENCY,
        )

    return _wallet_service


def get_escrow_service() -> "EscrowService":
    """Получить сервис эскроу."""
    global _escrow_service

    if _escrow_service is None:
        from src.config import settings
        from src.core.escrow.repository import EscrowRepository
        from src.core.escrow.service import EscrowService
        from src.core.notifications.service import EventBusNotifier
        _escrow_service = EscrowService.from_settings(
            repository=EscrowRepository(get_db()),
            wallet=get_wallet_service(),
            notifier=EventBusNotifier(get_event_bus()),
            gateway=get_gateway(),
            config=settings.escrow,
        )

    return _escrow_service


def get_webhook_processor() -> "WebhookProcessor":
    """Получить обработчик вебхуков Paystack."""
    global _webhook_processor

    if _webhook_processor is None:
        from src.config import settings
        from src.services.payments.webhooks import WebhookProcessor
        _webhook_processor = WebhookProcessor(
            secret_key=settings.paystack.PAYSTACK_SECRET_KEY,
            escrow_service=get_escrow_service(),
            wallet_service=get_wallet_service(),
        )

    return _webhook_processor


async def cleanup_dependencies() -> None:
    """Очистить ресурсы при остановке приложения."""
    global _db, _event_bus, _gateway
    global _wallet_service, _escrow_service, _webhook_processor
    _wallet_service = None
    _escrow_service = None
    _webhook_processor = None
    _gateway = None
    _db = None
    _event_bus = None
