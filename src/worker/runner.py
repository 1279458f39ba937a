# src/worker/runner.py
"""
Запускалка воркеров эскроу.
"""

from __future__ import annotations

import asyncio
from typing import List

from src.common.constants import TypeMsg
from src.common.logger import log_error, log_info
from src.config import settings
from src.infra.database import close_db, get_db, init_db
from src.infra.event_bus import close_event_bus, get_event_bus, init_event_bus
from src.services.payments.dependencies import cleanup_dependencies, get_escrow_service, init_dependencies
from src.services.payments.gateway import PaystackClient
from src.worker.base import BaseWorker
from src.worker.escrow import DeliveryConfirmationWorker, EscrowReleaseTimerWorker


def build_workers() -> List[BaseWorker]:
    """Воркеры поверх уже инициализированных зависимостей."""
    service = get_escrow_service()
    return [
        DeliveryConfirmationWorker(service),
        EscrowReleaseTimerWorker(
            service,
            interval=settings.escrow.RELEASE_SWEEP_INTERVAL,
            batch_size=settings.escrow.RELEASE_SWEEP_BATCH,
        ),
    ]


async def run_workers(init_infra: bool = True) -> None:
    """
    Запускает воркеры эскроу.

    Args:
        init_infra: Если True, инициализирует инфраструктуру (БД, RabbitMQ).
                    При запуске через main.py передаётся False,
                    так как инфраструктура уже инициализирована.
    """
    await log_info("Запуск воркеров эскроу...", type_msg=TypeMsg.INFO)

    if init_infra:
        await log_info("Инициализация инфраструктуры для воркеров...", type_msg=TypeMsg.DEBUG)
        await init_db()
        await init_event_bus()

    paystack = PaystackClient(
        secret_key=settings.paystack.PAYSTACK_SECRET_KEY,
        base_url=settings.paystack.PAYSTACK_BASE_URL,
        timeout=settings.paystack.PAYSTACK_TIMEOUT,
    )
    await init_dependencies(
        db=get_db(),
        event_bus=get_event_bus(),
        gateway=paystack if paystack.is_configured else None,
    )
    workers = build_workers()

    try:
        for worker in workers:
            await worker.start()

        await log_info(f"Запущено {len(workers)} воркеров", type_msg=TypeMsg.INFO)

        while True:
            await asyncio.sleep(1)

    except asyncio.CancelledError:
        await log_info("Получен сигнал остановки", type_msg=TypeMsg.INFO)
    except Exception as e:
        await log_error(f"Критическая ошибка: {e}")
    finally:
        for worker in workers:
            await worker.stop()

        await cleanup_dependencies()
        await paystack.close()

        if init_infra:
            await close_event_bus()
            await close_db()

        await log_info("Воркеры остановлены", type_msg=TypeMsg.INFO)


def main() -> None:
    """Точка входа."""
    try:
        asyncio.run(run_workers())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
