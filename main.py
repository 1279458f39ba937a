#!/usr/bin/env python3
# main.py
"""
Главная точка входа brillprime payments.
Запускает HTTP-сервис платежей, воркеры эскроу или всё вместе.
"""

from __future__ import annotations

import asyncio
import signal
import sys

from src.common.constants import TypeMsg
from src.common.logger import log_info, setup_logging
from src.config import settings

VALID_MODES = ("api", "worker", "all")

# Глобальный флаг для graceful shutdown
_shutdown_event: asyncio.Event | None = None
_running_tasks: list[asyncio.Task] = []


def setup_signal_handlers() -> None:
    """Настраивает обработчики сигналов для graceful shutdown."""
    global _shutdown_event
    _shutdown_event = asyncio.Event()

    def signal_handler(sig: int) -> None:
        """Обработчик сигналов SIGINT и SIGTERM."""
        if _shutdown_event and not _shutdown_event.is_set():
            print(f"\nПолучен сигнал остановки (sig={sig}), завершаем работу...")
            _shutdown_event.set()
            for task in _running_tasks:
                if not task.done():
                    task.cancel()

    try:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, lambda s=sig: signal_handler(s))
    except NotImplementedError:
        # Windows не поддерживает add_signal_handler
        signal.signal(signal.SIGINT, lambda s, f: signal_handler(s))
        signal.signal(signal.SIGTERM, lambda s, f: signal_handler(s))


async def run_payments_service() -> None:
    """Запускает Payments Service (эскроу, споры, вебхуки Paystack)."""
    import uvicorn

    await log_info(
        f"Запуск Payments Service на порту {settings.service.API_PORT}...",
        type_msg=TypeMsg.INFO,
    )

    config = uvicorn.Config(
        "src.services.payments.app:app",
        host=settings.service.API_HOST,
        port=settings.service.API_PORT,
        log_level="debug" if settings.system.DEBUG else "info",
    )

    server = uvicorn.Server(config)
    try:
        await server.serve()
    except asyncio.CancelledError:
        await log_info("Payments Service: graceful shutdown", type_msg=TypeMsg.DEBUG)
        await server.shutdown()


async def run_escrow_workers() -> None:
    """Запускает воркеры эскроу (доставка, автовыплата, сверка)."""
    from src.worker.runner import run_workers

    await run_workers(init_infra=True)


async def main(mode: str | None = None) -> None:
    """
    Главная функция запуска.

    Args:
        mode: Режим запуска (api, worker, all).
              Если None, берётся COMPONENT_MODE из настроек.
    """
    setup_logging()
    setup_signal_handlers()

    mode = mode or settings.system.COMPONENT_MODE
    if mode not in VALID_MODES:
        raise ValueError(f"Неизвестный режим запуска: {mode}")

    await log_info(
        f"{settings.system.PROJECT_NAME} v{settings.system.VERSION}: запуск в режиме '{mode}'",
        type_msg=TypeMsg.INFO,
    )

    runners = {
        "api": [run_payments_service],
        "worker": [run_escrow_workers],
        "all": [run_payments_service, run_escrow_workers],
    }[mode]

    _running_tasks.extend(asyncio.create_task(runner()) for runner in runners)
    await asyncio.gather(*_running_tasks, return_exceptions=True)
    await log_info("Работа завершена", type_msg=TypeMsg.INFO)


def print_usage() -> None:
    print("Использование: python main.py [api|worker|all]")
    print("  api     - HTTP-сервис платежей")
    print("  worker  - воркеры эскроу")
    print("  all     - всё в одном процессе")


if __name__ == "__main__":
    mode: str | None = None
    if len(sys.argv) > 1:
        arg = sys.argv[1].lower()
        if arg in ("--help", "-h"):
            print_usage()
            sys.exit(0)
        elif arg in VALID_MODES:
            mode = arg
        else:
            print(f"Ошибка: неизвестный режим '{arg}'")
            print_usage()
            sys.exit(1)

    try:
        asyncio.run(main(mode))
    except KeyboardInterrupt:
        pass
