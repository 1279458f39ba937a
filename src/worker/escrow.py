# src/worker/escrow.py
"""
Воркеры эскроу.

DeliveryConfirmationWorker - выплата по событию order.delivered.
EscrowReleaseTimerWorker - автовыплата по истечении удержания и сверка.
"""

from __future__ import annotations

from typing import List, Optional
from uuid import UUID

from src.common.constants import TypeMsg
from src.common.logger import log_error, log_info, log_warning
from src.core.escrow.exceptions import (
    EscrowInconsistencyError,
    EscrowNotFoundError,
    EscrowPermissionError,
    InvalidTransitionError,
)
from src.core.escrow.service import EscrowService
from src.infra.event_bus import DomainEvent, EventBus, EventTypes
from src.worker.base import BaseWorker, PeriodicWorker


class DeliveryConfirmationWorker(BaseWorker):
    """
    Подтверждение доставки от сервиса заказов.

    Payload: customer_id и escrow_id или order_id.
    """

    def __init__(self, escrow_service: EscrowService, event_bus: Optional[EventBus] = None) -> None:
        super().__init__(event_bus)
        self.escrow_service = escrow_service

    @property
    def name(self) -> str:
        return "delivery_confirmation"

    @property
    def subscriptions(self) -> List[str]:
        return [EventTypes.ORDER_DELIVERED]

    async def handle_event(self, event: DomainEvent) -> None:
        payload = event.payload
        customer_id = payload.get("customer_id")
        escrow_id = payload.get("escrow_id")
        order_id = payload.get("order_id")

        if customer_id is None or (escrow_id is None and order_id is None):
            await log_warning(f"order.delivered без customer_id или ссылки на эскроу: {payload}")
            return

        try:
            if escrow_id is not None:
                result = await self.escrow_service.confirm_delivery(UUID(str(escrow_id)), int(customer_id))
            else:
                result = await self.escrow_service.confirm_delivery_for_order(str(order_id), int(customer_id))
        except (EscrowNotFoundError, EscrowPermissionError, InvalidTransitionError) as e:
            await log_warning(f"order.delivered не применено: {e}")
            return
        except ValueError as e:
            await log_warning(f"order.delivered с некорректными идентификаторами: {e}")
            return

        if result.applied:
            await log_info(f"Эскроу {result.escrow.id} выплачено по доставке", type_msg=TypeMsg.INFO)


class EscrowReleaseTimerWorker(PeriodicWorker):
    """Раз в interval секунд выплачивает просроченные удержания и запускает сверку."""

    def __init__(
        self,
        escrow_service: EscrowService,
        interval: float = 60,
        batch_size: int = 100,
        event_bus: Optional[EventBus] = None,
    ) -> None:
        super().__init__(interval, event_bus)
        self.escrow_service = escrow_service
        self.batch_size = batch_size

    @property
    def name(self) -> str:
        return "escrow_release_timer"

    async def run_once(self) -> None:
        try:
            released = await self.escrow_service.release_due(self.batch_size)
        except EscrowInconsistencyError as e:
            # Уже залогировано как CRITICAL, сверка попробует снова
            await log_error(f"Автовыплата прервана: {e}")
            released = 0

        if released:
            await log_info(f"Автовыплата: выплачено {released} эскроу", type_msg=TypeMsg.INFO)

        await self.escrow_service.reconcile(self.batch_size)
