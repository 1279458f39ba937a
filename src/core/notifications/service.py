# src/core/notifications/service.py
"""
Сервис уведомлений.
Публикует push-сообщения по топикам: user.<id> и admin.dashboard.
Доставку до клиентов выполняет транспортный слой, подписанный на шину.
"""

from __future__ import annotations

from typing import Any, Protocol

from src.common.constants import ADMIN_DASHBOARD_TOPIC, TypeMsg, user_topic
from src.common.logger import log_error, log_info
from src.infra.event_bus import DomainEvent, EventBus


class Notifier(Protocol):
    """Реестр рассылки: публикация сообщения в топик."""

    async def publish(self, topic: str, payload: dict[str, Any]) -> bool:
        ...


class EventBusNotifier:
    """
    Notifier поверх шины событий.
    Топик уходит в routing key события, ошибки публикации не пробрасываются.
    """

    def __init__(self, event_bus: EventBus) -> None:
        self._event_bus = event_bus

    async def publish(self, topic: str, payload: dict[str, Any]) -> bool:
        try:
            published = await self._event_bus.publish(DomainEvent(event_type=topic, payload=payload))
        except Exception as e:
            await log_error(f"Ошибка отправки уведомления в {topic}: {e}")
            return False

        if published:
            await log_info(
                f"Уведомление поставлено в очередь: {topic}, type={payload.get('type')}",
                type_msg=TypeMsg.DEBUG,
            )
        return bool(published)

    async def notify_user(self, user_id: int, payload: dict[str, Any]) -> bool:
        return await self.publish(user_topic(user_id), payload)

    async def notify_admins(self, payload: dict[str, Any]) -> bool:
        return await self.publish(ADMIN_DASHBOARD_TOPIC, payload)
