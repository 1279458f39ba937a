# src/core/notifications/__init__.py
"""
Домен уведомлений.
"""

from src.core.notifications.service import EventBusNotifier, Notifier

__all__ = [
    "EventBusNotifier",
    "Notifier",
]
