# src/services/__init__.py
"""
HTTP-сервисы приложения.

Сервисы:
- payments: эскроу, споры, кошельки, вебхуки Paystack
"""

__all__: list[str] = []
