# src/common/__init__.py
"""
Общие утилиты, константы и логгер.
"""

from src.common.logger import (
    get_logger,
    log_info,
    log_error,
    log_warning,
    log_debug,
    log_critical,
)
from src.common.constants import TypeMsg
from src.common.locks import KeyedLock
from src.common.retry import retry_async

__all__ = [
    "get_logger",
    "log_info",
    "log_error",
    "log_warning",
    "log_debug",
    "log_critical",
    "TypeMsg",
    "KeyedLock",
    "retry_async",
]
