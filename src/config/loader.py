# src/config/loader.py
"""
Загрузчик конфигурации проекта.
Единственный источник истины: config/config.json.
Секретные данные переопределяются из переменных окружения.
"""

from __future__ import annotations

import json
import os
from decimal import Decimal
from functools import lru_cache
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


# =============================================================================
# ОПРЕДЕЛЕНИЕ ПУТЕЙ
# =============================================================================

def get_project_root() -> Path:
    """Возвращает корневую директорию проекта."""
    return Path(__file__).parent.parent.parent


def get_config_path() -> Path:
    """Возвращает путь к файлу конфигурации."""
    env_path = os.getenv("APP_CONFIG_PATH")
    if env_path:
        return Path(env_path)
    return get_project_root() / "config" / "config.json"


def load_config_json() -> dict[str, Any]:
    """Загружает config.json и возвращает словарь без ключей-комментариев."""
    config_path = get_config_path()
    if not config_path.exists():
        raise FileNotFoundError(f"Файл конфигурации не найден: {config_path}")

    with open(config_path, "r", encoding="utf-8") as f:
        data = json.load(f)

    return {k: v for k, v in data.items() if not k.startswith("_comment_")}


# =============================================================================
# PYDANTIC МОДЕЛИ КОНФИГУРАЦИИ
# =============================================================================

class SystemSettings(BaseModel):
    """Системные настройки."""
    PROJECT_NAME: str = "brillprime"
    VERSION: str = "1.0.0"
    DEBUG: bool = True
    ENVIRONMENT: str = "development"
    COMPONENT_MODE: str = "all"


class ServiceSettings(BaseModel):
    """Настройки HTTP-сервиса платежей."""
    API_HOST: str = "0.0.0.0"
    API_PORT: int = 8087


class LoggingSettings(BaseModel):
    """Настройки логирования."""
    LOG_LEVEL: str = "DEBUG"
    LOG_FORMAT: str = "colored"
    LOG_TO_FILE: bool = False
    LOG_FILE_PATH: str = "logs/app.log"
    LOG_MAX_BYTES: int = 10485760
    LOG_BACKUP_COUNT: int = 5


class DatabaseSettings(BaseModel):
    """Настройки PostgreSQL."""
    DB_HOST: str = "localhost"
    DB_PORT: int = 5432
    DB_NAME: str = "brillprime"
    DB_USER: str = "postgres"
    DB_PASSWORD: str = ""
    DB_MIN_POOL_SIZE: int = 5
    DB_MAX_POOL_SIZE: int = 20
    DB_COMMAND_TIMEOUT: int = 60
    DB_RETRY_ATTEMPTS: int = 3
    DB_RETRY_DELAY: float = 1.0

    @field_validator("DB_PASSWORD", mode="before")
    @classmethod
    def get_from_env(cls, v: str) -> str:
        """Получает пароль из переменных окружения."""
        if not v:
            return os.getenv("DB_PASSWORD", "")
        return v

    @property
    def dsn(self) -> str:
        """Возвращает DSN для подключения к PostgreSQL."""
        return (
            f"postgresql://{self.DB_USER}:{self.DB_PASSWORD}"
            f"@{self.DB_HOST}:{self.DB_PORT}/{self.DB_NAME}"
        )


class RedisSettings(BaseModel):
    """Настройки Redis."""
    REDIS_HOST: str = "localhost"
    REDIS_PORT: int = 6379
    REDIS_DB: int = 0
    REDIS_PASSWORD: str = ""
    REDIS_NAMESPACE: str = "brillprime"
    REDIS_MAX_CONNECTIONS: int = 50
    REDIS_SOCKET_TIMEOUT: float = 2.0

    @field_validator("REDIS_PASSWORD", mode="before")
    @classmethod
    def get_from_env(cls, v: str) -> str:
        """Получает пароль из переменных окружения."""
        if not v:
            return os.getenv("REDIS_PASSWORD", "")
        return v

    @property
    def url(self) -> str:
        """Возвращает URL для подключения к Redis."""
        auth = f":{self.REDIS_PASSWORD}@" if self.REDIS_PASSWORD else ""
        return f"redis://{auth}{self.REDIS_HOST}:{self.REDIS_PORT}/{self.REDIS_DB}"


class RabbitMQSettings(BaseModel):
    """Настройки RabbitMQ."""
    RABBITMQ_HOST: str = "localhost"
    RABBITMQ_PORT: int = 5672
    RABBITMQ_USER: str = "guest"
    RABBITMQ_PASSWORD: str = "guest"
    RABBITMQ_VHOST: str = "/"
    RABBITMQ_EXCHANGE: str = "brillprime.events"
    RABBITMQ_PREFETCH_COUNT: int = 10

    @field_validator("RABBITMQ_PASSWORD", mode="before")
    @classmethod
    def get_from_env(cls, v: str) -> str:
        """Пароль из окружения имеет приоритет."""
        env_pass = os.getenv("RABBITMQ_PASSWORD", "")
        if env_pass:
            return env_pass
        return v

    @property
    def url(self) -> str:
        """Возвращает URL для подключения к RabbitMQ."""
        return (
            f"amqp://{self.RABBITMQ_USER}:{self.RABBITMQ_PASSWORD}"
            f"@{self.RABBITMQ_HOST}:{self.RABBITMQ_PORT}{self.RABBITMQ_VHOST}"
        )


class RateLimitRuleSettings(BaseModel):
    """Лимит: не более max_requests за window_seconds."""
    max_requests: int = Field(..., gt=0)
    window_seconds: int = Field(..., gt=0)


def _default_role_limits() -> dict[str, RateLimitRuleSettings]:
    return {
        "ADMIN": RateLimitRuleSettings(max_requests=1000, window_seconds=60),
        "MERCHANT": RateLimitRuleSettings(max_requests=200, window_seconds=60),
        "DRIVER": RateLimitRuleSettings(max_requests=300, window_seconds=60),
        "CONSUMER": RateLimitRuleSettings(max_requests=100, window_seconds=60),
        "GUEST": RateLimitRuleSettings(max_requests=20, window_seconds=60),
    }


def _default_endpoint_limits() -> dict[str, RateLimitRuleSettings]:
    return {
        "/api/auth/login": RateLimitRuleSettings(max_requests=5, window_seconds=15 * 60),
        "/api/auth/register": RateLimitRuleSettings(max_requests=3, window_seconds=60 * 60),
        "/api/payments": RateLimitRuleSettings(max_requests=10, window_seconds=60),
        "/api/wallet/fund": RateLimitRuleSettings(max_requests=5, window_seconds=60),
        "/api/verification": RateLimitRuleSettings(max_requests=5, window_seconds=60 * 60),
    }


class RateLimitSettings(BaseModel):
    """Настройки ограничения частоты запросов."""
    RATE_LIMIT_ENABLED: bool = True
    RATE_LIMIT_BACKEND: str = "redis"  # redis | memory
    RATE_LIMIT_KEY_PREFIX: str = "rl"
    RATE_LIMIT_STORE_TIMEOUT: float = 2.0
    RATE_LIMIT_ROLE_LIMITS: dict[str, RateLimitRuleSettings] = Field(default_factory=_default_role_limits)
    RATE_LIMIT_ENDPOINT_LIMITS: dict[str, RateLimitRuleSettings] = Field(default_factory=_default_endpoint_limits)
    RATE_LIMIT_EXEMPT_PATHS: list[str] = Field(default_factory=lambda: ["/health", "/api/v1/webhooks/"])

    @field_validator("RATE_LIMIT_BACKEND")
    @classmethod
    def validate_backend(cls, v: str) -> str:
        value = v.lower()
        if value not in ("redis", "memory"):
            raise ValueError(f"Неизвестный backend счётчиков: {v}")
        return value


class PaystackSettings(BaseModel):
    """Настройки платёжного шлюза Paystack."""
    PAYSTACK_SECRET_KEY: str = ""
    PAYSTACK_BASE_URL: str = "https://api.paystack.co"
    PAYSTACK_TIMEOUT: float = 10.0
    PAYSTACK_CALLBACK_URL: str | None = None

    @field_validator("PAYSTACK_SECRET_KEY", mode="before")
    @classmethod
    def get_from_env(cls, v: str) -> str:
        """Получает секретный ключ из переменных окружения."""
        if not v:
            return os.getenv("PAYSTACK_SECRET_KEY", "")
        return v

    @property
    def is_configured(self) -> bool:
        return bool(self.PAYSTACK_SECRET_KEY)


class EscrowSettings(BaseModel):
    """Настройки эскроу."""
    PLATFORM_FEE_PERCENT: Decimal = Decimal("2.5")
    AUTO_RELEASE_HOURS: int = 72
    CURRENCY: str = "NGN"
    AMOUNT_MINOR_UNITS: int = 100  # kobo в найре
    RELEASE_SWEEP_INTERVAL: int = 60
    RELEASE_SWEEP_BATCH: int = 100
    FUNDS_RETRY_ATTEMPTS: int = 3
    FUNDS_RETRY_BASE_DELAY: float = 0.5
    FUNDS_CALL_TIMEOUT: float = 10.0

    @field_validator("PLATFORM_FEE_PERCENT", mode="before")
    @classmethod
    def parse_percent(cls, v: Any) -> Decimal:
        """float из JSON переводим в Decimal через строку, без двоичных хвостов."""
        return Decimal(str(v))


# =============================================================================
# ГЛАВНЫЙ КЛАСС НАСТРОЕК
# =============================================================================

class Settings(BaseSettings):
    """
    Главный класс настроек приложения.
    Агрегирует все секции конфигурации.
    """
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    system: SystemSettings = Field(default_factory=SystemSettings)
    service: ServiceSettings = Field(default_factory=ServiceSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    redis: RedisSettings = Field(default_factory=RedisSettings)
    rabbitmq: RabbitMQSettings = Field(default_factory=RabbitMQSettings)
    rate_limit: RateLimitSettings = Field(default_factory=RateLimitSettings)
    paystack: PaystackSettings = Field(default_factory=PaystackSettings)
    escrow: EscrowSettings = Field(default_factory=EscrowSettings)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Settings":
        """
        Создаёт Settings из плоского словаря config.json.
        Хосты и секреты переопределяются из переменных окружения.
        """
        def pick(model: type[BaseModel], env_keys: tuple[str, ...] = ()) -> dict[str, Any]:
            values: dict[str, Any] = {}
            for name in model.model_fields:
                if name in env_keys and os.getenv(name):
                    values[name] = os.getenv(name)
                elif name in data:
                    values[name] = data[name]
            return values

        return cls(
            system=SystemSettings(
                **pick(SystemSettings, ("ENVIRONMENT", "COMPONENT_MODE")),
            ),
            service=ServiceSettings(**pick(ServiceSettings, ("API_HOST", "API_PORT"))),
            logging=LoggingSettings(**pick(LoggingSettings, ("LOG_LEVEL",))),
            database=DatabaseSettings(
                **pick(DatabaseSettings, ("DB_HOST", "DB_PORT", "DB_NAME", "DB_USER", "DB_PASSWORD")),
            ),
            redis=RedisSettings(
                **pick(RedisSettings, ("REDIS_HOST", "REDIS_PORT", "REDIS_PASSWORD")),
            ),
            rabbitmq=RabbitMQSettings(
                **pick(RabbitMQSettings, ("RABBITMQ_HOST", "RABBITMQ_PORT", "RABBITMQ_USER", "RABBITMQ_PASSWORD")),
            ),
            rate_limit=RateLimitSettings(
                **pick(RateLimitSettings, ("RATE_LIMIT_BACKEND",)),
            ),
            paystack=PaystackSettings(
                **pick(PaystackSettings, ("PAYSTACK_SECRET_KEY", "PAYSTACK_BASE_URL")),
            ),
            escrow=EscrowSettings(**pick(EscrowSettings)),
        )

    @classmethod
    def from_config_json(cls) -> "Settings":
        """Создаёт объект Settings из config.json."""
        return cls.from_dict(load_config_json())


@lru_cache()
def get_settings() -> Settings:
    """
    Возвращает синглтон настроек приложения.
    Использует кэширование для производительности.
    """
    from dotenv import load_dotenv

    env_path = get_project_root() / ".env"
    if env_path.exists():
        load_dotenv(env_path)

    return Settings.from_config_json()


# Экспорт синглтона для точек входа
settings = get_settings()
