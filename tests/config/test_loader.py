# tests/config/test_loader.py
"""
Unit тесты для загрузчика конфигурации (src/config/loader.py).
"""

import json
import os
from decimal import Decimal
from pathlib import Path
from typing import Any
from unittest.mock import patch

import pytest
from pydantic import ValidationError

from src.config.loader import (
    DatabaseSettings,
    EscrowSettings,
    PaystackSettings,
    RabbitMQSettings,
    RateLimitSettings,
    RedisSettings,
    Settings,
    get_config_path,
    get_project_root,
    load_config_json,
)


class TestPaths:
    """Тесты путей."""

    def test_project_root(self) -> None:
        assert (get_project_root() / "src").is_dir()

    def test_config_path_default(self, monkeypatch) -> None:
        monkeypatch.delenv("APP_CONFIG_PATH", raising=False)
        assert get_config_path() == get_project_root() / "config" / "config.json"

    def test_config_path_from_env(self, monkeypatch, tmp_path: Path) -> None:
        monkeypatch.setenv("APP_CONFIG_PATH", str(tmp_path / "custom.json"))
        assert get_config_path() == tmp_path / "custom.json"


class TestLoadConfigJson:
    """Тесты загрузки config.json."""

    def test_load_strips_comments(self, monkeypatch, tmp_path: Path) -> None:
        config_file = tmp_path / "config.json"
        config_file.write_text(json.dumps({"_comment_db": "секция БД", "DB_HOST": "db"}))
        monkeypatch.setenv("APP_CONFIG_PATH", str(config_file))

        assert load_config_json() == {"DB_HOST": "db"}

    def test_missing_file(self, monkeypatch, tmp_path: Path) -> None:
        monkeypatch.setenv("APP_CONFIG_PATH", str(tmp_path / "missing.json"))
        with pytest.raises(FileNotFoundError):
            load_config_json()

    def test_repository_config_is_valid(self, config_path: Path, monkeypatch) -> None:
        """config/config.json проекта разбирается без ошибок."""
        monkeypatch.setenv("APP_CONFIG_PATH", str(config_path))
        settings = Settings.from_config_json()

        assert settings.escrow.PLATFORM_FEE_PERCENT == Decimal("2.5")
        assert settings.escrow.AUTO_RELEASE_HOURS == 72
        assert "/health" in settings.rate_limit.RATE_LIMIT_EXEMPT_PATHS


class TestSettingsFromDict:
    """Тесты Settings.from_dict."""

    def test_sections(self, mock_config: dict[str, Any], monkeypatch) -> None:
        for name in ("ENVIRONMENT", "COMPONENT_MODE", "DB_HOST", "REDIS_HOST", "RATE_LIMIT_BACKEND", "API_PORT"):
            monkeypatch.delenv(name, raising=False)

        settings = Settings.from_dict(mock_config)

        assert settings.system.PROJECT_NAME == "brillprime_test"
        assert settings.system.COMPONENT_MODE == "api"
        assert settings.service.API_PORT == 9000
        assert settings.database.DB_NAME == "brillprime_test"
        assert settings.redis.REDIS_NAMESPACE == "bp_test"
        assert settings.rabbitmq.RABBITMQ_EXCHANGE == "brillprime.test"
        assert settings.rate_limit.RATE_LIMIT_BACKEND == "memory"
        assert settings.rate_limit.RATE_LIMIT_ROLE_LIMITS["CONSUMER"].max_requests == 5
        assert settings.rate_limit.RATE_LIMIT_ENDPOINT_LIMITS["/api/v1/escrow"].max_requests == 3
        assert settings.escrow.CURRENCY == "NGN"

    def test_env_overrides_host(self, mock_config: dict[str, Any], monkeypatch) -> None:
        monkeypatch.setenv("DB_HOST", "postgres.internal")
        monkeypatch.setenv("RATE_LIMIT_BACKEND", "redis")

        settings = Settings.from_dict(mock_config)

        assert settings.database.DB_HOST == "postgres.internal"
        assert settings.rate_limit.RATE_LIMIT_BACKEND == "redis"

    def test_defaults_for_missing_keys(self) -> None:
        settings = Settings.from_dict({})

        assert settings.escrow.FUNDS_RETRY_ATTEMPTS == 3
        assert settings.rate_limit.RATE_LIMIT_ROLE_LIMITS["GUEST"].max_requests == 20
        assert settings.rate_limit.RATE_LIMIT_ENDPOINT_LIMITS["/api/auth/login"].window_seconds == 900


class TestSectionModels:
    """Тесты отдельных секций."""

    def test_database_dsn(self) -> None:
        db = DatabaseSettings(DB_USER="u", DB_PASSWORD="p", DB_HOST="h", DB_PORT=5433, DB_NAME="n")
        assert db.dsn == "postgresql://u:p@h:5433/n"

    def test_database_password_from_env(self) -> None:
        with patch.dict(os.environ, {"DB_PASSWORD": "from_env"}):
            assert DatabaseSettings(DB_PASSWORD="").DB_PASSWORD == "from_env"

    def test_redis_url(self) -> None:
        with patch.dict(os.environ, {"REDIS_PASSWORD": ""}):
            assert RedisSettings(REDIS_HOST="r", REDIS_DB=2).url == "redis://r:6379/2"
        assert RedisSettings(REDIS_PASSWORD="secret").url.startswith("redis://:secret@")

    def test_rabbitmq_password_env_priority(self) -> None:
        with patch.dict(os.environ, {"RABBITMQ_PASSWORD": "env_pass"}):
            settings = RabbitMQSettings(RABBITMQ_PASSWORD="file_pass")
        assert settings.RABBITMQ_PASSWORD == "env_pass"
        assert "env_pass@" in settings.url

    def test_rate_limit_backend_validated(self) -> None:
        assert RateLimitSettings(RATE_LIMIT_BACKEND="MEMORY").RATE_LIMIT_BACKEND == "memory"
        with pytest.raises(ValidationError):
            RateLimitSettings(RATE_LIMIT_BACKEND="memcached")

    def test_rate_limit_rule_positive(self) -> None:
        with pytest.raises(ValidationError):
            RateLimitSettings(RATE_LIMIT_ROLE_LIMITS={"ADMIN": {"max_requests": 0, "window_seconds": 60}})

    def test_paystack_configured(self) -> None:
        with patch.dict(os.environ, {"PAYSTACK_SECRET_KEY": ""}):
            assert not PaystackSettings().is_configured
        assert PaystackSettings(PAYSTACK_SECRET_KEY="sk_live").is_configured

    def test_fee_percent_is_exact_decimal(self) -> None:
        assert EscrowSettings(PLATFORM_FEE_PERCENT=2.5).PLATFORM_FEE_PERCENT == Decimal("2.5")
        assert EscrowSettings(PLATFORM_FEE_PERCENT=0.1).PLATFORM_FEE_PERCENT == Decimal("0.1")
