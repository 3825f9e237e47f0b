import logging
import os
from pathlib import Path
from typing import Dict, List, Optional
from urllib.parse import urlparse

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings

from app.exceptions import ConfigurationError


logger = logging.getLogger(__name__)


class Settings(BaseSettings):

    BOT_TOKEN: Optional[str] = None
    ADMIN_IDS: str = ""

    DATABASE_URL: Optional[str] = None

    POSTGRES_HOST: str = "postgres"
    POSTGRES_PORT: int = 5432
    POSTGRES_DB: str = "xui_vpn_bot"
    POSTGRES_USER: str = "xui_vpn_user"
    POSTGRES_PASSWORD: str = "secure_password_123"

    SQLITE_PATH: str = "./data/bot.db"

    DATABASE_MODE: str = "auto"

    # 3x-ui панель
    XUI_API_URL: Optional[str] = None
    XUI_API_USERNAME: Optional[str] = None
    XUI_API_PASSWORD: Optional[str] = None
    XUI_DEFAULT_INBOUND_ID: int = 5
    XUI_AUTH_MODE: str = "cookie"  # cookie или bearer
    XUI_REQUEST_TIMEOUT: int = 10
    XUI_CLIENT_VERIFY_DELAY_SECONDS: float = 2.0
    XUI_VERIFY_SSL: bool = True

    # Сбрасывать ли израсходованный трафик при реактивации аккаунта
    RESET_TRAFFIC_ON_REACTIVATE: bool = False

    NOTIFICATION_COOLDOWN_HOURS: int = 12
    EXPIRY_WARNING_DAYS: int = 3
    NOTIFICATION_DELIVERY_INTERVAL: int = 60

    MONITORING_INTERVAL: int = 60
    SWEEP_SYNC_TRAFFIC: bool = True
    SWEEP_CONCURRENCY: int = 5

    LOG_LEVEL: str = "INFO"
    LOG_FILE: str = Field(default="./logs/bot.log")
    DEBUG: bool = False

    @field_validator('XUI_AUTH_MODE', mode='before')
    @classmethod
    def normalize_auth_mode(cls, value: Optional[str]) -> str:
        if not value:
            return "cookie"

        normalized = str(value).strip().lower()
        aliases = {
            "cookie": "cookie",
            "session": "cookie",
            "bearer": "bearer",
            "token": "bearer",
            "jwt": "bearer",
        }

        mode = aliases.get(normalized, normalized)
        if mode not in {"cookie", "bearer"}:
            raise ValueError("XUI_AUTH_MODE must be one of: cookie, bearer")
        return mode

    @field_validator('XUI_REQUEST_TIMEOUT', 'SWEEP_CONCURRENCY', mode='before')
    @classmethod
    def ensure_positive_int(cls, value: Optional[int]) -> int:
        try:
            if value is None:
                return 1
            return max(1, int(value))
        except (TypeError, ValueError):
            return 1

    @field_validator('LOG_FILE', mode='before')
    @classmethod
    def ensure_log_dir(cls, v):
        log_path = Path(v)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        return str(log_path)

    def get_database_url(self) -> str:
        if self.DATABASE_URL and self.DATABASE_URL.strip():
            return self.DATABASE_URL

        mode = self.DATABASE_MODE.lower()

        if mode == "sqlite":
            return self._get_sqlite_url()
        elif mode == "postgresql":
            return self._get_postgresql_url()
        else:
            if os.getenv("DOCKER_ENV") == "true" or os.path.exists("/.dockerenv"):
                return self._get_postgresql_url()
            return self._get_sqlite_url()

    def _get_sqlite_url(self) -> str:
        sqlite_path = Path(self.SQLITE_PATH)
        sqlite_path.parent.mkdir(parents=True, exist_ok=True)
        return f"sqlite+aiosqlite:///{sqlite_path.absolute()}"

    def _get_postgresql_url(self) -> str:
        return (f"postgresql+asyncpg://{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}"
                f"@{self.POSTGRES_HOST}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}")

    def is_admin(self, telegram_id: int) -> bool:
        return telegram_id in self.get_admin_ids()

    def get_admin_ids(self) -> List[int]:
        try:
            if not self.ADMIN_IDS.strip():
                return []
            return [int(x.strip()) for x in self.ADMIN_IDS.split(',') if x.strip()]
        except (ValueError, AttributeError):
            return []

    def get_xui_auth_params(self) -> Dict[str, Optional[str]]:
        return {
            "base_url": self.XUI_API_URL,
            "username": self.XUI_API_USERNAME,
            "password": self.XUI_API_PASSWORD,
            "auth_mode": self.XUI_AUTH_MODE,
        }

    def get_xui_server_address(self) -> str:
        """Публичный адрес сервера берется из хоста URL панели"""
        try:
            hostname = urlparse(self.XUI_API_URL or "").hostname
        except ValueError:
            hostname = None
        return hostname or "localhost"

    def validate_panel_settings(self) -> None:
        missing = [
            name for name in ("XUI_API_URL", "XUI_API_USERNAME", "XUI_API_PASSWORD")
            if not (getattr(self, name) or "").strip()
        ]
        if missing:
            raise ConfigurationError(
                f"Отсутствуют настройки для подключения к 3x-ui API: {', '.join(missing)}"
            )

        parsed = urlparse(self.XUI_API_URL)
        if parsed.scheme not in ("http", "https") or not parsed.hostname:
            raise ConfigurationError(f"Некорректный XUI_API_URL: {self.XUI_API_URL}")

        if self.XUI_DEFAULT_INBOUND_ID <= 0:
            raise ConfigurationError(
                f"Некорректный XUI_DEFAULT_INBOUND_ID: {self.XUI_DEFAULT_INBOUND_ID}"
            )

    def is_notification_delivery_enabled(self) -> bool:
        return bool(self.BOT_TOKEN and self.BOT_TOKEN.strip())

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore"
    }


settings = Settings()
