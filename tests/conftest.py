"""Глобальные фикстуры и настройки окружения для тестов."""

import os
import sys
from datetime import datetime
from pathlib import Path

import pytest

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

# Параметры окружения выставляются до импорта app.config
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("XUI_API_URL", "https://panel.example.com:2053")
os.environ.setdefault("XUI_API_USERNAME", "admin")
os.environ.setdefault("XUI_API_PASSWORD", "secret")
os.environ.setdefault("XUI_CLIENT_VERIFY_DELAY_SECONDS", "0")
os.environ.setdefault("BOT_TOKEN", "test-token")

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine  # noqa: E402
from sqlalchemy.pool import NullPool  # noqa: E402

from app.config import settings  # noqa: E402
from app.database.models import Base  # noqa: E402


@pytest.fixture
async def engine(tmp_path):
    """Отдельная SQLite база на каждый тест: сервисы открывают несколько сессий"""
    test_engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'test.db'}",
        poolclass=NullPool,
    )
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield test_engine

    await test_engine.dispose()


@pytest.fixture
def session_factory(engine) -> async_sessionmaker:
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def fixed_datetime() -> datetime:
    """Фиксированная отметка времени (наивное UTC, как в моделях)."""
    return datetime(2024, 1, 1, 12, 0, 0)


@pytest.fixture(autouse=True)
def panel_settings(monkeypatch):
    monkeypatch.setattr(settings, "XUI_API_URL", "https://panel.example.com:2053")
    monkeypatch.setattr(settings, "XUI_API_USERNAME", "admin")
    monkeypatch.setattr(settings, "XUI_API_PASSWORD", "secret")
    monkeypatch.setattr(settings, "XUI_DEFAULT_INBOUND_ID", 5)
    monkeypatch.setattr(settings, "XUI_CLIENT_VERIFY_DELAY_SECONDS", 0)
    monkeypatch.setattr(settings, "RESET_TRAFFIC_ON_REACTIVATE", False)
    monkeypatch.setattr(settings, "NOTIFICATION_COOLDOWN_HOURS", 12)
    monkeypatch.setattr(settings, "EXPIRY_WARNING_DAYS", 3)
    monkeypatch.setattr(settings, "SWEEP_SYNC_TRAFFIC", True)
    monkeypatch.setattr(settings, "SWEEP_CONCURRENCY", 1)
    return settings
