import logging
import time

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.pool import NullPool, AsyncAdaptedQueuePool

from app.config import settings
from app.database.models import Base

logger = logging.getLogger(__name__)


DATABASE_URL = settings.get_database_url()

if DATABASE_URL.startswith("sqlite"):
    poolclass = NullPool
    pool_kwargs = {}
    engine_options = {}
else:
    poolclass = AsyncAdaptedQueuePool
    pool_kwargs = {
        "pool_size": 10,
        "max_overflow": 20,
        "pool_timeout": 30,
        "pool_recycle": 3600,
        "pool_pre_ping": True,
        "pool_reset_on_return": "rollback",
    }
    engine_options = {
        "connect_args": {
            "server_settings": {
                "application_name": "xui_vpn_bot",
                "statement_timeout": "60000",
            },
            "command_timeout": 60,
            "timeout": 10,
        },
        "execution_options": {"isolation_level": "READ COMMITTED"},
    }

engine = create_async_engine(
    DATABASE_URL,
    poolclass=poolclass,
    echo=settings.DEBUG,
    future=True,
    **pool_kwargs,
    **engine_options,
)

AsyncSessionLocal = async_sessionmaker(
    bind=engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=False,
    autocommit=False,
)


async def init_db():
    """Создает таблицы, если их еще нет"""
    logger.info("🚀 Создание таблиц базы данных...")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    logger.info("✅ База данных успешно инициализирована")


async def health_check() -> dict:
    try:
        async with AsyncSessionLocal() as session:
            start = time.time()
            await session.execute(text("SELECT 1"))
            latency = (time.time() - start) * 1000
        return {"status": "healthy", "latency_ms": round(latency, 2)}
    except Exception as e:
        logger.error(f"❌ Database health check failed: {e}")
        return {"status": "unhealthy", "latency_ms": None}


async def close_db():
    logger.info("🔄 Закрытие соединений с БД...")
    await engine.dispose()
    logger.info("✅ Все подключения к базе данных закрыты")
