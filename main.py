import asyncio
import logging
import signal
import sys
from pathlib import Path

sys.path.append(str(Path(__file__).parent))

from aiogram import Bot
from aiogram.client.default import DefaultBotProperties
from aiogram.enums import ParseMode

from app.config import settings
from app.database.crud.subscription_plan import initialize_default_plans
from app.database.database import AsyncSessionLocal, close_db, health_check, init_db
from app.exceptions import ConfigurationError
from app.services.lifecycle_sweeper import LifecycleSweeper
from app.services.notification_delivery_service import NotificationDeliveryService


class GracefulExit:

    def __init__(self):
        self.exit = False

    def exit_gracefully(self, signum, frame):
        logging.getLogger(__name__).info(f"Получен сигнал {signum}. Корректное завершение работы...")
        self.exit = True


async def _stop_task(task: asyncio.Task, name: str, logger: logging.Logger):
    if task and not task.done():
        logger.info(f"ℹ️ Остановка: {name}...")
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass


async def main():
    logging.basicConfig(
        level=getattr(logging, settings.LOG_LEVEL),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[
            logging.FileHandler(settings.LOG_FILE, encoding='utf-8'),
            logging.StreamHandler(sys.stdout)
        ]
    )

    logger = logging.getLogger(__name__)
    logger.info("🚀 Запуск сервиса VPN-аккаунтов 3x-ui")

    killer = GracefulExit()
    signal.signal(signal.SIGINT, killer.exit_gracefully)
    signal.signal(signal.SIGTERM, killer.exit_gracefully)

    sweeper = LifecycleSweeper()
    delivery_service = NotificationDeliveryService()
    sweeper_task = None
    delivery_task = None
    bot = None

    try:
        try:
            settings.validate_panel_settings()
        except ConfigurationError as e:
            logger.warning(f"⚠️ {e.message}. Сверка трафика и создание аккаунтов будут недоступны")

        await init_db()

        db_health = await health_check()
        if db_health["status"] != "healthy":
            raise RuntimeError("База данных недоступна")
        logger.info(f"✅ База данных доступна, задержка {db_health['latency_ms']} мс")

        async with AsyncSessionLocal() as db:
            await initialize_default_plans(db)

        sweeper_task = asyncio.create_task(sweeper.start())

        if settings.is_notification_delivery_enabled():
            bot = Bot(
                token=settings.BOT_TOKEN,
                default=DefaultBotProperties(parse_mode=ParseMode.HTML)
            )
            delivery_task = asyncio.create_task(delivery_service.start(bot))
        else:
            logger.warning("⚠️ BOT_TOKEN не задан, доставка уведомлений отключена")

        logger.info(
            f"✅ Сервис запущен: обход каждые {settings.MONITORING_INTERVAL} мин., "
            f"доставка уведомлений: {'включена' if delivery_task else 'отключена'}"
        )

        while not killer.exit:
            await asyncio.sleep(1)

            if sweeper_task.done():
                exception = sweeper_task.exception()
                if exception:
                    logger.error(f"Обход жизненного цикла завершился с ошибкой: {exception}")
                sweeper.stop()
                sweeper_task = asyncio.create_task(sweeper.start())

            if delivery_task and delivery_task.done():
                exception = delivery_task.exception()
                if exception:
                    logger.error(f"Доставка уведомлений завершилась с ошибкой: {exception}")
                delivery_service.stop()
                delivery_task = asyncio.create_task(delivery_service.start(bot))

    except Exception as e:
        logger.error(f"❌ Критическая ошибка при запуске: {e}")
        raise

    finally:
        logger.info("🛑 Начинается корректное завершение работы...")

        sweeper.stop()
        await _stop_task(sweeper_task, "обход жизненного цикла", logger)

        delivery_service.stop()
        await _stop_task(delivery_task, "доставка уведомлений", logger)

        if bot:
            try:
                await bot.session.close()
                logger.info("✅ Сессия бота закрыта")
            except Exception as e:
                logger.error(f"Ошибка закрытия сессии бота: {e}")

        await close_db()
        logger.info("✅ Завершение работы завершено")


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        print("\n🛑 Сервис остановлен пользователем")
    except Exception as e:
        print(f"❌ Критическая ошибка: {e}")
        sys.exit(1)
