import asyncio
import logging
from typing import Optional

from aiogram import Bot
from aiogram.exceptions import TelegramBadRequest, TelegramForbiddenError
from sqlalchemy.ext.asyncio import async_sessionmaker

from app.config import settings
from app.database.database import AsyncSessionLocal
from app.database.models import Notification
from app.services.notification_service import get_unsent_notifications, mark_as_sent

logger = logging.getLogger(__name__)


UNREACHABLE_MARKERS = (
    "chat not found",
    "user is deactivated",
    "bot was blocked by the user",
    "bot can't initiate conversation",
    "user not found",
)


def _is_unreachable_error(error: TelegramBadRequest) -> bool:
    message = str(error).lower()
    return any(marker in message for marker in UNREACHABLE_MARKERS)


class NotificationDeliveryService:

    def __init__(self, session_factory: async_sessionmaker = None, batch_size: int = 100):
        self.session_factory = session_factory or AsyncSessionLocal
        self.batch_size = batch_size
        self.is_running = False

    async def _send(self, bot: Bot, notification: Notification) -> bool:
        """True, если уведомление больше не нужно отправлять"""
        user = notification.user
        if not user:
            logger.warning(f"⚠️ Пользователь уведомления {notification.id} не найден")
            return True

        try:
            await bot.send_message(
                chat_id=user.telegram_id,
                text=notification.message,
                parse_mode="HTML",
            )
            return True
        except TelegramForbiddenError:
            logger.warning(f"⚠️ Пользователь {user.telegram_id} недоступен: бот заблокирован")
            return True
        except TelegramBadRequest as e:
            if _is_unreachable_error(e):
                logger.warning(f"⚠️ Пользователь {user.telegram_id} недоступен: {e}")
                return True
            logger.error(f"❌ Ошибка отправки уведомления {notification.id}: {e}")
            return False
        except Exception as e:
            logger.error(f"❌ Ошибка отправки уведомления {notification.id}: {e}")
            return False

    async def deliver_pending(self, bot: Bot) -> int:
        delivered = 0

        async with self.session_factory() as db:
            notifications = await get_unsent_notifications(db, limit=self.batch_size)
            if not notifications:
                return 0

            logger.info(f"🔄 Отправка {len(notifications)} уведомлений")

            for notification in notifications:
                if await self._send(bot, notification):
                    await mark_as_sent(db, notification.id)
                    delivered += 1

        return delivered

    async def start(self, bot: Bot, interval: Optional[int] = None):
        if self.is_running:
            logger.warning("Доставка уведомлений уже запущена")
            return

        self.is_running = True
        interval = interval or settings.NOTIFICATION_DELIVERY_INTERVAL
        logger.info("🔄 Запуск доставки уведомлений")

        while self.is_running:
            try:
                await self.deliver_pending(bot)
            except Exception as e:
                logger.error(f"Ошибка в цикле доставки уведомлений: {e}")
            await asyncio.sleep(interval)

    def stop(self):
        self.is_running = False
        logger.info("ℹ️ Доставка уведомлений остановлена")
