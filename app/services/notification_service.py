import logging
from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.database.crud.notification import (
    add_notification,
    get_last_notification,
    get_unsent_notifications as _get_unsent_notifications,
    get_user_notifications as _get_user_notifications,
    mark_as_read as _mark_as_read,
    mark_as_sent as _mark_as_sent,
)
from app.database.models import Notification, NotificationType

logger = logging.getLogger(__name__)


VPN_EXPIRED_MESSAGE = (
    "🚨 Ваш VPN-аккаунт истек. Продлите подписку, чтобы продолжить пользоваться сервисом."
)
TRAFFIC_LIMIT_EXCEEDED_MESSAGE = (
    "⚠️ Вы израсходовали весь доступный трафик. Пожалуйста, продлите текущий тариф "
    "или выберите новый с помощью команды /tariffs."
)


def get_day_word(days: int) -> str:
    if 11 <= days % 100 <= 19:
        return "дней"
    last_digit = days % 10
    if last_digit == 1:
        return "день"
    if 2 <= last_digit <= 4:
        return "дня"
    return "дней"


def expires_soon_type(days_left: int) -> str:
    return f"{NotificationType.VPN_EXPIRES_SOON.value}_{days_left}day"


def expires_soon_message(days_left: int) -> str:
    return (
        f"⚠️ Ваш VPN-аккаунт истекает через {days_left} {get_day_word(days_left)}. "
        "Не забудьте продлить подписку!"
    )


async def create_notification(
    db: AsyncSession,
    user_id: int,
    notification_type: str,
    message: str,
    subscription_id: Optional[int] = None,
    now: Optional[datetime] = None,
) -> Optional[Notification]:
    """
    Сохраняет уведомление, если за последние NOTIFICATION_COOLDOWN_HOURS
    не было уведомления того же типа для пользователя (и подписки, если задана).
    Возвращает None, если уведомление подавлено.
    """
    current_time = now or datetime.utcnow()
    cooldown = timedelta(hours=settings.NOTIFICATION_COOLDOWN_HOURS)

    previous = await get_last_notification(db, user_id, notification_type, subscription_id)
    if previous and previous.created_at and current_time - previous.created_at < cooldown:
        logger.debug(
            f"🔄 Пропускаем уведомление {notification_type} для пользователя {user_id}: "
            f"уже отправлялось {previous.created_at}"
        )
        return None

    notification = await add_notification(
        db,
        user_id=user_id,
        notification_type=notification_type,
        message=message,
        subscription_id=subscription_id,
        created_at=current_time,
    )
    logger.info(f"📝 Создано уведомление {notification_type} для пользователя {user_id}")
    return notification


async def notify_vpn_expired(
    db: AsyncSession,
    user_id: int,
    now: Optional[datetime] = None,
) -> Optional[Notification]:
    return await create_notification(
        db, user_id, NotificationType.VPN_EXPIRED.value, VPN_EXPIRED_MESSAGE, now=now
    )


async def notify_traffic_limit_exceeded(
    db: AsyncSession,
    user_id: int,
    now: Optional[datetime] = None,
) -> Optional[Notification]:
    return await create_notification(
        db,
        user_id,
        NotificationType.TRAFFIC_LIMIT_EXCEEDED.value,
        TRAFFIC_LIMIT_EXCEEDED_MESSAGE,
        now=now,
    )


async def notify_expires_soon(
    db: AsyncSession,
    user_id: int,
    days_left: int,
    now: Optional[datetime] = None,
) -> Optional[Notification]:
    return await create_notification(
        db,
        user_id,
        expires_soon_type(days_left),
        expires_soon_message(days_left),
        now=now,
    )


async def get_unsent_notifications(db: AsyncSession, limit: int = 100) -> List[Notification]:
    return await _get_unsent_notifications(db, limit=limit)


async def mark_as_sent(db: AsyncSession, notification_id: int) -> bool:
    return await _mark_as_sent(db, notification_id)


async def mark_as_read(db: AsyncSession, notification_id: int) -> bool:
    return await _mark_as_read(db, notification_id)


async def get_user_notifications(db: AsyncSession, user_id: int, limit: int = 20) -> List[Notification]:
    return await _get_user_notifications(db, user_id, limit=limit)
