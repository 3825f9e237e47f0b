import logging
from datetime import datetime
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from app.database.models import Notification

logger = logging.getLogger(__name__)


async def get_last_notification(
    db: AsyncSession,
    user_id: int,
    notification_type: str,
    subscription_id: Optional[int] = None,
) -> Optional[Notification]:
    query = select(Notification).where(
        Notification.user_id == user_id,
        Notification.type == notification_type,
    )
    if subscription_id is not None:
        query = query.where(Notification.subscription_id == subscription_id)

    result = await db.execute(
        query.order_by(Notification.created_at.desc(), Notification.id.desc()).limit(1)
    )
    return result.scalar_one_or_none()


async def add_notification(
    db: AsyncSession,
    user_id: int,
    notification_type: str,
    message: str,
    subscription_id: Optional[int] = None,
    created_at: Optional[datetime] = None,
) -> Notification:
    notification = Notification(
        user_id=user_id,
        type=notification_type,
        subscription_id=subscription_id,
        message=message,
        is_read=False,
        is_sent=False,
        created_at=created_at or datetime.utcnow(),
    )
    db.add(notification)
    await db.commit()
    await db.refresh(notification)
    return notification


async def get_unsent_notifications(db: AsyncSession, limit: int = 100) -> List[Notification]:
    result = await db.execute(
        select(Notification)
        .options(selectinload(Notification.user))
        .where(
            Notification.is_sent.is_(False),
            Notification.is_read.is_(False),
        )
        .order_by(Notification.created_at, Notification.id)
        .limit(limit)
    )
    return list(result.scalars().all())


async def mark_as_sent(db: AsyncSession, notification_id: int) -> bool:
    notification = await db.get(Notification, notification_id)
    if not notification:
        return False
    notification.is_sent = True
    await db.commit()
    return True


async def mark_as_read(db: AsyncSession, notification_id: int) -> bool:
    notification = await db.get(Notification, notification_id)
    if not notification:
        return False
    notification.is_read = True
    await db.commit()
    return True


async def get_user_notifications(db: AsyncSession, user_id: int, limit: int = 20) -> List[Notification]:
    result = await db.execute(
        select(Notification)
        .where(Notification.user_id == user_id)
        .order_by(Notification.created_at.desc(), Notification.id.desc())
        .limit(limit)
    )
    return list(result.scalars().all())
