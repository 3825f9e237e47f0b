import logging
from datetime import datetime
from typing import List, Optional

from sqlalchemy import select, and_
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from app.database.models import Subscription, SubscriptionStatus
from app.services.account_state import apply_subscription_status

logger = logging.getLogger(__name__)


async def get_subscription_by_id(db: AsyncSession, subscription_id: int) -> Optional[Subscription]:
    result = await db.execute(
        select(Subscription)
        .options(selectinload(Subscription.plan))
        .where(Subscription.id == subscription_id)
    )
    return result.scalar_one_or_none()


async def get_active_subscription(db: AsyncSession, user_id: int) -> Optional[Subscription]:
    result = await db.execute(
        select(Subscription)
        .options(selectinload(Subscription.plan))
        .where(
            and_(
                Subscription.user_id == user_id,
                Subscription.status == SubscriptionStatus.ACTIVE.value,
            )
        )
        .order_by(Subscription.created_at.desc(), Subscription.id.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def get_user_subscriptions(db: AsyncSession, user_id: int) -> List[Subscription]:
    result = await db.execute(
        select(Subscription)
        .options(selectinload(Subscription.plan))
        .where(Subscription.user_id == user_id)
        .order_by(Subscription.created_at.desc(), Subscription.id.desc())
    )
    return list(result.scalars().all())


async def create_subscription(
    db: AsyncSession,
    user_id: int,
    plan_id: int,
    expires_at: datetime,
    created_at: Optional[datetime] = None,
    commit: bool = True,
) -> Subscription:
    current_time = created_at or datetime.utcnow()
    subscription = Subscription(
        user_id=user_id,
        plan_id=plan_id,
        status=SubscriptionStatus.ACTIVE.value,
        created_at=current_time,
        expires_at=expires_at,
        updated_at=current_time,
    )
    db.add(subscription)

    if commit:
        await db.commit()
        await db.refresh(subscription)
    else:
        await db.flush()

    logger.info(f"✅ Создана подписка для пользователя {user_id} до {expires_at}")
    return subscription


async def cancel_subscription(
    db: AsyncSession,
    subscription: Subscription,
    now: Optional[datetime] = None,
    commit: bool = True,
) -> Subscription:
    apply_subscription_status(subscription, SubscriptionStatus.CANCELED, now=now)
    if commit:
        await db.commit()
    return subscription


async def get_expired_active_subscriptions(db: AsyncSession, now: datetime) -> List[Subscription]:
    result = await db.execute(
        select(Subscription).where(
            and_(
                Subscription.status == SubscriptionStatus.ACTIVE.value,
                Subscription.expires_at < now,
            )
        )
    )
    return list(result.scalars().all())


async def expire_subscription(
    db: AsyncSession,
    subscription: Subscription,
    now: Optional[datetime] = None,
) -> Subscription:
    apply_subscription_status(subscription, SubscriptionStatus.EXPIRED, now=now)
    await db.commit()
    return subscription
