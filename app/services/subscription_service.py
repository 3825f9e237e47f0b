import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from app.database.crud.subscription import (
    cancel_subscription,
    create_subscription,
    get_active_subscription,
    get_subscription_by_id,
)
from app.database.crud.subscription_plan import get_plan_by_id
from app.database.crud.user import get_user_by_id
from app.database.models import Subscription, SubscriptionStatus
from app.exceptions import NotFoundError
from app.services.account_state import apply_subscription_status

logger = logging.getLogger(__name__)


async def create_free_subscription(
    db: AsyncSession,
    user_id: int,
    plan_id: int,
    now: Optional[datetime] = None,
) -> Subscription:
    """Выдает подписку без оплаты. Текущая активная подписка отменяется"""
    current_time = now or datetime.utcnow()

    user = await get_user_by_id(db, user_id)
    if not user:
        raise NotFoundError(f"Пользователь {user_id} не найден")

    plan = await get_plan_by_id(db, plan_id)
    if not plan:
        raise NotFoundError(f"Тариф {plan_id} не найден")

    active = await get_active_subscription(db, user_id)
    if active:
        await cancel_subscription(db, active, now=current_time, commit=False)
        logger.info(f"🔄 Подписка {active.id} пользователя {user_id} отменена перед выдачей новой")

    subscription = await create_subscription(
        db,
        user_id=user_id,
        plan_id=plan.id,
        expires_at=current_time + timedelta(days=plan.duration_days),
        created_at=current_time,
    )
    logger.info(
        f"✅ Пользователю {user_id} выдана подписка '{plan.name}' до {subscription.expires_at}"
    )
    return subscription


async def extend_subscription(
    db: AsyncSession,
    subscription_id: int,
    duration_days: int,
    now: Optional[datetime] = None,
) -> Subscription:
    current_time = now or datetime.utcnow()

    subscription = await get_subscription_by_id(db, subscription_id)
    if not subscription:
        raise NotFoundError(f"Подписка {subscription_id} не найдена")

    previous_expiry = subscription.expires_at
    apply_subscription_status(subscription, SubscriptionStatus.ACTIVE, now=current_time)
    subscription.extend_subscription(duration_days, now=current_time)

    await db.commit()

    logger.info(
        f"✅ Подписка {subscription_id} продлена на {duration_days} дн.: "
        f"{previous_expiry} -> {subscription.expires_at}"
    )
    return subscription
