import logging
from typing import List, Optional

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from app.database.models import Subscription, SubscriptionPlan
from app.exceptions import NotFoundError

logger = logging.getLogger(__name__)


DEFAULT_PLANS = (
    {
        "name": "VLESS на день",
        "description": "Быстрый доступ к VPN на 1 день с лимитом 5 ГБ",
        "duration_days": 1,
        "traffic_gb": 5,
    },
    {
        "name": "VLESS на неделю",
        "description": "Доступ к VPN на 7 дней с лимитом 20 ГБ",
        "duration_days": 7,
        "traffic_gb": 20,
    },
    {
        "name": "VLESS на месяц",
        "description": "Доступ к VPN на 30 дней с лимитом 100 ГБ",
        "duration_days": 30,
        "traffic_gb": 100,
    },
    {
        "name": "VLESS Премиум",
        "description": "Премиум доступ к VPN на 30 дней с лимитом 300 ГБ",
        "duration_days": 30,
        "traffic_gb": 300,
    },
    {
        "name": "VLESS Безлимитный",
        "description": "Безлимитный доступ к VPN на 30 дней",
        "duration_days": 30,
        "traffic_gb": 1000,
    },
)

UPDATABLE_FIELDS = ("name", "description", "duration_days", "traffic_gb", "is_active")


async def get_active_plans(db: AsyncSession) -> List[SubscriptionPlan]:
    result = await db.execute(
        select(SubscriptionPlan)
        .where(SubscriptionPlan.is_active.is_(True))
        .order_by(SubscriptionPlan.id)
    )
    return list(result.scalars().all())


async def get_all_plans(db: AsyncSession) -> List[SubscriptionPlan]:
    result = await db.execute(select(SubscriptionPlan).order_by(SubscriptionPlan.id))
    return list(result.scalars().all())


async def get_plan_by_id(db: AsyncSession, plan_id: int) -> Optional[SubscriptionPlan]:
    result = await db.execute(select(SubscriptionPlan).where(SubscriptionPlan.id == plan_id))
    return result.scalar_one_or_none()


async def create_plan(
    db: AsyncSession,
    name: str,
    duration_days: int,
    traffic_gb: int,
    description: str = None,
    is_active: bool = True,
) -> SubscriptionPlan:
    plan = SubscriptionPlan(
        name=name,
        description=description,
        duration_days=duration_days,
        traffic_gb=traffic_gb,
        is_active=is_active,
    )
    db.add(plan)
    await db.commit()
    await db.refresh(plan)

    logger.info(f"✅ Создан тариф '{name}': {duration_days} дн., {traffic_gb} ГБ")
    return plan


async def update_plan(db: AsyncSession, plan_id: int, **kwargs) -> SubscriptionPlan:
    plan = await get_plan_by_id(db, plan_id)
    if not plan:
        raise NotFoundError(f"Тариф {plan_id} не найден")

    updates = {
        field: value for field, value in kwargs.items()
        if field in UPDATABLE_FIELDS and value is not None
    }
    for field, value in updates.items():
        setattr(plan, field, value)

    if updates:
        await db.commit()
        await db.refresh(plan)

    return plan


async def deactivate_plan(db: AsyncSession, plan_id: int) -> SubscriptionPlan:
    return await update_plan(db, plan_id, is_active=False)


async def delete_plan(db: AsyncSession, plan_id: int) -> bool:
    """
    Удаляет тариф. Если на тариф ссылаются подписки, он только деактивируется.
    Возвращает True, если тариф удален полностью.
    """
    plan = await get_plan_by_id(db, plan_id)
    if not plan:
        raise NotFoundError(f"Тариф {plan_id} не найден")

    result = await db.execute(
        select(func.count(Subscription.id)).where(Subscription.plan_id == plan_id)
    )
    if result.scalar() > 0:
        plan.is_active = False
        await db.commit()
        logger.info(f"⚠️ Тариф {plan_id} используется в подписках и был деактивирован")
        return False

    await db.delete(plan)
    await db.commit()
    logger.info(f"🗑️ Тариф {plan_id} удален")
    return True


async def initialize_default_plans(db: AsyncSession) -> bool:
    result = await db.execute(select(func.count(SubscriptionPlan.id)))
    if result.scalar() > 0:
        logger.info("ℹ️ Тарифы уже существуют, инициализация пропущена")
        return False

    db.add_all([SubscriptionPlan(is_active=True, **plan) for plan in DEFAULT_PLANS])
    await db.commit()

    logger.info(f"✅ Созданы базовые тарифы: {len(DEFAULT_PLANS)}")
    return True
