import logging
from datetime import datetime
from typing import Optional, List

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.database.models import User

logger = logging.getLogger(__name__)


async def get_user_by_id(db: AsyncSession, user_id: int) -> Optional[User]:
    result = await db.execute(select(User).where(User.id == user_id))
    return result.scalar_one_or_none()


async def get_user_by_telegram_id(db: AsyncSession, telegram_id: int) -> Optional[User]:
    result = await db.execute(select(User).where(User.telegram_id == telegram_id))
    return result.scalar_one_or_none()


async def create_user(
    db: AsyncSession,
    telegram_id: int,
    username: str = None,
    first_name: str = None,
    last_name: str = None,
    is_admin: bool = False,
) -> User:
    user = User(
        telegram_id=telegram_id,
        username=username,
        first_name=first_name,
        last_name=last_name,
        is_admin=is_admin,
        is_blocked=False,
    )

    db.add(user)
    await db.commit()
    await db.refresh(user)

    logger.info(f"✅ Создан пользователь {telegram_id}")

    return user


async def get_or_create_user(
    db: AsyncSession,
    telegram_id: int,
    username: str = None,
    first_name: str = None,
    last_name: str = None,
    is_admin: bool = False,
) -> User:
    user = await get_user_by_telegram_id(db, telegram_id)
    if user:
        return user

    try:
        return await create_user(
            db,
            telegram_id=telegram_id,
            username=username,
            first_name=first_name,
            last_name=last_name,
            is_admin=is_admin or settings.is_admin(telegram_id),
        )
    except IntegrityError:
        await db.rollback()
        logger.warning(f"⚠️ Пользователь {telegram_id} уже создан параллельным запросом")
        user = await get_user_by_telegram_id(db, telegram_id)
        if user is None:
            raise
        return user


async def update_user(
    db: AsyncSession,
    user: User,
    **kwargs
) -> User:
    # telegram_id является ключом идентичности и не меняется
    kwargs.pop("telegram_id", None)

    for field, value in kwargs.items():
        if hasattr(user, field):
            setattr(user, field, value)

    user.updated_at = datetime.utcnow()
    await db.commit()
    await db.refresh(user)

    return user


async def set_admin_status(db: AsyncSession, user: User, is_admin: bool) -> User:
    return await update_user(db, user, is_admin=is_admin)


async def set_block_status(db: AsyncSession, user: User, is_blocked: bool) -> User:
    user = await update_user(db, user, is_blocked=is_blocked)
    logger.info(
        f"{'🚫 Заблокирован' if is_blocked else '✅ Разблокирован'} пользователь {user.telegram_id}"
    )
    return user


async def get_all_users(db: AsyncSession, limit: int = 100, offset: int = 0) -> List[User]:
    result = await db.execute(
        select(User).order_by(User.created_at.desc()).offset(offset).limit(limit)
    )
    return list(result.scalars().all())
