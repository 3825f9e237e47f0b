import logging
from datetime import datetime
from typing import List, Optional

from sqlalchemy import select, and_
from sqlalchemy.ext.asyncio import AsyncSession

from app.database.models import VpnAccount, VpnAccountStatus

logger = logging.getLogger(__name__)


async def get_vpn_account_by_id(db: AsyncSession, account_id: int) -> Optional[VpnAccount]:
    result = await db.execute(select(VpnAccount).where(VpnAccount.id == account_id))
    return result.scalar_one_or_none()


async def get_user_vpn_account(db: AsyncSession, user_id: int) -> Optional[VpnAccount]:
    result = await db.execute(select(VpnAccount).where(VpnAccount.user_id == user_id))
    return result.scalar_one_or_none()


async def get_vpn_account_by_email(db: AsyncSession, email: str) -> Optional[VpnAccount]:
    result = await db.execute(select(VpnAccount).where(VpnAccount.email == email).limit(1))
    return result.scalar_one_or_none()


async def create_vpn_account(
    db: AsyncSession,
    user_id: int,
    inbound_id: int,
    client_id: str,
    email: str,
    expires_at: datetime,
    traffic_limit_bytes: int,
    connection_uri: str,
    traffic_used_bytes: int = 0,
    now: Optional[datetime] = None,
) -> VpnAccount:
    """Вставляет запись и коммитит. IntegrityError (второй аккаунт пользователя) пробрасывается"""
    current_time = now or datetime.utcnow()
    account = VpnAccount(
        user_id=user_id,
        inbound_id=inbound_id,
        client_id=client_id,
        email=email,
        expires_at=expires_at,
        traffic_limit_bytes=traffic_limit_bytes,
        traffic_used_bytes=traffic_used_bytes,
        status=VpnAccountStatus.ACTIVE.value,
        connection_uri=connection_uri,
        created_at=current_time,
        updated_at=current_time,
    )
    db.add(account)
    await db.commit()
    await db.refresh(account)

    logger.info(f"✅ Сохранен VPN-аккаунт {email} для пользователя {user_id}")
    return account


async def update_account_traffic(
    db: AsyncSession,
    account: VpnAccount,
    traffic_used_bytes: int,
    now: Optional[datetime] = None,
) -> VpnAccount:
    account.traffic_used_bytes = traffic_used_bytes
    account.updated_at = now or datetime.utcnow()
    await db.commit()
    return account


async def get_active_accounts(db: AsyncSession) -> List[VpnAccount]:
    result = await db.execute(
        select(VpnAccount)
        .where(VpnAccount.status == VpnAccountStatus.ACTIVE.value)
        .order_by(VpnAccount.id)
    )
    return list(result.scalars().all())


async def get_expired_active_accounts(db: AsyncSession, now: datetime) -> List[VpnAccount]:
    result = await db.execute(
        select(VpnAccount).where(
            and_(
                VpnAccount.status == VpnAccountStatus.ACTIVE.value,
                VpnAccount.expires_at < now,
            )
        )
    )
    return list(result.scalars().all())


async def get_traffic_exceeded_accounts(db: AsyncSession) -> List[VpnAccount]:
    result = await db.execute(
        select(VpnAccount).where(
            and_(
                VpnAccount.status == VpnAccountStatus.ACTIVE.value,
                VpnAccount.traffic_limit_bytes > 0,
                VpnAccount.traffic_used_bytes >= VpnAccount.traffic_limit_bytes,
            )
        )
    )
    return list(result.scalars().all())


async def get_accounts_expiring_between(
    db: AsyncSession,
    start: datetime,
    end: datetime,
) -> List[VpnAccount]:
    result = await db.execute(
        select(VpnAccount).where(
            and_(
                VpnAccount.status == VpnAccountStatus.ACTIVE.value,
                VpnAccount.expires_at > start,
                VpnAccount.expires_at < end,
            )
        )
    )
    return list(result.scalars().all())


async def delete_vpn_account(db: AsyncSession, account: VpnAccount) -> None:
    await db.delete(account)
    await db.commit()
    logger.info(f"🗑️ VPN-аккаунт {account.id} удален из базы")
