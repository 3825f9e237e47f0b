"""
Периодический обход подписок и VPN-аккаунтов.

Шаги независимы и могут повторяться: истечение подписок, истечение аккаунтов,
сверка трафика, отключение по лимиту трафика, предупреждения о скором истечении.
Ошибка одной записи логируется и не прерывает обход.
"""
import asyncio
import logging
import math
from dataclasses import dataclass, asdict
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Iterable, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.config import settings
from app.database.crud.subscription import (
    expire_subscription,
    get_expired_active_subscriptions,
    get_subscription_by_id,
)
from app.database.crud.vpn_account import (
    get_accounts_expiring_between,
    get_active_accounts,
    get_expired_active_accounts,
    get_traffic_exceeded_accounts,
    get_vpn_account_by_id,
)
from app.database.database import AsyncSessionLocal
from app.database.models import DeactivationReason, SubscriptionStatus, VpnAccountStatus
from app.services.account_state import deactivate_account
from app.services.notification_service import (
    notify_expires_soon,
    notify_traffic_limit_exceeded,
    notify_vpn_expired,
)
from app.services.traffic_sync_service import TrafficSyncService

logger = logging.getLogger(__name__)


SECONDS_IN_DAY = 24 * 60 * 60

RecordHandler = Callable[[AsyncSession, int], Awaitable[bool]]


@dataclass
class SweepResult:
    expired_subscriptions: int = 0
    expired_accounts: int = 0
    traffic_synced: int = 0
    traffic_limit_exceeded: int = 0
    upcoming_expiry: int = 0
    errors: int = 0
    skipped: bool = False

    def to_dict(self) -> dict:
        return asdict(self)


def days_until(expires_at: datetime, now: datetime) -> int:
    return math.ceil((expires_at - now).total_seconds() / SECONDS_IN_DAY)


class LifecycleSweeper:

    def __init__(
        self,
        session_factory: async_sessionmaker = None,
        traffic_sync_service: TrafficSyncService = None,
    ):
        self.session_factory = session_factory or AsyncSessionLocal
        self.traffic_sync_service = traffic_sync_service or TrafficSyncService()
        self.is_running = False
        self.last_result: Optional[SweepResult] = None
        self._lock = asyncio.Lock()

    async def start(self):
        if self.is_running:
            logger.warning("Обход жизненного цикла уже запущен")
            return

        self.is_running = True
        logger.info("🔄 Запуск обхода жизненного цикла VPN-аккаунтов")

        while self.is_running:
            try:
                await self.run_sweep()
                await asyncio.sleep(settings.MONITORING_INTERVAL * 60)
            except Exception as e:
                logger.error(f"Ошибка в цикле обхода: {e}")
                await asyncio.sleep(60)

    def stop(self):
        self.is_running = False
        logger.info("ℹ️ Обход жизненного цикла остановлен")

    async def run_sweep(self, now: Optional[datetime] = None) -> SweepResult:
        if self._lock.locked():
            logger.warning("⚠️ Предыдущий обход еще выполняется, пропускаем")
            return SweepResult(skipped=True)

        async with self._lock:
            current_time = now or datetime.utcnow()
            result = SweepResult()

            await self._expire_subscriptions(result, current_time)
            await self._expire_accounts(result, current_time)
            if settings.SWEEP_SYNC_TRAFFIC:
                await self._sync_traffic(result, current_time)
            await self._deactivate_traffic_exceeded(result, current_time)
            await self._warn_upcoming_expiry(result, current_time)

            self.last_result = result
            logger.info(f"✅ Обход завершен: {result.to_dict()}")
            return result

    async def _load_ids(self, loader: Callable[[AsyncSession], Awaitable[list]]) -> List[int]:
        async with self.session_factory() as db:
            return [record.id for record in await loader(db)]

    async def _process_record(
        self,
        record_id: int,
        handler: RecordHandler,
        label: str,
        result: SweepResult,
    ) -> bool:
        async with self.session_factory() as db:
            try:
                return await handler(db, record_id)
            except Exception as e:
                await db.rollback()
                result.errors += 1
                logger.error(f"❌ Ошибка обработки {label} {record_id}: {e}")
                return False

    async def _process_each(
        self,
        record_ids: Iterable[int],
        handler: RecordHandler,
        label: str,
        result: SweepResult,
    ) -> int:
        processed = 0
        for record_id in record_ids:
            if await self._process_record(record_id, handler, label, result):
                processed += 1
        return processed

    async def _expire_subscriptions(self, result: SweepResult, now: datetime):
        ids = await self._load_ids(lambda db: get_expired_active_subscriptions(db, now))

        async def handle(db: AsyncSession, subscription_id: int) -> bool:
            subscription = await get_subscription_by_id(db, subscription_id)
            if (
                not subscription
                or subscription.status != SubscriptionStatus.ACTIVE.value
                or subscription.expires_at >= now
            ):
                return False
            await expire_subscription(db, subscription, now=now)
            logger.info(f"🔴 Подписка {subscription_id} пользователя {subscription.user_id} истекла")
            return True

        result.expired_subscriptions = await self._process_each(ids, handle, "подписки", result)

    async def _expire_accounts(self, result: SweepResult, now: datetime):
        ids = await self._load_ids(lambda db: get_expired_active_accounts(db, now))

        async def handle(db: AsyncSession, account_id: int) -> bool:
            account = await get_vpn_account_by_id(db, account_id)
            if not account or account.status != VpnAccountStatus.ACTIVE.value or account.expires_at >= now:
                return False
            deactivate_account(account, DeactivationReason.EXPIRED, now=now)
            await db.commit()
            await notify_vpn_expired(db, account.user_id, now=now)
            return True

        result.expired_accounts = await self._process_each(ids, handle, "VPN-аккаунта", result)

    async def _sync_traffic(self, result: SweepResult, now: datetime):
        ids = await self._load_ids(get_active_accounts)
        semaphore = asyncio.Semaphore(settings.SWEEP_CONCURRENCY)

        async def handle(db: AsyncSession, account_id: int) -> bool:
            account = await get_vpn_account_by_id(db, account_id)
            if not account or account.status != VpnAccountStatus.ACTIVE.value:
                return False
            sync_result = await self.traffic_sync_service.sync_account(db, account, now=now)
            if sync_result.deactivated:
                result.traffic_limit_exceeded += 1
            return True

        async def bounded(account_id: int) -> bool:
            async with semaphore:
                return await self._process_record(account_id, handle, "трафика аккаунта", result)

        outcomes = await asyncio.gather(*(bounded(account_id) for account_id in ids))
        result.traffic_synced = sum(1 for synced in outcomes if synced)

    async def _deactivate_traffic_exceeded(self, result: SweepResult, now: datetime):
        ids = await self._load_ids(get_traffic_exceeded_accounts)

        async def handle(db: AsyncSession, account_id: int) -> bool:
            account = await get_vpn_account_by_id(db, account_id)
            if not account or account.status != VpnAccountStatus.ACTIVE.value or not account.traffic_exceeded:
                return False
            deactivate_account(account, DeactivationReason.TRAFFIC_LIMIT_EXCEEDED, now=now)
            await db.commit()
            await notify_traffic_limit_exceeded(db, account.user_id, now=now)
            return True

        result.traffic_limit_exceeded += await self._process_each(ids, handle, "лимита трафика", result)

    async def _warn_upcoming_expiry(self, result: SweepResult, now: datetime):
        horizon = now + timedelta(days=settings.EXPIRY_WARNING_DAYS)
        ids = await self._load_ids(lambda db: get_accounts_expiring_between(db, now, horizon))

        async def handle(db: AsyncSession, account_id: int) -> bool:
            account = await get_vpn_account_by_id(db, account_id)
            if not account or account.status != VpnAccountStatus.ACTIVE.value:
                return False
            days_left = days_until(account.expires_at, now)
            await notify_expires_soon(db, account.user_id, days_left, now=now)
            return True

        result.upcoming_expiry = await self._process_each(ids, handle, "предупреждения аккаунта", result)
