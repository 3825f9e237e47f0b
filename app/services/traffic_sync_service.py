"""
Сверка израсходованного трафика VPN-аккаунта с данными панели 3x-ui.

Источники опрашиваются по очереди; первый, вернувший счетчики, побеждает.
Если ни один источник не ответил, остается сохраненное значение.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Awaitable, Callable, List, Optional, Tuple

from sqlalchemy.ext.asyncio import AsyncSession

from app.database.crud.vpn_account import get_vpn_account_by_email, update_account_traffic
from app.database.models import DeactivationReason, VpnAccount, VpnAccountStatus
from app.exceptions import ConfigurationError, NotFoundError
from app.external.xui_api import ClientTraffic, XuiAPI, XuiAPIError, XuiSession
from app.services.account_state import deactivate_account
from app.services.notification_service import notify_traffic_limit_exceeded
from app.services.panel_client import create_xui_api

logger = logging.getLogger(__name__)


STORED_SOURCE = "stored"


class StrategyOutcome(Enum):
    FOUND = "found"
    NOT_FOUND = "not_found"
    ERROR = "error"


@dataclass(frozen=True)
class StrategyResult:
    strategy: str
    outcome: StrategyOutcome
    traffic: Optional[ClientTraffic] = None
    error: Optional[str] = None

    @classmethod
    def found(cls, strategy: str, traffic: ClientTraffic) -> "StrategyResult":
        return cls(strategy=strategy, outcome=StrategyOutcome.FOUND, traffic=traffic)

    @classmethod
    def not_found(cls, strategy: str) -> "StrategyResult":
        return cls(strategy=strategy, outcome=StrategyOutcome.NOT_FOUND)

    @classmethod
    def failed(cls, strategy: str, error: str) -> "StrategyResult":
        return cls(strategy=strategy, outcome=StrategyOutcome.ERROR, error=error)


@dataclass
class TrafficSyncResult:
    account_id: int
    traffic_used_bytes: int
    source: str
    deactivated: bool = False
    attempts: List[StrategyResult] = field(default_factory=list)

    @property
    def from_remote(self) -> bool:
        return self.source != STORED_SOURCE


Strategy = Callable[[XuiAPI, XuiSession, VpnAccount], Awaitable[Optional[ClientTraffic]]]


async def _by_email(api: XuiAPI, session: XuiSession, account: VpnAccount) -> Optional[ClientTraffic]:
    return await api.get_client_traffic_by_email(session, account.email)


async def _by_client_id(api: XuiAPI, session: XuiSession, account: VpnAccount) -> Optional[ClientTraffic]:
    return await api.get_client_traffic_by_id(session, account.client_id)


async def _from_inbound_stats(api: XuiAPI, session: XuiSession, account: VpnAccount) -> Optional[ClientTraffic]:
    inbound = await api.get_inbound(session, account.inbound_id)
    return inbound.find_client_stat(account.email)


DEFAULT_STRATEGIES: Tuple[Tuple[str, Strategy], ...] = (
    ("client_traffic_by_email", _by_email),
    ("client_traffic_by_id", _by_client_id),
    ("inbound_client_stats", _from_inbound_stats),
)


class TrafficSyncService:

    def __init__(
        self,
        api_factory: Callable[[], XuiAPI] = None,
        strategies: Tuple[Tuple[str, Strategy], ...] = DEFAULT_STRATEGIES,
    ):
        self.api_factory = api_factory or create_xui_api
        self.strategies = strategies

    async def _run_strategy(
        self,
        name: str,
        strategy: Strategy,
        api: XuiAPI,
        session: XuiSession,
        account: VpnAccount,
    ) -> StrategyResult:
        try:
            traffic = await strategy(api, session, account)
        except Exception as e:
            logger.warning(f"⚠️ Источник трафика {name} недоступен для {account.email}: {e}")
            return StrategyResult.failed(name, str(e))

        if traffic is None:
            logger.debug(f"Источник трафика {name} не нашел клиента {account.email}")
            return StrategyResult.not_found(name)

        return StrategyResult.found(name, traffic)

    async def collect_remote_traffic(self, account: VpnAccount) -> List[StrategyResult]:
        """Опрашивает источники до первого успешного. Каждый вызов открывает свою сессию панели"""
        attempts: List[StrategyResult] = []

        try:
            async with self.api_factory() as api:
                try:
                    session = await api.authenticate()
                except XuiAPIError as e:
                    logger.error(f"❌ Не удалось авторизоваться в 3x-ui для сверки трафика: {e}")
                    return [StrategyResult.failed(name, str(e)) for name, _ in self.strategies]

                for name, strategy in self.strategies:
                    result = await self._run_strategy(name, strategy, api, session, account)
                    attempts.append(result)
                    if result.outcome is StrategyOutcome.FOUND:
                        break
        except ConfigurationError as e:
            logger.error(f"❌ Сверка трафика невозможна: {e}")
            return [StrategyResult.failed(name, str(e)) for name, _ in self.strategies]

        return attempts

    async def sync_account(
        self,
        db: AsyncSession,
        account: VpnAccount,
        now: Optional[datetime] = None,
    ) -> TrafficSyncResult:
        current_time = now or datetime.utcnow()
        attempts = await self.collect_remote_traffic(account)
        found = next((a for a in attempts if a.outcome is StrategyOutcome.FOUND), None)

        if found:
            used = found.traffic.used_bytes
            if used < (account.traffic_used_bytes or 0):
                logger.info(
                    f"🔄 Счетчик трафика {account.email} уменьшился "
                    f"({account.traffic_used_bytes} -> {used}), начат новый период учета"
                )
            await update_account_traffic(db, account, used, now=current_time)
            source = found.strategy
        else:
            used = account.traffic_used_bytes or 0
            source = STORED_SOURCE
            logger.warning(
                f"⚠️ Не удалось получить трафик {account.email} из панели, "
                f"оставлено сохраненное значение {used}"
            )

        result = TrafficSyncResult(
            account_id=account.id,
            traffic_used_bytes=used,
            source=source,
            attempts=attempts,
        )

        if account.status == VpnAccountStatus.ACTIVE.value and account.traffic_exceeded:
            deactivate_account(account, DeactivationReason.TRAFFIC_LIMIT_EXCEEDED, now=current_time)
            await db.commit()
            await notify_traffic_limit_exceeded(db, account.user_id, now=current_time)
            result.deactivated = True
            logger.info(f"⚠️ VPN-аккаунт {account.email} деактивирован: превышен лимит трафика")

        return result

    async def sync_by_email(
        self,
        db: AsyncSession,
        email: str,
        now: Optional[datetime] = None,
    ) -> TrafficSyncResult:
        account = await get_vpn_account_by_email(db, email)
        if not account:
            raise NotFoundError(f"VPN-аккаунт {email} не найден")
        return await self.sync_account(db, account, now=now)
