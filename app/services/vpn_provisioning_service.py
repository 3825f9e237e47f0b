import asyncio
import logging
import uuid
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Callable, Dict, Optional, Tuple

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.database.crud.subscription import get_subscription_by_id
from app.database.crud.subscription_plan import get_plan_by_id
from app.database.crud.user import get_user_by_id
from app.database.crud.vpn_account import (
    create_vpn_account,
    delete_vpn_account,
    get_user_vpn_account,
    get_vpn_account_by_id,
)
from app.database.models import (
    DeactivationReason,
    Subscription,
    SubscriptionPlan,
    SubscriptionStatus,
    User,
    VpnAccount,
    VpnAccountStatus,
)
from app.exceptions import ConfigurationError, NotFoundError, ProvisioningError
from app.external.xui_api import (
    XuiAPI,
    XuiAPIError,
    XuiClientSpec,
    XuiInbound,
    XuiSession,
    to_unix_ms,
)
from app.services.account_state import activate_account, deactivate_account
from app.services.panel_client import create_xui_api
from app.utils.connection_links import VISION_FLOW, build_connection_uri, extract_stream_parameters

logger = logging.getLogger(__name__)


CLIENT_ID_NAMESPACE = uuid.UUID("6f1c2b7e-3a4d-5e8f-9a0b-1c2d3e4f5a6b")


def derive_client_id(user_id: int, subscription_id: int) -> str:
    """Повторный запрос для той же пары пользователь/подписка дает тот же id клиента"""
    return str(uuid.uuid5(CLIENT_ID_NAMESPACE, f"vpn-account:{user_id}:{subscription_id}"))


def build_identity(telegram_id: int, now: datetime) -> str:
    return f"tg_{telegram_id}_{to_unix_ms(now)}"


def _client_spec_for_account(
    account: VpnAccount,
    inbound: Optional[XuiInbound],
    *,
    enable: bool,
    expires_at: datetime,
    traffic_limit_bytes: int,
    tg_id: Optional[str] = None,
    sub_id: Optional[str] = None,
) -> XuiClientSpec:
    remote_client: Dict[str, Any] = {}
    protocol = None
    if inbound is not None:
        protocol = inbound.protocol
        remote_client = inbound.find_client_by_id(account.client_id) or {}

    return XuiClientSpec(
        id=account.client_id,
        email=account.email,
        total_bytes=traffic_limit_bytes,
        expiry_time=expires_at,
        enable=enable,
        flow=str(remote_client.get('flow') or ''),
        limit_ip=int(remote_client.get('limitIp') or 0),
        tg_id=tg_id or str(remote_client.get('tgId') or ''),
        sub_id=sub_id or str(remote_client.get('subId') or ''),
        protocol=protocol,
    )


class VpnProvisioningService:

    def __init__(self, api_factory: Callable[[], XuiAPI] = None):
        self.api_factory = api_factory or create_xui_api
        self._user_locks: Dict[int, asyncio.Lock] = {}
        self._lock_holders: Dict[int, int] = {}

    @asynccontextmanager
    async def _user_lock(self, user_id: int):
        # Запись удаляется, когда блокировку не держит и не ждет ни одна задача
        lock = self._user_locks.setdefault(user_id, asyncio.Lock())
        self._lock_holders[user_id] = self._lock_holders.get(user_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_holders[user_id] -= 1
            if not self._lock_holders[user_id]:
                del self._lock_holders[user_id]
                del self._user_locks[user_id]

    async def _resolve_context(
        self,
        db: AsyncSession,
        user_id: int,
        subscription_id: int,
    ) -> Tuple[User, Subscription, SubscriptionPlan]:
        user = await get_user_by_id(db, user_id)
        if not user:
            raise NotFoundError(f"Пользователь {user_id} не найден")

        subscription = await get_subscription_by_id(db, subscription_id)
        if (
            not subscription
            or subscription.user_id != user_id
            or subscription.status != SubscriptionStatus.ACTIVE.value
        ):
            raise NotFoundError(f"Активная подписка {subscription_id} пользователя {user_id} не найдена")

        plan = await get_plan_by_id(db, subscription.plan_id)
        if not plan:
            raise NotFoundError(f"Тариф {subscription.plan_id} не найден")

        return user, subscription, plan

    async def create_or_renew(
        self,
        db: AsyncSession,
        user_id: int,
        subscription_id: int,
        inbound_id: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> VpnAccount:
        current_time = now or datetime.utcnow()

        async with self._user_lock(user_id):
            user, subscription, plan = await self._resolve_context(db, user_id, subscription_id)
            traffic_limit = plan.traffic_limit_bytes

            existing = await get_user_vpn_account(db, user_id)
            if existing:
                if existing.status == VpnAccountStatus.ACTIVE.value:
                    return await self._extend(db, existing, subscription, traffic_limit, current_time)
                return await self._reactivate(db, existing, user, subscription, traffic_limit, current_time)

            return await self._create(
                db,
                user,
                subscription,
                traffic_limit,
                inbound_id or settings.XUI_DEFAULT_INBOUND_ID,
                current_time,
            )

    async def _extend(
        self,
        db: AsyncSession,
        account: VpnAccount,
        subscription: Subscription,
        traffic_limit: int,
        now: datetime,
    ) -> VpnAccount:
        account.expires_at = subscription.expires_at
        account.traffic_limit_bytes = traffic_limit
        activate_account(account, now=now)
        await db.commit()

        logger.info(f"✅ VPN-аккаунт {account.email} продлен до {account.expires_at}")
        return account

    async def _reactivate(
        self,
        db: AsyncSession,
        account: VpnAccount,
        user: User,
        subscription: Subscription,
        traffic_limit: int,
        now: datetime,
    ) -> VpnAccount:
        settings.validate_panel_settings()
        reset_traffic = settings.RESET_TRAFFIC_ON_REACTIVATE

        async with self.api_factory() as api:
            session = await api.authenticate()
            try:
                inbound = await api.get_inbound(session, account.inbound_id)
                client = _client_spec_for_account(
                    account,
                    inbound,
                    enable=True,
                    expires_at=subscription.expires_at,
                    traffic_limit_bytes=traffic_limit,
                    tg_id=str(user.telegram_id),
                    sub_id=str(subscription.id),
                )

                if inbound.find_client_by_id(account.client_id):
                    await api.update_client(session, account.inbound_id, client)
                else:
                    logger.warning(
                        f"⚠️ Клиент {account.email} отсутствует в inbound {account.inbound_id}, создаем заново"
                    )
                    await api.add_client(session, account.inbound_id, client)

                if reset_traffic:
                    await api.reset_client_traffic(session, account.inbound_id, account.email)
            except XuiAPIError as e:
                raise ProvisioningError(
                    f"Не удалось реактивировать VPN-аккаунт {account.email}: {e.message}",
                    step="reactivate",
                ) from e

        account.expires_at = subscription.expires_at
        account.traffic_limit_bytes = traffic_limit
        if reset_traffic:
            account.traffic_used_bytes = 0
        activate_account(account, now=now)
        await db.commit()

        logger.info(
            f"✅ VPN-аккаунт {account.email} реактивирован до {account.expires_at}"
            + (" (трафик сброшен)" if reset_traffic else "")
        )
        return account

    async def _verify_client(self, api: XuiAPI, session: XuiSession, inbound_id: int, identity: str) -> bool:
        # Панель применяет addClient асинхронно
        await asyncio.sleep(settings.XUI_CLIENT_VERIFY_DELAY_SECONDS)
        try:
            inbound = await api.get_inbound(session, inbound_id)
        except XuiAPIError as e:
            logger.warning(f"⚠️ Не удалось проверить создание клиента {identity}: {e}")
            return False

        if inbound.find_client_by_email(identity):
            logger.info(f"✅ Клиент {identity} найден в inbound {inbound_id}")
            return True

        logger.warning(f"⚠️ Клиент {identity} создан, но не найден в списке клиентов inbound {inbound_id}")
        return False

    async def _create(
        self,
        db: AsyncSession,
        user: User,
        subscription: Subscription,
        traffic_limit: int,
        inbound_id: int,
        now: datetime,
    ) -> VpnAccount:
        settings.validate_panel_settings()

        # rollback после IntegrityError экспирует объекты сессии
        user_id = user.id
        identity = build_identity(user.telegram_id, now)
        client_id = derive_client_id(user.id, subscription.id)

        async with self.api_factory() as api:
            session = await api.authenticate()
            inbounds = await api.list_inbounds(session)

            inbound = next((item for item in inbounds if item.id == inbound_id), None)
            if inbound is None:
                raise XuiAPIError(f"Inbound с ID={inbound_id} не найден")

            stream = extract_stream_parameters(inbound.stream_settings)
            logger.info(
                f"🔄 Создание клиента в inbound {inbound_id}: {inbound.protocol}/{stream.network}/{stream.security}"
            )

            try:
                existing_client = inbound.find_client_by_id(client_id)
                if existing_client:
                    identity = str(existing_client.get('email') or identity)
                    logger.info(f"ℹ️ Клиент {identity} уже существует в панели, обновляем его")
                    client = XuiClientSpec(
                        id=client_id,
                        email=identity,
                        total_bytes=traffic_limit,
                        expiry_time=subscription.expires_at,
                        enable=True,
                        flow=str(existing_client.get('flow') or ''),
                        limit_ip=int(existing_client.get('limitIp') or 0),
                        tg_id=str(user.telegram_id),
                        sub_id=str(subscription.id),
                        protocol=inbound.protocol,
                    )
                    await api.update_client(session, inbound.id, client)
                else:
                    uses_vision = inbound.protocol == "vless" and stream.security in ("reality", "tls")
                    client = XuiClientSpec(
                        id=client_id,
                        email=identity,
                        total_bytes=traffic_limit,
                        expiry_time=subscription.expires_at,
                        flow=VISION_FLOW if uses_vision else "",
                        tg_id=str(user.telegram_id),
                        sub_id=str(subscription.id),
                        protocol=inbound.protocol,
                    )
                    await api.add_client(session, inbound.id, client)
                    await self._verify_client(api, session, inbound.id, identity)
            except XuiAPIError as e:
                raise ProvisioningError(
                    f"Не удалось создать клиента в 3x-ui: {e.message}",
                    step="add_client",
                ) from e

        connection_uri = build_connection_uri(
            inbound.protocol,
            stream.network,
            stream.security,
            client_id,
            identity,
            settings.get_xui_server_address(),
            inbound.port,
            stream.security_params,
        )

        try:
            return await create_vpn_account(
                db,
                user_id=user.id,
                inbound_id=inbound.id,
                client_id=client_id,
                email=identity,
                expires_at=subscription.expires_at,
                traffic_limit_bytes=traffic_limit,
                connection_uri=connection_uri,
                now=now,
            )
        except IntegrityError:
            await db.rollback()
            account = await get_user_vpn_account(db, user_id)
            if account is None:
                raise
            logger.warning(f"⚠️ VPN-аккаунт пользователя {user_id} уже создан параллельным запросом")
            return account

    async def block_account(
        self,
        db: AsyncSession,
        account_id: int,
        now: Optional[datetime] = None,
    ) -> VpnAccount:
        account = await get_vpn_account_by_id(db, account_id)
        if not account:
            raise NotFoundError(f"VPN-аккаунт {account_id} не найден")

        deactivate_account(account, DeactivationReason.MANUAL, now=now)
        await db.commit()

        try:
            settings.validate_panel_settings()
            async with self.api_factory() as api:
                session = await api.authenticate()
                inbound = await api.get_inbound(session, account.inbound_id)
                client = _client_spec_for_account(
                    account,
                    inbound,
                    enable=False,
                    expires_at=account.expires_at,
                    traffic_limit_bytes=account.traffic_limit_bytes,
                )
                await api.update_client(session, account.inbound_id, client)
        except (XuiAPIError, ConfigurationError) as e:
            logger.warning(f"⚠️ Не удалось отключить клиента {account.email} в панели: {e}")

        logger.info(f"🚫 VPN-аккаунт {account.email} заблокирован администратором")
        return account

    async def delete_account(self, db: AsyncSession, account_id: int) -> bool:
        """
        Удаляет клиента из панели (без гарантий) и запись из базы (всегда).
        Возвращает True, если клиент удален и в панели.
        """
        account = await get_vpn_account_by_id(db, account_id)
        if not account:
            raise NotFoundError(f"VPN-аккаунт {account_id} не найден")

        remote_deleted = False
        try:
            settings.validate_panel_settings()
            async with self.api_factory() as api:
                session = await api.authenticate()
                await api.delete_client(session, account.inbound_id, account.client_id)
                remote_deleted = True
        except (XuiAPIError, ConfigurationError) as e:
            logger.warning(f"⚠️ Не удалось удалить клиента {account.email} из панели: {e}")

        await delete_vpn_account(db, account)
        return remote_deleted
