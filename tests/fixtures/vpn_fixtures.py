"""
Фабрики записей и управляемая подделка панели 3x-ui для тестов сервисов
"""
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from app.database.models import (
    Subscription,
    SubscriptionPlan,
    SubscriptionStatus,
    User,
    VpnAccount,
    VpnAccountStatus,
)
from app.external.xui_api import (
    ClientTraffic,
    XuiAPIError,
    XuiClientSpec,
    XuiInbound,
    XuiSession,
)


REALITY_STREAM_SETTINGS = {
    "network": "tcp",
    "security": "reality",
    "realitySettings": {
        "serverNames": ["sni.example"],
        "shortIds": ["sid"],
        "settings": {
            "publicKey": "PK",
            "fingerprint": "chrome",
            "spiderX": "/",
        },
    },
}


async def create_user(db, telegram_id: int = 123456789, **kwargs) -> User:
    user = User(telegram_id=telegram_id, username=kwargs.pop("username", "tester"), **kwargs)
    db.add(user)
    await db.commit()
    await db.refresh(user)
    return user


async def create_plan(db, duration_days: int = 30, traffic_gb: int = 100, name: str = "Тест") -> SubscriptionPlan:
    plan = SubscriptionPlan(name=name, duration_days=duration_days, traffic_gb=traffic_gb, is_active=True)
    db.add(plan)
    await db.commit()
    await db.refresh(plan)
    return plan


async def create_subscription(
    db,
    user: User,
    plan: SubscriptionPlan,
    expires_at: datetime,
    status: str = SubscriptionStatus.ACTIVE.value,
    created_at: Optional[datetime] = None,
) -> Subscription:
    subscription = Subscription(
        user_id=user.id,
        plan_id=plan.id,
        status=status,
        created_at=created_at or expires_at - timedelta(days=plan.duration_days),
        expires_at=expires_at,
    )
    db.add(subscription)
    await db.commit()
    await db.refresh(subscription)
    return subscription


async def create_account(
    db,
    user: User,
    expires_at: datetime,
    status: str = VpnAccountStatus.ACTIVE.value,
    traffic_limit_bytes: int = 1000,
    traffic_used_bytes: int = 0,
    client_id: str = "client-uuid",
    email: Optional[str] = None,
    inbound_id: int = 5,
) -> VpnAccount:
    account = VpnAccount(
        user_id=user.id,
        inbound_id=inbound_id,
        client_id=client_id,
        email=email or f"tg_{user.telegram_id}_1700000000000",
        expires_at=expires_at,
        traffic_limit_bytes=traffic_limit_bytes,
        traffic_used_bytes=traffic_used_bytes,
        status=status,
        connection_uri="vless://client-uuid@panel.example.com:443",
    )
    db.add(account)
    await db.commit()
    await db.refresh(account)
    return account


def make_inbound(
    inbound_id: int = 5,
    protocol: str = "vless",
    port: int = 443,
    stream_settings: Optional[dict] = None,
    clients: Optional[List[dict]] = None,
    client_stats: Optional[List[ClientTraffic]] = None,
) -> XuiInbound:
    return XuiInbound(
        id=inbound_id,
        port=port,
        protocol=protocol,
        remark="test",
        settings={"clients": list(clients or [])},
        stream_settings=dict(REALITY_STREAM_SETTINGS if stream_settings is None else stream_settings),
        client_stats=list(client_stats or []),
    )


class FakeXuiAPI:
    """Панель в памяти. failures: имя метода -> исключение, которое он поднимет"""

    def __init__(
        self,
        inbounds: Optional[List[XuiInbound]] = None,
        traffic_by_email: Optional[Dict[str, ClientTraffic]] = None,
        traffic_by_id: Optional[Dict[str, ClientTraffic]] = None,
        hide_added_clients: bool = False,
    ):
        self.inbounds = {inbound.id: inbound for inbound in inbounds or []}
        self.traffic_by_email = traffic_by_email or {}
        self.traffic_by_id = traffic_by_id or {}
        self.hide_added_clients = hide_added_clients
        self.failures: Dict[str, Exception] = {}
        self.calls: List[str] = []
        self.added: List[XuiClientSpec] = []
        self.updated: List[XuiClientSpec] = []
        self.deleted: List[str] = []
        self.reset: List[str] = []
        self.sessions_opened = 0

    def __call__(self):
        return self

    async def __aenter__(self):
        self.sessions_opened += 1
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        return False

    def _record(self, name: str):
        self.calls.append(name)
        if name in self.failures:
            raise self.failures[name]

    def _inbound(self, inbound_id: int) -> XuiInbound:
        inbound = self.inbounds.get(inbound_id)
        if inbound is None:
            raise XuiAPIError(f"Inbound {inbound_id} не найден", 404)
        return inbound

    async def authenticate(self) -> XuiSession:
        self._record("authenticate")
        return XuiSession(credential="3x-ui=session")

    async def list_inbounds(self, session: XuiSession) -> List[XuiInbound]:
        self._record("list_inbounds")
        return list(self.inbounds.values())

    async def get_inbound(self, session: XuiSession, inbound_id: int) -> XuiInbound:
        self._record("get_inbound")
        return self._inbound(inbound_id)

    async def add_client(self, session: XuiSession, inbound_id: int, client: XuiClientSpec) -> None:
        self._record("add_client")
        inbound = self._inbound(inbound_id)
        self.added.append(client)
        if not self.hide_added_clients:
            inbound.settings.setdefault("clients", []).append(client.to_payload())

    async def update_client(self, session: XuiSession, inbound_id: int, client: XuiClientSpec) -> None:
        self._record("update_client")
        inbound = self._inbound(inbound_id)
        self.updated.append(client)
        clients = inbound.settings.get("clients", [])
        inbound.settings["clients"] = [
            client.to_payload() if existing.get("id") == client.id else existing
            for existing in clients
        ]

    async def delete_client(self, session: XuiSession, inbound_id: int, client_id: str) -> None:
        self._record("delete_client")
        inbound = self._inbound(inbound_id)
        self.deleted.append(client_id)
        inbound.settings["clients"] = [c for c in inbound.clients if c.get("id") != client_id]

    async def reset_client_traffic(self, session: XuiSession, inbound_id: int, email: str) -> None:
        self._record("reset_client_traffic")
        self.reset.append(email)

    async def get_client_traffic_by_email(self, session: XuiSession, email: str) -> Optional[ClientTraffic]:
        self._record("get_client_traffic_by_email")
        return self.traffic_by_email.get(email)

    async def get_client_traffic_by_id(self, session: XuiSession, client_id: str) -> Optional[ClientTraffic]:
        self._record("get_client_traffic_by_id")
        return self.traffic_by_id.get(client_id)
