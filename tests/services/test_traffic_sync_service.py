from datetime import timedelta

import pytest
from sqlalchemy import select

from app.database.models import DeactivationReason, Notification, VpnAccountStatus
from app.exceptions import NotFoundError
from app.external.xui_api import ClientTraffic, XuiAPIError, XuiAuthError
from app.services.traffic_sync_service import (
    STORED_SOURCE,
    StrategyOutcome,
    TrafficSyncService,
)
from tests.fixtures.vpn_fixtures import (
    FakeXuiAPI,
    create_account,
    create_user,
    make_inbound,
)


EMAIL = "tg_123456789_1700000000000"


async def _notifications(db):
    result = await db.execute(select(Notification))
    return list(result.scalars().all())


async def test_sync_folds_up_and_down(db, fixed_datetime):
    user = await create_user(db)
    account = await create_account(db, user, fixed_datetime + timedelta(days=10), traffic_limit_bytes=1000)
    api = FakeXuiAPI(traffic_by_email={EMAIL: ClientTraffic(email=EMAIL, up=100, down=200)})
    service = TrafficSyncService(api_factory=api)

    result = await service.sync_account(db, account, now=fixed_datetime)

    assert result.traffic_used_bytes == 300
    assert result.source == "client_traffic_by_email"
    assert result.from_remote is True
    assert result.deactivated is False
    assert account.traffic_used_bytes == 300
    assert account.status == VpnAccountStatus.ACTIVE.value


async def test_sync_falls_back_to_client_id_then_inbound_stats(db, fixed_datetime):
    user = await create_user(db)
    account = await create_account(db, user, fixed_datetime + timedelta(days=10))
    inbound = make_inbound(client_stats=[ClientTraffic(email=EMAIL, up=5, down=7)])
    api = FakeXuiAPI(inbounds=[inbound])
    api.failures["get_client_traffic_by_email"] = XuiAPIError("boom", 500)
    service = TrafficSyncService(api_factory=api)

    result = await service.sync_account(db, account, now=fixed_datetime)

    assert result.source == "inbound_client_stats"
    assert result.traffic_used_bytes == 12
    assert [attempt.outcome for attempt in result.attempts] == [
        StrategyOutcome.ERROR,
        StrategyOutcome.NOT_FOUND,
        StrategyOutcome.FOUND,
    ]
    assert api.calls == [
        "authenticate",
        "get_client_traffic_by_email",
        "get_client_traffic_by_id",
        "get_inbound",
    ]


async def test_sync_stops_at_first_successful_source(db, fixed_datetime):
    user = await create_user(db)
    account = await create_account(db, user, fixed_datetime + timedelta(days=10))
    api = FakeXuiAPI(traffic_by_id={"client-uuid": ClientTraffic(email=EMAIL, up=1, down=1)})
    service = TrafficSyncService(api_factory=api)

    result = await service.sync_account(db, account, now=fixed_datetime)

    assert result.source == "client_traffic_by_id"
    assert "get_inbound" not in api.calls


async def test_sync_keeps_stored_value_when_panel_unreachable(db, fixed_datetime):
    user = await create_user(db)
    account = await create_account(
        db, user, fixed_datetime + timedelta(days=10), traffic_used_bytes=450
    )
    api = FakeXuiAPI()
    api.failures["authenticate"] = XuiAuthError("denied", 401)
    service = TrafficSyncService(api_factory=api)

    result = await service.sync_account(db, account, now=fixed_datetime)

    assert result.source == STORED_SOURCE
    assert result.from_remote is False
    assert result.traffic_used_bytes == 450
    assert account.traffic_used_bytes == 450
    assert all(attempt.outcome is StrategyOutcome.ERROR for attempt in result.attempts)
    assert len(result.attempts) == 3


async def test_sync_keeps_stored_value_when_client_unknown(db, fixed_datetime):
    user = await create_user(db)
    account = await create_account(
        db, user, fixed_datetime + timedelta(days=10), traffic_used_bytes=10
    )
    service = TrafficSyncService(api_factory=FakeXuiAPI(inbounds=[make_inbound()]))

    result = await service.sync_account(db, account, now=fixed_datetime)

    assert result.source == STORED_SOURCE
    assert account.traffic_used_bytes == 10


async def test_sync_accepts_counter_reset_on_panel(db, fixed_datetime):
    user = await create_user(db)
    account = await create_account(
        db, user, fixed_datetime + timedelta(days=10), traffic_used_bytes=900
    )
    api = FakeXuiAPI(traffic_by_email={EMAIL: ClientTraffic(email=EMAIL, up=10, down=0)})
    service = TrafficSyncService(api_factory=api)

    await service.sync_account(db, account, now=fixed_datetime)

    assert account.traffic_used_bytes == 10


async def test_sync_deactivates_account_over_limit_once(db, fixed_datetime):
    user = await create_user(db)
    account = await create_account(db, user, fixed_datetime + timedelta(days=10), traffic_limit_bytes=1000)
    api = FakeXuiAPI(traffic_by_email={EMAIL: ClientTraffic(email=EMAIL, up=600, down=500)})
    service = TrafficSyncService(api_factory=api)

    first = await service.sync_account(db, account, now=fixed_datetime)
    second = await service.sync_account(db, account, now=fixed_datetime + timedelta(minutes=5))

    assert first.deactivated is True
    assert second.deactivated is False
    assert account.status == VpnAccountStatus.INACTIVE.value
    assert account.deactivation_reason == DeactivationReason.TRAFFIC_LIMIT_EXCEEDED.value

    notifications = await _notifications(db)
    assert [n.type for n in notifications] == ["traffic_limit_exceeded"]


async def test_zero_limit_is_unlimited(db, fixed_datetime):
    user = await create_user(db)
    account = await create_account(db, user, fixed_datetime + timedelta(days=10), traffic_limit_bytes=0)
    api = FakeXuiAPI(traffic_by_email={EMAIL: ClientTraffic(email=EMAIL, up=10 ** 12, down=0)})
    service = TrafficSyncService(api_factory=api)

    result = await service.sync_account(db, account, now=fixed_datetime)

    assert result.deactivated is False
    assert account.status == VpnAccountStatus.ACTIVE.value


async def test_sync_by_email(db, fixed_datetime):
    user = await create_user(db)
    await create_account(db, user, fixed_datetime + timedelta(days=10))
    api = FakeXuiAPI(traffic_by_email={EMAIL: ClientTraffic(email=EMAIL, up=1, down=2)})
    service = TrafficSyncService(api_factory=api)

    result = await service.sync_by_email(db, EMAIL, now=fixed_datetime)

    assert result.traffic_used_bytes == 3


async def test_sync_by_email_unknown_account(db, fixed_datetime):
    service = TrafficSyncService(api_factory=FakeXuiAPI())

    with pytest.raises(NotFoundError):
        await service.sync_by_email(db, "tg_missing", now=fixed_datetime)
