"""
Переходы статусов VPN-аккаунтов и подписок.

Все изменения статуса проходят через apply_* функции, которые проверяют
таблицу допустимых переходов и поднимают InvalidStatusTransitionError.
"""
import logging
from datetime import datetime
from typing import Dict, FrozenSet, Optional, Union

from app.database.models import (
    DeactivationReason,
    Subscription,
    SubscriptionStatus,
    VpnAccount,
    VpnAccountStatus,
)
from app.exceptions import InvalidStatusTransitionError

logger = logging.getLogger(__name__)


VPN_ACCOUNT_TRANSITIONS: Dict[VpnAccountStatus, FrozenSet[VpnAccountStatus]] = {
    VpnAccountStatus.ACTIVE: frozenset({
        VpnAccountStatus.ACTIVE,
        VpnAccountStatus.INACTIVE,
        VpnAccountStatus.BLOCKED,
    }),
    VpnAccountStatus.INACTIVE: frozenset({
        VpnAccountStatus.ACTIVE,
        VpnAccountStatus.BLOCKED,
    }),
    VpnAccountStatus.BLOCKED: frozenset({
        VpnAccountStatus.ACTIVE,
        VpnAccountStatus.BLOCKED,
    }),
}

SUBSCRIPTION_TRANSITIONS: Dict[SubscriptionStatus, FrozenSet[SubscriptionStatus]] = {
    SubscriptionStatus.ACTIVE: frozenset({
        SubscriptionStatus.ACTIVE,
        SubscriptionStatus.EXPIRED,
        SubscriptionStatus.CANCELED,
    }),
    SubscriptionStatus.EXPIRED: frozenset({
        SubscriptionStatus.ACTIVE,
        SubscriptionStatus.CANCELED,
    }),
    SubscriptionStatus.CANCELED: frozenset(),
}

# Причина деактивации определяет целевой статус
DEACTIVATION_TARGETS: Dict[DeactivationReason, VpnAccountStatus] = {
    DeactivationReason.EXPIRED: VpnAccountStatus.INACTIVE,
    DeactivationReason.TRAFFIC_LIMIT_EXCEEDED: VpnAccountStatus.INACTIVE,
    DeactivationReason.MANUAL: VpnAccountStatus.BLOCKED,
}


def _as_account_status(value: Union[str, VpnAccountStatus]) -> VpnAccountStatus:
    if isinstance(value, VpnAccountStatus):
        return value
    try:
        return VpnAccountStatus(value)
    except ValueError:
        raise InvalidStatusTransitionError("vpn_account", str(value), "?", "неизвестный статус")


def _as_subscription_status(value: Union[str, SubscriptionStatus]) -> SubscriptionStatus:
    if isinstance(value, SubscriptionStatus):
        return value
    try:
        return SubscriptionStatus(value)
    except ValueError:
        raise InvalidStatusTransitionError("subscription", str(value), "?", "неизвестный статус")


def can_transition_account(current: Union[str, VpnAccountStatus], target: VpnAccountStatus) -> bool:
    return target in VPN_ACCOUNT_TRANSITIONS[_as_account_status(current)]


def can_transition_subscription(current: Union[str, SubscriptionStatus], target: SubscriptionStatus) -> bool:
    return target in SUBSCRIPTION_TRANSITIONS[_as_subscription_status(current)]


def apply_account_status(
    account: VpnAccount,
    target: VpnAccountStatus,
    reason: Optional[DeactivationReason] = None,
    now: Optional[datetime] = None,
) -> None:
    current = _as_account_status(account.status)
    if target not in VPN_ACCOUNT_TRANSITIONS[current]:
        raise InvalidStatusTransitionError(
            "vpn_account",
            current.value,
            target.value,
            reason.value if reason else None,
        )

    account.status = target.value
    account.deactivation_reason = reason.value if reason and target != VpnAccountStatus.ACTIVE else None
    account.updated_at = now or datetime.utcnow()

    if current != target:
        logger.info(
            f"🔄 VPN-аккаунт {account.id}: {current.value} -> {target.value}"
            + (f" ({reason.value})" if reason else "")
        )


def deactivate_account(
    account: VpnAccount,
    reason: DeactivationReason,
    now: Optional[datetime] = None,
) -> None:
    apply_account_status(account, DEACTIVATION_TARGETS[reason], reason=reason, now=now)


def activate_account(account: VpnAccount, now: Optional[datetime] = None) -> None:
    apply_account_status(account, VpnAccountStatus.ACTIVE, now=now)


def apply_subscription_status(
    subscription: Subscription,
    target: SubscriptionStatus,
    now: Optional[datetime] = None,
) -> None:
    current = _as_subscription_status(subscription.status)
    if target not in SUBSCRIPTION_TRANSITIONS[current]:
        raise InvalidStatusTransitionError("subscription", current.value, target.value)

    subscription.status = target.value
    subscription.updated_at = now or datetime.utcnow()

    if current != target:
        logger.info(f"🔄 Подписка {subscription.id}: {current.value} -> {target.value}")
