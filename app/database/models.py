from datetime import datetime, timedelta
from enum import Enum

from sqlalchemy import (
    Column,
    Integer,
    String,
    DateTime,
    Boolean,
    Text,
    ForeignKey,
    BigInteger,
    Index,
)
from sqlalchemy.ext.declarative import declarative_base
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func


Base = declarative_base()


BYTES_IN_GB = 1024 ** 3


class SubscriptionStatus(Enum):
    ACTIVE = "active"
    EXPIRED = "expired"
    CANCELED = "canceled"


class VpnAccountStatus(Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    BLOCKED = "blocked"


class DeactivationReason(Enum):
    EXPIRED = "expired"
    TRAFFIC_LIMIT_EXCEEDED = "traffic_limit_exceeded"
    MANUAL = "manual"


class NotificationType(Enum):
    VPN_EXPIRED = "vpn_expired"
    TRAFFIC_LIMIT_EXCEEDED = "traffic_limit_exceeded"
    VPN_EXPIRES_SOON = "vpn_expires_soon"


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    telegram_id = Column(BigInteger, unique=True, index=True, nullable=False)
    username = Column(String(255), nullable=True)
    first_name = Column(String(255), nullable=True)
    last_name = Column(String(255), nullable=True)
    is_admin = Column(Boolean, default=False, nullable=False)
    is_blocked = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=func.now())
    updated_at = Column(DateTime, default=func.now(), onupdate=func.now())

    subscriptions = relationship("Subscription", back_populates="user")
    vpn_account = relationship("VpnAccount", back_populates="user", uselist=False)
    notifications = relationship("Notification", back_populates="user")

    @property
    def full_name(self) -> str:
        parts = [self.first_name, self.last_name]
        return " ".join(filter(None, parts)) or self.username or f"ID{self.telegram_id}"


class SubscriptionPlan(Base):
    __tablename__ = "subscription_plans"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    duration_days = Column(Integer, nullable=False)
    traffic_gb = Column(Integer, nullable=False, default=0)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=func.now())

    subscriptions = relationship("Subscription", back_populates="plan")

    @property
    def traffic_limit_bytes(self) -> int:
        return int(self.traffic_gb or 0) * BYTES_IN_GB


class Subscription(Base):
    __tablename__ = "subscriptions"
    __table_args__ = (
        Index("ix_subscriptions_user_status", "user_id", "status"),
    )

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    plan_id = Column(Integer, ForeignKey("subscription_plans.id"), nullable=False)

    status = Column(String(20), default=SubscriptionStatus.ACTIVE.value, nullable=False)

    created_at = Column(DateTime, default=func.now())
    expires_at = Column(DateTime, nullable=False)
    updated_at = Column(DateTime, default=func.now(), onupdate=func.now())

    user = relationship("User", back_populates="subscriptions")
    plan = relationship("SubscriptionPlan", back_populates="subscriptions")

    def extend_subscription(self, days: int, now: datetime = None):
        current_time = now or datetime.utcnow()

        if self.expires_at and self.expires_at > current_time:
            self.expires_at = self.expires_at + timedelta(days=days)
        else:
            self.expires_at = current_time + timedelta(days=days)


class VpnAccount(Base):
    __tablename__ = "vpn_accounts"

    id = Column(Integer, primary_key=True, index=True)
    # Один VPN-слот на пользователя
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, unique=True)

    inbound_id = Column(Integer, nullable=False)
    client_id = Column(String(255), nullable=False)
    email = Column(String(255), nullable=False, index=True)

    expires_at = Column(DateTime, nullable=False)
    traffic_limit_bytes = Column(BigInteger, nullable=False, default=0)
    traffic_used_bytes = Column(BigInteger, nullable=False, default=0)

    status = Column(String(20), default=VpnAccountStatus.ACTIVE.value, nullable=False)
    deactivation_reason = Column(String(50), nullable=True)

    connection_uri = Column(Text, nullable=True)

    created_at = Column(DateTime, default=func.now())
    updated_at = Column(DateTime, default=func.now(), onupdate=func.now())

    user = relationship("User", back_populates="vpn_account")

    @property
    def is_active(self) -> bool:
        return self.status == VpnAccountStatus.ACTIVE.value

    @property
    def traffic_exceeded(self) -> bool:
        return bool(self.traffic_limit_bytes) and self.traffic_used_bytes >= self.traffic_limit_bytes

    @property
    def traffic_used_percent(self) -> float:
        if not self.traffic_limit_bytes:
            return 0.0
        return min((self.traffic_used_bytes / self.traffic_limit_bytes) * 100, 100.0)


class Notification(Base):
    __tablename__ = "notifications"
    __table_args__ = (
        Index("ix_notifications_user_type", "user_id", "type"),
        Index("ix_notifications_user_type_subscription", "user_id", "type", "subscription_id"),
    )

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    type = Column(String(50), nullable=False)
    subscription_id = Column(Integer, nullable=True)
    message = Column(Text, nullable=False)
    is_read = Column(Boolean, default=False, nullable=False)
    is_sent = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=func.now())

    user = relationship("User", back_populates="notifications")
