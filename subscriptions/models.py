from __future__ import annotations

import enum
import uuid
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import Boolean, DateTime, Enum, ForeignKey, Index, Integer, String, Text
from sqlalchemy.engine import Dialect
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship
from sqlalchemy.types import TypeDecorator

from .periods import utc_now


class Base(DeclarativeBase):
    pass


class ChangeType(str, enum.Enum):
    NEW = "NEW"
    EXTEND = "EXTEND"
    UPGRADE = "UPGRADE"
    UPGRADE_RENEW = "UPGRADE_RENEW"
    DOWNGRADE = "DOWNGRADE"

    @classmethod
    def _missing_(cls, value: object) -> Optional["ChangeType"]:
        normalized = str(value or "").strip().upper()
        # Rows written before RENEW was folded into EXTEND.
        if normalized == "RENEW":
            return cls.EXTEND
        for member in cls:
            if member.value == normalized:
                return member
        return None


class TransactionStatus(str, enum.Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"


class ChangeTypeColumn(TypeDecorator):
    """Stores ChangeType as its plain string value and reads legacy aliases back."""

    impl = String(16)
    cache_ok = True

    def process_bind_param(self, value: Any, dialect: Dialect) -> Optional[str]:
        if value is None:
            return None
        return ChangeType(value).value

    def process_result_value(self, value: Any, dialect: Dialect) -> Optional[ChangeType]:
        if value is None:
            return None
        return ChangeType(value)


class Tenant(Base):
    __tablename__ = "tenants"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    name: Mapped[str] = mapped_column(String(160))
    email: Mapped[str] = mapped_column(String(255), index=True)
    level_plan: Mapped[int] = mapped_column(Integer, default=0)
    plan_expiration: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True, index=True)
    active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)

    transactions: Mapped[list["SubscriptionTransaction"]] = relationship(back_populates="tenant")


class SubscriptionTransaction(Base):
    """
    One billing attempt.

    Immutable after creation except for the gateway mirror fields and the
    one-shot `paid_at` / period finalisation written by the reconciler.
    """

    __tablename__ = "subscription_transactions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    order_id: Mapped[str] = mapped_column(String(64), unique=True, index=True)
    tenant_id: Mapped[str] = mapped_column(ForeignKey("tenants.id"), index=True)
    gross_amount: Mapped[int] = mapped_column(Integer, default=0)
    change_type: Mapped[ChangeType] = mapped_column(ChangeTypeColumn())
    from_level: Mapped[int] = mapped_column(Integer, default=0)
    to_level: Mapped[int] = mapped_column(Integer, default=0)
    duration_months: Mapped[int] = mapped_column(Integer, default=1)
    status: Mapped[TransactionStatus] = mapped_column(
        Enum(
            TransactionStatus,
            native_enum=False,
            length=16,
            values_callable=lambda members: [member.value for member in members],
        ),
        default=TransactionStatus.PENDING,
    )
    gateway_status: Mapped[str] = mapped_column(String(32), default="pending")
    payment_method: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    gateway_transaction_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    payment_token: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    redirect_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    paid_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    period_start: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    period_end: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, index=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)

    tenant: Mapped[Tenant] = relationship(back_populates="transactions")


class WebhookAuditLog(Base):
    """
    Append-only record of authenticated gateway notifications.

    Deliveries that fail signature verification are never written here.
    """

    __tablename__ = "subscription_webhook_audit_logs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, index=True)
    provider: Mapped[str] = mapped_column(String(32), default="midtrans", index=True)
    order_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    gateway_status: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    raw_payload: Mapped[str] = mapped_column(Text)
    outcome: Mapped[str] = mapped_column(String(32), index=True)
    detail: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)


Index("ix_subscription_transactions_tenant_created", SubscriptionTransaction.tenant_id, SubscriptionTransaction.created_at)
