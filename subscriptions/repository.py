from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from sqlalchemy import Select, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .exceptions import SubscriptionStateError
from .models import (
    ChangeType,
    SubscriptionTransaction,
    Tenant,
    TransactionStatus,
    WebhookAuditLog,
)
from .periods import as_utc_aware, utc_now

_UNSET: Any = object()


def _current(now: Optional[datetime]) -> datetime:
    return as_utc_aware(now) if now else utc_now()


class SubscriptionRepository:
    def __init__(self, session: Session) -> None:
        self.session = session

    def _supports_select_for_update(self) -> bool:
        bind = self.session.get_bind()
        dialect_name = str(getattr(getattr(bind, "dialect", None), "name", "")).lower()
        return dialect_name not in {"sqlite"}

    # ------------------------------------------------------------------ tenants

    def get_tenant(self, tenant_id: str) -> Optional[Tenant]:
        key = str(tenant_id or "").strip()
        if not key:
            return None
        return self.session.get(Tenant, key)

    def get_tenant_for_update(self, tenant_id: str) -> Optional[Tenant]:
        """Re-read the tenant row from the database, locking it where the dialect allows."""
        key = str(tenant_id or "").strip()
        if not key:
            return None
        query = select(Tenant).where(Tenant.id == key).execution_options(populate_existing=True)
        if self._supports_select_for_update():
            query = query.with_for_update()
        return self.session.scalar(query)

    def create_tenant(
        self,
        *,
        name: str,
        email: str,
        level_plan: int = 0,
        plan_expiration: Optional[datetime] = None,
        tenant_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Tenant:
        normalized_name = str(name or "").strip()
        if not normalized_name:
            raise SubscriptionStateError("tenant name is required")
        current = _current(now)
        tenant = Tenant(
            name=normalized_name,
            email=str(email or "").strip().lower(),
            level_plan=int(level_plan),
            plan_expiration=as_utc_aware(plan_expiration) if plan_expiration else None,
            created_at=current,
            updated_at=current,
        )
        if tenant_id:
            tenant.id = str(tenant_id).strip()
        self.session.add(tenant)
        self.session.flush()
        return tenant

    def set_tenant_plan(
        self,
        tenant: Tenant,
        *,
        level: int,
        expiration: Any = _UNSET,
        now: Optional[datetime] = None,
    ) -> Tenant:
        tenant.level_plan = int(level)
        if expiration is not _UNSET:
            tenant.plan_expiration = as_utc_aware(expiration) if expiration else None
        tenant.updated_at = _current(now)
        self.session.flush()
        return tenant

    # ------------------------------------------------------------- transactions

    def create_transaction(
        self,
        *,
        order_id: str,
        tenant_id: str,
        gross_amount: int,
        change_type: ChangeType,
        from_level: int,
        to_level: int,
        duration_months: int,
        status: TransactionStatus = TransactionStatus.PENDING,
        gateway_status: str = "pending",
        payment_token: Optional[str] = None,
        redirect_url: Optional[str] = None,
        paid_at: Optional[datetime] = None,
        period_start: Optional[datetime] = None,
        period_end: Optional[datetime] = None,
        now: Optional[datetime] = None,
    ) -> SubscriptionTransaction:
        if int(gross_amount) < 0:
            raise SubscriptionStateError("gross_amount cannot be negative")
        current = _current(now)
        txn = SubscriptionTransaction(
            order_id=str(order_id),
            tenant_id=str(tenant_id),
            gross_amount=int(gross_amount),
            change_type=ChangeType(change_type),
            from_level=int(from_level),
            to_level=int(to_level),
            duration_months=int(duration_months),
            status=status,
            gateway_status=str(gateway_status)[:32],
            payment_token=payment_token,
            redirect_url=redirect_url,
            paid_at=as_utc_aware(paid_at) if paid_at else None,
            period_start=as_utc_aware(period_start) if period_start else None,
            period_end=as_utc_aware(period_end) if period_end else None,
            created_at=current,
            updated_at=current,
        )
        try:
            with self.session.begin_nested():
                self.session.add(txn)
                self.session.flush()
        except IntegrityError as exc:
            raise SubscriptionStateError(f"duplicate order_id: {order_id}") from exc
        return txn

    def get_transaction_by_order_id(self, order_id: str) -> Optional[SubscriptionTransaction]:
        key = str(order_id or "").strip()
        if not key:
            return None
        query = (
            select(SubscriptionTransaction)
            .where(SubscriptionTransaction.order_id == key)
            .execution_options(populate_existing=True)
        )
        if self._supports_select_for_update():
            query = query.with_for_update()
        return self.session.scalar(query)

    def list_transactions(
        self,
        tenant_id: str,
        *,
        limit: int = 50,
        offset: int = 0,
    ) -> list[SubscriptionTransaction]:
        query: Select[Any] = (
            select(SubscriptionTransaction)
            .where(SubscriptionTransaction.tenant_id == str(tenant_id))
            .order_by(SubscriptionTransaction.created_at.desc(), SubscriptionTransaction.order_id.desc())
        )
        query = query.limit(max(1, min(int(limit), 200))).offset(max(0, int(offset)))
        return list(self.session.scalars(query).all())

    def mirror_gateway_status(
        self,
        txn: SubscriptionTransaction,
        *,
        gateway_status: str,
        payment_method: Optional[str] = None,
        gateway_transaction_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> SubscriptionTransaction:
        txn.gateway_status = str(gateway_status or "")[:32]
        if payment_method:
            txn.payment_method = str(payment_method)[:64]
        if gateway_transaction_id:
            txn.gateway_transaction_id = str(gateway_transaction_id)[:128]
        txn.updated_at = _current(now)
        self.session.flush()
        return txn

    def mark_transaction_failed(self, txn: SubscriptionTransaction, *, now: Optional[datetime] = None) -> bool:
        """
        Move a PENDING, unpaid transaction to FAILED.

        Returns False when the row already left PENDING, including when a
        concurrent settlement claimed it after `txn` was read.
        """

        current = _current(now)
        result = self.session.execute(
            update(SubscriptionTransaction)
            .where(
                SubscriptionTransaction.id == txn.id,
                SubscriptionTransaction.status == TransactionStatus.PENDING,
                SubscriptionTransaction.paid_at.is_(None),
            )
            .values(status=TransactionStatus.FAILED, updated_at=current)
            .execution_options(synchronize_session=False)
        )
        failed = int(result.rowcount or 0) == 1
        self.session.refresh(txn)
        return failed

    def claim_payment(self, txn: SubscriptionTransaction, *, now: Optional[datetime] = None) -> bool:
        """
        Set `paid_at` if and only if it is still NULL and the row is PENDING.

        Returns True for exactly one caller per transaction; the compare-and-set
        runs in the database so concurrent deliveries cannot both win.
        """

        current = _current(now)
        result = self.session.execute(
            update(SubscriptionTransaction)
            .where(
                SubscriptionTransaction.id == txn.id,
                SubscriptionTransaction.status == TransactionStatus.PENDING,
                SubscriptionTransaction.paid_at.is_(None),
            )
            .values(paid_at=current, status=TransactionStatus.PAID, updated_at=current)
            .execution_options(synchronize_session=False)
        )
        claimed = int(result.rowcount or 0) == 1
        self.session.refresh(txn)
        return claimed

    def finalize_period(
        self,
        txn: SubscriptionTransaction,
        *,
        period_start: datetime,
        period_end: datetime,
        now: Optional[datetime] = None,
    ) -> SubscriptionTransaction:
        txn.period_start = as_utc_aware(period_start)
        txn.period_end = as_utc_aware(period_end)
        txn.updated_at = _current(now)
        self.session.flush()
        return txn

    # ---------------------------------------------------------------- audit log

    def record_audit_log(
        self,
        *,
        raw_payload: str,
        outcome: str,
        provider: str = "midtrans",
        order_id: Optional[str] = None,
        gateway_status: Optional[str] = None,
        detail: Optional[str] = None,
        occurred_at: Optional[datetime] = None,
    ) -> WebhookAuditLog:
        log = WebhookAuditLog(
            provider=str(provider or "midtrans")[:32],
            order_id=str(order_id)[:64] if order_id else None,
            gateway_status=str(gateway_status)[:32] if gateway_status else None,
            raw_payload=str(raw_payload or ""),
            outcome=str(outcome or "")[:32] or "unknown",
            detail=str(detail) if detail else None,
            occurred_at=_current(occurred_at),
        )
        self.session.add(log)
        self.session.flush()
        return log

    def list_audit_logs(
        self,
        *,
        order_id: Optional[str] = None,
        outcome: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[WebhookAuditLog]:
        query = select(WebhookAuditLog).order_by(WebhookAuditLog.occurred_at.desc())
        if order_id:
            query = query.where(WebhookAuditLog.order_id == order_id)
        if outcome:
            query = query.where(WebhookAuditLog.outcome == outcome)
        query = query.limit(max(1, min(int(limit), 200))).offset(max(0, int(offset)))
        return list(self.session.scalars(query).all())
