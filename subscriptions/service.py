from __future__ import annotations

import hashlib
import hmac
import json
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Final, Mapping, Optional, Union

from config import SUBSCRIPTION_RENEWAL_WINDOW_DAYS
from observability import get_logger, log_event

from .classifier import DowngradeEligibility, check_downgrade, classify_transition
from .entitlements import EntitlementStatus, tenant_effective_status
from .exceptions import (
    SubscriptionStateError,
    SubscriptionValidationError,
    TenantNotFoundError,
    UnknownOrderError,
    WebhookSignatureError,
)
from .models import ChangeType, SubscriptionTransaction, Tenant, TransactionStatus
from .periods import Clock, add_months, optional_utc, resolve_now
from .proration import compute_charge
from .provider import BasePaymentProvider, PaymentContact, get_payment_provider
from .repository import SubscriptionRepository

GATEWAY_STATUS_PENDING: Final[str] = "pending"
GATEWAY_STATUS_DOWNGRADED: Final[str] = "downgraded_no_charge"
FAILED_GATEWAY_STATUSES: Final[frozenset[str]] = frozenset({"deny", "expire", "cancel"})

OUTCOME_PENDING: Final[str] = "pending"
OUTCOME_FAILED: Final[str] = "failed"
OUTCOME_PAID: Final[str] = "paid"
OUTCOME_DUPLICATE: Final[str] = "duplicate"
OUTCOME_IGNORED: Final[str] = "ignored"

_LOGGER = get_logger("hrsaas.subscriptions.service")


@dataclass(frozen=True)
class SubscriptionChangeRequest:
    target_level: int
    duration_months: Optional[int] = None


@dataclass(frozen=True)
class PendingTransaction:
    order_id: str
    gross_amount: int
    change_type: ChangeType
    token: str
    redirect_url: str

    def as_dict(self) -> dict[str, Any]:
        return {
            "token": self.token,
            "redirect_url": self.redirect_url,
            "order_id": self.order_id,
            "gross_amount": self.gross_amount,
            "change_type": self.change_type.value,
        }


@dataclass(frozen=True)
class AppliedDowngrade:
    order_id: str
    from_level: int
    to_level: int
    message: str = "downgrade applied (no charge)"

    def as_dict(self) -> dict[str, Any]:
        return {"downgrade": True, "message": self.message, "order_id": self.order_id}


CreateResult = Union[PendingTransaction, AppliedDowngrade]


@dataclass(frozen=True)
class WebhookResult:
    order_id: str
    tenant_id: str
    outcome: str
    applied: bool = False
    period_start: Optional[datetime] = None
    period_end: Optional[datetime] = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "status": "ok",
            "order_id": self.order_id,
            "outcome": self.outcome,
            "applied": self.applied,
        }


# --------------------------------------------------------------------- ledger


def build_order_id(change_type: ChangeType, from_level: int, to_level: int, now: datetime) -> str:
    """Kind-prefixed order id, e.g. `upgrade1to2-1760860800000-3fa9c1`."""

    millis = int(now.timestamp() * 1000)
    suffix = secrets.token_hex(3)
    if change_type is ChangeType.NEW:
        prefix = f"new{to_level}"
    elif change_type is ChangeType.EXTEND:
        prefix = f"extend{to_level}"
    elif change_type in (ChangeType.UPGRADE, ChangeType.UPGRADE_RENEW):
        prefix = f"upgrade{from_level}to{to_level}"
    elif change_type is ChangeType.DOWNGRADE:
        prefix = f"downgrade{from_level}to{to_level}"
    else:
        raise SubscriptionStateError(f"unhandled change type: {change_type!r}")
    return f"{prefix}-{millis}-{suffix}"


def _require_tenant(repo: SubscriptionRepository, tenant_id: str, *, for_update: bool = False) -> Tenant:
    tenant = repo.get_tenant_for_update(tenant_id) if for_update else repo.get_tenant(tenant_id)
    if tenant is None:
        raise TenantNotFoundError(f"tenant not found: {tenant_id}")
    return tenant


def _apply_downgrade(
    repo: SubscriptionRepository,
    tenant: Tenant,
    *,
    from_level: int,
    to_level: int,
    now: datetime,
) -> AppliedDowngrade:
    expiration = optional_utc(tenant.plan_expiration)
    order_id = build_order_id(ChangeType.DOWNGRADE, from_level, to_level, now)
    repo.set_tenant_plan(tenant, level=to_level, now=now)
    repo.create_transaction(
        order_id=order_id,
        tenant_id=tenant.id,
        gross_amount=0,
        change_type=ChangeType.DOWNGRADE,
        from_level=from_level,
        to_level=to_level,
        duration_months=0,
        status=TransactionStatus.PAID,
        gateway_status=GATEWAY_STATUS_DOWNGRADED,
        paid_at=now,
        period_start=now,
        period_end=expiration,
        now=now,
    )
    log_event(
        _LOGGER,
        logging.INFO,
        "subscription.downgrade.applied",
        tenant_id=tenant.id,
        order_id=order_id,
        from_level=from_level,
        to_level=to_level,
    )
    return AppliedDowngrade(order_id=order_id, from_level=from_level, to_level=to_level)


def create_subscription_transaction(
    repo: SubscriptionRepository,
    tenant_id: str,
    request: SubscriptionChangeRequest,
    *,
    provider: Optional[BasePaymentProvider] = None,
    clock: Optional[Clock] = None,
    renewal_window_days: Optional[int] = None,
) -> CreateResult:
    """
    Turn a plan-change request into either an applied downgrade or a pending,
    gateway-backed transaction.

    Downgrades mutate the tenant and write an already-paid ledger row in the
    caller's unit of work. Every other kind asks the payment provider for a
    session and records the PENDING row together with its token.
    """

    window = SUBSCRIPTION_RENEWAL_WINDOW_DAYS if renewal_window_days is None else int(renewal_window_days)
    now = resolve_now(clock)
    tenant = _require_tenant(repo, tenant_id, for_update=True)
    current = tenant_effective_status(tenant, now)
    target_level = int(request.target_level)

    change_type = classify_transition(
        current.level,
        target_level,
        current.expiration,
        now,
        renewal_window_days=window,
    )
    if change_type is ChangeType.DOWNGRADE:
        return _apply_downgrade(repo, tenant, from_level=current.level, to_level=target_level, now=now)

    charge = compute_charge(
        change_type,
        current_level=current.level,
        target_level=target_level,
        duration_months=request.duration_months,
        expiration=current.expiration,
        now=now,
    )
    if charge.gross_amount <= 0:
        raise SubscriptionValidationError("the free plan does not require a payment")

    order_id = build_order_id(change_type, current.level, target_level, now)
    payment_provider = provider or get_payment_provider()
    session = payment_provider.create_session(
        order_id=order_id,
        gross_amount=charge.gross_amount,
        contact=PaymentContact(name=tenant.name, email=tenant.email),
    )
    repo.create_transaction(
        order_id=order_id,
        tenant_id=tenant.id,
        gross_amount=charge.gross_amount,
        change_type=change_type,
        from_level=current.level,
        to_level=target_level,
        duration_months=charge.duration_months,
        payment_token=session.token,
        redirect_url=session.redirect_url,
        now=now,
    )
    log_event(
        _LOGGER,
        logging.INFO,
        "subscription.transaction.created",
        tenant_id=tenant.id,
        order_id=order_id,
        change_type=change_type.value,
        gross_amount=charge.gross_amount,
        provider=session.provider,
    )
    return PendingTransaction(
        order_id=order_id,
        gross_amount=charge.gross_amount,
        change_type=change_type,
        token=session.token,
        redirect_url=session.redirect_url,
    )


def list_transaction_history(
    repo: SubscriptionRepository,
    tenant_id: str,
    *,
    limit: int = 50,
    offset: int = 0,
) -> list[SubscriptionTransaction]:
    _require_tenant(repo, tenant_id)
    return repo.list_transactions(tenant_id, limit=limit, offset=offset)


def check_downgrade_eligibility(
    repo: SubscriptionRepository,
    tenant_id: str,
    *,
    clock: Optional[Clock] = None,
    renewal_window_days: Optional[int] = None,
) -> DowngradeEligibility:
    window = SUBSCRIPTION_RENEWAL_WINDOW_DAYS if renewal_window_days is None else int(renewal_window_days)
    tenant = _require_tenant(repo, tenant_id)
    return check_downgrade(
        tenant.level_plan,
        optional_utc(tenant.plan_expiration),
        resolve_now(clock),
        renewal_window_days=window,
    )


def get_subscription_status(
    repo: SubscriptionRepository,
    tenant_id: str,
    *,
    clock: Optional[Clock] = None,
) -> EntitlementStatus:
    tenant = _require_tenant(repo, tenant_id)
    return tenant_effective_status(tenant, resolve_now(clock))


# ------------------------------------------------------------------- webhook


def _field(payload: Mapping[str, Any], name: str) -> str:
    value = payload.get(name)
    return "" if value is None else str(value)


def compute_signature(order_id: str, status_code: str, gross_amount: str, server_key: str) -> str:
    raw = f"{order_id}{status_code}{gross_amount}{server_key}"
    return hashlib.sha512(raw.encode("utf-8")).hexdigest()


def verify_webhook_signature(payload: Mapping[str, Any], server_key: str) -> bool:
    """
    Check a Midtrans notification signature.

    - Algorithm: SHA-512 over order_id + status_code + gross_amount + server key,
      each field exactly as the gateway sent it.
    - Constant-time compare via `hmac.compare_digest`.
    """

    secret = str(server_key or "")
    if not secret:
        return False
    provided = _field(payload, "signature_key").strip().lower()
    if not provided:
        return False
    expected = compute_signature(
        _field(payload, "order_id"),
        _field(payload, "status_code"),
        _field(payload, "gross_amount"),
        secret,
    )
    return hmac.compare_digest(expected, provided)


def classify_gateway_status(transaction_status: str, fraud_status: Optional[str] = None) -> str:
    status = str(transaction_status or "").strip().lower()
    fraud = str(fraud_status or "").strip().lower()
    if status == "settlement" or (status == "capture" and fraud == "accept"):
        return OUTCOME_PAID
    if status == GATEWAY_STATUS_PENDING:
        return OUTCOME_PENDING
    if status in FAILED_GATEWAY_STATUSES:
        return OUTCOME_FAILED
    return OUTCOME_IGNORED


def _parse_gross_amount(value: str) -> Optional[int]:
    try:
        return int(Decimal(value))
    except (InvalidOperation, ValueError, OverflowError):
        return None


def _apply_entitlement(
    repo: SubscriptionRepository,
    txn: SubscriptionTransaction,
    tenant: Tenant,
    now: datetime,
) -> tuple[datetime, datetime]:
    """Move the tenant to the paid plan; returns the granted (start, end) window."""

    current_expiry = optional_utc(tenant.plan_expiration)
    still_active = current_expiry is not None and current_expiry > now
    base_start = current_expiry if current_expiry is not None and still_active else now
    months = int(txn.duration_months or 1)
    change_type = txn.change_type

    if change_type is ChangeType.UPGRADE:
        # Proration already paid for the remaining term; the expiry only moves
        # if that term lapsed between checkout and confirmation.
        period_start = now
        period_end = current_expiry if current_expiry is not None and still_active else add_months(now, months)
    elif change_type is ChangeType.UPGRADE_RENEW:
        period_start = base_start
        period_end = add_months(base_start, 1)
    elif change_type in (ChangeType.NEW, ChangeType.EXTEND):
        period_start = base_start
        period_end = add_months(base_start, months)
    elif change_type is ChangeType.DOWNGRADE:
        raise SubscriptionStateError(f"downgrade {txn.order_id} is applied at creation, not by webhook")
    else:
        raise SubscriptionStateError(f"unhandled change type: {change_type!r}")

    repo.set_tenant_plan(tenant, level=txn.to_level, expiration=period_end, now=now)
    return period_start, period_end


def process_midtrans_webhook(
    repo: SubscriptionRepository,
    payload: Mapping[str, Any],
    *,
    server_key: str,
    clock: Optional[Clock] = None,
) -> WebhookResult:
    """
    Reconcile one gateway notification against the ledger.

    Integrity properties:
    - The signature is checked before anything is read or written.
    - The gateway status is always mirrored onto the transaction row.
    - Entitlement is applied at most once per order: `paid_at` is claimed with
      a conditional UPDATE inside the caller's unit of work, so retried or
      duplicated deliveries become no-ops.
    - The tenant's expiration is re-read at apply time, so interleaved
      confirmations for different orders stack instead of overwriting.
    """

    order_id = _field(payload, "order_id").strip()
    gateway_status = _field(payload, "transaction_status").strip().lower()

    if not verify_webhook_signature(payload, server_key):
        log_event(
            _LOGGER,
            logging.WARNING,
            "subscription.webhook.rejected_signature",
            order_id=order_id or None,
            gateway_status=gateway_status or None,
        )
        raise WebhookSignatureError("invalid signature key")

    log_event(
        _LOGGER,
        logging.INFO,
        "subscription.webhook.received",
        order_id=order_id,
        gateway_status=gateway_status,
    )
    if not order_id:
        raise SubscriptionValidationError("order_id is required")

    txn = repo.get_transaction_by_order_id(order_id)
    if txn is None:
        raise UnknownOrderError(f"subscription transaction not found: {order_id}")

    now = resolve_now(clock)
    repo.mirror_gateway_status(
        txn,
        gateway_status=gateway_status,
        payment_method=_field(payload, "payment_type").strip() or None,
        gateway_transaction_id=_field(payload, "transaction_id").strip() or None,
        now=now,
    )

    outcome = classify_gateway_status(gateway_status, _field(payload, "fraud_status"))
    if outcome == OUTCOME_FAILED:
        repo.mark_transaction_failed(txn, now=now)
        return _finish(repo, payload, txn, OUTCOME_FAILED)
    if outcome != OUTCOME_PAID:
        return _finish(repo, payload, txn, outcome)

    reported_amount = _parse_gross_amount(_field(payload, "gross_amount"))
    if reported_amount is not None and reported_amount != int(txn.gross_amount):
        log_event(
            _LOGGER,
            logging.WARNING,
            "subscription.webhook.amount_mismatch",
            order_id=order_id,
            expected=int(txn.gross_amount),
            reported=reported_amount,
        )

    if not repo.claim_payment(txn, now=now):
        if txn.status == TransactionStatus.FAILED:
            log_event(
                _LOGGER,
                logging.WARNING,
                "subscription.webhook.paid_after_failure",
                order_id=order_id,
                gateway_status=gateway_status,
            )
            return _finish(repo, payload, txn, OUTCOME_IGNORED, detail="transaction already failed")
        log_event(_LOGGER, logging.INFO, "subscription.webhook.duplicate", order_id=order_id)
        return _finish(repo, payload, txn, OUTCOME_DUPLICATE)

    tenant = repo.get_tenant_for_update(txn.tenant_id)
    if tenant is None:
        raise SubscriptionStateError(f"tenant {txn.tenant_id} missing for order {order_id}")
    period_start, period_end = _apply_entitlement(repo, txn, tenant, now)
    repo.finalize_period(txn, period_start=period_start, period_end=period_end, now=now)
    log_event(
        _LOGGER,
        logging.INFO,
        "subscription.webhook.applied",
        order_id=order_id,
        tenant_id=txn.tenant_id,
        change_type=txn.change_type.value,
        plan_level=txn.to_level,
        period_start=period_start,
        period_end=period_end,
    )
    return _finish(
        repo,
        payload,
        txn,
        OUTCOME_PAID,
        applied=True,
        period_start=period_start,
        period_end=period_end,
    )


def _finish(
    repo: SubscriptionRepository,
    payload: Mapping[str, Any],
    txn: SubscriptionTransaction,
    outcome: str,
    *,
    applied: bool = False,
    period_start: Optional[datetime] = None,
    period_end: Optional[datetime] = None,
    detail: Optional[str] = None,
) -> WebhookResult:
    repo.record_audit_log(
        raw_payload=json.dumps(dict(payload), ensure_ascii=False, default=str),
        outcome=outcome,
        order_id=txn.order_id,
        gateway_status=txn.gateway_status,
        detail=detail,
    )
    return WebhookResult(
        order_id=txn.order_id,
        tenant_id=txn.tenant_id,
        outcome=outcome,
        applied=applied,
        period_start=period_start,
        period_end=period_end,
    )
