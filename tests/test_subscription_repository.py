from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import text

from subscriptions import SubscriptionRepository, session_scope
from subscriptions.exceptions import SubscriptionStateError
from subscriptions.models import ChangeType, TransactionStatus
from subscriptions.periods import optional_utc

NOW = datetime(2026, 3, 10, 9, 30, tzinfo=timezone.utc)


def _pending(repo: SubscriptionRepository, tenant_id: str, order_id: str, **overrides):
    fields = {
        "order_id": order_id,
        "tenant_id": tenant_id,
        "gross_amount": 299_000,
        "change_type": ChangeType.NEW,
        "from_level": 0,
        "to_level": 1,
        "duration_months": 1,
        "payment_token": f"tok-{order_id}",
        "redirect_url": f"https://pay.invalid/{order_id}",
        "now": NOW,
    }
    fields.update(overrides)
    return repo.create_transaction(**fields)


def test_create_and_read_tenant(session_factory, make_tenant) -> None:
    tenant_id = make_tenant(level=1, expiration=NOW + timedelta(days=30), email=" HR@Acme.Test ")
    with session_scope(session_factory) as session:
        repo = SubscriptionRepository(session)
        tenant = repo.get_tenant(tenant_id)
        assert tenant is not None
        assert tenant.email == "hr@acme.test"
        assert tenant.level_plan == 1
        assert optional_utc(tenant.plan_expiration) == NOW + timedelta(days=30)
        assert repo.get_tenant("") is None
        assert repo.get_tenant_for_update("missing") is None


def test_set_tenant_plan_leaves_expiration_unless_given(session_factory, make_tenant) -> None:
    expiration = NOW + timedelta(days=3)
    tenant_id = make_tenant(level=2, expiration=expiration)
    with session_scope(session_factory) as session:
        repo = SubscriptionRepository(session)
        tenant = repo.get_tenant_for_update(tenant_id)
        repo.set_tenant_plan(tenant, level=1, now=NOW)
        assert tenant.level_plan == 1
        assert optional_utc(tenant.plan_expiration) == expiration

        repo.set_tenant_plan(tenant, level=1, expiration=expiration + timedelta(days=31), now=NOW)
        assert optional_utc(tenant.plan_expiration) == expiration + timedelta(days=31)


def test_duplicate_order_id_is_rejected(session_factory, make_tenant) -> None:
    tenant_id = make_tenant()
    with session_scope(session_factory) as session:
        repo = SubscriptionRepository(session)
        _pending(repo, tenant_id, "new1-1")
        with pytest.raises(SubscriptionStateError, match="duplicate order_id"):
            _pending(repo, tenant_id, "new1-1")

    with session_scope(session_factory) as session:
        assert len(SubscriptionRepository(session).list_transactions(tenant_id)) == 1


def test_claim_payment_succeeds_exactly_once(session_factory, make_tenant) -> None:
    tenant_id = make_tenant()
    with session_scope(session_factory) as session:
        repo = SubscriptionRepository(session)
        txn = _pending(repo, tenant_id, "new1-claim")
        assert repo.claim_payment(txn, now=NOW) is True
        assert txn.status == TransactionStatus.PAID
        assert optional_utc(txn.paid_at) == NOW

    with session_scope(session_factory) as session:
        repo = SubscriptionRepository(session)
        txn = repo.get_transaction_by_order_id("new1-claim")
        assert repo.claim_payment(txn, now=NOW + timedelta(hours=1)) is False
        assert optional_utc(txn.paid_at) == NOW


def test_mirror_keeps_previous_payment_fields(session_factory, make_tenant) -> None:
    tenant_id = make_tenant()
    with session_scope(session_factory) as session:
        repo = SubscriptionRepository(session)
        txn = _pending(repo, tenant_id, "new1-mirror")
        repo.mirror_gateway_status(txn, gateway_status="pending", payment_method="bank_transfer", gateway_transaction_id="gw-1")
        repo.mirror_gateway_status(txn, gateway_status="settlement")
        assert txn.gateway_status == "settlement"
        assert txn.payment_method == "bank_transfer"
        assert txn.gateway_transaction_id == "gw-1"


def test_failed_is_terminal_and_paid_cannot_fail(session_factory, make_tenant) -> None:
    tenant_id = make_tenant()
    with session_scope(session_factory) as session:
        repo = SubscriptionRepository(session)
        failed = _pending(repo, tenant_id, "new1-fail")
        assert repo.mark_transaction_failed(failed, now=NOW) is True
        assert repo.mark_transaction_failed(failed, now=NOW) is False
        assert failed.status == TransactionStatus.FAILED
        assert repo.claim_payment(failed, now=NOW) is False
        assert failed.paid_at is None

        paid = _pending(repo, tenant_id, "new1-paid")
        assert repo.claim_payment(paid, now=NOW) is True
        assert repo.mark_transaction_failed(paid, now=NOW) is False
        assert paid.status == TransactionStatus.PAID
        assert optional_utc(paid.paid_at) == NOW


def test_failure_does_not_overwrite_a_payment_claimed_elsewhere(session_factory, make_tenant) -> None:
    tenant_id = make_tenant()
    with session_scope(session_factory) as session:
        _pending(SubscriptionRepository(session), tenant_id, "new1-stale")

    with session_scope(session_factory) as session:
        repo = SubscriptionRepository(session)
        stale = repo.get_transaction_by_order_id("new1-stale")
        assert stale.status == TransactionStatus.PENDING

        with session_scope(session_factory) as other:
            other_repo = SubscriptionRepository(other)
            assert other_repo.claim_payment(other_repo.get_transaction_by_order_id("new1-stale"), now=NOW) is True

        assert repo.mark_transaction_failed(stale, now=NOW) is False
        assert stale.status == TransactionStatus.PAID

    with session_scope(session_factory) as session:
        txn = SubscriptionRepository(session).get_transaction_by_order_id("new1-stale")
        assert txn.status == TransactionStatus.PAID
        assert optional_utc(txn.paid_at) == NOW


def test_list_transactions_newest_first(session_factory, make_tenant) -> None:
    tenant_id = make_tenant()
    other_id = make_tenant(name="Other Co", email="ops@other.test")
    with session_scope(session_factory) as session:
        repo = SubscriptionRepository(session)
        for offset in range(3):
            _pending(repo, tenant_id, f"new1-{offset}", now=NOW + timedelta(minutes=offset))
        _pending(repo, other_id, "new1-other")

    with session_scope(session_factory) as session:
        repo = SubscriptionRepository(session)
        orders = [txn.order_id for txn in repo.list_transactions(tenant_id)]
        assert orders == ["new1-2", "new1-1", "new1-0"]
        assert [txn.order_id for txn in repo.list_transactions(tenant_id, limit=1, offset=1)] == ["new1-1"]


def test_legacy_renew_change_type_reads_back_as_extend(session_factory, make_tenant) -> None:
    tenant_id = make_tenant(level=1, expiration=NOW + timedelta(days=10))
    with session_scope(session_factory) as session:
        repo = SubscriptionRepository(session)
        _pending(repo, tenant_id, "renew-legacy", change_type=ChangeType.EXTEND, from_level=1)
        session.execute(
            text("UPDATE subscription_transactions SET change_type = 'RENEW' WHERE order_id = :order_id"),
            {"order_id": "renew-legacy"},
        )

    with session_scope(session_factory) as session:
        txn = SubscriptionRepository(session).get_transaction_by_order_id("renew-legacy")
        assert txn.change_type is ChangeType.EXTEND


def test_audit_log_filters(session_factory) -> None:
    with session_scope(session_factory) as session:
        repo = SubscriptionRepository(session)
        repo.record_audit_log(raw_payload="{}", outcome="pending", order_id="a", occurred_at=NOW)
        repo.record_audit_log(raw_payload="{}", outcome="paid", order_id="a", occurred_at=NOW + timedelta(seconds=1))
        repo.record_audit_log(raw_payload="{}", outcome="paid", order_id="b", occurred_at=NOW + timedelta(seconds=2))

    with session_scope(session_factory) as session:
        repo = SubscriptionRepository(session)
        assert [log.outcome for log in repo.list_audit_logs(order_id="a")] == ["paid", "pending"]
        assert {log.order_id for log in repo.list_audit_logs(outcome="paid")} == {"a", "b"}
