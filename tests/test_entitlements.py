from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from fastapi import Depends, FastAPI, Request
from fastapi.testclient import TestClient

import main
from auth import AuthIdentity
from subscriptions import (
    FREE_STATUS,
    EntitlementStatus,
    FixedClock,
    SubscriptionError,
    SubscriptionRepository,
    effective_status,
    get_tenant_entitlement,
    invalidate_tenant_entitlement,
    require_plan_level,
    session_scope,
)
from subscriptions import db as subscription_db

NOW = datetime(2026, 3, 10, 9, 30, tzinfo=timezone.utc)


def test_effective_status_treats_lapsed_plans_as_free() -> None:
    assert effective_status(2, None, NOW) == FREE_STATUS
    assert effective_status(2, NOW, NOW) == FREE_STATUS
    assert effective_status(2, NOW - timedelta(seconds=1), NOW) == FREE_STATUS
    active = effective_status(2, NOW + timedelta(seconds=1), NOW)
    assert active == EntitlementStatus(level=2, expiration=NOW + timedelta(seconds=1))


def test_effective_status_accepts_naive_datetimes() -> None:
    naive = (NOW + timedelta(days=1)).replace(tzinfo=None)
    status = effective_status(1, naive, NOW)
    assert status.level == 1
    assert status.expiration == NOW + timedelta(days=1)
    assert status.as_dict() == {"level_plan": 1, "plan_expiration": (NOW + timedelta(days=1)).isoformat()}


def test_cached_entitlement_is_stale_until_invalidated(session_factory, make_tenant, clock) -> None:
    tenant_id = make_tenant(level=1, expiration=NOW + timedelta(days=30))
    assert get_tenant_entitlement(tenant_id, session_factory=session_factory, clock=clock).level == 1

    with session_scope(session_factory) as session:
        repo = SubscriptionRepository(session)
        repo.set_tenant_plan(repo.get_tenant_for_update(tenant_id), level=2, now=NOW)

    assert get_tenant_entitlement(tenant_id, session_factory=session_factory, clock=clock).level == 1
    assert get_tenant_entitlement(tenant_id, session_factory=session_factory, clock=clock, force_refresh=True).level == 2

    with session_scope(session_factory) as session:
        repo = SubscriptionRepository(session)
        repo.set_tenant_plan(repo.get_tenant_for_update(tenant_id), level=1, now=NOW)
    invalidate_tenant_entitlement(tenant_id)

    assert get_tenant_entitlement(tenant_id, session_factory=session_factory, clock=clock).level == 1


def test_cached_entitlement_still_lapses_with_the_clock(session_factory, make_tenant) -> None:
    clock = FixedClock(NOW)
    tenant_id = make_tenant(level=2, expiration=NOW + timedelta(hours=1))
    assert get_tenant_entitlement(tenant_id, session_factory=session_factory, clock=clock).level == 2

    clock.advance(hours=1)
    assert get_tenant_entitlement(tenant_id, session_factory=session_factory, clock=clock) == FREE_STATUS


def test_unknown_tenant_is_free(session_factory, clock) -> None:
    assert get_tenant_entitlement("ghost", session_factory=session_factory, clock=clock) == FREE_STATUS
    assert get_tenant_entitlement("   ", session_factory=session_factory, clock=clock) == FREE_STATUS


@pytest.fixture()
def gated_client(session_factory, monkeypatch: pytest.MonkeyPatch) -> TestClient:
    monkeypatch.setattr(subscription_db, "SessionLocal", session_factory)
    app = FastAPI()
    app.add_exception_handler(SubscriptionError, main.subscription_error_handler)

    @app.middleware("http")
    async def _fake_auth(request: Request, call_next):
        tenant_id = request.headers.get("X-Tenant")
        if tenant_id:
            request.state.auth_identity = AuthIdentity(username="hr-admin", role="admin", tenant_id=tenant_id)
        return await call_next(request)

    @app.get("/payroll/advanced-report")
    async def advanced_report(status: EntitlementStatus = Depends(require_plan_level(2))) -> dict:
        return {"level": status.level}

    return TestClient(app)


def test_require_plan_level_gates_routes(gated_client: TestClient, make_tenant) -> None:
    far_future = datetime.now(timezone.utc) + timedelta(days=365)
    pro_id = make_tenant(level=2, expiration=far_future)
    basic_id = make_tenant(level=1, expiration=far_future, name="Basic Co", email="hr@basic.test")
    lapsed_id = make_tenant(level=2, expiration=datetime.now(timezone.utc) - timedelta(days=1), email="hr@lapsed.test")

    assert gated_client.get("/payroll/advanced-report", headers={"X-Tenant": pro_id}).json() == {"level": 2}
    for tenant_id in (basic_id, lapsed_id):
        resp = gated_client.get("/payroll/advanced-report", headers={"X-Tenant": tenant_id})
        assert resp.status_code == 403
        assert resp.json()["error_code"] == "ENTITLEMENT_REQUIRED"
        assert resp.json()["detail"] == "plan level 2 required"

    resp = gated_client.get("/payroll/advanced-report")
    assert resp.status_code == 401
    assert resp.json()["error_code"] == "UNAUTHORIZED"
