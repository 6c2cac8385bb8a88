from __future__ import annotations

import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Iterator, Optional

import pytest

# Settings are read at import time; pin them before any project module loads.
os.environ["APP_ENV"] = "test"
os.environ["CONFIG_PATH"] = str(Path(__file__).resolve().parent / "missing-config.yaml")
os.environ["DATABASE_URL"] = "sqlite+pysqlite:///:memory:"
os.environ["REDIS_DISABLED"] = "true"
os.environ["STARTUP_BOOTSTRAP_ENABLED"] = "false"
os.environ["PAYMENT_PROVIDER"] = "mock"
os.environ["MIDTRANS_SERVER_KEY"] = ""
os.environ["SUBSCRIPTION_RENEWAL_WINDOW_DAYS"] = "5"

from subscriptions import (  # noqa: E402
    FixedClock,
    SubscriptionRepository,
    build_session_factory,
    init_subscription_db,
    session_scope,
)
from subscriptions import entitlements  # noqa: E402
from subscriptions.db import SessionFactory  # noqa: E402

NOW = datetime(2026, 3, 10, 9, 30, tzinfo=timezone.utc)


@pytest.fixture(autouse=True)
def _clear_entitlement_cache() -> Iterator[None]:
    entitlements._CACHE._memory_cache.clear()
    yield
    entitlements._CACHE._memory_cache.clear()


@pytest.fixture()
def session_factory(tmp_path: Path) -> Iterator[SessionFactory]:
    engine, factory = build_session_factory(f"sqlite+pysqlite:///{tmp_path / 'subscriptions.db'}")
    init_subscription_db(engine)
    yield factory
    engine.dispose()


@pytest.fixture()
def clock() -> FixedClock:
    return FixedClock(NOW)


@pytest.fixture()
def make_tenant(session_factory: SessionFactory) -> Callable[..., str]:
    def _make(
        level: int = 0,
        expiration: Optional[datetime] = None,
        *,
        name: str = "Acme Payroll",
        email: str = "billing@acme.test",
        tenant_id: Optional[str] = None,
    ) -> str:
        with session_scope(session_factory) as session:
            tenant = SubscriptionRepository(session).create_tenant(
                name=name,
                email=email,
                level_plan=level,
                plan_expiration=expiration,
                tenant_id=tenant_id,
                now=NOW,
            )
            return tenant.id

    return _make
