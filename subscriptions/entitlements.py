from __future__ import annotations

import json
import logging
import threading
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional

import redis
from fastapi import Request

from config import REDIS_DISABLED, REDIS_URL
from observability import get_logger, log_event

from .catalog import LEVEL_FREE
from .db import SessionFactory, session_scope
from .exceptions import EntitlementRequiredError, UnauthorizedError
from .models import Tenant
from .periods import Clock, as_utc_aware, optional_utc, resolve_now
from .repository import SubscriptionRepository

ENTITLEMENT_CACHE_TTL_SECONDS = 60.0
ENTITLEMENT_CACHE_KEY_PREFIX = "subscriptions:entitlement:tenant:"

_LOGGER = get_logger("hrsaas.subscriptions.entitlements")


@dataclass(frozen=True)
class EntitlementStatus:
    level: int
    expiration: Optional[datetime]

    def as_dict(self) -> dict[str, Any]:
        return {
            "level_plan": self.level,
            "plan_expiration": self.expiration.isoformat() if self.expiration else None,
        }


FREE_STATUS = EntitlementStatus(level=LEVEL_FREE, expiration=None)


def effective_status(level: int, expiration: Optional[datetime], now: datetime) -> EntitlementStatus:
    """The only sanctioned way to read a plan: a lapsed or missing expiration means level 0."""
    expires_at = optional_utc(expiration)
    if expires_at is None or expires_at <= as_utc_aware(now):
        return FREE_STATUS
    return EntitlementStatus(level=int(level or 0), expiration=expires_at)


def tenant_effective_status(tenant: Tenant, now: datetime) -> EntitlementStatus:
    return effective_status(tenant.level_plan, tenant.plan_expiration, now)


class _EntitlementCache:
    """Stored (not effective) plan per tenant, in Redis with an in-process fallback."""

    def __init__(self) -> None:
        self._memory_lock = threading.Lock()
        self._memory_cache: dict[str, tuple[float, dict[str, Any]]] = {}
        self._redis_client = self._build_redis_client()

    @staticmethod
    def _build_redis_client() -> redis.Redis | None:
        if REDIS_DISABLED or str(REDIS_URL or "").startswith("memory://"):
            return None
        try:
            client = redis.Redis.from_url(REDIS_URL, decode_responses=True)
            client.ping()
            return client
        except redis.RedisError as exc:
            log_event(_LOGGER, logging.WARNING, "subscription.entitlement_cache.redis_unavailable", error=str(exc))
            return None

    def _drop_redis(self, exc: Exception) -> None:
        log_event(_LOGGER, logging.WARNING, "subscription.entitlement_cache.redis_error", error=str(exc))
        self._redis_client = None

    def get(self, tenant_id: str) -> dict[str, Any] | None:
        key = f"{ENTITLEMENT_CACHE_KEY_PREFIX}{tenant_id}"
        if self._redis_client is not None:
            try:
                raw = self._redis_client.get(key)
                if raw:
                    payload = json.loads(raw)
                    if isinstance(payload, dict):
                        return payload
            except redis.RedisError as exc:
                self._drop_redis(exc)

        now = time.time()
        with self._memory_lock:
            cached = self._memory_cache.get(key)
            if cached is None:
                return None
            expires_at, payload = cached
            if expires_at <= now:
                self._memory_cache.pop(key, None)
                return None
            return dict(payload)

    def set(self, tenant_id: str, payload: dict[str, Any], ttl_seconds: float = ENTITLEMENT_CACHE_TTL_SECONDS) -> None:
        key = f"{ENTITLEMENT_CACHE_KEY_PREFIX}{tenant_id}"
        if self._redis_client is not None:
            try:
                self._redis_client.setex(key, max(1, int(ttl_seconds)), json.dumps(payload))
                return
            except redis.RedisError as exc:
                self._drop_redis(exc)

        with self._memory_lock:
            self._memory_cache[key] = (time.time() + max(1.0, float(ttl_seconds)), dict(payload))

    def delete(self, tenant_id: str) -> None:
        key = f"{ENTITLEMENT_CACHE_KEY_PREFIX}{tenant_id}"
        if self._redis_client is not None:
            try:
                self._redis_client.delete(key)
            except redis.RedisError as exc:
                self._drop_redis(exc)

        with self._memory_lock:
            self._memory_cache.pop(key, None)


_CACHE = _EntitlementCache()


def _load_stored_plan(tenant_id: str, *, session_factory: SessionFactory | None = None) -> dict[str, Any] | None:
    with session_scope(session_factory) as session:
        tenant = SubscriptionRepository(session).get_tenant(tenant_id)
        if tenant is None:
            return None
        expiration = optional_utc(tenant.plan_expiration)
        return {
            "level": int(tenant.level_plan or 0),
            "expiration": expiration.isoformat() if expiration else None,
        }


def get_tenant_entitlement(
    tenant_id: str,
    *,
    session_factory: SessionFactory | None = None,
    clock: Clock | None = None,
    force_refresh: bool = False,
) -> EntitlementStatus:
    normalized = str(tenant_id or "").strip()
    if not normalized:
        return FREE_STATUS

    stored = None if force_refresh else _CACHE.get(normalized)
    if stored is None:
        stored = _load_stored_plan(normalized, session_factory=session_factory)
        if stored is None:
            return FREE_STATUS
        _CACHE.set(normalized, stored)

    raw_expiration = stored.get("expiration")
    expiration = datetime.fromisoformat(raw_expiration) if raw_expiration else None
    return effective_status(int(stored.get("level") or 0), expiration, resolve_now(clock))


def invalidate_tenant_entitlement(tenant_id: str) -> None:
    normalized = str(tenant_id or "").strip()
    if normalized:
        _CACHE.delete(normalized)


def require_plan_level(min_level: int):
    """FastAPI dependency gating a route on the caller's effective plan level."""

    required = int(min_level)

    async def _dependency(request: Request) -> EntitlementStatus:
        identity = getattr(request.state, "auth_identity", None)
        tenant_id = str(getattr(identity, "tenant_id", "") or getattr(identity, "username", "") or "").strip()
        if not tenant_id:
            raise UnauthorizedError("unauthorized")
        status = get_tenant_entitlement(tenant_id)
        if status.level < required:
            raise EntitlementRequiredError(f"plan level {required} required")
        return status

    return _dependency
