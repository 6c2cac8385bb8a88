from __future__ import annotations

import time
from dataclasses import dataclass

import jwt

TOKEN_ALGORITHM = "HS256"
_ROLES = {"member", "admin", "owner"}


class AuthError(RuntimeError):
    pass


class AuthConfigError(AuthError):
    pass


@dataclass(frozen=True)
class AuthIdentity:
    """Caller resolved from a bearer token; `tenant_id` is the company the user acts for."""

    username: str
    role: str = "member"
    tenant_id: str | None = None

    @property
    def company_id(self) -> str:
        return str(self.tenant_id or self.username or "").strip()


def _normalize_role(role: str) -> str:
    normalized = str(role or "member").strip().lower()
    return normalized if normalized in _ROLES else "member"


def issue_access_token(identity: AuthIdentity, secret: str, ttl_seconds: int = 3600) -> str:
    if not secret:
        raise AuthConfigError("AUTH_TOKEN_SECRET is missing")
    issued_at = int(time.time())
    claims = {
        "sub": identity.username,
        "role": _normalize_role(identity.role),
        "tid": identity.tenant_id,
        "iat": issued_at,
        "exp": issued_at + max(60, int(ttl_seconds)),
    }
    return jwt.encode(claims, secret, algorithm=TOKEN_ALGORITHM)


def decode_access_token(token: str, secret: str) -> AuthIdentity:
    if not secret:
        raise AuthConfigError("AUTH_TOKEN_SECRET is missing")
    try:
        claims = jwt.decode(token, secret, algorithms=[TOKEN_ALGORITHM])
    except jwt.ExpiredSignatureError as exc:
        raise AuthError("token expired") from exc
    except jwt.InvalidTokenError as exc:
        raise AuthError("invalid token") from exc

    subject = str(claims.get("sub") or "").strip()
    if not subject:
        raise AuthError("invalid token subject")
    tenant_id = str(claims.get("tid") or "").strip() or None
    return AuthIdentity(username=subject, role=_normalize_role(str(claims.get("role") or "")), tenant_id=tenant_id)


def extract_bearer_token(authorization: str | None) -> str:
    raw = str(authorization or "").strip()
    if not raw:
        raise AuthError("missing Authorization header")
    scheme, _, token = raw.partition(" ")
    if scheme.lower() != "bearer":
        raise AuthError("invalid Authorization header")
    token = token.strip()
    if not token:
        raise AuthError("empty bearer token")
    return token
