#!/usr/bin/env python3
"""
Create a company (tenant) row and optionally print a bearer token for it.

Company onboarding lives outside this service; this tool exists for local
development and smoke tests against a fresh database.
"""

from __future__ import annotations

import argparse
import sys
from pathlib import Path

# Make project modules importable when script is run from tools/.
ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from auth import AuthIdentity, issue_access_token  # noqa: E402
from config import AUTH_TOKEN_SECRET, AUTH_TOKEN_TTL_SECONDS  # noqa: E402
from subscriptions import SubscriptionRepository, init_subscription_db, session_scope  # noqa: E402


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Create a tenant for local development")
    parser.add_argument("--name", required=True, help="Company name")
    parser.add_argument("--email", required=True, help="Billing contact email")
    parser.add_argument("--tenant-id", default=None, help="Explicit tenant id (default: random uuid)")
    parser.add_argument("--username", default="owner", help="Token subject (default: owner)")
    parser.add_argument("--issue-token", action="store_true", help="Print a bearer token scoped to the tenant")
    parser.add_argument("--skip-migrate", action="store_true", help="Do not run migrations first")
    return parser.parse_args()


def main() -> int:
    args = parse_args()
    if not args.skip_migrate:
        init_subscription_db()

    with session_scope() as session:
        repo = SubscriptionRepository(session)
        if args.tenant_id and repo.get_tenant(args.tenant_id) is not None:
            print(f"[bootstrap-tenant] tenant already exists: {args.tenant_id}", file=sys.stderr)
            return 1
        tenant = repo.create_tenant(name=args.name, email=args.email, tenant_id=args.tenant_id)
        tenant_id = tenant.id

    print(f"[bootstrap-tenant] tenant_id={tenant_id}")
    if args.issue_token:
        identity = AuthIdentity(username=args.username, role="owner", tenant_id=tenant_id)
        print(issue_access_token(identity, AUTH_TOKEN_SECRET, ttl_seconds=AUTH_TOKEN_TTL_SECONDS))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
