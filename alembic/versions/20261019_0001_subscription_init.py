"""Create tenants, subscription transactions and webhook audit log.

Revision ID: 20261019_0001
Revises:
Create Date: 2026-10-19 09:00:00.000000
"""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision = "20261019_0001"
down_revision = None
branch_labels = None
depends_on = None

_INDEXES = (
    ("tenants", "ix_tenants_email", ["email"], False),
    ("tenants", "ix_tenants_plan_expiration", ["plan_expiration"], False),
    ("subscription_transactions", "ix_subscription_transactions_order_id", ["order_id"], True),
    ("subscription_transactions", "ix_subscription_transactions_tenant_id", ["tenant_id"], False),
    ("subscription_transactions", "ix_subscription_transactions_created_at", ["created_at"], False),
    ("subscription_transactions", "ix_subscription_transactions_tenant_created", ["tenant_id", "created_at"], False),
    ("subscription_webhook_audit_logs", "ix_subscription_webhook_audit_logs_occurred_at", ["occurred_at"], False),
    ("subscription_webhook_audit_logs", "ix_subscription_webhook_audit_logs_provider", ["provider"], False),
    ("subscription_webhook_audit_logs", "ix_subscription_webhook_audit_logs_order_id", ["order_id"], False),
    ("subscription_webhook_audit_logs", "ix_subscription_webhook_audit_logs_outcome", ["outcome"], False),
)


def _table_exists(bind: sa.engine.Connection, table_name: str) -> bool:
    inspector = sa.inspect(bind)
    return table_name in set(inspector.get_table_names())


def _has_index(bind: sa.engine.Connection, table_name: str, index_name: str) -> bool:
    inspector = sa.inspect(bind)
    if table_name not in set(inspector.get_table_names()):
        return False
    return any(item.get("name") == index_name for item in inspector.get_indexes(table_name))


def upgrade() -> None:
    bind = op.get_bind()

    if not _table_exists(bind, "tenants"):
        op.create_table(
            "tenants",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("name", sa.String(length=160), nullable=False),
            sa.Column("email", sa.String(length=255), nullable=False),
            sa.Column("level_plan", sa.Integer(), nullable=False, server_default=sa.text("0")),
            sa.Column("plan_expiration", sa.DateTime(timezone=True), nullable=True),
            sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.text("1")),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
            sa.PrimaryKeyConstraint("id"),
        )

    if not _table_exists(bind, "subscription_transactions"):
        op.create_table(
            "subscription_transactions",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("order_id", sa.String(length=64), nullable=False),
            sa.Column("tenant_id", sa.String(length=36), nullable=False),
            sa.Column("gross_amount", sa.Integer(), nullable=False, server_default=sa.text("0")),
            sa.Column("change_type", sa.String(length=16), nullable=False),
            sa.Column("from_level", sa.Integer(), nullable=False, server_default=sa.text("0")),
            sa.Column("to_level", sa.Integer(), nullable=False, server_default=sa.text("0")),
            sa.Column("duration_months", sa.Integer(), nullable=False, server_default=sa.text("1")),
            sa.Column("status", sa.String(length=16), nullable=False, server_default=sa.text("'pending'")),
            sa.Column("gateway_status", sa.String(length=32), nullable=False, server_default=sa.text("'pending'")),
            sa.Column("payment_method", sa.String(length=64), nullable=True),
            sa.Column("gateway_transaction_id", sa.String(length=128), nullable=True),
            sa.Column("payment_token", sa.String(length=255), nullable=True),
            sa.Column("redirect_url", sa.Text(), nullable=True),
            sa.Column("paid_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("period_start", sa.DateTime(timezone=True), nullable=True),
            sa.Column("period_end", sa.DateTime(timezone=True), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
            sa.ForeignKeyConstraint(["tenant_id"], ["tenants.id"]),
            sa.PrimaryKeyConstraint("id"),
        )

    if not _table_exists(bind, "subscription_webhook_audit_logs"):
        op.create_table(
            "subscription_webhook_audit_logs",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("provider", sa.String(length=32), nullable=False, server_default=sa.text("'midtrans'")),
            sa.Column("order_id", sa.String(length=64), nullable=True),
            sa.Column("gateway_status", sa.String(length=32), nullable=True),
            sa.Column("raw_payload", sa.Text(), nullable=False),
            sa.Column("outcome", sa.String(length=32), nullable=False),
            sa.Column("detail", sa.Text(), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.PrimaryKeyConstraint("id"),
        )

    for table_name, index_name, columns, unique in _INDEXES:
        if not _has_index(bind, table_name, index_name):
            op.create_index(index_name, table_name, columns, unique=unique)


def downgrade() -> None:
    bind = op.get_bind()

    for table_name, index_name, _, _ in reversed(_INDEXES):
        if _has_index(bind, table_name, index_name):
            op.drop_index(index_name, table_name=table_name)
    for table_name in ("subscription_webhook_audit_logs", "subscription_transactions", "tenants"):
        if _table_exists(bind, table_name):
            op.drop_table(table_name)
