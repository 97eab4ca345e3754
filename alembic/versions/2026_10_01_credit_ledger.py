"""Credit ledger — tenants, credit_transactions, billing_events, billing_history, subscription_plans.

Revision ID: 202610010001
Revises:
Create Date: 2026-10-01

Changes:
  tenants              — cached balance, monthly allowance, plan, stripe customer id
  credit_transactions  — append-only ledger (amount > 0, type credit|debit)
  billing_events       — webhook idempotency records keyed by Stripe event id
  billing_history      — user-facing purchase / renewal / cancellation log
  subscription_plans   — static plan catalog
"""
from __future__ import annotations

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect


revision: str = '202610010001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _table_exists(conn, table: str) -> bool:
    insp = inspect(conn)
    return table in insp.get_table_names()


def upgrade() -> None:
    conn = op.get_bind()

    # ── 1. Tenants ───────────────────────────────────────────────────────
    if not _table_exists(conn, "tenants"):
        op.create_table(
            "tenants",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("slug", sa.String(), nullable=False, unique=True),
            sa.Column("name", sa.String(), nullable=False),
            sa.Column("credits", sa.Integer(), nullable=False, server_default=sa.text("0")),
            sa.Column("monthly_credit_limit", sa.Integer(), nullable=False, server_default=sa.text("0")),
            sa.Column("plan", sa.String(), nullable=False, server_default="starter"),
            sa.Column("stripe_customer_id", sa.String(), nullable=True, unique=True),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("created_at", sa.DateTime(), nullable=True),
            sa.Column("updated_at", sa.DateTime(), nullable=True),
            sa.CheckConstraint("credits >= 0", name="ck_tenants_credits_non_negative"),
        )
        op.create_index("ix_tenants_slug", "tenants", ["slug"])
        op.create_index("ix_tenants_stripe_customer_id", "tenants", ["stripe_customer_id"])

    # ── 2. Ledger ────────────────────────────────────────────────────────
    if not _table_exists(conn, "credit_transactions"):
        op.create_table(
            "credit_transactions",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("tenant_id", sa.Integer(), sa.ForeignKey("tenants.id"), nullable=False),
            sa.Column("amount", sa.Integer(), nullable=False),
            sa.Column("type", sa.String(), nullable=False),
            sa.Column("description", sa.String(), nullable=False, server_default=""),
            sa.Column("metadata_json", sa.Text(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.CheckConstraint("amount > 0", name="ck_credit_transactions_amount_positive"),
            sa.CheckConstraint("type IN ('credit', 'debit')", name="ck_credit_transactions_type"),
        )
        op.create_index("ix_credit_transactions_tenant_id", "credit_transactions", ["tenant_id"])
        op.create_index(
            "ix_credit_transactions_tenant_created", "credit_transactions", ["tenant_id", "created_at"],
        )

    # ── 3. Webhook idempotency ──────────────────────────────────────────
    if not _table_exists(conn, "billing_events"):
        op.create_table(
            "billing_events",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("external_id", sa.String(), nullable=False, unique=True),
            sa.Column("event_type", sa.String(), nullable=False),
            sa.Column("payload_json", sa.Text(), nullable=False),
            sa.Column("status", sa.String(), nullable=False, server_default="received"),
            sa.Column("detail", sa.Text(), nullable=True),
            sa.Column("received_at", sa.DateTime(), nullable=True),
            sa.Column("processed_at", sa.DateTime(), nullable=True),
        )
        op.create_index("ix_billing_events_external_id", "billing_events", ["external_id"])

    # ── 4. Billing history ──────────────────────────────────────────────
    if not _table_exists(conn, "billing_history"):
        op.create_table(
            "billing_history",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("tenant_id", sa.Integer(), sa.ForeignKey("tenants.id"), nullable=False),
            sa.Column("type", sa.String(), nullable=False),
            sa.Column("description", sa.String(), nullable=False, server_default=""),
            sa.Column("amount_cents", sa.Integer(), nullable=False, server_default=sa.text("0")),
            sa.Column("currency", sa.String(), nullable=False, server_default="usd"),
            sa.Column("status", sa.String(), nullable=False, server_default="succeeded"),
            sa.Column("stripe_invoice_id", sa.String(), nullable=True),
            sa.Column("stripe_subscription_id", sa.String(), nullable=True),
            sa.Column("stripe_payment_intent_id", sa.String(), nullable=True),
            sa.Column("credits_added", sa.Integer(), nullable=False, server_default=sa.text("0")),
            sa.Column("billing_event_id", sa.String(), nullable=True),
            sa.Column("metadata_json", sa.Text(), nullable=True),
            sa.Column("processed_at", sa.DateTime(), nullable=True),
        )
        op.create_index("ix_billing_history_tenant_id", "billing_history", ["tenant_id"])
        op.create_index("ix_billing_history_billing_event_id", "billing_history", ["billing_event_id"])

    # ── 5. Plan catalog ─────────────────────────────────────────────────
    if not _table_exists(conn, "subscription_plans"):
        op.create_table(
            "subscription_plans",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("name", sa.String(), nullable=False),
            sa.Column("slug", sa.String(), nullable=False, unique=True),
            sa.Column("monthly_credits", sa.Integer(), nullable=False, server_default=sa.text("0")),
            sa.Column("price_cents", sa.Integer(), nullable=False, server_default=sa.text("0")),
            sa.Column("stripe_price_id", sa.String(), nullable=True, unique=True),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("created_at", sa.DateTime(), nullable=True),
        )


def downgrade() -> None:
    op.drop_table("subscription_plans")
    op.drop_table("billing_history")
    op.drop_table("billing_events")
    op.drop_table("credit_transactions")
    op.drop_table("tenants")
