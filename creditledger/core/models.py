import json
from datetime import datetime, timezone

from sqlalchemy import Boolean, CheckConstraint, Column, DateTime, ForeignKey, Index, Integer, String, Text, event

from creditledger.core.db import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Tenant(Base):
    """Billing-isolated company account.

    ``credits`` is a materialized view of the ledger: it is only ever written by
    the Ledger Store, in the same DB transaction as the CreditTransaction insert.
    """

    __tablename__ = "tenants"

    id = Column(Integer, primary_key=True, index=True)
    slug = Column(String, unique=True, index=True, nullable=False)
    name = Column(String, nullable=False)
    credits = Column(Integer, nullable=False, default=0)
    monthly_credit_limit = Column(Integer, nullable=False, default=0)
    plan = Column(String, nullable=False, default="starter")
    stripe_customer_id = Column(String, unique=True, nullable=True, index=True)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        CheckConstraint("credits >= 0", name="ck_tenants_credits_non_negative"),
    )


# ─── Ledger ───────────────────────────────────────────────────────────────────

class CreditTransaction(Base):
    """Immutable ledger row. Corrections are new offsetting rows."""

    __tablename__ = "credit_transactions"

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(Integer, ForeignKey("tenants.id"), nullable=False, index=True)
    amount = Column(Integer, nullable=False)              # always > 0
    type = Column(String, nullable=False)                 # credit | debit
    description = Column(String, nullable=False, default="")
    metadata_json = Column(Text, nullable=True)           # JSON, see core/metadata.py
    created_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        Index("ix_credit_transactions_tenant_created", "tenant_id", "created_at"),
        CheckConstraint("amount > 0", name="ck_credit_transactions_amount_positive"),
        CheckConstraint("type IN ('credit', 'debit')", name="ck_credit_transactions_type"),
    )

    @property
    def metadata_dict(self) -> dict:
        if not self.metadata_json:
            return {}
        return json.loads(self.metadata_json)


@event.listens_for(CreditTransaction, "before_update")
def _reject_transaction_update(mapper, connection, target):
    raise TypeError("CreditTransaction rows are immutable; append an offsetting transaction instead")


@event.listens_for(CreditTransaction, "before_delete")
def _reject_transaction_delete(mapper, connection, target):
    raise TypeError("CreditTransaction rows are immutable; append an offsetting transaction instead")


# ─── Billing Models ───────────────────────────────────────────────────────────

class BillingEvent(Base):
    """Idempotency record for a payment-provider webhook event."""

    __tablename__ = "billing_events"

    id = Column(Integer, primary_key=True, index=True)
    external_id = Column(String, unique=True, nullable=False, index=True)  # Stripe evt_...
    event_type = Column(String, nullable=False)
    payload_json = Column(Text, nullable=False)
    # Status: received | applied | skipped | failed
    status = Column(String, nullable=False, default="received")
    detail = Column(Text, nullable=True)                  # skip reason or error text
    received_at = Column(DateTime, default=utcnow)
    processed_at = Column(DateTime, nullable=True)


class BillingHistory(Base):
    """User-facing billing log (purchases, renewals, cancellations, failures)."""

    __tablename__ = "billing_history"

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(Integer, ForeignKey("tenants.id"), nullable=False, index=True)
    # credit_purchase | subscription_created | subscription_payment |
    # subscription_cancelled | subscription_paused | subscription_resumed | payment_failed
    type = Column(String, nullable=False)
    description = Column(String, nullable=False, default="")
    amount_cents = Column(Integer, nullable=False, default=0)
    currency = Column(String, nullable=False, default="usd")
    status = Column(String, nullable=False, default="succeeded")  # succeeded | failed
    stripe_invoice_id = Column(String, nullable=True)
    stripe_subscription_id = Column(String, nullable=True)
    stripe_payment_intent_id = Column(String, nullable=True)
    credits_added = Column(Integer, nullable=False, default=0)
    billing_event_id = Column(String, nullable=True, index=True)
    metadata_json = Column(Text, nullable=True)
    processed_at = Column(DateTime, default=utcnow)

    @property
    def metadata_dict(self) -> dict:
        if not self.metadata_json:
            return {}
        return json.loads(self.metadata_json)


class SubscriptionPlan(Base):
    """Static plan reference data."""

    __tablename__ = "subscription_plans"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, nullable=False)               # "Starter", "Pro", "Enterprise"
    slug = Column(String, unique=True, nullable=False)  # "starter", "pro", "enterprise"
    monthly_credits = Column(Integer, nullable=False, default=0)
    price_cents = Column(Integer, nullable=False, default=0)  # 0 = free
    stripe_price_id = Column(String, unique=True, nullable=True)  # NULL for free plans
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, default=utcnow)
