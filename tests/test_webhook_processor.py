"""Webhook Event Processor tests.

Verifies:
  1. Credit purchase: 1000 → 6000 with one credit_purchase history row
  2. Redelivery of the same event id has no further effect
  3. Missing metadata / unknown tenant / unknown event type → skipped
  4. Subscription lifecycle: checkout, updated, deleted, paused, resumed
  5. Renewal invoices credit the plan allowance once per invoice
  6. Payment failures are recorded without touching the ledger
  7. Dispatch errors end as failed, stay terminal, and can be replayed
"""

import json
from concurrent.futures import ThreadPoolExecutor
from unittest.mock import patch

import pytest
from sqlalchemy import select

from creditledger.core.errors import InvalidEventError
from creditledger.core.models import BillingEvent, BillingHistory, CreditTransaction
from creditledger.core.webhooks import EventKind, EventStatus


# ── Helpers ────────────────────────────────────────────────────────────────────

def _event(event_id: str, event_type: str, obj: dict) -> dict:
    return {"id": event_id, "type": event_type, "data": {"object": obj}}


def checkout_event(event_id: str, tenant_id, credits="5000", **extra) -> dict:
    metadata = {}
    if tenant_id is not None:
        metadata["company_id"] = str(tenant_id)
    if credits is not None:
        metadata["credits"] = credits
    return _event(event_id, "checkout.session.completed", {
        "id": "cs_test_123",
        "mode": "payment",
        "payment_intent": "pi_test_123",
        "amount_total": 4900,
        "currency": "usd",
        "metadata": metadata,
        **extra,
    })


def subscription_event(event_id: str, event_type: str, customer: str = "cus_pro", price_id=None, **extra) -> dict:
    obj = {"id": "sub_123", "customer": customer, **extra}
    if price_id:
        obj["items"] = {"data": [{"price": {"id": price_id}}]}
    return _event(event_id, event_type, obj)


def invoice_event(event_id: str, event_type: str, customer: str = "cus_pro", **extra) -> dict:
    return _event(event_id, event_type, {
        "id": "in_123",
        "customer": customer,
        "subscription": "sub_123",
        "amount_paid": 2999,
        "amount_due": 2999,
        "currency": "usd",
        "lines": {"data": [{"price": {"id": "price_pro_monthly"}}]},
        **extra,
    })


def _history(session_factory, tenant_id: int) -> list[BillingHistory]:
    db = session_factory()
    try:
        return list(db.execute(
            select(BillingHistory).where(BillingHistory.tenant_id == tenant_id).order_by(BillingHistory.id)
        ).scalars().all())
    finally:
        db.close()


def _credit_rows(session_factory, tenant_id: int) -> int:
    db = session_factory()
    try:
        return len(db.execute(
            select(CreditTransaction.id).where(
                CreditTransaction.tenant_id == tenant_id, CreditTransaction.type == "credit",
            )
        ).all())
    finally:
        db.close()


@pytest.fixture
def pro_tenant(ledger):
    return ledger.create_tenant(
        "pro-co", "Pro Co", plan="pro", monthly_credit_limit=10_000,
        stripe_customer_id="cus_pro", opening_credits=200,
    )


# ── Event parsing ─────────────────────────────────────────────────────────────

def test_event_kind_falls_back_to_unknown() -> None:
    assert EventKind.from_type("invoice.paid") is EventKind.INVOICE_PAID
    assert EventKind.from_type("charge.refunded") is EventKind.UNKNOWN


@pytest.mark.parametrize("payload", [{}, {"id": "evt_1"}, {"type": "invoice.paid"}, {"id": 7, "type": "x"}, []])
def test_invalid_events_rejected(processor, payload) -> None:
    with pytest.raises(InvalidEventError):
        processor.process(payload)


# ── Credit purchase ──────────────────────────────────────────────────────────

def test_purchase_credits_tenant(processor, ledger, tenant_id, session_factory) -> None:
    result = processor.process(checkout_event("evt_purchase_1", tenant_id))

    assert result.status is EventStatus.APPLIED
    assert not result.duplicate
    assert ledger.current_balance(tenant_id) == 6000
    assert ledger.recompute_balance(tenant_id) == 6000

    history = _history(session_factory, tenant_id)
    assert len(history) == 1
    assert history[0].type == "credit_purchase"
    assert history[0].credits_added == 5000
    assert history[0].amount_cents == 4900
    assert history[0].stripe_payment_intent_id == "pi_test_123"
    assert history[0].billing_event_id == "evt_purchase_1"

    newest = ledger.history(tenant_id).items[0]
    assert newest.description == "Credit purchase - 5,000 credits"
    assert newest.metadata["kind"] == "purchase"
    assert newest.metadata["checkout_session_id"] == "cs_test_123"


def test_redelivery_has_no_effect(processor, ledger, tenant_id, session_factory) -> None:
    event = checkout_event("evt_purchase_2", tenant_id)
    processor.process(event)
    again = processor.process(event)

    assert again.duplicate
    assert again.status is EventStatus.APPLIED
    assert ledger.current_balance(tenant_id) == 6000
    assert len(_history(session_factory, tenant_id)) == 1
    assert _credit_rows(session_factory, tenant_id) == 2


def test_concurrent_redelivery_applies_once(processor, ledger, tenant_id, session_factory) -> None:
    event = checkout_event("evt_purchase_race", tenant_id)
    with ThreadPoolExecutor(max_workers=4) as pool:
        results = list(pool.map(lambda _: processor.process(event), range(6)))

    assert sum(1 for r in results if not r.duplicate) == 1
    assert all(r.status is EventStatus.APPLIED for r in results)
    assert ledger.current_balance(tenant_id) == 6000
    assert len(_history(session_factory, tenant_id)) == 1


@pytest.mark.parametrize("company, credits", [(None, "5000"), ("tenant", None), ("tenant", "0"), ("tenant", "lots")])
def test_purchase_with_missing_metadata_is_skipped(processor, ledger, tenant_id, session_factory,
                                                   company, credits) -> None:
    event = checkout_event("evt_bad_meta", tenant_id if company else None, credits)
    result = processor.process(event)

    assert result.status is EventStatus.SKIPPED
    assert ledger.current_balance(tenant_id) == 1000
    assert _history(session_factory, tenant_id) == []
    assert processor.event_status("evt_bad_meta") is EventStatus.SKIPPED


def test_purchase_for_unknown_tenant_is_skipped(processor) -> None:
    result = processor.process(checkout_event("evt_ghost", 9999))
    assert result.status is EventStatus.SKIPPED
    assert "not found" in result.detail


def test_purchase_accepts_tenant_id_metadata_key(processor, ledger, tenant_id) -> None:
    event = checkout_event("evt_alt_key", None)
    event["data"]["object"]["metadata"]["tenant_id"] = str(tenant_id)
    assert processor.process(event).status is EventStatus.APPLIED
    assert ledger.current_balance(tenant_id) == 6000


def test_unknown_event_type_is_skipped(processor, session_factory) -> None:
    result = processor.process(_event("evt_refund", "charge.refunded", {"id": "ch_1"}))
    assert result.status is EventStatus.SKIPPED

    db = session_factory()
    try:
        row = db.execute(select(BillingEvent).where(BillingEvent.external_id == "evt_refund")).scalar_one()
        assert row.status == "skipped"
        assert row.processed_at is not None
        assert json.loads(row.payload_json)["type"] == "charge.refunded"
    finally:
        db.close()


# ── Subscription lifecycle ───────────────────────────────────────────────────

def test_subscription_checkout_activates_plan(processor, ledger, tenant_id, session_factory) -> None:
    event = _event("evt_sub_checkout", "checkout.session.completed", {
        "id": "cs_sub_1",
        "mode": "subscription",
        "customer": "cus_new",
        "subscription": "sub_new",
        "amount_total": 2999,
        "currency": "usd",
        "metadata": {"company_id": str(tenant_id), "price_id": "price_pro_monthly"},
    })
    result = processor.process(event)

    assert result.status is EventStatus.APPLIED
    tenant = ledger.get_tenant(tenant_id)
    assert tenant.plan == "pro"
    assert tenant.monthly_credit_limit == 10_000
    assert tenant.stripe_customer_id == "cus_new"
    assert tenant.credits == 11_000
    history = _history(session_factory, tenant_id)
    assert [h.type for h in history] == ["subscription_created"]
    assert history[0].credits_added == 10_000


def test_subscription_updated_sets_plan_from_price(processor, ledger, pro_tenant) -> None:
    result = processor.process(subscription_event(
        "evt_sub_upd", "customer.subscription.updated", price_id="price_enterprise_monthly",
    ))
    assert result.status is EventStatus.APPLIED
    tenant = ledger.get_tenant(pro_tenant)
    assert tenant.plan == "enterprise"
    assert tenant.monthly_credit_limit == 50_000
    assert tenant.credits == 200


def test_subscription_updated_with_unknown_price_is_skipped(processor, ledger, pro_tenant) -> None:
    result = processor.process(subscription_event(
        "evt_sub_unknown", "customer.subscription.updated", price_id="price_does_not_exist",
    ))
    assert result.status is EventStatus.SKIPPED
    assert ledger.get_tenant(pro_tenant).plan == "pro"


def test_out_of_order_updates_last_applied_wins(processor, ledger, pro_tenant) -> None:
    processor.process(subscription_event("evt_b", "customer.subscription.updated", price_id="price_enterprise_monthly"))
    processor.process(subscription_event("evt_a", "customer.subscription.updated", price_id="price_pro_monthly"))
    assert ledger.get_tenant(pro_tenant).plan == "pro"


def test_subscription_deleted_reverts_to_default_plan(processor, ledger, pro_tenant, session_factory) -> None:
    result = processor.process(subscription_event(
        "evt_sub_del", "customer.subscription.deleted",
        canceled_at=1767225600, cancellation_details={"reason": "cancellation_requested"},
    ))

    assert result.status is EventStatus.APPLIED
    tenant = ledger.get_tenant(pro_tenant)
    assert tenant.plan == "starter"
    assert tenant.monthly_credit_limit == 1000
    assert tenant.credits == 200
    history = _history(session_factory, pro_tenant)
    assert len(history) == 1
    assert history[0].type == "subscription_cancelled"
    assert history[0].metadata_dict["cancellation_reason"] == "cancellation_requested"


def test_subscription_deleted_falls_back_to_cheapest_plan(session_factory, ledger, plans, pro_tenant) -> None:
    from creditledger.core.plans import PlanCatalog
    from creditledger.core.webhooks import WebhookEventProcessor

    odd_catalog = PlanCatalog(session_factory, default_plan_slug="free")
    processor = WebhookEventProcessor(session_factory, ledger, odd_catalog)
    processor.process(subscription_event("evt_sub_del_2", "customer.subscription.deleted"))
    assert ledger.get_tenant(pro_tenant).plan == "starter"


def test_subscription_event_for_unknown_customer_is_skipped(processor) -> None:
    result = processor.process(subscription_event("evt_sub_x", "customer.subscription.deleted", customer="cus_nobody"))
    assert result.status is EventStatus.SKIPPED


def test_subscription_paused_and_resumed(processor, ledger, pro_tenant, session_factory) -> None:
    processor.process(subscription_event(
        "evt_pause", "customer.subscription.paused", pause_collection={"behavior": "void"},
    ))
    processor.process(subscription_event(
        "evt_resume", "customer.subscription.resumed", price_id="price_enterprise_monthly",
    ))
    assert [h.type for h in _history(session_factory, pro_tenant)] == ["subscription_paused", "subscription_resumed"]
    assert ledger.get_tenant(pro_tenant).plan == "enterprise"


# ── Invoices ─────────────────────────────────────────────────────────────────

def test_invoice_paid_grants_monthly_credits_once(processor, ledger, pro_tenant, session_factory) -> None:
    first = processor.process(invoice_event("evt_inv_paid", "invoice.paid"))
    second = processor.process(invoice_event("evt_inv_succeeded", "invoice.payment_succeeded"))

    assert first.status is EventStatus.APPLIED
    assert second.status is EventStatus.SKIPPED
    assert ledger.current_balance(pro_tenant) == 10_200
    history = _history(session_factory, pro_tenant)
    assert [h.type for h in history] == ["subscription_payment"]
    assert history[0].stripe_invoice_id == "in_123"
    assert history[0].credits_added == 10_000


def test_non_subscription_invoice_is_skipped(processor, pro_tenant) -> None:
    result = processor.process(invoice_event("evt_inv_one_off", "invoice.paid", subscription=None))
    assert result.status is EventStatus.SKIPPED


def test_payment_failed_records_history_only(processor, ledger, pro_tenant, session_factory) -> None:
    result = processor.process(invoice_event(
        "evt_inv_failed", "invoice.payment_failed",
        last_finalization_error={"message": "Your card was declined."}, attempt_count=2,
    ))

    assert result.status is EventStatus.APPLIED
    assert ledger.current_balance(pro_tenant) == 200
    history = _history(session_factory, pro_tenant)
    assert len(history) == 1
    assert history[0].type == "payment_failed"
    assert history[0].status == "failed"
    assert history[0].metadata_dict["failure_reason"] == "Your card was declined."


def test_payment_failed_without_reason(processor, pro_tenant, session_factory) -> None:
    processor.process(invoice_event("evt_inv_failed_2", "invoice.payment_failed"))
    assert _history(session_factory, pro_tenant)[0].metadata_dict["failure_reason"] == "Unknown"


# ── Failures & replay ────────────────────────────────────────────────────────

def test_dispatch_error_marks_failed_and_is_acknowledged(processor, ledger, tenant_id) -> None:
    event = checkout_event("evt_boom", tenant_id)
    with patch.object(ledger, "find_tenant_id", side_effect=RuntimeError("boom")):
        result = processor.process(event)

    assert result.status is EventStatus.FAILED
    assert "boom" in result.detail
    assert processor.event_status("evt_boom") is EventStatus.FAILED
    assert ledger.current_balance(tenant_id) == 1000

    # failed is terminal: redelivery does nothing
    again = processor.process(event)
    assert again.duplicate
    assert again.status is EventStatus.FAILED
    assert ledger.current_balance(tenant_id) == 1000


def test_error_after_ledger_append_rolls_back(processor, ledger, tenant_id, session_factory) -> None:
    with patch("creditledger.core.webhooks.BillingHistory", side_effect=RuntimeError("history table gone")):
        result = processor.process(checkout_event("evt_partial", tenant_id))

    assert result.status is EventStatus.FAILED
    assert ledger.current_balance(tenant_id) == 1000
    assert _credit_rows(session_factory, tenant_id) == 1


def test_replay_reruns_failed_event(processor, ledger, tenant_id, session_factory) -> None:
    with patch.object(ledger, "find_tenant_id", side_effect=RuntimeError("boom")):
        processor.process(checkout_event("evt_retry", tenant_id))

    result = processor.replay("evt_retry")

    assert result.status is EventStatus.APPLIED
    assert ledger.current_balance(tenant_id) == 6000
    assert processor.event_status("evt_retry") is EventStatus.APPLIED
    # a second replay is a no-op
    assert processor.replay("evt_retry").duplicate
    assert ledger.current_balance(tenant_id) == 6000


def test_replay_unknown_event(processor) -> None:
    with pytest.raises(LookupError):
        processor.replay("evt_never_seen")
