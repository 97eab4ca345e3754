"""creditledger/core/webhooks.py — Webhook Event Processor.

Consumes verified payment-provider events and applies their ledger / plan
effects at most once per external event id.

State machine per event id:
    received ──► applied | skipped | failed      (terminal)

Idempotency:
    1. ``_claim`` inserts a ``billing_events`` row (unique external id). A
       redelivery finds the existing row; terminal rows are acknowledged with
       no further effect.
    2. Effects (ledger append, plan change, billing history) and the
       ``received → terminal`` transition are committed in ONE transaction.
       The transition is a guarded UPDATE (``WHERE status = 'received'``);
       if another worker already finalized the event the whole unit rolls back.

Stripe events handled:
    checkout.session.completed      → credit purchase (payment mode) or plan activation (subscription mode)
    customer.subscription.updated   → plan + monthly allowance from price id
    customer.subscription.deleted   → revert to the default plan tier
    customer.subscription.paused    → history row
    customer.subscription.resumed   → history row, plan from price id
    invoice.payment_succeeded/.paid → monthly renewal credits
    invoice.payment_failed          → history row, no ledger effect
    anything else                   → skipped
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Mapping, Optional

import structlog
from pydantic import BaseModel, Field
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from creditledger.core.errors import InvalidEventError, LedgerUnavailableError
from creditledger.core.instrumentation import CREDITS_ADDED, WEBHOOK_EVENTS
from creditledger.core.ledger import LedgerStore, TenantLedgerScope, TransactionType, to_storage
from creditledger.core.metadata import PurchaseInfo, SubscriptionGrant
from creditledger.core.models import BillingEvent, BillingHistory
from creditledger.core.plans import PlanCatalog, PlanInfo

logger = structlog.get_logger()


class EventKind(str, Enum):
    CHECKOUT_COMPLETED = "checkout.session.completed"
    SUBSCRIPTION_UPDATED = "customer.subscription.updated"
    SUBSCRIPTION_DELETED = "customer.subscription.deleted"
    SUBSCRIPTION_PAUSED = "customer.subscription.paused"
    SUBSCRIPTION_RESUMED = "customer.subscription.resumed"
    INVOICE_PAYMENT_SUCCEEDED = "invoice.payment_succeeded"
    INVOICE_PAID = "invoice.paid"
    INVOICE_PAYMENT_FAILED = "invoice.payment_failed"
    UNKNOWN = "unknown"

    @classmethod
    def from_type(cls, raw: str) -> "EventKind":
        try:
            return cls(raw)
        except ValueError:
            return cls.UNKNOWN


class EventStatus(str, Enum):
    RECEIVED = "received"
    APPLIED = "applied"
    SKIPPED = "skipped"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self is not EventStatus.RECEIVED


class WebhookEvent(BaseModel):
    """A verified provider event: ``{id, type, data}``."""

    id: str
    type: str
    data: dict[str, Any] = Field(default_factory=dict)

    @property
    def kind(self) -> EventKind:
        return EventKind.from_type(self.type)

    @property
    def object(self) -> dict[str, Any]:
        return self.data.get("object") or {}

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "WebhookEvent":
        if not isinstance(payload, Mapping):
            raise InvalidEventError("webhook event must be a JSON object")
        event_id = payload.get("id")
        event_type = payload.get("type")
        if not event_id or not isinstance(event_id, str) or not isinstance(event_type, str):
            raise InvalidEventError("webhook event requires string 'id' and 'type'")
        return cls(id=event_id, type=event_type, data=dict(payload.get("data") or {}))


@dataclass(frozen=True)
class ProcessResult:
    event_id: str
    event_type: str
    status: EventStatus
    duplicate: bool = False
    detail: Optional[str] = None


@dataclass(frozen=True)
class _Outcome:
    status: EventStatus
    detail: Optional[str] = None
    finalized: bool = False


class _AlreadyFinalized(Exception):
    """Another delivery of the same event reached a terminal status first."""


# ── Payload helpers ─────────────────────────────────────────────────────────────

def _to_int(value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


def _price_id(obj: Mapping[str, Any]) -> str | None:
    items = (obj.get("items") or {}).get("data") or []
    if items:
        return ((items[0] or {}).get("price") or {}).get("id")
    return None


def _invoice_price_id(invoice: Mapping[str, Any]) -> str | None:
    lines = (invoice.get("lines") or {}).get("data") or []
    if lines:
        return ((lines[0] or {}).get("price") or {}).get("id")
    return None


def _dumps(data: Mapping[str, Any]) -> str:
    return json.dumps(data, ensure_ascii=False, default=str)


class WebhookEventProcessor:
    """Only writer of BillingEvent rows and of provider-driven plan changes."""

    def __init__(self, session_factory: sessionmaker, ledger: LedgerStore, plans: PlanCatalog) -> None:
        self._session_factory = session_factory
        self._ledger = ledger
        self._plans = plans
        self._handlers: dict[EventKind, Callable[[WebhookEvent], _Outcome]] = {
            EventKind.CHECKOUT_COMPLETED: self._on_checkout_completed,
            EventKind.SUBSCRIPTION_UPDATED: self._on_subscription_updated,
            EventKind.SUBSCRIPTION_DELETED: self._on_subscription_deleted,
            EventKind.SUBSCRIPTION_PAUSED: self._on_subscription_paused,
            EventKind.SUBSCRIPTION_RESUMED: self._on_subscription_resumed,
            EventKind.INVOICE_PAYMENT_SUCCEEDED: self._on_invoice_paid,
            EventKind.INVOICE_PAID: self._on_invoice_paid,
            EventKind.INVOICE_PAYMENT_FAILED: self._on_payment_failed,
        }

    # ── Entry points ──────────────────────────────────────────────────────────

    def process(self, payload: Mapping[str, Any] | WebhookEvent) -> ProcessResult:
        """Apply one event. Never raises for dispatch failures; those end as ``failed``.

        Raises InvalidEventError for payloads without id/type and
        LedgerUnavailableError if the event cannot even be recorded.
        """
        event = payload if isinstance(payload, WebhookEvent) else WebhookEvent.from_payload(payload)
        with structlog.contextvars.bound_contextvars(event_id=event.id, event_type=event.type):
            logger.info("billing.webhook.received")
            existing = self._claim(event)
            if existing is not None and existing.is_terminal:
                logger.info("billing.webhook.duplicate", status=existing.value)
                return ProcessResult(event.id, event.type, existing, duplicate=True)
            return self._run(event)

    def replay(self, external_id: str) -> ProcessResult:
        """Re-run a ``failed`` event from its stored payload (operator follow-up)."""
        db = self._session_factory()
        try:
            row = db.execute(
                select(BillingEvent).where(BillingEvent.external_id == external_id)
            ).scalars().first()
            if row is None:
                raise LookupError(f"billing event {external_id} not found")
            if row.status != EventStatus.FAILED.value:
                return ProcessResult(row.external_id, row.event_type, EventStatus(row.status), duplicate=True)
            result = db.execute(
                update(BillingEvent)
                .where(BillingEvent.external_id == external_id, BillingEvent.status == EventStatus.FAILED.value)
                .values(status=EventStatus.RECEIVED.value, detail=None, processed_at=None)
            )
            if result.rowcount != 1:
                db.rollback()
                return ProcessResult(row.external_id, row.event_type, EventStatus(row.status), duplicate=True)
            db.commit()
            event = WebhookEvent.from_payload(json.loads(row.payload_json))
        except SQLAlchemyError as exc:
            db.rollback()
            raise LedgerUnavailableError(str(exc)) from exc
        finally:
            db.close()

        with structlog.contextvars.bound_contextvars(event_id=event.id, event_type=event.type):
            logger.info("billing.webhook.replay")
            return self._run(event)

    def event_status(self, external_id: str) -> EventStatus | None:
        db = self._session_factory()
        try:
            status = db.execute(
                select(BillingEvent.status).where(BillingEvent.external_id == external_id)
            ).scalar_one_or_none()
            return EventStatus(status) if status else None
        finally:
            db.close()

    # ── Bookkeeping ──────────────────────────────────────────────────────────

    def _claim(self, event: WebhookEvent) -> EventStatus | None:
        """Record the event as received. Returns the stored status if it already existed."""
        db = self._session_factory()
        try:
            existing = db.execute(
                select(BillingEvent.status).where(BillingEvent.external_id == event.id)
            ).scalar_one_or_none()
            if existing is not None:
                return EventStatus(existing)
            db.add(BillingEvent(
                external_id=event.id,
                event_type=event.type,
                payload_json=_dumps(event.model_dump()),
                status=EventStatus.RECEIVED.value,
                received_at=to_storage(self._ledger.now()),
            ))
            db.commit()
            return None
        except IntegrityError:
            # Concurrent delivery inserted the row first.
            db.rollback()
            existing = db.execute(
                select(BillingEvent.status).where(BillingEvent.external_id == event.id)
            ).scalar_one()
            return EventStatus(existing)
        except SQLAlchemyError as exc:
            db.rollback()
            logger.error("billing.webhook.claim_failed", error=str(exc))
            raise LedgerUnavailableError(str(exc)) from exc
        finally:
            db.close()

    def _finalize(self, db: Session, event: WebhookEvent, status: EventStatus, detail: str | None = None) -> None:
        result = db.execute(
            update(BillingEvent)
            .where(BillingEvent.external_id == event.id, BillingEvent.status == EventStatus.RECEIVED.value)
            .values(status=status.value, detail=detail, processed_at=to_storage(self._ledger.now()))
        )
        if result.rowcount != 1:
            raise _AlreadyFinalized(event.id)

    def _finalize_standalone(self, event: WebhookEvent, status: EventStatus, detail: str | None) -> None:
        db = self._session_factory()
        try:
            self._finalize(db, event, status, detail)
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def _run(self, event: WebhookEvent) -> ProcessResult:
        handler = self._handlers.get(event.kind)
        try:
            if handler is None:
                outcome = _Outcome(EventStatus.SKIPPED, f"unhandled event type {event.type}")
            else:
                outcome = handler(event)
            if not outcome.finalized:
                self._finalize_standalone(event, outcome.status, outcome.detail)
        except _AlreadyFinalized:
            logger.info("billing.webhook.duplicate", reason="finalized_concurrently")
            return ProcessResult(event.id, event.type, self.event_status(event.id) or EventStatus.APPLIED, duplicate=True)
        except Exception as exc:
            # Do NOT propagate: the provider would redeliver endlessly.
            logger.error("billing.webhook.failed", error=str(exc), exc_info=True)
            try:
                self._finalize_standalone(event, EventStatus.FAILED, str(exc)[:1000])
            except Exception as mark_exc:
                logger.error("billing.webhook.mark_failed_failed", error=str(mark_exc))
            WEBHOOK_EVENTS.labels(event_type=event.type, status=EventStatus.FAILED.value).inc()
            return ProcessResult(event.id, event.type, EventStatus.FAILED, detail=str(exc))

        if outcome.status is EventStatus.SKIPPED:
            logger.warning("billing.webhook.skipped", reason=outcome.detail)
        else:
            logger.info("billing.webhook.applied", detail=outcome.detail)
        WEBHOOK_EVENTS.labels(event_type=event.type, status=outcome.status.value).inc()
        return ProcessResult(event.id, event.type, outcome.status, detail=outcome.detail)

    def _resolve_tenant(self, obj: Mapping[str, Any]) -> int | None:
        meta = obj.get("metadata") or {}
        return self._ledger.find_tenant_id(
            tenant_id=meta.get("company_id") or meta.get("tenant_id"),
            stripe_customer_id=obj.get("customer"),
        )

    def _history(self, scope: TenantLedgerScope, event: WebhookEvent, type_: str, description: str, **fields) -> None:
        metadata = fields.pop("metadata", None)
        scope.session.add(BillingHistory(
            tenant_id=scope.tenant_id,
            type=type_,
            description=description,
            billing_event_id=event.id,
            metadata_json=_dumps(metadata) if metadata else None,
            processed_at=to_storage(self._ledger.now()),
            **fields,
        ))

    def _apply_plan(self, scope: TenantLedgerScope, plan: PlanInfo) -> None:
        if scope.tenant.plan != plan.slug:
            logger.info("billing.webhook.plan_changed", tenant_id=scope.tenant_id,
                        old_plan=scope.tenant.plan, new_plan=plan.slug)
        scope.tenant.plan = plan.slug
        scope.tenant.monthly_credit_limit = plan.monthly_credits

    # ── Handlers ─────────────────────────────────────────────────────────────

    def _on_checkout_completed(self, event: WebhookEvent) -> _Outcome:
        if event.object.get("mode") == "subscription":
            return self._on_subscription_checkout(event)
        return self._on_credit_purchase(event)

    def _on_credit_purchase(self, event: WebhookEvent) -> _Outcome:
        session = event.object
        meta = session.get("metadata") or {}
        raw_tenant = meta.get("company_id") or meta.get("tenant_id")
        credits = _to_int(meta.get("credits"))
        if not raw_tenant or credits <= 0:
            logger.warning("billing.webhook.invalid_purchase_metadata",
                           session_id=session.get("id"), company_id=raw_tenant, credits=meta.get("credits"))
            return _Outcome(EventStatus.SKIPPED, "missing company_id or credits metadata")

        tenant_id = self._ledger.find_tenant_id(tenant_id=raw_tenant)
        if tenant_id is None:
            logger.error("billing.webhook.purchase_tenant_not_found", company_id=raw_tenant)
            return _Outcome(EventStatus.SKIPPED, f"tenant {raw_tenant} not found")

        description = f"Credit purchase - {credits:,} credits"
        amount_total = _to_int(session.get("amount_total"))
        currency = session.get("currency") or "usd"
        with self._ledger.tenant_scope(tenant_id) as scope:
            scope.append(credits, TransactionType.CREDIT, description, PurchaseInfo(
                checkout_session_id=session.get("id"),
                payment_intent_id=session.get("payment_intent"),
                amount_paid=amount_total,
                currency=currency,
            ))
            self._history(
                scope, event, "credit_purchase", description,
                amount_cents=amount_total,
                currency=currency,
                status="succeeded",
                stripe_payment_intent_id=session.get("payment_intent"),
                credits_added=credits,
                metadata={"checkout_session_id": session.get("id"), "package": meta.get("credits")},
            )
            self._finalize(scope.session, event, EventStatus.APPLIED, f"credited {credits}")
        CREDITS_ADDED.labels(tenant_id=str(tenant_id)).inc(credits)
        return _Outcome(EventStatus.APPLIED, f"credited {credits}", finalized=True)

    def _on_subscription_checkout(self, event: WebhookEvent) -> _Outcome:
        session = event.object
        meta = session.get("metadata") or {}
        tenant_id = self._resolve_tenant(session)
        if tenant_id is None:
            return _Outcome(EventStatus.SKIPPED, "tenant not found for subscription checkout")
        plan = self._plans.by_price_id(meta.get("price_id")) or self._plans.by_slug(meta.get("plan"))
        if plan is None:
            logger.warning("billing.webhook.subscription_plan_not_found",
                           price_id=meta.get("price_id"), plan=meta.get("plan"))
            return _Outcome(EventStatus.SKIPPED, "unknown subscription plan")

        with self._ledger.tenant_scope(tenant_id) as scope:
            self._apply_plan(scope, plan)
            if session.get("customer") and not scope.tenant.stripe_customer_id:
                scope.tenant.stripe_customer_id = session.get("customer")
            if plan.monthly_credits > 0:
                scope.append(plan.monthly_credits, TransactionType.CREDIT,
                             f"Initial subscription credits - {plan.name}",
                             SubscriptionGrant(plan=plan.slug, subscription_id=session.get("subscription"),
                                               checkout_session_id=session.get("id")))
            self._history(
                scope, event, "subscription_created", f"New subscription created - {plan.name}",
                amount_cents=_to_int(session.get("amount_total")),
                currency=session.get("currency") or "usd",
                status="succeeded",
                stripe_subscription_id=session.get("subscription"),
                credits_added=plan.monthly_credits,
                metadata={"checkout_session_id": session.get("id"), "plan": plan.slug},
            )
            self._finalize(scope.session, event, EventStatus.APPLIED, f"plan {plan.slug}")
        if plan.monthly_credits > 0:
            CREDITS_ADDED.labels(tenant_id=str(tenant_id)).inc(plan.monthly_credits)
        return _Outcome(EventStatus.APPLIED, f"plan {plan.slug}", finalized=True)

    def _on_subscription_updated(self, event: WebhookEvent) -> _Outcome:
        sub = event.object
        tenant_id = self._resolve_tenant(sub)
        if tenant_id is None:
            return _Outcome(EventStatus.SKIPPED, "tenant not found")
        price_id = _price_id(sub)
        plan = self._plans.by_price_id(price_id)
        if plan is None:
            logger.warning("billing.webhook.unknown_price", price_id=price_id)
            return _Outcome(EventStatus.SKIPPED, f"unknown price id {price_id}")

        # Each event carries the full subscription state, so last-applied wins.
        with self._ledger.tenant_scope(tenant_id) as scope:
            self._apply_plan(scope, plan)
            self._finalize(scope.session, event, EventStatus.APPLIED, f"plan {plan.slug}")
        return _Outcome(EventStatus.APPLIED, f"plan {plan.slug}", finalized=True)

    def _on_subscription_deleted(self, event: WebhookEvent) -> _Outcome:
        sub = event.object
        tenant_id = self._resolve_tenant(sub)
        if tenant_id is None:
            return _Outcome(EventStatus.SKIPPED, "tenant not found")
        fallback = self._plans.default_plan()
        slug = fallback.slug if fallback else self._plans.default_plan_slug
        allowance = fallback.monthly_credits if fallback else 0

        with self._ledger.tenant_scope(tenant_id) as scope:
            scope.tenant.plan = slug
            scope.tenant.monthly_credit_limit = allowance
            self._history(
                scope, event, "subscription_cancelled", f"Subscription cancelled - reverted to {slug} plan",
                stripe_subscription_id=sub.get("id"),
                metadata={
                    "cancelled_at": sub.get("canceled_at"),
                    "cancellation_reason": (sub.get("cancellation_details") or {}).get("reason"),
                },
            )
            self._finalize(scope.session, event, EventStatus.APPLIED, f"reverted to {slug}")
        logger.info("billing.webhook.subscription_cancelled", tenant_id=tenant_id, plan=slug)
        return _Outcome(EventStatus.APPLIED, f"reverted to {slug}", finalized=True)

    def _on_subscription_paused(self, event: WebhookEvent) -> _Outcome:
        sub = event.object
        tenant_id = self._resolve_tenant(sub)
        if tenant_id is None:
            return _Outcome(EventStatus.SKIPPED, "tenant not found")
        with self._ledger.tenant_scope(tenant_id) as scope:
            self._history(
                scope, event, "subscription_paused", "Subscription paused",
                stripe_subscription_id=sub.get("id"),
                metadata={"pause_collection": sub.get("pause_collection")},
            )
            self._finalize(scope.session, event, EventStatus.APPLIED)
        return _Outcome(EventStatus.APPLIED, finalized=True)

    def _on_subscription_resumed(self, event: WebhookEvent) -> _Outcome:
        sub = event.object
        tenant_id = self._resolve_tenant(sub)
        if tenant_id is None:
            return _Outcome(EventStatus.SKIPPED, "tenant not found")
        plan = self._plans.by_price_id(_price_id(sub))
        with self._ledger.tenant_scope(tenant_id) as scope:
            if plan is not None:
                self._apply_plan(scope, plan)
            self._history(
                scope, event, "subscription_resumed", "Subscription resumed",
                stripe_subscription_id=sub.get("id"),
                metadata={"plan": plan.slug if plan else None},
            )
            self._finalize(scope.session, event, EventStatus.APPLIED)
        return _Outcome(EventStatus.APPLIED, finalized=True)

    def _on_invoice_paid(self, event: WebhookEvent) -> _Outcome:
        invoice = event.object
        subscription_id = invoice.get("subscription")
        if not subscription_id:
            return _Outcome(EventStatus.SKIPPED, "not a subscription invoice")
        tenant_id = self._resolve_tenant(invoice)
        if tenant_id is None:
            return _Outcome(EventStatus.SKIPPED, "tenant not found")

        with self._ledger.tenant_scope(tenant_id) as scope:
            plan = self._plans.by_price_id(_invoice_price_id(invoice)) or self._plans.by_slug(scope.tenant.plan)
            if plan is None or plan.monthly_credits <= 0:
                self._finalize(scope.session, event, EventStatus.SKIPPED, "no renewal allowance")
                return _Outcome(EventStatus.SKIPPED, "no renewal allowance", finalized=True)
            # invoice.paid and invoice.payment_succeeded both arrive for one invoice.
            already = scope.session.execute(
                select(BillingHistory.id).where(
                    BillingHistory.tenant_id == tenant_id,
                    BillingHistory.type == "subscription_payment",
                    BillingHistory.stripe_invoice_id == invoice.get("id"),
                )
            ).first()
            if already:
                self._finalize(scope.session, event, EventStatus.SKIPPED, "invoice already credited")
                return _Outcome(EventStatus.SKIPPED, "invoice already credited", finalized=True)

            self._apply_plan(scope, plan)
            scope.append(plan.monthly_credits, TransactionType.CREDIT,
                         f"Monthly subscription credits - {plan.name}",
                         SubscriptionGrant(plan=plan.slug, subscription_id=subscription_id,
                                           invoice_id=invoice.get("id")))
            self._history(
                scope, event, "subscription_payment", f"Monthly subscription payment - {plan.name}",
                amount_cents=_to_int(invoice.get("amount_paid")),
                currency=invoice.get("currency") or "usd",
                status="succeeded",
                stripe_invoice_id=invoice.get("id"),
                stripe_subscription_id=subscription_id,
                credits_added=plan.monthly_credits,
                metadata={
                    "plan": plan.slug,
                    "billing_period": {"start": invoice.get("period_start"), "end": invoice.get("period_end")},
                },
            )
            self._finalize(scope.session, event, EventStatus.APPLIED, f"renewed {plan.slug}")
        CREDITS_ADDED.labels(tenant_id=str(tenant_id)).inc(plan.monthly_credits)
        return _Outcome(EventStatus.APPLIED, f"renewed {plan.slug}", finalized=True)

    def _on_payment_failed(self, event: WebhookEvent) -> _Outcome:
        invoice = event.object
        tenant_id = self._resolve_tenant(invoice)
        if tenant_id is None:
            return _Outcome(EventStatus.SKIPPED, "tenant not found")
        reason = (invoice.get("last_finalization_error") or {}).get("message") or "Unknown"
        with self._ledger.tenant_scope(tenant_id) as scope:
            self._history(
                scope, event, "payment_failed", "Payment failed for invoice",
                amount_cents=_to_int(invoice.get("amount_due")),
                currency=invoice.get("currency") or "usd",
                status="failed",
                stripe_invoice_id=invoice.get("id"),
                metadata={"failure_reason": reason, "attempt_count": invoice.get("attempt_count")},
            )
            self._finalize(scope.session, event, EventStatus.APPLIED, reason)
        logger.warning("billing.webhook.payment_failed", tenant_id=tenant_id,
                       invoice_id=invoice.get("id"), amount=invoice.get("amount_due"))
        return _Outcome(EventStatus.APPLIED, reason, finalized=True)
