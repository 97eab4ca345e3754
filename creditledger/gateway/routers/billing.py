"""creditledger/gateway/routers/billing.py — Stripe Webhook + Billing Read API.

Endpoints:
    POST /billing/webhook         → Stripe webhook (HMAC-signed), idempotent by event id
    GET  /billing/balance         → Cached balance + monthly allowance context
    GET  /billing/summary         → Balance summary + month-to-date usage trend
    GET  /billing/transactions    → Ledger history, newest first, cursor-paged
    GET  /billing/engine-usage    → Debit usage per engine type with MCP surcharges
    GET  /billing/plans           → Public plan catalog

Design:
    - Signature verification happens here; the processor only sees verified events.
    - The webhook answers 200 for every verified event, including failed dispatch,
      so Stripe does not redeliver endlessly. Failed events stay in billing_events.
    - Read endpoints never mutate anything.
"""
from __future__ import annotations

import asyncio
import json as _json
from datetime import datetime
from typing import Any, Optional

import stripe
import structlog
from fastapi import APIRouter, Depends, Query, Request, Response

from config.settings import get_settings
from creditledger.core.credit_manager import CreditManager
from creditledger.core.errors import InvalidEventError
from creditledger.core.ledger import HistoryFilter, LedgerStore, TransactionType, as_utc
from creditledger.core.plans import PlanCatalog
from creditledger.core.webhooks import WebhookEventProcessor
from creditledger.gateway.dependencies import (
    get_credit_manager,
    get_ledger,
    get_plans,
    get_tenant_id,
    get_webhook_processor,
)
from creditledger.gateway.schemas import BalanceResponse, PlanOut, TransactionPage, WebhookAck, jsonable_decimal

logger = structlog.get_logger()

router = APIRouter()


def _json_response(content: Any, status_code: int = 200) -> Response:
    return Response(content=_json.dumps(content), status_code=status_code, media_type="application/json")


# ── Webhook ────────────────────────────────────────────────────────────────────

@router.post("/billing/webhook")
async def stripe_webhook(
    request: Request,
    processor: WebhookEventProcessor = Depends(get_webhook_processor),
) -> Response:
    """Stripe Webhook — HMAC-verified, answers 200 once the event is recorded."""
    payload = await request.body()
    sig_header = request.headers.get("stripe-signature", "")

    settings = get_settings()
    webhook_secret = settings.stripe_webhook_secret.strip()
    if not webhook_secret:
        logger.warning("billing.webhook.no_secret_configured")
        return Response(content="webhook_secret not configured", status_code=400)

    if settings.stripe_secret_key:
        stripe.api_key = settings.stripe_secret_key
    try:
        stripe.Webhook.construct_event(payload=payload, sig_header=sig_header, secret=webhook_secret)
    except ValueError:
        return Response(content="invalid payload", status_code=400)
    except Exception as exc:
        logger.warning("billing.webhook.sig_invalid", error=str(exc))
        return Response(content="invalid signature", status_code=400)

    try:
        event = _json.loads(payload)
        result = await asyncio.to_thread(processor.process, event)
    except (ValueError, InvalidEventError) as exc:
        logger.warning("billing.webhook.malformed_event", error=str(exc))
        return Response(content="invalid event", status_code=400)

    ack = WebhookAck(status=result.status.value, duplicate=result.duplicate)
    return _json_response(ack.model_dump())


# ── Read API ───────────────────────────────────────────────────────────────────

@router.get("/billing/balance", response_model=BalanceResponse)
def get_balance(
    tenant_id: int = Depends(get_tenant_id),
    manager: CreditManager = Depends(get_credit_manager),
) -> BalanceResponse:
    realtime = manager.get_real_time_balance(tenant_id)
    return BalanceResponse(**realtime["balance_summary"], last_updated=realtime["last_updated"])


@router.get("/billing/summary")
def get_summary(
    tenant_id: int = Depends(get_tenant_id),
    manager: CreditManager = Depends(get_credit_manager),
) -> dict[str, Any]:
    return manager.get_billing_summary(tenant_id)


@router.get("/billing/transactions", response_model=TransactionPage)
def list_transactions(
    tenant_id: int = Depends(get_tenant_id),
    cursor: Optional[int] = Query(default=None, ge=1),
    limit: Optional[int] = Query(default=None, ge=1),
    type: Optional[TransactionType] = Query(default=None),
    ledger: LedgerStore = Depends(get_ledger),
) -> TransactionPage:
    settings = get_settings()
    page_size = min(limit or settings.history_page_size, settings.history_max_page_size)
    page = ledger.history(tenant_id, HistoryFilter(type=type), cursor=cursor, limit=page_size)
    return TransactionPage(items=page.items, next_cursor=page.next_cursor)


@router.get("/billing/engine-usage")
def get_engine_usage(
    tenant_id: int = Depends(get_tenant_id),
    start: Optional[datetime] = Query(default=None),
    end: Optional[datetime] = Query(default=None),
    ledger: LedgerStore = Depends(get_ledger),
    manager: CreditManager = Depends(get_credit_manager),
) -> dict[str, Any]:
    """Defaults to the current calendar month."""
    end = as_utc(end) if end else ledger.now()
    start = as_utc(start) if start else end.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    ledger.get_tenant(tenant_id)
    report = manager.get_engine_usage_analytics(tenant_id, start, end)
    return {
        "period": {"start": start.isoformat(), "end": end.isoformat()},
        **jsonable_decimal(report),
    }


@router.get("/billing/plans", response_model=list[PlanOut])
def list_plans(plans: PlanCatalog = Depends(get_plans)) -> list[PlanOut]:
    """Public plan catalog."""
    return [PlanOut(**plan.model_dump(include={"slug", "name", "monthly_credits", "price_cents"}))
            for plan in plans.list_plans()]
