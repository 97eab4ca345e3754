"""creditledger/gateway/routers/usage.py — Credit deduction for request handlers.

Chat / AI handlers and the engine bridge report usage here before or while
streaming. Each call is one short, independent debit; streams deduct per chunk.

Endpoints:
    POST /usage/deduct        → debit, 402 with shortfall details if unaffordable
    POST /usage/engine-action → debit base tokens + per-action engine surcharge
"""
from __future__ import annotations

from typing import Any

import structlog
from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from creditledger.core.credit_manager import CreditManager
from creditledger.core.ledger import LedgerStore
from creditledger.gateway.dependencies import get_credit_manager, get_ledger, get_tenant_id
from creditledger.gateway.schemas import DeductRequest, DeductResponse, EngineActionRequest

logger = structlog.get_logger()

router = APIRouter()


def _payment_required(manager: CreditManager, tenant_id: int, needed: int) -> JSONResponse:
    detail = manager.insufficient_credits(tenant_id, needed)
    logger.info("usage.insufficient_credits", tenant_id=tenant_id,
                available=detail.credits_available, needed=needed)
    return JSONResponse(status_code=402, content=detail.to_dict())


@router.post("/usage/deduct", response_model=DeductResponse)
def deduct(
    req: DeductRequest,
    tenant_id: int = Depends(get_tenant_id),
    manager: CreditManager = Depends(get_credit_manager),
    ledger: LedgerStore = Depends(get_ledger),
) -> Any:
    if not manager.deduct_credits(tenant_id, req.amount, req.description, req.metadata):
        return _payment_required(manager, tenant_id, req.amount)
    return DeductResponse(credits_charged=req.amount, current_credits=ledger.current_balance(tenant_id))


@router.post("/usage/engine-action", response_model=DeductResponse)
def engine_action(
    req: EngineActionRequest,
    tenant_id: int = Depends(get_tenant_id),
    manager: CreditManager = Depends(get_credit_manager),
    ledger: LedgerStore = Depends(get_ledger),
) -> Any:
    total = manager.mcp_total_cost(req.tokens, req.engine_type, req.action_count)
    charged = manager.deduct_credits_with_mcp_surcharge(
        tenant_id,
        req.tokens,
        req.engine_type,
        req.description,
        action_count=req.action_count,
        additional_metadata=req.metadata,
    )
    if not charged:
        return _payment_required(manager, tenant_id, total)
    return DeductResponse(credits_charged=total, current_credits=ledger.current_balance(tenant_id))
