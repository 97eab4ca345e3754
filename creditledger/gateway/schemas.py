"""Credit Ledger – Gateway Request/Response Schemas."""

from decimal import Decimal
from typing import Any

from pydantic import BaseModel, Field

from creditledger.core.ledger import TransactionRecord


class DeductRequest(BaseModel):
    """Usage charge reported by a chat / AI request handler."""

    amount: int = Field(..., description="Credits to debit (estimated or actual token cost)")
    description: str = Field(default="AI API usage")
    metadata: dict[str, Any] | None = Field(default=None, description="Usage context, e.g. provider/model/session")


class EngineActionRequest(BaseModel):
    tokens: int = Field(..., ge=0, description="Base token cost")
    engine_type: str
    action_count: int = Field(default=1, ge=0)
    description: str = Field(default="MCP Command")
    metadata: dict[str, Any] | None = None


class DeductResponse(BaseModel):
    success: bool = True
    credits_charged: int
    current_credits: int


class BalanceResponse(BaseModel):
    current_credits: int
    monthly_limit: int
    current_month_usage: int
    remaining_monthly_allowance: int
    is_approaching_limit: bool
    plan: str
    last_updated: str | None = None


class TransactionPage(BaseModel):
    items: list[TransactionRecord]
    next_cursor: int | None = None


class PlanOut(BaseModel):
    slug: str
    name: str
    monthly_credits: int
    price_cents: int


class WebhookAck(BaseModel):
    received: bool = True
    status: str
    duplicate: bool = False


def jsonable_decimal(value: Any) -> Any:
    """Decimals render as strings in the engine usage report."""
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, dict):
        return {k: jsonable_decimal(v) for k, v in value.items()}
    return value
