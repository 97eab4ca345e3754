"""creditledger/core/credit_manager.py — Credit Manager.

Deduct / add / check operations on top of the Ledger Store.

Failure semantics:
    - Insufficient funds is a business outcome: ``deduct_credits`` returns False.
    - Non-positive amounts, malformed tenant ids and metadata that does not
      match its ``kind`` raise before any I/O.
    - ``LedgerUnavailableError`` (store down, lock timeout) propagates for retry.

Usage:
    manager = CreditManager(ledger, plans, analytics)
    if not manager.deduct_credits(tenant_id, cost, "Chat completion", ChatUsage(...)):
        detail = manager.insufficient_credits(tenant_id, cost)   # → HTTP 402 body
"""

from __future__ import annotations

from datetime import datetime
from decimal import ROUND_CEILING, Decimal
from typing import Any, Mapping

import structlog
from pydantic import BaseModel

from creditledger.core.analytics import UsageAnalytics
from creditledger.core.errors import InsufficientCredits, InvalidAmountError, OverdraftError
from creditledger.core.instrumentation import CREDITS_ADDED, CREDITS_DEDUCTED, DEDUCTIONS_REJECTED
from creditledger.core.ledger import (
    LedgerStore,
    TenantSnapshot,
    TransactionRecord,
    TransactionType,
    as_utc,
    validate_amount,
    validate_tenant_id,
)
from creditledger.core.metadata import EngineUsage, coerce_metadata
from creditledger.core.plans import PlanCatalog

logger = structlog.get_logger()

Metadata = BaseModel | dict[str, Any] | None


class CreditManager:
    def __init__(
        self,
        ledger: LedgerStore,
        plans: PlanCatalog,
        analytics: UsageAnalytics,
        *,
        surcharge_rates: Mapping[str, Decimal] | None = None,
        approaching_limit_threshold: float = 0.1,
    ) -> None:
        self._ledger = ledger
        self._plans = plans
        self._analytics = analytics
        self._rates = {k.lower(): Decimal(str(v)) for k, v in (surcharge_rates or {}).items()}
        self._threshold = approaching_limit_threshold

    # ── Mutations ─────────────────────────────────────────────────────────────

    def deduct_credits(
        self,
        tenant_id: int,
        amount: int,
        description: str = "AI API usage",
        metadata: Metadata = None,
    ) -> bool:
        """Debit ``amount``. Returns False, writing nothing, when funds are insufficient."""
        validate_tenant_id(tenant_id)
        validate_amount(amount)
        metadata = coerce_metadata(metadata)
        try:
            self._ledger.append(tenant_id, amount, TransactionType.DEBIT, description, metadata)
        except OverdraftError as exc:
            DEDUCTIONS_REJECTED.labels(tenant_id=str(tenant_id)).inc()
            logger.info("credits.deduct_rejected", tenant_id=tenant_id, amount=amount, available=exc.available)
            return False
        CREDITS_DEDUCTED.labels(tenant_id=str(tenant_id)).inc(amount)
        return True

    def add_credits(
        self,
        tenant_id: int,
        amount: int,
        description: str,
        metadata: Metadata = None,
    ) -> int:
        validate_tenant_id(tenant_id)
        validate_amount(amount)
        metadata = coerce_metadata(metadata)
        tx_id = self._ledger.append(tenant_id, amount, TransactionType.CREDIT, description, metadata)
        CREDITS_ADDED.labels(tenant_id=str(tenant_id)).inc(amount)
        return tx_id

    # ── Engine surcharges ────────────────────────────────────────────────────

    def calculate_mcp_surcharge(self, engine_type: str, action_count: int = 1) -> Decimal:
        """Per-action surcharge for engine-bridge calls. Pure; unknown engines cost nothing."""
        if isinstance(action_count, bool) or not isinstance(action_count, int) or action_count < 0:
            raise InvalidAmountError(f"action_count must be a non-negative integer, got {action_count!r}")
        rate = self._rates.get((engine_type or "").lower(), Decimal("0"))
        return rate * action_count

    def mcp_total_cost(self, tokens: int, engine_type: str, action_count: int = 1) -> int:
        if isinstance(tokens, bool) or not isinstance(tokens, int) or tokens < 0:
            raise InvalidAmountError(f"tokens must be a non-negative integer, got {tokens!r}")
        surcharge = self.calculate_mcp_surcharge(engine_type, action_count)
        return int((Decimal(tokens) + surcharge).to_integral_value(rounding=ROUND_CEILING))

    def deduct_credits_with_mcp_surcharge(
        self,
        tenant_id: int,
        tokens: int,
        engine_type: str,
        description: str = "MCP Command",
        action_count: int = 1,
        additional_metadata: Mapping[str, Any] | None = None,
    ) -> bool:
        """Debit base tokens plus the engine surcharge, rounded up to a whole credit."""
        surcharge = self.calculate_mcp_surcharge(engine_type, action_count)
        total = self.mcp_total_cost(tokens, engine_type, action_count)
        metadata = EngineUsage(
            engine_type=engine_type,
            action_count=action_count,
            base_tokens=tokens,
            mcp_surcharge=surcharge,
            total_cost=total,
            has_mcp_surcharge=surcharge > 0,
            **{k: v for k, v in (additional_metadata or {}).items() if k not in EngineUsage.model_fields},
        )
        return self.deduct_credits(tenant_id, total, description, metadata)

    # ── Checks ───────────────────────────────────────────────────────────────

    def can_afford_request(self, tenant_id: int, estimated_cost: int) -> bool:
        return self._ledger.current_balance(tenant_id) >= estimated_cost

    def insufficient_credits(self, tenant_id: int, estimated_tokens: int) -> InsufficientCredits:
        tenant = self._ledger.get_tenant(tenant_id)
        return InsufficientCredits(
            tenant_id=tenant.id,
            credits_available=tenant.credits,
            estimated_tokens_needed=estimated_tokens,
            plan=tenant.plan,
        )

    def _effective_limit(self, tenant: TenantSnapshot) -> int:
        # An explicit per-tenant limit wins over the plan allowance.
        if tenant.monthly_credit_limit > 0:
            return tenant.monthly_credit_limit
        return self._plans.monthly_allowance(tenant.plan)

    def is_approaching_limit(self, tenant_id: int, threshold: float | None = None) -> bool:
        tenant = self._ledger.get_tenant(tenant_id)
        return self._approaching(tenant, self.get_current_month_usage(tenant_id), threshold)

    def _approaching(self, tenant: TenantSnapshot, usage: int, threshold: float | None = None) -> bool:
        limit = self._effective_limit(tenant)
        if limit <= 0:
            return False
        threshold = self._threshold if threshold is None else threshold
        return usage >= limit * (1 - threshold)

    # ── Reporting (read-only) ────────────────────────────────────────────────

    def get_usage_analytics(self, tenant_id: int, start: datetime, end: datetime) -> dict[str, Any]:
        return self._analytics.usage_summary(tenant_id, start, end)

    def get_engine_usage_analytics(self, tenant_id: int, start: datetime, end: datetime) -> dict[str, Any]:
        return self._analytics.engine_usage(tenant_id, start, end)

    def get_current_month_usage(self, tenant_id: int) -> int:
        return self._analytics.current_month_usage(tenant_id)

    def get_recent_transactions(self, tenant_id: int, limit: int = 50) -> list[TransactionRecord]:
        return self._ledger.history(tenant_id, limit=limit).items

    def get_balance_summary(self, tenant_id: int) -> dict[str, Any]:
        tenant = self._ledger.get_tenant(tenant_id)
        usage = self.get_current_month_usage(tenant_id)
        limit = self._effective_limit(tenant)
        return {
            "current_credits": tenant.credits,
            "monthly_limit": limit,
            "current_month_usage": usage,
            "remaining_monthly_allowance": max(0, limit - usage),
            "is_approaching_limit": self._approaching(tenant, usage),
            "plan": tenant.plan,
        }

    def get_real_time_balance(self, tenant_id: int) -> dict[str, Any]:
        tenant = self._ledger.get_tenant(tenant_id)
        updated = as_utc(tenant.updated_at)
        return {
            "current_credits": tenant.credits,
            "last_updated": updated.isoformat() if updated else None,
            "balance_summary": self.get_balance_summary(tenant_id),
        }

    def get_billing_summary(self, tenant_id: int) -> dict[str, Any]:
        """Balance summary plus the month-to-date trend against the preceding window of equal length."""
        now = self._ledger.now()
        month_start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
        month = self._analytics.usage_summary(tenant_id, month_start, now)
        return {
            "balance_summary": self.get_balance_summary(tenant_id),
            "current_month_usage": month["total_debits"],
            "usage_trend": month["usage_trend"],
            "last_updated": now.isoformat(),
        }
