"""Shared dependencies for the Gateway routers.

Avoids circular imports by centralizing singleton initialization.
Tests replace the getters via ``app.dependency_overrides``.
"""
import structlog
from fastapi import Header, HTTPException

from config.settings import get_settings
from creditledger.core.analytics import UsageAnalytics
from creditledger.core.credit_manager import CreditManager
from creditledger.core.db import SessionLocal
from creditledger.core.ledger import LedgerStore
from creditledger.core.plans import PlanCatalog
from creditledger.core.webhooks import WebhookEventProcessor

logger = structlog.get_logger()
settings = get_settings()

# Initialize Singletons
ledger = LedgerStore(SessionLocal, lock_timeout=settings.tenant_lock_timeout_seconds)
plans = PlanCatalog(SessionLocal, default_plan_slug=settings.default_plan_slug)
analytics = UsageAnalytics(ledger, known_engine_types=settings.known_engine_types)
credit_manager = CreditManager(
    ledger,
    plans,
    analytics,
    surcharge_rates=settings.mcp_surcharge_rates,
    approaching_limit_threshold=settings.approaching_limit_threshold,
)
webhook_processor = WebhookEventProcessor(SessionLocal, ledger, plans)


def get_ledger() -> LedgerStore:
    return ledger


def get_plans() -> PlanCatalog:
    return plans


def get_credit_manager() -> CreditManager:
    return credit_manager


def get_webhook_processor() -> WebhookEventProcessor:
    return webhook_processor


def get_tenant_id(x_tenant_id: str | None = Header(default=None)) -> int:
    """Tenant identity arrives pre-authenticated from the upstream gateway."""
    try:
        tenant_id = int(x_tenant_id or "")
    except ValueError:
        logger.warning("gateway.tenant_header_invalid", value=x_tenant_id)
        raise HTTPException(status_code=400, detail="X-Tenant-ID header missing or malformed")
    if tenant_id <= 0:
        raise HTTPException(status_code=400, detail="X-Tenant-ID header missing or malformed")
    return tenant_id
