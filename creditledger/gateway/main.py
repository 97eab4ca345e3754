"""Credit Ledger – Gateway.

FastAPI application exposing the webhook ingress, the usage deduction API
and the billing read API over the credit ledger.
"""

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any

import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from config.settings import Settings, get_settings
from creditledger.core.db import SessionLocal, run_migrations
from creditledger.core.errors import (
    InvalidAmountError,
    InvalidMetadataError,
    InvalidTenantError,
    LedgerUnavailableError,
    TenantNotFoundError,
)
from creditledger.core.instrumentation import router as metrics_router
from creditledger.core.instrumentation import setup_instrumentation
from creditledger.core.plans import seed_plans
from creditledger.gateway.routers.billing import router as billing_router
from creditledger.gateway.routers.usage import router as usage_router

logger = structlog.get_logger()

VERSION = "1.0.0"

# --- Globals ---
settings: Settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI):  # type: ignore[type-arg]
    """Application lifespan: bootstrap schema and plan catalog."""
    run_migrations()
    # Idempotent, safe to run on every startup
    seed_plans(SessionLocal)
    logger.info("creditledger.gateway.startup", version=VERSION, env=settings.environment)
    yield
    logger.info("creditledger.gateway.shutdown")


app = FastAPI(
    title="Credit Ledger Gateway",
    description="Multi-tenant credit ledger, usage deduction and Stripe billing reconciliation",
    version=VERSION,
    lifespan=lifespan,
)

setup_instrumentation(app, settings.log_level)

app.include_router(metrics_router)
app.include_router(billing_router)
app.include_router(usage_router)


# ──────────────────────────────────────────
# Error mapping
# ──────────────────────────────────────────

@app.exception_handler(LedgerUnavailableError)
async def ledger_unavailable_handler(request: Request, exc: LedgerUnavailableError) -> JSONResponse:
    # No internal detail reaches the caller.
    logger.error("creditledger.gateway.ledger_unavailable", path=request.url.path, error=str(exc))
    return JSONResponse(
        status_code=503,
        content={"error": "service_unavailable", "message": "Please try again in a moment."},
    )


@app.exception_handler(InvalidAmountError)
@app.exception_handler(InvalidMetadataError)
@app.exception_handler(InvalidTenantError)
async def invalid_request_handler(request: Request, exc: ValueError) -> JSONResponse:
    return JSONResponse(status_code=422, content={"error": "invalid_request", "message": str(exc)})


@app.exception_handler(TenantNotFoundError)
async def tenant_not_found_handler(request: Request, exc: TenantNotFoundError) -> JSONResponse:
    return JSONResponse(status_code=404, content={"error": "tenant_not_found", "message": str(exc)})


@app.get("/health")
async def health_check() -> dict[str, Any]:
    """Health endpoint – returns service status."""
    return {
        "status": "ok",
        "service": "creditledger-gateway",
        "version": VERSION,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
