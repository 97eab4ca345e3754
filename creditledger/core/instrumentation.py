"""Credit Ledger – Instrumentation.

structlog configuration plus Prometheus counters with per-tenant labels.
"""

import logging
import time
from typing import Callable

import structlog
from fastapi import APIRouter, FastAPI, Request, Response
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest

router = APIRouter(tags=["monitoring"])

REQUEST_LATENCY = Histogram(
    "creditledger_http_request_duration_seconds",
    "HTTP request latency by method, endpoint and tenant",
    ["method", "endpoint", "tenant_id"],
)

CREDITS_DEDUCTED = Counter(
    "creditledger_credits_deducted_total",
    "Credits debited from tenant balances",
    ["tenant_id"],
)

CREDITS_ADDED = Counter(
    "creditledger_credits_added_total",
    "Credits added to tenant balances",
    ["tenant_id"],
)

DEDUCTIONS_REJECTED = Counter(
    "creditledger_deductions_rejected_total",
    "Deductions refused for insufficient credits",
    ["tenant_id"],
)

WEBHOOK_EVENTS = Counter(
    "creditledger_webhook_events_total",
    "Payment webhook events by type and terminal status",
    ["event_type", "status"],
)


@router.get("/metrics")
def metrics():
    """Expose Prometheus metrics."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


def setup_logging(level: str = "info") -> None:
    """Configure structlog for JSON output."""
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.set_exc_info,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(_LEVELS.get(level.lower(), logging.INFO)),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def setup_instrumentation(app: FastAPI, log_level: str = "info") -> None:
    """Attach middleware for per-tenant latency tracking."""
    setup_logging(log_level)

    @app.middleware("http")
    async def metrics_middleware(request: Request, call_next: Callable) -> Response:
        start_time = time.time()
        tenant_id = request.headers.get("x-tenant-id", "unknown")
        try:
            return await call_next(request)
        finally:
            REQUEST_LATENCY.labels(
                method=request.method,
                endpoint=request.url.path,
                tenant_id=tenant_id,
            ).observe(time.time() - start_time)
