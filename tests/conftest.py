"""Credit Ledger – Pytest Configuration.

Shared fixtures for all tests. Every test gets its own SQLite file under
``tmp_path`` so thread-based concurrency tests share one real database.
"""

import os

# Force testing mode to allow SQLite fallback in creditledger/core/db.py
os.environ["ENVIRONMENT"] = "testing"
if "DATABASE_URL" in os.environ:
    del os.environ["DATABASE_URL"]

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from httpx import ASGITransport, AsyncClient

from creditledger.core.analytics import UsageAnalytics
from creditledger.core.credit_manager import CreditManager
from creditledger.core.db import build_engine, build_session_factory, run_migrations
from creditledger.core.ledger import LedgerStore
from creditledger.core.plans import PlanCatalog, seed_plans
from creditledger.core.webhooks import WebhookEventProcessor


class FrozenClock:
    """Injectable clock; tests move it to backdate ledger rows."""

    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def set(self, **kwargs) -> None:
        self.now = self.now.replace(**kwargs)

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def engine(tmp_path):
    eng = build_engine(f"sqlite:///{tmp_path / 'ledger.db'}")
    run_migrations(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
def clock():
    return FrozenClock(datetime(2026, 3, 15, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def plans(session_factory):
    seed_plans(session_factory)
    return PlanCatalog(session_factory, default_plan_slug="starter")


@pytest.fixture
def ledger(session_factory, clock):
    return LedgerStore(session_factory, lock_timeout=5.0, clock=clock)


@pytest.fixture
def analytics(ledger):
    return UsageAnalytics(ledger, known_engine_types=["unreal", "playcanvas"])


@pytest.fixture
def manager(ledger, plans, analytics):
    return CreditManager(
        ledger,
        plans,
        analytics,
        surcharge_rates={"playcanvas": Decimal("0.1")},
        approaching_limit_threshold=0.1,
    )


@pytest.fixture
def processor(session_factory, ledger, plans):
    return WebhookEventProcessor(session_factory, ledger, plans)


@pytest.fixture
def tenant_id(ledger):
    """Starter tenant holding 1000 credits."""
    return ledger.create_tenant("acme", "Acme GmbH", opening_credits=1000)


@pytest.fixture
async def client(ledger, plans, manager, processor):
    """Async test client for the FastAPI gateway, wired to the per-test database."""
    from creditledger.gateway import dependencies
    from creditledger.gateway.main import app

    app.dependency_overrides[dependencies.get_ledger] = lambda: ledger
    app.dependency_overrides[dependencies.get_plans] = lambda: plans
    app.dependency_overrides[dependencies.get_credit_manager] = lambda: manager
    app.dependency_overrides[dependencies.get_webhook_processor] = lambda: processor
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()
