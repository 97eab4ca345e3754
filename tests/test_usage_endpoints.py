"""Tests for the usage deduction API and the billing read API."""

from unittest.mock import patch

import pytest
from httpx import AsyncClient

from creditledger.core.errors import LedgerUnavailableError


def _tenant(tenant_id: int) -> dict:
    return {"X-Tenant-ID": str(tenant_id)}


# ── POST /usage/deduct ────────────────────────────────────────────────────────

@pytest.mark.anyio
async def test_deduct_success(client: AsyncClient, tenant_id) -> None:
    resp = await client.post(
        "/usage/deduct",
        json={"amount": 100, "description": "Chat completion",
              "metadata": {"kind": "chat_usage", "provider": "openai", "model": "gpt-4o"}},
        headers=_tenant(tenant_id),
    )
    assert resp.status_code == 200
    assert resp.json() == {"success": True, "credits_charged": 100, "current_credits": 900}


@pytest.mark.anyio
async def test_deduct_insufficient_credits_returns_402(client: AsyncClient, ledger, tenant_id) -> None:
    resp = await client.post("/usage/deduct", json={"amount": 5000}, headers=_tenant(tenant_id))
    assert resp.status_code == 402
    body = resp.json()
    assert body["error"] == "insufficient_credits"
    assert body["credits_available"] == 1000
    assert body["estimated_tokens_needed"] == 5000
    assert body["credits_needed"] == 4000
    assert body["plan"] == "starter"
    assert ledger.current_balance(tenant_id) == 1000


@pytest.mark.anyio
async def test_deduct_non_positive_amount_returns_422(client: AsyncClient, tenant_id) -> None:
    resp = await client.post("/usage/deduct", json={"amount": 0}, headers=_tenant(tenant_id))
    assert resp.status_code == 422


@pytest.mark.anyio
async def test_deduct_incomplete_metadata_returns_422(client: AsyncClient, ledger, tenant_id) -> None:
    resp = await client.post(
        "/usage/deduct",
        json={"amount": 10, "metadata": {"kind": "engine_usage"}},
        headers=_tenant(tenant_id),
    )
    assert resp.status_code == 422
    assert resp.json()["error"] == "invalid_request"
    assert ledger.current_balance(tenant_id) == 1000


@pytest.mark.anyio
async def test_deduct_requires_tenant_header(client: AsyncClient) -> None:
    resp = await client.post("/usage/deduct", json={"amount": 10})
    assert resp.status_code == 400
    resp = await client.post("/usage/deduct", json={"amount": 10}, headers={"X-Tenant-ID": "acme"})
    assert resp.status_code == 400


@pytest.mark.anyio
async def test_deduct_unknown_tenant_returns_404(client: AsyncClient, tenant_id) -> None:
    resp = await client.post("/usage/deduct", json={"amount": 10}, headers=_tenant(tenant_id + 100))
    assert resp.status_code == 404


@pytest.mark.anyio
async def test_store_unavailable_returns_generic_503(client: AsyncClient, ledger, tenant_id) -> None:
    with patch.object(ledger, "append", side_effect=LedgerUnavailableError("could not connect to server")):
        resp = await client.post("/usage/deduct", json={"amount": 10}, headers=_tenant(tenant_id))
    assert resp.status_code == 503
    assert resp.json()["error"] == "service_unavailable"
    assert "could not connect" not in resp.text


# ── POST /usage/engine-action ─────────────────────────────────────────────────

@pytest.mark.anyio
async def test_engine_action_charges_surcharge(client: AsyncClient, tenant_id) -> None:
    resp = await client.post(
        "/usage/engine-action",
        json={"tokens": 100, "engine_type": "playcanvas", "action_count": 3},
        headers=_tenant(tenant_id),
    )
    assert resp.status_code == 200
    assert resp.json()["credits_charged"] == 101
    assert resp.json()["current_credits"] == 899


@pytest.mark.anyio
async def test_engine_action_insufficient_returns_402(client: AsyncClient, tenant_id) -> None:
    resp = await client.post(
        "/usage/engine-action",
        json={"tokens": 1000, "engine_type": "playcanvas", "action_count": 5},
        headers=_tenant(tenant_id),
    )
    assert resp.status_code == 402
    assert resp.json()["estimated_tokens_needed"] == 1001
    assert resp.json()["credits_needed"] == 1


# ── Billing read API ──────────────────────────────────────────────────────────

@pytest.mark.anyio
async def test_balance_endpoint(client: AsyncClient, manager, tenant_id) -> None:
    manager.deduct_credits(tenant_id, 250)
    resp = await client.get("/billing/balance", headers=_tenant(tenant_id))
    assert resp.status_code == 200
    data = resp.json()
    assert data["current_credits"] == 750
    assert data["monthly_limit"] == 1000
    assert data["current_month_usage"] == 250
    assert data["plan"] == "starter"
    assert data["last_updated"].startswith("2026-03-15T12:00:00")


@pytest.mark.anyio
async def test_balance_unknown_tenant_returns_404(client: AsyncClient) -> None:
    resp = await client.get("/billing/balance", headers=_tenant(777))
    assert resp.status_code == 404


@pytest.mark.anyio
async def test_summary_endpoint(client: AsyncClient, manager, tenant_id) -> None:
    manager.deduct_credits(tenant_id, 40)
    resp = await client.get("/billing/summary", headers=_tenant(tenant_id))
    assert resp.status_code == 200
    data = resp.json()
    assert data["current_month_usage"] == 40
    assert data["usage_trend"]["direction"] == "increasing"
    assert data["balance_summary"]["current_credits"] == 960


@pytest.mark.anyio
async def test_transactions_paging(client: AsyncClient, manager, tenant_id) -> None:
    for amount in (10, 20, 30):
        manager.deduct_credits(tenant_id, amount)

    resp = await client.get("/billing/transactions", params={"limit": 2}, headers=_tenant(tenant_id))
    assert resp.status_code == 200
    page = resp.json()
    assert [tx["amount"] for tx in page["items"]] == [30, 20]
    assert page["next_cursor"] is not None

    resp = await client.get(
        "/billing/transactions", params={"limit": 2, "cursor": page["next_cursor"]}, headers=_tenant(tenant_id),
    )
    page = resp.json()
    assert [tx["amount"] for tx in page["items"]] == [10, 1000]
    assert page["next_cursor"] is None


@pytest.mark.anyio
async def test_transactions_type_filter(client: AsyncClient, manager, tenant_id) -> None:
    manager.deduct_credits(tenant_id, 10)
    resp = await client.get("/billing/transactions", params={"type": "credit"}, headers=_tenant(tenant_id))
    assert [tx["type"] for tx in resp.json()["items"]] == ["credit"]


@pytest.mark.anyio
async def test_engine_usage_endpoint(client: AsyncClient, manager, tenant_id) -> None:
    manager.deduct_credits_with_mcp_surcharge(tenant_id, 100, "playcanvas", action_count=3)
    resp = await client.get("/billing/engine-usage", headers=_tenant(tenant_id))
    assert resp.status_code == 200
    data = resp.json()
    assert data["engine_breakdown"]["playcanvas"]["usage"] == 101
    assert data["engine_breakdown"]["playcanvas"]["mcp_surcharge"] == "0.3"
    assert data["totals"]["transactions"] == 1
    assert data["period"]["start"].startswith("2026-03-01T00:00:00")


@pytest.mark.anyio
async def test_plans_endpoint(client: AsyncClient) -> None:
    resp = await client.get("/billing/plans")
    assert resp.status_code == 200
    plans = resp.json()
    assert [p["slug"] for p in plans] == ["starter", "pro", "enterprise"]
    assert plans[1]["monthly_credits"] == 10_000


@pytest.mark.anyio
async def test_metrics_endpoint(client: AsyncClient) -> None:
    resp = await client.get("/metrics")
    assert resp.status_code == 200
    assert "creditledger_credits_deducted_total" in resp.text


@pytest.mark.anyio
async def test_health(client: AsyncClient) -> None:
    resp = await client.get("/health")
    assert resp.status_code == 200
    assert resp.json()["status"] == "ok"
