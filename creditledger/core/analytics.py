"""Usage Analytics Aggregator — read-side rollups over the ledger.

Never mutates anything. Empty windows produce zeroed structures.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Iterable

from creditledger.core.ledger import LedgerStore, TransactionRecord, TransactionType, as_utc


def _day(record: TransactionRecord) -> str:
    return record.created_at.strftime("%Y-%m-%d")


def _decimal(value: Any) -> Decimal:
    if value in (None, ""):
        return Decimal("0")
    return Decimal(str(value))


def compute_usage_trend(current: int, previous: int) -> dict[str, Any]:
    """Compare two periods. previous == 0 counts as +100% when anything was used."""
    absolute = current - previous
    if previous == 0:
        if current > 0:
            return {"absolute": absolute, "percentage": 100.0, "direction": "increasing"}
        return {"absolute": 0, "percentage": 0.0, "direction": "flat"}

    percentage = round(abs(absolute) / previous * 100, 2)
    if absolute > 0:
        direction = "increasing"
    elif absolute < 0:
        direction = "decreasing"
    else:
        direction = "flat"
    return {"absolute": absolute, "percentage": percentage, "direction": direction}


def summarize(transactions: Iterable[TransactionRecord]) -> dict[str, Any]:
    daily_usage: dict[str, dict[str, int]] = {}
    total_debits = 0
    total_credits = 0
    count = 0
    for tx in transactions:
        count += 1
        bucket = daily_usage.setdefault(_day(tx), {"debits": 0, "credits": 0})
        if tx.type is TransactionType.DEBIT:
            bucket["debits"] += tx.amount
            total_debits += tx.amount
        else:
            bucket["credits"] += tx.amount
            total_credits += tx.amount
    return {
        "daily_usage": daily_usage,
        "total_debits": total_debits,
        "total_credits": total_credits,
        "net_usage": total_debits - total_credits,
        "transaction_count": count,
    }


class UsageAnalytics:
    def __init__(self, ledger: LedgerStore, known_engine_types: Iterable[str] = ("unreal", "playcanvas")) -> None:
        self._ledger = ledger
        self._engines = [e for e in known_engine_types if e != "other"]

    def usage_summary(self, tenant_id: int, start: datetime, end: datetime) -> dict[str, Any]:
        """Daily usage, totals and the trend against the preceding window of equal length."""
        start, end = as_utc(start), as_utc(end)
        if end < start:
            raise ValueError("end must not be before start")
        summary = summarize(self._ledger.transactions_between(tenant_id, start, end))

        previous_start = start - (end - start)
        previous_debits = sum(
            tx.amount
            for tx in self._ledger.transactions_between(
                tenant_id, previous_start, start, type_=TransactionType.DEBIT, end_inclusive=False,
            )
        )
        summary["usage_trend"] = compute_usage_trend(summary["total_debits"], previous_debits)
        return summary

    def engine_usage(self, tenant_id: int, start: datetime, end: datetime) -> dict[str, Any]:
        """Debit usage grouped by ``metadata.engine_type``; unknown engines go to ``other``."""
        buckets = [*self._engines, "other"]
        breakdown = {
            engine: {"usage": 0, "transactions": 0, "mcp_surcharge": Decimal("0")} for engine in buckets
        }
        daily: dict[str, dict[str, Any]] = {}
        totals = {"usage": 0, "mcp_surcharges": Decimal("0"), "transactions": 0}

        for tx in self._ledger.transactions_between(
            tenant_id, as_utc(start), as_utc(end), type_=TransactionType.DEBIT,
        ):
            engine = tx.metadata.get("engine_type") or "other"
            if engine not in breakdown:
                engine = "other"
            surcharge = _decimal(tx.metadata.get("mcp_surcharge"))

            totals["usage"] += tx.amount
            totals["mcp_surcharges"] += surcharge
            totals["transactions"] += 1

            entry = breakdown[engine]
            entry["usage"] += tx.amount
            entry["transactions"] += 1
            entry["mcp_surcharge"] += surcharge

            day = daily.setdefault(
                _day(tx), {"total": 0, **{name: 0 for name in buckets}, "mcp_surcharges": Decimal("0")},
            )
            day["total"] += tx.amount
            day[engine] += tx.amount
            day["mcp_surcharges"] += surcharge

        return {"engine_breakdown": breakdown, "daily_breakdown": daily, "totals": totals}

    def current_month_usage(self, tenant_id: int, now: datetime | None = None) -> int:
        now = as_utc(now) if now else self._ledger.now()
        month_start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
        return sum(
            tx.amount
            for tx in self._ledger.transactions_between(tenant_id, month_start, now, type_=TransactionType.DEBIT)
        )

    def daily_window(self, tenant_id: int, days: int, now: datetime | None = None) -> dict[str, Any]:
        """Convenience: summary for the last ``days`` days ending now."""
        end = as_utc(now) if now else self._ledger.now()
        return self.usage_summary(tenant_id, end - timedelta(days=days), end)
