"""Credit Ledger – Balance Reconciliation.

Recomputes every tenant balance from the ledger and compares it with the
cached ``tenants.credits`` value. Drift is reported, never repaired: a
correction is an offsetting transaction booked by an operator.
"""

import structlog
from sqlalchemy import select
from sqlalchemy.orm import sessionmaker

from creditledger.core.ledger import BalanceCheck, LedgerStore
from creditledger.core.models import Tenant

logger = structlog.get_logger()


def tenant_ids(session_factory: sessionmaker) -> list[int]:
    db = session_factory()
    try:
        return list(db.execute(select(Tenant.id).order_by(Tenant.id)).scalars().all())
    finally:
        db.close()


def reconcile_balances(ledger: LedgerStore, ids: list[int]) -> list[BalanceCheck]:
    """Check each tenant; returns only the drifted ones."""
    drifted = []
    for tenant_id in ids:
        check = ledger.verify_balance(tenant_id)
        if not check.consistent:
            drifted.append(check)
    logger.info("maintenance.reconcile_finished", tenants=len(ids), drifted=len(drifted))
    return drifted
