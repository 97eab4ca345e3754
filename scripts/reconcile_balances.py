"""
Reconciliation job: verify cached tenant balances against the ledger.

Usage examples:
    python scripts/reconcile_balances.py
    python scripts/reconcile_balances.py --tenant-id 6
    python scripts/reconcile_balances.py --fail-on-drift      # exit 1 if any tenant drifted (cron / CI)
"""

from __future__ import annotations

import argparse
import os
import sys

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from config.settings import get_settings
from creditledger.core.db import SessionLocal
from creditledger.core.instrumentation import setup_logging
from creditledger.core.ledger import LedgerStore
from creditledger.core.maintenance import reconcile_balances, tenant_ids


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Verify cached tenant balances against the ledger")
    parser.add_argument("--tenant-id", type=int, action="append", help="Only check this tenant (repeatable)")
    parser.add_argument("--fail-on-drift", action="store_true", help="Exit with status 1 if drift is found")
    args = parser.parse_args(argv)

    settings = get_settings()
    setup_logging(settings.log_level)
    ledger = LedgerStore(SessionLocal, lock_timeout=settings.tenant_lock_timeout_seconds)

    ids = args.tenant_id or tenant_ids(SessionLocal)
    drifted = reconcile_balances(ledger, ids)
    for check in drifted:
        print(f"⚠️  tenant {check.tenant_id}: cached={check.cached} ledger={check.computed}")
    if not drifted:
        print(f"✅ {len(ids)} tenant balance(s) consistent")
    return 1 if drifted and args.fail_on_drift else 0


if __name__ == "__main__":
    sys.exit(main())
