from __future__ import annotations

import argparse
import logging
from datetime import timedelta

from config import Settings, configure_logging
from database import Database
from inventory import InventoryStore
from ledger import LedgerStore
from models import InventoryBase, LedgerBase
from settlement import SettlementCoordinator

logger = logging.getLogger(__name__)


def main(argv=None) -> int:
    settings = Settings()

    p = argparse.ArgumentParser(description="Close settlements left between the stock commit and the wallet debit.")
    p.add_argument("--inventory-url", type=str, default=settings.inventory_url)
    p.add_argument("--ledger-url", type=str, default=settings.ledger_url)
    p.add_argument(
        "--older-than", type=int, default=settings.reconcile_after_seconds,
        help="Only touch settlements idle for at least this many seconds",
    )
    p.add_argument("--log-level", type=str, default=settings.log_level)
    args = p.parse_args(argv)

    configure_logging(args.log_level)

    with Database("inventory", args.inventory_url, InventoryBase.metadata, settings.store_timeout) as inventory_db, \
            Database("ledger", args.ledger_url, LedgerBase.metadata, settings.store_timeout) as ledger_db:
        coordinator = SettlementCoordinator(InventoryStore(inventory_db), LedgerStore(ledger_db))
        report = coordinator.reconcile(timedelta(seconds=args.older_than))

    print("\n=== RECONCILE ===")
    print("completed:", report.completed)
    print("aborted:", report.aborted)
    print("failed:", report.failed)
    return 1 if report.failed else 0


if __name__ == "__main__":
    raise SystemExit(main())
