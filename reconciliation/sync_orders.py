from __future__ import annotations

import argparse
import json

from reconciliation.db import SessionLocal
from reconciliation.logging_config import configure_logging
from reconciliation.services.order_sync_service import (
    resync_all_orders,
    resync_inconsistent_orders,
    run_sync_job,
    sync_cancelled_orders,
)
from reconciliation.services.provider_factory import get_platform_provider
from reconciliation.services.receipt_service import backfill_receipt_entities
from reconciliation.services.sync_orchestrator import TRIGGER_FAILED, SyncOrchestrator


def backfill_entities(limit: int) -> dict:
    with SessionLocal() as db:
        result = backfill_receipt_entities(db, limit=limit)
        db.commit()
    return result


def main() -> None:
    parser = argparse.ArgumentParser(description='Sync orders from the store platform and drain the sync queue.')
    parser.add_argument('--resync-inconsistent', type=int, metavar='N', help='Resync up to N orders with open inconsistencies instead.')
    parser.add_argument('--backfill-entities', type=int, metavar='N', help='Assign financial entities to up to N receipts instead.')
    parser.add_argument('--resync-all', type=int, metavar='N', help='Rebuild line items of the N newest platform orders instead.')
    parser.add_argument('--sync-cancelled', type=int, metavar='N', help='Check up to N open orders for cancellation on the platform instead.')
    parser.add_argument('--max-items', type=int, default=None, help='Maximum queue items to process in this run.')
    args = parser.parse_args()

    configure_logging()

    if args.resync_inconsistent:
        result = resync_inconsistent_orders(SessionLocal, get_platform_provider(), limit=args.resync_inconsistent)
        print(f"Resync complete: total={result['total']}, synced={result['synced']}, failed={result['failed']}")
        return
    if args.resync_all:
        result = resync_all_orders(SessionLocal, get_platform_provider(), limit=args.resync_all)
        print(f"Resync complete: total={result['total']}, synced={result['synced']}, failed={result['failed']}")
        return
    if args.sync_cancelled:
        result = sync_cancelled_orders(SessionLocal, get_platform_provider(), limit=args.sync_cancelled)
        print(f"Cancellation sync complete: checked={result['checked']}, cancelled={result['cancelled']}, failed={result['failed']}")
        return
    if args.backfill_entities:
        result = backfill_entities(args.backfill_entities)
        print(f"Entity backfill complete: checked={result['checked']}, assigned={result['assigned']}")
        return

    orchestrator = SyncOrchestrator(
        lambda: run_sync_job(SessionLocal, get_platform_provider(), max_items=args.max_items)
    )
    outcome = orchestrator.trigger('cli')
    print(f'Order sync {outcome.status}: {json.dumps(outcome.result or {"error": outcome.error}, default=str)}')
    if outcome.status == TRIGGER_FAILED:
        raise SystemExit(1)


if __name__ == '__main__':
    main()
