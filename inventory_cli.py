#!/usr/bin/env python3
"""Operator commands for a terminal's local cache and write queue."""
import argparse
import json
import logging

import settings
from gateway import open_gateway
from local_store import SqliteBackend
from stock_engine import ConversionInfo, StockEngine

DEMO_STORE = 'demo-store'


def demo_seed(store: SqliteBackend):
    """Seed the local cache with a small bar/shop catalog.

    A 750ml bottle broken out into 30ml tots (25 per bottle) with one received
    batch of 4 bottles, and a plain item with two expiry-dated batches. Fixed
    ids, so seeding twice changes nothing.
    """
    engine = StockEngine(store)
    store.insert_if_absent('inventory_items', {
        'id': 'demo-whisky-750', 'store_id': DEMO_STORE, 'item_name': 'Whisky 750ml',
        'unit_price': 2500, 'buying_price': 1800, 'low_stock_threshold': 2,
        'sku': 'WHS-750', 'barcode': '6001234000017', 'category': 'Spirits',
    })
    store.insert_if_absent('inventory_items', {
        'id': 'demo-milk-500', 'store_id': DEMO_STORE, 'item_name': 'Milk 500ml',
        'unit_price': 60, 'buying_price': 45, 'low_stock_threshold': 10,
        'sku': 'MLK-500', 'category': 'Dairy',
    })
    parent = engine.get_item('demo-whisky-750')
    engine.create_breakout_unit_item(parent, ConversionInfo('Tot', 25, 'Bottle'), item_id='demo-whisky-tot')
    engine.receive_batch({'id': 'demo-whisky-b1', 'inventory_item_id': 'demo-whisky-750',
                          'batch_number': 'WHS-001', 'current_stock': 4})
    engine.receive_batch({'id': 'demo-milk-b1', 'inventory_item_id': 'demo-milk-500',
                          'batch_number': 'MLK-014', 'expiry_date': '2030-01-14', 'current_stock': 12})
    engine.receive_batch({'id': 'demo-milk-b2', 'inventory_item_id': 'demo-milk-500',
                          'batch_number': 'MLK-010', 'expiry_date': '2030-01-10', 'current_stock': 6})


def main():
    ap = argparse.ArgumentParser(description="Inventory sync terminal tools")
    ap.add_argument("--init", action="store_true", help="Initialize database schema")
    ap.add_argument("--seed", action="store_true", help="Insert demo catalog (local cache only)")
    ap.add_argument("--drain", action="store_true", help="Replay the write queue against the remote store")
    ap.add_argument("--count", action="store_true", help="Print the number of queued writes")
    ap.add_argument("--audit", metavar="ITEM_ID", help="Audit a bulk item against a physical count")
    ap.add_argument("--physical", type=float, default=None, help="Physical bulk count for --audit")
    ap.add_argument("--failures", action="store_true", help="List writes dropped after retries")
    ap.add_argument("--requeue", type=int, metavar="FAILURE_ID", help="Put a dropped write back on the queue")
    ap.add_argument("--prune-ledger", type=float, metavar="DAYS", nargs="?", const=settings.LEDGER_RETENTION_DAYS,
                    help="Drop idempotency ledger rows older than DAYS (default: LEDGER_RETENTION_DAYS)")
    ap.add_argument("--db", default=settings.INVENTORY_DB_PATH, help="Path to SQLite DB")
    args = ap.parse_args()

    logging.basicConfig(level=settings.LOG_LEVEL,
                        format='[inventory-cli] %(asctime)s %(levelname)s %(message)s')

    if args.audit and args.physical is None:
        ap.error("--audit needs --physical")

    gateway = open_gateway(args.db)
    try:
        if args.init:
            print("Initialized schema in", args.db)

        if args.seed:
            demo_seed(gateway.local)
            print("Seeded demo catalog for", DEMO_STORE)

        if args.drain:
            result = gateway.process_sync_queue()
            print(json.dumps(result.as_dict()), "remaining:", gateway.get_sync_queue_count())

        if args.count:
            print(gateway.get_sync_queue_count())

        if args.audit:
            report = gateway.calculate_audit_variance(args.audit, args.physical)
            print(json.dumps(report.as_dict(), indent=2))

        if args.requeue is not None:
            entry_id = gateway.queue.requeue_failure(args.requeue)
            print("Re-queued", entry_id if entry_id else "nothing (unknown failure id)")

        if args.prune_ledger is not None:
            print(json.dumps(gateway.prune_ledger(args.prune_ledger)))

        if args.failures:
            for row in gateway.sync_failures():
                print(f"{row['id']:>5}  {row['action']:<22} {row['failed_utc']}  retries={row['retries']}  {row['last_error']}")
    finally:
        gateway.close()


if __name__ == "__main__":
    main()
