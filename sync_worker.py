#!/usr/bin/env python3
"""
Inventory Sync Worker

Replays the terminal's write queue against the remote store:
  - every SYNC_INTERVAL seconds
  - straight away when notify_online() reports connectivity came back

A drain already in progress (e.g. one started from the HTTP API) is skipped,
never run twice.

Env vars:
  INVENTORY_DB_PATH  SQLite DB path (default: inventory.db)
  REMOTE_BASE_URL    remote store; without it the worker only reports the backlog
  SYNC_INTERVAL      seconds between drains (default: 30, minimum 5)
  LEDGER_RETENTION_DAYS  idempotency ledger rows kept this long (default: 90)
  LEDGER_PRUNE_INTERVAL  seconds between ledger prunes (default: 86400)

Run:
  python sync_worker.py
"""
import logging
import threading
import time
from typing import Dict, Optional

import settings
from gateway import PersistenceGateway, open_gateway
from sync_queue import DrainResult

logger = logging.getLogger(__name__)


class SyncWorker:
    def __init__(self, gateway: PersistenceGateway, interval: Optional[float] = None):
        self.gateway = gateway
        self.interval = interval or settings.SYNC_INTERVAL
        self._stop = threading.Event()
        self._wake = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.prune_interval = settings.LEDGER_PRUNE_INTERVAL
        self._last_prune: Optional[float] = None

    def run_once(self) -> DrainResult:
        if not self.gateway.get_sync_queue_count():
            return DrainResult()
        return self.gateway.process_sync_queue()

    def prune_if_due(self) -> Optional[Dict[str, Optional[int]]]:
        """Trim the idempotency ledger at most once per ``prune_interval``."""
        now = time.monotonic()
        if self._last_prune is not None and now - self._last_prune < self.prune_interval:
            return None
        self._last_prune = now
        return self.gateway.prune_ledger()

    def notify_online(self):
        """Connectivity restored: drain without waiting for the interval."""
        self._wake.set()

    def _loop(self):
        while not self._stop.is_set():
            try:
                self.run_once()
                self.prune_if_due()
            except Exception:
                logger.exception("Sync drain failed")
            self._wake.wait(self.interval)
            self._wake.clear()

    def start(self):
        if self._thread and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name='sync-worker', daemon=True)
        self._thread.start()
        logger.info("Sync worker started (interval=%ss)", self.interval)

    def stop(self, timeout: Optional[float] = 5.0):
        self._stop.set()
        self._wake.set()
        if self._thread:
            self._thread.join(timeout)
            self._thread = None

    def is_running(self) -> bool:
        return bool(self._thread and self._thread.is_alive())


def main():
    logging.basicConfig(level=settings.LOG_LEVEL,
                        format='[sync] %(asctime)s %(levelname)s %(message)s')
    gateway = open_gateway()
    logger.info("Starting worker: interval=%ss db=%s remote=%s", settings.SYNC_INTERVAL,
                settings.INVENTORY_DB_PATH, settings.REMOTE_BASE_URL or 'none (queue only)')
    worker = SyncWorker(gateway)
    try:
        while True:
            result = worker.run_once()
            if result.succeeded or result.failed:
                logger.info("Drain: %s", result.as_dict())
            worker.prune_if_due()
            time.sleep(worker.interval)
    except KeyboardInterrupt:
        logger.info("Exiting on Ctrl+C")
    finally:
        gateway.close()


if __name__ == '__main__':
    main()
