"""Durable write queue: mutations waiting to be confirmed by the remote store.

The queue lives in the terminal's SQLite file (``sync_queue`` table), so an
entry is on disk before ``enqueue`` returns. ``drain`` replays entries in
enqueue order against a caller-supplied function and removes each one as soon
as it is confirmed; a crash mid-drain resumes at the first remaining entry.

Entries that keep failing are moved to ``sync_failures`` after
``max_retries`` attempts rather than being retried forever, and stay there
(with their payload) for the operator dashboard.
"""
import json
import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

import settings
from local_store import SqliteBackend, iso_now
from sync_actions import SyncAction, decode_action, new_id

logger = logging.getLogger(__name__)


@dataclass
class QueueEntry:
    seq: int
    entry_id: str
    action_kind: str
    payload_json: str
    created_utc: str
    retries: int

    @classmethod
    def from_row(cls, row) -> 'QueueEntry':
        return cls(
            seq=int(row['seq']),
            entry_id=row['entry_id'],
            action_kind=row['action'],
            payload_json=row['payload_json'],
            created_utc=row['created_utc'],
            retries=int(row['retries'] or 0),
        )

    @property
    def payload(self) -> Dict[str, Any]:
        return json.loads(self.payload_json)

    def action(self) -> SyncAction:
        try:
            payload = self.payload
        except ValueError as exc:
            raise ValueError(f"Entry {self.entry_id} payload is not valid JSON") from exc
        return decode_action(self.action_kind, payload)

    def as_dict(self) -> Dict[str, Any]:
        return {
            'entry_id': self.entry_id,
            'action': self.action_kind,
            'created_utc': self.created_utc,
            'retries': self.retries,
        }


@dataclass
class DrainResult:
    succeeded: int = 0
    failed: int = 0
    dropped: int = 0
    skipped: bool = False

    def as_dict(self) -> Dict[str, Any]:
        return {
            'success': self.succeeded,
            'failed': self.failed,
            'dropped': self.dropped,
            'skipped': self.skipped,
        }


class WriteQueue:
    def __init__(self, store: SqliteBackend, max_retries: Optional[int] = None,
                 batch_limit: Optional[int] = None):
        self.store = store
        self.max_retries = max_retries or settings.SYNC_MAX_RETRIES
        self.batch_limit = settings.SYNC_BATCH_LIMIT if batch_limit is None else batch_limit
        self._drain_lock = threading.Lock()

    @property
    def conn(self):
        return self.store.conn

    def enqueue(self, action: SyncAction) -> str:
        """Append ``action``; committed (or joined to the open local transaction) on return."""
        entry_id = new_id()
        payload_json = json.dumps(action.to_payload(), separators=(",", ":"), default=str)
        with self.store.lock:
            self.conn.execute("""
                INSERT INTO sync_queue (entry_id, action, payload_json, created_utc, retries)
                VALUES (?,?,?,?,0)
            """, (entry_id, action.kind.value, payload_json, iso_now()))
        logger.info("Queued %s for remote sync (entry=%s)", action.kind.value, entry_id)
        return entry_id

    def count(self) -> int:
        with self.store.lock:
            row = self.conn.execute("SELECT COUNT(*) AS n FROM sync_queue").fetchone()
        return int(row['n'])

    def entries(self, limit: int = 100) -> List[QueueEntry]:
        with self.store.lock:
            rows = self.conn.execute(
                "SELECT * FROM sync_queue ORDER BY seq ASC LIMIT ?", (limit,)
            ).fetchall()
        return [QueueEntry.from_row(r) for r in rows]

    def oldest_pending_utc(self) -> Optional[str]:
        """Enqueue time of the oldest entry still queued or parked in ``sync_failures``."""
        with self.store.lock:
            row = self.conn.execute("""
                SELECT MIN(created_utc) AS oldest FROM (
                  SELECT created_utc FROM sync_queue
                  UNION ALL
                  SELECT created_utc FROM sync_failures
                )
            """).fetchone()
        return row['oldest']

    def is_draining(self) -> bool:
        return self._drain_lock.locked()

    def drain(self, apply_fn: Callable[[QueueEntry], Any]) -> DrainResult:
        """Replay queued entries FIFO through ``apply_fn``.

        Only entries present when the drain starts are visited; anything
        enqueued meanwhile waits for the next drain. A concurrent call returns
        straight away with ``skipped=True``.
        """
        if not self._drain_lock.acquire(blocking=False):
            logger.info("Sync drain already running; skipping")
            return DrainResult(skipped=True)
        try:
            return self._drain_snapshot(apply_fn)
        finally:
            self._drain_lock.release()

    def _drain_snapshot(self, apply_fn: Callable[[QueueEntry], Any]) -> DrainResult:
        result = DrainResult()
        with self.store.lock:
            top = self.conn.execute("SELECT MAX(seq) AS top FROM sync_queue").fetchone()['top']
        if top is None:
            return result
        last_seq = 0
        visited = 0
        while not self.batch_limit or visited < self.batch_limit:
            with self.store.lock:
                row = self.conn.execute("""
                    SELECT * FROM sync_queue WHERE seq > ? AND seq <= ?
                    ORDER BY seq ASC LIMIT 1
                """, (last_seq, top)).fetchone()
            if row is None:
                break
            entry = QueueEntry.from_row(row)
            last_seq = entry.seq
            visited += 1
            try:
                apply_fn(entry)
            except Exception as exc:
                result.failed += 1
                if self._record_failure(entry, exc):
                    result.dropped += 1
                continue
            with self.store.lock:
                self.conn.execute("DELETE FROM sync_queue WHERE seq=?", (entry.seq,))
            result.succeeded += 1
        if result.succeeded or result.failed:
            logger.info("Sync drain finished: success=%d failed=%d dropped=%d remaining=%d",
                        result.succeeded, result.failed, result.dropped, self.count())
        return result

    def _record_failure(self, entry: QueueEntry, exc: Exception) -> bool:
        """Bump the retry count; move the entry to sync_failures at the bound. True if dropped."""
        retries = entry.retries + 1
        error = str(exc) or exc.__class__.__name__
        if retries >= self.max_retries:
            with self.store.transaction():
                self.conn.execute("""
                    INSERT INTO sync_failures (entry_id, action, payload_json, created_utc, failed_utc, retries, last_error)
                    VALUES (?,?,?,?,?,?,?)
                """, (entry.entry_id, entry.action_kind, entry.payload_json, entry.created_utc,
                      iso_now(), retries, error))
                self.conn.execute("DELETE FROM sync_queue WHERE seq=?", (entry.seq,))
            logger.warning("Dropped %s entry %s after %d failed attempts: %s",
                           entry.action_kind, entry.entry_id, retries, error)
            return True
        with self.store.lock:
            self.conn.execute(
                "UPDATE sync_queue SET retries=?, last_error=? WHERE seq=?",
                (retries, error, entry.seq)
            )
        logger.warning("Replay of %s entry %s failed (attempt %d/%d): %s",
                       entry.action_kind, entry.entry_id, retries, self.max_retries, error)
        return False

    # ---------- operator view of dropped entries ----------
    def failures(self, limit: int = 100) -> List[Dict[str, Any]]:
        with self.store.lock:
            rows = self.conn.execute("""
                SELECT id, entry_id, action, created_utc, failed_utc, retries, last_error
                FROM sync_failures ORDER BY id DESC LIMIT ?
            """, (limit,)).fetchall()
        return [dict(r) for r in rows]

    def failure_count(self) -> int:
        with self.store.lock:
            row = self.conn.execute("SELECT COUNT(*) AS n FROM sync_failures").fetchone()
        return int(row['n'])

    def requeue_failure(self, failure_id: int) -> Optional[str]:
        """Put a dropped entry back at the tail of the queue with a fresh retry budget."""
        with self.store.transaction():
            row = self.conn.execute(
                "SELECT * FROM sync_failures WHERE id=?", (failure_id,)
            ).fetchone()
            if row is None:
                return None
            self.conn.execute("""
                INSERT INTO sync_queue (entry_id, action, payload_json, created_utc, retries)
                VALUES (?,?,?,?,0)
            """, (row['entry_id'], row['action'], row['payload_json'], row['created_utc']))
            self.conn.execute("DELETE FROM sync_failures WHERE id=?", (failure_id,))
        logger.info("Re-queued dropped %s entry %s", row['action'], row['entry_id'])
        return row['entry_id']

    def clear_failures(self) -> int:
        with self.store.lock:
            cur = self.conn.execute("DELETE FROM sync_failures")
        return cur.rowcount
