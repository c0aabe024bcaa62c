"""Storage interface shared by the local cache and the remote canonical store.

Both replicas expose the same small surface so the persistence gateway can run
one handler against either of them. Writes keyed by a client-generated ``id``
are insert-if-absent, and stock changes go through ``adjust`` so the store
evaluates ``field = field + delta`` itself instead of the client overwriting a
value it read earlier.
"""
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple

Record = Dict[str, Any]
Order = Sequence[Tuple[str, str]]

COLLECTIONS = (
    'inventory_items',
    'inventory_batches',
    'sales_records',
    'agents',
    'customers',
    'suppliers',
    'supplier_invoices',
    'expenses',
    'stock_adjustments',
    'applied_mutations',
    'audit_logs',
    'store_settings',
)


class InventoryError(Exception):
    """Base class for errors raised by the inventory core."""


class StockValidationError(InventoryError, ValueError):
    """Rejected before anything was written to either replica."""


class RecordNotFound(StockValidationError):
    def __init__(self, collection: str, record_id: str):
        super().__init__(f"Unknown {collection} record: {record_id}")
        self.collection = collection
        self.record_id = record_id


class InsufficientStockError(StockValidationError):
    def __init__(self, item_id: str, requested: float, available: float):
        super().__init__(
            f"Item {item_id} has {available:g} units in active batches, {requested:g} requested"
        )
        self.item_id = item_id
        self.requested = requested
        self.available = available


class DeductionRefused(StockValidationError):
    """The store would have to go below zero; nothing was applied."""


class RemoteStoreError(InventoryError):
    """Any failure talking to the remote store; mutations degrade to the queue."""


class RemoteUnavailable(RemoteStoreError):
    """Network error, timeout or 5xx."""


class RemoteRejected(RemoteStoreError):
    def __init__(self, status: int, detail: str = ""):
        super().__init__(f"Remote rejected request (HTTP {status}): {detail}".rstrip(': '))
        self.status = status
        self.detail = detail


class StaleWriteError(RemoteStoreError):
    """Compare-and-set kept losing to concurrent writers."""


class RemoteRecordMissing(RemoteStoreError):
    """The remote does not have the record yet (its create is still queued)."""

    def __init__(self, collection: str, record_id: str):
        super().__init__(f"{collection}/{record_id} not present at remote store")
        self.collection = collection
        self.record_id = record_id


def check_collection(collection: str) -> str:
    if collection not in COLLECTIONS:
        raise ValueError(f"Unknown collection: {collection}")
    return collection


class Backend:
    """Interface implemented by ``SqliteBackend`` and ``RestBackend``."""

    name = 'backend'

    def insert_if_absent(self, collection: str, record: Record) -> bool:
        """Insert ``record`` unless one with the same ``id`` exists. True if created."""
        raise NotImplementedError

    def insert(self, collection: str, record: Record) -> str:
        if not record.get('id'):
            raise ValueError(f"{collection} record needs a client-generated id")
        self.insert_if_absent(collection, record)
        return str(record['id'])

    def update(self, collection: str, record_id: str, fields: Record,
               match: Optional[Record] = None) -> bool:
        """Patch one record; ``match`` adds equality guards. True if a row changed."""
        raise NotImplementedError

    def adjust(self, collection: str, record_id: str, field: str, delta: float,
               clamp_at_zero: bool = False) -> bool:
        """Relative update evaluated at the store.

        With ``clamp_at_zero`` the result is floored at zero. Without it the
        update is refused (False) when it would go negative.
        """
        raise NotImplementedError

    def get(self, collection: str, record_id: str) -> Optional[Record]:
        rows = self.query(collection, {'id': record_id}, limit=1)
        return rows[0] if rows else None

    def query(self, collection: str, filters: Optional[Record] = None,
              order: Optional[Order] = None, limit: Optional[int] = None) -> List[Record]:
        """Equality filters; ``order`` is ``[(column, 'asc'|'desc'), ...]``."""
        raise NotImplementedError

    def prune_ledger(self, before: str) -> int:
        """Delete ``applied_mutations`` rows applied before ``before``. Returns the count."""
        raise NotImplementedError

    @contextmanager
    def transaction(self) -> Iterator['Backend']:
        """Group writes atomically where the store supports it."""
        yield self
