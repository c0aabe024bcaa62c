"""Stock consistency for bulk items, their breakout units and expiry batches.

A bulk parent (a 750ml bottle, a 90kg sack) is broken out into a derived unit
item (30ml tots, 1kg bags) at a fixed conversion rate. Breakout stock is only
ever created from a received bulk batch (``populate_breakout_batches``); sales
of the unit item come out of its own batches first-expiry-first-out. The audit
compares the physical bulk count against the units the books still hold.

All writes go through a ``Backend`` so the same rules run on the local cache
and on the remote store. Batch quantities are never allowed below zero; only
the item-level ``current_stock`` display is clamped.
"""
import logging
import uuid
from dataclasses import asdict, dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

import settings
from backends import Backend, InsufficientStockError, Record, RecordNotFound, StockValidationError
from local_store import iso_now

logger = logging.getLogger(__name__)

ITEMS = 'inventory_items'
BATCHES = 'inventory_batches'
LEDGER = 'applied_mutations'

BATCH_ACTIVE = 'ACTIVE'
BATCH_DISPOSED = 'DISPOSED'

RISK_SAFE = 'SAFE'
RISK_WARNING = 'WARNING'
RISK_CRITICAL = 'CRITICAL'

_EPSILON = 1e-9
_BREAKOUT_BATCH_NS = uuid.UUID('6f1c2a8e-3d4b-4f7a-9c1e-2b5d8a7f0e31')

Allocation = Tuple[str, float]


@dataclass(frozen=True)
class ConversionInfo:
    breakout_unit_name: str
    conversion_rate: float
    bulk_unit_name: Optional[str] = None

    def validate(self):
        try:
            rate = float(self.conversion_rate)
        except (TypeError, ValueError):
            raise StockValidationError(f"Invalid conversion rate: {self.conversion_rate!r}") from None
        if rate <= 0:
            raise StockValidationError(f"Conversion rate must be positive, got {rate:g}")
        if not (self.breakout_unit_name or '').strip():
            raise StockValidationError("Breakout unit name is required")

    @classmethod
    def from_item(cls, item: Record) -> 'ConversionInfo':
        return cls(
            breakout_unit_name=item.get('breakout_unit_name') or 'Unit',
            conversion_rate=float(item.get('conversion_rate') or 0),
            bulk_unit_name=item.get('bulk_unit_name'),
        )


@dataclass(frozen=True)
class AuditVarianceReport:
    parent_item_id: str
    physical_bulk_stock: float
    conversion_rate: float
    expected_units: float
    actual_units: float
    variance: float
    risk_level: str
    message: str
    breakout_item_count: int = 0

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)


def apply_once(backend: Backend, key: str, fn: Callable[[], Any], label: str) -> bool:
    """Run ``fn`` unless ``key`` is already in the ledger, then record ``key``.

    Stores without multi-call transactions commit each write on its own, so a
    create can land while the step after it does not. Keying every side effect
    lets a replay finish exactly the steps that are missing. Returns True if
    ``fn`` ran.
    """
    with backend.transaction():
        if backend.get(LEDGER, key) is not None:
            return False
        fn()
        backend.insert_if_absent(LEDGER, {'id': key, 'action': label, 'applied_at': iso_now()})
    return True


def classify_variance(variance: float, actual_units: float, critical_threshold: float) -> str:
    """Risk level for ``variance = actual - expected``.

    Positive variance means the books hold units the physical bulk stock can
    no longer back (poured or walked out): CRITICAL above the threshold.
    Negative variance means the books understate what is on the shelf, and is
    never worse than WARNING. The sign convention follows the worked audit
    example where 0 bottles on the shelf against 60 tots on the books is
    CRITICAL.
    """
    if abs(variance) < _EPSILON:
        return RISK_SAFE
    if variance > 0:
        return RISK_CRITICAL if abs(actual_units) > critical_threshold else RISK_WARNING
    return RISK_WARNING


def _variance_message(risk: str, variance: float, actual: float, expected: float) -> str:
    if risk == RISK_SAFE:
        return f"Inventory balanced: {actual:g} units in system match physical stock."
    if variance > 0:
        return (f"{risk}: {variance:g} units unaccounted for "
                f"({actual:g} in system, {expected:g} physically backed). Check for theft or over-pouring.")
    return (f"{risk}: system understates stock by {abs(variance):g} units "
            f"({actual:g} in system, {expected:g} expected). Physical recount recommended.")


def breakout_batch_id(bulk_batch_id: str, breakout_item_id: str) -> str:
    return uuid.uuid5(_BREAKOUT_BATCH_NS, f"{bulk_batch_id}:{breakout_item_id}").hex


def fefo_key(batch: Record) -> Tuple[bool, str, str]:
    expiry = batch.get('expiry_date')
    return (not expiry, expiry or '', batch.get('created_at') or '')


def plan_fefo(item_id: str, batches: List[Record], quantity: float,
              allow_short: bool = False) -> List[Allocation]:
    """Split ``quantity`` over ``batches`` earliest expiry first.

    A shortfall raises ``InsufficientStockError`` unless ``allow_short``, in
    which case the plan takes everything the batches hold.
    """
    remaining = float(quantity)
    plan: List[Allocation] = []
    available = 0.0
    for batch in sorted(batches, key=fefo_key):
        stock = float(batch.get('current_stock') or 0)
        if stock <= 0:
            continue
        available += stock
        if remaining <= _EPSILON:
            continue
        take = min(stock, remaining)
        plan.append((batch['id'], take))
        remaining -= take
    if remaining > _EPSILON and not allow_short:
        raise InsufficientStockError(item_id, float(quantity), available)
    return plan


class StockEngine:
    def __init__(self, backend: Backend, critical_threshold: Optional[float] = None):
        self.backend = backend
        self.critical_threshold = (settings.AUDIT_CRITICAL_THRESHOLD
                                   if critical_threshold is None else float(critical_threshold))

    # ---------- items ----------
    def get_item(self, item_id: str) -> Optional[Record]:
        return self.backend.get(ITEMS, item_id)

    def _require_item(self, item_id: str) -> Record:
        item = self.get_item(item_id)
        if item is None:
            raise RecordNotFound(ITEMS, item_id)
        return item

    def get_breakout_items(self, parent_item_id: str, active_only: bool = True) -> List[Record]:
        filters: Record = {'parent_item_id': parent_item_id}
        if active_only:
            filters['is_active'] = 1
        return self.backend.query(ITEMS, filters, order=[('created_at', 'asc')])

    @staticmethod
    def build_breakout_item(parent_item: Record, conversion: ConversionInfo,
                            item_id: Optional[str] = None) -> Record:
        """Derived unit record for ``parent_item``; prices divided by the conversion rate."""
        conversion.validate()
        if parent_item.get('parent_item_id'):
            raise StockValidationError(
                f"{parent_item.get('id')} is already a breakout unit and cannot be broken out again"
            )
        rate = float(conversion.conversion_rate)
        unit_name = conversion.breakout_unit_name.strip()
        reorder_level = parent_item.get('reorder_level')
        return {
            'id': item_id or uuid.uuid4().hex,
            'store_id': parent_item.get('store_id'),
            'item_name': f"{unit_name} ({parent_item.get('item_name')})",
            'unit_price': float(parent_item.get('unit_price') or 0) / rate,
            'buying_price': float(parent_item.get('buying_price') or 0) / rate,
            'current_stock': 0,
            'low_stock_threshold': float(parent_item.get('low_stock_threshold') or 0) * rate,
            'reorder_level': float(reorder_level) * rate if reorder_level is not None else None,
            'sku': f"{parent_item.get('sku') or ''}_{unit_name}"[:50],
            'barcode': f"{parent_item['barcode']}-UNIT" if parent_item.get('barcode') else None,
            'category': parent_item.get('category'),
            'description': f"{rate:g}x {unit_name} per {conversion.bulk_unit_name or 'bulk unit'}",
            'bulk_unit_name': conversion.bulk_unit_name,
            'breakout_unit_name': unit_name,
            'conversion_rate': rate,
            'parent_item_id': parent_item['id'],
            'is_bulk_parent': 0,
            'is_active': 1,
        }

    def create_breakout_unit_item(self, parent_item: Record, conversion: ConversionInfo,
                                  item_id: Optional[str] = None) -> Record:
        record = self.build_breakout_item(parent_item, conversion, item_id)
        with self.backend.transaction():
            if self.backend.insert_if_absent(ITEMS, record):
                logger.info("Created breakout item %s (%s x%g) for %s", record['id'],
                            record['breakout_unit_name'], record['conversion_rate'], parent_item['id'])
            self.backend.update(ITEMS, parent_item['id'], {
                'is_bulk_parent': 1,
                'bulk_unit_name': conversion.bulk_unit_name,
                'breakout_unit_name': record['breakout_unit_name'],
                'conversion_rate': record['conversion_rate'],
            })
        return self.get_item(record['id']) or record

    # ---------- batches ----------
    def active_batches(self, item_id: str, as_of: Optional[str] = None) -> List[Record]:
        """Non-empty ACTIVE batches in FEFO order; ``as_of`` drops batches expired before it."""
        rows = self.backend.query(BATCHES, {'inventory_item_id': item_id, 'status': BATCH_ACTIVE},
                                  order=[('expiry_date', 'asc'), ('created_at', 'asc')])
        rows = [r for r in rows if float(r.get('current_stock') or 0) > 0]
        if as_of:
            rows = [r for r in rows if not r.get('expiry_date') or r['expiry_date'] >= as_of]
        return sorted(rows, key=fefo_key)

    def select_fefo_batch(self, item_id: str, as_of: Optional[str] = None) -> Optional[Record]:
        batches = self.active_batches(item_id, as_of)
        return batches[0] if batches else None

    def allocate_fefo(self, item_id: str, quantity: float, as_of: Optional[str] = None,
                      allow_short: bool = False) -> List[Allocation]:
        if quantity <= 0:
            raise StockValidationError(f"Quantity must be positive, got {quantity:g}")
        return plan_fefo(item_id, self.active_batches(item_id, as_of), quantity, allow_short)

    def deduct_fefo(self, item_id: str, quantity: float, as_of: Optional[str] = None,
                    max_attempts: int = 3, allow_short: bool = False) -> List[Allocation]:
        """Take ``quantity`` out of the item's batches, earliest expiry first.

        Each batch decrement is a guarded relative update; if another terminal
        drains a batch between planning and applying, the taken part is put
        back and the plan is rebuilt. With ``allow_short`` the batches give up
        what they hold and the returned plan may cover less than ``quantity``.
        """
        for attempt in range(1, max_attempts + 1):
            plan = self.allocate_fefo(item_id, quantity, as_of, allow_short)
            applied: List[Allocation] = []
            with self.backend.transaction():
                for batch_id, qty in plan:
                    if not self.backend.adjust(BATCHES, batch_id, 'current_stock', -qty):
                        break
                    applied.append((batch_id, qty))
                if len(applied) == len(plan):
                    for batch_id, _ in applied:
                        self._dispose_if_empty(batch_id)
                    return plan
                for batch_id, qty in applied:
                    self.backend.adjust(BATCHES, batch_id, 'current_stock', qty)
            logger.info("FEFO plan for %s lost a race (attempt %d); re-planning", item_id, attempt)
        available = sum(float(b.get('current_stock') or 0) for b in self.active_batches(item_id, as_of))
        raise InsufficientStockError(item_id, quantity, available)

    def deduct_batch(self, batch_id: str, quantity: float) -> bool:
        if quantity <= 0:
            return False
        if not self.backend.adjust(BATCHES, batch_id, 'current_stock', -quantity):
            return False
        self._dispose_if_empty(batch_id)
        return True

    def _dispose_if_empty(self, batch_id: str):
        self.backend.update(BATCHES, batch_id, {'status': BATCH_DISPOSED},
                            match={'status': BATCH_ACTIVE, 'current_stock': 0})

    def receive_batch(self, batch: Record) -> Record:
        """Book a goods receipt; a bulk parent's breakout units are populated from it."""
        quantity = float(batch.get('current_stock') or 0)
        if quantity < 0:
            raise StockValidationError(f"Batch quantity cannot be negative, got {quantity:g}")
        item = self._require_item(batch['inventory_item_id'])
        record = dict(batch)
        record.setdefault('store_id', item.get('store_id'))
        record['status'] = BATCH_ACTIVE
        record['current_stock'] = quantity
        with self.backend.transaction():
            self.backend.insert_if_absent(BATCHES, record)
            if quantity:
                apply_once(self.backend, f"batch:{record['id']}:stock",
                           lambda: self.backend.adjust(ITEMS, item['id'], 'current_stock', quantity),
                           'RECEIVE_BATCH')
            if item.get('is_bulk_parent'):
                for breakout in self.get_breakout_items(item['id']):
                    conversion = ConversionInfo.from_item(breakout)
                    self.populate_breakout_batches(record, conversion, breakout)
        return self.backend.get(BATCHES, record['id']) or record

    def populate_breakout_batches(self, bulk_batch: Record, conversion: ConversionInfo,
                                  breakout_item: Record) -> Record:
        """Create the breakout batch for ``bulk_batch``: ``q * rate`` units, same expiry.

        The breakout batch id is derived from the bulk batch and breakout item,
        so calling this twice for the same receipt adds nothing the second time.
        """
        conversion.validate()
        if breakout_item.get('parent_item_id') != bulk_batch.get('inventory_item_id'):
            raise StockValidationError(
                f"Breakout item {breakout_item.get('id')} is not linked to "
                f"{bulk_batch.get('inventory_item_id')}"
            )
        bulk_qty = float(bulk_batch.get('current_stock') or 0)
        if bulk_qty < 0:
            raise StockValidationError(f"Bulk batch quantity cannot be negative, got {bulk_qty:g}")
        units = bulk_qty * float(conversion.conversion_rate)
        record = {
            'id': breakout_batch_id(bulk_batch['id'], breakout_item['id']),
            'store_id': bulk_batch.get('store_id') or breakout_item.get('store_id'),
            'inventory_item_id': breakout_item['id'],
            'batch_number': f"{bulk_batch.get('batch_number') or 'BULK'}_{conversion.breakout_unit_name}",
            'expiry_date': bulk_batch.get('expiry_date'),
            'current_stock': units,
            'status': BATCH_ACTIVE,
            'notes': f"Breakout from bulk batch: {bulk_batch.get('batch_number') or bulk_batch['id']}",
            'parent_batch_id': bulk_batch['id'],
        }
        with self.backend.transaction():
            self.backend.insert_if_absent(BATCHES, record)
            stocked = apply_once(
                self.backend, f"batch:{record['id']}:stock",
                lambda: self.backend.adjust(ITEMS, breakout_item['id'], 'current_stock', units),
                'POPULATE_BREAKOUT',
            )
            if stocked:
                logger.info("Populated %g %s from bulk batch %s", units,
                            conversion.breakout_unit_name, bulk_batch['id'])
        return self.backend.get(BATCHES, record['id']) or record

    def dispose_batch(self, batch_id: str, reason: str = '', max_attempts: int = 3) -> float:
        """Write off what is left in a batch. Returns the quantity written off."""
        for _ in range(max_attempts):
            batch = self.backend.get(BATCHES, batch_id)
            if batch is None:
                raise RecordNotFound(BATCHES, batch_id)
            if batch.get('status') == BATCH_DISPOSED:
                return 0.0
            remaining = float(batch.get('current_stock') or 0)
            notes = f"Written off: {reason}" if reason else batch.get('notes')
            with self.backend.transaction():
                swapped = self.backend.update(
                    BATCHES, batch_id,
                    {'status': BATCH_DISPOSED, 'current_stock': 0, 'notes': notes},
                    match={'status': BATCH_ACTIVE, 'current_stock': batch.get('current_stock')},
                )
                if swapped:
                    if remaining:
                        self.backend.adjust(ITEMS, batch['inventory_item_id'], 'current_stock',
                                            -remaining, clamp_at_zero=True)
                    logger.info("Disposed batch %s (%g units written off)", batch_id, remaining)
                    return remaining
        raise StockValidationError(f"Batch {batch_id} kept changing; dispose aborted")

    # ---------- sales ----------
    def deduct_breakout_units(self, breakout_item_id: str, quantity_sold: float,
                              batch_id: Optional[str] = None) -> bool:
        """Deduct sold units from a derived unit item.

        With ``batch_id`` (chosen FEFO by the caller) that batch and the item
        total both drop; otherwise only the item total does. Returns False,
        changing nothing, when the item is not a derived unit or the batch
        cannot cover the quantity.
        """
        if quantity_sold is None or quantity_sold <= 0:
            logger.warning("Refusing to deduct non-positive quantity %r from %s",
                           quantity_sold, breakout_item_id)
            return False
        item = self.get_item(breakout_item_id)
        if item is None or not item.get('parent_item_id'):
            logger.warning("Item %s is not a breakout unit; nothing deducted", breakout_item_id)
            return False
        with self.backend.transaction():
            if batch_id:
                batch = self.backend.get(BATCHES, batch_id)
                if (batch is None or batch.get('inventory_item_id') != breakout_item_id
                        or batch.get('status') != BATCH_ACTIVE):
                    logger.warning("Batch %s is not an active batch of %s", batch_id, breakout_item_id)
                    return False
                if not self.deduct_batch(batch_id, quantity_sold):
                    logger.warning("Batch %s cannot cover %g units", batch_id, quantity_sold)
                    return False
            self.backend.adjust(ITEMS, breakout_item_id, 'current_stock', -quantity_sold,
                                clamp_at_zero=True)
        return True

    def deduct_for_sale(self, item: Record, quantity: float,
                        batch_id: Optional[str] = None) -> List[Dict[str, Any]]:
        """Apply a sale's stock movement; returns the batch allocations taken.

        Derived units go through ``deduct_breakout_units``. A sale is never
        refused because batches are short: the batches give up what they hold,
        earliest expiry first, and the uncovered remainder is logged. Batch
        totals therefore never exceed the item's ``current_stock``.
        """
        item_id = item['id']
        derived = bool(item.get('parent_item_id'))
        if batch_id:
            if derived:
                ok = self.deduct_breakout_units(item_id, quantity, batch_id)
            else:
                with self.backend.transaction():
                    ok = self.deduct_batch(batch_id, quantity)
                    if ok:
                        self.backend.adjust(ITEMS, item_id, 'current_stock', -quantity, clamp_at_zero=True)
            if ok:
                return [{'batch_id': batch_id, 'quantity': quantity}]
            logger.warning("Batch %s could not cover sale of %g %s; using FEFO", batch_id, quantity, item_id)
        if not derived or not self.deduct_breakout_units(item_id, quantity):
            self.backend.adjust(ITEMS, item_id, 'current_stock', -quantity, clamp_at_zero=True)
        plan = self.deduct_fefo(item_id, quantity, allow_short=True)
        uncovered = quantity - sum(q for _, q in plan)
        if plan and uncovered > _EPSILON:
            logger.warning("Batches of %s covered %g of %g units; %g sold without a batch",
                           item_id, quantity - uncovered, quantity, uncovered)
        return [{'batch_id': b, 'quantity': q} for b, q in plan]

    def restore_allocations(self, item_id: str, quantity: float,
                            allocations: Optional[List[Dict[str, Any]]] = None):
        """Undo a sale's deduction with relative increments."""
        with self.backend.transaction():
            self.backend.adjust(ITEMS, item_id, 'current_stock', quantity)
            for alloc in allocations or []:
                batch_id = alloc.get('batch_id')
                qty = float(alloc.get('quantity') or 0)
                if not batch_id or qty <= 0:
                    continue
                if self.backend.adjust(BATCHES, batch_id, 'current_stock', qty):
                    self.backend.update(BATCHES, batch_id, {'status': BATCH_ACTIVE},
                                        match={'status': BATCH_DISPOSED})

    # ---------- audit ----------
    def threshold_for_store(self, store_id: Optional[str]) -> float:
        if store_id:
            row = self.backend.get('store_settings', store_id)
            if row and row.get('audit_critical_threshold') is not None:
                return float(row['audit_critical_threshold'])
        return self.critical_threshold

    def calculate_audit_variance(self, parent_item_id: str, physical_bulk_stock: float) -> AuditVarianceReport:
        """Expected units (physical bulk x rate) against units still on the books. Read-only."""
        if physical_bulk_stock is None or physical_bulk_stock < 0:
            raise StockValidationError(f"Physical count must be zero or more, got {physical_bulk_stock!r}")
        parent = self._require_item(parent_item_id)
        if parent.get('parent_item_id'):
            raise StockValidationError(f"{parent_item_id} is a breakout unit, audit its bulk parent")
        breakouts = self.get_breakout_items(parent_item_id)
        rate = float(parent.get('conversion_rate') or 0)
        if rate <= 0 and breakouts:
            rate = float(breakouts[0].get('conversion_rate') or 0)
        if rate <= 0:
            raise StockValidationError(f"{parent_item_id} has no conversion configured")
        expected = float(physical_bulk_stock) * rate
        actual = sum(float(b.get('current_stock') or 0) for b in breakouts)
        variance = round(actual - expected, 6)
        risk = classify_variance(variance, actual, self.threshold_for_store(parent.get('store_id')))
        return AuditVarianceReport(
            parent_item_id=parent_item_id,
            physical_bulk_stock=float(physical_bulk_stock),
            conversion_rate=rate,
            expected_units=expected,
            actual_units=actual,
            variance=variance,
            risk_level=risk,
            message=_variance_message(risk, variance, actual, expected),
            breakout_item_count=len(breakouts),
        )
