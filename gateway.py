"""Dual-path persistence: remote store when reachable, local cache + queue otherwise.

Every mutation is a typed ``SyncAction``. One handler per action kind runs it
against a ``Backend``; the online path, the offline path and queue replay all
call the same handler, wrapped by ``_run`` which consults the
``applied_mutations`` ledger so a replayed action is applied at most once.
"""
import json
import logging
import math
import uuid
from typing import Any, Callable, Dict, List, Optional

import settings
from backends import (
    Backend,
    DeductionRefused,
    Record,
    RecordNotFound,
    RemoteRecordMissing,
    RemoteStoreError,
    StockValidationError,
)
from local_store import SqliteBackend, iso_days_ago, iso_now
from remote_store import HttpProbe, build_remote
from stock_engine import (
    BATCHES,
    ITEMS,
    LEDGER,
    AuditVarianceReport,
    ConversionInfo,
    StockEngine,
    apply_once,
)
from sync_actions import (
    ActionKind,
    AddAgent,
    AddBatch,
    AddExpense,
    AddItem,
    ClearDebt,
    CreateBreakoutItem,
    CreateCustomer,
    CreateInvoice,
    CreateRecord,
    CreateSale,
    CreateSupplier,
    DeductBreakout,
    DeleteAgent,
    DisposeBatch,
    PayInvoice,
    RecordAdjustment,
    SyncAction,
    UpdateCustomer,
    UpdateStock,
    VoidSale,
    new_id,
)
from sync_queue import DrainResult, QueueEntry, WriteQueue

logger = logging.getLogger(__name__)

SALES = 'sales_records'
AGENTS = 'agents'

PAYMENT_CREDIT = 'MADENI'
DEBT_OPEN_STATUSES = ('PENDING', 'PARTIAL')
ADJUSTMENT_TYPES = ('DAMAGE', 'LOSS', 'SHRINKAGE', 'COUNT_VARIANCE', 'MANUAL_ADJUSTMENT')

_AGENT_NS = uuid.UUID('0b7f5d2c-91a4-4c36-8e0f-5a2d7c3b9e14')

Handler = Callable[[Backend, StockEngine, Any], Any]


def agent_id_for(store_id: str, name: str) -> str:
    """Staff are keyed by store + case-folded name, so offline terminals agree on the id."""
    return uuid.uuid5(_AGENT_NS, f"{store_id}:{name.strip().lower()}").hex


def agent_earns_points(name: Optional[str]) -> bool:
    name = (name or '').strip()
    return len(name) > 2 and name.lower() != 'self'


def _positive(value: Any, what: str) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise StockValidationError(f"{what} must be a number, got {value!r}") from None
    if not math.isfinite(number) or number <= 0:
        raise StockValidationError(f"{what} must be greater than zero, got {value!r}")
    return number


def _allocations(raw: Any) -> List[Dict[str, Any]]:
    if isinstance(raw, str) and raw:
        return json.loads(raw)
    return list(raw or [])


class PersistenceGateway:
    def __init__(self, local: SqliteBackend, remote: Optional[Backend] = None,
                 is_online: Optional[Callable[[], bool]] = None,
                 queue: Optional[WriteQueue] = None,
                 critical_threshold: Optional[float] = None,
                 queue_only: Optional[bool] = None):
        self.local = local
        self.remote = remote
        self.is_online = is_online or (lambda: remote is not None)
        self.queue = queue or WriteQueue(local)
        self.critical_threshold = critical_threshold
        self.queue_only = settings.POS_QUEUE_ONLY if queue_only is None else queue_only
        self._handlers: Dict[ActionKind, Handler] = {
            ActionKind.CREATE_SALE: self._apply_create_sale,
            ActionKind.VOID_SALE: self._apply_void_sale,
            ActionKind.UPDATE_STOCK: self._apply_update_stock,
            ActionKind.RECORD_ADJUSTMENT: self._apply_adjustment,
            ActionKind.ADD_ITEM: self._apply_create_record,
            ActionKind.ADD_BATCH: self._apply_add_batch,
            ActionKind.CREATE_BREAKOUT_ITEM: self._apply_create_breakout,
            ActionKind.DEDUCT_BREAKOUT: self._apply_deduct_breakout,
            ActionKind.DISPOSE_BATCH: self._apply_dispose_batch,
            ActionKind.CREATE_SUPPLIER: self._apply_create_record,
            ActionKind.CREATE_CUSTOMER: self._apply_create_record,
            ActionKind.UPDATE_CUSTOMER: self._apply_update_customer,
            ActionKind.CREATE_INVOICE: self._apply_create_record,
            ActionKind.PAY_INVOICE: self._apply_pay_invoice,
            ActionKind.ADD_AGENT: self._apply_create_record,
            ActionKind.DELETE_AGENT: self._apply_delete_agent,
            ActionKind.CLEAR_DEBT: self._apply_clear_debt,
            ActionKind.ADD_EXPENSE: self._apply_create_record,
        }
        missing = set(ActionKind) - set(self._handlers)
        if missing:
            raise RuntimeError(f"No gateway handler for {sorted(k.value for k in missing)}")

    def close(self):
        self.local.close()
        if self.remote is not None and hasattr(self.remote, 'close'):
            self.remote.close()

    # ---------- dispatch ----------
    def remote_available(self) -> bool:
        if self.remote is None or self.queue_only:
            return False
        try:
            return bool(self.is_online())
        except Exception as exc:
            logger.warning("Connectivity probe failed, treating as offline: %s", exc)
            return False

    def engine(self, backend: Backend) -> StockEngine:
        return StockEngine(backend, self.critical_threshold)

    def _run(self, backend: Backend, action: SyncAction) -> Any:
        """Apply ``action`` to ``backend`` at most once, keyed by its mutation id."""
        with backend.transaction():
            if backend.get(LEDGER, action.mutation_id) is not None:
                logger.info("%s %s already applied on %s; skipping",
                            action.kind.value, action.mutation_id, backend.name)
                return action.record_id()
            result = self._handlers[action.kind](backend, self.engine(backend), action)
            backend.insert_if_absent(LEDGER, {
                'id': action.mutation_id,
                'action': action.kind.value,
                'applied_at': iso_now(),
            })
        return result

    def _mutate(self, action: SyncAction) -> Any:
        if self.remote_available():
            try:
                result = self._run(self.remote, action)
            except RemoteStoreError as exc:
                logger.warning("Remote write of %s failed, saving locally and queueing: %s",
                               action.kind.value, exc)
            else:
                self._mirror_local(action)
                return result
        with self.local.transaction():
            result = self._run(self.local, action)
            self.queue.enqueue(action)
        return result

    def _mirror_local(self, action: SyncAction):
        try:
            self._run(self.local, action)
        except StockValidationError as exc:
            logger.warning("Local cache could not mirror %s %s: %s",
                           action.kind.value, action.mutation_id, exc)

    def _read(self, fn: Callable[[Backend], Any]) -> Any:
        """Remote first; the local cache answers when the remote cannot."""
        if not self.remote_available():
            return fn(self.local)
        try:
            return fn(self.remote)
        except RemoteStoreError as exc:
            cached = fn(self.local)
            if not cached:
                raise
            logger.warning("Remote read failed, serving local cache: %s", exc)
            return cached

    def _require(self, backend: Backend, collection: str, record_id: str) -> Optional[Record]:
        row = backend.get(collection, record_id)
        if row is None and backend is not self.local:
            raise RemoteRecordMissing(collection, record_id)
        return row

    def _update_or_defer(self, backend: Backend, collection: str, record_id: str,
                         fields: Record, match: Optional[Record] = None) -> bool:
        if backend.update(collection, record_id, fields, match=match):
            return True
        self._require(backend, collection, record_id)
        return False

    def log_action(self, action_type: str, description: str, store_id: Optional[str] = None,
                   performed_by: Optional[str] = None):
        self.local.insert_if_absent('audit_logs', {
            'id': new_id(),
            'store_id': store_id,
            'action_type': action_type,
            'description': description,
            'performed_by': performed_by,
            'timestamp': iso_now(),
        })

    # ---------- handlers ----------
    def _apply_create_record(self, backend: Backend, engine: StockEngine, action: CreateRecord):
        if not backend.insert_if_absent(action.collection, dict(action.record)):
            logger.info("%s %s already exists on %s", action.collection, action.record_id(), backend.name)
        return action.record_id()

    def _apply_create_sale(self, backend: Backend, engine: StockEngine, action: CreateSale):
        item = self._require(backend, ITEMS, action.item_id)
        if not backend.insert_if_absent(SALES, action.record()):
            logger.info("Sale %s already on %s; completing any missing steps", action.sale_id, backend.name)
        if item is None:
            logger.warning("Sale %s references item %s missing from %s; stock not deducted",
                           action.sale_id, action.item_id, backend.name)
        else:
            apply_once(backend, f"sale:{action.sale_id}:stock",
                       lambda: self._deduct_sale_stock(backend, engine, action, item), action.kind.value)
        apply_once(backend, f"sale:{action.sale_id}:agent",
                   lambda: self._credit_agent(backend, action.store_id, action.agent_name,
                                              float(action.total_amount or 0), action.created_at),
                   action.kind.value)
        return action.sale_id

    def _deduct_sale_stock(self, backend: Backend, engine: StockEngine, action: CreateSale, item: Record):
        allocations = engine.deduct_for_sale(item, float(action.quantity), action.batch_id)
        if allocations:
            backend.update(SALES, action.sale_id, {'batch_allocations': allocations})

    def _credit_agent(self, backend: Backend, store_id: str, name: Optional[str],
                      total: float, when: Optional[str], sign: int = 1):
        if not agent_earns_points(name):
            return
        agent_id = agent_id_for(store_id, name)
        backend.insert_if_absent(AGENTS, {
            'id': agent_id,
            'store_id': store_id,
            'name': name.strip(),
            'total_points': 0,
            'total_sales_value': 0,
            'is_active': 1,
        })
        points = math.floor(total / 100)
        if points:
            backend.adjust(AGENTS, agent_id, 'total_points', sign * points, clamp_at_zero=True)
        if total:
            backend.adjust(AGENTS, agent_id, 'total_sales_value', sign * total, clamp_at_zero=True)
        if sign > 0:
            backend.update(AGENTS, agent_id, {'last_active': when or iso_now()})

    def _apply_void_sale(self, backend: Backend, engine: StockEngine, action: VoidSale):
        sale = self._require(backend, SALES, action.sale_id)
        if sale is None:
            logger.warning("Cannot void unknown sale %s on %s", action.sale_id, backend.name)
            return False
        voided = backend.update(SALES, action.sale_id, {'is_voided': 1}, match={'is_voided': 0})
        if not voided:
            logger.info("Sale %s already voided on %s; completing any missing steps",
                        action.sale_id, backend.name)
        # keyed by sale, so two voids of one sale restore stock once
        restored = apply_once(
            backend, f"void:{action.sale_id}:stock",
            lambda: engine.restore_allocations(sale['item_id'], float(sale['quantity']),
                                               _allocations(sale.get('batch_allocations'))),
            action.kind.value,
        )
        debited = apply_once(
            backend, f"void:{action.sale_id}:agent",
            lambda: self._credit_agent(backend, sale['store_id'], sale.get('agent_name'),
                                       float(sale.get('total_amount') or 0), None, sign=-1),
            action.kind.value,
        )
        return voided or restored or debited

    def _apply_update_stock(self, backend: Backend, engine: StockEngine, action: UpdateStock):
        return self._update_or_defer(backend, ITEMS, action.item_id,
                                     {'current_stock': float(action.new_stock)})

    def _apply_adjustment(self, backend: Backend, engine: StockEngine, action: RecordAdjustment):
        item = self._require(backend, ITEMS, action.item_id)
        backend.insert_if_absent('stock_adjustments', {
            'id': action.adjustment_id,
            'store_id': action.store_id,
            'item_id': action.item_id,
            'adjustment_type': action.adjustment_type,
            'quantity_adjusted': action.quantity_adjusted,
            'reason': action.reason,
            'adjusted_by': action.adjusted_by,
            'created_at': action.created_at,
        })
        if item is not None:
            apply_once(backend, f"adjustment:{action.adjustment_id}:stock",
                       lambda: engine.deduct_for_sale(item, float(action.quantity_adjusted)),
                       action.kind.value)
        return action.adjustment_id

    def _apply_add_batch(self, backend: Backend, engine: StockEngine, action: AddBatch):
        if self._require(backend, ITEMS, action.item_id) is None:
            raise RecordNotFound(ITEMS, action.item_id)
        engine.receive_batch({
            'id': action.batch_id,
            'store_id': action.store_id,
            'inventory_item_id': action.item_id,
            'batch_number': action.batch_number,
            'expiry_date': action.expiry_date,
            'current_stock': float(action.quantity),
            'notes': action.notes,
            'created_at': action.created_at,
        })
        return action.batch_id

    def _apply_create_breakout(self, backend: Backend, engine: StockEngine, action: CreateBreakoutItem):
        parent = self._require(backend, ITEMS, action.parent_item_id)
        if parent is None:
            raise RecordNotFound(ITEMS, action.parent_item_id)
        conversion = ConversionInfo(action.breakout_unit_name, action.conversion_rate,
                                    action.bulk_unit_name)
        item = engine.create_breakout_unit_item(parent, conversion, item_id=action.breakout_item_id)
        if action.bulk_batch_id:
            bulk_batch = self._require(backend, BATCHES, action.bulk_batch_id)
            if bulk_batch is not None:
                engine.populate_breakout_batches(bulk_batch, conversion, item)
        return action.breakout_item_id

    def _apply_deduct_breakout(self, backend: Backend, engine: StockEngine, action: DeductBreakout):
        self._require(backend, ITEMS, action.item_id)
        if not engine.deduct_breakout_units(action.item_id, float(action.quantity), action.batch_id):
            raise DeductionRefused(
                f"{backend.name} cannot deduct {float(action.quantity):g} units of {action.item_id}"
                + (f" from batch {action.batch_id}" if action.batch_id else "")
            )
        return True

    def _apply_dispose_batch(self, backend: Backend, engine: StockEngine, action: DisposeBatch):
        if self._require(backend, BATCHES, action.batch_id) is None:
            return 0.0
        return engine.dispose_batch(action.batch_id, action.reason)

    def _apply_update_customer(self, backend: Backend, engine: StockEngine, action: UpdateCustomer):
        return self._update_or_defer(backend, 'customers', action.customer_id, dict(action.updates))

    def _apply_pay_invoice(self, backend: Backend, engine: StockEngine, action: PayInvoice):
        return self._update_or_defer(backend, 'supplier_invoices', action.invoice_id,
                                     {'status': 'PAID', 'payment_date': action.paid_at or iso_now()})

    def _apply_delete_agent(self, backend: Backend, engine: StockEngine, action: DeleteAgent):
        return self._update_or_defer(backend, AGENTS, action.agent_id, {'is_active': 0})

    def _apply_clear_debt(self, backend: Backend, engine: StockEngine, action: ClearDebt):
        return self._update_or_defer(backend, SALES, action.sale_id,
                                     {'payment_mode': 'CASH', 'payment_status': 'PAID'})

    def lookup(self, collection: str, record_id: str) -> Optional[Record]:
        """One record by id; a record whose create is still queued is found locally."""
        row = self._read(lambda b: b.get(collection, record_id))
        if row is None and self.remote_available():
            row = self.local.get(collection, record_id)
        return row

    # ---------- sales ----------
    def get_item(self, item_id: str) -> Optional[Record]:
        return self.lookup(ITEMS, item_id)

    def _require_item(self, item_id: str) -> Record:
        item = self.get_item(item_id)
        if item is None:
            raise RecordNotFound(ITEMS, item_id)
        return item

    def record_sale(self, sale: Record) -> str:
        """Record a sale and its stock movement; returns the sale id."""
        quantity = _positive(sale.get('quantity'), 'Sale quantity')
        item = self._require_item(sale.get('item_id'))
        unit_price = float(sale.get('unit_price') if sale.get('unit_price') is not None
                           else item.get('unit_price') or 0)
        total = sale.get('total_amount')
        action = CreateSale(
            sale_id=sale.get('id') or new_id(),
            store_id=sale.get('store_id') or item['store_id'],
            item_id=item['id'],
            quantity=quantity,
            unit_price=unit_price,
            total_amount=float(total) if total is not None else unit_price * quantity,
            item_name=sale.get('item_name') or item.get('item_name') or 'Unknown Item',
            payment_mode=sale.get('payment_mode') or 'CASH',
            payment_status=sale.get('payment_status') or 'PAID',
            customer_name=sale.get('customer_name'),
            customer_phone=sale.get('customer_phone'),
            agent_name=sale.get('agent_name') or sale.get('collected_by'),
            batch_id=sale.get('batch_id'),
            created_at=sale.get('created_at') or iso_now(),
        )
        return self._mutate(action)

    def void_sale(self, sale_id: str) -> bool:
        sale = self.lookup(SALES, sale_id)
        if sale is None:
            raise RecordNotFound(SALES, sale_id)
        if sale.get('is_voided'):
            return False
        result = self._mutate(VoidSale(sale_id=sale_id))
        self.log_action('VOID_SALE', f"Voided sale {sale_id} ({sale.get('quantity')} x {sale.get('item_name')})",
                        sale.get('store_id'))
        return result

    def settle_debt(self, sale_id: str) -> bool:
        return self._mutate(ClearDebt(sale_id=sale_id))

    # ---------- stock ----------
    def update_stock_level(self, item_id: str, new_stock: float) -> bool:
        try:
            new_stock = float(new_stock)
        except (TypeError, ValueError):
            raise StockValidationError(f"Stock level must be a number, got {new_stock!r}") from None
        if new_stock < 0:
            raise StockValidationError(f"Stock level cannot be negative, got {new_stock:g}")
        item = self._require_item(item_id)
        result = self._mutate(UpdateStock(item_id=item_id, new_stock=new_stock))
        self.log_action('STOCK_UPDATE', f"{item.get('item_name')}: {item.get('current_stock')} -> {new_stock:g}",
                        item.get('store_id'))
        return result

    def record_stock_adjustment(self, adjustment: Record) -> str:
        quantity = _positive(adjustment.get('quantity_adjusted'), 'Adjustment quantity')
        adjustment_type = (adjustment.get('adjustment_type') or '').upper()
        if adjustment_type not in ADJUSTMENT_TYPES:
            raise StockValidationError(f"Unknown adjustment type: {adjustment.get('adjustment_type')!r}")
        item = self._require_item(adjustment.get('item_id'))
        action = RecordAdjustment(
            adjustment_id=adjustment.get('id') or new_id(),
            store_id=adjustment.get('store_id') or item['store_id'],
            item_id=item['id'],
            adjustment_type=adjustment_type,
            quantity_adjusted=quantity,
            reason=adjustment.get('reason') or '',
            adjusted_by=adjustment.get('adjusted_by'),
            created_at=adjustment.get('created_at') or iso_now(),
        )
        result = self._mutate(action)
        self.log_action('STOCK_ADJUSTMENT', f"{adjustment_type} {quantity:g} x {item.get('item_name')}: {action.reason}",
                        action.store_id, action.adjusted_by)
        return result

    def add_inventory_item(self, item: Record) -> str:
        if not (item.get('item_name') or '').strip():
            raise StockValidationError("Item name is required")
        if not item.get('store_id'):
            raise StockValidationError("store_id is required")
        if float(item.get('current_stock') or 0) < 0:
            raise StockValidationError("Opening stock cannot be negative")
        record = dict(item)
        record['id'] = record.get('id') or new_id()
        record.setdefault('is_active', 1)
        record.setdefault('created_at', iso_now())
        return self._mutate(AddItem(record=record))

    def receive_batch(self, item_id: str, quantity: float, expiry_date: Optional[str] = None,
                      batch_number: Optional[str] = None, notes: Optional[str] = None,
                      batch_id: Optional[str] = None) -> str:
        if quantity is None or float(quantity) < 0:
            raise StockValidationError(f"Batch quantity cannot be negative, got {quantity!r}")
        item = self._require_item(item_id)
        if item.get('parent_item_id'):
            raise StockValidationError(
                f"{item_id} is a breakout unit; receive stock on its bulk parent {item['parent_item_id']}"
            )
        return self._mutate(AddBatch(
            batch_id=batch_id or new_id(),
            item_id=item_id,
            quantity=float(quantity),
            store_id=item.get('store_id'),
            expiry_date=expiry_date,
            batch_number=batch_number,
            notes=notes,
            created_at=iso_now(),
        ))

    def create_breakout_unit_item(self, parent_item_id: str, conversion: ConversionInfo,
                                  bulk_batch_id: Optional[str] = None) -> str:
        conversion.validate()
        parent = self._require_item(parent_item_id)
        if parent.get('parent_item_id'):
            raise StockValidationError(f"{parent_item_id} is already a breakout unit")
        return self._mutate(CreateBreakoutItem(
            parent_item_id=parent_item_id,
            breakout_item_id=new_id(),
            breakout_unit_name=conversion.breakout_unit_name.strip(),
            conversion_rate=float(conversion.conversion_rate),
            bulk_unit_name=conversion.bulk_unit_name,
            bulk_batch_id=bulk_batch_id,
        ))

    def deduct_breakout_units(self, item_id: str, quantity_sold: float,
                              batch_id: Optional[str] = None) -> bool:
        if quantity_sold is None or quantity_sold <= 0:
            return False
        item = self.get_item(item_id)
        if item is None or not item.get('parent_item_id'):
            return False
        try:
            return bool(self._mutate(DeductBreakout(item_id=item_id, quantity=float(quantity_sold),
                                                    batch_id=batch_id)))
        except DeductionRefused as exc:
            logger.warning("Breakout deduction refused, nothing applied or queued: %s", exc)
            return False

    def dispose_batch(self, batch_id: str, reason: str = '') -> float:
        batch = self.lookup(BATCHES, batch_id)
        if batch is None:
            raise RecordNotFound(BATCHES, batch_id)
        result = self._mutate(DisposeBatch(batch_id=batch_id, reason=reason))
        self.log_action('BATCH_DISPOSED', f"Batch {batch.get('batch_number') or batch_id} written off: {reason}",
                        batch.get('store_id'))
        return result

    def calculate_audit_variance(self, parent_item_id: str, physical_bulk_stock: float) -> AuditVarianceReport:
        return self._read(lambda b: self.engine(b).calculate_audit_variance(parent_item_id, physical_bulk_stock))

    # ---------- people & money ----------
    def create_customer(self, customer: Record) -> str:
        if not (customer.get('name') or '').strip():
            raise StockValidationError("Customer name is required")
        record = dict(customer, id=customer.get('id') or new_id())
        record.setdefault('is_active', 1)
        return self._mutate(CreateCustomer(record=record))

    def update_customer(self, customer_id: str, updates: Record) -> bool:
        updates = {k: v for k, v in updates.items() if k not in ('id', 'store_id', 'created_at')}
        if not updates:
            return False
        return self._mutate(UpdateCustomer(customer_id=customer_id, updates=updates))

    def create_supplier(self, supplier: Record) -> str:
        if not (supplier.get('name') or '').strip():
            raise StockValidationError("Supplier name is required")
        record = dict(supplier, id=supplier.get('id') or new_id())
        record.setdefault('is_active', 1)
        return self._mutate(CreateSupplier(record=record))

    def create_supplier_invoice(self, invoice: Record) -> str:
        if float(invoice.get('amount') or 0) < 0:
            raise StockValidationError("Invoice amount cannot be negative")
        record = dict(invoice, id=invoice.get('id') or new_id())
        record.setdefault('status', 'UNPAID')
        return self._mutate(CreateInvoice(record=record))

    def pay_supplier_invoice(self, invoice_id: str) -> bool:
        return self._mutate(PayInvoice(invoice_id=invoice_id, paid_at=iso_now()))

    def add_agent(self, store_id: str, name: str, phone: Optional[str] = None) -> str:
        name = (name or '').strip()
        if not name:
            raise StockValidationError("Staff name is required")
        return self._mutate(AddAgent(record={
            'id': agent_id_for(store_id, name),
            'store_id': store_id,
            'name': name,
            'phone': phone,
            'total_points': 0,
            'total_sales_value': 0,
            'is_active': 1,
            'last_active': iso_now(),
        }))

    def delete_agent(self, agent_id: str) -> bool:
        return self._mutate(DeleteAgent(agent_id=agent_id))

    def record_expense(self, expense: Record) -> str:
        _positive(expense.get('amount'), 'Expense amount')
        record = dict(expense, id=expense.get('id') or new_id())
        record.setdefault('created_at', iso_now())
        return self._mutate(AddExpense(record=record))

    # ---------- reads ----------
    def fetch_inventory(self, store_id: str) -> List[Record]:
        return self._read(lambda b: b.query(ITEMS, {'store_id': store_id}, order=[('created_at', 'desc')]))

    def fetch_batches(self, item_id: str, as_of: Optional[str] = None) -> List[Record]:
        return self._read(lambda b: self.engine(b).active_batches(item_id, as_of))

    def get_breakout_items(self, parent_item_id: str) -> List[Record]:
        return self._read(lambda b: self.engine(b).get_breakout_items(parent_item_id))

    def fetch_recent_sales(self, store_id: str, limit: int = 100) -> List[Record]:
        return self._read(lambda b: b.query(SALES, {'store_id': store_id},
                                            order=[('created_at', 'desc')], limit=limit))

    def fetch_debtors(self, store_id: str) -> List[Record]:
        return self._read(lambda b: b.query(SALES, {
            'store_id': store_id,
            'payment_mode': PAYMENT_CREDIT,
            'payment_status': list(DEBT_OPEN_STATUSES),
            'is_voided': 0,
        }, order=[('created_at', 'desc')]))

    def fetch_customers(self, store_id: str) -> List[Record]:
        return self._read(lambda b: b.query('customers', {'store_id': store_id}, order=[('created_at', 'desc')]))

    def fetch_suppliers(self, store_id: str) -> List[Record]:
        return self._read(lambda b: b.query('suppliers', {'store_id': store_id}, order=[('created_at', 'desc')]))

    def fetch_agents(self, store_id: str) -> List[Record]:
        return self._read(lambda b: b.query(AGENTS, {'store_id': store_id, 'is_active': 1},
                                            order=[('total_points', 'desc')]))

    def low_stock_items(self, store_id: str) -> List[Record]:
        items = self.fetch_inventory(store_id)
        return [i for i in items
                if i.get('is_active', 1) and float(i.get('current_stock') or 0) <= float(i.get('low_stock_threshold') or 0)]

    def fetch_audit_logs(self, store_id: str, limit: int = 100) -> List[Record]:
        return self.local.query('audit_logs', {'store_id': store_id}, order=[('timestamp', 'desc')], limit=limit)

    # ---------- sync ----------
    def _replay(self, entry: QueueEntry):
        action = entry.action()
        result = self._run(self.remote, action)
        if result is False:
            logger.info("Replayed %s %s made no change at the remote store",
                        action.kind.value, entry.entry_id)
        return result

    def process_sync_queue(self) -> DrainResult:
        """Replay queued mutations against the remote store, oldest first."""
        if not self.remote_available():
            logger.info("Remote store unreachable; %d entries stay queued", self.queue.count())
            return DrainResult()
        return self.queue.drain(self._replay)

    def get_sync_queue_count(self) -> int:
        return self.queue.count()

    def prune_ledger(self, older_than_days: Optional[float] = None) -> Dict[str, Optional[int]]:
        """Drop ledger rows older than the retention window on both replicas.

        The cutoff never passes the oldest write this terminal still has
        queued or parked in ``sync_failures``, so those keep their protection
        against double application at the remote. ``remote`` is None when the
        remote store was not pruned.
        """
        days = settings.LEDGER_RETENTION_DAYS if older_than_days is None else older_than_days
        cutoff = iso_days_ago(days)
        oldest = self.queue.oldest_pending_utc()
        if oldest and oldest < cutoff:
            cutoff = oldest
        pruned: Dict[str, Optional[int]] = {'local': self.local.prune_ledger(cutoff), 'remote': None}
        if self.remote_available():
            try:
                pruned['remote'] = self.remote.prune_ledger(cutoff)
            except RemoteStoreError as exc:
                logger.warning("Remote ledger prune failed, will retry next run: %s", exc)
        logger.info("Pruned ledger rows applied before %s: %s", cutoff, pruned)
        return pruned

    def sync_failures(self, limit: int = 100) -> List[Dict[str, Any]]:
        return self.queue.failures(limit)


def open_gateway(db_path: Optional[str] = None) -> PersistenceGateway:
    """Gateway over the configured local cache and, when REMOTE_BASE_URL is set, the remote store."""
    remote = build_remote()
    return PersistenceGateway(
        SqliteBackend.open(db_path),
        remote=remote,
        is_online=HttpProbe(remote) if remote is not None else None,
    )
