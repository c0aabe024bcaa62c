"""Typed mutations that travel through the write queue.

Every mutation the gateway performs is one of the dataclasses below. Each
carries a client-generated ``mutation_id`` (the idempotency key checked at the
store on replay) and, for creates, the client-generated record id.
"""
import uuid
from dataclasses import asdict, dataclass, field, fields
from enum import Enum
from typing import Any, ClassVar, Dict, Optional, Type

Record = Dict[str, Any]


def new_id() -> str:
    return uuid.uuid4().hex


class ActionKind(str, Enum):
    CREATE_SALE = 'CREATE_SALE'
    VOID_SALE = 'VOID_SALE'
    UPDATE_STOCK = 'UPDATE_STOCK'
    RECORD_ADJUSTMENT = 'RECORD_ADJUSTMENT'
    ADD_ITEM = 'ADD_ITEM'
    ADD_BATCH = 'ADD_BATCH'
    CREATE_BREAKOUT_ITEM = 'CREATE_BREAKOUT_ITEM'
    DEDUCT_BREAKOUT = 'DEDUCT_BREAKOUT'
    DISPOSE_BATCH = 'DISPOSE_BATCH'
    CREATE_SUPPLIER = 'CREATE_SUPPLIER'
    CREATE_CUSTOMER = 'CREATE_CUSTOMER'
    UPDATE_CUSTOMER = 'UPDATE_CUSTOMER'
    CREATE_INVOICE = 'CREATE_INVOICE'
    PAY_INVOICE = 'PAY_INVOICE'
    ADD_AGENT = 'ADD_AGENT'
    DELETE_AGENT = 'DELETE_AGENT'
    CLEAR_DEBT = 'CLEAR_DEBT'
    ADD_EXPENSE = 'ADD_EXPENSE'


@dataclass(frozen=True)
class SyncAction:
    kind: ClassVar[ActionKind]

    def to_payload(self) -> Record:
        return asdict(self)

    def record_id(self) -> Optional[str]:
        """Id of the record a create action produces (returned on a replayed no-op)."""
        return None


@dataclass(frozen=True)
class CreateSale(SyncAction):
    kind = ActionKind.CREATE_SALE
    sale_id: str
    store_id: str
    item_id: str
    quantity: float
    unit_price: float = 0.0
    total_amount: float = 0.0
    item_name: Optional[str] = None
    payment_mode: str = 'CASH'
    payment_status: str = 'PAID'
    customer_name: Optional[str] = None
    customer_phone: Optional[str] = None
    agent_name: Optional[str] = None
    batch_id: Optional[str] = None
    created_at: Optional[str] = None
    mutation_id: str = field(default_factory=new_id)

    def record_id(self) -> Optional[str]:
        return self.sale_id

    def record(self) -> Record:
        return {
            'id': self.sale_id,
            'store_id': self.store_id,
            'item_id': self.item_id,
            'item_name': self.item_name,
            'quantity': self.quantity,
            'unit_price': self.unit_price,
            'total_amount': self.total_amount,
            'payment_mode': self.payment_mode,
            'payment_status': self.payment_status,
            'customer_name': self.customer_name,
            'customer_phone': self.customer_phone,
            'agent_name': self.agent_name,
            'batch_id': self.batch_id,
            'is_voided': 0,
            'created_at': self.created_at,
        }


@dataclass(frozen=True)
class VoidSale(SyncAction):
    kind = ActionKind.VOID_SALE
    sale_id: str
    mutation_id: str = field(default_factory=new_id)


@dataclass(frozen=True)
class UpdateStock(SyncAction):
    kind = ActionKind.UPDATE_STOCK
    item_id: str
    new_stock: float
    mutation_id: str = field(default_factory=new_id)


@dataclass(frozen=True)
class RecordAdjustment(SyncAction):
    """Damage / loss / shrinkage write-down of ``quantity_adjusted`` units."""
    kind = ActionKind.RECORD_ADJUSTMENT
    adjustment_id: str
    store_id: str
    item_id: str
    adjustment_type: str
    quantity_adjusted: float
    reason: str = ''
    adjusted_by: Optional[str] = None
    created_at: Optional[str] = None
    mutation_id: str = field(default_factory=new_id)

    def record_id(self) -> Optional[str]:
        return self.adjustment_id


@dataclass(frozen=True)
class AddBatch(SyncAction):
    """Goods receipt of one expiry-dated lot."""
    kind = ActionKind.ADD_BATCH
    batch_id: str
    item_id: str
    quantity: float
    store_id: Optional[str] = None
    expiry_date: Optional[str] = None
    batch_number: Optional[str] = None
    notes: Optional[str] = None
    created_at: Optional[str] = None
    mutation_id: str = field(default_factory=new_id)

    def record_id(self) -> Optional[str]:
        return self.batch_id


@dataclass(frozen=True)
class CreateBreakoutItem(SyncAction):
    kind = ActionKind.CREATE_BREAKOUT_ITEM
    parent_item_id: str
    breakout_item_id: str
    breakout_unit_name: str
    conversion_rate: float
    bulk_unit_name: Optional[str] = None
    bulk_batch_id: Optional[str] = None
    mutation_id: str = field(default_factory=new_id)

    def record_id(self) -> Optional[str]:
        return self.breakout_item_id


@dataclass(frozen=True)
class DeductBreakout(SyncAction):
    kind = ActionKind.DEDUCT_BREAKOUT
    item_id: str
    quantity: float
    batch_id: Optional[str] = None
    mutation_id: str = field(default_factory=new_id)


@dataclass(frozen=True)
class DisposeBatch(SyncAction):
    kind = ActionKind.DISPOSE_BATCH
    batch_id: str
    reason: str = ''
    mutation_id: str = field(default_factory=new_id)


@dataclass(frozen=True)
class CreateRecord(SyncAction):
    """Plain insert of a client-keyed record into ``collection``."""
    collection: ClassVar[str]
    record: Record
    mutation_id: str = field(default_factory=new_id)

    def record_id(self) -> Optional[str]:
        return self.record.get('id')


@dataclass(frozen=True)
class AddItem(CreateRecord):
    kind = ActionKind.ADD_ITEM
    collection = 'inventory_items'


@dataclass(frozen=True)
class CreateSupplier(CreateRecord):
    kind = ActionKind.CREATE_SUPPLIER
    collection = 'suppliers'


@dataclass(frozen=True)
class CreateCustomer(CreateRecord):
    kind = ActionKind.CREATE_CUSTOMER
    collection = 'customers'


@dataclass(frozen=True)
class CreateInvoice(CreateRecord):
    kind = ActionKind.CREATE_INVOICE
    collection = 'supplier_invoices'


@dataclass(frozen=True)
class AddAgent(CreateRecord):
    kind = ActionKind.ADD_AGENT
    collection = 'agents'


@dataclass(frozen=True)
class AddExpense(CreateRecord):
    kind = ActionKind.ADD_EXPENSE
    collection = 'expenses'


@dataclass(frozen=True)
class UpdateCustomer(SyncAction):
    kind = ActionKind.UPDATE_CUSTOMER
    customer_id: str
    updates: Record
    mutation_id: str = field(default_factory=new_id)


@dataclass(frozen=True)
class PayInvoice(SyncAction):
    kind = ActionKind.PAY_INVOICE
    invoice_id: str
    paid_at: Optional[str] = None
    mutation_id: str = field(default_factory=new_id)


@dataclass(frozen=True)
class DeleteAgent(SyncAction):
    kind = ActionKind.DELETE_AGENT
    agent_id: str
    mutation_id: str = field(default_factory=new_id)


@dataclass(frozen=True)
class ClearDebt(SyncAction):
    kind = ActionKind.CLEAR_DEBT
    sale_id: str
    mutation_id: str = field(default_factory=new_id)


ACTION_TYPES: Dict[ActionKind, Type[SyncAction]] = {
    cls.kind: cls for cls in (
        CreateSale, VoidSale, UpdateStock, RecordAdjustment, AddItem, AddBatch,
        CreateBreakoutItem, DeductBreakout, DisposeBatch, CreateSupplier,
        CreateCustomer, UpdateCustomer, CreateInvoice, PayInvoice, AddAgent,
        DeleteAgent, ClearDebt, AddExpense,
    )
}

missing = set(ActionKind) - set(ACTION_TYPES)
if missing:
    raise RuntimeError(f"No action type for {sorted(k.value for k in missing)}")
del missing


def decode_action(kind: str, payload: Record) -> SyncAction:
    """Rebuild a queued action; raises ValueError for unknown kinds or payload shapes."""
    try:
        action_cls = ACTION_TYPES[ActionKind(kind)]
    except ValueError:
        raise ValueError(f"Unknown sync action: {kind}") from None
    if not isinstance(payload, dict):
        raise ValueError(f"{kind} payload must be an object")
    known = {f.name for f in fields(action_cls)}
    unexpected = set(payload) - known
    if unexpected:
        raise ValueError(f"{kind} payload has unexpected keys: {sorted(unexpected)}")
    try:
        return action_cls(**payload)
    except TypeError as exc:
        raise ValueError(f"{kind} payload invalid: {exc}") from exc
