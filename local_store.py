#!/usr/bin/env python3
# Local cache: SQLite replica of the inventory collections + the sync queue tables
import datetime as dt
import json
import sqlite3
import threading
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional, Set

import settings
from backends import Backend, Order, Record, check_collection

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS inventory_items (
  id                   TEXT PRIMARY KEY,
  store_id             TEXT NOT NULL,
  item_name            TEXT NOT NULL,
  unit_price           NUMERIC NOT NULL DEFAULT 0,
  buying_price         NUMERIC NOT NULL DEFAULT 0,
  current_stock        NUMERIC NOT NULL DEFAULT 0,
  low_stock_threshold  NUMERIC NOT NULL DEFAULT 0,
  reorder_level        NUMERIC,
  sku                  TEXT,
  barcode              TEXT,
  category             TEXT,
  description          TEXT,
  parent_item_id       TEXT,
  bulk_unit_name       TEXT,
  breakout_unit_name   TEXT,
  conversion_rate      NUMERIC,
  is_bulk_parent       INTEGER NOT NULL DEFAULT 0,
  is_active            INTEGER NOT NULL DEFAULT 1,
  created_at           TEXT,
  updated_at           TEXT
);
CREATE INDEX IF NOT EXISTS idx_items_store ON inventory_items(store_id);
CREATE INDEX IF NOT EXISTS idx_items_parent ON inventory_items(parent_item_id);

CREATE TABLE IF NOT EXISTS inventory_batches (
  id                 TEXT PRIMARY KEY,
  store_id           TEXT,
  inventory_item_id  TEXT NOT NULL,
  batch_number       TEXT,
  expiry_date        TEXT,
  current_stock      NUMERIC NOT NULL DEFAULT 0,
  status             TEXT NOT NULL DEFAULT 'ACTIVE',
  notes              TEXT,
  parent_batch_id    TEXT,
  created_at         TEXT,
  updated_at         TEXT
);
CREATE INDEX IF NOT EXISTS idx_batches_item ON inventory_batches(inventory_item_id, status, expiry_date);

CREATE TABLE IF NOT EXISTS sales_records (
  id                 TEXT PRIMARY KEY,
  store_id           TEXT NOT NULL,
  item_id            TEXT NOT NULL,
  item_name          TEXT,
  quantity           NUMERIC NOT NULL,
  unit_price         NUMERIC NOT NULL DEFAULT 0,
  total_amount       NUMERIC NOT NULL DEFAULT 0,
  payment_mode       TEXT NOT NULL DEFAULT 'CASH',
  payment_status     TEXT NOT NULL DEFAULT 'PAID',
  customer_name      TEXT,
  customer_phone     TEXT,
  agent_name         TEXT,
  batch_id           TEXT,
  batch_allocations  TEXT,
  is_voided          INTEGER NOT NULL DEFAULT 0,
  created_at         TEXT
);
CREATE INDEX IF NOT EXISTS idx_sales_store ON sales_records(store_id, created_at);

CREATE TABLE IF NOT EXISTS agents (
  id                 TEXT PRIMARY KEY,
  store_id           TEXT NOT NULL,
  name               TEXT NOT NULL,
  total_points       NUMERIC NOT NULL DEFAULT 0,
  total_sales_value  NUMERIC NOT NULL DEFAULT 0,
  is_active          INTEGER NOT NULL DEFAULT 1,
  last_active        TEXT
);

CREATE TABLE IF NOT EXISTS customers (
  id            TEXT PRIMARY KEY,
  store_id      TEXT NOT NULL,
  name          TEXT NOT NULL,
  phone         TEXT,
  email         TEXT,
  credit_limit  NUMERIC,
  is_active     INTEGER NOT NULL DEFAULT 1,
  created_at    TEXT,
  updated_at    TEXT
);

CREATE TABLE IF NOT EXISTS suppliers (
  id            TEXT PRIMARY KEY,
  store_id      TEXT NOT NULL,
  name          TEXT NOT NULL,
  phone         TEXT,
  email         TEXT,
  is_active     INTEGER NOT NULL DEFAULT 1,
  created_at    TEXT
);

CREATE TABLE IF NOT EXISTS supplier_invoices (
  id              TEXT PRIMARY KEY,
  store_id        TEXT NOT NULL,
  supplier_id     TEXT,
  invoice_number  TEXT,
  amount          NUMERIC NOT NULL DEFAULT 0,
  status          TEXT NOT NULL DEFAULT 'UNPAID',
  due_date        TEXT,
  payment_date    TEXT,
  created_at      TEXT
);

CREATE TABLE IF NOT EXISTS expenses (
  id           TEXT PRIMARY KEY,
  store_id     TEXT NOT NULL,
  category     TEXT,
  amount       NUMERIC NOT NULL DEFAULT 0,
  description  TEXT,
  created_at   TEXT
);

CREATE TABLE IF NOT EXISTS stock_adjustments (
  id                 TEXT PRIMARY KEY,
  store_id           TEXT NOT NULL,
  item_id            TEXT NOT NULL,
  adjustment_type    TEXT NOT NULL,
  quantity_adjusted  NUMERIC NOT NULL,
  reason             TEXT,
  adjusted_by        TEXT,
  created_at         TEXT
);

CREATE TABLE IF NOT EXISTS applied_mutations (
  id          TEXT PRIMARY KEY,
  action      TEXT NOT NULL,
  applied_at  TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS audit_logs (
  id            TEXT PRIMARY KEY,
  store_id      TEXT,
  action_type   TEXT NOT NULL,
  description   TEXT,
  performed_by  TEXT,
  timestamp     TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS store_settings (
  id                        TEXT PRIMARY KEY,
  audit_critical_threshold  NUMERIC
);

CREATE TABLE IF NOT EXISTS sync_queue (
  seq          INTEGER PRIMARY KEY AUTOINCREMENT,
  entry_id     TEXT NOT NULL UNIQUE,
  action       TEXT NOT NULL,
  payload_json TEXT NOT NULL,
  created_utc  TEXT NOT NULL,
  retries      INTEGER NOT NULL DEFAULT 0,
  last_error   TEXT
);

CREATE TABLE IF NOT EXISTS sync_failures (
  id           INTEGER PRIMARY KEY AUTOINCREMENT,
  entry_id     TEXT NOT NULL,
  action       TEXT NOT NULL,
  payload_json TEXT NOT NULL,
  created_utc  TEXT NOT NULL,
  failed_utc   TEXT NOT NULL,
  retries      INTEGER NOT NULL,
  last_error   TEXT
);
"""

JSON_COLUMNS = {'batch_allocations'}


def iso_now() -> str:
    return dt.datetime.now(dt.timezone.utc).replace(microsecond=0, tzinfo=None).isoformat() + "Z"


def iso_days_ago(days: float) -> str:
    then = dt.datetime.now(dt.timezone.utc) - dt.timedelta(days=days)
    return then.replace(microsecond=0, tzinfo=None).isoformat() + "Z"


def connect(db_path: Optional[str] = None) -> sqlite3.Connection:
    # isolation_level=None: every statement autocommits unless a transaction() is open
    conn = sqlite3.connect(db_path or settings.INVENTORY_DB_PATH, timeout=30,
                           check_same_thread=False, isolation_level=None)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL;")
    conn.execute("PRAGMA synchronous=FULL;")
    conn.execute("PRAGMA foreign_keys=ON;")
    init_db(conn)
    return conn


def init_db(conn: sqlite3.Connection):
    conn.executescript(SCHEMA_SQL)


class SqliteBackend(Backend):
    """SQLite implementation of ``Backend``; the terminal's local cache."""

    def __init__(self, conn: sqlite3.Connection, name: str = 'local'):
        self.conn = conn
        self.name = name
        self.lock = threading.RLock()
        self._depth = 0
        self._columns: Dict[str, Set[str]] = {}

    @classmethod
    def open(cls, db_path: Optional[str] = None, name: str = 'local') -> 'SqliteBackend':
        return cls(connect(db_path), name=name)

    def close(self):
        with self.lock:
            self.conn.close()

    def _table_columns(self, collection: str) -> Set[str]:
        check_collection(collection)
        cols = self._columns.get(collection)
        if cols is None:
            rows = self.conn.execute(f"PRAGMA table_info({collection})").fetchall()
            cols = {row["name"] for row in rows}
            self._columns[collection] = cols
        return cols

    def _encode(self, collection: str, record: Record) -> Dict[str, Any]:
        cols = self._table_columns(collection)
        data: Dict[str, Any] = {}
        for key, value in record.items():
            if key not in cols:
                continue
            if key in JSON_COLUMNS and value is not None and not isinstance(value, str):
                value = json.dumps(value, separators=(",", ":"))
            elif isinstance(value, bool):
                value = 1 if value else 0
            data[key] = value
        return data

    @staticmethod
    def _decode(row: sqlite3.Row) -> Record:
        out = dict(row)
        for key in JSON_COLUMNS:
            raw = out.get(key)
            if isinstance(raw, str) and raw:
                out[key] = json.loads(raw)
        return out

    @contextmanager
    def transaction(self) -> Iterator['SqliteBackend']:
        with self.lock:
            depth = self._depth
            if depth == 0:
                self.conn.execute("BEGIN IMMEDIATE")
            else:
                self.conn.execute(f"SAVEPOINT sp_{depth}")
            self._depth += 1
            try:
                yield self
            except BaseException:
                self._depth -= 1
                if depth == 0:
                    self.conn.execute("ROLLBACK")
                else:
                    self.conn.execute(f"ROLLBACK TO sp_{depth}")
                    self.conn.execute(f"RELEASE sp_{depth}")
                raise
            self._depth -= 1
            if depth == 0:
                self.conn.execute("COMMIT")
            else:
                self.conn.execute(f"RELEASE sp_{depth}")

    def insert_if_absent(self, collection: str, record: Record) -> bool:
        if not record.get('id'):
            raise ValueError(f"{collection} record needs a client-generated id")
        data = self._encode(collection, record)
        cols = self._table_columns(collection)
        now = iso_now()
        for stamp in ('created_at', 'updated_at'):
            if stamp in cols and not data.get(stamp):
                data[stamp] = now
        names = ", ".join(data)
        placeholders = ", ".join(f":{k}" for k in data)
        sql = f"INSERT INTO {collection} ({names}) VALUES ({placeholders}) ON CONFLICT(id) DO NOTHING"
        with self.lock:
            cur = self.conn.execute(sql, data)
        return cur.rowcount == 1

    def update(self, collection: str, record_id: str, fields: Record,
               match: Optional[Record] = None) -> bool:
        data = self._encode(collection, fields)
        data.pop('id', None)
        if not data:
            return False
        if 'updated_at' in self._table_columns(collection) and 'updated_at' not in data:
            data['updated_at'] = iso_now()
        params: Dict[str, Any] = {f"set_{k}": v for k, v in data.items()}
        params["_id"] = record_id
        sets = ", ".join(f"{k}=:set_{k}" for k in data)
        where = ["id=:_id"]
        for key, value in self._encode(collection, match or {}).items():
            if value is None:
                where.append(f"{key} IS NULL")
            else:
                where.append(f"{key}=:match_{key}")
                params[f"match_{key}"] = value
        sql = f"UPDATE {collection} SET {sets} WHERE {' AND '.join(where)}"
        with self.lock:
            cur = self.conn.execute(sql, params)
        return cur.rowcount == 1

    def adjust(self, collection: str, record_id: str, field: str, delta: float,
               clamp_at_zero: bool = False) -> bool:
        if field not in self._table_columns(collection):
            raise ValueError(f"Unknown column {collection}.{field}")
        if clamp_at_zero:
            sql = f"UPDATE {collection} SET {field} = MAX(0, COALESCE({field}, 0) + ?) WHERE id = ?"
            params: tuple = (delta, record_id)
        else:
            sql = (f"UPDATE {collection} SET {field} = COALESCE({field}, 0) + ? "
                   f"WHERE id = ? AND COALESCE({field}, 0) + ? >= 0")
            params = (delta, record_id, delta)
        with self.lock:
            cur = self.conn.execute(sql, params)
        return cur.rowcount == 1

    def prune_ledger(self, before: str) -> int:
        with self.lock:
            cur = self.conn.execute("DELETE FROM applied_mutations WHERE applied_at < ?", (before,))
        return cur.rowcount

    def query(self, collection: str, filters: Optional[Record] = None,
              order: Optional[Order] = None, limit: Optional[int] = None) -> List[Record]:
        cols = self._table_columns(collection)
        where: List[str] = []
        params: List[Any] = []
        for key, value in (filters or {}).items():
            if key not in cols:
                raise ValueError(f"Unknown column {collection}.{key}")
            if value is None:
                where.append(f"{key} IS NULL")
            elif isinstance(value, (list, tuple, set)):
                values = list(value)
                if not values:
                    return []
                where.append(f"{key} IN ({', '.join('?' * len(values))})")
                params.extend(values)
            else:
                where.append(f"{key} = ?")
                params.append(1 if value is True else 0 if value is False else value)
        sql = f"SELECT * FROM {collection}"
        if where:
            sql += " WHERE " + " AND ".join(where)
        if order:
            parts = []
            for column, direction in order:
                direction = (direction or 'asc').lower()
                if column not in cols or direction not in ('asc', 'desc'):
                    raise ValueError(f"Invalid order {column} {direction}")
                parts.append(f"{column} {direction.upper()}")
            sql += " ORDER BY " + ", ".join(parts)
        if limit:
            sql += f" LIMIT {int(limit)}"
        with self.lock:
            rows = self.conn.execute(sql, params).fetchall()
        return [self._decode(r) for r in rows]
