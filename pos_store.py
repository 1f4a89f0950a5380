#!/usr/bin/env python3
# POS local store: SQLite tables for catalog, parties, sales, drafts and sync status
import argparse
import logging
import sqlite3
import uuid
from contextlib import contextmanager
from typing import Any, Dict, Iterable, Iterator, List, Optional, Tuple

from pos_models import (
    Client, Draft, NamedRef, Payment, Product, Sale, SaleLine, SyncStatus, Warehouse, now_ms,
)

logger = logging.getLogger(__name__)

# Bump when the table layout changes; older local caches are dropped and recreated.
SCHEMA_VERSION = 3

JOB_PRODUCTS = "products"
JOB_SALES = "sales"
JOB_DRAFTS = "drafts"

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS products (
  id                 INTEGER PRIMARY KEY,
  product_variant_id INTEGER,
  code               TEXT NOT NULL DEFAULT '',
  name               TEXT NOT NULL DEFAULT '',
  barcode            TEXT,
  image              TEXT,
  qte                REAL NOT NULL DEFAULT 0,
  qte_sale           REAL NOT NULL DEFAULT 0 CHECK (qte_sale >= 0),
  unit_sale          TEXT NOT NULL DEFAULT '',
  product_type       TEXT NOT NULL DEFAULT 'single',
  price              REAL NOT NULL DEFAULT 0,
  cost_price         REAL,
  category_id        INTEGER,
  brand_id           INTEGER,
  updated_at         INTEGER NOT NULL,
  synced             INTEGER NOT NULL DEFAULT 1
);
CREATE INDEX IF NOT EXISTS idx_products_code ON products(code);
CREATE INDEX IF NOT EXISTS idx_products_barcode ON products(barcode);
CREATE INDEX IF NOT EXISTS idx_products_category ON products(category_id);
CREATE INDEX IF NOT EXISTS idx_products_brand ON products(brand_id);

CREATE TABLE IF NOT EXISTS clients (
  id          INTEGER PRIMARY KEY,
  name        TEXT NOT NULL,
  phone       TEXT,
  email       TEXT,
  address     TEXT,
  country     TEXT,
  city        TEXT,
  tax_number  TEXT,
  is_default  INTEGER NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS warehouses (
  id          INTEGER PRIMARY KEY,
  name        TEXT NOT NULL,
  is_default  INTEGER NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS payment_methods (
  id          INTEGER PRIMARY KEY,
  name        TEXT NOT NULL,
  is_default  INTEGER NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS categories (
  id    INTEGER PRIMARY KEY,
  name  TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS brands (
  id    INTEGER PRIMARY KEY,
  name  TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS sales (
  local_id      INTEGER PRIMARY KEY AUTOINCREMENT,
  receipt_id    TEXT NOT NULL UNIQUE,
  server_id     INTEGER,
  client_id     INTEGER NOT NULL,
  warehouse_id  INTEGER NOT NULL,
  tax_rate      REAL NOT NULL DEFAULT 0,
  tax_net       REAL NOT NULL DEFAULT 0,
  discount      REAL NOT NULL DEFAULT 0,
  shipping      REAL NOT NULL DEFAULT 0,
  grand_total   REAL NOT NULL,
  notes         TEXT,
  po_number     TEXT,
  account_id    INTEGER,
  payment_note  TEXT,
  created_at    INTEGER NOT NULL,
  synced        INTEGER NOT NULL DEFAULT 0
);
CREATE INDEX IF NOT EXISTS idx_sales_synced ON sales(synced, local_id);

CREATE TABLE IF NOT EXISTS sale_lines (
  id                 INTEGER PRIMARY KEY AUTOINCREMENT,
  sale_local_id      INTEGER NOT NULL REFERENCES sales(local_id) ON DELETE CASCADE,
  product_id         INTEGER NOT NULL,
  product_variant_id INTEGER,
  sale_unit_id       INTEGER,
  quantity           REAL NOT NULL,
  unit_price         REAL NOT NULL,
  subtotal           REAL NOT NULL,
  tax_percent        REAL NOT NULL DEFAULT 0,
  tax_method         TEXT NOT NULL DEFAULT '1',
  discount           REAL NOT NULL DEFAULT 0,
  discount_method    TEXT NOT NULL DEFAULT '2',
  imei_number        TEXT,
  product_name       TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_sale_lines_sale ON sale_lines(sale_local_id);

CREATE TABLE IF NOT EXISTS payments (
  id                 INTEGER PRIMARY KEY AUTOINCREMENT,
  sale_local_id      INTEGER NOT NULL REFERENCES sales(local_id) ON DELETE CASCADE,
  payment_method_id  INTEGER NOT NULL,
  amount             REAL NOT NULL,
  change_amount      REAL NOT NULL DEFAULT 0
);
CREATE INDEX IF NOT EXISTS idx_payments_sale ON payments(sale_local_id);

CREATE TABLE IF NOT EXISTS drafts (
  local_id      INTEGER PRIMARY KEY AUTOINCREMENT,
  receipt_id    TEXT NOT NULL UNIQUE,
  server_id     INTEGER,
  client_id     INTEGER NOT NULL,
  warehouse_id  INTEGER NOT NULL,
  tax_rate      REAL NOT NULL DEFAULT 0,
  tax_net       REAL NOT NULL DEFAULT 0,
  discount      REAL NOT NULL DEFAULT 0,
  shipping      REAL NOT NULL DEFAULT 0,
  grand_total   REAL NOT NULL,
  notes         TEXT,
  created_at    INTEGER NOT NULL,
  updated_at    INTEGER NOT NULL,
  synced        INTEGER NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS draft_lines (
  id                 INTEGER PRIMARY KEY AUTOINCREMENT,
  draft_local_id     INTEGER NOT NULL REFERENCES drafts(local_id) ON DELETE CASCADE,
  product_id         INTEGER NOT NULL,
  product_variant_id INTEGER,
  sale_unit_id       INTEGER,
  quantity           REAL NOT NULL,
  unit_price         REAL NOT NULL,
  subtotal           REAL NOT NULL,
  tax_percent        REAL NOT NULL DEFAULT 0,
  tax_method         TEXT NOT NULL DEFAULT '1',
  discount           REAL NOT NULL DEFAULT 0,
  discount_method    TEXT NOT NULL DEFAULT '2',
  imei_number        TEXT,
  product_name       TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_draft_lines_draft ON draft_lines(draft_local_id);

-- Upload bookkeeping lives apart from the sale rows so a failed attempt never touches them.
CREATE TABLE IF NOT EXISTS upload_attempts (
  kind             TEXT NOT NULL,
  ref_id           INTEGER NOT NULL,
  attempts         INTEGER NOT NULL DEFAULT 0,
  last_error       TEXT,
  last_attempt_at  INTEGER,
  PRIMARY KEY (kind, ref_id)
);

CREATE TABLE IF NOT EXISTS sync_status (
  id                        INTEGER PRIMARY KEY CHECK (id = 1),
  last_product_sync         INTEGER NOT NULL DEFAULT 0,
  last_sale_sync            INTEGER NOT NULL DEFAULT 0,
  last_draft_sync           INTEGER NOT NULL DEFAULT 0,
  product_sync_in_progress  INTEGER NOT NULL DEFAULT 0,
  sale_sync_in_progress     INTEGER NOT NULL DEFAULT 0
);
INSERT OR IGNORE INTO sync_status (id) VALUES (1);
"""

_ALL_TABLES = (
    "upload_attempts", "draft_lines", "drafts", "payments", "sale_lines", "sales",
    "brands", "categories", "payment_methods", "warehouses", "clients", "products", "sync_status",
)


def connect(db_path: str) -> sqlite3.Connection:
    conn = sqlite3.connect(db_path, timeout=30, isolation_level=None)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL;")
    conn.execute("PRAGMA synchronous=NORMAL;")
    conn.execute("PRAGMA foreign_keys=ON;")
    init_db(conn)
    return conn


def init_db(conn: sqlite3.Connection):
    version = conn.execute("PRAGMA user_version").fetchone()[0]
    if version == SCHEMA_VERSION:
        return
    with transaction(conn):
        version = conn.execute("PRAGMA user_version").fetchone()[0]
        if version == SCHEMA_VERSION:
            return
        if version:
            logger.warning("Local schema v%s != v%s; recreating local cache", version, SCHEMA_VERSION)
            for table in _ALL_TABLES:
                conn.execute(f"DROP TABLE IF EXISTS {table}")
        for statement in SCHEMA_SQL.split(";"):
            if statement.strip():
                conn.execute(statement)
        conn.execute(f"PRAGMA user_version = {SCHEMA_VERSION}")


# ---------- TRANSACTIONS ----------
def begin_txn(conn: sqlite3.Connection):
    conn.execute("BEGIN IMMEDIATE")


def commit_txn(conn: sqlite3.Connection):
    conn.execute("COMMIT")


def rollback_txn(conn: sqlite3.Connection):
    conn.execute("ROLLBACK")


@contextmanager
def transaction(conn: sqlite3.Connection) -> Iterator[sqlite3.Connection]:
    """One write transaction: everything inside commits together or not at all."""
    begin_txn(conn)
    try:
        yield conn
    except BaseException:
        rollback_txn(conn)
        raise
    commit_txn(conn)


# ---------- PRODUCTS ----------
_PRODUCT_COLUMNS = (
    "id", "product_variant_id", "code", "name", "barcode", "image", "qte", "qte_sale", "unit_sale",
    "product_type", "price", "cost_price", "category_id", "brand_id", "updated_at", "synced",
)


def _product_params(p: Product) -> Tuple[Any, ...]:
    return (
        p.id, p.product_variant_id, p.code, p.name, p.barcode, p.image, p.qte_on_hand,
        max(0.0, p.qte_available_for_sale), p.unit_of_sale, p.type, p.price, p.cost_price,
        p.category_id, p.brand_id, p.updated_at or now_ms(), 1 if p.synced else 0,
    )


def _row_to_product(row: sqlite3.Row) -> Product:
    return Product(
        id=row["id"],
        product_variant_id=row["product_variant_id"],
        code=row["code"],
        name=row["name"],
        barcode=row["barcode"],
        image=row["image"],
        qte_on_hand=row["qte"],
        qte_available_for_sale=row["qte_sale"],
        unit_of_sale=row["unit_sale"],
        type=row["product_type"],
        price=row["price"],
        cost_price=row["cost_price"],
        category_id=row["category_id"],
        brand_id=row["brand_id"],
        updated_at=row["updated_at"],
        synced=bool(row["synced"]),
    )


def upsert_products(conn: sqlite3.Connection, products: Iterable[Product]) -> int:
    """Replace products by id (last writer wins). The whole batch lands in one transaction."""
    rows = [_product_params(p) for p in products]
    if not rows:
        return 0
    placeholders = ",".join("?" for _ in _PRODUCT_COLUMNS)
    sql = f"INSERT OR REPLACE INTO products ({','.join(_PRODUCT_COLUMNS)}) VALUES ({placeholders})"
    with transaction(conn):
        conn.executemany(sql, rows)
    return len(rows)


def get_product(conn: sqlite3.Connection, product_id: int) -> Optional[Product]:
    row = conn.execute("SELECT * FROM products WHERE id=?", (product_id,)).fetchone()
    return _row_to_product(row) if row else None


def get_product_by_code(conn: sqlite3.Connection, code: str) -> Optional[Product]:
    """Match a scanned value against product code first, then barcode."""
    code = (code or "").strip()
    if not code:
        return None
    row = conn.execute("""
        SELECT * FROM products WHERE code=? OR barcode=?
        ORDER BY CASE WHEN code=? THEN 0 ELSE 1 END, id LIMIT 1
    """, (code, code, code)).fetchone()
    return _row_to_product(row) if row else None


def _product_query(conn: sqlite3.Connection, where: str = "", params: Tuple[Any, ...] = ()) -> List[Product]:
    sql = "SELECT * FROM products"
    if where:
        sql += " WHERE " + where
    sql += " ORDER BY name COLLATE NOCASE, id"
    return [_row_to_product(r) for r in conn.execute(sql, params).fetchall()]


def search_products(conn: sqlite3.Connection, query: str) -> List[Product]:
    like = f"%{(query or '').strip()}%"
    return _product_query(conn, "name LIKE ? OR code LIKE ? OR barcode LIKE ?", (like, like, like))


def products_by_category(conn: sqlite3.Connection, category_id: int) -> List[Product]:
    return _product_query(conn, "category_id=?", (category_id,))


def products_by_brand(conn: sqlite3.Connection, brand_id: int) -> List[Product]:
    return _product_query(conn, "brand_id=?", (brand_id,))


def in_stock_products(conn: sqlite3.Connection) -> List[Product]:
    return _product_query(conn, "qte_sale > 0")


def filter_products(
    conn: sqlite3.Connection,
    query: Optional[str] = None,
    category_id: Optional[int] = None,
    brand_id: Optional[int] = None,
    in_stock: bool = False,
) -> List[Product]:
    clauses: List[str] = []
    params: List[Any] = []
    if query:
        like = f"%{query.strip()}%"
        clauses.append("(name LIKE ? OR code LIKE ? OR barcode LIKE ?)")
        params.extend([like, like, like])
    if category_id:
        clauses.append("category_id=?")
        params.append(category_id)
    if brand_id:
        clauses.append("brand_id=?")
        params.append(brand_id)
    if in_stock:
        clauses.append("qte_sale > 0")
    return _product_query(conn, " AND ".join(clauses), tuple(params))


def product_count(conn: sqlite3.Connection) -> int:
    return conn.execute("SELECT COUNT(*) FROM products").fetchone()[0]


# ---------- CLIENTS / WAREHOUSES / LOOKUPS ----------
def upsert_clients(conn: sqlite3.Connection, clients: List[Client], default_id: Optional[int] = None) -> int:
    """Cache clients; when ``default_id`` is given it becomes the only default row."""
    with transaction(conn):
        if default_id:
            conn.execute("UPDATE clients SET is_default=0")
        for c in clients:
            is_default = 1 if (default_id and c.id == default_id) or (not default_id and c.is_default) else 0
            conn.execute("""
                INSERT INTO clients (id, name, phone, email, address, country, city, tax_number, is_default)
                VALUES (?,?,?,?,?,?,?,?,?)
                ON CONFLICT(id) DO UPDATE SET
                    name=excluded.name,
                    phone=COALESCE(excluded.phone, clients.phone),
                    email=COALESCE(excluded.email, clients.email),
                    address=COALESCE(excluded.address, clients.address),
                    country=COALESCE(excluded.country, clients.country),
                    city=COALESCE(excluded.city, clients.city),
                    tax_number=COALESCE(excluded.tax_number, clients.tax_number),
                    is_default=excluded.is_default
            """, (c.id, c.name, c.phone, c.email, c.address, c.country, c.city, c.tax_number, is_default))
    return len(clients)


def _row_to_client(row: sqlite3.Row) -> Client:
    return Client(
        id=row["id"], name=row["name"], phone=row["phone"], email=row["email"], address=row["address"],
        country=row["country"], city=row["city"], tax_number=row["tax_number"], is_default=bool(row["is_default"]),
    )


def list_clients(conn: sqlite3.Connection) -> List[Client]:
    rows = conn.execute("SELECT * FROM clients ORDER BY is_default DESC, name COLLATE NOCASE").fetchall()
    return [_row_to_client(r) for r in rows]


def get_default_client(conn: sqlite3.Connection) -> Optional[Client]:
    row = conn.execute("SELECT * FROM clients WHERE is_default=1 LIMIT 1").fetchone()
    return _row_to_client(row) if row else None


def upsert_warehouses(conn: sqlite3.Connection, warehouses: List[Warehouse], default_id: Optional[int] = None) -> int:
    with transaction(conn):
        if default_id:
            conn.execute("UPDATE warehouses SET is_default=0")
        for w in warehouses:
            is_default = 1 if (default_id and w.id == default_id) or (not default_id and w.is_default) else 0
            conn.execute("""
                INSERT INTO warehouses (id, name, is_default) VALUES (?,?,?)
                ON CONFLICT(id) DO UPDATE SET name=excluded.name, is_default=excluded.is_default
            """, (w.id, w.name, is_default))
    return len(warehouses)


def list_warehouses(conn: sqlite3.Connection) -> List[Warehouse]:
    rows = conn.execute("SELECT * FROM warehouses ORDER BY is_default DESC, name COLLATE NOCASE").fetchall()
    return [Warehouse(id=r["id"], name=r["name"], is_default=bool(r["is_default"])) for r in rows]


def get_default_warehouse(conn: sqlite3.Connection) -> Optional[Warehouse]:
    row = conn.execute("SELECT * FROM warehouses WHERE is_default=1 LIMIT 1").fetchone()
    return Warehouse(id=row["id"], name=row["name"], is_default=True) if row else None


def _replace_lookup(conn: sqlite3.Connection, table: str, rows: List[NamedRef]) -> int:
    with transaction(conn):
        conn.execute(f"DELETE FROM {table}")
        conn.executemany(f"INSERT OR REPLACE INTO {table} (id, name) VALUES (?,?)",
                         [(r.id, r.name) for r in rows if r.id > 0])
    return len(rows)


def replace_payment_methods(conn: sqlite3.Connection, methods: List[NamedRef]) -> int:
    return _replace_lookup(conn, "payment_methods", methods)


def replace_categories(conn: sqlite3.Connection, categories: List[NamedRef]) -> int:
    return _replace_lookup(conn, "categories", categories)


def replace_brands(conn: sqlite3.Connection, brands: List[NamedRef]) -> int:
    return _replace_lookup(conn, "brands", brands)


def list_payment_methods(conn: sqlite3.Connection) -> List[NamedRef]:
    rows = conn.execute("SELECT id, name, is_default FROM payment_methods ORDER BY id").fetchall()
    return [NamedRef(id=r["id"], name=r["name"], is_default=bool(r["is_default"])) for r in rows]


def list_categories(conn: sqlite3.Connection) -> List[NamedRef]:
    return [NamedRef(id=r["id"], name=r["name"]) for r in conn.execute("SELECT id, name FROM categories ORDER BY name")]


def list_brands(conn: sqlite3.Connection) -> List[NamedRef]:
    return [NamedRef(id=r["id"], name=r["name"]) for r in conn.execute("SELECT id, name FROM brands ORDER BY name")]


# ---------- SALES (transactional) ----------
_LINE_COLUMNS = (
    "product_id", "product_variant_id", "sale_unit_id", "quantity", "unit_price", "subtotal",
    "tax_percent", "tax_method", "discount", "discount_method", "imei_number", "product_name",
)


def _line_params(owner_id: int, line: SaleLine) -> Tuple[Any, ...]:
    return (
        owner_id, line.product_id, line.product_variant_id, line.sale_unit_id, float(line.quantity),
        float(line.unit_price), float(line.subtotal), line.tax_percent, line.tax_method, line.discount,
        line.discount_method, line.imei_number, line.product_name_snapshot,
    )


def _row_to_line(row: sqlite3.Row, owner_column: str) -> SaleLine:
    return SaleLine(
        id=row["id"],
        sale_local_id=row[owner_column],
        product_id=row["product_id"],
        product_variant_id=row["product_variant_id"],
        sale_unit_id=row["sale_unit_id"],
        quantity=row["quantity"],
        unit_price=row["unit_price"],
        subtotal=row["subtotal"],
        tax_percent=row["tax_percent"],
        tax_method=row["tax_method"],
        discount=row["discount"],
        discount_method=row["discount_method"],
        imei_number=row["imei_number"],
        product_name_snapshot=row["product_name"],
    )


def _row_to_sale(row: sqlite3.Row) -> Sale:
    return Sale(
        local_id=row["local_id"],
        receipt_id=row["receipt_id"],
        server_id=row["server_id"],
        client_id=row["client_id"],
        warehouse_id=row["warehouse_id"],
        tax_rate=row["tax_rate"],
        tax_net=row["tax_net"],
        discount=row["discount"],
        shipping=row["shipping"],
        grand_total=row["grand_total"],
        notes=row["notes"],
        po_number=row["po_number"],
        account_id=row["account_id"],
        payment_note=row["payment_note"],
        created_at=row["created_at"],
        synced=bool(row["synced"]),
    )


def commit_sale(conn: sqlite3.Connection, sale: Sale, lines: List[SaleLine], payments: List[Payment]) -> int:
    """Persist a sale with its lines and payments in one transaction and return its local id.

    The sale's ``local_id`` and every child's ``sale_local_id`` are filled in on
    the passed objects once the transaction commits.
    """
    if not lines:
        raise ValueError("a sale needs at least one line")
    receipt_id = sale.receipt_id or str(uuid.uuid4())
    created = sale.created_at or now_ms()
    with transaction(conn):
        cur = conn.execute("""
            INSERT INTO sales (receipt_id, server_id, client_id, warehouse_id, tax_rate, tax_net, discount, shipping,
                               grand_total, notes, po_number, account_id, payment_note, created_at, synced)
            VALUES (?,NULL,?,?,?,?,?,?,?,?,?,?,?,?,0)
        """, (
            receipt_id, sale.client_id, sale.warehouse_id, sale.tax_rate, sale.tax_net, sale.discount,
            sale.shipping, sale.grand_total, sale.notes, sale.po_number, sale.account_id, sale.payment_note,
            created,
        ))
        local_id = cur.lastrowid
        conn.executemany(
            f"INSERT INTO sale_lines (sale_local_id, {','.join(_LINE_COLUMNS)}) VALUES ({','.join('?' * 13)})",
            [_line_params(local_id, line) for line in lines],
        )
        conn.executemany(
            "INSERT INTO payments (sale_local_id, payment_method_id, amount, change_amount) VALUES (?,?,?,?)",
            [(local_id, p.payment_method_id, float(p.amount), float(p.change)) for p in payments],
        )
    sale.local_id = local_id
    sale.receipt_id = receipt_id
    sale.created_at = created
    sale.server_id = None
    sale.synced = False
    for line in lines:
        line.sale_local_id = local_id
    for p in payments:
        p.sale_local_id = local_id
    return local_id


def get_sale(conn: sqlite3.Connection, local_id: int) -> Optional[Sale]:
    row = conn.execute("SELECT * FROM sales WHERE local_id=?", (local_id,)).fetchone()
    return _row_to_sale(row) if row else None


def get_sale_lines(conn: sqlite3.Connection, local_id: int) -> List[SaleLine]:
    rows = conn.execute("SELECT * FROM sale_lines WHERE sale_local_id=? ORDER BY id", (local_id,)).fetchall()
    return [_row_to_line(r, "sale_local_id") for r in rows]


def get_payments(conn: sqlite3.Connection, local_id: int) -> List[Payment]:
    rows = conn.execute("SELECT * FROM payments WHERE sale_local_id=? ORDER BY id", (local_id,)).fetchall()
    return [
        Payment(id=r["id"], sale_local_id=r["sale_local_id"], payment_method_id=r["payment_method_id"],
                amount=r["amount"], change=r["change_amount"])
        for r in rows
    ]


def list_sales(conn: sqlite3.Connection, since_ms: int = 0) -> List[Sale]:
    rows = conn.execute("SELECT * FROM sales WHERE created_at >= ? ORDER BY created_at DESC, local_id DESC",
                        (since_ms,)).fetchall()
    return [_row_to_sale(r) for r in rows]


def list_unsynced_sales(conn: sqlite3.Connection) -> List[Sale]:
    rows = conn.execute("SELECT * FROM sales WHERE synced=0 ORDER BY local_id ASC").fetchall()
    return [_row_to_sale(r) for r in rows]


def mark_sale_synced(conn: sqlite3.Connection, local_id: int, server_id: int) -> bool:
    """Set the server id once. Returns False if the sale is missing or already synced."""
    with transaction(conn):
        cur = conn.execute("UPDATE sales SET server_id=?, synced=1 WHERE local_id=? AND synced=0",
                           (server_id, local_id))
        conn.execute("DELETE FROM upload_attempts WHERE kind=? AND ref_id=?", (JOB_SALES, local_id))
    return cur.rowcount == 1


def record_upload_failure(conn: sqlite3.Connection, kind: str, ref_id: int, error: str):
    conn.execute("""
        INSERT INTO upload_attempts (kind, ref_id, attempts, last_error, last_attempt_at) VALUES (?,?,1,?,?)
        ON CONFLICT(kind, ref_id) DO UPDATE SET
            attempts=upload_attempts.attempts + 1,
            last_error=excluded.last_error,
            last_attempt_at=excluded.last_attempt_at
    """, (kind, ref_id, (error or "")[:400], now_ms()))


def upload_attempts(conn: sqlite3.Connection, kind: str, ref_id: int) -> Dict[str, Any]:
    row = conn.execute("SELECT attempts, last_error, last_attempt_at FROM upload_attempts WHERE kind=? AND ref_id=?",
                       (kind, ref_id)).fetchone()
    if not row:
        return {"attempts": 0, "last_error": None, "last_attempt_at": None}
    return dict(row)


# ---------- DRAFTS ----------
def _row_to_draft(row: sqlite3.Row) -> Draft:
    return Draft(
        local_id=row["local_id"],
        receipt_id=row["receipt_id"],
        server_id=row["server_id"],
        client_id=row["client_id"],
        warehouse_id=row["warehouse_id"],
        tax_rate=row["tax_rate"],
        tax_net=row["tax_net"],
        discount=row["discount"],
        shipping=row["shipping"],
        grand_total=row["grand_total"],
        notes=row["notes"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        synced=bool(row["synced"]),
    )


def save_draft(conn: sqlite3.Connection, draft: Draft, lines: List[SaleLine]) -> int:
    receipt_id = draft.receipt_id or str(uuid.uuid4())
    stamp = now_ms()
    with transaction(conn):
        cur = conn.execute("""
            INSERT INTO drafts (receipt_id, client_id, warehouse_id, tax_rate, tax_net, discount, shipping,
                                grand_total, notes, created_at, updated_at, synced)
            VALUES (?,?,?,?,?,?,?,?,?,?,?,0)
        """, (receipt_id, draft.client_id, draft.warehouse_id, draft.tax_rate, draft.tax_net, draft.discount,
              draft.shipping, draft.grand_total, draft.notes, draft.created_at or stamp, stamp))
        local_id = cur.lastrowid
        conn.executemany(
            f"INSERT INTO draft_lines (draft_local_id, {','.join(_LINE_COLUMNS)}) VALUES ({','.join('?' * 13)})",
            [_line_params(local_id, line) for line in lines],
        )
    draft.local_id = local_id
    draft.receipt_id = receipt_id
    return local_id


def get_draft(conn: sqlite3.Connection, local_id: int) -> Optional[Draft]:
    row = conn.execute("SELECT * FROM drafts WHERE local_id=?", (local_id,)).fetchone()
    return _row_to_draft(row) if row else None


def get_draft_lines(conn: sqlite3.Connection, local_id: int) -> List[SaleLine]:
    rows = conn.execute("SELECT * FROM draft_lines WHERE draft_local_id=? ORDER BY id", (local_id,)).fetchall()
    return [_row_to_line(r, "draft_local_id") for r in rows]


def list_drafts(conn: sqlite3.Connection) -> List[Draft]:
    rows = conn.execute("SELECT * FROM drafts ORDER BY updated_at DESC, local_id DESC").fetchall()
    return [_row_to_draft(r) for r in rows]


def list_unsynced_drafts(conn: sqlite3.Connection) -> List[Draft]:
    rows = conn.execute("SELECT * FROM drafts WHERE synced=0 ORDER BY local_id ASC").fetchall()
    return [_row_to_draft(r) for r in rows]


def mark_draft_synced(conn: sqlite3.Connection, local_id: int, server_id: int) -> bool:
    with transaction(conn):
        cur = conn.execute("UPDATE drafts SET server_id=?, synced=1, updated_at=? WHERE local_id=? AND synced=0",
                           (server_id, now_ms(), local_id))
        conn.execute("DELETE FROM upload_attempts WHERE kind=? AND ref_id=?", (JOB_DRAFTS, local_id))
    return cur.rowcount == 1


def delete_draft(conn: sqlite3.Connection, local_id: int) -> bool:
    with transaction(conn):
        cur = conn.execute("DELETE FROM drafts WHERE local_id=?", (local_id,))
        conn.execute("DELETE FROM upload_attempts WHERE kind=? AND ref_id=?", (JOB_DRAFTS, local_id))
    return cur.rowcount == 1


# ---------- SYNC STATUS ----------
_IN_PROGRESS_COLUMNS = {JOB_PRODUCTS: "product_sync_in_progress", JOB_SALES: "sale_sync_in_progress"}
_LAST_SYNC_COLUMNS = {JOB_PRODUCTS: "last_product_sync", JOB_SALES: "last_sale_sync", JOB_DRAFTS: "last_draft_sync"}


def get_sync_status(conn: sqlite3.Connection) -> SyncStatus:
    row = conn.execute("SELECT * FROM sync_status WHERE id=1").fetchone()
    if not row:
        conn.execute("INSERT OR IGNORE INTO sync_status (id) VALUES (1)")
        return SyncStatus()
    return SyncStatus(
        last_product_sync=row["last_product_sync"],
        last_sale_sync=row["last_sale_sync"],
        last_draft_sync=row["last_draft_sync"],
        product_sync_in_progress=bool(row["product_sync_in_progress"]),
        sale_sync_in_progress=bool(row["sale_sync_in_progress"]),
    )


def set_sync_in_progress(conn: sqlite3.Connection, job: str, flag: bool):
    column = _IN_PROGRESS_COLUMNS[job]
    conn.execute(f"UPDATE sync_status SET {column}=? WHERE id=1", (1 if flag else 0,))


def clear_sync_flags(conn: sqlite3.Connection):
    """Reset in-progress flags left behind by a process that died mid-sync."""
    conn.execute("UPDATE sync_status SET product_sync_in_progress=0, sale_sync_in_progress=0 WHERE id=1")


def update_last_sync(conn: sqlite3.Connection, job: str, timestamp_ms: Optional[int] = None) -> int:
    stamp = timestamp_ms or now_ms()
    column = _LAST_SYNC_COLUMNS[job]
    conn.execute(f"UPDATE sync_status SET {column}=? WHERE id=1", (stamp,))
    return stamp


# ---------- REPORTS ----------
def sales_summary(conn: sqlite3.Connection, since_ms: int) -> Dict[str, Any]:
    head = conn.execute("""
        SELECT COUNT(*) AS n, COALESCE(SUM(grand_total), 0) AS total
        FROM sales WHERE created_at >= ?
    """, (since_ms,)).fetchone()
    top = conn.execute("""
        SELECT l.product_name AS name, SUM(l.quantity) AS qty
        FROM sale_lines l JOIN sales s ON s.local_id = l.sale_local_id
        WHERE s.created_at >= ?
        GROUP BY l.product_id, l.product_name
        ORDER BY qty DESC, l.product_name ASC LIMIT 1
    """, (since_ms,)).fetchone()
    count = head["n"] or 0
    total = float(head["total"] or 0.0)
    return {
        "total_sales": round(total, 2),
        "total_transactions": count,
        "average_sale": round(total / count, 2) if count else 0.0,
        "top_product": top["name"] if top else None,
    }


def main():
    ap = argparse.ArgumentParser(description="POS local store maintenance")
    ap.add_argument("--db", default="pos.db", help="Path to SQLite DB")
    ap.add_argument("--status", action="store_true", help="Print sync status and pending counts")
    ap.add_argument("--clear-flags", action="store_true", help="Reset stale in-progress sync flags")
    args = ap.parse_args()

    conn = connect(args.db)
    if args.clear_flags:
        clear_sync_flags(conn)
        print("Cleared sync in-progress flags")
    if args.status:
        status = get_sync_status(conn)
        print("Products:", product_count(conn))
        print("Unsynced sales:", len(list_unsynced_sales(conn)))
        print("Unsynced drafts:", len(list_unsynced_drafts(conn)))
        for key, value in status.to_dict().items():
            print(f"{key}: {value}")
    conn.close()


if __name__ == "__main__":
    main()
