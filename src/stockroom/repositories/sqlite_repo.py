from __future__ import annotations

import shutil
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Iterator, Optional

from stockroom.domain.errors import ConcurrentUpdateError, ConflictError, StorageError
from stockroom.domain.models import Category, Product, ProductStatus, SaleRecord, StockRecord

_BUSY_MARKERS = ("database is locked", "database is busy", "database table is locked")

_PRODUCT_COLUMNS = "p.id, p.sku, p.name, p.price, p.cost, p.reorder_threshold, p.status, p.category_id, p.marketplace"
STOCK_COLUMNS = (
    "s.product_id, s.current_stock, s.reserved_stock, s.cost_per_unit, s.last_updated, s.version, s.warehouse, s.shelf"
)
_SALE_COLUMNS = (
    "id, order_id, product_id, quantity, unit_price, final_amount, marketplace, sale_date, "
    "fee_marketplace, fee_payment, fee_shipping, status"
)


def is_busy_error(exc: BaseException) -> bool:
    return isinstance(exc, sqlite3.OperationalError) and any(m in str(exc).lower() for m in _BUSY_MARKERS)


@contextmanager
def sqlite_errors(action: str) -> Iterator[None]:
    """Translate driver errors: busy/locked becomes retryable, anything else a storage fault."""
    try:
        yield
    except sqlite3.Error as exc:
        if is_busy_error(exc):
            raise ConcurrentUpdateError(f"{action}: database busy") from exc
        raise StorageError(f"{action} failed: {exc}") from exc


def product_from_row(r) -> Product:
    return Product(
        id=int(r[0]),
        sku=str(r[1]),
        name=str(r[2]),
        price=float(r[3]),
        cost=float(r[4]),
        reorder_threshold=int(r[5]),
        status=ProductStatus(str(r[6])),
        category_id=(int(r[7]) if r[7] is not None else None),
        marketplace=(str(r[8]) if r[8] is not None else None),
    )


def stock_from_row(r) -> StockRecord:
    return StockRecord(
        product_id=int(r[0]),
        current_stock=int(r[1]),
        reserved_stock=int(r[2]),
        cost_per_unit=float(r[3]),
        last_updated=str(r[4]),
        version=int(r[5]),
        warehouse=r[6],
        shelf=r[7],
    )


def sale_from_row(r) -> SaleRecord:
    return SaleRecord(
        id=int(r[0]),
        order_id=str(r[1]),
        product_id=int(r[2]),
        quantity=int(r[3]),
        unit_price=float(r[4]),
        final_amount=float(r[5]),
        marketplace=str(r[6]),
        sale_date=str(r[7]),
        fee_marketplace=float(r[8]),
        fee_payment=float(r[9]),
        fee_shipping=float(r[10]),
        status=str(r[11]),
    )


class SqliteRepository:
    def __init__(self, db_path: Path | str, timeout: float = 5.0):
        self.db_path = str(db_path)
        self.timeout = float(timeout)

    def _conn(self, autocommit: bool = False) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=self.timeout)
        if autocommit:
            conn.isolation_level = None
        conn.execute("PRAGMA foreign_keys = ON;")
        return conn

    def init_db(self) -> None:
        self.run_migrations()

    def run_migrations(self) -> None:
        conn = self._conn()
        backup_path = self._create_pre_migration_backup()
        try:
            cur = conn.cursor()
            cur.execute("BEGIN")
            cur.execute("CREATE TABLE IF NOT EXISTS schema_migrations (version INTEGER PRIMARY KEY, applied_at TEXT NOT NULL)")
            cur.execute("SELECT COALESCE(MAX(version), 0) FROM schema_migrations")
            current_version = int(cur.fetchone()[0])

            migrations = [
                (1, self._migration_v1_base),
                (2, self._migration_v2_ledger_hardening),
            ]

            for version, migration in migrations:
                if version <= current_version:
                    continue
                migration(cur)
                cur.execute(
                    "INSERT INTO schema_migrations (version, applied_at) VALUES (?, datetime('now'))",
                    (version,),
                )
            conn.commit()
        except Exception as exc:
            conn.rollback()
            self._restore_pre_migration_backup(backup_path)
            raise RuntimeError(
                "Database migration failed. Original database restored from automatic backup."
            ) from exc
        finally:
            conn.close()

    def _create_pre_migration_backup(self) -> Path | None:
        db_file = Path(self.db_path)
        if not db_file.exists() or db_file.stat().st_size == 0:
            return None
        backup_file = db_file.with_name(f"{db_file.stem}.pre_migration_{datetime.now().strftime('%Y%m%d%H%M%S')}.bak")
        shutil.copy2(db_file, backup_file)
        return backup_file

    def _restore_pre_migration_backup(self, backup_path: Path | None) -> None:
        if backup_path is None or not backup_path.exists():
            return
        shutil.copy2(backup_path, self.db_path)

    def _migration_v1_base(self, cur: sqlite3.Cursor) -> None:
        cur.execute(
            """
        CREATE TABLE IF NOT EXISTS categories (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            name TEXT UNIQUE NOT NULL
        )
        """
        )

        cur.execute(
            """
        CREATE TABLE IF NOT EXISTS products (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            sku TEXT UNIQUE NOT NULL,
            name TEXT NOT NULL,
            category_id INTEGER,
            price REAL NOT NULL CHECK(price > 0),
            cost REAL NOT NULL CHECK(cost >= 0),
            reorder_threshold INTEGER NOT NULL DEFAULT 10 CHECK(reorder_threshold >= 0),
            status TEXT NOT NULL DEFAULT 'active' CHECK(status IN ('active','inactive','discontinued')),
            marketplace TEXT,
            created_at TEXT NOT NULL,
            FOREIGN KEY(category_id) REFERENCES categories(id)
        )
        """
        )

        cur.execute(
            """
        CREATE TABLE IF NOT EXISTS stock_records (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            product_id INTEGER NOT NULL UNIQUE,
            current_stock INTEGER NOT NULL DEFAULT 0 CHECK(current_stock >= 0),
            reserved_stock INTEGER NOT NULL DEFAULT 0 CHECK(reserved_stock >= 0),
            warehouse TEXT,
            shelf TEXT,
            cost_per_unit REAL NOT NULL DEFAULT 0 CHECK(cost_per_unit >= 0),
            last_updated TEXT NOT NULL,
            version INTEGER NOT NULL DEFAULT 0,
            CHECK(reserved_stock <= current_stock),
            FOREIGN KEY(product_id) REFERENCES products(id)
        )
        """
        )

        cur.execute(
            """
        CREATE TABLE IF NOT EXISTS stock_transactions (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            product_id INTEGER NOT NULL,
            type TEXT NOT NULL CHECK(type IN ('inbound','outbound','adjustment')),
            kind TEXT NOT NULL CHECK(kind IN ('add','remove','set')),
            quantity INTEGER NOT NULL,
            previous_stock INTEGER NOT NULL CHECK(previous_stock >= 0),
            new_stock INTEGER NOT NULL CHECK(new_stock >= 0),
            reason TEXT NOT NULL,
            reference TEXT,
            actor TEXT,
            timestamp TEXT NOT NULL,
            CHECK(new_stock - previous_stock = quantity),
            FOREIGN KEY(product_id) REFERENCES products(id)
        )
        """
        )

        cur.execute(
            """
        CREATE TABLE IF NOT EXISTS sales (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            order_id TEXT UNIQUE NOT NULL,
            product_id INTEGER NOT NULL,
            quantity INTEGER NOT NULL CHECK(quantity > 0),
            unit_price REAL NOT NULL CHECK(unit_price >= 0),
            fee_marketplace REAL NOT NULL DEFAULT 0 CHECK(fee_marketplace >= 0),
            fee_payment REAL NOT NULL DEFAULT 0 CHECK(fee_payment >= 0),
            fee_shipping REAL NOT NULL DEFAULT 0 CHECK(fee_shipping >= 0),
            final_amount REAL NOT NULL CHECK(final_amount >= 0),
            marketplace TEXT NOT NULL,
            sale_date TEXT NOT NULL,
            status TEXT NOT NULL DEFAULT 'completed',
            FOREIGN KEY(product_id) REFERENCES products(id)
        )
        """
        )

    def _migration_v2_ledger_hardening(self, cur: sqlite3.Cursor) -> None:
        self._add_column_if_missing(cur, "stock_transactions", "idempotency_key", "TEXT")
        cur.execute(
            """
            CREATE UNIQUE INDEX IF NOT EXISTS ux_stock_transactions_idempotency
            ON stock_transactions(idempotency_key)
            WHERE idempotency_key IS NOT NULL
            """
        )
        cur.execute(
            "CREATE INDEX IF NOT EXISTS ix_stock_transactions_product_ts ON stock_transactions(product_id, timestamp)"
        )
        cur.execute("CREATE INDEX IF NOT EXISTS ix_sales_sale_date ON sales(sale_date)")
        cur.execute("CREATE INDEX IF NOT EXISTS ix_sales_marketplace_date ON sales(marketplace, sale_date)")
        cur.execute("CREATE INDEX IF NOT EXISTS ix_sales_product_date ON sales(product_id, sale_date)")

        # ledger rows are write-once
        cur.execute(
            """
            CREATE TRIGGER IF NOT EXISTS stock_transactions_no_update
            BEFORE UPDATE ON stock_transactions
            BEGIN
                SELECT RAISE(ABORT, 'stock_transactions is append-only');
            END
            """
        )
        cur.execute(
            """
            CREATE TRIGGER IF NOT EXISTS stock_transactions_no_delete
            BEFORE DELETE ON stock_transactions
            BEGIN
                SELECT RAISE(ABORT, 'stock_transactions is append-only');
            END
            """
        )
        cur.execute(
            """
            CREATE TRIGGER IF NOT EXISTS stock_records_no_delete
            BEFORE DELETE ON stock_records
            BEGIN
                SELECT RAISE(ABORT, 'stock records are archived with their product, never deleted');
            END
            """
        )

    def _add_column_if_missing(self, cur: sqlite3.Cursor, table: str, column: str, definition: str) -> None:
        cur.execute(f"PRAGMA table_info({table})")
        cols = {str(r[1]) for r in cur.fetchall()}
        if column in cols:
            return
        cur.execute(f"ALTER TABLE {table} ADD COLUMN {column} {definition}")

    def integrity_check(self) -> str:
        conn = self._conn()
        cur = conn.cursor()
        cur.execute("PRAGMA integrity_check")
        row = cur.fetchone()
        conn.close()
        return str(row[0]) if row else "unknown"

    # ---------- Catalog ----------
    def add_category(self, name: str) -> int:
        conn = self._conn()
        cur = conn.cursor()
        try:
            cur.execute("INSERT INTO categories (name) VALUES (?)", (name,))
            cid = int(cur.lastrowid)
            conn.commit()
            return cid
        except sqlite3.IntegrityError as exc:
            conn.rollback()
            raise ConflictError(f"Category already exists: {name}") from exc
        finally:
            conn.close()

    def list_categories(self) -> list[Category]:
        conn = self._conn()
        cur = conn.cursor()
        cur.execute("SELECT id, name FROM categories ORDER BY name")
        rows = cur.fetchall()
        conn.close()
        return [Category(id=int(r[0]), name=str(r[1])) for r in rows]

    def add_product(
        self,
        sku: str,
        name: str,
        price: float,
        cost: float,
        reorder_threshold: int,
        created_at: str,
        status: str = "active",
        category_id: Optional[int] = None,
        marketplace: Optional[str] = None,
        cost_per_unit: Optional[float] = None,
        warehouse: Optional[str] = None,
        shelf: Optional[str] = None,
    ) -> int:
        """Insert a product together with its zero-stock record."""
        conn = self._conn()
        cur = conn.cursor()
        try:
            cur.execute(
                """
                INSERT INTO products (sku, name, category_id, price, cost, reorder_threshold, status, marketplace, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
                (sku, name, category_id, float(price), float(cost), int(reorder_threshold), status, marketplace, created_at),
            )
            pid = int(cur.lastrowid)
            cur.execute(
                """
                INSERT INTO stock_records (product_id, current_stock, reserved_stock, warehouse, shelf, cost_per_unit, last_updated)
                VALUES (?, 0, 0, ?, ?, ?, ?)
            """,
                (pid, warehouse, shelf, float(cost if cost_per_unit is None else cost_per_unit), created_at),
            )
            conn.commit()
            return pid
        except sqlite3.IntegrityError as exc:
            conn.rollback()
            if "sku" in str(exc).lower():
                raise ConflictError(f"SKU already exists: {sku}") from exc
            raise
        finally:
            conn.close()

    def get_product(self, product_id: int) -> Optional[Product]:
        conn = self._conn()
        cur = conn.cursor()
        cur.execute(f"SELECT {_PRODUCT_COLUMNS} FROM products p WHERE p.id=?", (int(product_id),))
        r = cur.fetchone()
        conn.close()
        return product_from_row(r) if r else None

    def get_product_by_sku(self, sku: str) -> Optional[Product]:
        conn = self._conn()
        cur = conn.cursor()
        cur.execute(f"SELECT {_PRODUCT_COLUMNS} FROM products p WHERE p.sku=?", (sku,))
        r = cur.fetchone()
        conn.close()
        return product_from_row(r) if r else None

    def list_products(self, status: Optional[str] = None) -> list[Product]:
        conn = self._conn()
        cur = conn.cursor()
        if status is None:
            cur.execute(f"SELECT {_PRODUCT_COLUMNS} FROM products p ORDER BY p.name, p.id")
        else:
            cur.execute(f"SELECT {_PRODUCT_COLUMNS} FROM products p WHERE p.status=? ORDER BY p.name, p.id", (status,))
        rows = cur.fetchall()
        conn.close()
        return [product_from_row(r) for r in rows]

    def list_product_ids(self) -> list[int]:
        conn = self._conn()
        cur = conn.cursor()
        cur.execute("SELECT id FROM products ORDER BY id")
        rows = cur.fetchall()
        conn.close()
        return [int(r[0]) for r in rows]

    def set_product_status(self, product_id: int, status: str) -> bool:
        conn = self._conn()
        cur = conn.cursor()
        cur.execute("UPDATE products SET status=? WHERE id=?", (status, int(product_id)))
        changed = cur.rowcount > 0
        conn.commit()
        conn.close()
        return bool(changed)

    def update_reorder_threshold(self, product_id: int, threshold: int) -> bool:
        conn = self._conn()
        cur = conn.cursor()
        cur.execute("UPDATE products SET reorder_threshold=? WHERE id=?", (int(threshold), int(product_id)))
        changed = cur.rowcount > 0
        conn.commit()
        conn.close()
        return bool(changed)

    # ---------- Stock ----------
    def get_stock_record(self, product_id: int) -> Optional[StockRecord]:
        conn = self._conn()
        cur = conn.cursor()
        cur.execute(f"SELECT {STOCK_COLUMNS} FROM stock_records s WHERE s.product_id=?", (int(product_id),))
        r = cur.fetchone()
        conn.close()
        return stock_from_row(r) if r else None

    def list_low_stock(self, active_only: bool = True) -> list[tuple[Product, StockRecord]]:
        conn = self._conn()
        cur = conn.cursor()
        sql = f"""
            SELECT {_PRODUCT_COLUMNS}, {STOCK_COLUMNS}
            FROM stock_records s
            JOIN products p ON p.id = s.product_id
            WHERE (s.current_stock - s.reserved_stock) <= p.reorder_threshold
        """
        if active_only:
            sql += " AND p.status = 'active'"
        sql += " ORDER BY (s.current_stock - s.reserved_stock) ASC, p.id ASC"
        cur.execute(sql)
        rows = cur.fetchall()
        conn.close()
        return [(product_from_row(r[:9]), stock_from_row(r[9:])) for r in rows]

    def count_products(self) -> int:
        conn = self._conn()
        cur = conn.cursor()
        cur.execute("SELECT COUNT(*) FROM products")
        n = int(cur.fetchone()[0])
        conn.close()
        return n

    # ---------- Sales ----------
    def add_sale(
        self,
        order_id: str,
        product_id: int,
        quantity: int,
        unit_price: float,
        final_amount: float,
        marketplace: str,
        sale_date: str,
        fee_marketplace: float = 0.0,
        fee_payment: float = 0.0,
        fee_shipping: float = 0.0,
        status: str = "completed",
    ) -> int:
        conn = self._conn()
        cur = conn.cursor()
        try:
            cur.execute(
                """
                INSERT INTO sales (
                    order_id, product_id, quantity, unit_price, fee_marketplace, fee_payment, fee_shipping,
                    final_amount, marketplace, sale_date, status
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
                (
                    order_id,
                    int(product_id),
                    int(quantity),
                    float(unit_price),
                    float(fee_marketplace),
                    float(fee_payment),
                    float(fee_shipping),
                    float(final_amount),
                    marketplace,
                    sale_date,
                    status,
                ),
            )
            sale_id = int(cur.lastrowid)
            conn.commit()
            return sale_id
        except sqlite3.IntegrityError as exc:
            conn.rollback()
            if "order_id" in str(exc).lower():
                raise ConflictError(f"Order already recorded: {order_id}") from exc
            raise
        finally:
            conn.close()

    def get_sale_by_order_id(self, order_id: str) -> Optional[SaleRecord]:
        conn = self._conn()
        cur = conn.cursor()
        cur.execute(f"SELECT {_SALE_COLUMNS} FROM sales WHERE order_id=?", (order_id,))
        r = cur.fetchone()
        conn.close()
        return sale_from_row(r) if r else None

    def update_sale_status(self, order_id: str, status: str) -> bool:
        conn = self._conn()
        cur = conn.cursor()
        cur.execute("UPDATE sales SET status=? WHERE order_id=?", (status, order_id))
        changed = cur.rowcount > 0
        conn.commit()
        conn.close()
        return bool(changed)

    def list_sales_between(self, start_iso: str, end_iso: str, marketplace: Optional[str] = None) -> list[SaleRecord]:
        conn = self._conn()
        cur = conn.cursor()
        sql = f"SELECT {_SALE_COLUMNS} FROM sales WHERE sale_date >= ? AND sale_date <= ?"
        params: list = [start_iso, end_iso]
        if marketplace:
            sql += " AND marketplace = ?"
            params.append(marketplace)
        cur.execute(sql + " ORDER BY sale_date DESC, id DESC", params)
        rows = cur.fetchall()
        conn.close()
        return [sale_from_row(r) for r in rows]

    # ---------- Sales aggregates ----------
    @staticmethod
    def _sales_window(alias: str, start_iso: str, end_iso: str, marketplace: Optional[str], include_end: bool):
        op = "<=" if include_end else "<"
        where = f"{alias}sale_date >= ? AND {alias}sale_date {op} ?"
        params: list = [start_iso, end_iso]
        if marketplace:
            where += f" AND {alias}marketplace = ?"
            params.append(marketplace)
        return where, params

    def sales_totals(
        self, start_iso: str, end_iso: str, marketplace: Optional[str] = None, include_end: bool = True
    ) -> tuple[int, float, int]:
        where, params = self._sales_window("", start_iso, end_iso, marketplace, include_end)
        conn = self._conn()
        cur = conn.cursor()
        cur.execute(
            f"""
            SELECT COUNT(*), COALESCE(SUM(final_amount), 0), COALESCE(SUM(quantity), 0)
            FROM sales
            WHERE {where}
        """,
            params,
        )
        c, revenue, qty = cur.fetchone()
        conn.close()
        return int(c), float(revenue), int(qty)

    def sales_buckets(
        self, index_format: str, label_format: str, start_iso: str, end_iso: str, marketplace: Optional[str] = None
    ) -> list[tuple[int, int, str, float, int, int]]:
        """Rows of (year, index, label, revenue, sales, quantity) in chronological order."""
        where, params = self._sales_window("", start_iso, end_iso, marketplace, True)
        conn = self._conn()
        cur = conn.cursor()
        cur.execute(
            f"""
            SELECT CAST(strftime('%Y', sale_date) AS INTEGER) AS y,
                   CAST(strftime(?, sale_date) AS INTEGER) AS idx,
                   MIN(strftime(?, sale_date)) AS label,
                   COALESCE(SUM(final_amount), 0),
                   COUNT(*),
                   COALESCE(SUM(quantity), 0)
            FROM sales
            WHERE {where}
            GROUP BY y, idx
            ORDER BY y, idx
        """,
            [index_format, label_format, *params],
        )
        rows = cur.fetchall()
        conn.close()
        return [(int(r[0]), int(r[1]), str(r[2]), float(r[3]), int(r[4]), int(r[5])) for r in rows]

    def product_sales_totals(
        self, start_iso: str, end_iso: str, marketplace: Optional[str] = None
    ) -> list[tuple[int, str, str, int, float, int]]:
        """Per-product totals ordered by each product's first sale in the window."""
        where, params = self._sales_window("s.", start_iso, end_iso, marketplace, True)
        conn = self._conn()
        cur = conn.cursor()
        cur.execute(
            f"""
            SELECT p.id, p.sku, p.name,
                   SUM(s.quantity) AS units_sold,
                   SUM(s.final_amount) AS revenue,
                   COUNT(*) AS sales_count,
                   MIN(s.id) AS first_sale
            FROM sales s
            JOIN products p ON p.id = s.product_id
            WHERE {where}
            GROUP BY p.id
            ORDER BY first_sale
        """,
            params,
        )
        rows = cur.fetchall()
        conn.close()
        return [(int(r[0]), str(r[1]), str(r[2]), int(r[3]), float(r[4]), int(r[5])) for r in rows]

    def marketplace_totals(self, start_iso: str, end_iso: str) -> list[tuple[str, float, int, int]]:
        where, params = self._sales_window("", start_iso, end_iso, None, True)
        conn = self._conn()
        cur = conn.cursor()
        cur.execute(
            f"""
            SELECT marketplace, COALESCE(SUM(final_amount), 0) AS revenue, COUNT(*), COALESCE(SUM(quantity), 0)
            FROM sales
            WHERE {where}
            GROUP BY marketplace
            ORDER BY revenue DESC, marketplace ASC
        """,
            params,
        )
        rows = cur.fetchall()
        conn.close()
        return [(str(r[0]), float(r[1]), int(r[2]), int(r[3])) for r in rows]

    def category_totals(
        self, start_iso: str, end_iso: str, marketplace: Optional[str] = None
    ) -> list[tuple[int, str, float, int, int]]:
        where, params = self._sales_window("s.", start_iso, end_iso, marketplace, True)
        conn = self._conn()
        cur = conn.cursor()
        cur.execute(
            f"""
            SELECT c.id, c.name, COALESCE(SUM(s.final_amount), 0) AS revenue, COUNT(*), COALESCE(SUM(s.quantity), 0)
            FROM sales s
            JOIN products p ON p.id = s.product_id
            JOIN categories c ON c.id = p.category_id
            WHERE {where}
            GROUP BY c.id
            ORDER BY revenue DESC, c.name ASC
        """,
            params,
        )
        rows = cur.fetchall()
        conn.close()
        return [(int(r[0]), str(r[1]), float(r[2]), int(r[3]), int(r[4])) for r in rows]
