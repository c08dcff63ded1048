from __future__ import annotations

import sqlite3
from typing import Optional

from stockroom.domain.models import MutationKind, StockTransaction, TransactionType

_TXN_COLUMNS = (
    "id, product_id, type, kind, quantity, previous_stock, new_stock, reason, reference, actor, timestamp, idempotency_key"
)


def transaction_from_row(r) -> StockTransaction:
    return StockTransaction(
        id=int(r[0]),
        product_id=int(r[1]),
        type=TransactionType(str(r[2])),
        kind=MutationKind(str(r[3])),
        quantity=int(r[4]),
        previous_stock=int(r[5]),
        new_stock=int(r[6]),
        reason=str(r[7]),
        reference=r[8],
        actor=r[9],
        timestamp=str(r[10]),
        idempotency_key=r[11],
    )


class SqliteTransactionLedger:
    """Append-only store of stock transactions.

    Rows are never updated or deleted (the schema enforces this with triggers).
    ``append`` joins the caller's transaction when given a cursor so the stock
    write and its audit entry commit together.
    """

    def __init__(self, repo):
        self.repo = repo

    def append(self, entry: StockTransaction, cur: Optional[sqlite3.Cursor] = None) -> int:
        if cur is not None:
            return self._insert(cur, entry)

        conn = self.repo._conn()
        try:
            txn_id = self._insert(conn.cursor(), entry)
            conn.commit()
            return txn_id
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _insert(self, cur: sqlite3.Cursor, entry: StockTransaction) -> int:
        cur.execute(
            """
            INSERT INTO stock_transactions (
                product_id, type, kind, quantity, previous_stock, new_stock,
                reason, reference, actor, timestamp, idempotency_key
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                int(entry.product_id),
                entry.type.value,
                entry.kind.value,
                int(entry.quantity),
                int(entry.previous_stock),
                int(entry.new_stock),
                entry.reason,
                entry.reference,
                entry.actor,
                entry.timestamp,
                entry.idempotency_key,
            ),
        )
        return int(cur.lastrowid)

    def query(
        self,
        product_id: int,
        start_iso: Optional[str] = None,
        end_iso: Optional[str] = None,
        page: int = 1,
        page_size: int = 20,
    ) -> tuple[list[StockTransaction], int]:
        """Newest-first page of a product's entries plus the total match count."""
        where = "product_id = ?"
        params: list = [int(product_id)]
        if start_iso:
            where += " AND timestamp >= ?"
            params.append(start_iso)
        if end_iso:
            where += " AND timestamp <= ?"
            params.append(end_iso)

        conn = self.repo._conn()
        cur = conn.cursor()
        cur.execute(f"SELECT COUNT(*) FROM stock_transactions WHERE {where}", params)
        total = int(cur.fetchone()[0])
        cur.execute(
            f"""
            SELECT {_TXN_COLUMNS}
            FROM stock_transactions
            WHERE {where}
            ORDER BY timestamp DESC, id DESC
            LIMIT ? OFFSET ?
            """,
            [*params, int(page_size), (int(page) - 1) * int(page_size)],
        )
        rows = cur.fetchall()
        conn.close()
        return [transaction_from_row(r) for r in rows], total

    def entries_for_product(self, product_id: int) -> list[StockTransaction]:
        """Every entry of a product in append order."""
        conn = self.repo._conn()
        cur = conn.cursor()
        cur.execute(f"SELECT {_TXN_COLUMNS} FROM stock_transactions WHERE product_id=? ORDER BY id", (int(product_id),))
        rows = cur.fetchall()
        conn.close()
        return [transaction_from_row(r) for r in rows]

    def sum_deltas(self, product_id: int) -> int:
        conn = self.repo._conn()
        cur = conn.cursor()
        cur.execute("SELECT COALESCE(SUM(quantity), 0) FROM stock_transactions WHERE product_id=?", (int(product_id),))
        total = int(cur.fetchone()[0])
        conn.close()
        return total

    def find_by_idempotency_key(self, key: str, cur: Optional[sqlite3.Cursor] = None) -> Optional[StockTransaction]:
        own_conn = None
        if cur is None:
            own_conn = self.repo._conn()
            cur = own_conn.cursor()
        try:
            cur.execute(f"SELECT {_TXN_COLUMNS} FROM stock_transactions WHERE idempotency_key=?", (key,))
            r = cur.fetchone()
        finally:
            if own_conn is not None:
                own_conn.close()
        return transaction_from_row(r) if r else None

    def count(self) -> int:
        conn = self.repo._conn()
        cur = conn.cursor()
        cur.execute("SELECT COUNT(*) FROM stock_transactions")
        n = int(cur.fetchone()[0])
        conn.close()
        return n
