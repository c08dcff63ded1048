from __future__ import annotations

import sqlite3
from typing import Optional, Protocol

from stockroom.domain.models import StockRecord, StockTransaction
from stockroom.repositories.ledger import SqliteTransactionLedger
from stockroom.repositories.sqlite_repo import STOCK_COLUMNS, stock_from_row


class UnitOfWork(Protocol):
    def __enter__(self) -> "UnitOfWork": ...
    def __exit__(self, exc_type, exc, tb) -> None: ...
    def get_stock_record(self, product_id: int) -> Optional[StockRecord]: ...
    def compare_and_set_stock(
        self, product_id: int, expected_version: int, current_stock: int, reserved_stock: int, last_updated: str
    ) -> bool: ...
    def append_transaction(self, entry: StockTransaction) -> int: ...
    def find_transaction_by_key(self, key: str) -> Optional[StockTransaction]: ...


class SqliteUnitOfWork:
    """One write transaction spanning the stock record and its ledger entry.

    ``BEGIN IMMEDIATE`` takes the database write lock up front, so the read of
    the current record and the write that follows see the same snapshot. The
    stock write is additionally a compare-and-set on ``version``. Leaving the
    block normally commits; any exception rolls everything back.
    """

    def __init__(self, repo, ledger: SqliteTransactionLedger | None = None):
        self.repo = repo
        self.ledger = ledger or SqliteTransactionLedger(repo)
        self._conn: sqlite3.Connection | None = None
        self._cur: sqlite3.Cursor | None = None

    def __enter__(self) -> "SqliteUnitOfWork":
        self._conn = self.repo._conn(autocommit=True)
        try:
            self._conn.execute("BEGIN IMMEDIATE")
        except Exception:
            self._conn.close()
            self._conn = None
            raise
        self._cur = self._conn.cursor()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        conn = self._conn
        self._conn = None
        self._cur = None
        if conn is None:
            return None
        try:
            if exc_type is None:
                conn.execute("COMMIT")
            else:
                conn.execute("ROLLBACK")
        except Exception:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise
        finally:
            conn.close()
        return None

    @property
    def cursor(self) -> sqlite3.Cursor:
        if self._cur is None:
            raise RuntimeError("Unit of work is not active.")
        return self._cur

    def get_stock_record(self, product_id: int) -> Optional[StockRecord]:
        self.cursor.execute(f"SELECT {STOCK_COLUMNS} FROM stock_records s WHERE s.product_id=?", (int(product_id),))
        r = self.cursor.fetchone()
        return stock_from_row(r) if r else None

    def compare_and_set_stock(
        self, product_id: int, expected_version: int, current_stock: int, reserved_stock: int, last_updated: str
    ) -> bool:
        self.cursor.execute(
            """
            UPDATE stock_records
            SET current_stock = ?, reserved_stock = ?, last_updated = ?, version = version + 1
            WHERE product_id = ? AND version = ?
            """,
            (int(current_stock), int(reserved_stock), last_updated, int(product_id), int(expected_version)),
        )
        return self.cursor.rowcount == 1

    def append_transaction(self, entry: StockTransaction) -> int:
        return self.ledger.append(entry, cur=self.cursor)

    def find_transaction_by_key(self, key: str) -> Optional[StockTransaction]:
        return self.ledger.find_by_idempotency_key(key, cur=self.cursor)
