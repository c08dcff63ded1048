from pathlib import Path

import pytest

from stockroom.repositories.sqlite_repo import SqliteRepository


def _version(repo) -> int:
    conn = repo._conn()
    cur = conn.cursor()
    cur.execute("SELECT COALESCE(MAX(version), 0) FROM schema_migrations")
    v = int(cur.fetchone()[0])
    conn.close()
    return v


def test_migrations_are_idempotent(tmp_path: Path):
    repo = SqliteRepository(tmp_path / "m.db")
    repo.init_db()
    repo.init_db()

    assert _version(repo) == 2
    conn = repo._conn()
    triggers = {r[0] for r in conn.execute("SELECT name FROM sqlite_master WHERE type='trigger'")}
    conn.close()
    assert {"stock_transactions_no_update", "stock_transactions_no_delete", "stock_records_no_delete"} <= triggers


def test_constraints_reject_reserved_above_current(tmp_path: Path):
    import sqlite3

    repo = SqliteRepository(tmp_path / "c.db")
    repo.init_db()
    pid = repo.add_product("SKU-1", "Constrained", 2.0, 1.0, 1, "2024-01-01 00:00:00")

    conn = repo._conn()
    try:
        with pytest.raises(sqlite3.IntegrityError):
            conn.execute("UPDATE stock_records SET reserved_stock = 1 WHERE product_id = ?", (pid,))
    finally:
        conn.close()


def test_migration_failure_restores_db(tmp_path: Path):
    class BrokenMigrationRepo(SqliteRepository):
        def _migration_v2_ledger_hardening(self, cur):
            raise RuntimeError("forced migration failure")

    db = tmp_path / "broken.db"
    repo = SqliteRepository(db)
    repo.init_db()

    conn = repo._conn()
    cur = conn.cursor()
    cur.execute("DELETE FROM schema_migrations WHERE version = 2")
    conn.commit()
    conn.close()
    before = _version(repo)

    broken = BrokenMigrationRepo(db)

    with pytest.raises(RuntimeError, match="Original database restored"):
        broken.run_migrations()

    assert _version(repo) == before == 1
    assert list(tmp_path.glob("broken.pre_migration_*.bak"))
