import threading
from pathlib import Path

import pytest
from conftest import add_product, make_container

from stockroom.domain.errors import RetryExhaustedError
from stockroom.repositories.unit_of_work import SqliteUnitOfWork
from stockroom.services.locks import KeyedLock
from stockroom.services.stock_ledger_service import StockLedgerService


def _run_concurrently(*calls):
    barrier = threading.Barrier(len(calls))
    errors = []

    def worker(fn):
        barrier.wait()
        try:
            fn()
        except Exception as exc:  # collected and asserted by the test
            errors.append(exc)

    threads = [threading.Thread(target=worker, args=(fn,)) for fn in calls]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=30)
    return errors


def _assert_chain(entries, start: int = 0):
    running = start
    for e in entries:
        assert e.previous_stock == running
        running = e.new_stock
    return running


def test_concurrent_removes_never_lose_updates(tmp_path: Path):
    c = make_container(tmp_path)
    p = add_product(c, "SKU-RACE", stock=10)

    errors = _run_concurrently(
        lambda: c.stock.apply_mutation(p.id, "remove", 7),
        lambda: c.stock.apply_mutation(p.id, "remove", 5),
    )

    assert errors == []
    record = c.repo.get_stock_record(p.id)
    assert record.current_stock == 0

    entries = c.ledger.entries_for_product(p.id)
    assert len(entries) == 3
    assert _assert_chain(entries) == 0
    assert sorted(e.quantity for e in entries[1:]) in ([-7, -3], [-5, -5])


def test_writers_with_separate_locks_are_serialized_by_the_database(tmp_path: Path):
    # two services sharing nothing but the database file behave like two processes
    c = make_container(tmp_path)
    p = add_product(c, "SKU-PROC")
    s1 = StockLedgerService(c.repo, locks=KeyedLock(), retry_backoff_seconds=0.0, max_attempts=50)
    s2 = StockLedgerService(c.repo, locks=KeyedLock(), retry_backoff_seconds=0.0, max_attempts=50)

    def adds(service):
        def run():
            for _ in range(10):
                service.apply_mutation(p.id, "add", 1)

        return run

    errors = _run_concurrently(adds(s1), adds(s2))

    assert errors == []
    assert c.repo.get_stock_record(p.id).current_stock == 20
    entries = c.ledger.entries_for_product(p.id)
    assert len(entries) == 20
    assert _assert_chain(entries) == 20


def test_different_products_do_not_block_each_other(tmp_path: Path):
    c = make_container(tmp_path)
    a = add_product(c, "SKU-PA")
    b = add_product(c, "SKU-PB")

    errors = _run_concurrently(
        *[lambda pid=a.id: c.stock.apply_mutation(pid, "add", 2) for _ in range(4)],
        *[lambda pid=b.id: c.stock.apply_mutation(pid, "add", 3) for _ in range(4)],
    )

    assert errors == []
    assert c.repo.get_stock_record(a.id).current_stock == 8
    assert c.repo.get_stock_record(b.id).current_stock == 12
    assert len(c.stock.locks) == 0


class _LosingUnitOfWork(SqliteUnitOfWork):
    """Reports a lost compare-and-set for the first ``losses`` attempts."""

    losses = 0

    def compare_and_set_stock(self, *args, **kwargs):
        if type(self).losses > 0:
            type(self).losses -= 1
            return False
        return super().compare_and_set_stock(*args, **kwargs)


def test_lost_compare_and_set_is_retried(tmp_path: Path):
    c = make_container(tmp_path)
    p = add_product(c, "SKU-RETRY", stock=4)

    class TwoLosses(_LosingUnitOfWork):
        losses = 2

    stock = StockLedgerService(
        c.repo, ledger=c.ledger, uow_factory=lambda: TwoLosses(c.repo, c.ledger), retry_backoff_seconds=0.0
    )
    result = stock.apply_mutation(p.id, "add", 1)

    assert result.stock_record.current_stock == 5
    # rolled-back attempts leave no ledger entries behind
    assert len(c.ledger.entries_for_product(p.id)) == 2


def test_retries_are_bounded(tmp_path: Path):
    c = make_container(tmp_path)
    p = add_product(c, "SKU-EXHAUST", stock=4)

    class AlwaysLoses(_LosingUnitOfWork):
        losses = 1_000

    stock = StockLedgerService(
        c.repo,
        ledger=c.ledger,
        uow_factory=lambda: AlwaysLoses(c.repo, c.ledger),
        max_attempts=3,
        retry_backoff_seconds=0.0,
    )

    with pytest.raises(RetryExhaustedError) as excinfo:
        stock.apply_mutation(p.id, "remove", 1)

    assert excinfo.value.status_code == 503
    assert AlwaysLoses.losses == 997
    assert c.repo.get_stock_record(p.id).current_stock == 4
    assert len(c.ledger.entries_for_product(p.id)) == 1


def test_keyed_lock_serializes_same_key():
    locks = KeyedLock()
    inside = []
    overlap = []

    def critical():
        with locks.hold("k"):
            if inside:
                overlap.append(True)
            inside.append(True)
            threading.Event().wait(0.01)
            inside.pop()

    errors = _run_concurrently(*[critical for _ in range(5)])

    assert errors == []
    assert overlap == []
    assert not locks.is_locked("k")
    assert len(locks) == 0
