from __future__ import annotations

import logging
import time
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Callable, Iterable, Mapping, Optional, TypeVar

from stockroom.domain.errors import (
    AppError,
    ConcurrentUpdateError,
    ConflictError,
    InsufficientStockError,
    NotFoundError,
    RetryExhaustedError,
    ValidationError,
)
from stockroom.domain.models import (
    MutationKind,
    Product,
    StockRecord,
    StockTransaction,
    available_stock,
    is_low_stock,
    next_stock,
)
from stockroom.repositories.ledger import SqliteTransactionLedger
from stockroom.repositories.sqlite_repo import sqlite_errors
from stockroom.repositories.unit_of_work import SqliteUnitOfWork, UnitOfWork
from stockroom.services.locks import KeyedLock
from stockroom.services.periods import parse_datetime, to_iso, utc_now

log = logging.getLogger("stockroom.ledger")

T = TypeVar("T")


@dataclass(frozen=True)
class MutationResult:
    stock_record: StockRecord
    transaction: StockTransaction


@dataclass(frozen=True)
class BulkEntryResult:
    product_id: object
    success: bool
    previous_stock: Optional[int] = None
    new_stock: Optional[int] = None
    difference: Optional[int] = None
    transaction_id: Optional[int] = None
    error: Optional[str] = None
    error_type: Optional[str] = None


@dataclass(frozen=True)
class BulkResult:
    results: list[BulkEntryResult]
    success_count: int
    error_count: int


@dataclass(frozen=True)
class LowStockItem:
    product: Product
    stock_record: StockRecord

    @property
    def available_stock(self) -> int:
        return available_stock(self.stock_record)


@dataclass(frozen=True)
class StockStatus:
    product: Product
    stock_record: StockRecord
    available_stock: int
    is_low_stock: bool


@dataclass(frozen=True)
class HistoryPage:
    items: list[StockTransaction]
    page: int
    page_size: int
    total: int
    current_stock: int

    @property
    def pages(self) -> int:
        return (self.total + self.page_size - 1) // self.page_size


@dataclass(frozen=True)
class ReconciliationReport:
    product_id: int
    ledger_total: int
    current_stock: int

    @property
    def consistent(self) -> bool:
        return self.ledger_total == self.current_stock


# SQLite INTEGER is a signed 64-bit value
MAX_QUANTITY = 2**63 - 1


def _parse_int(value: object, field: str, minimum: int = 0) -> int:
    if value is None or isinstance(value, bool):
        raise ValidationError(f"{field} is required and must be an integer.")
    if isinstance(value, int):
        parsed = value
    elif isinstance(value, float):
        if not value.is_integer():
            raise ValidationError(f"{field} must be a whole number. Received: {value}")
        parsed = int(value)
    elif isinstance(value, str):
        try:
            parsed = int(value.strip())
        except ValueError:
            raise ValidationError(f"{field} must be an integer. Received: {value!r}") from None
    else:
        raise ValidationError(f"{field} must be an integer. Received: {value!r}")
    if parsed < minimum:
        raise ValidationError(f"{field} must be >= {minimum}. Received: {parsed}")
    if parsed > MAX_QUANTITY:
        raise ValidationError(f"{field} must be <= {MAX_QUANTITY}. Received: {parsed}")
    return parsed


def _text(value: object) -> str:
    if value is None:
        return ""
    return str(value).strip()


def _epoch_millis() -> int:
    return int(time.time() * 1000)


class StockLedgerService:
    """Single authority for stock quantities and their audit trail.

    Every mutation runs read -> compute -> write -> append under a per-product
    lock, inside one database transaction, with a compare-and-set on the
    record version. Lost races are retried a bounded number of times.
    """

    def __init__(
        self,
        repo,
        ledger: SqliteTransactionLedger | None = None,
        uow_factory: Callable[[], UnitOfWork] | None = None,
        locks: KeyedLock | None = None,
        max_attempts: int = 5,
        retry_backoff_seconds: float = 0.01,
        max_page_size: int = 100,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.repo = repo
        self.ledger = ledger or SqliteTransactionLedger(repo)
        self.uow_factory = uow_factory or (lambda: SqliteUnitOfWork(repo, self.ledger))
        self.locks = locks or KeyedLock()
        self.max_attempts = max(1, int(max_attempts))
        self.retry_backoff_seconds = float(retry_backoff_seconds)
        self.max_page_size = int(max_page_size)
        self.clock = clock

    # ---------- Mutations ----------
    def apply_mutation(
        self,
        product_id: object,
        kind: MutationKind | str,
        amount: object,
        reason: Optional[str] = None,
        reference: Optional[str] = None,
        actor: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> MutationResult:
        mutation = MutationKind.parse(kind)
        qty = _parse_int(amount, "amount")
        pid = _parse_int(product_id, "product_id", minimum=1)
        reason = _text(reason) or f"Manual {mutation.value}"
        reference = _text(reference) or f"ADJ-{_epoch_millis()}"
        idempotency_key = _text(idempotency_key) or None

        with self.locks.hold(pid):
            result = self._with_retry(
                "stock mutation",
                lambda: self._apply_once(pid, mutation, qty, reason, reference, actor, idempotency_key),
            )

        txn = result.transaction
        log.info(
            "stock_mutation_applied product_id=%s kind=%s requested=%s previous=%s new=%s txn_id=%s reference=%s actor=%s",
            pid,
            mutation.value,
            qty,
            txn.previous_stock,
            txn.new_stock,
            txn.id,
            txn.reference,
            actor,
        )
        if mutation is MutationKind.REMOVE and qty > txn.previous_stock:
            log.warning(
                "stock_removal_clamped product_id=%s requested=%s available=%s", pid, qty, txn.previous_stock
            )
        return result

    def _apply_once(
        self,
        product_id: int,
        kind: MutationKind,
        amount: int,
        reason: str,
        reference: str,
        actor: Optional[str],
        idempotency_key: Optional[str],
    ) -> MutationResult:
        with self.uow_factory() as uow:
            if idempotency_key:
                existing = uow.find_transaction_by_key(idempotency_key)
                if existing is not None:
                    if existing.product_id != product_id:
                        raise ConflictError(
                            f"Idempotency key {idempotency_key!r} already used for product {existing.product_id}."
                        )
                    record = uow.get_stock_record(product_id)
                    log.info("stock_mutation_replayed product_id=%s txn_id=%s", product_id, existing.id)
                    return MutationResult(stock_record=record, transaction=existing)

            record = uow.get_stock_record(product_id)
            if record is None:
                raise NotFoundError(f"No stock record for product {product_id}.")

            new_stock = next_stock(kind, record.current_stock, amount)
            if new_stock > MAX_QUANTITY:
                raise ValidationError(
                    f"Stock for product {product_id} would exceed {MAX_QUANTITY}. Current: {record.current_stock}"
                )
            new_reserved = min(record.reserved_stock, new_stock)
            now_iso = to_iso(self.clock())

            if not uow.compare_and_set_stock(product_id, record.version, new_stock, new_reserved, now_iso):
                raise ConcurrentUpdateError(f"Stock record for product {product_id} changed concurrently.")

            entry = StockTransaction(
                id=0,
                product_id=product_id,
                type=kind.transaction_type,
                kind=kind,
                quantity=new_stock - record.current_stock,
                previous_stock=record.current_stock,
                new_stock=new_stock,
                reason=reason,
                reference=reference,
                actor=actor,
                timestamp=now_iso,
                idempotency_key=idempotency_key,
            )
            txn_id = uow.append_transaction(entry)

        updated = replace(
            record,
            current_stock=new_stock,
            reserved_stock=new_reserved,
            last_updated=now_iso,
            version=record.version + 1,
        )
        return MutationResult(stock_record=updated, transaction=replace(entry, id=txn_id))

    def bulk_apply_mutation(self, entries: Iterable[Mapping], actor: Optional[str] = None) -> BulkResult:
        """Set absolute stock for many products; a failing entry never stops the rest."""
        if entries is None or isinstance(entries, (str, bytes, Mapping)):
            raise ValidationError("Updates array is required.")
        entries = list(entries)

        results: list[BulkEntryResult] = []
        for index, entry in enumerate(entries):
            product_id = entry.get("product_id") if isinstance(entry, Mapping) else None
            try:
                if not isinstance(entry, Mapping):
                    raise ValidationError("Each update must be a mapping.")
                if product_id is None:
                    raise ValidationError("product_id is required.")
                amount = entry.get("amount", entry.get("quantity"))
                if amount is None:
                    raise ValidationError("amount is required.")

                outcome = self.apply_mutation(
                    product_id,
                    MutationKind.SET,
                    amount,
                    reason=entry.get("reason") or "Bulk update",
                    reference=entry.get("reference") or f"BULK-{_epoch_millis()}-{product_id}",
                    actor=actor,
                    idempotency_key=entry.get("idempotency_key"),
                )
                txn = outcome.transaction
                results.append(
                    BulkEntryResult(
                        product_id=product_id,
                        success=True,
                        previous_stock=txn.previous_stock,
                        new_stock=txn.new_stock,
                        difference=txn.quantity,
                        transaction_id=txn.id,
                    )
                )
            except AppError as exc:
                log.warning("bulk_entry_failed index=%s product_id=%s error=%s", index, product_id, exc)
                results.append(
                    BulkEntryResult(
                        product_id=product_id,
                        success=False,
                        error=str(exc),
                        error_type=type(exc).__name__,
                    )
                )

        success_count = sum(1 for r in results if r.success)
        error_count = len(results) - success_count
        log.info("bulk_mutation_completed entries=%s succeeded=%s failed=%s", len(results), success_count, error_count)
        return BulkResult(results=results, success_count=success_count, error_count=error_count)

    def reserve(self, product_id: object, amount: object) -> StockRecord:
        qty = _parse_int(amount, "amount", minimum=1)
        pid = _parse_int(product_id, "product_id", minimum=1)

        def change(record: StockRecord) -> int:
            if qty > available_stock(record):
                raise InsufficientStockError(
                    f"Not enough stock to reserve for product {pid}. Available: {available_stock(record)}"
                )
            return record.reserved_stock + qty

        with self.locks.hold(pid):
            record = self._with_retry("stock reservation", lambda: self._set_reserved_once(pid, change))
        log.info("stock_reserved product_id=%s amount=%s reserved=%s", pid, qty, record.reserved_stock)
        return record

    def release(self, product_id: object, amount: object) -> StockRecord:
        qty = _parse_int(amount, "amount", minimum=1)
        pid = _parse_int(product_id, "product_id", minimum=1)

        def change(record: StockRecord) -> int:
            if qty > record.reserved_stock:
                raise ValidationError(
                    f"Cannot release {qty} units for product {pid}. Reserved: {record.reserved_stock}"
                )
            return record.reserved_stock - qty

        with self.locks.hold(pid):
            record = self._with_retry("stock release", lambda: self._set_reserved_once(pid, change))
        log.info("stock_released product_id=%s amount=%s reserved=%s", pid, qty, record.reserved_stock)
        return record

    def _set_reserved_once(self, product_id: int, change: Callable[[StockRecord], int]) -> StockRecord:
        with self.uow_factory() as uow:
            record = uow.get_stock_record(product_id)
            if record is None:
                raise NotFoundError(f"No stock record for product {product_id}.")
            reserved = change(record)
            now_iso = to_iso(self.clock())
            if not uow.compare_and_set_stock(product_id, record.version, record.current_stock, reserved, now_iso):
                raise ConcurrentUpdateError(f"Stock record for product {product_id} changed concurrently.")
        return replace(record, reserved_stock=reserved, last_updated=now_iso, version=record.version + 1)

    def _with_retry(self, action: str, fn: Callable[[], T]) -> T:
        last_exc: ConcurrentUpdateError | None = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                with sqlite_errors(action):
                    return fn()
            except ConcurrentUpdateError as exc:
                last_exc = exc
                log.warning("stock_write_conflict action=%s attempt=%s error=%s", action, attempt, exc)
                if attempt < self.max_attempts and self.retry_backoff_seconds > 0:
                    time.sleep(self.retry_backoff_seconds * attempt)
        raise RetryExhaustedError(f"{action} failed after {self.max_attempts} attempts: {last_exc}") from last_exc

    # ---------- Reads ----------
    def get_stock_status(self, product_id: object) -> StockStatus:
        pid = _parse_int(product_id, "product_id", minimum=1)
        with sqlite_errors("stock status"):
            product = self.repo.get_product(pid)
            record = self.repo.get_stock_record(pid)
        if product is None or record is None:
            raise NotFoundError(f"Inventory not found for product {pid}.")
        return StockStatus(
            product=product,
            stock_record=record,
            available_stock=available_stock(record),
            is_low_stock=is_low_stock(record, product.reorder_threshold),
        )

    def get_low_stock_items(self, active_only: bool = True) -> list[LowStockItem]:
        """Records at or under their reorder threshold, most urgent first."""
        with sqlite_errors("low stock scan"):
            rows = self.repo.list_low_stock(active_only=active_only)
        return [LowStockItem(product=p, stock_record=s) for p, s in rows]

    def get_transaction_history(
        self,
        product_id: object,
        start: object = None,
        end: object = None,
        page: object = 1,
        page_size: object = 20,
    ) -> HistoryPage:
        pid = _parse_int(product_id, "product_id", minimum=1)
        page_no = _parse_int(page, "page", minimum=1)
        size = _parse_int(page_size, "page_size", minimum=1)
        if size > self.max_page_size:
            raise ValidationError(f"page_size must be <= {self.max_page_size}.")
        start_iso = to_iso(parse_datetime(start, "start")) if start is not None else None
        end_iso = to_iso(parse_datetime(end, "end")) if end is not None else None
        if start_iso and end_iso and start_iso > end_iso:
            raise ValidationError("Start date cannot be greater than end date.")

        with sqlite_errors("transaction history"):
            product = self.repo.get_product(pid)
            if product is None:
                raise NotFoundError(f"Product not found: {pid}")
            items, total = self.ledger.query(pid, start_iso, end_iso, page_no, size)
            record = self.repo.get_stock_record(pid)

        return HistoryPage(
            items=items,
            page=page_no,
            page_size=size,
            total=total,
            current_stock=record.current_stock if record else 0,
        )

    def reconcile(self, product_id: object) -> ReconciliationReport:
        pid = _parse_int(product_id, "product_id", minimum=1)
        with sqlite_errors("ledger reconciliation"):
            record = self.repo.get_stock_record(pid)
            if record is None:
                raise NotFoundError(f"No stock record for product {pid}.")
            total = self.ledger.sum_deltas(pid)
        return ReconciliationReport(product_id=pid, ledger_total=total, current_stock=record.current_stock)
