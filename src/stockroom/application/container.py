from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from stockroom.config import Settings
from stockroom.repositories.ledger import SqliteTransactionLedger
from stockroom.repositories.sqlite_repo import SqliteRepository
from stockroom.services.cache import TtlCache
from stockroom.services.catalog_service import CatalogService
from stockroom.services.excel_service import ExcelService
from stockroom.services.operations_service import OperationsService
from stockroom.services.revenue_service import RevenueAggregator
from stockroom.services.sales_service import SalesService
from stockroom.services.stock_ledger_service import StockLedgerService


@dataclass(frozen=True)
class AppContainer:
    repo: SqliteRepository
    ledger: SqliteTransactionLedger
    catalog: CatalogService
    stock: StockLedgerService
    revenue: RevenueAggregator
    sales: SalesService
    excel: ExcelService
    operations: OperationsService


def build_container(db_path: Path | str | None = None, settings: Optional[Settings] = None) -> AppContainer:
    if db_path is None and settings is None:
        raise ValueError("db_path or settings is required")
    db_path = Path(db_path) if db_path is not None else settings.db_path
    timeout = settings.sqlite_timeout_seconds if settings else 5.0

    repo = SqliteRepository(db_path, timeout=timeout)
    repo.init_db()

    ledger = SqliteTransactionLedger(repo)
    catalog = CatalogService(repo, default_reorder_threshold=settings.default_reorder_threshold if settings else 10)
    stock = StockLedgerService(
        repo,
        ledger=ledger,
        max_attempts=settings.mutation_max_attempts if settings else 5,
        retry_backoff_seconds=settings.retry_backoff_seconds if settings else 0.01,
        max_page_size=settings.max_page_size if settings else 100,
    )
    revenue = RevenueAggregator(repo, cache=TtlCache(settings.summary_cache_ttl_seconds if settings else 0))
    sales = SalesService(repo, revenue)
    excel = ExcelService(repo, stock, revenue)
    operations = OperationsService(repo, stock, db_path=db_path, logs_dir=settings.logs_dir if settings else None)

    return AppContainer(
        repo=repo,
        ledger=ledger,
        catalog=catalog,
        stock=stock,
        revenue=revenue,
        sales=sales,
        excel=excel,
        operations=operations,
    )
