from .catalog_service import CatalogService
from .stock_ledger_service import StockLedgerService
from .revenue_service import RevenueAggregator
from .sales_service import SalesService
from .excel_service import ExcelService
from .operations_service import OperationsService

__all__ = [
    "CatalogService",
    "StockLedgerService",
    "RevenueAggregator",
    "SalesService",
    "ExcelService",
    "OperationsService",
]
