from .models import (
    Category,
    MutationKind,
    Period,
    Product,
    ProductStatus,
    SaleRecord,
    StockRecord,
    StockTransaction,
    TransactionType,
)
from .errors import (
    AppError,
    ConcurrentUpdateError,
    ConflictError,
    InsufficientStockError,
    NotFoundError,
    RetryExhaustedError,
    StorageError,
    ValidationError,
)

__all__ = [
    "Category",
    "MutationKind",
    "Period",
    "Product",
    "ProductStatus",
    "SaleRecord",
    "StockRecord",
    "StockTransaction",
    "TransactionType",
    "AppError",
    "ConcurrentUpdateError",
    "ConflictError",
    "InsufficientStockError",
    "NotFoundError",
    "RetryExhaustedError",
    "StorageError",
    "ValidationError",
]
