from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from stockroom.domain.errors import ValidationError


class _ParsableEnum(str, Enum):
    @classmethod
    def _aliases(cls) -> dict[str, str]:
        return {}

    @classmethod
    def parse(cls, value):
        if isinstance(value, cls):
            return value
        if not isinstance(value, str):
            raise ValidationError(f"Invalid {cls.__name__}: {value!r}")
        raw = value.strip().lower()
        raw = cls._aliases().get(raw, raw)
        try:
            return cls(raw)
        except ValueError:
            allowed = ", ".join(m.value for m in cls)
            raise ValidationError(f"Invalid {cls.__name__} {value!r}. Use: {allowed}") from None


class ProductStatus(_ParsableEnum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    DISCONTINUED = "discontinued"


class TransactionType(_ParsableEnum):
    INBOUND = "inbound"
    OUTBOUND = "outbound"
    ADJUSTMENT = "adjustment"


class MutationKind(_ParsableEnum):
    ADD = "add"
    REMOVE = "remove"
    SET = "set"

    @property
    def transaction_type(self) -> TransactionType:
        return {
            MutationKind.ADD: TransactionType.INBOUND,
            MutationKind.REMOVE: TransactionType.OUTBOUND,
            MutationKind.SET: TransactionType.ADJUSTMENT,
        }[self]


class Period(_ParsableEnum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    YEARLY = "yearly"

    @classmethod
    def _aliases(cls) -> dict[str, str]:
        return {"day": "daily", "week": "weekly", "month": "monthly", "year": "yearly", "annual": "yearly"}


SALE_STATUSES = ("pending", "completed", "cancelled", "refunded")


@dataclass(frozen=True)
class Category:
    id: int
    name: str


@dataclass(frozen=True)
class Product:
    id: int
    sku: str
    name: str
    price: float
    cost: float
    reorder_threshold: int
    status: ProductStatus = ProductStatus.ACTIVE
    category_id: Optional[int] = None
    marketplace: Optional[str] = None

    @property
    def profit_amount(self) -> float:
        return profit_amount(self)

    @property
    def profit_margin(self) -> float:
        return profit_margin(self)


@dataclass(frozen=True)
class StockRecord:
    product_id: int
    current_stock: int
    reserved_stock: int
    cost_per_unit: float
    last_updated: str
    version: int = 0
    warehouse: Optional[str] = None
    shelf: Optional[str] = None

    @property
    def available_stock(self) -> int:
        return available_stock(self)


@dataclass(frozen=True)
class StockTransaction:
    id: int
    product_id: int
    type: TransactionType
    kind: MutationKind
    quantity: int
    previous_stock: int
    new_stock: int
    reason: str
    reference: Optional[str]
    actor: Optional[str]
    timestamp: str
    idempotency_key: Optional[str] = None


@dataclass(frozen=True)
class SaleRecord:
    id: int
    order_id: str
    product_id: int
    quantity: int
    unit_price: float
    final_amount: float
    marketplace: str
    sale_date: str
    fee_marketplace: float = 0.0
    fee_payment: float = 0.0
    fee_shipping: float = 0.0
    status: str = "completed"

    @property
    def total_fees(self) -> float:
        return total_fees(self)

    @property
    def net_amount(self) -> float:
        return net_amount(self)


# Derived values. Never persisted; every caller goes through these.

def available_stock(record: StockRecord) -> int:
    return int(record.current_stock) - int(record.reserved_stock)


def is_low_stock(record: StockRecord, reorder_threshold: int) -> bool:
    return available_stock(record) <= int(reorder_threshold)


def next_stock(kind: MutationKind, current: int, amount: int) -> int:
    if kind is MutationKind.ADD:
        return current + amount
    if kind is MutationKind.REMOVE:
        # over-removal clamps to zero instead of failing
        return max(0, current - amount)
    return amount


def profit_amount(product: Product) -> float:
    return float(product.price) - float(product.cost)


def profit_margin(product: Product) -> float:
    if not product.price:
        return 0.0
    return round(profit_amount(product) / float(product.price) * 100, 2)


def total_fees(sale: SaleRecord) -> float:
    return float(sale.fee_marketplace) + float(sale.fee_payment) + float(sale.fee_shipping)


def net_amount(sale: SaleRecord) -> float:
    return float(sale.final_amount) - total_fees(sale)
