from __future__ import annotations

import logging
from typing import Optional

from stockroom.domain.errors import NotFoundError, ValidationError
from stockroom.domain.models import Category, Product, ProductStatus
from stockroom.repositories.sqlite_repo import sqlite_errors
from stockroom.services.periods import to_iso, utc_now

log = logging.getLogger(__name__)


def _number(value: object, field: str) -> float:
    if value is None or isinstance(value, bool):
        raise ValidationError(f"{field} is required.")
    try:
        number = float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        raise ValidationError(f"{field} must be a number. Received: {value!r}") from None
    if number != number:
        raise ValidationError(f"{field} must be a number. Received: {value!r}")
    return number


def _whole(value: object, field: str) -> int:
    number = _number(value, field)
    if not number.is_integer():
        raise ValidationError(f"{field} must be a whole number. Received: {value!r}")
    return int(number)


class CatalogService:
    def __init__(self, repo, default_reorder_threshold: int = 10):
        self.repo = repo
        self.default_reorder_threshold = int(default_reorder_threshold)

    def add_category(self, name: str) -> Category:
        name = (name or "").strip()
        if not name:
            raise ValidationError("Category name is required.")
        with sqlite_errors("add category"):
            cid = self.repo.add_category(name)
        return Category(id=cid, name=name)

    def list_categories(self) -> list[Category]:
        with sqlite_errors("list categories"):
            return self.repo.list_categories()

    def add_product(
        self,
        sku: str,
        name: str,
        price: float,
        cost: float,
        reorder_threshold: Optional[int] = None,
        status: ProductStatus | str = ProductStatus.ACTIVE,
        category_id: Optional[int] = None,
        marketplace: Optional[str] = None,
        cost_per_unit: Optional[float] = None,
        warehouse: Optional[str] = None,
        shelf: Optional[str] = None,
    ) -> Product:
        """Create a product and its stock record (starting at zero) in one write."""
        sku = (sku or "").strip()
        name = (name or "").strip()
        if not sku or not name:
            raise ValidationError("SKU and Name are required.")
        cost = _number(cost, "Cost")
        price = _number(price, "Price")
        if cost < 0:
            raise ValidationError("Cost must be >= 0.")
        if price <= 0:
            raise ValidationError("Price must be > 0.")
        threshold = (
            self.default_reorder_threshold
            if reorder_threshold is None
            else _whole(reorder_threshold, "Reorder threshold")
        )
        if threshold < 0:
            raise ValidationError("Reorder threshold must be >= 0.")
        if cost_per_unit is not None:
            cost_per_unit = _number(cost_per_unit, "Cost per unit")
            if cost_per_unit < 0:
                raise ValidationError("Cost per unit must be >= 0.")
        product_status = ProductStatus.parse(status)

        with sqlite_errors("add product"):
            pid = self.repo.add_product(
                sku=sku,
                name=name,
                price=price,
                cost=cost,
                reorder_threshold=threshold,
                created_at=to_iso(utc_now()),
                status=product_status.value,
                category_id=category_id,
                marketplace=(marketplace or "").strip() or None,
                cost_per_unit=cost_per_unit,
                warehouse=warehouse,
                shelf=shelf,
            )
            product = self.repo.get_product(pid)
        log.info("product_created product_id=%s sku=%s", pid, sku)
        return product

    def get_product(self, product_id: int) -> Product:
        with sqlite_errors("get product"):
            product = self.repo.get_product(_whole(product_id, "product_id"))
        if not product:
            raise NotFoundError("Product not found.")
        return product

    def get_product_by_sku(self, sku: str) -> Product:
        with sqlite_errors("get product"):
            product = self.repo.get_product_by_sku((sku or "").strip())
        if not product:
            raise NotFoundError("Product not found.")
        return product

    def list_products(self, status: ProductStatus | str | None = None) -> list[Product]:
        value = ProductStatus.parse(status).value if status is not None else None
        with sqlite_errors("list products"):
            return self.repo.list_products(value)

    def set_status(self, product_id: int, status: ProductStatus | str) -> Product:
        """Soft archive / reactivate. The stock record is kept either way."""
        product_status = ProductStatus.parse(status)
        with sqlite_errors("set product status"):
            if not self.repo.set_product_status(_whole(product_id, "product_id"), product_status.value):
                raise NotFoundError("Product not found.")
        log.info("product_status_changed product_id=%s status=%s", product_id, product_status.value)
        return self.get_product(product_id)

    def update_reorder_threshold(self, product_id: int, threshold: int) -> Product:
        threshold = _whole(threshold, "Reorder threshold")
        if threshold < 0:
            raise ValidationError("Reorder threshold must be >= 0.")
        with sqlite_errors("update reorder threshold"):
            if not self.repo.update_reorder_threshold(_whole(product_id, "product_id"), threshold):
                raise NotFoundError("Product not found.")
        return self.get_product(product_id)
