from __future__ import annotations

import logging
from typing import Mapping, Optional

from stockroom.domain.errors import NotFoundError, ValidationError
from stockroom.domain.models import SALE_STATUSES, SaleRecord
from stockroom.repositories.sqlite_repo import sqlite_errors
from stockroom.services.periods import parse_datetime, to_iso, utc_now

log = logging.getLogger("stockroom.sales")

_FEE_KEYS = ("marketplace", "payment", "shipping")


def _money(value: object, field: str) -> float:
    if value is None or isinstance(value, bool):
        raise ValidationError(f"{field} is required.")
    try:
        amount = float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        raise ValidationError(f"{field} must be a number. Received: {value!r}") from None
    if amount != amount or amount < 0:
        raise ValidationError(f"{field} must be >= 0.")
    return amount


def _product_id(value: object) -> int:
    if isinstance(value, bool):
        raise ValidationError("product_id must be an integer.")
    try:
        return int(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        raise ValidationError(f"product_id must be an integer. Received: {value!r}") from None


class SalesService:
    """Feeds the sales stream the revenue rollups read from.

    Recording a sale does not touch stock; callers that ship goods remove
    stock through the ledger with the order id as reference.
    """

    def __init__(self, repo, revenue=None):
        self.repo = repo
        self.revenue = revenue

    def record_sale(
        self,
        order_id: str,
        product_id: int,
        quantity: int,
        unit_price: float,
        final_amount: float,
        marketplace: str,
        fees: Optional[Mapping[str, float]] = None,
        sale_date=None,
    ) -> SaleRecord:
        order_id = (order_id or "").strip()
        marketplace = (marketplace or "").strip()
        if not order_id:
            raise ValidationError("order_id is required.")
        if not marketplace:
            raise ValidationError("marketplace is required.")
        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
            raise ValidationError("Qty must be >= 1.")
        price = _money(unit_price, "unit_price")
        final = _money(final_amount, "final_amount")

        fees = dict(fees or {})
        unknown = set(fees) - set(_FEE_KEYS)
        if unknown:
            raise ValidationError(f"Unknown fee types: {', '.join(sorted(unknown))}")
        fee_values = {k: _money(fees.get(k, 0), f"fees.{k}") for k in _FEE_KEYS}

        when = parse_datetime(sale_date, "sale_date") if sale_date is not None else utc_now()
        pid = _product_id(product_id)

        with sqlite_errors("record sale"):
            if self.repo.get_product(pid) is None:
                raise NotFoundError("Product not found.")
            sale_id = self.repo.add_sale(
                order_id=order_id,
                product_id=pid,
                quantity=quantity,
                unit_price=price,
                final_amount=final,
                marketplace=marketplace,
                sale_date=to_iso(when),
                fee_marketplace=fee_values["marketplace"],
                fee_payment=fee_values["payment"],
                fee_shipping=fee_values["shipping"],
            )
            sale = self.repo.get_sale_by_order_id(order_id)

        if self.revenue is not None:
            self.revenue.invalidate_cache()
        log.info(
            "sale_recorded sale_id=%s order_id=%s product_id=%s qty=%s amount=%.2f marketplace=%s",
            sale_id,
            order_id,
            product_id,
            quantity,
            final,
            marketplace,
        )
        return sale

    def get_sale(self, order_id: str) -> SaleRecord:
        with sqlite_errors("get sale"):
            sale = self.repo.get_sale_by_order_id((order_id or "").strip())
        if sale is None:
            raise NotFoundError("Sale not found.")
        return sale

    def update_sale_status(self, order_id: str, status: str) -> SaleRecord:
        status = (status or "").strip().lower()
        if status not in SALE_STATUSES:
            raise ValidationError(f"Invalid sale status {status!r}. Use: {', '.join(SALE_STATUSES)}")
        with sqlite_errors("update sale status"):
            if not self.repo.update_sale_status(order_id, status):
                raise NotFoundError("Sale not found.")
            sale = self.repo.get_sale_by_order_id(order_id)
        if self.revenue is not None:
            self.revenue.invalidate_cache()
        log.info("sale_status_changed order_id=%s status=%s", order_id, status)
        return sale

    def list_sales_between(self, start, end, marketplace: Optional[str] = None) -> list[SaleRecord]:
        start_iso = to_iso(parse_datetime(start, "start"))
        end_iso = to_iso(parse_datetime(end, "end"))
        with sqlite_errors("list sales"):
            return self.repo.list_sales_between(start_iso, end_iso, (marketplace or "").strip() or None)
