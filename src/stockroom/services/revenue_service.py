from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from stockroom.domain.errors import ValidationError
from stockroom.domain.models import Period
from stockroom.repositories.sqlite_repo import sqlite_errors
from stockroom.services.cache import TtlCache
from stockroom.services.periods import forward_window, lookback_window, parse_datetime, shift, to_iso, utc_now

log = logging.getLogger("stockroom.analytics")

# (index strftime format, label strftime format) per bucket granularity
_BUCKET_FORMATS = {
    Period.DAILY: ("%j", "%Y-%m-%d"),
    Period.WEEKLY: ("%W", "%Y-W%W"),
    Period.MONTHLY: ("%m", "%Y-%m"),
    Period.YEARLY: ("%Y", "%Y"),
}


def _average(revenue: float, count: int) -> float:
    return revenue / count if count else 0.0


@dataclass(frozen=True)
class RevenueSummary:
    period: Optional[str]
    marketplace: Optional[str]
    start: str
    end: str
    total_revenue: float = 0.0
    total_sales: int = 0
    total_quantity: int = 0

    @property
    def average_order_value(self) -> float:
        return _average(self.total_revenue, self.total_sales)


@dataclass(frozen=True)
class RevenueBucket:
    granularity: str
    year: int
    index: int
    label: str
    total_revenue: float
    total_sales: int
    total_quantity: int

    @property
    def key(self) -> tuple[int, int]:
        return self.year, self.index

    @property
    def average_order_value(self) -> float:
        return _average(self.total_revenue, self.total_sales)


@dataclass(frozen=True)
class PeriodComparison:
    period_a: RevenueSummary
    period_b: RevenueSummary
    revenue_change: float
    revenue_change_percent: float
    sales_change: int
    quantity_change: int


@dataclass(frozen=True)
class ProductPerformance:
    product_id: int
    sku: str
    name: str
    total_quantity: int
    total_revenue: float
    sales_count: int


@dataclass(frozen=True)
class GroupPerformance:
    key: str
    total_revenue: float
    total_sales: int
    total_quantity: int

    @property
    def average_order_value(self) -> float:
        return _average(self.total_revenue, self.total_sales)


def _parse_period(value, allowed: tuple[Period, ...] = tuple(Period)) -> Period:
    period = Period.parse(value)
    if period not in allowed:
        names = ", ".join(p.value for p in allowed)
        raise ValidationError(f"Invalid period {value!r}. Use: {names}")
    return period


def _positive_int(value: object, field: str) -> int:
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be a positive integer.")
    try:
        parsed = int(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        raise ValidationError(f"{field} must be a positive integer. Received: {value!r}") from None
    if parsed < 1 or (isinstance(value, float) and not value.is_integer()):
        raise ValidationError(f"{field} must be a positive integer. Received: {value!r}")
    return parsed


def _marketplace(value: Optional[str]) -> Optional[str]:
    value = (value or "").strip()
    return value or None


class RevenueAggregator:
    """Read-only rollups over the sales stream; nothing here writes."""

    def __init__(self, repo, cache: TtlCache | None = None, clock: Callable[[], datetime] = utc_now):
        self.repo = repo
        self.cache = cache or TtlCache(0)
        self.clock = clock

    def invalidate_cache(self) -> None:
        self.cache.invalidate()

    def _cached(self, key: tuple, now, compute):
        # explicit "now" means a reproducible query: always compute
        if now is not None:
            return compute(parse_datetime(now, "now"))
        return self.cache.get_or_compute(key, lambda: compute(self.clock()))

    def summarize(self, period: Period | str = Period.MONTHLY, marketplace: Optional[str] = None, now=None) -> RevenueSummary:
        p = _parse_period(period)
        mk = _marketplace(marketplace)

        def compute(at: datetime) -> RevenueSummary:
            start, end = lookback_window(p, at)
            return self._totals(p.value, mk, start, end, include_end=True)

        return self._cached(("summarize", p, mk), now, compute)

    def _totals(
        self, period: Optional[str], marketplace: Optional[str], start: datetime, end: datetime, include_end: bool
    ) -> RevenueSummary:
        start_iso, end_iso = to_iso(start), to_iso(end)
        with sqlite_errors("revenue totals"):
            count, revenue, qty = self.repo.sales_totals(start_iso, end_iso, marketplace, include_end=include_end)
        log.debug("revenue_totals start=%s end=%s marketplace=%s sales=%s", start_iso, end_iso, marketplace, count)
        return RevenueSummary(
            period=period,
            marketplace=marketplace,
            start=start_iso,
            end=end_iso,
            total_revenue=revenue,
            total_sales=count,
            total_quantity=qty,
        )

    def trend(
        self,
        granularity: Period | str = Period.DAILY,
        window_days: int = 30,
        marketplace: Optional[str] = None,
        now=None,
    ) -> list[RevenueBucket]:
        g = _parse_period(granularity, tuple(_BUCKET_FORMATS))
        days = _positive_int(window_days, "window_days")
        mk = _marketplace(marketplace)
        index_fmt, label_fmt = _BUCKET_FORMATS[g]

        def compute(at: datetime) -> list[RevenueBucket]:
            start = shift(at, Period.DAILY, -days)
            with sqlite_errors("revenue trend"):
                rows = self.repo.sales_buckets(index_fmt, label_fmt, to_iso(start), to_iso(at), mk)
            return [
                RevenueBucket(
                    granularity=g.value,
                    year=year,
                    index=idx,
                    label=label,
                    total_revenue=revenue,
                    total_sales=count,
                    total_quantity=qty,
                )
                for year, idx, label, revenue, count, qty in rows
            ]

        return self._cached(("trend", g, days, mk), now, compute)

    def compare(self, period_a_start, period_b_start, granularity: Period | str = Period.MONTHLY) -> PeriodComparison:
        """Compare two equally long windows; period B is the baseline."""
        g = _parse_period(granularity)
        a_start, a_end = forward_window(parse_datetime(period_a_start, "period_a_start"), g)
        b_start, b_end = forward_window(parse_datetime(period_b_start, "period_b_start"), g)

        a = self._totals(g.value, None, a_start, a_end, include_end=False)
        b = self._totals(g.value, None, b_start, b_end, include_end=False)

        change = a.total_revenue - b.total_revenue
        percent = (change / b.total_revenue * 100) if b.total_revenue else 0.0
        return PeriodComparison(
            period_a=a,
            period_b=b,
            revenue_change=change,
            revenue_change_percent=percent,
            sales_change=a.total_sales - b.total_sales,
            quantity_change=a.total_quantity - b.total_quantity,
        )

    def top_products(
        self, window_days: int = 30, limit: int = 10, marketplace: Optional[str] = None, now=None
    ) -> list[ProductPerformance]:
        days = _positive_int(window_days, "window_days")
        top_n = _positive_int(limit, "limit")
        mk = _marketplace(marketplace)

        def compute(at: datetime) -> list[ProductPerformance]:
            start = shift(at, Period.DAILY, -days)
            with sqlite_errors("top products"):
                rows = self.repo.product_sales_totals(to_iso(start), to_iso(at), mk)
            # rows arrive in first-sale order; sorted() is stable so ties keep it
            ranked = sorted(rows, key=lambda r: r[3], reverse=True)
            return [
                ProductPerformance(
                    product_id=pid, sku=sku, name=name, total_quantity=qty, total_revenue=revenue, sales_count=count
                )
                for pid, sku, name, qty, revenue, count in ranked[:top_n]
            ]

        return self._cached(("top_products", days, top_n, mk), now, compute)

    def marketplace_breakdown(self, period: Period | str = Period.MONTHLY, now=None) -> list[GroupPerformance]:
        p = _parse_period(period)

        def compute(at: datetime) -> list[GroupPerformance]:
            start, end = lookback_window(p, at)
            with sqlite_errors("marketplace breakdown"):
                rows = self.repo.marketplace_totals(to_iso(start), to_iso(end))
            return [
                GroupPerformance(key=name, total_revenue=revenue, total_sales=count, total_quantity=qty)
                for name, revenue, count, qty in rows
            ]

        return self._cached(("marketplaces", p), now, compute)

    def category_performance(
        self, period: Period | str = Period.MONTHLY, marketplace: Optional[str] = None, now=None
    ) -> list[GroupPerformance]:
        p = _parse_period(period)
        mk = _marketplace(marketplace)

        def compute(at: datetime) -> list[GroupPerformance]:
            start, end = lookback_window(p, at)
            with sqlite_errors("category performance"):
                rows = self.repo.category_totals(to_iso(start), to_iso(end), mk)
            return [
                GroupPerformance(key=name, total_revenue=revenue, total_sales=count, total_quantity=qty)
                for _cid, name, revenue, count, qty in rows
            ]

        return self._cached(("categories", p, mk), now, compute)
