from __future__ import annotations

import logging
from typing import Optional

from openpyxl import Workbook, load_workbook
from openpyxl.styles import Font
from openpyxl.utils import get_column_letter
from openpyxl.worksheet.table import Table, TableStyleInfo

from stockroom.domain.errors import NotFoundError, ValidationError
from stockroom.domain.models import Period
from stockroom.services.stock_ledger_service import BulkEntryResult, BulkResult

log = logging.getLogger(__name__)


def _money(cell) -> None:
    cell.number_format = "#,##0.00"


def _bold_row(ws, r: int) -> None:
    for c in ws[r]:
        c.font = Font(bold=True)


def _set_widths(ws, widths: dict[str, int]) -> None:
    for col, w in widths.items():
        ws.column_dimensions[col].width = w


def _add_table(ws, name: str, start_row: int, end_row: int, end_col: int) -> None:
    ref = f"A{start_row}:{get_column_letter(end_col)}{end_row}"
    tab = Table(displayName=name, ref=ref)
    tab.tableStyleInfo = TableStyleInfo(name="TableStyleMedium9", showRowStripes=True, showColumnStripes=False)
    ws.add_table(tab)


class ExcelService:
    def __init__(self, repo, ledger_service, revenue):
        self.repo = repo
        self.ledger = ledger_service
        self.revenue = revenue

    def import_stock_counts(self, path: str, actor: Optional[str] = None) -> BulkResult:
        """
        Excel holds physical stock counts (absolute levels, not deltas).
        Headers:
          sku | stock [| reason | reference]
        """
        wb = load_workbook(path, read_only=True, data_only=True)
        try:
            ws = wb.active
            rows = list(ws.iter_rows(values_only=True))
        finally:
            wb.close()

        if not rows:
            raise ValidationError("Workbook is empty.")
        headers = {}
        for col, v in enumerate(rows[0]):
            if isinstance(v, str):
                headers[v.strip().lower()] = col
        for required in ("sku", "stock"):
            if required not in headers:
                raise ValidationError(f"Missing column header: {required}")

        def cell(row, name):
            col = headers.get(name)
            if col is None or col >= len(row):
                return None
            return row[col]

        entries: list[dict] = []
        unknown: list[tuple[int, BulkEntryResult]] = []
        for line, row in enumerate(rows[1:], start=2):
            sku = cell(row, "sku")
            if sku is None or not str(sku).strip():
                continue
            sku = str(sku).strip()
            product = self.repo.get_product_by_sku(sku)
            if product is None:
                err = NotFoundError(f"Unknown SKU on row {line}: {sku}")
                unknown.append(
                    (len(entries) + len(unknown), BulkEntryResult(sku, False, error=str(err), error_type=type(err).__name__))
                )
                continue
            entries.append(
                {
                    "product_id": product.id,
                    "amount": cell(row, "stock"),
                    "reason": cell(row, "reason") or "Stock count import",
                    "reference": cell(row, "reference"),
                }
            )

        result = self.ledger.bulk_apply_mutation(entries, actor=actor)
        if not unknown:
            outcome = result
        else:
            # put unknown-SKU failures back at their sheet positions
            merged = list(result.results)
            for position, failure in unknown:
                merged.insert(position, failure)
            outcome = BulkResult(
                results=merged,
                success_count=result.success_count,
                error_count=result.error_count + len(unknown),
            )
        log.info(
            "stock_counts_imported path=%s succeeded=%s failed=%s", path, outcome.success_count, outcome.error_count
        )
        return outcome

    def export_revenue_report(
        self, path: str, period: Period | str = Period.MONTHLY, marketplace: Optional[str] = None, now=None
    ) -> None:
        summary = self.revenue.summarize(period, marketplace=marketplace, now=now)
        days = 365 if summary.period == Period.YEARLY.value else 30
        trend = self.revenue.trend(Period.DAILY, window_days=days, marketplace=marketplace, now=now)
        top = self.revenue.top_products(window_days=days, limit=10, marketplace=marketplace, now=now)
        low = self.ledger.get_low_stock_items()

        wb = Workbook()

        # -------- 1) Summary --------
        ws = wb.active
        ws.title = "Summary"
        ws["A1"] = "Revenue summary"
        ws["A1"].font = Font(bold=True, size=14)
        ws["A3"] = "Window"
        ws["B3"] = f"{summary.start}  ->  {summary.end}"
        ws["A4"] = "Marketplace"
        ws["B4"] = summary.marketplace or "All"

        rows = [
            ("Period", summary.period, "text"),
            ("Sales count", summary.total_sales, "int"),
            ("Units sold", summary.total_quantity, "int"),
            ("Revenue", summary.total_revenue, "money"),
            ("Average order value", summary.average_order_value, "money"),
        ]
        for i, (label, val, kind) in enumerate(rows):
            r = 6 + i
            ws[f"A{r}"] = label
            ws[f"B{r}"] = val
            if kind == "money":
                _money(ws[f"B{r}"])
        _set_widths(ws, {"A": 24, "B": 44})

        # -------- 2) Daily Trend --------
        ws2 = wb.create_sheet("Daily Trend")
        ws2.append(["Day", "Sales", "Units", "Revenue", "Avg Order Value"])
        _bold_row(ws2, 1)
        for b in trend:
            ws2.append([b.label, b.total_sales, b.total_quantity, b.total_revenue, b.average_order_value])
            _money(ws2[f"D{ws2.max_row}"])
            _money(ws2[f"E{ws2.max_row}"])
        ws2.freeze_panes = "A2"
        _set_widths(ws2, {"A": 14, "B": 10, "C": 10, "D": 16, "E": 18})
        if ws2.max_row >= 2:
            _add_table(ws2, "DailyTrend", 1, ws2.max_row, 5)

        # -------- 3) Top Products --------
        ws3 = wb.create_sheet("Top Products")
        ws3.append(["Rank", "SKU", "Product Name", "Units", "Revenue", "Sales"])
        _bold_row(ws3, 1)
        for rank, p in enumerate(top, start=1):
            ws3.append([rank, p.sku, p.name, p.total_quantity, p.total_revenue, p.sales_count])
            _money(ws3[f"E{ws3.max_row}"])
        ws3.freeze_panes = "A2"
        _set_widths(ws3, {"A": 8, "B": 14, "C": 34, "D": 10, "E": 16, "F": 10})
        if ws3.max_row >= 2:
            _add_table(ws3, "TopProducts", 1, ws3.max_row, 6)

        # -------- 4) Low Stock --------
        ws4 = wb.create_sheet("Low Stock")
        ws4.append(["SKU", "Product Name", "Current", "Reserved", "Available", "Reorder At"])
        _bold_row(ws4, 1)
        for item in low:
            ws4.append(
                [
                    item.product.sku,
                    item.product.name,
                    item.stock_record.current_stock,
                    item.stock_record.reserved_stock,
                    item.available_stock,
                    item.product.reorder_threshold,
                ]
            )
        ws4.freeze_panes = "A2"
        _set_widths(ws4, {"A": 14, "B": 34, "C": 10, "D": 10, "E": 10, "F": 12})
        if ws4.max_row >= 2:
            _add_table(ws4, "LowStock", 1, ws4.max_row, 6)

        wb.save(path)
        log.info("revenue_report_exported path=%s period=%s", path, summary.period)
