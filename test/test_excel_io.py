from pathlib import Path

import pytest
from conftest import add_product, make_container
from openpyxl import Workbook, load_workbook

from stockroom.domain.errors import ValidationError


def _workbook(path: Path, rows) -> str:
    wb = Workbook()
    ws = wb.active
    for row in rows:
        ws.append(row)
    wb.save(path)
    return str(path)


def test_import_stock_counts_sets_levels_and_reports_unknown_skus(tmp_path: Path):
    c = make_container(tmp_path)
    a = add_product(c, "SKU-A", stock=3)
    b = add_product(c, "SKU-B")
    path = _workbook(
        tmp_path / "counts.xlsx",
        [
            ["SKU", "Stock", "Reason"],
            ["SKU-A", 10, "Quarterly count"],
            ["SKU-MISSING", 4, None],
            [None, None, None],
            ["SKU-B", 6.0, None],
        ],
    )

    result = c.excel.import_stock_counts(path, actor="counter")

    assert (result.success_count, result.error_count) == (2, 1)
    assert [r.success for r in result.results] == [True, False, True]
    assert result.results[1].product_id == "SKU-MISSING"
    assert result.results[1].error_type == "NotFoundError"

    assert c.repo.get_stock_record(a.id).current_stock == 10
    assert c.repo.get_stock_record(b.id).current_stock == 6
    last_a = c.ledger.entries_for_product(a.id)[-1]
    assert last_a.reason == "Quarterly count"
    assert last_a.actor == "counter"
    assert c.ledger.entries_for_product(b.id)[-1].reason == "Stock count import"


def test_import_requires_headers(tmp_path: Path):
    c = make_container(tmp_path)
    path = _workbook(tmp_path / "bad.xlsx", [["code", "qty"], ["SKU-A", 1]])

    with pytest.raises(ValidationError, match="Missing column header: sku"):
        c.excel.import_stock_counts(path)


def test_import_bad_count_is_a_per_row_error(tmp_path: Path):
    c = make_container(tmp_path)
    a = add_product(c, "SKU-A", stock=3)
    path = _workbook(tmp_path / "neg.xlsx", [["sku", "stock"], ["SKU-A", -2]])

    result = c.excel.import_stock_counts(path)

    assert result.error_count == 1
    assert result.results[0].error_type == "ValidationError"
    assert c.repo.get_stock_record(a.id).current_stock == 3


def test_import_with_numeric_reference_column(tmp_path: Path):
    c = make_container(tmp_path)
    a = add_product(c, "SKU-A")
    b = add_product(c, "SKU-B")
    path = _workbook(
        tmp_path / "refs.xlsx",
        [
            ["sku", "stock", "reference"],
            ["SKU-A", 5, 100234],
            ["SKU-B", 8, "PO-77"],
        ],
    )

    result = c.excel.import_stock_counts(path)

    assert (result.success_count, result.error_count) == (2, 0)
    assert c.repo.get_stock_record(b.id).current_stock == 8
    assert c.ledger.entries_for_product(a.id)[-1].reference == "100234"


def test_export_revenue_report_writes_all_sheets(tmp_path: Path):
    c = make_container(tmp_path)
    p = add_product(c, "SKU-R", stock=2, reorder_threshold=5)
    c.sales.record_sale("R-1", p.id, 2, 15.0, 30.0, "amazon", sale_date="2024-05-20 10:00:00")
    out = tmp_path / "report.xlsx"

    c.excel.export_revenue_report(str(out), period="monthly", now="2024-05-31")

    wb = load_workbook(out)
    assert wb.sheetnames == ["Summary", "Daily Trend", "Top Products", "Low Stock"]
    summary = {row[0]: row[1] for row in wb["Summary"].iter_rows(min_row=6, values_only=True) if row[0]}
    assert summary["Revenue"] == 30.0
    assert summary["Sales count"] == 1
    assert wb["Daily Trend"]["A2"].value == "2024-05-20"
    assert wb["Top Products"]["B2"].value == "SKU-R"
    assert wb["Low Stock"]["A2"].value == "SKU-R"
