from __future__ import annotations

import argparse
import dataclasses
import json
import logging
import sys
from enum import Enum
from typing import Optional, Sequence

from stockroom.application.container import build_container
from stockroom.config import load_settings
from stockroom.domain.errors import AppError
from stockroom.logging_config import setup_logging

log = logging.getLogger(__name__)


def _jsonable(value):
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return {f.name: _jsonable(getattr(value, f.name)) for f in dataclasses.fields(value)}
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    if isinstance(value, dict):
        return {str(k): _jsonable(v) for k, v in value.items()}
    return value


def _emit(payload) -> None:
    print(json.dumps(_jsonable(payload), ensure_ascii=False, indent=2, default=str))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="stockroom", description="Inventory stock ledger and revenue rollups.")
    parser.add_argument("--db", help="SQLite database path (default: STOCKROOM_DB_PATH or the app data dir)")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("init", help="Create or migrate the database")

    low = sub.add_parser("low-stock", help="List products at or under their reorder threshold")
    low.add_argument("--all", action="store_true", help="Include inactive and discontinued products")

    history = sub.add_parser("history", help="Show the stock ledger of a product")
    history.add_argument("product_id", type=int)
    history.add_argument("--start")
    history.add_argument("--end")
    history.add_argument("--page", type=int, default=1)
    history.add_argument("--page-size", type=int, default=20)

    summary = sub.add_parser("summary", help="Revenue summary over a lookback period")
    summary.add_argument("period", nargs="?", default="monthly")
    summary.add_argument("--marketplace")

    imp = sub.add_parser("import-stock", help="Apply physical stock counts from an .xlsx file")
    imp.add_argument("path")
    imp.add_argument("--actor")

    exp = sub.add_parser("export-report", help="Write a revenue report workbook")
    exp.add_argument("path")
    exp.add_argument("--period", default="monthly")
    exp.add_argument("--marketplace")

    sub.add_parser("health", help="Integrity check and ledger reconciliation")
    return parser


def run(args: argparse.Namespace, settings) -> int:
    container = build_container(args.db or settings.db_path, settings=settings)

    if args.command == "init":
        _emit({"db_path": str(args.db or settings.db_path), "products": container.repo.count_products()})
    elif args.command == "low-stock":
        items = container.stock.get_low_stock_items(active_only=not args.all)
        _emit(
            [
                {
                    "product": item.product,
                    "stock_record": item.stock_record,
                    "available_stock": item.available_stock,
                }
                for item in items
            ]
        )
    elif args.command == "history":
        page = container.stock.get_transaction_history(
            args.product_id, start=args.start, end=args.end, page=args.page, page_size=args.page_size
        )
        _emit({**_jsonable(page), "pages": page.pages})
    elif args.command == "summary":
        s = container.revenue.summarize(args.period, marketplace=args.marketplace)
        _emit({**_jsonable(s), "average_order_value": s.average_order_value})
    elif args.command == "import-stock":
        _emit(container.excel.import_stock_counts(args.path, actor=args.actor))
    elif args.command == "export-report":
        container.excel.export_revenue_report(args.path, period=args.period, marketplace=args.marketplace)
        _emit({"path": args.path})
    elif args.command == "health":
        report = container.operations.run_health_check()
        _emit({**_jsonable(report), "healthy": report.healthy})
        return 0 if report.healthy else 1
    return 0


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        settings = load_settings()
        setup_logging(settings.logs_dir, level=settings.log_level)
        return run(args, settings)
    except AppError as exc:
        log.error("command_failed command=%s error=%s", args.command, exc)
        print(json.dumps({"error": type(exc).__name__, "message": str(exc), "status": exc.status_code}), file=sys.stderr)
        return 2


if __name__ == "__main__":
    sys.exit(main())
