from __future__ import annotations

import json
import logging
import zipfile
from dataclasses import asdict, dataclass, field
from datetime import datetime
from pathlib import Path

from stockroom.repositories.sqlite_repo import sqlite_errors

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class HealthReport:
    sqlite_integrity: str
    db_size_bytes: int
    products: int
    ledger_entries: int
    generated_at: str
    inconsistent_products: list[int] = field(default_factory=list)

    @property
    def healthy(self) -> bool:
        return self.sqlite_integrity == "ok" and not self.inconsistent_products


class OperationsService:
    def __init__(self, repo, ledger_service, db_path: Path | str, logs_dir: Path | str | None = None):
        self.repo = repo
        self.ledger = ledger_service
        self.db_path = Path(db_path)
        self.logs_dir = Path(logs_dir) if logs_dir else self.db_path.parent / "logs"

    def run_health_check(self) -> HealthReport:
        """SQLite integrity plus a fold of every product's ledger against its stock record."""
        with sqlite_errors("health check"):
            integrity = self.repo.integrity_check()
            product_ids = self.repo.list_product_ids()
            entries = self.ledger.ledger.count()
        inconsistent = [pid for pid in product_ids if not self.ledger.reconcile(pid).consistent]
        size = self.db_path.stat().st_size if self.db_path.exists() else 0
        report = HealthReport(
            sqlite_integrity=integrity,
            db_size_bytes=size,
            products=len(product_ids),
            ledger_entries=entries,
            generated_at=datetime.now().isoformat(timespec="seconds"),
            inconsistent_products=inconsistent,
        )
        if report.healthy:
            log.info("health_check_ok products=%s ledger_entries=%s", report.products, entries)
        else:
            log.error(
                "health_check_failed integrity=%s inconsistent_products=%s", integrity, inconsistent
            )
        return report

    def export_diagnostics(self, target_dir: Path | str | None = None) -> Path:
        out_dir = Path(target_dir) if target_dir else self.db_path.parent
        out_dir.mkdir(parents=True, exist_ok=True)

        ts = datetime.now().strftime("%Y%m%d_%H%M%S")
        zip_path = out_dir / f"diagnostics_{ts}.zip"
        report = self.run_health_check()

        with zipfile.ZipFile(zip_path, "w", compression=zipfile.ZIP_DEFLATED) as zf:
            if self.db_path.exists():
                zf.write(self.db_path, arcname=self.db_path.name)

            if self.logs_dir.exists():
                for f in sorted(self.logs_dir.glob("*.log")):
                    zf.write(f, arcname=f"logs/{f.name}")

            zf.writestr("health_report.json", json.dumps(asdict(report), ensure_ascii=False, indent=2))

        log.info("diagnostics_exported path=%s", zip_path)
        return zip_path
