import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))


def make_container(tmp_path: Path, name: str = "stockroom.db", **settings_overrides):
    from stockroom.application.container import build_container
    from stockroom.config import Settings

    settings = Settings(
        db_path=tmp_path / name,
        logs_dir=tmp_path / "logs",
        retry_backoff_seconds=0.0,
        **settings_overrides,
    )
    return build_container(settings.db_path, settings=settings)


def add_product(container, sku: str, stock: int = 0, **kwargs):
    """Create a product and, when ``stock`` is given, set its opening level through the ledger."""
    kwargs.setdefault("name", f"Product {sku}")
    kwargs.setdefault("price", 20.0)
    kwargs.setdefault("cost", 8.0)
    product = container.catalog.add_product(sku=sku, **kwargs)
    if stock:
        container.stock.apply_mutation(product.id, "set", stock, reason="Opening count")
    return product
