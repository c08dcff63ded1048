from pathlib import Path

import pytest
from conftest import add_product, make_container

from stockroom.domain.errors import NotFoundError, ValidationError
from stockroom.domain.models import ProductStatus


def test_archiving_keeps_the_stock_record(tmp_path: Path):
    c = make_container(tmp_path)
    p = add_product(c, "SKU-ARCH", stock=3)

    archived = c.catalog.set_status(p.id, "Inactive")

    assert archived.status is ProductStatus.INACTIVE
    assert c.repo.get_stock_record(p.id).current_stock == 3
    assert [x.sku for x in c.catalog.list_products("inactive")] == ["SKU-ARCH"]
    assert c.catalog.list_products(ProductStatus.ACTIVE) == []


def test_lookup_and_threshold_updates(tmp_path: Path):
    c = make_container(tmp_path)
    home = c.catalog.add_category("Home")
    p = add_product(c, "SKU-LOOK", category_id=home.id, marketplace=" amazon ")

    assert c.catalog.get_product_by_sku(" SKU-LOOK ").id == p.id
    assert c.catalog.get_product(p.id).marketplace == "amazon"
    assert c.catalog.update_reorder_threshold(p.id, 3).reorder_threshold == 3
    assert [cat.name for cat in c.catalog.list_categories()] == ["Home"]

    with pytest.raises(NotFoundError):
        c.catalog.get_product_by_sku("SKU-NONE")
    with pytest.raises(NotFoundError):
        c.catalog.set_status(999, "active")
    with pytest.raises(ValidationError):
        c.catalog.update_reorder_threshold(p.id, -1)


@pytest.mark.parametrize(
    "kwargs, message",
    [
        ({"price": "abc"}, "Price must be a number"),
        ({"cost": None}, "Cost is required"),
        ({"cost": "-1"}, "Cost must be >= 0"),
        ({"price": 0}, "Price must be > 0"),
        ({"reorder_threshold": "many"}, "Reorder threshold must be a number"),
        ({"reorder_threshold": 2.5}, "Reorder threshold must be a whole number"),
        ({"cost_per_unit": "x"}, "Cost per unit must be a number"),
    ],
)
def test_add_product_rejects_non_numeric_fields(tmp_path: Path, kwargs, message):
    c = make_container(tmp_path)
    args = {"sku": "SKU-BAD", "name": "Bad", "price": 10.0, "cost": 2.0}
    args.update(kwargs)

    with pytest.raises(ValidationError, match=message):
        c.catalog.add_product(**args)
    assert c.catalog.list_products() == []


def test_numeric_strings_are_accepted_for_prices(tmp_path: Path):
    c = make_container(tmp_path)

    p = c.catalog.add_product("SKU-STR", "Str", price="12.5", cost="3", reorder_threshold="4")

    assert (p.price, p.cost, p.reorder_threshold) == (12.5, 3.0, 4)
    with pytest.raises(ValidationError):
        c.catalog.update_reorder_threshold(p.id, "lots")
    with pytest.raises(ValidationError):
        c.catalog.get_product("first")
