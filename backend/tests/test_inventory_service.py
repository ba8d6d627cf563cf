import pytest

from storefront.errors import (
    InsufficientStockError,
    NotFoundError,
    ProductUnavailableError,
    ValidationError,
)
from storefront.extensions import db
from storefront.services import inventory_service
from storefront.services.concurrency import run_write
from storefront.services.pricing_service import CartLine

from conftest import reload


def _reserve(*lines):
    run_write(lambda: inventory_service.reserve(list(lines)))


def test_reserve_decrements_stock_and_increments_sold(shirt, sneaker):
    _reserve(CartLine(shirt.id, 2), CartLine(sneaker.id, 1))

    assert reload(shirt).stock == 8
    assert reload(shirt).sold_count == 2
    assert reload(sneaker).stock == 2
    assert reload(sneaker).sold_count == 1


def test_reserve_aggregates_quantities_per_product(sneaker):
    # 2 + 2 of a 3-stock product must fail even though each line fits alone
    with pytest.raises(InsufficientStockError) as exc:
        _reserve(CartLine(sneaker.id, 2, size="9"), CartLine(sneaker.id, 2, size="10"))

    item = exc.value.details["items"][0]
    assert item == {"product_id": sneaker.id, "name": "Sneaker", "requested": 4, "available": 3}
    assert reload(sneaker).stock == 3


def test_reserve_is_all_or_nothing(shirt, sneaker):
    with pytest.raises(InsufficientStockError) as exc:
        _reserve(CartLine(shirt.id, 1), CartLine(sneaker.id, 5))

    assert [i["product_id"] for i in exc.value.details["items"]] == [sneaker.id]
    assert reload(shirt).stock == 10
    assert reload(shirt).sold_count == 0


def test_reserve_reports_every_short_product(shirt, sneaker):
    with pytest.raises(InsufficientStockError) as exc:
        _reserve(CartLine(shirt.id, 11), CartLine(sneaker.id, 4))

    assert {i["product_id"] for i in exc.value.details["items"]} == {shirt.id, sneaker.id}


def test_reserve_compensates_when_conditional_update_loses(shirt, sneaker, monkeypatch):
    """A decrement that matches no row puts back the earlier decrements."""
    real_decrement = inventory_service._decrement

    def losing_decrement(product_id, quantity):
        if product_id == sneaker.id:
            return False
        return real_decrement(product_id, quantity)

    monkeypatch.setattr(inventory_service, "_decrement", losing_decrement)

    def _op():
        with pytest.raises(InsufficientStockError):
            inventory_service.reserve([CartLine(shirt.id, 4), CartLine(sneaker.id, 1)])
        # still inside the transaction: compensation already applied
        return db.session.get(type(shirt), shirt.id).stock

    assert run_write(_op) == 10
    assert reload(shirt).sold_count == 0


def test_reserve_unknown_product(shirt):
    with pytest.raises(NotFoundError) as exc:
        _reserve(CartLine(shirt.id, 1), CartLine(999999, 1))
    assert exc.value.details["product_ids"] == [999999]


def test_reserve_inactive_product(make_product):
    draft = make_product(status="draft")
    with pytest.raises(ProductUnavailableError):
        _reserve(CartLine(draft.id, 1))


def test_reserve_rejects_non_positive_quantity(shirt):
    with pytest.raises(ValidationError):
        _reserve(CartLine(shirt.id, 0))


def test_release_reverses_reservation(shirt):
    _reserve(CartLine(shirt.id, 3))
    run_write(lambda: inventory_service.release([CartLine(shirt.id, 3)]))

    assert reload(shirt).stock == 10
    assert reload(shirt).sold_count == 0


def test_release_never_drives_sold_count_negative(shirt):
    run_write(lambda: inventory_service.release([CartLine(shirt.id, 2)]))

    assert reload(shirt).stock == 12
    assert reload(shirt).sold_count == 0


def test_stock_level_and_status(make_product):
    plenty = make_product(stock=50, low_stock_threshold=10)
    low = make_product(stock=4, low_stock_threshold=5)
    none = make_product(stock=0)

    assert inventory_service.get_stock_level(plenty.id)["stock_status"] == "in_stock"
    assert inventory_service.get_stock_level(low.id)["stock_status"] == "low_stock"
    assert inventory_service.get_stock_level(none.id)["stock_status"] == "out_of_stock"


def test_stock_level_unknown_product(db_session):
    with pytest.raises(NotFoundError):
        inventory_service.get_stock_level(424242)


def test_restock_adds_stock_only(shirt):
    level = inventory_service.restock(shirt.id, 5)

    assert level["stock"] == 15
    assert level["sold_count"] == 0


def test_restock_validation(shirt):
    with pytest.raises(ValidationError):
        inventory_service.restock(shirt.id, 0)
    with pytest.raises(NotFoundError):
        inventory_service.restock(987654, 1)


def test_list_low_stock_orders_lowest_first(make_product):
    make_product(sku="HIGH", stock=100)
    make_product(sku="LOW", stock=5)
    make_product(sku="EMPTY", stock=0)
    make_product(sku="OFF", stock=0, status="archived")

    skus = [row["sku"] for row in inventory_service.list_low_stock()]
    assert skus == ["EMPTY", "LOW"]
