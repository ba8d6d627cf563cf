# Overview: Inventory ledger; reserves and releases product stock for orders.

"""
Inventory Ledger

Stock lives on the Product row. The order core changes exactly two columns:

    reserve:  stock -= q, sold_count += q
    release:  stock += q, sold_count -= q   (sold_count never below zero)

Every decrement is a conditional UPDATE (``WHERE stock >= q``) whose rowcount
decides success, so two checkouts racing for the last unit cannot both win
even when each one read the same stock value earlier.

reserve() is all-or-nothing: every product in the batch is checked before
anything is written, and if a conditional decrement still loses a race the
decrements already applied in the batch are put back before the error is
raised.

Nothing in this module commits. Callers run it inside their write
transaction (see concurrency.run_write).
"""

from __future__ import annotations

from collections import OrderedDict
from typing import Iterable

from flask import current_app
from sqlalchemy import case, update

from ..errors import (
    InsufficientStockError,
    NotFoundError,
    ProductUnavailableError,
    ValidationError,
)
from ..extensions import db
from ..models import Product
from .concurrency import lock_for_update, run_write


def aggregate_quantities(lines: Iterable) -> "OrderedDict[int, int]":
    """
    Sum quantities per product_id, keeping first-seen order.

    Lines are any objects with ``product_id`` and ``quantity`` attributes.
    """
    totals: "OrderedDict[int, int]" = OrderedDict()
    for line in lines:
        if line.quantity is None or int(line.quantity) <= 0:
            raise ValidationError("quantity must be a positive integer", {"product_id": line.product_id})
        totals[line.product_id] = totals.get(line.product_id, 0) + int(line.quantity)
    return totals


def load_orderable_products(product_ids: Iterable[int]) -> dict[int, Product]:
    """
    Fetch products by id and require every one to exist and be active.

    Raises NotFoundError listing missing ids, ProductUnavailableError listing
    inactive ones.
    """
    ids = list(dict.fromkeys(product_ids))
    if not ids:
        return {}
    query = db.session.query(Product).filter(Product.id.in_(ids))
    products = {p.id: p for p in lock_for_update(query).all()}

    missing = [pid for pid in ids if pid not in products]
    if missing:
        raise NotFoundError("Product not found", {"product_ids": missing})

    unavailable = [
        {"product_id": pid, "name": products[pid].name, "status": products[pid].status}
        for pid in ids
        if not products[pid].is_orderable
    ]
    if unavailable:
        raise ProductUnavailableError("Product is not available", {"products": unavailable})

    return products


def _shortages(quantities: dict[int, int], products: dict[int, Product]) -> list[dict]:
    shortages = []
    for product_id, requested in quantities.items():
        product = products[product_id]
        if product.stock < requested:
            shortages.append({
                "product_id": product_id,
                "name": product.name,
                "requested": requested,
                "available": product.stock,
            })
    return shortages


def _decrement(product_id: int, quantity: int) -> bool:
    stmt = (
        update(Product)
        .where(Product.id == product_id, Product.stock >= quantity)
        .values(
            stock=Product.stock - quantity,
            sold_count=Product.sold_count + quantity,
        )
        .execution_options(synchronize_session=False)
    )
    return db.session.execute(stmt).rowcount == 1


def _increment(product_id: int, quantity: int) -> None:
    stmt = (
        update(Product)
        .where(Product.id == product_id)
        .values(
            stock=Product.stock + quantity,
            sold_count=case(
                (Product.sold_count >= quantity, Product.sold_count - quantity),
                else_=0,
            ),
        )
        .execution_options(synchronize_session=False)
    )
    db.session.execute(stmt)


def _expire(product_ids: Iterable[int]) -> None:
    # Raw UPDATEs bypass the identity map; make loaded rows re-read.
    for product_id in product_ids:
        product = db.session.get(Product, product_id)
        if product is not None:
            db.session.expire(product, ["stock", "sold_count"])


def reserve(lines: Iterable) -> None:
    """
    Reserve stock for every line, or for none of them.

    Raises:
        ValidationError: non-positive quantity
        NotFoundError: a product does not exist
        ProductUnavailableError: a product is not active
        InsufficientStockError: details["items"] lists every short product
            with the requested and available quantities
    """
    quantities = aggregate_quantities(lines)
    if not quantities:
        raise ValidationError("At least one line is required")

    products = load_orderable_products(quantities.keys())

    shortages = _shortages(quantities, products)
    if shortages:
        raise InsufficientStockError("Insufficient stock", {"items": shortages})

    applied: list[tuple[int, int]] = []
    for product_id, quantity in quantities.items():
        if _decrement(product_id, quantity):
            applied.append((product_id, quantity))
            continue

        # Lost a race after the pre-check: put back what this batch took.
        for done_id, done_qty in applied:
            _increment(done_id, done_qty)
        current_app.logger.warning(
            "Stock reservation for product %s lost a race; compensated %d earlier line(s)",
            product_id, len(applied),
        )
        _expire(quantities.keys())
        available = (
            db.session.query(Product.stock).filter(Product.id == product_id).scalar()
        )
        raise InsufficientStockError(
            "Insufficient stock",
            {"items": [{
                "product_id": product_id,
                "name": products[product_id].name,
                "requested": quantity,
                "available": available,
            }]},
        )

    _expire(quantities.keys())


def release(lines: Iterable) -> None:
    """
    Reverse a reservation: stock += q and sold_count -= q (floored at zero).

    Products that no longer exist are skipped; release never fails an
    otherwise valid cancellation.
    """
    quantities = aggregate_quantities(lines)
    for product_id, quantity in quantities.items():
        _increment(product_id, quantity)
    _expire(quantities.keys())


def get_stock_level(product_id: int) -> dict:
    product = db.session.get(Product, product_id)
    if product is None:
        raise NotFoundError("Product not found", {"product_id": product_id})
    return {
        "product_id": product.id,
        "sku": product.sku,
        "name": product.name,
        "stock": product.stock,
        "sold_count": product.sold_count,
        "low_stock_threshold": product.low_stock_threshold,
        "stock_status": product.stock_status,
    }


def restock(product_id: int, quantity: int) -> dict:
    """Admin replenishment. Adds to stock without touching sold_count."""
    if quantity is None or int(quantity) <= 0:
        raise ValidationError("quantity must be a positive integer")
    quantity = int(quantity)

    def _op():
        stmt = (
            update(Product)
            .where(Product.id == product_id)
            .values(stock=Product.stock + quantity)
            .execution_options(synchronize_session=False)
        )
        if db.session.execute(stmt).rowcount != 1:
            raise NotFoundError("Product not found", {"product_id": product_id})

    run_write(_op)
    _expire([product_id])
    current_app.logger.info("Restocked product %s by %d", product_id, quantity)
    return get_stock_level(product_id)


def list_low_stock(limit: int = 100) -> list[dict]:
    """Active products at or below their low-stock threshold, lowest stock first."""
    products = (
        db.session.query(Product)
        .filter(Product.stock <= Product.low_stock_threshold)
        .filter(Product.status == "active")
        .order_by(Product.stock.asc(), Product.id.asc())
        .limit(limit)
        .all()
    )
    return [get_stock_level(p.id) for p in products]
