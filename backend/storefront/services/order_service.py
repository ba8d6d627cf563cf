# Overview: Checkout and order queries; ties pricing, coupons, stock and the lifecycle together.

"""
Order Service

create_order() is the checkout. In one write transaction it:

    1. re-reads every product (price, tax rate, status) from the catalog;
       prices sent by the client are never used
    2. evaluates the coupon, if any, against the priced cart
    3. prices the order (pricing_service)
    4. reserves stock for all lines or none (inventory_service)
    5. allocates the order number and inserts the order, its lines and its
       first status entry ("pending")
    6. records the coupon redemption

Any failure rolls back all of it. The order-created notification goes out
only after the commit.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from flask import current_app

from ..errors import NotFoundError, UnauthorizedError, ValidationError
from ..extensions import db
from ..models import Order, OrderLine, User
from ..time_utils import as_naive_utc, parse_iso_datetime
from .. import validation
from . import (
    coupon_service,
    inventory_service,
    lifecycle_service,
    notification_service,
    pricing_service,
    sequence_service,
)
from .concurrency import run_write
from .pricing_service import CartLine, PricedLine


def _initial_payment_status(payment_method: str) -> str:
    # Prepaid methods wait on the gateway; COD is collected on delivery.
    if payment_method == lifecycle_service.PAYMENT_METHOD_COD:
        return lifecycle_service.PAYMENT_PENDING
    return lifecycle_service.PAYMENT_PROCESSING


def create_order(
    user: User,
    cart_lines: list[CartLine],
    *,
    shipping_address: dict,
    billing_address: Optional[dict] = None,
    payment_method: str,
    shipping_method: str = "standard",
    coupon_code: Optional[str] = None,
    customer_note: Optional[str] = None,
) -> Order:
    """
    Place an order for user.

    Raises:
        ValidationError: empty cart, bad quantity, address, payment or
            shipping method
        NotFoundError: unknown product or coupon code
        ProductUnavailableError / InsufficientStockError: stock checks
        CouponError: coupon rejected at evaluation or redemption
    """
    if not cart_lines:
        raise ValidationError("Order must contain at least one item")
    shipping_address = validation.validate_address(shipping_address, "shipping_address")
    billing_address = (
        validation.validate_address(billing_address, "billing_address")
        if billing_address
        else dict(shipping_address)
    )
    payment_method = validation.validate_payment_method(payment_method)
    pricing_service.shipping_cost(shipping_method)
    if customer_note is not None:
        customer_note = str(customer_note).strip()[:1000] or None
    user_id = user.id

    def _op() -> Order:
        quantities = inventory_service.aggregate_quantities(cart_lines)
        products = inventory_service.load_orderable_products(quantities.keys())
        priced = [PricedLine.from_product(products[line.product_id], line) for line in cart_lines]
        subtotal = pricing_service.subtotal_cents(priced)

        decision = None
        if coupon_code:
            decision = coupon_service.evaluate(coupon_code, user_id, subtotal, priced)

        pricing = pricing_service.price(
            priced,
            decision.discount if decision else 0,
            shipping_method,
        )

        inventory_service.reserve(cart_lines)

        order = Order(
            order_number=sequence_service.next_order_number(),
            user_id=user_id,
            status=lifecycle_service.PENDING,
            shipping_address=shipping_address,
            billing_address=billing_address,
            subtotal_cents=pricing.subtotal_cents,
            tax_cents=pricing.tax_cents,
            shipping_cents=pricing.shipping_cents,
            discount_cents=pricing.discount_cents,
            total_cents=pricing.total_cents,
            coupon_id=decision.coupon.id if decision else None,
            coupon_code=decision.coupon.code if decision else None,
            coupon_type=decision.coupon.coupon_type if decision else None,
            payment_method=payment_method,
            payment_status=_initial_payment_status(payment_method),
            shipping_method=shipping_method,
            customer_note=customer_note,
        )
        db.session.add(order)

        for position, (line, line_tax_cents) in enumerate(zip(priced, pricing.line_tax_cents), start=1):
            db.session.add(OrderLine(
                order=order,
                position=position,
                product_id=line.product_id,
                name=line.name,
                sku=line.sku,
                image_url=line.image_url,
                size=line.size,
                color=line.color,
                quantity=line.quantity,
                unit_price_cents=line.unit_price_cents,
                tax_rate_bps=line.tax_rate_bps,
                line_subtotal_cents=line.line_subtotal_cents,
                line_tax_cents=line_tax_cents,
            ))

        lifecycle_service.record_status(order, lifecycle_service.PENDING, "Order placed", user_id)
        db.session.flush()

        if decision:
            coupon_service.redeem(decision.coupon, user_id, order, pricing.discount_cents)

        return order

    order = run_write(_op)
    current_app.logger.info(
        "Order %s placed by user %s: total %d cents", order.order_number, user_id, order.total_cents,
    )
    notification_service.notify_order_created(order)
    return order


def _ensure_can_view(order: Order, actor: User) -> None:
    if order.user_id != actor.id and not actor.is_admin:
        raise UnauthorizedError("Not authorized to access this order", {"order_id": order.id})


def get_order(order_id: int, actor: User) -> Order:
    order = db.session.get(Order, order_id)
    if order is None:
        raise NotFoundError("Order not found", {"order_id": order_id})
    _ensure_can_view(order, actor)
    return order


def list_orders(
    actor: User,
    *,
    status: Optional[str] = None,
    payment_status: Optional[str] = None,
    search: Optional[str] = None,
    start: Optional[datetime | str] = None,
    end: Optional[datetime | str] = None,
    user_id: Optional[int] = None,
    page: int = 1,
    per_page: int = 20,
) -> dict:
    """
    Admins see every order (optionally narrowed to user_id); everyone else
    sees only their own.
    """
    query = db.session.query(Order)
    if actor.is_admin:
        if user_id is not None:
            query = query.filter(Order.user_id == user_id)
    else:
        query = query.filter(Order.user_id == actor.id)

    if status:
        lifecycle_service.validate_status(status)
        query = query.filter(Order.status == status)
    if payment_status:
        query = query.filter(Order.payment_status == payment_status)
    if search:
        query = query.filter(Order.order_number.ilike(f"%{search.strip()}%"))

    start_dt = _as_datetime(start, "start")
    end_dt = _as_datetime(end, "end")
    if start_dt:
        query = query.filter(Order.created_at >= start_dt)
    if end_dt:
        query = query.filter(Order.created_at <= end_dt)

    total = query.count()
    orders = (
        query.order_by(Order.created_at.desc(), Order.id.desc())
        .offset((page - 1) * per_page)
        .limit(per_page)
        .all()
    )
    return {
        "items": [o.to_dict(include_lines=False) for o in orders],
        "page": page,
        "per_page": per_page,
        "total": total,
        "pages": (total + per_page - 1) // per_page,
    }


def _as_datetime(value, field: str) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return as_naive_utc(value) if value else None
    try:
        return parse_iso_datetime(value)
    except ValueError:
        raise ValidationError(f"{field} must be an ISO-8601 datetime")


def cancel_order(order_id: int, actor: User, reason: Optional[str] = None) -> Order:
    """
    Cancel an order on behalf of its owner or an admin.

    Stock goes back through the lifecycle's cancel side effect.
    """
    reason = lifecycle_service.clip_note(reason) or "Cancelled by customer"
    previous = {}

    def _op():
        order = lifecycle_service.load_order_for_update(order_id)
        _ensure_can_view(order, actor)
        previous["status"] = order.status
        return lifecycle_service.apply_transition(
            order, lifecycle_service.CANCELLED, note=reason, actor_user_id=actor.id,
        )

    order = run_write(_op)
    current_app.logger.info("Order %s cancelled by user %s", order.order_number, actor.id)
    notification_service.notify_order_status_changed(order, previous["status"])
    return order


def add_tracking(
    order_id: int,
    *,
    carrier: Optional[str],
    tracking_number: str,
    estimated_delivery: Optional[datetime | str] = None,
) -> Order:
    """Attach carrier tracking. Does not change the order status."""
    tracking_number = (tracking_number or "").strip()
    if not tracking_number:
        raise ValidationError("tracking_number is required")
    estimated = _as_datetime(estimated_delivery, "estimated_delivery")

    def _op():
        order = lifecycle_service.load_order_for_update(order_id)
        order.carrier = (carrier or "").strip() or None
        order.tracking_number = tracking_number
        order.estimated_delivery = estimated
        return order

    return run_write(_op)
