from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z


class Order(db.Model):
    """
    Customer order (financial record, never deleted).

    PRICING INVARIANT:
        total_cents == subtotal_cents - discount_cents + shipping_cents + tax_cents
    within one cent (tax and discount are stored rounded; the total is rounded
    once from the exact terms), and total_cents >= 0.

    STATUS: only lifecycle_service writes ``status``. Every write appends an
    OrderStatusEvent in the same transaction.

    CONCURRENCY: version_id is the optimistic lock column; two writers that
    both loaded the same version cannot both commit.
    """
    __tablename__ = "orders"
    __table_args__ = (
        db.CheckConstraint("total_cents >= 0", name="ck_orders_total_non_negative"),
        db.Index("ix_orders_user_created", "user_id", "created_at"),
        db.Index("ix_orders_status_created", "status", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    # Human-readable order number (e.g., "ORD-20261019-000042")
    order_number = db.Column(db.String(64), nullable=False, unique=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)

    status = db.Column(db.String(16), nullable=False, default="pending", index=True)

    shipping_address = db.Column(db.JSON, nullable=False)
    billing_address = db.Column(db.JSON, nullable=False)

    # Pricing (all amounts in cents)
    subtotal_cents = db.Column(db.Integer, nullable=False)
    tax_cents = db.Column(db.Integer, nullable=False, default=0)
    shipping_cents = db.Column(db.Integer, nullable=False, default=0)
    discount_cents = db.Column(db.Integer, nullable=False, default=0)
    total_cents = db.Column(db.Integer, nullable=False)

    # Coupon application snapshot
    coupon_id = db.Column(db.Integer, db.ForeignKey("coupons.id"), nullable=True, index=True)
    coupon_code = db.Column(db.String(20), nullable=True)
    coupon_type = db.Column(db.String(16), nullable=True)

    # Payment
    payment_method = db.Column(db.String(32), nullable=False)
    payment_status = db.Column(db.String(16), nullable=False, default="pending", index=True)
    payment_transaction_id = db.Column(db.String(128), nullable=True)
    paid_at = db.Column(db.DateTime(timezone=True), nullable=True)
    refunded_at = db.Column(db.DateTime(timezone=True), nullable=True)
    refund_amount_cents = db.Column(db.Integer, nullable=True)

    # Shipping
    shipping_method = db.Column(db.String(32), nullable=False, default="standard")
    carrier = db.Column(db.String(64), nullable=True)
    tracking_number = db.Column(db.String(128), nullable=True)
    estimated_delivery = db.Column(db.DateTime(timezone=True), nullable=True)
    shipped_at = db.Column(db.DateTime(timezone=True), nullable=True)
    delivered_at = db.Column(db.DateTime(timezone=True), nullable=True)

    # Cancellation
    cancellation_reason = db.Column(db.String(255), nullable=True)
    cancelled_at = db.Column(db.DateTime(timezone=True), nullable=True)
    cancelled_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    refund_status = db.Column(db.String(16), nullable=True)  # pending, processed, failed

    # Set once when reserved stock has been given back (cancel or return)
    stock_released_at = db.Column(db.DateTime(timezone=True), nullable=True)

    customer_note = db.Column(db.String(1000), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )
    version_id = db.Column(db.Integer, nullable=False, default=1)

    user = db.relationship("User", foreign_keys=[user_id], backref=db.backref("orders", lazy=True))
    lines = db.relationship(
        "OrderLine",
        back_populates="order",
        order_by="OrderLine.position",
        lazy=True,
    )
    status_history = db.relationship(
        "OrderStatusEvent",
        back_populates="order",
        order_by="OrderStatusEvent.id",
        lazy=True,
    )
    __mapper_args__ = {"version_id_col": version_id}

    def pricing_dict(self) -> dict:
        return {
            "subtotal_cents": self.subtotal_cents,
            "tax_cents": self.tax_cents,
            "shipping_cents": self.shipping_cents,
            "discount_cents": self.discount_cents,
            "total_cents": self.total_cents,
        }

    def to_dict(self, include_lines: bool = True) -> dict:
        data = {
            "id": self.id,
            "order_number": self.order_number,
            "user_id": self.user_id,
            "status": self.status,
            "shipping_address": self.shipping_address,
            "billing_address": self.billing_address,
            "pricing": self.pricing_dict(),
            "coupon": {
                "code": self.coupon_code,
                "discount_cents": self.discount_cents,
                "type": self.coupon_type,
            } if self.coupon_code else None,
            "payment": {
                "method": self.payment_method,
                "status": self.payment_status,
                "transaction_id": self.payment_transaction_id,
                "paid_at": to_utc_z(self.paid_at),
                "refunded_at": to_utc_z(self.refunded_at),
                "refund_amount_cents": self.refund_amount_cents,
            },
            "shipping": {
                "method": self.shipping_method,
                "carrier": self.carrier,
                "tracking_number": self.tracking_number,
                "estimated_delivery": to_utc_z(self.estimated_delivery),
                "shipped_at": to_utc_z(self.shipped_at),
                "delivered_at": to_utc_z(self.delivered_at),
            },
            "cancellation": {
                "reason": self.cancellation_reason,
                "cancelled_at": to_utc_z(self.cancelled_at),
                "cancelled_by": self.cancelled_by_user_id,
                "refund_status": self.refund_status,
            } if self.cancelled_at else None,
            "customer_note": self.customer_note,
            "status_history": [event.to_dict() for event in self.status_history],
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
            "version_id": self.version_id,
        }
        if include_lines:
            data["lines"] = [line.to_dict() for line in self.lines]
        return data


class OrderLine(db.Model):
    """
    Priced snapshot of a cart line. Immutable once the order exists: later
    catalog price/name changes never reach it.
    """
    __tablename__ = "order_lines"
    __table_args__ = (
        db.UniqueConstraint("order_id", "position", name="uq_order_lines_order_position"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    position = db.Column(db.Integer, nullable=False)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)

    name = db.Column(db.String(200), nullable=False)
    sku = db.Column(db.String(64), nullable=True)
    image_url = db.Column(db.String(512), nullable=True)
    size = db.Column(db.String(32), nullable=True)
    color = db.Column(db.String(32), nullable=True)

    quantity = db.Column(db.Integer, nullable=False)
    unit_price_cents = db.Column(db.Integer, nullable=False)
    tax_rate_bps = db.Column(db.Integer, nullable=False, default=0)
    line_subtotal_cents = db.Column(db.Integer, nullable=False)
    line_tax_cents = db.Column(db.Integer, nullable=False, default=0)

    order = db.relationship("Order", back_populates="lines")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "position": self.position,
            "product_id": self.product_id,
            "name": self.name,
            "sku": self.sku,
            "image_url": self.image_url,
            "size": self.size,
            "color": self.color,
            "quantity": self.quantity,
            "unit_price_cents": self.unit_price_cents,
            "tax_rate_bps": self.tax_rate_bps,
            "line_subtotal_cents": self.line_subtotal_cents,
            "line_tax_cents": self.line_tax_cents,
        }


class OrderStatusEvent(db.Model):
    """
    Append-only order status history.

    IMMUTABLE: rows are inserted by lifecycle_service and never updated or
    deleted. Ordering by id gives the audit sequence.
    """
    __tablename__ = "order_status_events"
    __table_args__ = (
        db.Index("ix_order_status_events_order", "order_id", "id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False)
    status = db.Column(db.String(16), nullable=False)
    note = db.Column(db.String(255), nullable=True)
    actor_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    occurred_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    order = db.relationship("Order", back_populates="status_history")

    def to_dict(self) -> dict:
        return {
            "status": self.status,
            "note": self.note,
            "actor_user_id": self.actor_user_id,
            "occurred_at": to_utc_z(self.occurred_at),
        }


class OrderSequence(db.Model):
    """
    Atomic order-number counters, one row per scope (calendar day).
    """
    __tablename__ = "order_sequences"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    scope = db.Column(db.String(16), nullable=False, unique=True)
    next_number = db.Column(db.Integer, nullable=False, default=1)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())
