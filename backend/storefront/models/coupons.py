from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z


COUPON_TYPE_PERCENTAGE = "percentage"
COUPON_TYPE_FIXED = "fixed"
VALID_COUPON_TYPES = (COUPON_TYPE_PERCENTAGE, COUPON_TYPE_FIXED)


class Coupon(db.Model):
    """
    Discount coupon.

    value: whole percent for percentage coupons, cents for fixed coupons.

    USAGE INVARIANT: used_count == number of CouponUsage rows for the coupon.
    Only coupon_service.redeem() changes either, in one transaction, and the
    increment is a conditional UPDATE (never read-then-write).

    Scoping lists are JSON arrays of ids; an empty list means "no restriction".
    """
    __tablename__ = "coupons"
    __table_args__ = (
        db.CheckConstraint("used_count >= 0", name="ck_coupons_used_non_negative"),
        db.Index("ix_coupons_validity", "valid_from", "valid_until"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    code = db.Column(db.String(20), nullable=False, unique=True, index=True)
    description = db.Column(db.String(200), nullable=True)

    coupon_type = db.Column(db.String(16), nullable=False)
    value = db.Column(db.Integer, nullable=False)

    minimum_order_cents = db.Column(db.Integer, nullable=False, default=0)
    maximum_discount_cents = db.Column(db.Integer, nullable=True)

    usage_limit = db.Column(db.Integer, nullable=True)  # NULL = unlimited
    usage_limit_per_user = db.Column(db.Integer, nullable=True, default=1)  # NULL = unlimited
    used_count = db.Column(db.Integer, nullable=False, default=0)

    valid_from = db.Column(db.DateTime(timezone=True), nullable=False)
    valid_until = db.Column(db.DateTime(timezone=True), nullable=False)

    applicable_product_ids = db.Column(db.JSON, nullable=False, default=list)
    applicable_category_ids = db.Column(db.JSON, nullable=False, default=list)
    excluded_product_ids = db.Column(db.JSON, nullable=False, default=list)
    excluded_category_ids = db.Column(db.JSON, nullable=False, default=list)
    applicable_user_ids = db.Column(db.JSON, nullable=False, default=list)

    first_time_user_only = db.Column(db.Boolean, nullable=False, default=False)
    is_active = db.Column(db.Boolean, nullable=False, default=True, index=True)

    created_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())

    usage_history = db.relationship(
        "CouponUsage",
        back_populates="coupon",
        order_by="CouponUsage.id",
        lazy=True,
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "code": self.code,
            "description": self.description,
            "type": self.coupon_type,
            "value": self.value,
            "minimum_order_cents": self.minimum_order_cents,
            "maximum_discount_cents": self.maximum_discount_cents,
            "usage_limit": self.usage_limit,
            "usage_limit_per_user": self.usage_limit_per_user,
            "used_count": self.used_count,
            "valid_from": to_utc_z(self.valid_from),
            "valid_until": to_utc_z(self.valid_until),
            "applicable_product_ids": list(self.applicable_product_ids or []),
            "applicable_category_ids": list(self.applicable_category_ids or []),
            "excluded_product_ids": list(self.excluded_product_ids or []),
            "excluded_category_ids": list(self.excluded_category_ids or []),
            "applicable_user_ids": list(self.applicable_user_ids or []),
            "first_time_user_only": self.first_time_user_only,
            "is_active": self.is_active,
            "created_by_user_id": self.created_by_user_id,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }

    def to_public_dict(self) -> dict:
        """Subset safe to show shoppers."""
        return {
            "code": self.code,
            "description": self.description,
            "type": self.coupon_type,
            "value": self.value,
            "minimum_order_cents": self.minimum_order_cents,
            "maximum_discount_cents": self.maximum_discount_cents,
            "valid_until": to_utc_z(self.valid_until),
        }


class CouponUsage(db.Model):
    """
    Append-only redemption log. One row per (coupon, order).
    """
    __tablename__ = "coupon_usages"
    __table_args__ = (
        db.UniqueConstraint("coupon_id", "order_id", name="uq_coupon_usages_coupon_order"),
        db.Index("ix_coupon_usages_coupon_user", "coupon_id", "user_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    coupon_id = db.Column(db.Integer, db.ForeignKey("coupons.id"), nullable=False, index=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    discount_cents = db.Column(db.Integer, nullable=False)
    used_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    coupon = db.relationship("Coupon", back_populates="usage_history")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "coupon_id": self.coupon_id,
            "user_id": self.user_id,
            "order_id": self.order_id,
            "discount_cents": self.discount_cents,
            "used_at": to_utc_z(self.used_at),
        }
