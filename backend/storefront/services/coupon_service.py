# Overview: Coupon engine; eligibility rules, discount math, redemption and coupon admin.

"""
Coupon Engine

Eligibility rules run in a fixed order. evaluate() stops at the first
failure; validate_coupon() walks the same pipeline and reports every
violation at once.

    1. coupon exists (NotFoundError) and is active
    2. now within [valid_from, valid_until] ("not_yet_active" / "expired")
    3. usage_limit is NULL or used_count < usage_limit
    4. cart total >= minimum_order_cents
    5. first_time_user_only: user has no non-cancelled orders
    6. user's own redemptions < usage_limit_per_user
    7. applicable_user_ids empty or contains the user
    8. product/category allow-lists: at least one line matches either list
    9. deny-lists: any matching line rejects the coupon

Rules 5-7 need a user and are skipped for anonymous validation. Exclusion
always wins over inclusion.

REDEMPTION: redeem() runs after the order row exists, inside the checkout
transaction. The used_count increment is a conditional UPDATE that only
matches while used_count < usage_limit, so N concurrent checkouts against a
coupon with M remaining uses succeed at most M times. Any failure raises
CouponError and the caller's transaction (order, stock, usage) rolls back.
"""

from __future__ import annotations

import re
import secrets
import string
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Iterable, Iterator, Optional

from flask import current_app
from sqlalchemy import func, or_, update
from sqlalchemy.exc import IntegrityError

from ..errors import ConflictError, CouponError, NotFoundError, ValidationError
from ..extensions import db
from ..models import Coupon, CouponUsage, Product
from ..models.coupons import COUPON_TYPE_PERCENTAGE, VALID_COUPON_TYPES
from ..time_utils import as_naive_utc, parse_iso_datetime, utcnow
from .auth_service import count_completed_orders
from .concurrency import run_write
from .pricing_service import round_half_up


CODE_LENGTH = 8
CODE_MAX_LENGTH = 20
CODE_PATTERN = re.compile(r"^[A-Z0-9_-]{1,20}$")
SCOPE_LIST_FIELDS = (
    "applicable_product_ids",
    "applicable_category_ids",
    "excluded_product_ids",
    "excluded_category_ids",
    "applicable_user_ids",
)


@dataclass(frozen=True)
class CouponLine:
    product_id: int
    category_id: Optional[int] = None


@dataclass(frozen=True)
class Violation:
    reason: str
    message: str

    def to_dict(self) -> dict:
        return {"reason": self.reason, "message": self.message}


@dataclass(frozen=True)
class DiscountDecision:
    coupon: Coupon
    discount: Decimal

    @property
    def discount_cents(self) -> int:
        return round_half_up(self.discount)

    def to_dict(self) -> dict:
        return {
            "coupon": self.coupon.to_public_dict(),
            "discount_cents": self.discount_cents,
        }


def normalize_code(code: Optional[str]) -> str:
    return (code or "").strip().upper()


def get_coupon_by_code(code: str) -> Coupon:
    normalized = normalize_code(code)
    if not normalized:
        raise ValidationError("Coupon code is required")
    coupon = db.session.query(Coupon).filter_by(code=normalized).first()
    if coupon is None:
        raise NotFoundError("Invalid coupon code", {"code": normalized})
    return coupon


def lines_for_products(product_ids: Iterable[int]) -> list[CouponLine]:
    """Resolve categories for bare product ids (unknown ids keep category None)."""
    ids = list(dict.fromkeys(int(pid) for pid in product_ids))
    if not ids:
        return []
    categories = dict(
        db.session.query(Product.id, Product.category_id).filter(Product.id.in_(ids)).all()
    )
    return [CouponLine(product_id=pid, category_id=categories.get(pid)) for pid in ids]


def user_usage_count(coupon_id: int, user_id: int) -> int:
    return (
        db.session.query(func.count(CouponUsage.id))
        .filter(CouponUsage.coupon_id == coupon_id, CouponUsage.user_id == user_id)
        .scalar()
        or 0
    )


def compute_discount(coupon: Coupon, cart_total_cents: int) -> Decimal:
    """
    Exact discount in cents.

    percentage: cart_total * value / 100; fixed: value. Clamped to
    maximum_discount_cents when set, then to [0, cart_total].
    """
    cart_total = Decimal(cart_total_cents)
    if coupon.coupon_type == COUPON_TYPE_PERCENTAGE:
        discount = cart_total * Decimal(coupon.value) / Decimal(100)
    else:
        discount = Decimal(coupon.value)

    if coupon.maximum_discount_cents is not None:
        discount = min(discount, Decimal(coupon.maximum_discount_cents))

    return min(max(discount, Decimal(0)), cart_total)


def _violations(
    coupon: Coupon,
    *,
    user_id: Optional[int],
    cart_total_cents: int,
    lines: list,
    user_order_count: Optional[int],
    now: datetime,
) -> Iterator[Violation]:
    if not coupon.is_active:
        yield Violation("inactive", "Coupon is not active")

    if now < as_naive_utc(coupon.valid_from):
        yield Violation("not_yet_active", "Coupon is not yet active")
    elif now > as_naive_utc(coupon.valid_until):
        yield Violation("expired", "Coupon has expired")

    if coupon.usage_limit is not None and coupon.used_count >= coupon.usage_limit:
        yield Violation("usage_limit_reached", "Coupon usage limit reached")

    if cart_total_cents < (coupon.minimum_order_cents or 0):
        yield Violation(
            "minimum_not_met",
            f"Minimum order amount of {coupon.minimum_order_cents} cents required",
        )

    if user_id is not None:
        if coupon.first_time_user_only:
            if user_order_count is None:
                user_order_count = count_completed_orders(user_id)
            if user_order_count > 0:
                yield Violation("first_time_only", "Coupon is valid for first-time customers only")

        if coupon.usage_limit_per_user is not None:
            if user_usage_count(coupon.id, user_id) >= coupon.usage_limit_per_user:
                yield Violation("per_user_limit_reached", "You have already used this coupon")

        allowed_users = coupon.applicable_user_ids or []
        if allowed_users and user_id not in allowed_users:
            yield Violation("user_not_eligible", "Coupon is not available for this account")

    allowed_products = set(coupon.applicable_product_ids or [])
    allowed_categories = set(coupon.applicable_category_ids or [])
    if allowed_products or allowed_categories:
        if not any(
            line.product_id in allowed_products or line.category_id in allowed_categories
            for line in lines
        ):
            yield Violation("not_applicable", "Coupon does not apply to any item in the cart")

    excluded_products = set(coupon.excluded_product_ids or [])
    excluded_categories = set(coupon.excluded_category_ids or [])
    if excluded_products or excluded_categories:
        if any(
            line.product_id in excluded_products
            or (line.category_id is not None and line.category_id in excluded_categories)
            for line in lines
        ):
            yield Violation("excluded_item", "Coupon cannot be used with some items in the cart")


def evaluate(
    code: str,
    user_id: Optional[int],
    cart_total_cents: int,
    cart_lines: Iterable,
    user_order_count: Optional[int] = None,
    *,
    now: Optional[datetime] = None,
) -> DiscountDecision:
    """
    Check a coupon against a cart, stopping at the first failed rule.

    cart_lines are objects with product_id and category_id (PricedLine or
    CouponLine). Raises NotFoundError for an unknown code, CouponError with
    details["reason"] otherwise.
    """
    coupon = get_coupon_by_code(code)
    lines = list(cart_lines)
    violation = next(
        _violations(
            coupon,
            user_id=user_id,
            cart_total_cents=cart_total_cents,
            lines=lines,
            user_order_count=user_order_count,
            now=now or utcnow(),
        ),
        None,
    )
    if violation is not None:
        raise CouponError(violation.message, {"code": coupon.code, "reason": violation.reason})
    return DiscountDecision(coupon=coupon, discount=compute_discount(coupon, cart_total_cents))


def validate_coupon(
    code: str,
    user_id: Optional[int],
    cart_total_cents: int,
    cart_lines: Iterable,
    user_order_count: Optional[int] = None,
    *,
    now: Optional[datetime] = None,
) -> DiscountDecision:
    """
    Like evaluate(), but collects every violated rule.

    Raises CouponError whose details["violations"] lists them all.
    """
    coupon = get_coupon_by_code(code)
    lines = list(cart_lines)
    violations = list(
        _violations(
            coupon,
            user_id=user_id,
            cart_total_cents=cart_total_cents,
            lines=lines,
            user_order_count=user_order_count,
            now=now or utcnow(),
        )
    )
    if violations:
        raise CouponError(
            violations[0].message,
            {"code": coupon.code, "violations": [v.to_dict() for v in violations]},
        )
    return DiscountDecision(coupon=coupon, discount=compute_discount(coupon, cart_total_cents))


def redeem(coupon: Coupon, user_id: int, order, discount_cents: int) -> CouponUsage:
    """
    Record one redemption for an order that already has an id.

    Must run inside the checkout's write transaction; nothing is committed.
    """
    stmt = (
        update(Coupon)
        .where(
            Coupon.id == coupon.id,
            or_(Coupon.usage_limit.is_(None), Coupon.used_count < Coupon.usage_limit),
        )
        .values(used_count=Coupon.used_count + 1)
        .execution_options(synchronize_session=False)
    )
    if db.session.execute(stmt).rowcount != 1:
        raise CouponError("Coupon usage limit reached", {"code": coupon.code, "reason": "usage_limit_reached"})

    if coupon.usage_limit_per_user is not None:
        if user_usage_count(coupon.id, user_id) >= coupon.usage_limit_per_user:
            raise CouponError(
                "You have already used this coupon",
                {"code": coupon.code, "reason": "per_user_limit_reached"},
            )

    usage = CouponUsage(
        coupon_id=coupon.id,
        user_id=user_id,
        order_id=order.id,
        discount_cents=discount_cents,
        used_at=utcnow(),
    )
    db.session.add(usage)
    try:
        db.session.flush()
    except IntegrityError as exc:
        raise CouponError(
            "Coupon already applied to this order",
            {"code": coupon.code, "reason": "already_redeemed"},
        ) from exc

    db.session.expire(coupon, ["used_count"])
    return usage


# =============================================================================
# Coupon administration
# =============================================================================

def generate_coupon_code(length: int = CODE_LENGTH) -> str:
    alphabet = string.ascii_uppercase + string.digits
    for _ in range(10):
        code = "".join(secrets.choice(alphabet) for _ in range(length))
        if not db.session.query(Coupon.id).filter_by(code=code).first():
            return code
    raise ConflictError("Could not generate a unique coupon code")


def _int_field(data: dict, key: str, *, minimum: int = 0, nullable: bool = False):
    value = data.get(key)
    if value is None:
        if nullable:
            return None
        raise ValidationError(f"{key} is required")
    if isinstance(value, bool):
        raise ValidationError(f"{key} must be an integer")
    try:
        value = int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{key} must be an integer")
    if value < minimum:
        raise ValidationError(f"{key} must be >= {minimum}")
    return value


def _id_list(data: dict, key: str) -> list[int]:
    value = data.get(key) or []
    if not isinstance(value, list):
        raise ValidationError(f"{key} must be a list of ids")
    try:
        return [int(v) for v in value]
    except (TypeError, ValueError):
        raise ValidationError(f"{key} must be a list of ids")


def _datetime_field(data: dict, key: str) -> datetime:
    value = data.get(key)
    if isinstance(value, datetime):
        return as_naive_utc(value)
    try:
        parsed = parse_iso_datetime(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{key} must be an ISO-8601 datetime")
    if parsed is None:
        raise ValidationError(f"{key} is required")
    return parsed


def _apply_fields(coupon: Coupon, data: dict, *, creating: bool) -> None:
    if creating or "type" in data:
        coupon_type = (data.get("type") or "").lower()
        if coupon_type not in VALID_COUPON_TYPES:
            raise ValidationError("type must be one of: " + ", ".join(VALID_COUPON_TYPES))
        coupon.coupon_type = coupon_type

    if creating or "value" in data:
        coupon.value = _int_field(data, "value", minimum=1)

    if coupon.coupon_type == COUPON_TYPE_PERCENTAGE and coupon.value > 100:
        raise ValidationError("Percentage value cannot exceed 100")

    if "description" in data:
        coupon.description = (data.get("description") or "").strip()[:200] or None
    if creating or "minimum_order_cents" in data:
        coupon.minimum_order_cents = _int_field(data, "minimum_order_cents", nullable=True) or 0
    if "maximum_discount_cents" in data:
        coupon.maximum_discount_cents = _int_field(data, "maximum_discount_cents", nullable=True)
    if "usage_limit" in data:
        coupon.usage_limit = _int_field(data, "usage_limit", minimum=1, nullable=True)
    if "usage_limit_per_user" in data:
        coupon.usage_limit_per_user = _int_field(data, "usage_limit_per_user", minimum=1, nullable=True)
    elif creating:
        coupon.usage_limit_per_user = 1

    if creating or "valid_from" in data:
        coupon.valid_from = _datetime_field(data, "valid_from")
    if creating or "valid_until" in data:
        coupon.valid_until = _datetime_field(data, "valid_until")
    if as_naive_utc(coupon.valid_until) <= as_naive_utc(coupon.valid_from):
        raise ValidationError("valid_until must be after valid_from")

    for key in SCOPE_LIST_FIELDS:
        if creating or key in data:
            setattr(coupon, key, _id_list(data, key))

    if "first_time_user_only" in data:
        coupon.first_time_user_only = bool(data["first_time_user_only"])
    elif creating:
        coupon.first_time_user_only = False
    if "is_active" in data:
        coupon.is_active = bool(data["is_active"])
    elif creating:
        coupon.is_active = True


def _checked_code(raw: str) -> str:
    code = normalize_code(raw)
    if not CODE_PATTERN.match(code):
        raise ValidationError(
            f"Coupon code must be 1-{CODE_MAX_LENGTH} characters of A-Z, 0-9, '-' or '_'",
            {"code": code},
        )
    return code


def create_coupon(data: dict, created_by_user_id: int) -> Coupon:
    code = _checked_code(data["code"]) if data.get("code") else generate_coupon_code()

    def _op():
        if db.session.query(Coupon.id).filter_by(code=code).first():
            raise ConflictError("Coupon code already exists", {"code": code})
        coupon = Coupon(code=code, used_count=0, created_by_user_id=created_by_user_id)
        _apply_fields(coupon, data, creating=True)
        db.session.add(coupon)
        db.session.flush()
        return coupon

    coupon = run_write(_op)
    current_app.logger.info("Coupon %s created by user %s", coupon.code, created_by_user_id)
    return coupon


def get_coupon(coupon_id: int) -> Coupon:
    coupon = db.session.get(Coupon, coupon_id)
    if coupon is None:
        raise NotFoundError("Coupon not found", {"coupon_id": coupon_id})
    return coupon


def update_coupon(coupon_id: int, data: dict) -> Coupon:
    def _op():
        coupon = get_coupon(coupon_id)
        if "code" in data:
            code = _checked_code(data["code"])
            clash = (
                db.session.query(Coupon.id)
                .filter(Coupon.code == code, Coupon.id != coupon.id)
                .first()
            )
            if clash:
                raise ConflictError("Coupon code already exists", {"code": code})
            coupon.code = code
        _apply_fields(coupon, data, creating=False)
        return coupon

    return run_write(_op)


def delete_coupon(coupon_id: int) -> None:
    """Delete an unused coupon. Used coupons keep their history; deactivate them instead."""
    def _op():
        coupon = get_coupon(coupon_id)
        if coupon.used_count > 0:
            raise ConflictError(
                "Coupon has been used and cannot be deleted; deactivate it instead",
                {"coupon_id": coupon.id, "used_count": coupon.used_count},
            )
        db.session.delete(coupon)

    run_write(_op)


def list_coupons(
    *,
    is_active: Optional[bool] = None,
    coupon_type: Optional[str] = None,
    page: int = 1,
    per_page: int = 20,
) -> dict:
    query = db.session.query(Coupon)
    if is_active is not None:
        query = query.filter(Coupon.is_active.is_(is_active))
    if coupon_type:
        query = query.filter(Coupon.coupon_type == coupon_type.lower())

    total = query.count()
    coupons = (
        query.order_by(Coupon.created_at.desc(), Coupon.id.desc())
        .offset((page - 1) * per_page)
        .limit(per_page)
        .all()
    )
    return {
        "items": [c.to_dict() for c in coupons],
        "page": page,
        "per_page": per_page,
        "total": total,
        "pages": (total + per_page - 1) // per_page,
    }


def get_coupon_stats(coupon_id: int) -> dict:
    coupon = get_coupon(coupon_id)
    usages = coupon.usage_history

    by_date: dict[str, dict] = {}
    for usage in usages:
        day = as_naive_utc(usage.used_at).date().isoformat()
        bucket = by_date.setdefault(day, {"date": day, "count": 0, "discount_cents": 0})
        bucket["count"] += 1
        bucket["discount_cents"] += usage.discount_cents

    return {
        "coupon": coupon.to_dict(),
        "total_usage": coupon.used_count,
        "remaining_uses": (
            max(coupon.usage_limit - coupon.used_count, 0)
            if coupon.usage_limit is not None
            else None
        ),
        "total_discount_cents": sum(u.discount_cents for u in usages),
        "unique_users": len({u.user_id for u in usages}),
        "usage_by_date": [by_date[d] for d in sorted(by_date)],
    }


def list_active_coupons_for_user(user_id: int, *, now: Optional[datetime] = None) -> list[Coupon]:
    """Coupons this user could redeem right now, ignoring cart-dependent rules."""
    now = now or utcnow()
    candidates = (
        db.session.query(Coupon)
        .filter(
            Coupon.is_active.is_(True),
            Coupon.valid_from <= now,
            Coupon.valid_until >= now,
            or_(Coupon.usage_limit.is_(None), Coupon.used_count < Coupon.usage_limit),
        )
        .order_by(Coupon.valid_until.asc(), Coupon.id.asc())
        .all()
    )

    order_count = None
    result = []
    for coupon in candidates:
        allowed_users = coupon.applicable_user_ids or []
        if allowed_users and user_id not in allowed_users:
            continue
        if coupon.usage_limit_per_user is not None:
            if user_usage_count(coupon.id, user_id) >= coupon.usage_limit_per_user:
                continue
        if coupon.first_time_user_only:
            if order_count is None:
                order_count = count_completed_orders(user_id)
            if order_count > 0:
                continue
        result.append(coupon)
    return result
