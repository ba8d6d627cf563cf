# Overview: Pricing calculator; turns a priced cart into order totals.

"""
Pricing Calculator

All money is integer cents at the edges. Inside, every term is an exact
Decimal number of cents and only the final total is rounded (half-up).

    subtotal  = sum(unit_price_cents * quantity)
    tax       = sum(line_subtotal * tax_rate_bps / 10000)   # pre-discount base
    shipping  = flat rate for the shipping method
    total     = round(subtotal - discount + shipping + tax)

Tax and discount are also stored rounded half-up for display, so the stored
terms add up to the stored total within one cent.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

from flask import current_app, has_app_context

from ..errors import ValidationError


DEFAULT_SHIPPING_RATES = {
    "standard": 5900,
    "express": 11800,
    "overnight": 17700,
}

BPS_DIVISOR = Decimal(10000)


def round_half_up(value: Decimal) -> int:
    """Round an exact cent amount to whole cents, halves away from zero."""
    return int(Decimal(value).quantize(Decimal(1), rounding=ROUND_HALF_UP))


@dataclass(frozen=True)
class CartLine:
    """A requested line as submitted by the shopper. Prices are never taken from here."""
    product_id: int
    quantity: int
    size: Optional[str] = None
    color: Optional[str] = None


@dataclass(frozen=True)
class PricedLine:
    """A cart line priced from the live product row."""
    product_id: int
    quantity: int
    unit_price_cents: int
    tax_rate_bps: int = 0
    name: str = ""
    sku: Optional[str] = None
    image_url: Optional[str] = None
    category_id: Optional[int] = None
    size: Optional[str] = None
    color: Optional[str] = None

    @property
    def line_subtotal_cents(self) -> int:
        return self.unit_price_cents * self.quantity

    @property
    def line_tax(self) -> Decimal:
        return Decimal(self.line_subtotal_cents) * Decimal(self.tax_rate_bps) / BPS_DIVISOR

    @classmethod
    def from_product(cls, product, cart_line: CartLine) -> "PricedLine":
        return cls(
            product_id=product.id,
            quantity=int(cart_line.quantity),
            unit_price_cents=product.price_cents,
            tax_rate_bps=product.tax_rate_bps or 0,
            name=product.name,
            sku=product.sku,
            image_url=product.image_url,
            category_id=product.category_id,
            size=cart_line.size,
            color=cart_line.color,
        )


@dataclass(frozen=True)
class Pricing:
    subtotal_cents: int
    tax_cents: int
    shipping_cents: int
    discount_cents: int
    total_cents: int
    line_tax_cents: tuple = field(default_factory=tuple)

    def to_dict(self) -> dict:
        return {
            "subtotal_cents": self.subtotal_cents,
            "tax_cents": self.tax_cents,
            "shipping_cents": self.shipping_cents,
            "discount_cents": self.discount_cents,
            "total_cents": self.total_cents,
        }


def shipping_rates() -> dict:
    if has_app_context():
        return current_app.config.get("SHIPPING_RATES") or DEFAULT_SHIPPING_RATES
    return DEFAULT_SHIPPING_RATES


def shipping_cost(shipping_method: str, rates: Optional[dict] = None) -> int:
    rates = rates if rates is not None else shipping_rates()
    if shipping_method not in rates:
        raise ValidationError(
            "Unknown shipping method",
            {"shipping_method": shipping_method, "allowed": sorted(rates)},
        )
    return int(rates[shipping_method])


def subtotal_cents(lines) -> int:
    return sum(line.line_subtotal_cents for line in lines)


def price(
    lines: list[PricedLine],
    discount=0,
    shipping_method: str = "standard",
    *,
    rates: Optional[dict] = None,
) -> Pricing:
    """
    Price an order.

    discount is the exact discount in cents (int or Decimal), already clamped
    by the coupon engine; it is clamped to the subtotal again here so the total
    can never go negative.
    """
    if not lines:
        raise ValidationError("At least one line is required")

    subtotal = subtotal_cents(lines)
    exact_discount = min(max(Decimal(discount), Decimal(0)), Decimal(subtotal))
    exact_tax = sum((line.line_tax for line in lines), Decimal(0))
    shipping = shipping_cost(shipping_method, rates)

    total = round_half_up(Decimal(subtotal) - exact_discount + Decimal(shipping) + exact_tax)

    return Pricing(
        subtotal_cents=subtotal,
        tax_cents=round_half_up(exact_tax),
        shipping_cents=shipping,
        discount_cents=round_half_up(exact_discount),
        total_cents=max(total, 0),
        line_tax_cents=tuple(round_half_up(line.line_tax) for line in lines),
    )
