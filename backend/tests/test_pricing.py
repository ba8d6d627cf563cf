from decimal import Decimal

import pytest

from storefront.errors import ValidationError
from storefront.services import pricing_service
from storefront.services.pricing_service import PricedLine, price, round_half_up, shipping_cost


def _line(unit_price_cents, quantity, tax_rate_bps=800, product_id=1):
    return PricedLine(
        product_id=product_id,
        quantity=quantity,
        unit_price_cents=unit_price_cents,
        tax_rate_bps=tax_rate_bps,
    )


def test_round_half_up_rounds_halves_away_from_zero():
    assert round_half_up(Decimal("0.5")) == 1
    assert round_half_up(Decimal("1.49")) == 1
    assert round_half_up(Decimal("2.5")) == 3
    assert round_half_up(Decimal("-0.5")) == -1


def test_save10_scenario_totals():
    pricing = price([_line(10000, 2)], discount=Decimal(2000), shipping_method="standard")

    assert pricing.subtotal_cents == 20000
    assert pricing.discount_cents == 2000
    assert pricing.tax_cents == 1600
    assert pricing.shipping_cents == 5900
    assert pricing.total_cents == 25500


def test_tax_uses_pre_discount_line_subtotal():
    with_discount = price([_line(10000, 1)], discount=5000)
    without_discount = price([_line(10000, 1)], discount=0)

    assert with_discount.tax_cents == without_discount.tax_cents == 800


def test_total_rounded_once_from_exact_terms():
    # Three lines each carry 0.4 cents of tax: rounded per line that is 0,
    # summed exactly it is 1.2 -> 1.
    lines = [_line(5, 1, tax_rate_bps=800, product_id=i) for i in range(3)]
    pricing = price(lines, discount=0, shipping_method="standard")

    assert pricing.line_tax_cents == (0, 0, 0)
    assert pricing.tax_cents == 1
    assert pricing.total_cents == 15 + 5900 + 1


@pytest.mark.parametrize("discount", [Decimal("333.3333"), Decimal("0.5"), Decimal("1999.5")])
def test_stored_terms_reconcile_within_one_cent(discount):
    pricing = price([_line(3333, 3, tax_rate_bps=725)], discount=discount, shipping_method="express")
    recomputed = (
        pricing.subtotal_cents - pricing.discount_cents + pricing.shipping_cents + pricing.tax_cents
    )
    assert abs(recomputed - pricing.total_cents) <= 1
    assert pricing.total_cents >= 0


def test_discount_clamped_to_subtotal():
    pricing = price([_line(1000, 1, tax_rate_bps=0)], discount=Decimal(999999), shipping_method="standard")

    assert pricing.discount_cents == 1000
    assert pricing.total_cents == 5900


def test_shipping_is_flat_per_method():
    assert shipping_cost("standard") == 5900
    assert shipping_cost("express") == 11800
    assert shipping_cost("overnight") == 17700
    assert shipping_cost("standard", rates={"standard": 0}) == 0


def test_unknown_shipping_method_rejected():
    with pytest.raises(ValidationError) as exc:
        shipping_cost("teleport")
    assert "standard" in exc.value.details["allowed"]


def test_empty_cart_rejected():
    with pytest.raises(ValidationError):
        price([], discount=0)


def test_shipping_rates_read_from_app_config(app, monkeypatch):
    monkeypatch.setitem(app.config, "SHIPPING_RATES", {"standard": 100})
    with app.app_context():
        assert pricing_service.shipping_cost("standard") == 100
