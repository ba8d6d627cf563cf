from datetime import timedelta
from decimal import Decimal

import pytest

from storefront.errors import ConflictError, CouponError, NotFoundError, ValidationError
from storefront.extensions import db
from storefront.models import Coupon, CouponUsage
from storefront.services import coupon_service
from storefront.services.concurrency import run_write
from storefront.services.coupon_service import CouponLine
from storefront.time_utils import utcnow

from conftest import reload


def _lines(*products):
    return [CouponLine(p.id, p.category_id) for p in products]


def _reason(exc_info):
    return exc_info.value.details["reason"]


class TestEvaluate:
    def test_percentage_discount(self, customer, shirt, make_coupon):
        make_coupon()
        decision = coupon_service.evaluate("save10", customer.id, 20000, _lines(shirt), 0)

        assert decision.coupon.code == "SAVE10"
        assert decision.discount == Decimal(2000)
        assert decision.discount_cents == 2000

    def test_fixed_discount_clamped_to_cart_total(self, customer, shirt, make_coupon):
        make_coupon(code="BIG", coupon_type="fixed", value=50000, minimum_order_cents=0)
        decision = coupon_service.evaluate("BIG", customer.id, 12000, _lines(shirt), 0)

        assert decision.discount_cents == 12000

    def test_maximum_discount_cap(self, customer, shirt, make_coupon):
        make_coupon(code="HALF", value=50, maximum_discount_cents=3000)
        decision = coupon_service.evaluate("HALF", customer.id, 20000, _lines(shirt), 0)

        assert decision.discount_cents == 3000

    def test_unknown_code(self, customer, shirt):
        with pytest.raises(NotFoundError):
            coupon_service.evaluate("NOPE", customer.id, 20000, _lines(shirt), 0)

    def test_inactive(self, customer, shirt, make_coupon):
        make_coupon(is_active=False)
        with pytest.raises(CouponError) as exc:
            coupon_service.evaluate("SAVE10", customer.id, 20000, _lines(shirt), 0)
        assert _reason(exc) == "inactive"

    def test_not_yet_active_and_expired_are_distinct(self, customer, shirt, make_coupon):
        now = utcnow()
        make_coupon(code="SOON", valid_from=now + timedelta(days=1), valid_until=now + timedelta(days=2))
        make_coupon(code="OLD", valid_from=now - timedelta(days=5), valid_until=now - timedelta(days=1))

        with pytest.raises(CouponError) as soon:
            coupon_service.evaluate("SOON", customer.id, 20000, _lines(shirt), 0)
        with pytest.raises(CouponError) as old:
            coupon_service.evaluate("OLD", customer.id, 20000, _lines(shirt), 0)

        assert _reason(soon) == "not_yet_active"
        assert _reason(old) == "expired"

    def test_usage_limit_reached(self, customer, shirt, make_coupon):
        make_coupon(usage_limit=5, used_count=5)
        with pytest.raises(CouponError) as exc:
            coupon_service.evaluate("SAVE10", customer.id, 20000, _lines(shirt), 0)
        assert _reason(exc) == "usage_limit_reached"

    def test_minimum_order(self, customer, shirt, make_coupon):
        make_coupon(minimum_order_cents=50000)
        with pytest.raises(CouponError) as exc:
            coupon_service.evaluate("SAVE10", customer.id, 20000, _lines(shirt), 0)
        assert _reason(exc) == "minimum_not_met"

    def test_first_time_only(self, customer, shirt, make_coupon):
        make_coupon(first_time_user_only=True)
        with pytest.raises(CouponError) as exc:
            coupon_service.evaluate("SAVE10", customer.id, 20000, _lines(shirt), 2)
        assert _reason(exc) == "first_time_only"

        decision = coupon_service.evaluate("SAVE10", customer.id, 20000, _lines(shirt), 0)
        assert decision.discount_cents == 2000

    def test_first_time_only_counts_orders_when_not_supplied(self, customer, shirt, make_coupon, place_order):
        make_coupon(first_time_user_only=True)
        place_order(customer, [(shirt, 1)])

        with pytest.raises(CouponError) as exc:
            coupon_service.evaluate("SAVE10", customer.id, 20000, _lines(shirt))
        assert _reason(exc) == "first_time_only"

    def test_per_user_limit(self, customer, shirt, make_coupon, place_order):
        make_coupon()
        place_order(customer, [(shirt, 2)], coupon_code="SAVE10")

        with pytest.raises(CouponError) as exc:
            coupon_service.evaluate("SAVE10", customer.id, 20000, _lines(shirt), 0)
        assert _reason(exc) == "per_user_limit_reached"

    def test_user_allow_list(self, customer, other_customer, shirt, make_coupon):
        make_coupon(applicable_user_ids=[other_customer.id])
        with pytest.raises(CouponError) as exc:
            coupon_service.evaluate("SAVE10", customer.id, 20000, _lines(shirt), 0)
        assert _reason(exc) == "user_not_eligible"

        assert coupon_service.evaluate("SAVE10", other_customer.id, 20000, _lines(shirt), 0)

    def test_user_rules_skipped_for_anonymous(self, other_customer, shirt, make_coupon):
        make_coupon(applicable_user_ids=[other_customer.id], first_time_user_only=True)
        decision = coupon_service.evaluate("SAVE10", None, 20000, _lines(shirt))
        assert decision.discount_cents == 2000

    def test_product_or_category_allow_list(self, customer, shirt, sneaker, make_coupon):
        make_coupon(code="SHOES", applicable_category_ids=[sneaker.category_id])

        with pytest.raises(CouponError) as exc:
            coupon_service.evaluate("SHOES", customer.id, 20000, _lines(shirt), 0)
        assert _reason(exc) == "not_applicable"

        assert coupon_service.evaluate("SHOES", customer.id, 20000, _lines(shirt, sneaker), 0)

        make_coupon(code="SHIRTS", applicable_product_ids=[shirt.id])
        assert coupon_service.evaluate("SHIRTS", customer.id, 20000, _lines(shirt), 0)

    def test_exclusion_wins_over_inclusion(self, customer, shirt, make_coupon):
        make_coupon(applicable_product_ids=[shirt.id], excluded_category_ids=[shirt.category_id])
        with pytest.raises(CouponError) as exc:
            coupon_service.evaluate("SAVE10", customer.id, 20000, _lines(shirt), 0)
        assert _reason(exc) == "excluded_item"

    def test_first_failure_wins(self, customer, shirt, make_coupon):
        make_coupon(is_active=False, minimum_order_cents=999999)
        with pytest.raises(CouponError) as exc:
            coupon_service.evaluate("SAVE10", customer.id, 20000, _lines(shirt), 0)
        assert _reason(exc) == "inactive"


def test_validate_reports_every_violation(customer, shirt, make_coupon):
    now = utcnow()
    make_coupon(
        is_active=False,
        valid_until=now - timedelta(minutes=1),
        minimum_order_cents=999999,
        excluded_product_ids=[shirt.id],
    )

    with pytest.raises(CouponError) as exc:
        coupon_service.validate_coupon("SAVE10", customer.id, 20000, _lines(shirt), 0)

    reasons = [v["reason"] for v in exc.value.details["violations"]]
    assert reasons == ["inactive", "expired", "minimum_not_met", "excluded_item"]


def test_validate_returns_decision_when_valid(customer, shirt, make_coupon):
    make_coupon()
    decision = coupon_service.validate_coupon("SAVE10", customer.id, 20000, _lines(shirt), 0)
    assert decision.to_dict()["discount_cents"] == 2000


class TestRedeem:
    def test_used_count_matches_usage_rows(self, customer, other_customer, shirt, make_coupon, place_order):
        coupon = make_coupon(usage_limit=10)
        place_order(customer, [(shirt, 1)], coupon_code="SAVE10")
        place_order(other_customer, [(shirt, 1)], coupon_code="SAVE10")

        coupon = reload(coupon)
        usages = db.session.query(CouponUsage).filter_by(coupon_id=coupon.id).count()
        assert coupon.used_count == usages == 2

    def test_redeem_refuses_past_limit(self, customer, shirt, make_coupon, place_order):
        coupon = make_coupon(usage_limit=1, usage_limit_per_user=None, minimum_order_cents=0)
        order = place_order(customer, [(shirt, 1)])

        run_write(lambda: coupon_service.redeem(db.session.get(Coupon, coupon.id), customer.id, order, 100))
        with pytest.raises(CouponError) as exc:
            run_write(lambda: coupon_service.redeem(db.session.get(Coupon, coupon.id), customer.id, order, 100))

        assert _reason(exc) == "usage_limit_reached"
        assert reload(coupon).used_count == 1

    def test_redeem_once_per_order(self, customer, shirt, make_coupon, place_order):
        coupon = make_coupon(usage_limit=None, usage_limit_per_user=None)
        order = place_order(customer, [(shirt, 1)])

        run_write(lambda: coupon_service.redeem(db.session.get(Coupon, coupon.id), customer.id, order, 100))
        with pytest.raises(CouponError) as exc:
            run_write(lambda: coupon_service.redeem(db.session.get(Coupon, coupon.id), customer.id, order, 100))

        assert _reason(exc) == "already_redeemed"
        assert reload(coupon).used_count == 1


class TestAdmin:
    def _payload(self, **overrides):
        now = utcnow()
        data = {
            "type": "percentage",
            "value": 15,
            "valid_from": (now - timedelta(days=1)).isoformat() + "Z",
            "valid_until": (now + timedelta(days=10)).isoformat() + "Z",
        }
        data.update(overrides)
        return data

    def test_create_generates_code(self, admin):
        coupon = coupon_service.create_coupon(self._payload(), admin.id)

        assert len(coupon.code) == 8
        assert coupon.code == coupon.code.upper()
        assert coupon.usage_limit_per_user == 1
        assert coupon.used_count == 0

    def test_create_normalizes_and_rejects_duplicates(self, admin):
        coupon = coupon_service.create_coupon(self._payload(code=" spring-24 "), admin.id)
        assert coupon.code == "SPRING-24"

        with pytest.raises(ConflictError):
            coupon_service.create_coupon(self._payload(code="SPRING-24"), admin.id)

    @pytest.mark.parametrize("overrides", [
        {"type": "bogus"},
        {"value": 0},
        {"value": 101},
        {"code": "THIS-CODE-IS-FAR-TOO-LONG"},
        {"valid_until": "2000-01-01T00:00:00Z"},
        {"applicable_product_ids": "7"},
    ])
    def test_create_validation(self, admin, overrides):
        with pytest.raises(ValidationError):
            coupon_service.create_coupon(self._payload(**overrides), admin.id)

    def test_update(self, admin):
        coupon = coupon_service.create_coupon(self._payload(code="EDIT"), admin.id)
        updated = coupon_service.update_coupon(coupon.id, {"value": 20, "is_active": False, "usage_limit": 50})

        assert updated.value == 20
        assert updated.is_active is False
        assert updated.usage_limit == 50

    def test_delete_only_unused(self, admin, customer, shirt, place_order):
        unused = coupon_service.create_coupon(self._payload(code="UNUSED"), admin.id)
        coupon_service.delete_coupon(unused.id)
        with pytest.raises(NotFoundError):
            coupon_service.get_coupon(unused.id)

        used = coupon_service.create_coupon(self._payload(code="USED"), admin.id)
        place_order(customer, [(shirt, 1)], coupon_code="USED")
        with pytest.raises(ConflictError):
            coupon_service.delete_coupon(used.id)

    def test_list_filters_and_paginates(self, admin):
        for i in range(3):
            coupon_service.create_coupon(self._payload(code=f"PCT{i}"), admin.id)
        coupon_service.create_coupon(self._payload(code="FIX", type="fixed", value=500), admin.id)

        fixed = coupon_service.list_coupons(coupon_type="fixed")
        assert [c["code"] for c in fixed["items"]] == ["FIX"]

        page = coupon_service.list_coupons(per_page=2, page=2)
        assert page["total"] == 4
        assert page["pages"] == 2
        assert len(page["items"]) == 2

    def test_stats(self, admin, customer, other_customer, shirt, place_order):
        coupon = coupon_service.create_coupon(self._payload(code="STATS", usage_limit=5), admin.id)
        place_order(customer, [(shirt, 1)], coupon_code="STATS")
        place_order(other_customer, [(shirt, 2)], coupon_code="STATS")

        stats = coupon_service.get_coupon_stats(coupon.id)

        assert stats["total_usage"] == 2
        assert stats["remaining_uses"] == 3
        assert stats["unique_users"] == 2
        assert stats["total_discount_cents"] == 1500 + 3000
        assert sum(day["count"] for day in stats["usage_by_date"]) == 2

    def test_active_coupons_for_user(self, admin, customer, other_customer, shirt, make_coupon, place_order):
        make_coupon(code="OPEN")
        make_coupon(code="VIP", applicable_user_ids=[other_customer.id])
        make_coupon(code="GONE", is_active=False)
        make_coupon(code="WELCOME", first_time_user_only=True)
        make_coupon(code="ONCE", minimum_order_cents=0)
        place_order(customer, [(shirt, 1)], coupon_code="ONCE")

        codes = {c.code for c in coupon_service.list_active_coupons_for_user(customer.id)}
        assert codes == {"OPEN"}
