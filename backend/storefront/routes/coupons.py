# backend/storefront/routes/coupons.py
"""Coupon API: shopper validation plus admin management."""

from flask import Blueprint, g, jsonify, request

from ..decorators import require_admin, require_auth
from ..errors import ShopError, ValidationError
from ..services import coupon_service
from ..validation import parse_bool, parse_int, parse_pagination
from . import error_response, internal_error


coupons_bp = Blueprint("coupons", __name__, url_prefix="/api/coupons")


@coupons_bp.post("/validate")
@require_auth
def validate_coupon_route():
    """
    Check a code against a cart without redeeming it.

    Body: code, cart_total_cents, product_ids[]. A rejected coupon comes
    back as 409 with every violated rule in details.violations.
    """
    try:
        data = request.get_json(silent=True) or {}
        cart_total = parse_int(data.get("cart_total_cents"), "cart_total_cents", minimum=0)
        product_ids = data.get("product_ids") or []
        if not isinstance(product_ids, list):
            raise ValidationError("product_ids must be a list")
        lines = coupon_service.lines_for_products(
            parse_int(pid, "product_ids[]", minimum=1) for pid in product_ids
        )
        decision = coupon_service.validate_coupon(
            data.get("code"), g.current_user.id, cart_total, lines,
        )
        return jsonify({"valid": True, **decision.to_dict()}), 200
    except ShopError as e:
        return error_response(e)
    except Exception:
        return internal_error("Failed to validate coupon")


@coupons_bp.get("/active")
@require_auth
def active_coupons_route():
    try:
        coupons = coupon_service.list_active_coupons_for_user(g.current_user.id)
        return jsonify({"coupons": [c.to_public_dict() for c in coupons]}), 200
    except Exception:
        return internal_error("Failed to list active coupons")


@coupons_bp.get("")
@require_auth
@require_admin
def list_coupons_route():
    try:
        page, per_page = parse_pagination(request.args)
        result = coupon_service.list_coupons(
            is_active=parse_bool(request.args.get("is_active")),
            coupon_type=request.args.get("type"),
            page=page,
            per_page=per_page,
        )
        return jsonify(result), 200
    except ShopError as e:
        return error_response(e)
    except Exception:
        return internal_error("Failed to list coupons")


@coupons_bp.post("")
@require_auth
@require_admin
def create_coupon_route():
    try:
        data = request.get_json(silent=True) or {}
        coupon = coupon_service.create_coupon(data, g.current_user.id)
        return jsonify({"coupon": coupon.to_dict()}), 201
    except ShopError as e:
        return error_response(e)
    except Exception:
        return internal_error("Failed to create coupon")


@coupons_bp.get("/<int:coupon_id>")
@require_auth
@require_admin
def get_coupon_route(coupon_id: int):
    try:
        return jsonify({"coupon": coupon_service.get_coupon(coupon_id).to_dict()}), 200
    except ShopError as e:
        return error_response(e)
    except Exception:
        return internal_error("Failed to load coupon")


@coupons_bp.put("/<int:coupon_id>")
@require_auth
@require_admin
def update_coupon_route(coupon_id: int):
    try:
        data = request.get_json(silent=True) or {}
        coupon = coupon_service.update_coupon(coupon_id, data)
        return jsonify({"coupon": coupon.to_dict()}), 200
    except ShopError as e:
        return error_response(e)
    except Exception:
        return internal_error("Failed to update coupon")


@coupons_bp.delete("/<int:coupon_id>")
@require_auth
@require_admin
def delete_coupon_route(coupon_id: int):
    try:
        coupon_service.delete_coupon(coupon_id)
        return jsonify({"status": "deleted"}), 200
    except ShopError as e:
        return error_response(e)
    except Exception:
        return internal_error("Failed to delete coupon")


@coupons_bp.get("/<int:coupon_id>/stats")
@require_auth
@require_admin
def coupon_stats_route(coupon_id: int):
    try:
        return jsonify(coupon_service.get_coupon_stats(coupon_id)), 200
    except ShopError as e:
        return error_response(e)
    except Exception:
        return internal_error("Failed to load coupon stats")
