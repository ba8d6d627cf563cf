# backend/storefront/routes/orders.py
"""Order API routes: checkout, queries, status changes and cancellation."""

from flask import Blueprint, g, jsonify, request

from ..decorators import require_admin, require_auth
from ..errors import ShopError, ValidationError
from ..services import lifecycle_service, order_service, payment_service
from ..validation import parse_cart_lines, parse_int, parse_pagination
from . import error_response, internal_error


orders_bp = Blueprint("orders", __name__, url_prefix="/api/orders")


@orders_bp.post("")
@require_auth
def create_order_route():
    """
    Place an order from a cart.

    Body: items[{product_id, quantity, size?, color?}], shipping_address,
    billing_address?, payment_method, shipping_method?, coupon_code?, notes?
    """
    try:
        data = request.get_json(silent=True) or {}
        order = order_service.create_order(
            g.current_user,
            parse_cart_lines(data.get("items")),
            shipping_address=data.get("shipping_address"),
            billing_address=data.get("billing_address"),
            payment_method=data.get("payment_method"),
            shipping_method=data.get("shipping_method") or "standard",
            coupon_code=data.get("coupon_code"),
            customer_note=data.get("notes"),
        )
        return jsonify({"order": order.to_dict()}), 201
    except ShopError as e:
        return error_response(e)
    except Exception:
        return internal_error("Failed to create order")


@orders_bp.get("")
@require_auth
def list_orders_route():
    """Admins see all orders; customers see their own."""
    try:
        page, per_page = parse_pagination(request.args)
        user_id = request.args.get("user_id")
        result = order_service.list_orders(
            g.current_user,
            status=request.args.get("status"),
            payment_status=request.args.get("payment_status"),
            search=request.args.get("search"),
            start=request.args.get("start_date"),
            end=request.args.get("end_date"),
            user_id=parse_int(user_id, "user_id") if user_id else None,
            page=page,
            per_page=per_page,
        )
        return jsonify(result), 200
    except ShopError as e:
        return error_response(e)
    except Exception:
        return internal_error("Failed to list orders")


@orders_bp.get("/<int:order_id>")
@require_auth
def get_order_route(order_id: int):
    try:
        order = order_service.get_order(order_id, g.current_user)
        return jsonify({"order": order.to_dict()}), 200
    except ShopError as e:
        return error_response(e)
    except Exception:
        return internal_error("Failed to load order")


@orders_bp.put("/<int:order_id>/status")
@require_auth
@require_admin
def update_status_route(order_id: int):
    try:
        data = request.get_json(silent=True) or {}
        status = data.get("status")
        if not status:
            raise ValidationError("status is required")
        order = lifecycle_service.transition_order(
            order_id,
            status,
            note=data.get("note"),
            actor_user_id=g.current_user.id,
        )
        return jsonify({"order": order.to_dict()}), 200
    except ShopError as e:
        return error_response(e)
    except Exception:
        return internal_error("Failed to update order status")


@orders_bp.put("/<int:order_id>/cancel")
@require_auth
def cancel_order_route(order_id: int):
    """Owner or admin."""
    try:
        data = request.get_json(silent=True) or {}
        order = order_service.cancel_order(order_id, g.current_user, data.get("reason"))
        return jsonify({"order": order.to_dict()}), 200
    except ShopError as e:
        return error_response(e)
    except Exception:
        return internal_error("Failed to cancel order")


@orders_bp.put("/<int:order_id>/tracking")
@require_auth
@require_admin
def add_tracking_route(order_id: int):
    try:
        data = request.get_json(silent=True) or {}
        order = order_service.add_tracking(
            order_id,
            carrier=data.get("carrier"),
            tracking_number=data.get("tracking_number"),
            estimated_delivery=data.get("estimated_delivery"),
        )
        return jsonify({"order": order.to_dict()}), 200
    except ShopError as e:
        return error_response(e)
    except Exception:
        return internal_error("Failed to add tracking")


@orders_bp.put("/<int:order_id>/payment")
@require_auth
@require_admin
def update_payment_route(order_id: int):
    """Body: outcome ("confirmed" | "failed"), provider_reference?, reason?"""
    try:
        data = request.get_json(silent=True) or {}
        order = payment_service.reconcile_payment(
            order_id,
            data.get("outcome"),
            g.current_user,
            provider_reference=data.get("provider_reference"),
            reason=data.get("reason"),
        )
        return jsonify({"order": order.to_dict()}), 200
    except ShopError as e:
        return error_response(e)
    except Exception:
        return internal_error("Failed to update payment")
