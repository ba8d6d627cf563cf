# backend/storefront/routes/payments.py
"""
Payment gateway callbacks.

Shopper callbacks for /confirm and /failure must carry the gateway's
``signature``; admins may post outcomes without one. payment_service then
checks order ownership.
"""

from flask import Blueprint, g, jsonify, request

from ..decorators import require_auth
from ..errors import ShopError
from ..services import payment_service
from ..validation import parse_int
from . import error_response, internal_error


payments_bp = Blueprint("payments", __name__, url_prefix="/api/payments")


def _order_id(data: dict) -> int:
    return parse_int(data.get("order_id"), "order_id", minimum=1)


def _verify(order_id: int, value, data: dict) -> None:
    if g.current_user.is_admin:
        return
    payment_service.verify_gateway_signature(order_id, value, data.get("signature"))


@payments_bp.post("/confirm")
@require_auth
def confirm_payment_route():
    """Body: order_id, provider_reference, signature."""
    try:
        data = request.get_json(silent=True) or {}
        order_id = _order_id(data)
        _verify(order_id, data.get("provider_reference"), data)
        order = payment_service.on_payment_confirmed(
            order_id, data.get("provider_reference"), g.current_user,
        )
        return jsonify({"order": order.to_dict()}), 200
    except ShopError as e:
        return error_response(e)
    except Exception:
        return internal_error("Failed to confirm payment")


@payments_bp.post("/failure")
@require_auth
def payment_failure_route():
    """Body: order_id, reason, signature."""
    try:
        data = request.get_json(silent=True) or {}
        order_id = _order_id(data)
        _verify(order_id, data.get("reason"), data)
        order = payment_service.on_payment_failed(order_id, data.get("reason"), g.current_user)
        return jsonify({"order": order.to_dict()}), 200
    except ShopError as e:
        return error_response(e)
    except Exception:
        return internal_error("Failed to record payment failure")


@payments_bp.post("/cod")
@require_auth
def confirm_cod_route():
    try:
        data = request.get_json(silent=True) or {}
        order = payment_service.confirm_cod_order(_order_id(data), g.current_user)
        return jsonify({"order": order.to_dict()}), 200
    except ShopError as e:
        return error_response(e)
    except Exception:
        return internal_error("Failed to confirm cash on delivery order")
