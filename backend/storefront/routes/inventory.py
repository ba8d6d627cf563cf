# backend/storefront/routes/inventory.py
from flask import Blueprint, jsonify, request

from ..decorators import require_admin, require_auth
from ..errors import ShopError
from ..services import inventory_service
from ..validation import parse_int
from . import error_response, internal_error


inventory_bp = Blueprint("inventory", __name__, url_prefix="/api/inventory")


@inventory_bp.get("/low-stock")
@require_auth
@require_admin
def low_stock_route():
    try:
        limit = parse_int(request.args.get("limit", 100), "limit", minimum=1, maximum=500)
        return jsonify({"items": inventory_service.list_low_stock(limit=limit)}), 200
    except ShopError as e:
        return error_response(e)
    except Exception:
        return internal_error("Failed to list low stock")


@inventory_bp.get("/<int:product_id>")
@require_auth
@require_admin
def stock_level_route(product_id: int):
    try:
        return jsonify(inventory_service.get_stock_level(product_id)), 200
    except ShopError as e:
        return error_response(e)
    except Exception:
        return internal_error("Failed to load stock level")


@inventory_bp.post("/<int:product_id>/restock")
@require_auth
@require_admin
def restock_route(product_id: int):
    try:
        data = request.get_json(silent=True) or {}
        quantity = parse_int(data.get("quantity"), "quantity", minimum=1)
        return jsonify(inventory_service.restock(product_id, quantity)), 200
    except ShopError as e:
        return error_response(e)
    except Exception:
        return internal_error("Failed to restock product")
