from flask import current_app, jsonify

from ..errors import ShopError


def error_response(exc: ShopError):
    """JSON body and status for a domain error."""
    return jsonify(exc.to_dict()), exc.status_code


def internal_error(message: str):
    current_app.logger.exception(message)
    return jsonify({"error": "Internal server error", "kind": "error"}), 500
