# backend/storefront/routes/system.py
"""
System health endpoint.

Checks database connectivity and reports row counts for the order core
tables, for deployment debugging.
"""

import time

from flask import Blueprint, jsonify
from sqlalchemy.exc import SQLAlchemyError

from ..extensions import db
from ..models import Coupon, Order, Product
from ..time_utils import to_utc_z, utcnow

system_bp = Blueprint("system", __name__)


def check_database_health() -> dict:
    start_time = time.time()
    try:
        details = {
            "products": db.session.query(Product).count(),
            "orders": db.session.query(Order).count(),
            "coupons": db.session.query(Coupon).count(),
        }
    except SQLAlchemyError as exc:
        db.session.rollback()
        return {"status": "unhealthy", "error": str(exc)}

    return {
        "status": "healthy",
        "latency_ms": round((time.time() - start_time) * 1000, 2),
        "details": details,
    }


@system_bp.get("/health")
def health():
    database = check_database_health()
    healthy = database["status"] == "healthy"
    body = {
        "status": "ok" if healthy else "degraded",
        "timestamp": to_utc_z(utcnow()),
        "checks": {"database": database},
    }
    return jsonify(body), 200 if healthy else 503
