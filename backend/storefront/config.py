# backend/storefront/config.py
from __future__ import annotations

import json
import os


def _shipping_rates_from_env() -> dict[str, int]:
    """
    Flat shipping rates in cents, keyed by shipping method.

    SHIPPING_RATES may hold a JSON object such as
    '{"standard": 5900, "express": 11800}' to override the defaults.
    """
    raw = os.environ.get("SHIPPING_RATES")
    if not raw:
        return {"standard": 5900, "express": 11800, "overnight": 17700}
    return {str(k): int(v) for k, v in json.loads(raw).items()}


class Config:
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored in backend/instance/storefront.sqlite3
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL",
        "sqlite:///storefront.sqlite3",
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    ORDER_NUMBER_PREFIX = os.environ.get("ORDER_NUMBER_PREFIX", "ORD")
    SHIPPING_RATES = _shipping_rates_from_env()

    # Outbound order emails; empty disables delivery
    NOTIFICATION_SERVICE_URL = os.environ.get("NOTIFICATION_SERVICE_URL", "")
    NOTIFICATION_TIMEOUT_SECONDS = float(os.environ.get("NOTIFICATION_TIMEOUT_SECONDS", "30"))

    # HMAC key for shopper-side payment callbacks; empty means only admins reconcile
    PAYMENT_GATEWAY_SECRET = os.environ.get("PAYMENT_GATEWAY_SECRET", "")

    SESSION_TTL_HOURS = int(os.environ.get("SESSION_TTL_HOURS", "24"))
    BCRYPT_ROUNDS = int(os.environ.get("BCRYPT_ROUNDS", "12"))
