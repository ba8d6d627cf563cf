# Overview: Outbound order notifications posted to the mail service over HTTP.

"""
Notification collaborator.

Fire and forget: called after the order transaction has committed, and a
delivery failure never undoes or fails the order operation. Failures are
logged as warnings. An empty NOTIFICATION_SERVICE_URL disables delivery.

Tests inject an ``httpx.MockTransport`` through NOTIFICATION_TRANSPORT.
"""

from __future__ import annotations

import httpx
from flask import current_app

from ..models import Order


ORDER_CREATED_PATH = "/send-order-confirmation"
ORDER_STATUS_PATH = "/send-order-status-update"


def _client() -> httpx.Client | None:
    base_url = current_app.config.get("NOTIFICATION_SERVICE_URL") or ""
    if not base_url:
        return None
    return httpx.Client(
        base_url=base_url.rstrip("/"),
        timeout=current_app.config.get("NOTIFICATION_TIMEOUT_SECONDS", 30.0),
        transport=current_app.config.get("NOTIFICATION_TRANSPORT"),
    )


def _recipient(order: Order) -> dict:
    user = order.user
    return {
        "email": user.email if user else None,
        "name": user.full_name if user else None,
    }


def _post(path: str, payload: dict) -> bool:
    client = _client()
    if client is None:
        return False
    try:
        with client:
            response = client.post(path, json=payload)
            response.raise_for_status()
    except httpx.HTTPError as exc:
        current_app.logger.warning(
            "Notification %s for order %s failed: %s",
            path, payload.get("order_number"), exc,
        )
        return False
    return True


def notify_order_created(order: Order) -> bool:
    return _post(ORDER_CREATED_PATH, {
        "order_number": order.order_number,
        "recipient": _recipient(order),
        "order": order.to_dict(),
    })


def notify_order_status_changed(order: Order, previous_status: str) -> bool:
    return _post(ORDER_STATUS_PATH, {
        "order_number": order.order_number,
        "recipient": _recipient(order),
        "previous_status": previous_status,
        "status": order.status,
        "tracking_number": order.tracking_number,
        "carrier": order.carrier,
    })
