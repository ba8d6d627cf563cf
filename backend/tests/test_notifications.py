import json

import httpx
import pytest

from storefront.services import lifecycle_service, notification_service


@pytest.fixture
def outbox(app, monkeypatch):
    """Route notification posts to an in-memory transport."""
    sent = []

    def handler(request: httpx.Request) -> httpx.Response:
        sent.append((request.url.path, json.loads(request.content)))
        return httpx.Response(200, json={"ok": True})

    monkeypatch.setitem(app.config, "NOTIFICATION_SERVICE_URL", "http://mailer.test")
    monkeypatch.setitem(app.config, "NOTIFICATION_TRANSPORT", httpx.MockTransport(handler))
    return sent


def test_order_created_notification(outbox, customer, shirt, place_order):
    order = place_order(customer, [(shirt, 1)])

    assert len(outbox) == 1
    path, body = outbox[0]
    assert path == "/send-order-confirmation"
    assert body["order_number"] == order.order_number
    assert body["recipient"]["email"] == "casey@shop.test"
    assert body["order"]["pricing"]["total_cents"] == order.total_cents


def test_status_change_notification(outbox, customer, shirt, place_order):
    order = place_order(customer, [(shirt, 1)])
    lifecycle_service.transition_order(order.id, "confirmed")

    path, body = outbox[-1]
    assert path == "/send-order-status-update"
    assert body["previous_status"] == "pending"
    assert body["status"] == "confirmed"


def test_delivery_failure_does_not_fail_the_order(app, monkeypatch, customer, shirt, place_order, caplog):
    def handler(request):
        return httpx.Response(503)

    monkeypatch.setitem(app.config, "NOTIFICATION_SERVICE_URL", "http://mailer.test")
    monkeypatch.setitem(app.config, "NOTIFICATION_TRANSPORT", httpx.MockTransport(handler))

    order = place_order(customer, [(shirt, 1)])

    assert order.id is not None
    assert order.status == "pending"
    assert "Notification /send-order-confirmation" in caplog.text


def test_connection_error_is_swallowed(app, monkeypatch, customer, shirt, place_order):
    def handler(request):
        raise httpx.ConnectError("mailer down", request=request)

    monkeypatch.setitem(app.config, "NOTIFICATION_SERVICE_URL", "http://mailer.test")
    monkeypatch.setitem(app.config, "NOTIFICATION_TRANSPORT", httpx.MockTransport(handler))

    order = place_order(customer, [(shirt, 1)])
    assert notification_service.notify_order_created(order) is False


def test_disabled_without_url(app, customer, shirt, place_order):
    order = place_order(customer, [(shirt, 1)])
    assert app.config["NOTIFICATION_SERVICE_URL"] == ""
    assert notification_service.notify_order_status_changed(order, "pending") is False
