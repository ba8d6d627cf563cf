import pytest

from storefront.errors import AlreadyReconciledError, ConflictError, UnauthorizedError, ValidationError
from storefront.services import lifecycle_service, order_service, payment_service

from conftest import GATEWAY_SECRET, reload


def test_confirm_moves_pending_order_to_confirmed(customer, shirt, place_order):
    order = place_order(customer, [(shirt, 1)])
    order = payment_service.on_payment_confirmed(order.id, "pi_abc", customer)

    assert order.payment_status == "completed"
    assert order.payment_transaction_id == "pi_abc"
    assert order.paid_at is not None
    assert order.status == "confirmed"
    assert order.status_history[-1].note == "Payment confirmed"


def test_confirm_twice_is_already_reconciled(customer, shirt, place_order):
    order = place_order(customer, [(shirt, 1)])
    payment_service.on_payment_confirmed(order.id, "pi_abc", customer)

    with pytest.raises(AlreadyReconciledError):
        payment_service.on_payment_confirmed(order.id, "pi_other", customer)
    assert reload(order).payment_transaction_id == "pi_abc"


def test_confirm_cancelled_order_conflicts(customer, shirt, place_order):
    order = place_order(customer, [(shirt, 1)])
    order_service.cancel_order(order.id, customer)

    with pytest.raises(ConflictError):
        payment_service.on_payment_confirmed(order.id, "pi_late", customer)


def test_confirm_requires_owner_or_admin(customer, other_customer, admin, shirt, place_order):
    order = place_order(customer, [(shirt, 1)])

    with pytest.raises(UnauthorizedError):
        payment_service.on_payment_confirmed(order.id, "pi_x", other_customer)
    assert payment_service.on_payment_confirmed(order.id, "pi_x", admin).status == "confirmed"


def test_confirm_requires_reference(customer, shirt, place_order):
    order = place_order(customer, [(shirt, 1)])
    with pytest.raises(ValidationError):
        payment_service.on_payment_confirmed(order.id, "  ", customer)


def test_failure_cancels_and_releases_stock(customer, shirt, place_order):
    order = place_order(customer, [(shirt, 3)])
    order = payment_service.on_payment_failed(order.id, "card declined", customer)

    assert order.payment_status == "failed"
    assert order.status == "cancelled"
    assert order.cancellation_reason == "Payment failed: card declined"
    assert reload(shirt).stock == 10


def test_failure_after_completion_conflicts(customer, shirt, place_order):
    order = place_order(customer, [(shirt, 1)])
    payment_service.on_payment_confirmed(order.id, "pi_ok", customer)

    with pytest.raises(ConflictError):
        payment_service.on_payment_failed(order.id, "chargeback", customer)
    assert reload(order).payment_status == "completed"


def test_failure_on_shipped_order_only_marks_payment(customer, shirt, place_order):
    order = place_order(customer, [(shirt, 1)], payment_method="cod")
    lifecycle_service.transition_order(order.id, "confirmed")
    lifecycle_service.transition_order(order.id, "shipped")

    order = payment_service.on_payment_failed(order.id, "courier lost cash", customer)
    assert order.status == "shipped"
    assert order.payment_status == "failed"


def test_reconcile_dispatches_on_outcome(admin, customer, shirt, place_order):
    first = place_order(customer, [(shirt, 1)])
    second = place_order(customer, [(shirt, 1)])

    assert payment_service.reconcile_payment(
        first.id, "confirmed", admin, provider_reference="pi_1",
    ).status == "confirmed"
    assert payment_service.reconcile_payment(
        second.id, "failed", admin, reason="insufficient funds",
    ).status == "cancelled"
    with pytest.raises(ValidationError):
        payment_service.reconcile_payment(first.id, "maybe", admin)


def test_confirm_cod_order(customer, shirt, place_order):
    order = place_order(customer, [(shirt, 1)], payment_method="cod")
    order = payment_service.confirm_cod_order(order.id, customer)

    assert order.status == "confirmed"
    assert order.payment_status == "pending"


def test_confirm_cod_rejects_prepaid(customer, shirt, place_order):
    order = place_order(customer, [(shirt, 1)], payment_method="paypal")
    with pytest.raises(ValidationError):
        payment_service.confirm_cod_order(order.id, customer)


class TestGatewaySignature:
    def test_accepts_matching_signature(self, app):
        signature = payment_service.sign_gateway_event(42, "pi_abc", GATEWAY_SECRET)
        payment_service.verify_gateway_signature(42, "pi_abc", signature)

    @pytest.mark.parametrize("order_id, value, signature", [
        (42, "pi_abc", None),
        (42, "pi_abc", "not-a-signature"),
        (43, "pi_abc", payment_service.sign_gateway_event(42, "pi_abc", GATEWAY_SECRET)),
        (42, "pi_forged", payment_service.sign_gateway_event(42, "pi_abc", GATEWAY_SECRET)),
        (42, "pi_abc", payment_service.sign_gateway_event(42, "pi_abc", "wrong-secret")),
    ])
    def test_rejects_mismatch(self, app, order_id, value, signature):
        with pytest.raises(ValidationError):
            payment_service.verify_gateway_signature(order_id, value, signature)

    def test_unconfigured_secret_rejects_everything(self, app, monkeypatch):
        monkeypatch.setitem(app.config, "PAYMENT_GATEWAY_SECRET", "")
        with pytest.raises(UnauthorizedError):
            payment_service.verify_gateway_signature(
                42, "pi_abc", payment_service.sign_gateway_event(42, "pi_abc", GATEWAY_SECRET),
            )
