# Overview: Payment reconciliation; folds gateway outcomes into order state.

"""
Payment Reconciliation Service

Gateway callbacks from shoppers must carry an HMAC-SHA256 signature made with
PAYMENT_GATEWAY_SECRET over "<order_id>|<provider_reference or reason>";
routes check it with verify_gateway_signature() before calling in here.
Admin reconciliation skips the signature. This module then decides what an
outcome means for the order:

    confirmed  payment completed, pending order -> confirmed
    failed     payment failed, cancellable order -> cancelled (stock released)

A completed payment is final here: confirming it again raises
AlreadyReconciledError and failing it raises ConflictError. Refunds happen
through the lifecycle (returned -> refunded).
"""

from __future__ import annotations

import hashlib
import hmac
from typing import Optional

from flask import current_app

from ..errors import AlreadyReconciledError, ConflictError, UnauthorizedError, ValidationError
from ..models import Order, User
from ..time_utils import utcnow
from . import lifecycle_service, notification_service
from .concurrency import run_write
from .lifecycle_service import (
    CANCELLED,
    CONFIRMED,
    PAYMENT_COMPLETED,
    PAYMENT_FAILED,
    PAYMENT_METHOD_COD,
    PENDING,
    REFUNDED,
)


OUTCOME_CONFIRMED = "confirmed"
OUTCOME_FAILED = "failed"
VALID_OUTCOMES = (OUTCOME_CONFIRMED, OUTCOME_FAILED)


def sign_gateway_event(order_id: int, value: str, secret: str) -> str:
    message = f"{order_id}|{value}".encode("utf-8")
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def verify_gateway_signature(order_id: int, value: Optional[str], signature: Optional[str]) -> None:
    """
    Reject a gateway callback whose signature does not match.

    Raises:
        UnauthorizedError: no PAYMENT_GATEWAY_SECRET configured
        ValidationError: missing or mismatched signature
    """
    secret = current_app.config.get("PAYMENT_GATEWAY_SECRET") or ""
    if not secret:
        raise UnauthorizedError("Payment gateway verification is not configured", {"order_id": order_id})

    expected = sign_gateway_event(order_id, (value or "").strip(), secret)
    if not signature or not hmac.compare_digest(expected, str(signature)):
        current_app.logger.warning("Rejected payment callback for order %s: bad signature", order_id)
        raise ValidationError("Invalid payment signature", {"order_id": order_id})


def _load_for_actor(order_id: int, actor: User) -> Order:
    order = lifecycle_service.load_order_for_update(order_id)
    if order.user_id != actor.id and not actor.is_admin:
        raise UnauthorizedError("Not authorized to update payment for this order", {"order_id": order_id})
    return order


def _notify_if_moved(order: Order, previous_status: str) -> None:
    if order.status != previous_status:
        notification_service.notify_order_status_changed(order, previous_status)


def on_payment_confirmed(order_id: int, provider_reference: str, actor: User) -> Order:
    provider_reference = (provider_reference or "").strip()
    if not provider_reference:
        raise ValidationError("provider_reference is required")
    previous = {}

    def _op():
        order = _load_for_actor(order_id, actor)
        previous["status"] = order.status
        if order.payment_status == PAYMENT_COMPLETED:
            raise AlreadyReconciledError(
                "Payment already completed",
                {"order_id": order.id, "transaction_id": order.payment_transaction_id},
            )
        if order.status in (CANCELLED, REFUNDED):
            raise ConflictError(
                f"Cannot confirm payment for a {order.status} order",
                {"order_id": order.id, "status": order.status},
            )

        order.payment_status = PAYMENT_COMPLETED
        order.payment_transaction_id = provider_reference
        order.paid_at = utcnow()
        if order.status == PENDING:
            lifecycle_service.apply_transition(
                order, CONFIRMED, note="Payment confirmed", actor_user_id=actor.id,
            )
        return order

    order = run_write(_op)
    current_app.logger.info("Payment confirmed for order %s (%s)", order.order_number, provider_reference)
    _notify_if_moved(order, previous["status"])
    return order


def on_payment_failed(order_id: int, reason: Optional[str], actor: User) -> Order:
    reason = (reason or "").strip() or "unknown error"
    previous = {}

    def _op():
        order = _load_for_actor(order_id, actor)
        previous["status"] = order.status
        if order.payment_status == PAYMENT_COMPLETED:
            raise ConflictError(
                "Completed payment cannot be marked as failed",
                {"order_id": order.id},
            )

        order.payment_status = PAYMENT_FAILED
        if lifecycle_service.can_transition(order.status, CANCELLED):
            lifecycle_service.apply_transition(
                order, CANCELLED, note=f"Payment failed: {reason}", actor_user_id=actor.id,
            )
        return order

    order = run_write(_op)
    current_app.logger.warning("Payment failed for order %s: %s", order.order_number, reason)
    _notify_if_moved(order, previous["status"])
    return order


def reconcile_payment(
    order_id: int,
    outcome: str,
    actor: User,
    *,
    provider_reference: Optional[str] = None,
    reason: Optional[str] = None,
) -> Order:
    if outcome == OUTCOME_CONFIRMED:
        return on_payment_confirmed(order_id, provider_reference, actor)
    if outcome == OUTCOME_FAILED:
        return on_payment_failed(order_id, reason, actor)
    raise ValidationError(
        "outcome must be one of: " + ", ".join(VALID_OUTCOMES),
        {"outcome": outcome},
    )


def confirm_cod_order(order_id: int, actor: User) -> Order:
    """Owner confirms a cash-on-delivery order; payment stays pending until delivery."""
    previous = {}

    def _op():
        order = _load_for_actor(order_id, actor)
        previous["status"] = order.status
        if order.payment_method != PAYMENT_METHOD_COD:
            raise ValidationError("Order is not cash on delivery", {"order_id": order.id})
        return lifecycle_service.apply_transition(
            order, CONFIRMED, note="Cash on delivery order confirmed", actor_user_id=actor.id,
        )

    order = run_write(_op)
    _notify_if_moved(order, previous["status"])
    return order
