# Overview: Order lifecycle state machine; the only writer of Order.status.

"""
Order Lifecycle Service

================================================================================
STATE MACHINE
================================================================================

    from        to
    ----------  --------------------------------
    pending     confirmed, processing, cancelled
    confirmed   processing, shipped, cancelled
    processing  shipped, cancelled
    shipped     delivered, returned
    returned    refunded

Terminal: delivered, cancelled, refunded.

RULES:
1. Every status write goes through apply_transition(), which appends an
   OrderStatusEvent in the same transaction.
2. Side effects are keyed on the target status:
     shipped    stamp shipped_at
     delivered  stamp delivered_at; cash-on-delivery payment completes
     cancelled  record cancellation, release stock once
     returned   release stock once
     refunded   completed payment -> refunded; pending cancellation refund
                -> processed
3. Stock is released at most once per order (stock_released_at guard), so a
   returned order that is later refunded never gives stock back twice.
4. Who may drive a transition is decided by the caller (order_service and
   the routes), not here.
================================================================================
"""

from __future__ import annotations

from typing import Optional

from flask import current_app

from ..errors import InvalidTransitionError, NotFoundError, ValidationError
from ..extensions import db
from ..models import Order, OrderStatusEvent
from ..time_utils import utcnow
from . import inventory_service, notification_service
from .concurrency import lock_for_update, run_write


PENDING = "pending"
CONFIRMED = "confirmed"
PROCESSING = "processing"
SHIPPED = "shipped"
DELIVERED = "delivered"
CANCELLED = "cancelled"
RETURNED = "returned"
REFUNDED = "refunded"

VALID_STATUSES = (
    PENDING, CONFIRMED, PROCESSING, SHIPPED, DELIVERED, CANCELLED, RETURNED, REFUNDED,
)

TRANSITIONS = {
    PENDING: frozenset({CONFIRMED, PROCESSING, CANCELLED}),
    CONFIRMED: frozenset({PROCESSING, SHIPPED, CANCELLED}),
    PROCESSING: frozenset({SHIPPED, CANCELLED}),
    SHIPPED: frozenset({DELIVERED, RETURNED}),
    RETURNED: frozenset({REFUNDED}),
    DELIVERED: frozenset(),
    CANCELLED: frozenset(),
    REFUNDED: frozenset(),
}

TERMINAL_STATUSES = frozenset(s for s, targets in TRANSITIONS.items() if not targets)

# Payment status values
PAYMENT_PENDING = "pending"
PAYMENT_PROCESSING = "processing"
PAYMENT_COMPLETED = "completed"
PAYMENT_FAILED = "failed"
PAYMENT_REFUNDED = "refunded"

PAYMENT_METHOD_COD = "cod"

# Width of OrderStatusEvent.note and Order.cancellation_reason
NOTE_MAX_LENGTH = 255


def clip_note(note: Optional[str]) -> Optional[str]:
    if note is None:
        return None
    return str(note).strip()[:NOTE_MAX_LENGTH] or None


def validate_status(status: str) -> None:
    if status not in TRANSITIONS:
        raise ValidationError(
            f"Invalid status '{status}'. Must be one of: {', '.join(VALID_STATUSES)}"
        )


def can_transition(from_status: str, to_status: str) -> bool:
    """Same-status moves are not transitions and return False."""
    return to_status in TRANSITIONS.get(from_status, frozenset())


def record_status(order: Order, status: str, note: Optional[str], actor_user_id: Optional[int]) -> OrderStatusEvent:
    event = OrderStatusEvent(
        order=order,
        status=status,
        note=clip_note(note),
        actor_user_id=actor_user_id,
        occurred_at=utcnow(),
    )
    db.session.add(event)
    return event


def _release_stock_once(order: Order, now) -> None:
    if order.stock_released_at is not None:
        return
    inventory_service.release(order.lines)
    order.stock_released_at = now


def _on_shipped(order: Order, note, actor_user_id, now) -> None:
    order.shipped_at = now


def _on_delivered(order: Order, note, actor_user_id, now) -> None:
    order.delivered_at = now
    if order.payment_method == PAYMENT_METHOD_COD:
        order.payment_status = PAYMENT_COMPLETED
        order.paid_at = now


def _on_cancelled(order: Order, note, actor_user_id, now) -> None:
    order.cancellation_reason = note
    order.cancelled_at = now
    order.cancelled_by_user_id = actor_user_id
    order.refund_status = "pending"
    _release_stock_once(order, now)


def _on_returned(order: Order, note, actor_user_id, now) -> None:
    _release_stock_once(order, now)


def _on_refunded(order: Order, note, actor_user_id, now) -> None:
    if order.payment_status == PAYMENT_COMPLETED:
        order.payment_status = PAYMENT_REFUNDED
        order.refunded_at = now
        order.refund_amount_cents = order.total_cents
    if order.refund_status == "pending":
        order.refund_status = "processed"


SIDE_EFFECTS = {
    SHIPPED: _on_shipped,
    DELIVERED: _on_delivered,
    CANCELLED: _on_cancelled,
    RETURNED: _on_returned,
    REFUNDED: _on_refunded,
}


def apply_transition(
    order: Order,
    new_status: str,
    *,
    note: Optional[str] = None,
    actor_user_id: Optional[int] = None,
) -> Order:
    """
    Move an already-loaded order to new_status inside the caller's transaction.

    Raises InvalidTransitionError (order untouched) when the move is not in
    TRANSITIONS. Nothing is committed here.
    """
    validate_status(new_status)
    if not can_transition(order.status, new_status):
        raise InvalidTransitionError(
            f"Cannot change order status from {order.status} to {new_status}",
            {"order_id": order.id, "from": order.status, "to": new_status},
        )

    note = clip_note(note)
    now = utcnow()
    order.status = new_status
    side_effect = SIDE_EFFECTS.get(new_status)
    if side_effect is not None:
        side_effect(order, note, actor_user_id, now)
    record_status(order, new_status, note, actor_user_id)
    return order


def load_order_for_update(order_id: int) -> Order:
    order = lock_for_update(db.session.query(Order).filter(Order.id == order_id)).first()
    if order is None:
        raise NotFoundError("Order not found", {"order_id": order_id})
    return order


def transition_order(
    order_id: int,
    new_status: str,
    *,
    note: Optional[str] = None,
    actor_user_id: Optional[int] = None,
    notify: bool = True,
) -> Order:
    """
    Load, transition and commit in one write transaction.

    A concurrent writer that already moved the order makes this one fail
    with InvalidTransitionError (after re-reading) or, when both committed
    against the same version, StaleDataError retried into the same answer.
    """
    previous = {}

    def _op():
        order = load_order_for_update(order_id)
        previous["status"] = order.status
        return apply_transition(order, new_status, note=note, actor_user_id=actor_user_id)

    order = run_write(_op)
    current_app.logger.info(
        "Order %s: %s -> %s", order.order_number, previous["status"], order.status,
    )
    if notify:
        notification_service.notify_order_status_changed(order, previous["status"])
    return order
