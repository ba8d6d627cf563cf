# Overview: Atomic order-number allocation.

from __future__ import annotations

from datetime import datetime

from flask import current_app
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from ..errors import ConflictError
from ..extensions import db
from ..models import OrderSequence
from ..time_utils import utcnow


def _claim(scope: str) -> int | None:
    """Bump an existing day row; returns the claimed number or None when the row is missing."""
    stmt = (
        update(OrderSequence)
        .where(OrderSequence.scope == scope)
        .values(next_number=OrderSequence.next_number + 1)
        .execution_options(synchronize_session=False)
    )
    if not db.session.execute(stmt).rowcount:
        return None
    current = (
        db.session.query(OrderSequence.next_number)
        .filter_by(scope=scope)
        .scalar()
    )
    return current - 1


def next_order_number(*, now: datetime | None = None, pad: int = 6) -> str:
    """
    Allocate the next order number, e.g. ``ORD-20261019-000001``.

    The counter is one OrderSequence row per day, bumped with an UPDATE so two
    checkouts can never read the same value. The first checkout of a day
    inserts the row inside a savepoint; losing that insert to another writer
    falls back to bumping the row the winner created. Must run inside the
    caller's write transaction; nothing is committed here.
    """
    now = now or utcnow()
    scope = now.strftime("%Y%m%d")
    prefix = current_app.config.get("ORDER_NUMBER_PREFIX", "ORD")

    next_num = _claim(scope)
    if next_num is None:
        try:
            with db.session.begin_nested():
                db.session.add(OrderSequence(scope=scope, next_number=2))
            next_num = 1
        except IntegrityError:
            next_num = _claim(scope)
            if next_num is None:
                raise ConflictError("Order number allocation collided, please retry", {"scope": scope})

    return f"{prefix}-{scope}-{next_num:0{pad}d}"
