# Overview: Identity collaborator; users, bcrypt passwords and order-history lookups.

"""
Authentication Service

Passwords are hashed with bcrypt (cost from BCRYPT_ROUNDS, default 12).
Session tokens live in session_service.py.

The order core only needs two things from identity: the user behind a
request (get_user) and how many live orders they have placed
(count_completed_orders, used by first-time-buyer coupons).
"""

import re

import bcrypt
from flask import current_app

from ..errors import ConflictError, NotFoundError, ValidationError
from ..extensions import db
from ..models import Order, User
from ..models.auth import ROLE_CUSTOMER, VALID_ROLES
from ..time_utils import utcnow


# Orders in these states do not count as "placed" for first-time-buyer checks
NON_COUNTING_ORDER_STATUSES = ("cancelled", "refunded")

EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def validate_password_strength(password: str) -> None:
    """
    Minimum 8 characters with at least one letter and one digit.

    Raises ValidationError if requirements not met.
    """
    if not password or len(password) < 8:
        raise ValidationError("Password must be at least 8 characters long")
    if not re.search(r"[A-Za-z]", password):
        raise ValidationError("Password must contain at least one letter")
    if not re.search(r"\d", password):
        raise ValidationError("Password must contain at least one digit")


def hash_password(password: str) -> str:
    validate_password_strength(password)
    rounds = current_app.config.get("BCRYPT_ROUNDS", 12)
    hashed = bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt(rounds=rounds))
    return hashed.decode("utf-8")


def verify_password(password: str, password_hash: str) -> bool:
    """Timing-safe bcrypt check; malformed hashes simply fail."""
    if not password or not password_hash:
        return False
    try:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
    except ValueError:
        return False


def create_user(
    email: str,
    password: str,
    *,
    first_name: str = "",
    last_name: str = "",
    role: str = ROLE_CUSTOMER,
) -> User:
    email = (email or "").strip().lower()
    if not EMAIL_PATTERN.match(email):
        raise ValidationError("A valid email is required")
    if role not in VALID_ROLES:
        raise ValidationError("role must be one of: " + ", ".join(VALID_ROLES))
    if db.session.query(User.id).filter_by(email=email).first():
        raise ConflictError("Email already registered", {"email": email})

    user = User(
        email=email,
        first_name=(first_name or "").strip(),
        last_name=(last_name or "").strip(),
        password_hash=hash_password(password),
        role=role,
        is_active=True,
    )
    db.session.add(user)
    db.session.commit()
    return user


def authenticate(email: str, password: str) -> User | None:
    """
    Returns the active User for valid credentials, None otherwise.

    Updates last_login_at on success.
    """
    user = (
        db.session.query(User)
        .filter(User.email == (email or "").strip().lower(), User.is_active.is_(True))
        .first()
    )
    if not user or not verify_password(password, user.password_hash):
        return None

    user.last_login_at = utcnow()
    db.session.commit()
    return user


def get_user(user_id: int) -> User:
    user = db.session.get(User, user_id)
    if user is None:
        raise NotFoundError("User not found", {"user_id": user_id})
    return user


def count_completed_orders(user_id: int) -> int:
    """Orders the user has placed that were not cancelled or refunded."""
    return (
        db.session.query(db.func.count(Order.id))
        .filter(
            Order.user_id == user_id,
            Order.status.notin_(NON_COUNTING_ORDER_STATUSES),
        )
        .scalar()
        or 0
    )
