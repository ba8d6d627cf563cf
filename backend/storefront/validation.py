from __future__ import annotations

from typing import Any

from .errors import ValidationError
from .services.pricing_service import CartLine


PAYMENT_METHODS = ("credit_card", "debit_card", "paypal", "stripe", "razorpay", "cod")

ADDRESS_REQUIRED_FIELDS = ("first_name", "last_name", "address1", "city", "state", "postal_code", "country")
ADDRESS_OPTIONAL_FIELDS = ("company", "address2", "phone")

MAX_LINE_QUANTITY = 1000
MAX_PER_PAGE = 100


def parse_int(value: Any, field: str, *, minimum: int | None = None, maximum: int | None = None) -> int:
    """
    Strict integer parsing for request payloads.

    Rejects bools, floats and strings with decimals or exponents.
    """
    if isinstance(value, bool) or value is None:
        raise ValidationError(f"{field} must be an integer")
    if isinstance(value, int):
        parsed = value
    elif isinstance(value, str):
        stripped = value.strip()
        if not stripped or not stripped.lstrip("-").isdigit():
            raise ValidationError(f"{field} must be an integer")
        parsed = int(stripped)
    else:
        raise ValidationError(f"{field} must be an integer")

    if minimum is not None and parsed < minimum:
        raise ValidationError(f"{field} must be >= {minimum}")
    if maximum is not None and parsed > maximum:
        raise ValidationError(f"{field} must be <= {maximum}")
    return parsed


def parse_bool(value: Any) -> bool | None:
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("1", "true", "yes", "on")


def parse_pagination(args) -> tuple[int, int]:
    page = parse_int(args.get("page", 1), "page", minimum=1)
    per_page = parse_int(args.get("per_page", 20), "per_page", minimum=1, maximum=MAX_PER_PAGE)
    return page, per_page


def parse_cart_lines(items: Any) -> list[CartLine]:
    """Turn the request's ``items`` array into CartLines. Client prices are ignored."""
    if not isinstance(items, list) or not items:
        raise ValidationError("Order must contain at least one item")

    lines = []
    for index, item in enumerate(items):
        if not isinstance(item, dict):
            raise ValidationError("Each item must be an object", {"index": index})
        product_id = parse_int(item.get("product_id"), f"items[{index}].product_id", minimum=1)
        quantity = parse_int(
            item.get("quantity"), f"items[{index}].quantity", minimum=1, maximum=MAX_LINE_QUANTITY,
        )
        lines.append(CartLine(
            product_id=product_id,
            quantity=quantity,
            size=_optional_str(item.get("size"), 32),
            color=_optional_str(item.get("color"), 32),
        ))
    return lines


def _optional_str(value: Any, max_len: int) -> str | None:
    if value is None:
        return None
    value = str(value).strip()
    return value[:max_len] or None


def validate_address(address: Any, field: str = "address") -> dict:
    if not isinstance(address, dict):
        raise ValidationError(f"{field} is required")

    missing = [key for key in ADDRESS_REQUIRED_FIELDS if not str(address.get(key) or "").strip()]
    if missing:
        raise ValidationError(f"{field} is incomplete", {"missing": [f"{field}.{k}" for k in missing]})

    cleaned = {key: str(address[key]).strip() for key in ADDRESS_REQUIRED_FIELDS}
    for key in ADDRESS_OPTIONAL_FIELDS:
        value = _optional_str(address.get(key), 200)
        if value:
            cleaned[key] = value
    return cleaned


def validate_payment_method(method: Any) -> str:
    method = (method or "").strip().lower() if isinstance(method, str) else ""
    if method not in PAYMENT_METHODS:
        raise ValidationError(
            "payment_method must be one of: " + ", ".join(PAYMENT_METHODS),
            {"payment_method": method or None},
        )
    return method
