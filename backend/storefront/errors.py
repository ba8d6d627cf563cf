# Overview: Domain error taxonomy shared by services and routes.

"""
Storefront error taxonomy.

Every service raises one of these. Routes translate them into JSON responses
using the stable ``kind`` and ``status_code`` carried by the class, so callers
can branch on the kind without parsing messages.

    ValidationError         400  malformed or missing input
    UnauthorizedError       403  actor lacks rights over the resource
    NotFoundError           404  order/product/coupon absent
    ConflictError           409  business rule or concurrent-update loss
      InsufficientStockError
      ProductUnavailableError
      CouponError
      InvalidTransitionError
      AlreadyReconciledError
    UpstreamError           502  external collaborator unavailable
"""

from __future__ import annotations


class ShopError(Exception):
    """Base class for all domain errors."""

    kind = "error"
    status_code = 500

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict:
        return {
            "error": self.message,
            "kind": self.kind,
            "details": self.details,
        }


class ValidationError(ShopError):
    kind = "validation_error"
    status_code = 400


class UnauthorizedError(ShopError):
    kind = "unauthorized"
    status_code = 403


class NotFoundError(ShopError):
    kind = "not_found"
    status_code = 404


class ConflictError(ShopError):
    kind = "conflict"
    status_code = 409


class InsufficientStockError(ConflictError):
    kind = "insufficient_stock"


class ProductUnavailableError(ConflictError):
    kind = "product_unavailable"


class CouponError(ConflictError):
    """Coupon rejected; ``details["violations"]`` lists every failed rule when collected."""

    kind = "coupon_invalid"


class InvalidTransitionError(ConflictError):
    kind = "invalid_transition"


class AlreadyReconciledError(ConflictError):
    kind = "already_reconciled"


class UpstreamError(ShopError):
    kind = "upstream_failure"
    status_code = 502
