"""Typed failures raised by the storefront core.

Each error carries a stable ``code``, the HTTP status it maps to at the API
edge and any context a caller needs to correct and resubmit the request.
"""

from typing import Any, Dict


class StorefrontError(Exception):
    """Base class for expected, user-facing failures."""

    code = "internal_error"
    status_code = 500

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context = context

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.code, "detail": self.message, **self.context}


class ValidationError(StorefrontError):
    """Malformed input, rejected before any storage access."""

    code = "validation_error"
    status_code = 400


class NotFoundError(StorefrontError):
    code = "not_found"
    status_code = 404


class InsufficientStockError(StorefrontError):
    code = "insufficient_stock"
    status_code = 400

    def __init__(self, product_id: int, product_name: str, requested: int, available: int):
        super().__init__(
            f"Insufficient stock for product '{product_name}'. "
            f"Available: {available}, Requested: {requested}.",
            product_id=product_id,
            product_name=product_name,
            requested=requested,
            available=available,
        )
        self.product_id = product_id
        self.product_name = product_name
        self.requested = requested
        self.available = available


class InvalidTransitionError(StorefrontError):
    code = "invalid_transition"
    status_code = 400


class ConflictError(StorefrontError):
    """Storage-level contention; the caller should resubmit."""

    code = "conflict"
    status_code = 409


class AuthenticationError(StorefrontError):
    code = "unauthorized"
    status_code = 401


class PermissionDeniedError(StorefrontError):
    code = "forbidden"
    status_code = 403


class BroadcastFailure(Exception):
    """A session could not accept an event. Logged, never surfaced."""
